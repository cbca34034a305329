"""
Coverage Aggregator：逐个 isolate 拉取 source report，并归约为按 script 的行级 hit map。

流程（每个 isolate）：
1. 加载 isolate 详情，强制编译后获取 source report；
2. 批量并发加载该报告引用的去重 script（按 URI 索引，每个只加载一次）；
3. 把 token 级 hits/misses 解析为 1-based 行号并累加到 per-script hit map；
4. 并入运行级聚合状态，随后无条件 resume 该 isolate（缩短整体 pause 时间）。
"""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, Optional

from vm_coverage.collect.hitmap import (
    CoverageAccumulator,
    LineHitMap,
    is_ephemeral_uri,
    record_hit,
    record_miss,
)
from vm_coverage.collect.narration import TextSink, narrate
from vm_coverage.service.protocol import IsolateRef, Script, SourceReport, VmService, distinct_scripts

logger = logging.getLogger(__name__)


async def load_scripts(service: VmService, isolate: IsolateRef, report: SourceReport) -> Dict[str, Script]:
    """
    并发加载报告引用的全部非临时 script。

    返回：
    - script URI → Script
    """

    refs = [ref for ref in distinct_scripts(report.ranges) if not is_ephemeral_uri(ref.uri)]
    loaded = await asyncio.gather(*(service.get_script(isolate, ref) for ref in refs))
    return {ref.uri: script for ref, script in zip(refs, loaded)}


def build_unit_hit_maps(report: SourceReport, scripts: Dict[str, Script]) -> Dict[str, LineHitMap]:
    """
    把单个 isolate 的 source report 归约为 per-script hit map。

    约束：
    - 临时 scheme（`evaluate:`）的区间整体跳过，即使携带 hits；
    - 协议返回 0-based 行号，这里统一 +1（只加一次）。
    """

    hit_maps: Dict[str, LineHitMap] = {}
    for r in report.ranges:
        uri = r.script.uri
        if is_ephemeral_uri(uri):
            continue
        if not r.hits and not r.misses:
            continue
        script = scripts[uri]
        hit_map = hit_maps.setdefault(uri, {})
        for token in r.hits:
            record_hit(hit_map, script.source_location(token).line + 1)
        for token in r.misses:
            record_miss(hit_map, script.source_location(token).line + 1)
    return hit_maps


async def collect_all_coverage(
    service: VmService,
    accumulator: CoverageAccumulator,
    *,
    force_compile: bool = True,
    output: Optional[TextSink] = None,
) -> CoverageAccumulator:
    """
    对当前全部 isolate 采集覆盖率并合并进 `accumulator`。

    说明：
    - `accumulator` 由调用方持有：中途抛异常时，其中保留已完整合并的 isolate 数据；
    - 每个 isolate 采集完成后都会 resume（未 paused 的 isolate 由 transport 视为 no-op）。
    """

    vm = await service.get_vm()
    total = len(vm.isolates)
    for index, ref in enumerate(vm.isolates, start=1):
        narrate(output, f"Collecting coverage for {ref.name} ({index}/{total})...")
        await service.get_isolate(ref)
        report = await service.get_source_report(ref, force_compile=force_compile)
        scripts = await load_scripts(service, ref, report)
        accumulator.merge_unit(scripts, build_unit_hit_maps(report, scripts))
        logger.debug("Merged coverage for isolate %s (%d ranges, %d scripts)", ref.id, len(report.ranges), len(scripts))
        narrate(output, f"Coverage collected for {ref.name}, resuming termination.")
        await service.resume(ref)
    return accumulator
