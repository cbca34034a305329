"""
覆盖率采集入口（无状态）：连接 → （可选）等待 paused → 聚合 → 清理。

清理约束：
- 连接建立后，无论成功、聚合失败还是等待超时，都在 finally 中执行清理；
- `resume=True` 时先恢复所有仍 paused 的 isolate，然后恰好关闭一次连接；
- 清理失败只记录日志并写入叙述输出，不覆盖更早的致命错误。

聚合失败策略（`aggregation_errors`）：
- `narrate`（默认，向后兼容）：错误与 traceback 写入叙述输出，返回 `complete=False` 的部分报告；
- `raise`：抛出 `PartialAggregationError`，其 `report` 携带部分报告。
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Literal, Optional

from vm_coverage.collect.aggregator import collect_all_coverage
from vm_coverage.collect.connection import DEFAULT_RETRY_INTERVAL_SEC, Connector, connect_to_service
from vm_coverage.collect.encoder import to_coverage_document
from vm_coverage.collect.hitmap import CoverageAccumulator
from vm_coverage.collect.isolates import resume_isolates, wait_isolates_paused
from vm_coverage.collect.narration import TextSink, narrate, narrate_exception
from vm_coverage.core.errors import PartialAggregationError, UserError
from vm_coverage.service.protocol import VmService

if TYPE_CHECKING:
    from vm_coverage.config.loader import VmCoverageConfig

logger = logging.getLogger(__name__)

AggregationErrorPolicy = Literal["narrate", "raise"]


@dataclass(frozen=True)
class CollectRequest:
    """
    单次采集请求（显式配置对象）。

    字段：
    - service_uri：VM service 地址
    - resume：清理阶段是否恢复全部 paused isolate
    - wait_paused：采集前是否等待全部 isolate paused
    - timeout_sec：连接阶段与等待 paused 阶段各自的整体超时（None 表示无限）
    - retry_interval_sec：轮询间隔（同时是单次连接探活的超时）
    - force_compile：获取 source report 时是否强制编译
    - aggregation_errors：聚合失败策略（narrate/raise）
    - output：可选叙述输出 sink
    """

    service_uri: str
    resume: bool = False
    wait_paused: bool = False
    timeout_sec: Optional[float] = None
    retry_interval_sec: float = DEFAULT_RETRY_INTERVAL_SEC
    force_compile: bool = True
    aggregation_errors: AggregationErrorPolicy = "narrate"
    output: Optional[TextSink] = field(default=None, compare=False, repr=False)

    @classmethod
    def from_config(
        cls,
        cfg: "VmCoverageConfig",
        *,
        service_uri: Optional[str] = None,
        output: Optional[TextSink] = None,
    ) -> "CollectRequest":
        """
        由已校验的配置构造请求。

        参数：
        - service_uri：覆盖配置中的 `service_uri`

        异常：
        - UserError：配置与参数都未提供 service URI
        """

        uri = service_uri or cfg.service_uri
        if not uri:
            raise UserError("service_uri is required", code="MISSING_SERVICE_URI")
        return cls(
            service_uri=uri,
            resume=cfg.resume,
            wait_paused=cfg.wait_paused,
            timeout_sec=cfg.timeout_sec,
            retry_interval_sec=cfg.retry_interval_ms / 1000.0,
            force_compile=cfg.force_compile,
            aggregation_errors=cfg.aggregation_errors,
            output=output,
        )


@dataclass
class CoverageReport:
    """
    采集结果。

    字段：
    - coverage：per-script 覆盖率条目
    - complete：是否全部 isolate 都成功聚合
    - error：聚合失败时的错误文本
    """

    coverage: List[Dict[str, Any]] = field(default_factory=list)
    complete: bool = True
    error: Optional[str] = None

    def to_json(self) -> Dict[str, Any]:
        """返回 `{"type": "CodeCoverage", "coverage": [...]}` 文档。"""

        return to_coverage_document(self.coverage)


async def _cleanup(service: VmService, *, resume: bool, output: Optional[TextSink]) -> None:
    """清理：按需 resume，然后关闭连接；两步的失败互不影响。"""

    if resume:
        try:
            await resume_isolates(service)
        except Exception as exc:
            logger.warning("Failed to resume isolates during cleanup", exc_info=True)
            narrate(output, f"Failed to resume isolates: {exc}")
    try:
        await service.close()
    except Exception as exc:
        logger.warning("Failed to close VM service connection", exc_info=True)
        narrate(output, f"Failed to close VM service connection: {exc}")


async def collect(request: CollectRequest, *, connector: Optional[Connector] = None) -> CoverageReport:
    """
    采集一次覆盖率。

    参数：
    - request：采集请求
    - connector：连接工厂（默认 WebSocket 客户端；测试可注入 fake）

    返回：
    - CoverageReport（`aggregation_errors="narrate"` 下失败时 `complete=False`）

    异常：
    - ConnectTimeoutError：连接阶段超时（不产生报告）
    - PauseTimeoutError：等待 paused 超时（连接仍会被清理）
    - PartialAggregationError：仅 `aggregation_errors="raise"`
    """

    output = request.output
    interval = request.retry_interval_sec
    narrate(output, "Waiting for tests to complete...")
    service = await connect_to_service(
        request.service_uri,
        interval=interval,
        timeout=request.timeout_sec,
        connector=connector,
    )
    accumulator = CoverageAccumulator()
    try:
        if request.wait_paused:
            await wait_isolates_paused(service, interval=interval, timeout=request.timeout_sec)
            narrate(output, "Tests complete.")
        try:
            await collect_all_coverage(service, accumulator, force_compile=request.force_compile, output=output)
        except Exception as exc:
            logger.warning("Coverage aggregation failed after %d isolate(s)", accumulator.units_merged, exc_info=True)
            partial = CoverageReport(coverage=accumulator.entries(), complete=False, error=str(exc) or type(exc).__name__)
            if request.aggregation_errors == "raise":
                raise PartialAggregationError(
                    f"coverage aggregation failed: {partial.error}",
                    report=partial,
                    details={"isolates_merged": accumulator.units_merged},
                ) from exc
            partial.error = narrate_exception(output, exc)
            return partial
        return CoverageReport(coverage=accumulator.entries())
    finally:
        await _cleanup(service, resume=request.resume, output=output)


def collect_sync(request: CollectRequest, *, connector: Optional[Connector] = None) -> CoverageReport:
    """同步包装：在新的事件循环中运行 `collect`。"""

    return asyncio.run(collect(request, connector=connector))
