"""
Line Hit Map：每个 script 的 line → hit count 聚合。

不变量：
- hit count 只通过加法变化（hit +1、合并时相加），永不减少、永不重置；
- miss 只保证行存在（不存在时插入 0），不会覆盖已有计数。
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Mapping
from urllib.parse import urlsplit

from vm_coverage.collect.encoder import to_script_coverage_json
from vm_coverage.service.protocol import Script

# 行号（1-based）→ hit count
LineHitMap = Dict[int, int]

# 表达式求值产生的临时脚本，不属于真实源码
EPHEMERAL_SCHEMES = frozenset({"evaluate"})


def is_ephemeral_uri(uri: str) -> bool:
    """判断 script URI 是否属于临时（不可持久化）scheme。"""

    return urlsplit(str(uri)).scheme.lower() in EPHEMERAL_SCHEMES


def record_hit(hit_map: LineHitMap, line: int) -> None:
    """记录一次命中。"""

    hit_map[line] = hit_map.get(line, 0) + 1


def record_miss(hit_map: LineHitMap, line: int) -> None:
    """记录未命中：只保证行存在。"""

    hit_map.setdefault(line, 0)


def merge_hit_map(into: LineHitMap, other: Mapping[int, int]) -> LineHitMap:
    """把 `other` 合并进 `into`（计数相加、行集合取并集），返回 `into`。"""

    for line, count in other.items():
        into[line] = into.get(line, 0) + int(count)
    return into


@dataclass
class CoverageAccumulator:
    """
    单次采集运行的聚合状态（按 script URI 索引）。

    说明：
    - 每个 isolate 先构建自己的 hit map，完整成功后才通过 `merge_unit` 并入；
      因此中途失败时这里只包含已完整处理的 isolate。
    """

    scripts: Dict[str, Script] = field(default_factory=dict)
    hit_maps: Dict[str, LineHitMap] = field(default_factory=dict)
    units_merged: int = 0

    def merge_unit(self, scripts: Mapping[str, Script], unit_maps: Mapping[str, LineHitMap]) -> None:
        """并入一个 isolate 的 per-script hit maps。"""

        for uri, hit_map in unit_maps.items():
            self.scripts.setdefault(uri, scripts[uri])
            merge_hit_map(self.hit_maps.setdefault(uri, {}), hit_map)
        self.units_merged += 1

    def entries(self) -> List[Dict[str, Any]]:
        """按 script 输出覆盖率条目（顺序为首次出现顺序；`source` 与去重用的 URI 一致）。"""

        return [
            to_script_coverage_json(replace(self.scripts[uri], uri=uri), hit_map)
            for uri, hit_map in self.hit_maps.items()
        ]
