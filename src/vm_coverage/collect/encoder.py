"""
Report Encoder：per-script hit map → 向后兼容的 JSON 条目。

输出形态沿用旧版 service 协议的 `@Script` 引用，保证老的报告消费方（例如 LCOV 转换）可直接读取。
"""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Protocol
from urllib.parse import quote

REPORT_TYPE = "CodeCoverage"

# 与 JavaScript encodeURIComponent 一致的保留字符集
_URI_COMPONENT_SAFE = "!~*'()"


class _HasUri(Protocol):
    """任何携带 `uri` 的 script 对象。"""

    uri: str


def script_fixed_id(uri: str) -> str:
    """由 script URI 派生确定性的伪 id。"""

    return f"libraries/1/scripts/{quote(str(uri), safe=_URI_COMPONENT_SAFE)}"


def flatten_hits(hit_map: Mapping[int, int]) -> List[int]:
    """把 hit map 展平为 [line, count, line, count, ...]（保持 map 迭代顺序）。"""

    hits: List[int] = []
    for line, count in hit_map.items():
        hits.append(int(line))
        hits.append(int(count))
    return hits


def to_script_coverage_json(script: _HasUri, hit_map: Mapping[int, int]) -> Dict[str, Any]:
    """
    编码单个 script 的覆盖率条目。

    返回：
    - `{"source": uri, "script": {...@Script 引用...}, "hits": [line, count, ...]}`
    """

    uri = str(script.uri)
    return {
        "source": uri,
        "script": {
            "type": "@Script",
            "fixedId": True,
            "id": script_fixed_id(uri),
            "uri": uri,
            "_kind": "library",
        },
        "hits": flatten_hits(hit_map),
    }


def to_coverage_document(entries: List[Dict[str, Any]]) -> Dict[str, Any]:
    """组装最终 JSON 文档。"""

    return {"type": REPORT_TYPE, "coverage": list(entries)}
