"""
VM service 协议：值对象 + `VmService` 抽象。

设计目标：
- 采集核心只依赖本模块定义的结构化对象，不关心底层 transport（WebSocket JSON-RPC、内存 fake 等）；
- isolate/script 引用都是瞬时值：每次轮询重新获取，不跨轮询缓存状态。

约定：
- `Script.source_location(token_pos)` 返回 0-based 的 (line, column)，对外输出时由采集核心 +1；
- `SourceReportRange.hits/misses` 为原始 token position 列表。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol, Sequence, Tuple

from vm_coverage.core.errors import VmServiceError


@dataclass(frozen=True)
class IsolateRef:
    """isolate 引用（稳定 id + 可读名称）。"""

    id: str
    name: str


@dataclass(frozen=True)
class Isolate:
    """isolate 详情（最小集合：是否处于 paused 状态）。"""

    id: str
    name: str
    paused: bool
    pause_event_kind: Optional[str] = None


@dataclass(frozen=True)
class VmInfo:
    """`getVM` 的结果（最小集合）。"""

    name: str = "vm"
    isolates: Tuple[IsolateRef, ...] = ()


@dataclass(frozen=True)
class ScriptRef:
    """source report 中引用的 script（按 URI 识别）。"""

    id: str
    uri: str


@dataclass(frozen=True)
class SourceLocation:
    """0-based 源码位置。"""

    line: int
    column: int


@dataclass(frozen=True)
class Script:
    """
    已加载的 script，提供 token position → (line, column) 映射。

    字段：
    - token_positions：token position → 0-based (line, column)
    """

    id: str
    uri: str
    token_positions: Dict[int, Tuple[int, int]] = field(default_factory=dict)

    def source_location(self, token_pos: int) -> SourceLocation:
        """
        解析 token position 的源码位置（0-based）。

        异常：
        - VmServiceError：token position 不属于该 script
        """

        try:
            line, column = self.token_positions[int(token_pos)]
        except KeyError:
            raise VmServiceError(
                f"token position {token_pos} is not part of script {self.uri}",
                details={"script": self.uri, "token_pos": int(token_pos)},
            ) from None
        return SourceLocation(line=line, column=column)


@dataclass(frozen=True)
class SourceReportRange:
    """source report 中的单个代码区间（引用一个 script，携带 hits/misses token）。"""

    script: ScriptRef
    start_pos: int = -1
    end_pos: int = -1
    compiled: bool = True
    hits: Tuple[int, ...] = ()
    misses: Tuple[int, ...] = ()


@dataclass(frozen=True)
class SourceReport:
    """单个 isolate 的原始区间报告。"""

    ranges: Tuple[SourceReportRange, ...] = ()


class VmService(Protocol):
    """
    已连接的 VM service 会话（外部协作方接口）。

    约束：
    - 同一连接上的调用由采集核心串行发出；唯一例外是单个 isolate 的 script 批量加载（可并发）；
    - `close()` 由调用方在所有退出路径上恰好调用一次。
    """

    async def get_vm(self) -> VmInfo:
        """返回 VM 信息（包含当前全部 isolate 引用）。"""

        ...

    async def get_isolate(self, isolate: IsolateRef) -> Isolate:
        """加载 isolate 详情（含 paused 状态）。"""

        ...

    async def get_source_report(self, isolate: IsolateRef, *, force_compile: bool = True) -> SourceReport:
        """获取 isolate 的覆盖率 source report（可强制编译以包含 lazy 代码路径）。"""

        ...

    async def get_script(self, isolate: IsolateRef, script: ScriptRef) -> Script:
        """加载 script（用于 token → line 解析）。"""

        ...

    async def resume(self, isolate: IsolateRef) -> None:
        """恢复 isolate 执行。"""

        ...

    async def close(self) -> None:
        """关闭连接并释放网络资源。"""

        ...


def distinct_scripts(ranges: Sequence[SourceReportRange]) -> List[ScriptRef]:
    """按首次出现顺序返回区间引用的去重 script 列表（按 URI 去重）。"""

    seen: Dict[str, ScriptRef] = {}
    for r in ranges:
        seen.setdefault(r.script.uri, r.script)
    return list(seen.values())
