"""
Fake VM service（离线回归夹具）。

用途：
- 在不启动真实 VM 的情况下，回归连接重试、pause 同步、覆盖率聚合与清理语义；
- 记录调用序列、resume 与 close 次数，便于断言“清理恰好执行一次”。
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from vm_coverage.core.errors import VmServiceError
from vm_coverage.service.protocol import (
    Isolate,
    IsolateRef,
    Script,
    ScriptRef,
    SourceReport,
    SourceReportRange,
    VmInfo,
)


@dataclass
class FakeIsolate:
    """
    可脚本化的 isolate。

    字段：
    - paused：当前是否 paused（`resume` 会置为 False）
    - pause_after_loads：被 `get_isolate` 加载到第 N 次时自动变为 paused（模拟测试逐步结束）
    - ranges：`get_source_report` 返回的区间
    - report_error：非空时 `get_source_report` 抛出该异常
    """

    id: str
    name: str
    paused: bool = True
    pause_after_loads: Optional[int] = None
    ranges: List[SourceReportRange] = field(default_factory=list)
    report_error: Optional[Exception] = None
    loads: int = 0

    def ref(self) -> IsolateRef:
        """返回该 isolate 的引用。"""

        return IsolateRef(id=self.id, name=self.name)


def make_script(uri: str, lines: Mapping[int, int], *, script_id: Optional[str] = None) -> Script:
    """
    构造 fake script。

    参数：
    - lines：token position → 0-based line（column 固定为 0）
    """

    return Script(
        id=script_id or f"scripts/{uri}",
        uri=uri,
        token_positions={int(tok): (int(line), 0) for tok, line in lines.items()},
    )


def make_range(script: Script, *, hits: Sequence[int] = (), misses: Sequence[int] = ()) -> SourceReportRange:
    """构造引用 `script` 的区间（hits/misses 为 token position）。"""

    return SourceReportRange(
        script=ScriptRef(id=script.id, uri=script.uri),
        compiled=True,
        hits=tuple(hits),
        misses=tuple(misses),
    )


class FakeVmService:
    """
    内存 VM service（实现 `VmService` 协议）。

    说明：
    - `isolates` 是可变列表：测试可以在轮询之间追加/移除 isolate；
    - `scripts` 按 URI 索引；未知 URI 的加载会抛 `VmServiceError`。
    """

    def __init__(
        self,
        isolates: Sequence[FakeIsolate] = (),
        scripts: Sequence[Script] = (),
        *,
        vm_name: str = "fake-vm",
        resume_error: Optional[Exception] = None,
        close_error: Optional[Exception] = None,
    ) -> None:
        """创建 fake service。"""

        self.isolates: List[FakeIsolate] = list(isolates)
        self.scripts: Dict[str, Script] = {s.uri: s for s in scripts}
        self.vm_name = vm_name
        self.resume_error = resume_error
        self.close_error = close_error
        self.calls: List[Tuple[str, str]] = []
        self.resumed: List[str] = []
        self.script_loads: List[str] = []
        self.force_compile_flags: List[bool] = []
        self.close_count = 0

    def _find(self, ref: IsolateRef) -> FakeIsolate:
        """按 id 查找 isolate。"""

        for iso in self.isolates:
            if iso.id == ref.id:
                return iso
        raise VmServiceError(f"isolate {ref.id} has exited", rpc_code=105)

    async def get_vm(self) -> VmInfo:
        """返回当前 isolate 集合的快照。"""

        self.calls.append(("getVM", ""))
        return VmInfo(name=self.vm_name, isolates=tuple(i.ref() for i in self.isolates))

    async def get_isolate(self, isolate: IsolateRef) -> Isolate:
        """加载 isolate；到达 `pause_after_loads` 时切换为 paused。"""

        self.calls.append(("getIsolate", isolate.id))
        iso = self._find(isolate)
        iso.loads += 1
        if iso.pause_after_loads is not None and iso.loads >= iso.pause_after_loads:
            iso.paused = True
        return Isolate(id=iso.id, name=iso.name, paused=iso.paused, pause_event_kind="PauseExit" if iso.paused else "Resume")

    async def get_source_report(self, isolate: IsolateRef, *, force_compile: bool = True) -> SourceReport:
        """返回脚本化区间，或抛出注入的异常。"""

        self.calls.append(("getSourceReport", isolate.id))
        self.force_compile_flags.append(bool(force_compile))
        iso = self._find(isolate)
        if iso.report_error is not None:
            raise iso.report_error
        return SourceReport(ranges=tuple(iso.ranges))

    async def get_script(self, isolate: IsolateRef, script: ScriptRef) -> Script:
        """按 URI 加载 script。"""

        self.calls.append(("getObject", script.uri))
        self.script_loads.append(script.uri)
        await asyncio.sleep(0)
        loaded = self.scripts.get(script.uri)
        if loaded is None:
            raise VmServiceError(f"script {script.uri} not found", rpc_code=-32602)
        return loaded

    async def resume(self, isolate: IsolateRef) -> None:
        """恢复 isolate（对未 paused 的 isolate 同样 no-op）。"""

        self.calls.append(("resume", isolate.id))
        if self.resume_error is not None:
            raise self.resume_error
        iso = self._find(isolate)
        iso.paused = False
        self.resumed.append(isolate.id)

    async def close(self) -> None:
        """记录 close 次数。"""

        self.close_count += 1
        if self.close_error is not None:
            raise self.close_error


class _UnresponsiveService(FakeVmService):
    """已建立连接但永远不响应 `getVM` 的半开连接。"""

    async def get_vm(self) -> VmInfo:
        """挂起直到被取消。"""

        await asyncio.Event().wait()
        return VmInfo()


class FakeConnector:
    """
    可脚本化的连接工厂（签名同 `WebSocketVmService.connect`）。

    参数：
    - service：连接成功时返回的 service
    - refuse_attempts：前 N 次尝试直接拒绝连接；None 表示永远拒绝
    - unresponsive_attempts：拒绝之后再有 N 次尝试返回“不响应探活”的半开连接
    """

    def __init__(
        self,
        service: Optional[FakeVmService] = None,
        *,
        refuse_attempts: Optional[int] = 0,
        unresponsive_attempts: int = 0,
    ) -> None:
        """创建连接工厂。"""

        self.service = service
        self.refuse_attempts = refuse_attempts
        self.unresponsive_attempts = unresponsive_attempts
        self.uris: List[str] = []
        self.half_open: List[FakeVmService] = []

    @property
    def attempts(self) -> int:
        """已发生的连接尝试次数。"""

        return len(self.uris)

    async def __call__(self, uri: str) -> FakeVmService:
        """执行一次连接尝试。"""

        self.uris.append(uri)
        n = len(self.uris)
        if self.refuse_attempts is None or self.service is None or n <= self.refuse_attempts:
            raise ConnectionRefusedError(f"connection refused: {uri}")
        if n <= self.refuse_attempts + self.unresponsive_attempts:
            half_open = _UnresponsiveService()
            self.half_open.append(half_open)
            return half_open
        return self.service
