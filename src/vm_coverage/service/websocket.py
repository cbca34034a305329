"""
VM service 客户端：JSON-RPC 2.0 over WebSocket（aiohttp）。

说明：
- 只实现采集所需的最小方法集合：getVM / getIsolate / getSourceReport / getObject(Script) / resume；
- 响应按 JSON-RPC `id` 匹配请求，因此允许对同一连接并发发出多个请求（script 批量加载）；
- 流事件通知（无 `id` 的消息）直接忽略。
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional, Tuple

import aiohttp

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

logger = logging.getLogger(__name__)

# `resume` 作用于未 paused 的 isolate 时 VM 返回的错误码
_ISOLATE_MUST_BE_PAUSED = 106

_RUNNING_PAUSE_KINDS = frozenset({"Resume", "None"})


def is_paused_event(kind: Optional[str]) -> bool:
    """判断 `pauseEvent.kind` 是否代表 paused（`Resume`/`None` 以外都视为 paused）。"""

    if not kind:
        return False
    return kind not in _RUNNING_PAUSE_KINDS


def parse_token_pos_table(table: List[List[int]]) -> Dict[int, Tuple[int, int]]:
    """
    把 `tokenPosTable` 解析为 token position → 0-based (line, column)。

    说明：
    - 每行形如 `[line, tokenPos, column, tokenPos, column, ...]`，line/column 为 1-based。
    """

    out: Dict[int, Tuple[int, int]] = {}
    for row in table or []:
        if not row:
            continue
        line = int(row[0]) - 1
        for i in range(1, len(row) - 1, 2):
            out[int(row[i])] = (line, int(row[i + 1]) - 1)
    return out


def _require_type(obj: Any, expected: str) -> Dict[str, Any]:
    """校验响应对象类型（Sentinel/未知类型统一转为 `VmServiceError`）。"""

    if not isinstance(obj, dict):
        raise VmServiceError(f"malformed response: expected {expected} object")
    actual = obj.get("type")
    if actual != expected:
        raise VmServiceError(
            f"unexpected response type: expected {expected}, got {actual}",
            details={"kind": obj.get("kind"), "value": obj.get("valueAsString")},
        )
    return obj


class WebSocketVmService:
    """
    基于 aiohttp WebSocket 的 VM service 连接（实现 `VmService` 协议）。

    生命周期：
    - 通过 `connect()` 创建；内部启动一个读循环 task 分发响应；
    - `close()` 幂等；关闭后所有未完成请求以 `VmServiceError` 失败。
    """

    def __init__(self, session: aiohttp.ClientSession, ws: aiohttp.ClientWebSocketResponse) -> None:
        """用已建立的 session/ws 创建连接对象（一般不直接调用，使用 `connect`）。"""

        self._session = session
        self._ws = ws
        self._pending: Dict[str, asyncio.Future] = {}
        self._next_id = 0
        self._closed = False
        self._reader: Optional[asyncio.Task] = None

    @classmethod
    async def connect(cls, uri: str, *, connect_timeout: float = 5.0) -> "WebSocketVmService":
        """
        打开到 `uri`（`ws://` / `wss://`）的连接。

        参数：
        - uri：已规范化的 WebSocket 地址
        - connect_timeout：握手超时秒数

        异常：
        - aiohttp.ClientError / asyncio.TimeoutError：连接失败（由 Retry Driver 决定是否重试）
        """

        session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=None, connect=connect_timeout))
        try:
            ws = await session.ws_connect(uri, max_msg_size=0, autoping=True)
        except BaseException:
            await session.close()
            raise
        service = cls(session, ws)
        service._reader = asyncio.get_running_loop().create_task(service._read_loop())
        return service

    async def _read_loop(self) -> None:
        """读循环：把响应分发给等待中的请求 future。"""

        try:
            async for msg in self._ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    self._dispatch(msg.data)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    logger.debug("VM service socket error: %r", self._ws.exception())
                    break
        finally:
            self._fail_pending(VmServiceError("VM service connection closed"))

    def _dispatch(self, raw: str) -> None:
        """解析一条文本消息并完成对应请求。"""

        try:
            msg = json.loads(raw)
        except ValueError:
            logger.debug("Ignoring non-JSON message from VM service")
            return
        if not isinstance(msg, dict) or "id" not in msg:
            return
        fut = self._pending.pop(str(msg["id"]), None)
        if fut is None or fut.done():
            return
        err = msg.get("error")
        if err is not None:
            fut.set_exception(
                VmServiceError(
                    str(err.get("message") or "VM service error"),
                    rpc_code=err.get("code"),
                    details={"data": err.get("data")} if err.get("data") is not None else None,
                )
            )
            return
        fut.set_result(msg.get("result"))

    def _fail_pending(self, exc: VmServiceError) -> None:
        """让所有未完成请求以 `exc` 失败。"""

        pending, self._pending = self._pending, {}
        for fut in pending.values():
            if not fut.done():
                fut.set_exception(exc)

    async def call(self, method: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """
        发出一次 JSON-RPC 调用并等待结果。

        异常：
        - VmServiceError：RPC 返回 error，或连接已关闭/断开
        """

        if self._closed or self._ws.closed:
            raise VmServiceError("VM service connection is closed", details={"method": method})
        self._next_id += 1
        request_id = str(self._next_id)
        fut: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = fut
        try:
            await self._ws.send_json({"jsonrpc": "2.0", "id": request_id, "method": method, "params": params or {}})
            return await fut
        finally:
            self._pending.pop(request_id, None)

    async def get_vm(self) -> VmInfo:
        """`getVM`：返回 VM 名称与当前全部 isolate 引用。"""

        vm = _require_type(await self.call("getVM"), "VM")
        refs = tuple(IsolateRef(id=str(i["id"]), name=str(i.get("name") or i["id"])) for i in vm.get("isolates") or [])
        return VmInfo(name=str(vm.get("name") or "vm"), isolates=refs)

    async def get_isolate(self, isolate: IsolateRef) -> Isolate:
        """`getIsolate`：加载 isolate 详情（paused 状态由 `pauseEvent.kind` 判定）。"""

        obj = _require_type(await self.call("getIsolate", {"isolateId": isolate.id}), "Isolate")
        kind = (obj.get("pauseEvent") or {}).get("kind")
        return Isolate(id=isolate.id, name=str(obj.get("name") or isolate.name), paused=is_paused_event(kind), pause_event_kind=kind)

    async def get_source_report(self, isolate: IsolateRef, *, force_compile: bool = True) -> SourceReport:
        """`getSourceReport(reports=[Coverage])`：把 `scriptIndex` 解析为 `ScriptRef`。"""

        obj = _require_type(
            await self.call(
                "getSourceReport",
                {"isolateId": isolate.id, "reports": ["Coverage"], "forceCompile": bool(force_compile)},
            ),
            "SourceReport",
        )
        scripts = [ScriptRef(id=str(s["id"]), uri=str(s["uri"])) for s in obj.get("scripts") or []]
        ranges: List[SourceReportRange] = []
        for r in obj.get("ranges") or []:
            coverage = r.get("coverage") or {}
            ranges.append(
                SourceReportRange(
                    script=scripts[int(r["scriptIndex"])],
                    start_pos=int(r.get("startPos", -1)),
                    end_pos=int(r.get("endPos", -1)),
                    compiled=bool(r.get("compiled", False)),
                    hits=tuple(int(t) for t in coverage.get("hits") or []),
                    misses=tuple(int(t) for t in coverage.get("misses") or []),
                )
            )
        return SourceReport(ranges=tuple(ranges))

    async def get_script(self, isolate: IsolateRef, script: ScriptRef) -> Script:
        """`getObject`：加载 script 并解析 `tokenPosTable`。"""

        obj = _require_type(await self.call("getObject", {"isolateId": isolate.id, "objectId": script.id}), "Script")
        return Script(
            id=script.id,
            uri=str(obj.get("uri") or script.uri),
            token_positions=parse_token_pos_table(obj.get("tokenPosTable") or []),
        )

    async def resume(self, isolate: IsolateRef) -> None:
        """`resume`：恢复 isolate；对未 paused 的 isolate 视为 no-op。"""

        try:
            await self.call("resume", {"isolateId": isolate.id})
        except VmServiceError as exc:
            if exc.rpc_code != _ISOLATE_MUST_BE_PAUSED:
                raise
            logger.debug("Isolate %s was not paused; resume skipped", isolate.id)

    async def close(self) -> None:
        """关闭 WebSocket 与 session（幂等）。"""

        if self._closed:
            return
        self._closed = True
        try:
            await self._ws.close()
        finally:
            if self._reader is not None:
                self._reader.cancel()
                try:
                    await self._reader
                except asyncio.CancelledError:
                    pass
            self._fail_pending(VmServiceError("VM service connection closed"))
            await self._session.close()
