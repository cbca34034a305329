"""
Connection Establisher：service 地址 → 已完成一次往返的 VM service 连接。

流程：
- 规范化地址（丢弃空 path segment、追加 `ws`、scheme 改写为 ws/wss）；
- 每次尝试：建立连接后立即发出 `getVM` 探活，探活以一个轮询间隔为上限；
- 探活超时/失败时关闭半开连接，交给 Retry Driver 重试；整体超时抛 `ConnectTimeoutError`。
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional
from urllib.parse import urlsplit, urlunsplit

from vm_coverage.core.errors import ConnectTimeoutError, UserError
from vm_coverage.core.retry import retry
from vm_coverage.service.protocol import VmService
from vm_coverage.service.websocket import WebSocketVmService

logger = logging.getLogger(__name__)

DEFAULT_RETRY_INTERVAL_SEC = 0.2

Connector = Callable[[str], Awaitable[VmService]]

_SECURE_SCHEMES = frozenset({"https", "wss"})


def to_websocket_uri(service_uri: str) -> str:
    """
    把 service 地址转换为 WebSocket 地址。

    示例：
    - `http://127.0.0.1:8181/abc=/` → `ws://127.0.0.1:8181/abc=/ws`

    异常：
    - UserError：地址缺少 host
    """

    parts = urlsplit(str(service_uri or "").strip())
    if not parts.hostname:
        raise UserError(f"service URI must include a host: {service_uri!r}", details={"service_uri": service_uri})
    scheme = "wss" if parts.scheme.lower() in _SECURE_SCHEMES else "ws"
    segments = [s for s in parts.path.split("/") if s]
    segments.append("ws")
    return urlunsplit((scheme, parts.netloc, "/" + "/".join(segments), parts.query, ""))


async def close_quietly(service: VmService) -> None:
    """关闭连接；失败只记录日志（用于半开连接等不应覆盖原始错误的场景）。"""

    try:
        await service.close()
    except Exception:
        logger.warning("Failed to close VM service connection", exc_info=True)


async def connect_to_service(
    service_uri: str,
    *,
    interval: float = DEFAULT_RETRY_INTERVAL_SEC,
    timeout: Optional[float] = None,
    connector: Optional[Connector] = None,
) -> VmService:
    """
    建立到 VM service 的连接（带重试）。

    参数：
    - service_uri：service 地址（http/https/ws/wss）
    - interval：重试间隔，同时作为单次探活的超时
    - timeout：整体超时；None 表示无限等待
    - connector：连接工厂（默认 `WebSocketVmService.connect`）

    返回：
    - 已成功响应过一次 `getVM` 的连接

    异常：
    - ConnectTimeoutError：整体超时内未能连接
    - UserError：地址非法
    """

    uri = to_websocket_uri(service_uri)
    open_connection = connector or WebSocketVmService.connect

    async def _attempt() -> VmService:
        """单次连接 + 探活；任何失败都关闭已建立的半开连接。"""

        service: Optional[VmService] = None
        try:
            service = await open_connection(uri)
            await asyncio.wait_for(service.get_vm(), timeout=interval)
        except BaseException:
            if service is not None:
                await close_quietly(service)
            raise
        return service

    logger.debug("Connecting to VM service at %s", uri)
    return await retry(
        _attempt,
        interval,
        timeout=timeout,
        timeout_error=ConnectTimeoutError,
        what=f"connecting to VM service at {uri}",
    )
