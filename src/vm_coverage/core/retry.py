"""
Retry Driver：固定间隔轮询 + 可选整体超时。

说明：
- `retry`：反复调用一个可能失败的异步操作，直到成功返回；失败（任意 `Exception`）后等待 `interval` 再试。
- `poll_until`：反复调用一个返回 bool 的就绪谓词，直到返回 True；谓词“未就绪”不通过异常表达。
- 两者都只约束“整个重试循环”的墙钟预算；单次尝试内部的超时由操作自身负责。
- 超时后抛出 `CollectTimeoutError`（或调用方指定的子类），与被重试操作自身的异常类型不同。
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Type, TypeVar

from vm_coverage.core.errors import CollectTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class _Attempts:
    """单次重试循环的可观测状态（仅用于超时错误的 details）。"""

    count: int = 0
    last_error: Optional[BaseException] = None


async def _bounded(
    loop: Awaitable[T],
    *,
    timeout: Optional[float],
    attempts: _Attempts,
    timeout_error: Type[CollectTimeoutError],
    what: str,
) -> T:
    """
    用整体超时包裹重试循环。

    异常：
    - `timeout_error`：循环未在 `timeout` 秒内完成
    """

    if timeout is None:
        return await loop
    try:
        return await asyncio.wait_for(loop, timeout=timeout)
    except asyncio.TimeoutError:
        details = {"timeout_sec": float(timeout), "attempts": attempts.count}
        if attempts.last_error is not None:
            details["last_error"] = repr(attempts.last_error)
        raise timeout_error(f"{what} did not complete within {timeout:g}s", details=details) from None


async def retry(
    operation: Callable[[], Awaitable[T]],
    interval: float,
    *,
    timeout: Optional[float] = None,
    timeout_error: Type[CollectTimeoutError] = CollectTimeoutError,
    what: str = "operation",
) -> T:
    """
    反复执行 `operation` 直到成功，返回其结果。

    参数：
    - operation：零参数异步操作；抛出任意 `Exception` 视为可重试失败
    - interval：两次尝试之间的等待秒数（必须为正）
    - timeout：整体超时秒数；None 表示无限重试
    - timeout_error：超时时抛出的异常类型
    - what：用于错误消息与日志的操作描述

    异常：
    - `timeout_error`：整体超时
    """

    if interval <= 0:
        raise ValueError("retry interval must be positive")
    attempts = _Attempts()

    async def _loop() -> T:
        """重试主循环（取消只发生在 await 点上）。"""

        while True:
            attempts.count += 1
            try:
                return await operation()
            except Exception as exc:
                attempts.last_error = exc
                logger.debug("%s attempt %d failed: %r; retrying in %.3fs", what, attempts.count, exc, interval)
            await asyncio.sleep(interval)

    return await _bounded(_loop(), timeout=timeout, attempts=attempts, timeout_error=timeout_error, what=what)


async def poll_until(
    predicate: Callable[[], Awaitable[bool]],
    interval: float,
    *,
    timeout: Optional[float] = None,
    timeout_error: Type[CollectTimeoutError] = CollectTimeoutError,
    what: str = "condition",
) -> None:
    """
    轮询就绪谓词，直到其返回 True。

    约束：
    - 谓词返回 False 表示“尚未就绪”，由本循环在 `interval` 后再次调用；
    - 谓词抛出的异常不会被吞掉，直接向上传播（它代表真实故障而非“未就绪”）。

    异常：
    - `timeout_error`：整体超时
    """

    if interval <= 0:
        raise ValueError("poll interval must be positive")
    attempts = _Attempts()

    async def _loop() -> None:
        """轮询主循环。"""

        while True:
            attempts.count += 1
            if await predicate():
                return
            logger.debug("%s not ready after poll %d; polling again in %.3fs", what, attempts.count, interval)
            await asyncio.sleep(interval)

    await _bounded(_loop(), timeout=timeout, attempts=attempts, timeout_error=timeout_error, what=what)
