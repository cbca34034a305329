from __future__ import annotations

import asyncio
from typing import List

import pytest

from vm_coverage.core.errors import CollectTimeoutError, ConnectTimeoutError
from vm_coverage.core.retry import poll_until, retry


def test_retry_returns_result_after_transient_failures() -> None:
    calls: List[int] = []

    async def _op() -> str:
        calls.append(1)
        if len(calls) < 3:
            raise ConnectionRefusedError("not yet")
        return "ok"

    assert asyncio.run(retry(_op, 0.001)) == "ok"
    assert len(calls) == 3


def test_retry_without_timeout_keeps_going_until_success() -> None:
    calls: List[int] = []

    async def _op() -> int:
        calls.append(1)
        if len(calls) < 20:
            raise RuntimeError("flaky")
        return len(calls)

    assert asyncio.run(retry(_op, 0.001, timeout=None)) == 20


def test_retry_timeout_raises_collect_timeout_not_operation_error() -> None:
    async def _op() -> None:
        raise ValueError("service not ready")

    with pytest.raises(CollectTimeoutError) as ei:
        asyncio.run(retry(_op, 0.01, timeout=0.1))

    assert not isinstance(ei.value, ValueError)
    assert ei.value.code == "COLLECT_TIMEOUT"
    assert ei.value.details["attempts"] >= 1
    assert "service not ready" in ei.value.details["last_error"]


def test_retry_timeout_uses_requested_error_type() -> None:
    async def _op() -> None:
        raise OSError("unreachable")

    with pytest.raises(ConnectTimeoutError) as ei:
        asyncio.run(retry(_op, 0.01, timeout=0.05, timeout_error=ConnectTimeoutError, what="connecting"))

    assert isinstance(ei.value, CollectTimeoutError)
    assert "connecting" in ei.value.message


def test_retry_rejects_non_positive_interval() -> None:
    async def _op() -> None:
        return None

    with pytest.raises(ValueError):
        asyncio.run(retry(_op, 0))


def test_poll_until_returns_once_predicate_holds() -> None:
    polls: List[int] = []

    async def _ready() -> bool:
        polls.append(1)
        return len(polls) >= 4

    asyncio.run(poll_until(_ready, 0.001, timeout=5))
    assert len(polls) == 4


def test_poll_until_times_out_when_never_ready() -> None:
    async def _ready() -> bool:
        return False

    with pytest.raises(CollectTimeoutError):
        asyncio.run(poll_until(_ready, 0.01, timeout=0.05))


def test_poll_until_propagates_predicate_failures() -> None:
    async def _ready() -> bool:
        raise RuntimeError("socket dropped")

    # 谓词异常代表真实故障，不应被当作“未就绪”重试
    with pytest.raises(RuntimeError, match="socket dropped"):
        asyncio.run(poll_until(_ready, 0.01, timeout=1))
