from __future__ import annotations

import asyncio

import pytest

from vm_coverage.collect.connection import connect_to_service, to_websocket_uri
from vm_coverage.core.errors import ConnectTimeoutError, UserError
from vm_coverage.service.fake import FakeConnector, FakeVmService


@pytest.mark.parametrize(
    ("service_uri", "expected"),
    [
        ("http://127.0.0.1:8181/abc=/", "ws://127.0.0.1:8181/abc=/ws"),
        ("http://127.0.0.1:8181/abc=", "ws://127.0.0.1:8181/abc=/ws"),
        ("http://localhost:8181", "ws://localhost:8181/ws"),
        ("http://localhost:8181/", "ws://localhost:8181/ws"),
        ("https://vm.example.test:443//a//b/", "wss://vm.example.test:443/a/b/ws"),
        ("ws://127.0.0.1:8181/tok/", "ws://127.0.0.1:8181/tok/ws"),
    ],
)
def test_to_websocket_uri_normalizes_scheme_and_path(service_uri: str, expected: str) -> None:
    assert to_websocket_uri(service_uri) == expected


def test_to_websocket_uri_drops_fragment_keeps_query() -> None:
    assert to_websocket_uri("http://h:1/x/?a=b#frag") == "ws://h:1/x/ws?a=b"


def test_to_websocket_uri_requires_host() -> None:
    with pytest.raises(UserError):
        to_websocket_uri("not a uri")


def test_connect_retries_until_service_accepts() -> None:
    service = FakeVmService()
    connector = FakeConnector(service, refuse_attempts=2)

    got = asyncio.run(connect_to_service("http://127.0.0.1:8181/", interval=0.001, timeout=5, connector=connector))

    assert got is service
    assert connector.attempts == 3
    assert set(connector.uris) == {"ws://127.0.0.1:8181/ws"}
    # 成功返回前至少完成一次 getVM 往返
    assert ("getVM", "") in service.calls
    assert service.close_count == 0


def test_connect_closes_half_open_connection_when_probe_times_out() -> None:
    service = FakeVmService()
    connector = FakeConnector(service, unresponsive_attempts=2)

    got = asyncio.run(connect_to_service("http://127.0.0.1:8181/", interval=0.01, timeout=5, connector=connector))

    assert got is service
    assert len(connector.half_open) == 2
    assert [h.close_count for h in connector.half_open] == [1, 1]


def test_connect_times_out_when_service_unreachable() -> None:
    connector = FakeConnector(refuse_attempts=None)

    with pytest.raises(ConnectTimeoutError) as ei:
        asyncio.run(connect_to_service("http://127.0.0.1:1/", interval=0.01, timeout=0.1, connector=connector))

    assert ei.value.code == "CONNECT_TIMEOUT"
    assert connector.attempts >= 1


def test_connect_timeout_closes_connection_left_half_open() -> None:
    connector = FakeConnector(FakeVmService(), unresponsive_attempts=10_000)

    with pytest.raises(ConnectTimeoutError):
        asyncio.run(connect_to_service("http://127.0.0.1:8181/", interval=0.05, timeout=0.12, connector=connector))

    assert connector.half_open
    assert all(h.close_count == 1 for h in connector.half_open)
