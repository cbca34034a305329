"""
VM service 接入层（协议 + WebSocket 客户端 + 离线 fake）。
"""

from __future__ import annotations

from vm_coverage.service.fake import FakeConnector, FakeIsolate, FakeVmService
from vm_coverage.service.protocol import (
    Isolate,
    IsolateRef,
    Script,
    ScriptRef,
    SourceLocation,
    SourceReport,
    SourceReportRange,
    VmInfo,
    VmService,
)
from vm_coverage.service.websocket import WebSocketVmService

__all__ = [
    "FakeConnector",
    "FakeIsolate",
    "FakeVmService",
    "Isolate",
    "IsolateRef",
    "Script",
    "ScriptRef",
    "SourceLocation",
    "SourceReport",
    "SourceReportRange",
    "VmInfo",
    "VmService",
    "WebSocketVmService",
]
