"""
覆盖率采集错误分类（异常类型）。

说明：
- 所有异常都携带稳定的 `code/message/details`，便于调用方（测试 runner / CI）做程序化处理；
- 致命错误（连接超时、等待 pause 超时）必须与正常返回值在类型上可区分；
- 聚合阶段失败默认只写入叙述输出（narrate），仅在显式配置时以 `PartialAggregationError` 抛出。
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, Optional

if TYPE_CHECKING:
    from vm_coverage.collect.collector import CoverageReport


@dataclass(frozen=True)
class CoverageIssue:
    """结构化问题对象（可 JSON 序列化）。"""

    code: str
    message: str
    details: Dict[str, Any]


class VmCoverageError(Exception):
    """采集错误基类（不建议直接抛出）。"""

    default_code = "VM_COVERAGE_ERROR"

    def __init__(self, message: str, *, code: Optional[str] = None, details: Dict[str, Any] | None = None) -> None:
        """创建错误。

        参数：
        - `message`：英文错误消息
        - `code`：稳定错误码（缺省使用类上的 `default_code`）
        - `details`：结构化上下文信息
        """

        super().__init__(message)
        self.code = code or self.default_code
        self.message = message
        self.details: Dict[str, Any] = details or {}

    def __str__(self) -> str:
        """返回用于日志/叙述输出的字符串表示。"""

        return f"{self.code}: {self.message}"

    def to_issue(self) -> CoverageIssue:
        """把异常转换为可序列化问题对象。"""

        return CoverageIssue(code=self.code, message=self.message, details=dict(self.details))


class UserError(VmCoverageError):
    """用户输入/配置导致的错误（例如缺少或非法的 service URI）。"""

    default_code = "USER_ERROR"


class CollectTimeoutError(VmCoverageError):
    """
    Retry Driver 的整体超时（"collection timed out"）。

    说明：
    - 与被重试操作自身抛出的异常类型无关；只表示“在时间窗口内未能成功”。
    """

    default_code = "COLLECT_TIMEOUT"


class ConnectTimeoutError(CollectTimeoutError):
    """在超时窗口内无法连接到 VM service（致命，未产生任何报告）。"""

    default_code = "CONNECT_TIMEOUT"


class PauseTimeoutError(CollectTimeoutError):
    """在超时窗口内仍有 isolate 未进入 paused 状态（致命）。"""

    default_code = "ISOLATES_NOT_PAUSED"


class VmServiceError(VmCoverageError):
    """
    VM service 通信/协议错误（JSON-RPC error、连接断开、响应格式异常）。

    字段：
    - rpc_code：JSON-RPC error code（非 RPC 错误时为 None）
    """

    default_code = "VM_SERVICE_ERROR"

    def __init__(
        self,
        message: str,
        *,
        rpc_code: Optional[int] = None,
        code: Optional[str] = None,
        details: Dict[str, Any] | None = None,
    ) -> None:
        """创建 VM service 错误（可选携带 JSON-RPC error code）。"""

        merged = dict(details or {})
        if rpc_code is not None:
            merged.setdefault("rpc_code", int(rpc_code))
        super().__init__(message, code=code, details=merged)
        self.rpc_code = rpc_code


class PartialAggregationError(VmCoverageError):
    """
    聚合中途失败（仅在 `aggregation_errors="raise"` 时抛出）。

    字段：
    - report：失败前已合并完成的部分报告（`complete=False`）
    """

    default_code = "PARTIAL_AGGREGATION"

    def __init__(self, message: str, *, report: "CoverageReport", details: Dict[str, Any] | None = None) -> None:
        """创建部分聚合失败错误，并携带已收集的部分报告。"""

        super().__init__(message, details=details)
        self.report = report
