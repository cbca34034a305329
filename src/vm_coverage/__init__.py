"""
VM coverage collector（Python）。

说明：
- 通过 VM service 协议从运行中的进程采集行级覆盖率，输出可移植的 JSON 报告；
- 入口：`collect(CollectRequest(...))`（async）或 `collect_sync(...)`；
- 配置：`load_config([...])`（内置 default.yaml + YAML overlays，pydantic 校验）。
"""

from __future__ import annotations

from vm_coverage.collect.collector import CollectRequest, CoverageReport, collect, collect_sync
from vm_coverage.config.loader import VmCoverageConfig, load_config, load_config_dicts
from vm_coverage.core.errors import (
    CollectTimeoutError,
    ConnectTimeoutError,
    PartialAggregationError,
    PauseTimeoutError,
    UserError,
    VmCoverageError,
    VmServiceError,
)

__all__ = [
    "CollectRequest",
    "CollectTimeoutError",
    "ConnectTimeoutError",
    "CoverageReport",
    "PartialAggregationError",
    "PauseTimeoutError",
    "UserError",
    "VmCoverageConfig",
    "VmCoverageError",
    "VmServiceError",
    "__version__",
    "collect",
    "collect_sync",
    "load_config",
    "load_config_dicts",
]

__version__ = "0.3.0"
