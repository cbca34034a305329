"""配置（YAML overlay + pydantic 校验）。"""

from __future__ import annotations

from vm_coverage.config.defaults import load_default_config_dict
from vm_coverage.config.loader import VmCoverageConfig, load_config, load_config_dicts

__all__ = ["VmCoverageConfig", "load_config", "load_config_dicts", "load_default_config_dict"]
