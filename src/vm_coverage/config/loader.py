"""
配置加载器（YAML）。

设计目标：
- 内置默认配置 + 多个 YAML overlay，按顺序做深度合并（后者覆盖前者）；
- 使用 pydantic 做 schema 校验；默认拒绝未知字段（避免拼写错误被静默吞掉）。
"""

from __future__ import annotations

from copy import deepcopy
from pathlib import Path
from typing import Any, Dict, Literal, Mapping, MutableMapping, Optional
from urllib.parse import urlsplit

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

from vm_coverage.config.defaults import load_default_config_dict

_SUPPORTED_SCHEMES = frozenset({"http", "https", "ws", "wss"})


def _deep_merge(base: MutableMapping[str, Any], overlay: Mapping[str, Any]) -> MutableMapping[str, Any]:
    """
    深度合并两个 dict（overlay 覆盖 base）。

    合并规则：
    - dict + dict：递归合并
    - 其它类型（含 list）：overlay 直接覆盖
    """

    for key, overlay_value in overlay.items():
        if key in base and isinstance(base[key], dict) and isinstance(overlay_value, Mapping):
            _deep_merge(base[key], overlay_value)  # type: ignore[arg-type]
            continue
        base[key] = deepcopy(overlay_value)
    return base


class VmCoverageConfig(BaseModel):
    """采集配置（最小集合）。"""

    model_config = ConfigDict(extra="forbid")

    config_version: int = Field(default=1, ge=1)
    service_uri: Optional[str] = None
    resume: bool = False
    wait_paused: bool = False
    timeout_sec: Optional[float] = Field(default=None, gt=0)
    retry_interval_ms: int = Field(default=200, ge=1)
    force_compile: bool = True
    aggregation_errors: Literal["narrate", "raise"] = "narrate"

    @field_validator("service_uri")
    @classmethod
    def _validate_service_uri(cls, value: Optional[str]) -> Optional[str]:
        """service_uri 必须是 http/https/ws/wss 且包含 host。"""

        if value is None:
            return None
        raw = value.strip()
        parts = urlsplit(raw)
        if parts.scheme.lower() not in _SUPPORTED_SCHEMES or not parts.hostname:
            raise ValueError(f"service_uri must be an http(s)/ws(s) URI with a host: {value!r}")
        return raw


def _load_yaml_file(path: Path) -> Dict[str, Any]:
    """读取 YAML 文件为 dict；空文件返回空 dict。"""

    if not path.exists():
        raise FileNotFoundError(f"配置文件不存在：{path}")
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"配置文件根节点必须为 mapping(dict)：{path}")
    return data


def load_config_dicts(config_dicts: list[Dict[str, Any]], *, include_defaults: bool = True) -> VmCoverageConfig:
    """
    加载并合并多个 dict 配置，返回校验后的 `VmCoverageConfig`。

    参数：
    - config_dicts：按顺序做深度合并（后者覆盖前者）
    - include_defaults：是否以内置 default.yaml 作为最底层
    """

    merged: Dict[str, Any] = load_default_config_dict() if include_defaults else {}
    for overlay in config_dicts:
        if not overlay:
            continue
        _deep_merge(merged, overlay)
    return VmCoverageConfig.model_validate(merged)


def load_config(config_paths: list[Path], *, include_defaults: bool = True) -> VmCoverageConfig:
    """
    加载并合并多个 YAML 配置文件。

    参数：
    - config_paths：YAML 路径列表；按顺序合并（后者覆盖前者）
    """

    overlays = [_load_yaml_file(Path(path)) for path in config_paths]
    return load_config_dicts(overlays, include_defaults=include_defaults)
