"""
配置加载器（YAML overlays + pydantic 校验）。

规则：
- 默认配置 + `RUM_CONFIG_PATHS`（逗号/分号分隔）中列出的 YAML，按顺序深度合并（后者覆盖前者）；
- pydantic 校验，默认拒绝未知字段（避免拼写错误被静默吞掉）；
- `RUM_STATE_DIR` 覆盖 `state_dir`。
"""

from __future__ import annotations

import os
from copy import deepcopy
from pathlib import Path
from typing import Any, Dict, List, Literal, Mapping, MutableMapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field

from rum_runtime.config.defaults import load_default_config_dict

CONFIG_PATHS_ENV = "RUM_CONFIG_PATHS"
STATE_DIR_ENV = "RUM_STATE_DIR"


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


class RumLaunchConfig(BaseModel):
    """启动协议参数。"""

    model_config = ConfigDict(extra="forbid")

    handshake_timeout_sec: float = Field(default=10.0, gt=0.0)


class RumTailConfig(BaseModel):
    """tail follower 参数。"""

    model_config = ConfigDict(extra="forbid")

    tick_interval_ms: int = Field(default=20, ge=1, le=1000)


class RumLoggingConfig(BaseModel):
    """日志参数（标准库 logging）。"""

    model_config = ConfigDict(extra="forbid")

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "WARNING"


class RumConfig(BaseModel):
    """配置根对象。"""

    model_config = ConfigDict(extra="forbid")

    config_version: int = Field(default=1, ge=1)
    state_dir: Optional[Path] = None
    launch: RumLaunchConfig = Field(default_factory=RumLaunchConfig)
    tail: RumTailConfig = Field(default_factory=RumTailConfig)
    logging: RumLoggingConfig = Field(default_factory=RumLoggingConfig)


def _load_yaml_file(path: Path) -> Dict[str, Any]:
    """读取 YAML 文件为 dict；空文件返回空 dict。"""

    if not path.exists():
        raise FileNotFoundError(f"config file not found: {path}")
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"config root must be a mapping(dict): {path}")
    return data


def _split_paths(raw: str) -> List[str]:
    """将逗号/分号分隔的路径串切分为片段列表（去空白、保序）。"""

    return [s.strip() for s in raw.replace(";", ",").split(",") if s.strip()]


def load_config_dicts(config_dicts: List[Dict[str, Any]]) -> RumConfig:
    """
    合并多个 dict 配置并返回校验后的 `RumConfig`。

    参数：
    - config_dicts：按顺序深度合并（后者覆盖前者）
    """

    merged: Dict[str, Any] = {}
    for overlay in config_dicts:
        if overlay:
            _deep_merge(merged, overlay)
    return RumConfig.model_validate(merged)


def load_config(
    overlay_paths: Optional[List[Path]] = None,
    *,
    env: Optional[Mapping[str, str]] = None,
) -> RumConfig:
    """
    加载有效配置：默认配置 + env overlays + 显式 overlays。

    参数：
    - overlay_paths：额外 YAML overlay（在 env overlays 之后合并）
    - env：环境变量映射（默认 os.environ；测试可注入）

    异常：
    - FileNotFoundError / ValueError：overlay 缺失或根节点不是 mapping
    - pydantic.ValidationError：字段非法
    """

    environ = os.environ if env is None else env
    dicts: List[Dict[str, Any]] = [load_default_config_dict()]
    paths = [Path(p).expanduser() for p in _split_paths(str(environ.get(CONFIG_PATHS_ENV) or ""))]
    paths.extend(Path(p) for p in (overlay_paths or []))
    for p in paths:
        dicts.append(_load_yaml_file(p))

    state_dir = str(environ.get(STATE_DIR_ENV) or "").strip()
    if state_dir:
        dicts.append({"state_dir": state_dir})
    return load_config_dicts(dicts)
