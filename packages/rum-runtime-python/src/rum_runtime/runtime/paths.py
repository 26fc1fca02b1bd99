from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from rum_runtime.config.loader import RumConfig


@dataclass(frozen=True)
class StatePaths:
    """状态目录与关键文件路径集合。"""

    state_dir: Path
    runs_root: Path
    supervisor_log_path: Path


def default_state_dir(*, env: Optional[Mapping[str, str]] = None) -> Path:
    """`$XDG_DATA_HOME/rum`，缺省 `~/.local/share/rum`。"""

    environ = os.environ if env is None else env
    xdg = str(environ.get("XDG_DATA_HOME") or "").strip()
    base = Path(xdg).expanduser() if xdg else Path.home() / ".local" / "share"
    return base / "rum"


def get_state_paths(config: RumConfig, *, env: Optional[Mapping[str, str]] = None) -> StatePaths:
    """
    获取状态相关路径（均位于 state_dir 下）。

    参数：
    - config：有效配置（`state_dir` 为 None 时走默认位置）
    """

    state_dir = Path(config.state_dir).expanduser() if config.state_dir else default_state_dir(env=env)
    state_dir = state_dir.resolve()
    return StatePaths(
        state_dir=state_dir,
        runs_root=state_dir / "runs",
        supervisor_log_path=state_dir / "supervisor.log",
    )
