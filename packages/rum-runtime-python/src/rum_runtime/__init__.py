"""
rum runtime（Python）。

说明：
- 本包把 shell 命令作为脱离终端的后台 run 启动，并持久化其身份与生命周期状态；
- 之后可以 list / info / signal / remove / view 任意 run。
- 当前已包含：
  - RunRecord 编解码（pydantic 校验，JSON 落盘）
  - RunStore（run 目录的创建/前缀解析/枚举/删除）
  - 启动协议（detach + 进程组 + 一次性握手通道）
  - 信号分发（按进程组投递）
  - Tail follower（watchdog 文件变更通知 + 轮询兜底）与终端 live view
"""

from __future__ import annotations

from rum_runtime.api import RunInfo, Runs
from rum_runtime.runtime.signals import SignalKind
from rum_runtime.state.run_record import DoneState, RunRecord, RunningState
from rum_runtime.state.run_store import RunHandle, RunStore

__all__ = [
    "DoneState",
    "RunHandle",
    "RunInfo",
    "RunRecord",
    "RunStore",
    "RunningState",
    "Runs",
    "SignalKind",
    "__version__",
]

__version__ = "0.3.0"
