"""
信号分发：向运行中 run 的进程组投递 POSIX 信号。

说明：
- 命令以 `start_new_session=True` 启动，进程组 id 即命令 pid；按组投递可覆盖命令派生的整棵进程树，
  且不会波及 supervisor（它在另一个进程组里，负责观察退出并写终态）；
- 投递失败不重试，也不当作成功。
"""

from __future__ import annotations

import logging
import os
import signal
from enum import Enum

from rum_runtime.core.errors import AlreadyFinished, SignalDeliveryFailed
from rum_runtime.state.run_record import RunningState
from rum_runtime.state.run_store import RunHandle, RunStore

logger = logging.getLogger(__name__)


class SignalKind(str, Enum):
    """对外暴露的三种信号。"""

    INTERRUPT = "interrupt"
    TERMINATE = "terminate"
    KILL = "kill"

    @property
    def signum(self) -> signal.Signals:
        """对应的 POSIX 信号。"""

        return _SIGNUMS[self]


_SIGNUMS = {
    SignalKind.INTERRUPT: signal.SIGINT,
    SignalKind.TERMINATE: signal.SIGTERM,
    SignalKind.KILL: signal.SIGKILL,
}


def send_signal(store: RunStore, handle: RunHandle, kind: SignalKind) -> None:
    """
    向 run 的进程组发送信号。

    参数：
    - store / handle：目标 run
    - kind：信号种类

    异常：
    - CorruptRecord：记录损坏（单 run 操作视为硬错误）
    - AlreadyFinished：run 已是 Done
    - SignalDeliveryFailed：进程组已消失（读记录与发信号之间命令刚好退出）或无权限
    """

    record = store.read_record(handle)
    state = record.state
    if not isinstance(state, RunningState):
        raise AlreadyFinished(handle.id)

    sig = SignalKind(kind).signum
    try:
        os.killpg(state.process_group_id, sig)
    except OSError as exc:
        raise SignalDeliveryFailed(
            f"Could not send {sig.name} to run {handle.id}: {exc.strerror or exc}",
            details={"run_id": handle.id, "signal": sig.name, "process_group_id": state.process_group_id},
        ) from exc
    logger.info("sent %s to run %s (pgid=%s)", sig.name, handle.id, state.process_group_id)
