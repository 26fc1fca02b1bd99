"""
Live view：在 raw 终端会话里实时查看 run 的输出。

说明：
- 使用备用屏幕（alternate screen），第 1 行保留给淡色标题栏（提示 + 右对齐的 run id），输出从第 2 行开始；
- 终端处于 raw 模式，换行需要转换为 `\\r\\n`；
- 取消键：Ctrl+C 或 `q`；退出 live view 不影响 run 本身；
- 任何退出路径都恢复终端属性。
"""

from __future__ import annotations

import os
import select
import shutil
import sys
import termios
import tty
from typing import Optional, TextIO

from rum_runtime.core.errors import RumError
from rum_runtime.runtime.tail import DEFAULT_TICK_INTERVAL_SEC, follow
from rum_runtime.state.run_store import RunHandle, RunStore

HEADER_TEXT = "You are currently viewing a run. Press Ctrl+C or q to exit."

_ENTER_ALT_SCREEN = "\x1b[?1049h"
_LEAVE_ALT_SCREEN = "\x1b[?1049l"
_CLEAR_SCREEN = "\x1b[2J"
_SAVE_CURSOR = "\x1b7"
_RESTORE_CURSOR = "\x1b8"
_CLEAR_LINE = "\x1b[2K"
_FAINT = "\x1b[2m"
_NO_FAINT = "\x1b[22m"
_QUIT_BYTES = (b"\x03", b"q")


def _goto(row: int, col: int) -> str:
    """光标定位（1-based）。"""

    return f"\x1b[{row};{col}H"


class LiveView:
    """
    单个 run 的 live view 会话。

    参数：
    - run_id：标题栏右侧显示的 id
    - stdin / stdout：终端流（必须是 TTY）
    """

    def __init__(self, run_id: str, *, stdin: TextIO, stdout: TextIO) -> None:
        """创建会话（尚未切换终端模式）。"""

        self._run_id = run_id
        self._stdin = stdin
        self._stdout = stdout
        self._fd = stdin.fileno()

    def _columns(self) -> int:
        """终端宽度。"""

        try:
            return os.get_terminal_size(self._stdout.fileno()).columns
        except OSError:
            return shutil.get_terminal_size().columns

    def _draw_header(self) -> None:
        """重绘标题栏并把光标放回原处。"""

        col = max(1, self._columns() - len(self._run_id) + 1)
        self._stdout.write(
            _SAVE_CURSOR
            + _goto(1, 1)
            + _CLEAR_LINE
            + _FAINT
            + HEADER_TEXT
            + _goto(1, col)
            + self._run_id
            + _NO_FAINT
            + _RESTORE_CURSOR
        )

    def on_new_text(self, text: str) -> None:
        """输出新文本（raw 模式下换行转 `\\r\\n`）后重绘标题栏。"""

        self._stdout.write(text.replace("\n", "\r\n"))
        self._draw_header()
        self._stdout.flush()

    def on_tick(self) -> bool:
        """非阻塞检查按键；Ctrl+C / q 请求退出。"""

        rlist, _, _ = select.select([self._fd], [], [], 0)
        if not rlist:
            return False
        data = os.read(self._fd, 1024)
        if not data:
            return True
        return any(key in data for key in _QUIT_BYTES)

    def run(self, output_path: os.PathLike[str] | str, *, tick_interval_sec: float) -> None:
        """进入 raw 会话并跟随输出，直到用户退出。"""

        saved = termios.tcgetattr(self._fd)
        try:
            tty.setraw(self._fd)
            self._stdout.write(_ENTER_ALT_SCREEN + _CLEAR_SCREEN + _goto(2, 1))
            self._draw_header()
            self._stdout.flush()
            follow(output_path, self.on_new_text, self.on_tick, tick_interval_sec=tick_interval_sec)
        finally:
            self._stdout.write(_LEAVE_ALT_SCREEN)
            self._stdout.flush()
            termios.tcsetattr(self._fd, termios.TCSADRAIN, saved)


def open_live_view(
    store: RunStore,
    handle: RunHandle,
    *,
    tick_interval_sec: float = DEFAULT_TICK_INTERVAL_SEC,
    stdin: Optional[TextIO] = None,
    stdout: Optional[TextIO] = None,
) -> None:
    """
    打开 run 的 live view。

    异常：
    - CorruptRecord：damaged run
    - RumError(NOT_A_TERMINAL)：stdin/stdout 不是终端
    - WatchDisconnected：监听断开
    """

    store.read_record(handle)
    in_stream = stdin or sys.stdin
    out_stream = stdout or sys.stdout
    if not (in_stream.isatty() and out_stream.isatty()):
        raise RumError(
            "Live view requires an interactive terminal",
            code="NOT_A_TERMINAL",
            details={"run_id": handle.id},
        )
    LiveView(handle.id, stdin=in_stream, stdout=out_stream).run(handle.output_path, tick_interval_sec=tick_interval_sec)
