"""
Supervisor 进程（启动协议的后台一侧）。

由 `rum_runtime.runtime.launcher` 以 `python -m rum_runtime.runtime.supervisor` 启动，
在 run 的整个生命周期内常驻：

1. detach：`os.setsid()`，脱离控制终端并成为新会话/进程组的 leader；
2. 创建 `output.log`（独占创建，append 模式）；
3. spawn 用户命令：stdin 接 /dev/null，stdout/stderr 都写入 output.log，命令自身成为新进程组 leader；
4. 持久化 `Running{process_group_id}`，然后经握手通道发送成功消息；
5. 等待命令退出，做唯一一次 `Done{end_datetime, exit_code}` 迁移。

任一步（1-4）失败：先删除半成品 run 目录，再发送带标签的失败消息，随后退出。
"""

from __future__ import annotations

import argparse
import logging
import os
import signal
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from rum_runtime.core.errors import CorruptRecord, LaunchErrorKind, RumError, StorageError
from rum_runtime.observability.logging import configure_logging
from rum_runtime.runtime.channel import ChannelWriter, HandshakeMessage
from rum_runtime.state.run_record import (
    EXIT_CODE_CRASHED,
    EXIT_CODE_KILLED,
    RunningState,
    RunRecord,
    utc_now,
)
from rum_runtime.state.run_store import RunHandle, RunStore

logger = logging.getLogger(__name__)


class _StepFailed(Exception):
    """启动步骤失败（仅在本模块内传递）。"""

    def __init__(self, kind: LaunchErrorKind, message: str, details: Dict[str, Any] | None = None) -> None:
        """
        参数：
        - kind：失败步骤
        - message：英文错误消息（会原样转给调用方）
        - details：结构化补充信息
        """

        super().__init__(message)
        self.kind = kind
        self.message = message
        self.details = details or {}


@dataclass
class _Launched:
    """spawn 成功后的内存态。"""

    proc: subprocess.Popen[bytes]
    record: RunRecord


def exit_code_from_returncode(returncode: int) -> int:
    """
    把 `Popen.returncode` 映射为记录中的退出码。

    说明：负值表示被信号终止，统一记为 `-1`（killed）。
    """

    if returncode < 0:
        return EXIT_CODE_KILLED
    return int(returncode)


class Supervisor:
    """
    单个 run 的 supervisor。

    参数：
    - store / handle：目标 run
    - command / label：用户命令与标签
    - channel：握手通道写端
    - detach：是否执行 `os.setsid()`（进程内测试时关闭）
    """

    def __init__(
        self,
        *,
        store: RunStore,
        handle: RunHandle,
        command: List[str],
        label: Optional[str],
        channel: ChannelWriter,
        detach: bool = True,
    ) -> None:
        """创建 supervisor（不产生任何副作用）。"""

        self._store = store
        self._handle = handle
        self._command = list(command)
        self._label = label
        self._channel = channel
        self._detach = detach

    def run(self) -> int:
        """
        执行完整生命周期，返回 supervisor 进程退出码。

        返回：
        - 0：命令已启动并已写入终态（无论命令本身成功与否）
        - 1：启动失败，或终态无法落盘
        """

        try:
            launched = self._launch()
        except _StepFailed as failure:
            self._report_failure(failure)
            return 1

        try:
            self._channel.send(
                HandshakeMessage(ok=True, run_id=self._handle.id, process_group_id=launched.proc.pid)
            )
        except OSError as exc:
            # 调用方已放弃等待（超时）；run 记录已落盘，继续看护。
            logger.warning("run %s: could not deliver launch acknowledgement: %s", self._handle.id, exc)

        exit_code = self._wait(launched.proc)
        return self._finish(launched.record, exit_code)

    def _launch(self) -> _Launched:
        """依次执行 detach / 创建日志 / spawn / 持久化，失败抛 `_StepFailed`。"""

        if self._detach:
            try:
                os.setsid()
            except OSError as exc:
                raise _StepFailed(
                    LaunchErrorKind.FORK_FAILED,
                    f"Could not detach the supervisor into its own session: {exc}",
                    {"step": "setsid", "reason": str(exc)},
                ) from exc

        output_path = self._handle.output_path
        try:
            log_fd = os.open(output_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL | os.O_APPEND, 0o644)
        except OSError as exc:
            raise _StepFailed(
                LaunchErrorKind.COULD_NOT_CREATE_OUTPUT_FILE,
                f"Could not create output file {output_path}: {exc}",
                {"path": str(output_path), "reason": str(exc)},
            ) from exc

        try:
            start_datetime = utc_now()
            try:
                proc = subprocess.Popen(  # noqa: S603
                    self._command,
                    stdin=subprocess.DEVNULL,
                    stdout=log_fd,
                    stderr=subprocess.STDOUT,
                    close_fds=True,
                    start_new_session=True,
                )
            except (OSError, subprocess.SubprocessError, ValueError) as exc:
                raise _StepFailed(
                    LaunchErrorKind.FAILED_TO_SPAWN,
                    f"Failed to spawn {self._command[0]!r}: {exc}",
                    {"command": list(self._command), "reason": str(exc)},
                ) from exc
        finally:
            os.close(log_fd)

        record = RunRecord(
            label=self._label,
            command=self._command,
            start_datetime=start_datetime,
            state=RunningState(process_group_id=proc.pid),
        )
        try:
            self._store.write_record(self._handle, record)
        except StorageError as exc:
            self._abort_child(proc)
            raise _StepFailed(
                LaunchErrorKind.COULD_NOT_PERSIST_RECORD,
                f"Could not persist the record of run {self._handle.id}: {exc.message}",
                dict(exc.details),
            ) from exc

        logger.info("run %s started: pgid=%s command=%s", self._handle.id, proc.pid, self._command)
        return _Launched(proc=proc, record=record)

    def _abort_child(self, proc: subprocess.Popen[bytes]) -> None:
        """记录无法落盘时终止已 spawn 的命令（整个进程组）。"""

        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except OSError:
            proc.kill()
        try:
            proc.wait(timeout=5)
        except subprocess.TimeoutExpired:
            logger.error("run %s: spawned command did not exit after SIGKILL", self._handle.id)

    def _report_failure(self, failure: _StepFailed) -> None:
        """先清理半成品目录，再发送失败消息（保证调用方收到失败时目录已不存在）。"""

        logger.error("run %s failed to launch (%s): %s", self._handle.id, failure.kind.value, failure.message)
        try:
            self._store.remove(self._handle)
        except StorageError as exc:
            logger.error("run %s: could not clean up run directory: %s", self._handle.id, exc)
        details = dict(failure.details)
        details.setdefault("run_id", self._handle.id)
        try:
            self._channel.send(
                HandshakeMessage(
                    ok=False,
                    run_id=self._handle.id,
                    kind=failure.kind,
                    message=failure.message,
                    details=details,
                )
            )
        except OSError as exc:
            logger.warning("run %s: could not deliver launch failure: %s", self._handle.id, exc)

    def _wait(self, proc: subprocess.Popen[bytes]) -> int:
        """等待命令退出；等待本身失败时返回 `-2`（crashed）。"""

        try:
            returncode = proc.wait()
        except (OSError, subprocess.SubprocessError) as exc:
            logger.error("run %s: could not wait for pid %s: %s", self._handle.id, proc.pid, exc)
            return EXIT_CODE_CRASHED
        return exit_code_from_returncode(returncode)

    def _finish(self, record: RunRecord, exit_code: int) -> int:
        """
        写入终态 Done。

        说明：
        - 磁盘上的记录若已损坏，用内存中的 Running 记录重建终态，保证 run 不会永远停在 Running。
        """

        try:
            self._store.update_record(self._handle, lambda r: r.finish(exit_code=exit_code))
        except CorruptRecord:
            logger.warning("run %s: record damaged while running; rewriting from memory", self._handle.id)
            try:
                self._store.write_record(self._handle, record.finish(exit_code=exit_code))
            except StorageError as exc:
                logger.error("run %s: could not persist final state: %s", self._handle.id, exc)
                return 1
        except StorageError as exc:
            logger.error("run %s: could not persist final state: %s", self._handle.id, exc)
            return 1
        logger.info("run %s done: exit_code=%s", self._handle.id, exit_code)
        return 0


def _build_parser() -> argparse.ArgumentParser:
    """supervisor 入口参数（仅供 launcher 使用，非用户接口）。"""

    p = argparse.ArgumentParser(prog="rum-supervisor", add_help=False)
    p.add_argument("--runs-root", required=True)
    p.add_argument("--run-id", required=True)
    p.add_argument("--channel-fd", type=int, required=True)
    p.add_argument("--label", default=None)
    p.add_argument("--log-level", default="WARNING")
    p.add_argument("command", nargs=argparse.REMAINDER)
    return p


def main(argv: Optional[Sequence[str]] = None) -> int:
    """模块入口：解析参数并运行 supervisor。"""

    args = _build_parser().parse_args(list(sys.argv[1:] if argv is None else argv))
    configure_logging(str(args.log_level))
    channel = ChannelWriter(int(args.channel_fd))

    command = list(args.command)
    if command and command[0] == "--":
        command = command[1:]

    try:
        store = RunStore(Path(args.runs_root))
    except RumError as exc:
        logger.error("supervisor could not open runs root: %s", exc)
        channel.close()
        return 1
    handle = store.handle(str(args.run_id))

    if not command:
        failure = _StepFailed(LaunchErrorKind.FAILED_TO_SPAWN, "Given command is empty", {"command": []})
        Supervisor(store=store, handle=handle, command=[], label=None, channel=channel)._report_failure(failure)
        return 1

    supervisor = Supervisor(store=store, handle=handle, command=command, label=args.label, channel=channel)
    return supervisor.run()


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
