"""
启动协议（调用方一侧）。

流程：
1. 校验 command 非空；创建握手通道与 run 目录；
2. 以 `python -m rum_runtime.runtime.supervisor` 启动后台 supervisor（stdio 不占用调用方终端）；
3. 在通道上阻塞等待唯一一条消息：成功即返回，失败原样上抛。

为什么需要通道：detach 之后调用方拿不到子进程的返回码/输出，
没有握手就可能在命令根本没跑起来（例如可执行文件不存在）时报告“已启动”。
"""

from __future__ import annotations

import contextlib
import logging
import os
import signal
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from rum_runtime.core.errors import CorruptRecord, LaunchError, LaunchErrorKind, StorageError
from rum_runtime.runtime.channel import open_channel
from rum_runtime.state.run_store import RunHandle, RunStore

logger = logging.getLogger(__name__)

SUPERVISOR_MODULE = "rum_runtime.runtime.supervisor"


@dataclass(frozen=True)
class LaunchResult:
    """启动成功的结果。"""

    handle: RunHandle
    process_group_id: int

    @property
    def run_id(self) -> str:
        """run id。"""

        return self.handle.id


def _supervisor_env(base_env: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    """
    构造 supervisor 进程的环境变量。

    说明：
    - 测试/嵌入式场景下，当前进程可能经由 `sys.path`（pytest pythonpath）加载本包，
      但环境里没有 `PYTHONPATH`；后台进程此时会 import 失败，因此补上包所在目录；
    - 相对 PYTHONPATH 归一化为绝对路径（supervisor 的 cwd 与调用方一致，但命令可能 chdir）。
    """

    env = dict(os.environ if base_env is None else base_env)
    if not str(env.get("PYTHONPATH") or "").strip():
        import rum_runtime as _rum_runtime  # local import to avoid circular

        env["PYTHONPATH"] = str(Path(_rum_runtime.__file__).resolve().parent.parent)

    parts: List[str] = []
    base = Path.cwd().resolve()
    for raw in str(env.get("PYTHONPATH") or "").split(os.pathsep):
        if not raw:
            continue
        p = Path(raw)
        if not p.is_absolute():
            p = (base / p).resolve()
        parts.append(str(p))
    if parts:
        env["PYTHONPATH"] = os.pathsep.join(parts)
    return env


class Launcher:
    """
    后台 run 的启动器。

    参数：
    - store：RunStore
    - supervisor_log_path：supervisor 的 stdout/stderr 追加写入位置
    - handshake_timeout_sec：等待握手消息的上限
    - log_level：传给 supervisor 的日志级别
    """

    def __init__(
        self,
        store: RunStore,
        *,
        supervisor_log_path: Path,
        handshake_timeout_sec: float = 10.0,
        log_level: str = "WARNING",
    ) -> None:
        """创建启动器。"""

        self._store = store
        self._supervisor_log_path = Path(supervisor_log_path)
        self._handshake_timeout_sec = float(handshake_timeout_sec)
        self._log_level = str(log_level)

    def _supervisor_argv(self, handle: RunHandle, *, channel_fd: int, command: Sequence[str], label: Optional[str]) -> List[str]:
        """拼出 supervisor 的 argv（用户命令放在 `--` 之后）。"""

        argv = [
            sys.executable,
            "-m",
            SUPERVISOR_MODULE,
            f"--runs-root={self._store.root}",
            f"--run-id={handle.id}",
            f"--channel-fd={channel_fd}",
            f"--log-level={self._log_level}",
        ]
        if label is not None:
            argv.append(f"--label={label}")
        argv.append("--")
        argv.extend(command)
        return argv

    def start(self, command: Sequence[str], label: Optional[str] = None) -> LaunchResult:
        """
        启动后台 run，并在 supervisor 确认后返回。

        参数：
        - command：非空 argv
        - label：可选标签

        返回：
        - LaunchResult：此时 `Running` 记录已落盘（紧随其后的 list/info 一定能看到该 run）

        异常：
        - ValueError：command 为空（不会创建任何 run）
        - StorageError：run 目录无法创建
        - LaunchError：任一启动步骤失败；不会残留 run 目录
        """

        argv = [str(x) for x in command]
        if not argv:
            raise ValueError("command must not be empty")

        # 先建通道再建目录：通道失败时不留下没有记录的 run 目录
        try:
            reader, write_fd = open_channel()
        except OSError as exc:
            raise LaunchError(
                LaunchErrorKind.FORK_FAILED,
                f"Could not create the launch channel: {exc}",
                details={"reason": str(exc)},
            ) from exc
        try:
            handle = self._store.create()
        except StorageError:
            reader.close()
            os.close(write_fd)
            raise

        try:
            self._supervisor_log_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self._supervisor_log_path, "ab") as log_f:
                proc = subprocess.Popen(  # noqa: S603
                    self._supervisor_argv(handle, channel_fd=write_fd, command=argv, label=label),
                    env=_supervisor_env(),
                    stdin=subprocess.DEVNULL,
                    stdout=log_f,
                    stderr=log_f,
                    close_fds=True,
                    pass_fds=(write_fd,),
                )
        except (OSError, subprocess.SubprocessError) as exc:
            reader.close()
            self._discard(handle)
            raise LaunchError(
                LaunchErrorKind.FORK_FAILED,
                f"Could not start the supervisor for run {handle.id}: {exc}",
                details={"run_id": handle.id, "reason": str(exc)},
            ) from exc
        finally:
            os.close(write_fd)

        try:
            message = reader.receive(timeout_sec=self._handshake_timeout_sec, run_id=handle.id)
        except LaunchError:
            self._abandon(proc, handle)
            raise

        if not message.ok:
            # supervisor 已删除目录并即将退出；顺手回收，避免僵尸进程。
            try:
                proc.wait(timeout=self._handshake_timeout_sec)
            except subprocess.TimeoutExpired:
                logger.warning("supervisor of run %s did not exit after reporting failure", handle.id)
            kind = message.kind or LaunchErrorKind.CHANNEL_COMMUNICATION_LOST
            details = dict(message.details)
            details.setdefault("run_id", handle.id)
            raise LaunchError(kind, message.message or f"Run {handle.id} failed to launch", details=details)

        logger.info("run %s launched (pgid=%s)", handle.id, message.process_group_id)
        return LaunchResult(handle=handle, process_group_id=int(message.process_group_id or 0))

    def _discard(self, handle: RunHandle) -> None:
        """删除 supervisor 没机会清理的 run 目录。"""

        if not handle.run_dir.exists():
            return
        try:
            self._store.remove(handle)
        except StorageError as exc:
            logger.error("could not remove run directory of failed launch %s: %s", handle.id, exc)

    def _abandon(self, proc: subprocess.Popen[bytes], handle: RunHandle) -> None:
        """
        握手丢失后的收尾：终止 supervisor，若命令已被 spawn 也一并终止，然后删除目录。

        说明：
        - 通信丢失视为致命，不重试；
        - 命令进程组只能从 `Running` 记录得知：若 supervisor 恰好在 spawn 之后、落盘之前被杀，
          这里找不到 pgid，命令会在没有 supervisor 的情况下继续运行（其目录仍会被删除）。
          该窗口只在握手超时后才会出现。
        """

        if proc.poll() is None:
            proc.kill()
            try:
                proc.wait(timeout=5)
            except subprocess.TimeoutExpired:
                logger.error("supervisor of run %s did not exit after SIGKILL", handle.id)
        try:
            record = self._store.read_record(handle)
        except CorruptRecord:
            record = None
        if record is not None and record.is_running:
            with contextlib.suppress(OSError):
                os.killpg(record.state.process_group_id, signal.SIGKILL)  # type: ignore[union-attr]
        self._discard(handle)
