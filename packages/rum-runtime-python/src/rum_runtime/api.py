"""
对外稳定入口：`Runs`（CLI 等上层只依赖这里）。

操作：
- `start_run(command, label)` / `list_runs()` / `get_run(id_or_prefix)`
- `remove_run(run)` / `send_signal(run, kind)` / `open_live_view(run)`

错误策略：
- 批量操作（list）遇到 damaged run：warning 并跳过，不中断其余 run；
- 单 run 操作遇到 damaged run：`CorruptRecord` 硬错误（remove 除外：damaged run 允许删除）。
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from rum_runtime.config.loader import RumConfig, load_config
from rum_runtime.core.errors import CorruptRecord, StillRunning
from rum_runtime.runtime.launcher import Launcher
from rum_runtime.runtime.live_view import open_live_view
from rum_runtime.runtime.paths import get_state_paths
from rum_runtime.runtime.signals import SignalKind, send_signal
from rum_runtime.state.run_record import RunRecord
from rum_runtime.state.run_store import RunHandle, RunStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RunInfo:
    """run 引用 + 已解析的记录。"""

    handle: RunHandle
    record: RunRecord

    @property
    def id(self) -> str:
        """run id。"""

        return self.handle.id


class Runs:
    """
    run 管理门面。

    参数：
    - store：RunStore
    - launcher：启动器
    - tick_interval_sec：live view 的取消检查间隔
    """

    def __init__(self, store: RunStore, *, launcher: Launcher, tick_interval_sec: float = 0.02) -> None:
        """创建门面。"""

        self._store = store
        self._launcher = launcher
        self._tick_interval_sec = float(tick_interval_sec)

    @classmethod
    def from_config(cls, config: Optional[RumConfig] = None) -> "Runs":
        """按配置（缺省加载有效配置）构造，状态目录不存在时自动创建。"""

        cfg = config or load_config()
        paths = get_state_paths(cfg)
        store = RunStore(paths.runs_root)
        launcher = Launcher(
            store,
            supervisor_log_path=paths.supervisor_log_path,
            handshake_timeout_sec=cfg.launch.handshake_timeout_sec,
            log_level=cfg.logging.level,
        )
        return cls(store, launcher=launcher, tick_interval_sec=cfg.tail.tick_interval_ms / 1000.0)

    @property
    def store(self) -> RunStore:
        """底层 RunStore。"""

        return self._store

    def start_run(self, command: Sequence[str], label: Optional[str] = None) -> RunInfo:
        """启动后台 run；返回时其记录已可见。"""

        result = self._launcher.start(command, label)
        return RunInfo(handle=result.handle, record=self._store.read_record(result.handle))

    def _scan(self) -> Tuple[List[RunInfo], List[RunHandle]]:
        """解析全部 run，返回 (正常 runs, damaged runs)。"""

        ok: List[RunInfo] = []
        damaged: List[RunHandle] = []
        for handle in self._store.list():
            try:
                ok.append(RunInfo(handle=handle, record=self._store.read_record(handle)))
            except CorruptRecord as exc:
                logger.warning("skipping damaged run %s: %s", handle.id, exc.reason)
                damaged.append(handle)
        return ok, damaged

    def list_runs(self) -> List[RunInfo]:
        """全部可解析的 run，按 start_datetime 升序。"""

        ok, _ = self._scan()
        ok.sort(key=lambda info: (info.record.start_datetime, info.id))
        return ok

    def list_damaged(self) -> List[RunHandle]:
        """记录缺失或损坏的 run 目录。"""

        _, damaged = self._scan()
        return damaged

    def get_run(self, id_or_prefix: str) -> RunHandle:
        """按 id 或唯一前缀解析（NotFound / AmbiguousId）。"""

        return self._store.resolve(id_or_prefix)

    def read_record(self, run: RunHandle) -> RunRecord:
        """读取单个 run 的记录（damaged 时抛 CorruptRecord）。"""

        return self._store.read_record(run)

    def remove_run(self, run: RunHandle) -> None:
        """
        删除 run。

        异常：
        - StillRunning：run 仍在运行（不会静默杀进程）
        - StorageError：删除失败
        """

        try:
            record = self._store.read_record(run)
        except CorruptRecord:
            logger.info("removing damaged run %s", run.id)
            record = None
        if record is not None and record.is_running:
            raise StillRunning(run.id)
        self._store.remove(run)

    def send_signal(self, run: RunHandle, kind: SignalKind) -> None:
        """向 run 的进程组发信号。"""

        send_signal(self._store, run, kind)

    def open_live_view(self, run: RunHandle) -> None:
        """在当前终端打开 live view。"""

        open_live_view(self._store, run, tick_interval_sec=self._tick_interval_sec)
