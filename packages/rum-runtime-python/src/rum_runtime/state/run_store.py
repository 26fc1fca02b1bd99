"""
RunStore：run 目录注册表。

目录布局（位于 `<state_dir>/runs/` 下）：
- `<run_id>/data.json`：RunRecord
- `<run_id>/output.log`：命令的 stdout+stderr（append-only）

一致性约定：
- run 目录存在即代表该 run id 存在；记录缺失/损坏的目录是 damaged run；
- 单写者：创建之后只有该 run 自己的 supervisor 进程会调用 `update_record`，
  同一 run 被多个进程并发 `update_record` 不受支持（这里不加锁）；
- `write_record` 通过临时文件 + rename 原子替换，读者不会看到写了一半的文档。
"""

from __future__ import annotations

import logging
import os
import shutil
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List

from rum_runtime.core.errors import AmbiguousId, CorruptRecord, NotFound, StorageError
from rum_runtime.state.run_record import RunRecord, decode_run_record, encode_run_record

logger = logging.getLogger(__name__)

RECORD_FILE_NAME = "data.json"
OUTPUT_FILE_NAME = "output.log"


@dataclass(frozen=True)
class RunHandle:
    """run 的引用（id + 目录），本身不携带记录内容。"""

    id: str
    run_dir: Path

    @property
    def record_path(self) -> Path:
        """记录文件路径。"""

        return self.run_dir / RECORD_FILE_NAME

    @property
    def output_path(self) -> Path:
        """输出日志路径。"""

        return self.run_dir / OUTPUT_FILE_NAME


class RunStore:
    """
    run 目录的创建/解析/枚举/删除，以及记录的读写。

    参数：
    - runs_root：所有 run 目录的父目录（不存在时自动创建）
    """

    def __init__(self, runs_root: Path) -> None:
        """创建 RunStore 并确保 runs_root 存在。"""

        self._root = Path(runs_root)
        try:
            self._root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StorageError(
                f"Could not create runs directory {self._root}", details={"path": str(self._root), "reason": str(exc)}
            ) from exc

    @property
    def root(self) -> Path:
        """runs 根目录。"""

        return self._root

    def handle(self, run_id: str) -> RunHandle:
        """按完整 id 构造 handle（不检查存在性）。"""

        return RunHandle(id=run_id, run_dir=self._root / run_id)

    def create(self) -> RunHandle:
        """
        分配新的 run id 并创建其目录。

        异常：
        - StorageError：目录无法创建（权限、磁盘满等）
        """

        run_id = str(uuid.uuid4())
        handle = self.handle(run_id)
        try:
            handle.run_dir.mkdir(parents=False, exist_ok=False)
        except OSError as exc:
            raise StorageError(
                f"Could not create run directory for {run_id}",
                details={"run_id": run_id, "path": str(handle.run_dir), "reason": str(exc)},
            ) from exc
        logger.debug("created run directory %s", handle.run_dir)
        return handle

    def list(self) -> List[RunHandle]:
        """
        枚举全部 run 目录（按 id 排序）。

        说明：
        - 不解析记录：单个 damaged run 不应中断其余 run 的枚举，解析/校验由调用方负责；
        - 非目录项与点号开头的临时项被忽略。
        """

        try:
            entries = list(os.scandir(self._root))
        except OSError as exc:
            raise StorageError(
                f"Could not open runs directory {self._root}", details={"path": str(self._root), "reason": str(exc)}
            ) from exc
        out: List[RunHandle] = []
        for entry in entries:
            if entry.name.startswith("."):
                continue
            try:
                is_dir = entry.is_dir(follow_symlinks=False)
            except OSError:
                logger.warning("skipping unreadable entry in runs directory: %s", entry.path)
                continue
            if is_dir:
                out.append(self.handle(entry.name))
        out.sort(key=lambda h: h.id)
        return out

    def resolve(self, query: str) -> RunHandle:
        """
        把 id 或唯一前缀解析为 handle。

        规则：
        - 完整 id 精确命中时直接返回（即使它也是其它 id 的前缀）；
        - 0 个匹配：NotFound；多于 1 个：AmbiguousId（不做静默选择）。
        """

        q = str(query or "").strip()
        if not q:
            raise NotFound(str(query))
        matches = [h for h in self.list() if h.id.startswith(q)]
        for h in matches:
            if h.id == q:
                return h
        if not matches:
            raise NotFound(q)
        if len(matches) > 1:
            raise AmbiguousId(q, [h.id for h in matches])
        return matches[0]

    def remove(self, handle: RunHandle) -> None:
        """
        删除 run 目录树（记录 + 日志）。

        说明：
        - “不可删除运行中的 run” 这一前置条件由调用方检查；
        - 先 rename 到点号临时名再删除：对其它读者而言目录是一次性消失的。
        """

        tombstone = self._root / f".removing-{handle.id}"
        try:
            os.replace(handle.run_dir, tombstone)
            shutil.rmtree(tombstone)
        except OSError as exc:
            raise StorageError(
                f"Could not remove run {handle.id}",
                details={"run_id": handle.id, "path": str(handle.run_dir), "reason": str(exc)},
            ) from exc
        logger.debug("removed run %s", handle.id)

    def read_record(self, handle: RunHandle) -> RunRecord:
        """
        读取并校验记录。

        异常：
        - CorruptRecord：文件缺失或解析失败
        """

        try:
            text = handle.record_path.read_text(encoding="utf-8")
        except FileNotFoundError as exc:
            raise CorruptRecord(handle.id, "record file is missing") from exc
        except OSError as exc:
            raise CorruptRecord(handle.id, f"record file is unreadable: {exc}") from exc
        return decode_run_record(text, run_id=handle.id)

    def write_record(self, handle: RunHandle, record: RunRecord) -> None:
        """
        原子写入记录（临时文件 + rename）。

        异常：
        - StorageError：I/O 失败
        """

        path = handle.record_path
        tmp = path.with_name(f".{path.name}.tmp")
        try:
            with open(tmp, "w", encoding="utf-8") as f:
                f.write(encode_run_record(record))
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, path)
        except OSError as exc:
            raise StorageError(
                f"Could not write record of run {handle.id}",
                details={"run_id": handle.id, "path": str(path), "reason": str(exc)},
            ) from exc

    def update_record(self, handle: RunHandle, fn: Callable[[RunRecord], RunRecord]) -> RunRecord:
        """
        read-modify-write，返回最终落盘的记录。

        约束：
        - 已是 Done 的记录不再变化：此时 `fn` 不会被调用，直接返回现有记录；
        - 非事务：只有该 run 的 supervisor 会写它。
        """

        current = self.read_record(handle)
        if current.is_done:
            logger.debug("run %s already done; update ignored", handle.id)
            return current
        updated = fn(current)
        self.write_record(handle, updated)
        return updated
