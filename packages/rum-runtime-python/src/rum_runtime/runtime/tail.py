"""
Tail follower：把持续增长文件的新增字节增量推给消费者。

语义：
- 从 offset 0 开始（每次打开都完整回放历史，不做断点续看）；
- watchdog 监听文件所在目录并按路径过滤，事件经 Queue 交给调用线程；
- 每收到一次变更事件：seek 到 offset，读出全部新增字节，offset 前进实际读到的字节数，
  非空时回调 `on_new_text`（已送达的字节不会重复送达）；
- 事件之间按固定间隔调用 `on_tick`（协作式取消检查），返回真值即正常结束；
- 原生 observer 起不来（例如 inotify 配额耗尽）时退化为 watchdog 的 PollingObserver；
- 监听线程意外死亡：抛 `WatchDisconnected`，不静默卡住。
"""

from __future__ import annotations

import codecs
import logging
import os
from pathlib import Path
from queue import Empty, Queue
from typing import BinaryIO, Callable, Union

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer
from watchdog.observers.api import BaseObserver
from watchdog.observers.polling import PollingObserver

from rum_runtime.core.errors import WatchDisconnected

logger = logging.getLogger(__name__)

DEFAULT_TICK_INTERVAL_SEC = 0.02

_GROWTH_EVENT_TYPES = frozenset({"modified", "created", "closed"})


class _FileChangeHandler(FileSystemEventHandler):
    """只把目标文件的增长类事件放进队列。"""

    def __init__(self, target: Path, events: "Queue[str]") -> None:
        """
        参数：
        - target：被跟随文件的绝对路径
        - events：事件队列（元素为 event_type）
        """

        super().__init__()
        self._target = os.fsdecode(target)
        self._events = events

    def on_any_event(self, event: FileSystemEvent) -> None:
        """watchdog 线程回调。"""

        if event.is_directory or event.event_type not in _GROWTH_EVENT_TYPES:
            return
        if os.fsdecode(event.src_path) != self._target:
            return
        self._events.put(event.event_type)


class _IncrementalReader:
    """按字节 offset 增量读取，并做增量 UTF-8 解码（多字节字符跨两次读取时暂存）。"""

    def __init__(self, fh: BinaryIO) -> None:
        """参数：`fh` 为以二进制模式打开的文件。"""

        self._fh = fh
        self._offset = 0
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    @property
    def offset(self) -> int:
        """已消费的字节数。"""

        return self._offset

    def pump(self, on_new_text: Callable[[str], None]) -> None:
        """读出当前全部新增字节并回调（没有新文本时不回调）。"""

        self._fh.seek(self._offset)
        data = self._fh.read()
        if not data:
            return
        self._offset += len(data)
        text = self._decoder.decode(data)
        if text:
            on_new_text(text)


def _start_observer(handler: FileSystemEventHandler, directory: Path, *, use_polling: bool, tick_interval_sec: float) -> BaseObserver:
    """
    启动 observer；原生实现失败时退化为轮询实现。

    异常：
    - OSError：轮询实现也无法启动
    """

    if not use_polling:
        observer = Observer()
        try:
            observer.schedule(handler, str(directory), recursive=False)
            observer.start()
            return observer
        except OSError as exc:
            logger.warning("native file watch unavailable (%s); falling back to polling", exc)
            if observer.is_alive():
                observer.stop()
                observer.join()

    polling = PollingObserver(timeout=max(tick_interval_sec, 0.01))
    polling.schedule(handler, str(directory), recursive=False)
    polling.start()
    return polling


def _watch_alive(observer: BaseObserver) -> bool:
    """observer 线程与其全部 emitter 线程都还活着。"""

    if not observer.is_alive():
        return False
    return all(emitter.is_alive() for emitter in observer.emitters)


def follow(
    path: Union[str, Path],
    on_new_text: Callable[[str], None],
    on_tick: Callable[[], bool],
    *,
    tick_interval_sec: float = DEFAULT_TICK_INTERVAL_SEC,
    use_polling: bool = False,
) -> None:
    """
    跟随文件增长，直到 `on_tick` 请求停止。

    参数：
    - path：被跟随文件（必须已存在）
    - on_new_text：新增文本回调
    - on_tick：取消检查；返回 True 表示停止（唯一的非错误退出路径）
    - tick_interval_sec：两次取消检查的最长间隔
    - use_polling：直接使用轮询 observer

    异常：
    - FileNotFoundError：文件不存在
    - WatchDisconnected：监听意外断开
    """

    target = Path(path).resolve()
    events: "Queue[str]" = Queue()
    with open(target, "rb") as fh:
        observer = _start_observer(
            _FileChangeHandler(target, events),
            target.parent,
            use_polling=use_polling,
            tick_interval_sec=tick_interval_sec,
        )
        try:
            reader = _IncrementalReader(fh)
            reader.pump(on_new_text)
            while True:
                try:
                    events.get(timeout=tick_interval_sec)
                except Empty:
                    if not _watch_alive(observer):
                        raise WatchDisconnected(
                            f"File watcher for {target} disconnected",
                            details={"path": str(target), "offset": reader.offset},
                        )
                else:
                    reader.pump(on_new_text)
                if on_tick():
                    return
        finally:
            observer.stop()
            observer.join()
