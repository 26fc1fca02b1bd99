from __future__ import annotations

import threading
import time
from pathlib import Path
from typing import List

import pytest

import rum_runtime.runtime.tail as tail_mod
from rum_runtime.core.errors import WatchDisconnected
from rum_runtime.runtime.tail import _IncrementalReader, follow


class _Collector:
    """在后台线程里跟随文件，并把回调结果收集起来。"""

    def __init__(self, path: Path, *, use_polling: bool = False) -> None:
        """参数：`path` 为被跟随文件。"""

        self.chunks: List[str] = []
        self.errors: List[BaseException] = []
        self._path = path
        self._use_polling = use_polling
        self._got = threading.Event()
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._run, daemon=True)

    def _run(self) -> None:
        """线程主体。"""

        try:
            follow(
                self._path,
                self._on_text,
                self._stop.is_set,
                tick_interval_sec=0.01,
                use_polling=self._use_polling,
            )
        except BaseException as exc:  # noqa: BLE001
            self.errors.append(exc)

    def _on_text(self, text: str) -> None:
        """收集一块新文本。"""

        self.chunks.append(text)
        self._got.set()

    def start(self) -> None:
        """启动并给 observer 一点注册时间。"""

        self._thread.start()
        time.sleep(0.3)

    def wait_for_text(self, timeout_sec: float = 5.0) -> bool:
        """等待下一次回调。"""

        ok = self._got.wait(timeout_sec)
        self._got.clear()
        return ok

    def stop(self) -> None:
        """请求取消并等待线程结束。"""

        self._stop.set()
        self._thread.join(5)
        assert not self._thread.is_alive()


def _append(path: Path, data: bytes) -> None:
    """以追加方式写入。"""

    with open(path, "ab") as f:
        f.write(data)


@pytest.mark.parametrize("use_polling", [False, True])
def test_each_append_is_delivered_once_in_order(tmp_path: Path, use_polling: bool) -> None:
    path = tmp_path / "output.log"
    path.write_bytes(b"")
    collector = _Collector(path, use_polling=use_polling)
    collector.start()

    _append(path, b"abc")
    assert collector.wait_for_text()
    _append(path, b"def\n")
    assert collector.wait_for_text()
    time.sleep(0.2)
    collector.stop()

    assert collector.errors == []
    assert collector.chunks == ["abc", "def\n"]


def test_existing_content_is_replayed_from_the_beginning(tmp_path: Path) -> None:
    path = tmp_path / "output.log"
    path.write_bytes(b"line 1\nline 2\n")
    collector = _Collector(path)
    collector.start()
    assert collector.chunks == ["line 1\nline 2\n"]
    _append(path, b"line 3\n")
    deadline = time.monotonic() + 5
    while len(collector.chunks) < 2 and time.monotonic() < deadline:
        time.sleep(0.01)
    collector.stop()
    assert collector.chunks == ["line 1\nline 2\n", "line 3\n"]


def test_cancellation_on_first_tick_returns_normally(tmp_path: Path) -> None:
    path = tmp_path / "output.log"
    path.write_bytes(b"hello")
    chunks: List[str] = []
    follow(path, chunks.append, lambda: True, tick_interval_sec=0.01)
    assert chunks == ["hello"]


def test_missing_file_is_an_error(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        follow(tmp_path / "nope.log", lambda _: None, lambda: True)


def test_dead_watch_raises_instead_of_hanging(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    path = tmp_path / "output.log"
    path.write_bytes(b"")
    monkeypatch.setattr(tail_mod, "_watch_alive", lambda observer: False)
    with pytest.raises(WatchDisconnected) as ei:
        follow(path, lambda _: None, lambda: False, tick_interval_sec=0.01)
    assert ei.value.code == "WATCH_DISCONNECTED"
    assert ei.value.details["path"] == str(path.resolve())


def test_multibyte_character_split_across_reads(tmp_path: Path) -> None:
    path = tmp_path / "output.log"
    encoded = "é".encode("utf-8")
    path.write_bytes(encoded[:1])
    chunks: List[str] = []
    with open(path, "rb") as fh:
        reader = _IncrementalReader(fh)
        reader.pump(chunks.append)
        assert chunks == []
        assert reader.offset == 1
        _append(path, encoded[1:] + b"!")
        reader.pump(chunks.append)
        reader.pump(chunks.append)
    assert chunks == ["é!"]
    assert reader.offset == len(encoded) + 1
