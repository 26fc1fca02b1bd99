from __future__ import annotations

import json
import logging
import os
import sys
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator

import pytest

from rum_runtime.cli.main import main
from rum_runtime.state.run_record import DoneState, RunningState, RunRecord
from rum_runtime.state.run_store import RunHandle, RunStore


@pytest.fixture
def state_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[Path]:
    """隔离的状态目录（同时清掉外部 overlay）；结束后还原 CLI 改过的根 logger。"""

    d = tmp_path / "state"
    monkeypatch.setenv("RUM_STATE_DIR", str(d))
    monkeypatch.delenv("RUM_CONFIG_PATHS", raising=False)
    root = logging.getLogger()
    saved_handlers, saved_level = root.handlers[:], root.level
    yield d
    root.handlers[:] = saved_handlers
    root.setLevel(saved_level)


def _put(state_dir: Path, run_id: str, *, done: bool = True, label: str | None = None) -> RunHandle:
    """直接在状态目录里写入 run。"""

    store = RunStore(state_dir / "runs")
    handle = store.handle(run_id)
    handle.run_dir.mkdir()
    start = datetime(2026, 2, 9, 12, 0, 0, tzinfo=timezone.utc)
    state = DoneState(end_datetime=start, exit_code=-1) if done else RunningState(process_group_id=4242)
    store.write_record(handle, RunRecord(label=label, command=["echo", "hi there"], start_datetime=start, state=state))
    return handle


def test_list_json_on_empty_state(state_dir: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["list", "--json"]) == 0
    assert json.loads(capsys.readouterr().out) == []


def test_list_table_shows_runs(state_dir: Path, capsys: pytest.CaptureFixture[str]) -> None:
    _put(state_dir, "abc123", label="nightly")
    assert main(["list"]) == 0
    out = capsys.readouterr().out
    assert out.splitlines()[0].startswith("ID")
    assert "abc123" in out
    assert "nightly" in out
    assert "echo 'hi there'" in out
    assert "done (exit code = -1)" in out


def test_info_by_prefix(state_dir: Path, capsys: pytest.CaptureFixture[str]) -> None:
    _put(state_dir, "abc123")
    assert main(["info", "abc", "--json"]) == 0
    obj = json.loads(capsys.readouterr().out)
    assert obj["id"] == "abc123"
    assert obj["state"]["Done"]["exit_code"] == -1

    assert main(["info", "abc"]) == 0
    out = capsys.readouterr().out
    assert "Exit code: none (killed)" in out


@pytest.mark.parametrize(
    ("argv", "code"),
    [
        (["info", "zzz"], "RUN_NOT_FOUND"),
        (["info", "ab"], "RUN_ID_AMBIGUOUS"),
        (["terminate", "abc"], "RUN_ALREADY_FINISHED"),
        (["info", "broken"], "RUN_RECORD_CORRUPT"),
    ],
)
def test_errors_are_one_line_on_stderr(state_dir: Path, capsys: pytest.CaptureFixture[str], argv: list[str], code: str) -> None:
    _put(state_dir, "abc123")
    _put(state_dir, "abd456")
    (state_dir / "runs" / "broken").mkdir()
    assert main(argv) == 1
    err = capsys.readouterr().err
    assert err.startswith(f"error: {code}: ")


def test_remove_with_yes_skips_prompt(state_dir: Path, capsys: pytest.CaptureFixture[str]) -> None:
    handle = _put(state_dir, "abc123")
    assert main(["remove", "--yes", "abc"]) == 0
    assert "Deleted abc123." in capsys.readouterr().out
    assert not handle.run_dir.exists()


def test_remove_prompt_declined_keeps_run(state_dir: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    handle = _put(state_dir, "abc123")
    monkeypatch.setattr("builtins.input", lambda prompt="": "n")
    assert main(["remove", "abc123"]) == 0
    assert handle.run_dir.exists()


def test_remove_running_run_fails_but_continues(state_dir: Path, capsys: pytest.CaptureFixture[str]) -> None:
    live = _put(state_dir, "live1", done=False)
    finished = _put(state_dir, "done1")
    assert main(["remove", "-y", "live1", "done1"]) == 1
    captured = capsys.readouterr()
    assert "RUN_STILL_RUNNING" in captured.err
    assert live.run_dir.exists()
    assert not finished.run_dir.exists()


def test_usage_errors_exit_2(state_dir: Path) -> None:
    assert main([]) == 2
    assert main(["start"]) == 2
    assert main(["bogus"]) == 2


def test_invalid_config_exits_2(state_dir: Path, tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]) -> None:
    overlay = tmp_path / "bad.yaml"
    overlay.write_text("nope: 1\n", encoding="utf-8")
    monkeypatch.setenv("RUM_CONFIG_PATHS", str(overlay))
    assert main(["list"]) == 2
    assert "invalid configuration" in capsys.readouterr().err


@pytest.mark.skipif(os.name == "nt", reason="detached supervisors are POSIX-only")
def test_start_then_info_round_trip(state_dir: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["start", "--json", "--label", "quick", "--", sys.executable, "-c", "print('done')"]) == 0
    started = json.loads(capsys.readouterr().out)
    assert started["label"] == "quick"
    run_id = started["id"]

    deadline = time.monotonic() + 10
    while True:
        assert main(["info", run_id, "--json"]) == 0
        obj = json.loads(capsys.readouterr().out)
        if "Done" in obj["state"] or time.monotonic() > deadline:
            break
        time.sleep(0.05)
    assert obj["state"]["Done"]["exit_code"] == 0
    assert (state_dir / "runs" / run_id / "output.log").read_text(encoding="utf-8") == "done\n"


@pytest.mark.skipif(os.name == "nt", reason="detached supervisors are POSIX-only")
def test_start_missing_binary_reports_launch_failure(state_dir: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["start", "--", "/no/such/binary"]) == 1
    assert capsys.readouterr().err.startswith("error: LAUNCH_FAILED_TO_SPAWN: ")
    assert main(["list", "--json"]) == 0
    assert json.loads(capsys.readouterr().out) == []


def test_empty_start_command_reports_coded_error(state_dir: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["start", "--"]) == 2
    assert capsys.readouterr().err == "error: EMPTY_COMMAND: Given command is empty\n"
    assert main(["list", "--json"]) == 0
    assert json.loads(capsys.readouterr().out) == []
