from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

import pytest

from rum_runtime.core.errors import CorruptRecord
from rum_runtime.state.run_record import (
    DoneState,
    RunningState,
    RunRecord,
    decode_run_record,
    describe_exit_code,
    encode_run_record,
)


def _running_record(**overrides) -> RunRecord:  # type: ignore[no-untyped-def]
    """构造一个 Running 记录。"""

    fields = {
        "label": "nightly",
        "command": ["sleep", "5"],
        "start_datetime": datetime(2026, 2, 9, 12, 0, 0, tzinfo=timezone.utc),
        "state": RunningState(process_group_id=4242),
    }
    fields.update(overrides)
    return RunRecord(**fields)


def test_running_record_uses_externally_tagged_state() -> None:
    obj = json.loads(encode_run_record(_running_record()))
    assert obj["label"] == "nightly"
    assert obj["command"] == ["sleep", "5"]
    assert obj["state"] == {"Running": {"process_group_id": 4242}}
    assert obj["start_datetime"].startswith("2026-02-09T12:00:00")


def test_done_record_decodes_from_stable_field_names() -> None:
    text = json.dumps(
        {
            "label": None,
            "command": ["make", "test"],
            "start_datetime": "2026-02-09T12:00:00Z",
            "state": {"Done": {"end_datetime": "2026-02-09T12:00:05Z", "exit_code": 3}},
        }
    )
    record = decode_run_record(text, run_id="r1")
    assert record.is_done
    assert isinstance(record.state, DoneState)
    assert record.state.exit_code == 3
    assert record.state.end_datetime - record.start_datetime == timedelta(seconds=5)


def test_datetimes_are_normalized_to_utc() -> None:
    cet = timezone(timedelta(hours=1))
    record = _running_record(start_datetime=datetime(2026, 2, 9, 13, 0, 0, tzinfo=cet))
    assert record.start_datetime.tzinfo == timezone.utc
    assert record.start_datetime.hour == 12

    naive = _running_record(start_datetime=datetime(2026, 2, 9, 12, 0, 0))
    assert naive.start_datetime.tzinfo == timezone.utc


def test_finish_returns_new_done_record_and_keeps_original() -> None:
    running = _running_record()
    done = running.finish(exit_code=0)
    assert running.is_running
    assert done.is_done
    assert done.command == running.command
    assert done.label == running.label
    assert done.state.end_datetime >= running.start_datetime  # type: ignore[union-attr]


@pytest.mark.parametrize(
    "text",
    [
        "",
        "{not json",
        "[]",
        json.dumps({"command": [], "start_datetime": "2026-02-09T12:00:00Z", "state": {"Running": {"process_group_id": 1}}}),
        json.dumps({"command": ["ls"], "start_datetime": "2026-02-09T12:00:00Z", "state": {"Paused": {}}}),
        json.dumps(
            {
                "command": ["ls"],
                "start_datetime": "2026-02-09T12:00:00Z",
                "state": {"Running": {"process_group_id": 1}, "Done": {"end_datetime": "2026-02-09T12:00:00Z", "exit_code": 0}},
            }
        ),
        json.dumps({"command": ["ls"], "start_datetime": "yesterday", "state": {"Running": {"process_group_id": 1}}}),
    ],
)
def test_invalid_documents_raise_corrupt_record(text: str) -> None:
    with pytest.raises(CorruptRecord) as ei:
        decode_run_record(text, run_id="damaged-1")
    assert ei.value.run_id == "damaged-1"
    assert ei.value.code == "RUN_RECORD_CORRUPT"


def test_exit_code_sentinels_have_fixed_meaning() -> None:
    assert describe_exit_code(0) == "success"
    assert describe_exit_code(-1) == "killed"
    assert describe_exit_code(-2) == "crashed"
    assert describe_exit_code(127) == "failed"
