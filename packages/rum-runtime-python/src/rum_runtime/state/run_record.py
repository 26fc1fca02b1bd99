"""
RunRecord 数据模型与编解码。

落盘格式（`<run_dir>/data.json`，单个 JSON 文档）：
- `label`：可选字符串（仅展示用）
- `command`：非空 argv（元素 0 为可执行文件）
- `start_datetime`：spawn 时刻（UTC，ISO8601）
- `state`：外部标签联合体
  - `{"Running": {"process_group_id": 1234}}`
  - `{"Done": {"end_datetime": "...", "exit_code": 0}}`

约定：
- 解析失败统一映射为 `CorruptRecord`（由调用方决定 warn-and-skip 还是硬失败）。
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_serializer, field_validator

from rum_runtime.core.errors import CorruptRecord

EXIT_CODE_KILLED = -1
EXIT_CODE_CRASHED = -2


def _to_utc(value: datetime) -> datetime:
    """把 datetime 归一化到 UTC（naive 视为 UTC）。"""

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utc_now() -> datetime:
    """返回当前 UTC 时间（带 tzinfo）。"""

    return datetime.now(timezone.utc)


class RunningState(BaseModel):
    """运行中：只保存进程组 id（仅在 Running 期间有意义）。"""

    model_config = ConfigDict(extra="forbid", frozen=True)

    process_group_id: int = Field(ge=1)


class DoneState(BaseModel):
    """已结束（终态，写入后不再变化）。"""

    model_config = ConfigDict(extra="forbid", frozen=True)

    end_datetime: datetime
    exit_code: int

    @field_validator("end_datetime")
    @classmethod
    def _normalize_end(cls, v: datetime) -> datetime:
        """end_datetime 统一为 UTC。"""

        return _to_utc(v)


RunState = Union[RunningState, DoneState]

_STATE_TAGS = {"Running": RunningState, "Done": DoneState}


class RunRecord(BaseModel):
    """
    单个 run 的元数据。

    不变量：
    - `command` 非空；
    - `state` 只会经历一次 `Running -> Done`。
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    label: Optional[str] = None
    command: List[str] = Field(min_length=1)
    start_datetime: datetime
    state: RunState

    @field_validator("start_datetime")
    @classmethod
    def _normalize_start(cls, v: datetime) -> datetime:
        """start_datetime 统一为 UTC。"""

        return _to_utc(v)

    @field_validator("state", mode="before")
    @classmethod
    def _untag_state(cls, v: Any) -> Any:
        """
        把外部标签形式 `{"Running": {...}}` 还原为具体状态模型。

        说明：
        - 已是模型实例时原样返回（构造路径）；
        - 标签必须恰好一个且为已知变体，否则交给 pydantic 报错。
        """

        if isinstance(v, (RunningState, DoneState)):
            return v
        if not isinstance(v, dict) or len(v) != 1:
            raise ValueError("state must be an object with exactly one of: Running, Done")
        tag, payload = next(iter(v.items()))
        model = _STATE_TAGS.get(tag)
        if model is None:
            raise ValueError(f"unknown state tag: {tag!r}")
        return model.model_validate(payload)

    @field_serializer("state")
    def _tag_state(self, state: RunState) -> Dict[str, Any]:
        """序列化为外部标签形式。"""

        tag = "Running" if isinstance(state, RunningState) else "Done"
        return {tag: state.model_dump(mode="json")}

    @property
    def is_running(self) -> bool:
        """是否仍处于 Running。"""

        return isinstance(self.state, RunningState)

    @property
    def is_done(self) -> bool:
        """是否已到终态 Done。"""

        return isinstance(self.state, DoneState)

    def finish(self, *, exit_code: int, end_datetime: Optional[datetime] = None) -> "RunRecord":
        """
        返回迁移到 Done 的新记录（原记录不变）。

        参数：
        - exit_code：退出码（含 `-1` killed / `-2` crashed 哨兵）
        - end_datetime：结束时间；缺省为当前 UTC
        """

        done = DoneState(end_datetime=end_datetime or utc_now(), exit_code=int(exit_code))
        return self.model_copy(update={"state": done})


def encode_run_record(record: RunRecord) -> str:
    """把 RunRecord 编码为 JSON 文本（字段名稳定）。"""

    return json.dumps(record.model_dump(mode="json"), ensure_ascii=False)


def decode_run_record(text: str, *, run_id: str) -> RunRecord:
    """
    从 JSON 文本解码 RunRecord。

    参数：
    - text：文件全文
    - run_id：仅用于错误上下文

    异常：
    - CorruptRecord：JSON 非法或 schema 校验失败
    """

    try:
        obj = json.loads(text)
    except ValueError as exc:
        raise CorruptRecord(run_id, f"invalid JSON: {exc}") from exc
    if not isinstance(obj, dict):
        raise CorruptRecord(run_id, "record root must be an object")
    try:
        return RunRecord.model_validate(obj)
    except ValidationError as exc:
        raise CorruptRecord(run_id, f"invalid record: {exc.error_count()} validation error(s)") from exc


def describe_exit_code(exit_code: int) -> str:
    """
    退出码的人类可读含义。

    约定：`0` success，`-1` killed，`-2` crashed，其它为 failed。
    """

    if exit_code == 0:
        return "success"
    if exit_code == EXIT_CODE_KILLED:
        return "killed"
    if exit_code == EXIT_CODE_CRASHED:
        return "crashed"
    return "failed"
