"""
rum 错误分类（异常类型）。

说明：
- 所有异常都带稳定错误码（英文大写下划线）、英文 message 与结构化 details；
- details 至少包含足以渲染“一行用户可读错误”的上下文（run_id、失败步骤等）；
- core 内任何位置都不做自动重试；重试与否由调用方决定。
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class RumIssue:
    """结构化问题对象（可直接序列化为 CLI 的 JSON 输出）。"""

    code: str
    message: str
    details: Dict[str, Any]


class RumError(Exception):
    """rum 错误基类（`code/message/details`）。"""

    code = "RUM_ERROR"

    def __init__(self, message: str, *, code: Optional[str] = None, details: Dict[str, Any] | None = None) -> None:
        """创建错误。

        参数：
        - `message`：英文错误消息
        - `code`：错误码；缺省使用类属性 `code`
        - `details`：结构化上下文信息
        """

        super().__init__(message)
        if code is not None:
            self.code = code
        self.message = message
        self.details: Dict[str, Any] = details or {}

    def __str__(self) -> str:
        """返回用于日志与 CLI 的一行字符串表示。"""

        return f"{self.code}: {self.message}"

    def to_issue(self) -> RumIssue:
        """把异常转换为可序列化问题对象。"""

        return RumIssue(code=self.code, message=self.message, details=dict(self.details))


class NotFound(RumError):
    """前缀没有匹配到任何 run。"""

    code = "RUN_NOT_FOUND"

    def __init__(self, query: str) -> None:
        """参数：`query` 为用户给出的 id 或前缀。"""

        super().__init__(f"No run matches {query!r}", details={"query": query})
        self.query = query


class AmbiguousId(RumError):
    """前缀同时匹配多个 run（必须由用户消歧，不做静默选择）。"""

    code = "RUN_ID_AMBIGUOUS"

    def __init__(self, query: str, candidates: List[str]) -> None:
        """
        参数：
        - query：用户给出的前缀
        - candidates：全部匹配到的 run id（已排序）
        """

        super().__init__(
            f"Run id prefix {query!r} is ambiguous ({len(candidates)} matches)",
            details={"query": query, "candidates": list(candidates)},
        )
        self.query = query
        self.candidates = list(candidates)


class CorruptRecord(RumError):
    """run 记录缺失或无法解析（damaged run）。"""

    code = "RUN_RECORD_CORRUPT"

    def __init__(self, run_id: str, reason: str) -> None:
        """
        参数：
        - run_id：受损 run 的 id
        - reason：底层失败原因（文件缺失/JSON 解析/校验失败）
        """

        super().__init__(f"Run {run_id} is damaged: {reason}", details={"run_id": run_id, "reason": reason})
        self.run_id = run_id
        self.reason = reason


class StorageError(RumError):
    """创建/删除/写入状态时的 I/O 失败（对当前操作致命，不重试）。"""

    code = "STORAGE_ERROR"


class LaunchErrorKind(str, Enum):
    """启动协议的失败步骤。"""

    FORK_FAILED = "FORK_FAILED"
    COULD_NOT_CREATE_OUTPUT_FILE = "COULD_NOT_CREATE_OUTPUT_FILE"
    FAILED_TO_SPAWN = "FAILED_TO_SPAWN"
    COULD_NOT_PERSIST_RECORD = "COULD_NOT_PERSIST_RECORD"
    CHANNEL_COMMUNICATION_LOST = "CHANNEL_COMMUNICATION_LOST"


class LaunchError(RumError):
    """
    `start_run` 失败。

    约束：
    - 抛出时不会残留 `Running` 记录：supervisor 在上报失败前已清理自己的半成品目录，
      调用方负责清理 supervisor 根本没有跑起来的情形。
    """

    def __init__(self, kind: LaunchErrorKind, message: str, *, details: Dict[str, Any] | None = None) -> None:
        """
        参数：
        - kind：失败步骤
        - message：英文错误消息
        - details：结构化补充信息（run_id、command 等）
        """

        super().__init__(message, code=f"LAUNCH_{kind.value}", details=details)
        self.kind = kind


class AlreadyFinished(RumError):
    """对已结束的 run 发信号（用户错误，不是 no-op）。"""

    code = "RUN_ALREADY_FINISHED"

    def __init__(self, run_id: str) -> None:
        """参数：`run_id` 为目标 run。"""

        super().__init__(f"Run {run_id} has already finished", details={"run_id": run_id})
        self.run_id = run_id


class StillRunning(RumError):
    """对仍在运行的 run 执行删除。"""

    code = "RUN_STILL_RUNNING"

    def __init__(self, run_id: str) -> None:
        """参数：`run_id` 为目标 run。"""

        super().__init__(f"Run {run_id} is still running", details={"run_id": run_id})
        self.run_id = run_id


class SignalDeliveryFailed(RumError):
    """信号投递失败（进程组已消失或无权限）。"""

    code = "SIGNAL_DELIVERY_FAILED"


class WatchDisconnected(RumError):
    """文件变更监听意外断开（只对当前 live view 会话致命）。"""

    code = "WATCH_DISCONNECTED"
