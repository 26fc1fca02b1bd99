"""
一次性握手通道（跨 spawn 边界的单条消息）。

实现：
- `os.pipe()`：读端留在调用方，写端通过 `pass_fds` 交给 supervisor；
- 消息为单行 JSON（`\\n` 结尾），写端发送后立即关闭；
- 读端按 deadline 用 `select` 轮询：EOF / 超时 / 非法消息一律视为通信丢失（不重试）。
"""

from __future__ import annotations

import json
import os
import select
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from rum_runtime.core.errors import LaunchError, LaunchErrorKind

_MAX_MESSAGE_BYTES = 64 * 1024


@dataclass(frozen=True)
class HandshakeMessage:
    """supervisor -> 调用方 的唯一一条消息。"""

    ok: bool
    run_id: str
    process_group_id: Optional[int] = None
    kind: Optional[LaunchErrorKind] = None
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> str:
        """编码为单行 JSON。"""

        obj: Dict[str, Any] = {"ok": self.ok, "run_id": self.run_id}
        if self.ok:
            obj["process_group_id"] = self.process_group_id
        else:
            obj["kind"] = self.kind.value if self.kind else None
            obj["message"] = self.message
            obj["details"] = dict(self.details)
        return json.dumps(obj, ensure_ascii=False)

    @classmethod
    def from_json(cls, text: str) -> "HandshakeMessage":
        """
        从单行 JSON 解码。

        异常：
        - ValueError：结构非法
        """

        obj = json.loads(text)
        if not isinstance(obj, dict) or not isinstance(obj.get("ok"), bool):
            raise ValueError("handshake message must be an object with boolean 'ok'")
        run_id = str(obj.get("run_id") or "")
        if obj["ok"]:
            return cls(ok=True, run_id=run_id, process_group_id=int(obj["process_group_id"]))
        details = obj.get("details")
        return cls(
            ok=False,
            run_id=run_id,
            kind=LaunchErrorKind(str(obj.get("kind"))),
            message=str(obj.get("message") or ""),
            details=details if isinstance(details, dict) else {},
        )


class ChannelWriter:
    """写端（supervisor 持有）；只允许发送一次。"""

    def __init__(self, fd: int) -> None:
        """参数：`fd` 为继承来的 pipe 写端。"""

        self._fd: Optional[int] = fd

    def send(self, message: HandshakeMessage) -> None:
        """
        发送消息并关闭写端。

        说明：
        - 调用方可能已因超时放弃读取（读端关闭）；此时 BrokenPipeError 原样抛出，由 supervisor 决定如何收尾。
        """

        if self._fd is None:
            raise RuntimeError("handshake channel already used")
        data = (message.to_json() + "\n").encode("utf-8")
        fd, self._fd = self._fd, None
        try:
            view = memoryview(data)
            while view:
                n = os.write(fd, view)
                view = view[n:]
        finally:
            os.close(fd)

    def close(self) -> None:
        """未发送就关闭（读端将看到 EOF）。"""

        if self._fd is not None:
            fd, self._fd = self._fd, None
            os.close(fd)


class ChannelReader:
    """读端（调用方持有）。"""

    def __init__(self, fd: int) -> None:
        """参数：`fd` 为 pipe 读端。"""

        self._fd: Optional[int] = fd

    def receive(self, *, timeout_sec: float, run_id: str) -> HandshakeMessage:
        """
        阻塞接收唯一一条消息。

        参数：
        - timeout_sec：最长等待时间
        - run_id：仅用于错误上下文

        异常：
        - LaunchError(CHANNEL_COMMUNICATION_LOST)：EOF、超时或消息非法
        """

        if self._fd is None:
            raise RuntimeError("handshake channel already closed")
        deadline = time.monotonic() + float(timeout_sec)
        buf = b""
        reason = "closed without a message"
        while b"\n" not in buf:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                reason = f"no message within {timeout_sec:g}s"
                break
            rlist, _, _ = select.select([self._fd], [], [], remaining)
            if not rlist:
                continue
            chunk = os.read(self._fd, 4096)
            if not chunk:
                break
            buf += chunk
            if len(buf) > _MAX_MESSAGE_BYTES:
                reason = "message too large"
                break
        self.close()

        line, sep, _ = buf.partition(b"\n")
        if sep:
            try:
                return HandshakeMessage.from_json(line.decode("utf-8"))
            except (ValueError, KeyError, TypeError) as exc:
                reason = f"malformed message: {exc}"
        raise LaunchError(
            LaunchErrorKind.CHANNEL_COMMUNICATION_LOST,
            f"Lost contact with the supervisor of run {run_id}: {reason}",
            details={"run_id": run_id, "reason": reason},
        )

    def close(self) -> None:
        """关闭读端（幂等）。"""

        if self._fd is not None:
            fd, self._fd = self._fd, None
            os.close(fd)


def open_channel() -> tuple[ChannelReader, int]:
    """
    创建通道。

    返回：
    - (reader, write_fd)：写端以裸 fd 返回，供 `pass_fds` 继承；调用方在 spawn 后必须关闭自己这份写端副本
    """

    read_fd, write_fd = os.pipe()
    return ChannelReader(read_fd), write_fd
