"""
rum CLI。

约束：
- 使用 argparse（不引入第三方 CLI 依赖）；
- 默认输出人类可读文本；`--json` 时 stdout 输出机器可读 JSON；
- 错误统一为 stderr 上的一行 `error: <CODE>: <message>`，exit code 1（参数错误为 2）。
"""

from __future__ import annotations

import argparse
import json
import shlex
import sys
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from pydantic import ValidationError

from rum_runtime import __version__
from rum_runtime.api import RunInfo, Runs
from rum_runtime.config.loader import load_config
from rum_runtime.core.errors import RumError
from rum_runtime.observability.logging import configure_logging
from rum_runtime.runtime.signals import SignalKind
from rum_runtime.state.run_record import DoneState, RunRecord, describe_exit_code


def _dump_json_to_stdout(obj: Any, *, pretty: bool) -> None:
    """
    将对象输出为 JSON 到 stdout（末尾包含换行）。

    参数：
    - obj：待输出对象（必须可 JSON dumps）
    - pretty：是否启用 pretty-print（indent=2）
    """

    if pretty:
        text = json.dumps(obj, ensure_ascii=False, indent=2)
    else:
        text = json.dumps(obj, ensure_ascii=False, separators=(",", ":"))
    print(text)


def _format_datetime(value: datetime) -> str:
    """本地时区、本地化格式。"""

    return value.astimezone().strftime("%c")


def _format_exit_code(exit_code: int) -> str:
    """退出码 + 含义；哨兵值显示为 none。"""

    meaning = describe_exit_code(exit_code)
    if meaning in ("killed", "crashed"):
        return f"none ({meaning})"
    return f"{exit_code} ({meaning})"


def _status_text(record: RunRecord) -> str:
    """列表里的状态列。"""

    if isinstance(record.state, DoneState):
        return f"done (exit code = {record.state.exit_code})"
    return "running"


def _info_to_jsonable(info: RunInfo) -> Dict[str, Any]:
    """RunInfo 投影为 JSON（记录字段 + id）。"""

    obj = info.record.model_dump(mode="json")
    obj["id"] = info.id
    return obj


def _render_table(rows: List[List[str]]) -> str:
    """无边框左对齐表格。"""

    widths = [max(len(row[i]) for row in rows) for i in range(len(rows[0]))]
    lines = ["  ".join(cell.ljust(widths[i]) for i, cell in enumerate(row)).rstrip() for row in rows]
    return "\n".join(lines)


def _handle_start(runs: Runs, args: argparse.Namespace) -> int:
    """启动 run 并打印 id。"""

    command = list(args.argv)
    if command and command[0] == "--":
        command = command[1:]
    if not command:
        print("error: EMPTY_COMMAND: Given command is empty", file=sys.stderr)
        return 2
    info = runs.start_run(command, args.label)
    if args.json:
        _dump_json_to_stdout(_info_to_jsonable(info), pretty=args.pretty)
    else:
        print(f"Started run {info.id}")
    return 0


def _handle_list(runs: Runs, args: argparse.Namespace) -> int:
    """列出全部可解析的 run。"""

    infos = runs.list_runs()
    if args.json:
        _dump_json_to_stdout([_info_to_jsonable(i) for i in infos], pretty=args.pretty)
        return 0
    rows = [["ID", "Status", "Label", "Command", "Start DateTime", "End DateTime"]]
    for info in infos:
        state = info.record.state
        rows.append(
            [
                info.id,
                _status_text(info.record),
                info.record.label or "",
                shlex.join(info.record.command),
                _format_datetime(info.record.start_datetime),
                _format_datetime(state.end_datetime) if isinstance(state, DoneState) else "",
            ]
        )
    print(_render_table(rows))
    return 0


def _handle_info(runs: Runs, args: argparse.Namespace) -> int:
    """单个 run 的详情。"""

    handle = runs.get_run(args.run)
    info = RunInfo(handle=handle, record=runs.read_record(handle))
    if args.json:
        _dump_json_to_stdout(_info_to_jsonable(info), pretty=args.pretty)
        return 0
    record = info.record
    print(f"ID:        {info.id}")
    print(f"Command:   {shlex.join(record.command)}")
    if record.label:
        print(f"Label:     {record.label}")
    if isinstance(record.state, DoneState):
        print("Status:    finished")
        print(f"Exit code: {_format_exit_code(record.state.exit_code)}")
        print(f"Started:   {_format_datetime(record.start_datetime)}")
        print(f"Finished:  {_format_datetime(record.state.end_datetime)}")
    else:
        print("Status:    running")
        print(f"Started:   {_format_datetime(record.start_datetime)}")
    return 0


def _confirm(prompt: str) -> bool:
    """交互式确认（EOF 视为否）。"""

    try:
        answer = input(f"{prompt} [y/N] ")
    except EOFError:
        return False
    return answer.strip().lower() in ("y", "yes")


def _handle_remove(runs: Runs, args: argparse.Namespace) -> int:
    """逐个删除 run；任一失败时 exit 1，但不影响其余目标。"""

    code = 0
    for query in args.runs:
        try:
            handle = runs.get_run(query)
            if not args.yes and not _confirm(f"Are you sure you want to delete run {handle.id}?"):
                print(f"Skipped {handle.id}.")
                continue
            runs.remove_run(handle)
            print(f"Deleted {handle.id}.")
        except RumError as exc:
            print(f"error: {exc}", file=sys.stderr)
            code = 1
    return code


def _handle_signal(runs: Runs, args: argparse.Namespace) -> int:
    """发送 interrupt/terminate/kill。"""

    runs.send_signal(runs.get_run(args.run), SignalKind(args.command))
    return 0


def _handle_view(runs: Runs, args: argparse.Namespace) -> int:
    """打开 live view。"""

    runs.open_live_view(runs.get_run(args.run))
    return 0


_HANDLERS = {
    "start": _handle_start,
    "list": _handle_list,
    "info": _handle_info,
    "view": _handle_view,
    "remove": _handle_remove,
    SignalKind.INTERRUPT.value: _handle_signal,
    SignalKind.TERMINATE.value: _handle_signal,
    SignalKind.KILL.value: _handle_signal,
}


def _build_parser() -> argparse.ArgumentParser:
    """构造 argparse parser。"""

    parser = argparse.ArgumentParser(prog="rum", description="A tool to manage running jobs.")
    parser.add_argument("--version", action="version", version=f"rum {__version__}")
    sub = parser.add_subparsers(dest="command", required=True)

    def _with_json(p: argparse.ArgumentParser) -> argparse.ArgumentParser:
        """为子命令加 `--json/--pretty`。"""

        p.add_argument("--json", action="store_true", help="Print machine-readable JSON.")
        p.add_argument("--pretty", action="store_true", help="Pretty-print JSON output.")
        return p

    start_p = _with_json(sub.add_parser("start", help="Start a command as a background run"))
    start_p.add_argument("--label", default=None, help="Optional label shown in listings.")
    start_p.add_argument("argv", nargs=argparse.REMAINDER, help="Command argv; use `--` before argv.")

    _with_json(sub.add_parser("list", help="List runs"))

    info_p = _with_json(sub.add_parser("info", help="Show information about a run"))
    info_p.add_argument("run", help="Run id or unique prefix.")

    view_p = sub.add_parser("view", help="View a run's output live")
    view_p.add_argument("run", help="Run id or unique prefix.")

    remove_p = sub.add_parser("remove", help="Remove finished runs")
    remove_p.add_argument("runs", nargs="+", help="Run ids or unique prefixes.")
    remove_p.add_argument("--yes", "-y", action="store_true", help="Do not ask for confirmation.")

    for kind, help_text in (
        (SignalKind.INTERRUPT, "Interrupt (SIGINT, i.e., Ctrl+C) a run"),
        (SignalKind.TERMINATE, "Terminate (SIGTERM) a run"),
        (SignalKind.KILL, "Kill (SIGKILL, i.e., kill -9) a run"),
    ):
        p = sub.add_parser(kind.value, help=help_text)
        p.add_argument("run", help="Run id or unique prefix.")

    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    """CLI 入口，返回 exit code。"""

    parser = _build_parser()
    try:
        args = parser.parse_args(list(sys.argv[1:] if argv is None else argv))
    except SystemExit as exc:
        # argparse 在 --help/--version/参数错误时会 SystemExit
        code = getattr(exc, "code", 2)
        if code is None:
            return 0
        return int(code)

    try:
        config = load_config()
    except (OSError, ValueError, ValidationError) as exc:
        print(f"error: invalid configuration: {exc}", file=sys.stderr)
        return 2
    configure_logging(config.logging.level)

    try:
        runs = Runs.from_config(config)
        return _HANDLERS[args.command](runs, args)
    except RumError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
