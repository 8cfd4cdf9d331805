from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from pathlib import Path
from typing import TYPE_CHECKING, Any

from . import __version__
from .runtime.ids import now_ts_ms

if TYPE_CHECKING:
    from .runtime.approval_controller import ApprovalController
    from .runtime.events import TurnEvent

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_REJECTED = 2
EXIT_OPERATION_FAILED = 4
EXIT_CONFIG_ERROR = 5
EXIT_CANCELLED = 130

_MODES = ["none", "read", "create", "update", "delete"]


def _configure_text_io() -> None:
    try:
        if hasattr(sys.stdout, "reconfigure"):
            sys.stdout.reconfigure(encoding="utf-8", errors="backslashreplace")
        if hasattr(sys.stderr, "reconfigure"):
            sys.stderr.reconfigure(encoding="utf-8", errors="backslashreplace")
    except Exception:
        return


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="steward",
        description="Turn orchestration and operation approval for agent chats.",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    init_parser = subparsers.add_parser("init", help="Initialize a steward project directory.")
    init_parser.add_argument(
        "path",
        nargs="?",
        default=".",
        help="Target directory (default: current directory).",
    )
    init_parser.set_defaults(func=_cmd_init)

    chats_parser = subparsers.add_parser("chats", help="List chats, or set a chat's trust mode.")
    chats_parser.add_argument("--chat", default=None, help="Chat id (required with --mode).")
    chats_parser.add_argument("--mode", choices=_MODES, default=None, help="New trust mode for --chat.")
    chats_parser.set_defaults(func=_cmd_chats)

    replay_parser = subparsers.add_parser("replay", help="Run one turn from a scripted JSONL agent stream.")
    replay_parser.add_argument("chunks", help="Path to a JSONL file of agent chunks.")
    replay_parser.add_argument("--chat", required=True, help="Chat id (created if missing).")
    replay_parser.add_argument("--mode", choices=_MODES, default=None, help="Set the chat's trust mode first.")
    replay_parser.add_argument("--input", default=None, help="User message that starts the turn.")
    replay_parser.add_argument(
        "--decide",
        choices=["approve", "reject", "ask"],
        default="ask",
        help="How to resolve operations that need approval (default: ask).",
    )
    replay_parser.add_argument(
        "--delay",
        type=float,
        default=0.0,
        help="Seconds to wait between chunks (default: 0).",
    )
    replay_parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Turn timeout in seconds (default: from config).",
    )
    replay_parser.set_defaults(func=_cmd_replay)

    return parser


def _cmd_init(args: argparse.Namespace) -> int:
    from .runtime.project import RuntimePaths

    project_root = Path(args.path).expanduser().resolve()
    if project_root.exists() and not project_root.is_dir():
        print(f"Error: path exists and is not a directory: {project_root}", file=sys.stderr)
        return EXIT_ERROR

    paths = RuntimePaths.for_project(project_root)
    for directory in (paths.state_dir, paths.chats_dir, paths.events_dir):
        directory.mkdir(parents=True, exist_ok=True)

    config_path = paths.state_dir / "config.json"
    if not config_path.exists():
        config_path.write_text(
            json.dumps({"default_mode": "none", "turn_timeout_s": 300}, indent=2) + "\n",
            encoding="utf-8",
        )
    print(f"Initialized {paths.state_dir}")
    return EXIT_OK


def _cmd_chats(args: argparse.Namespace) -> int:
    from .runtime.config import ConfigError, load_config
    from .runtime.project import RuntimePaths
    from .runtime.stores import ChatNotFoundError, FileChatMetaStore

    try:
        paths = RuntimePaths.discover()
        config = load_config(paths.project_root)
    except (FileNotFoundError, ConfigError) as e:
        print(str(e), file=sys.stderr)
        return EXIT_CONFIG_ERROR
    meta_store = FileChatMetaStore(config.paths(paths.project_root).chats_index)

    if args.mode is not None:
        if not args.chat:
            print("Error: --mode requires --chat.", file=sys.stderr)
            return EXIT_ERROR
        try:
            meta = meta_store.set_mode(args.chat, args.mode)
        except ChatNotFoundError as e:
            print(str(e), file=sys.stderr)
            return EXIT_ERROR
        print(f"{meta.id}\tmode={meta.mode.value}")
        return EXIT_OK

    for meta in meta_store.list():
        if args.chat and meta.id != args.chat:
            continue
        print(
            f"{meta.id}\tmode={meta.mode.value}\tupdated={meta.updated}"
            f"\ttokens={meta.usage.total_tokens}\tcost={meta.usage.cost:.4f}\t{meta.title}"
        )
    return EXIT_OK


def _cmd_replay(args: argparse.Namespace) -> int:
    from .runtime.agent_source import ScriptedAgentSource
    from .runtime.config import ConfigError, load_config
    from .runtime.event_bus import EventBus
    from .runtime.models.chat import ChatMeta, ChatMode
    from .runtime.operations import OperationExecutor, OperationRegistry, file_operations
    from .runtime.orchestrator import TurnContext, TurnOrchestrator
    from .runtime.project import RuntimePaths
    from .runtime.stores import ChatNotFoundError, FileChatMetaStore, FileChatStore, FileEventLogStore

    try:
        paths = RuntimePaths.discover()
        config = load_config(paths.project_root)
    except (FileNotFoundError, ConfigError) as e:
        print(str(e), file=sys.stderr)
        return EXIT_CONFIG_ERROR
    paths = config.paths(paths.project_root)

    try:
        source = ScriptedAgentSource.from_jsonl(Path(args.chunks), delay_s=args.delay)
    except (OSError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_ERROR

    meta_store = FileChatMetaStore(paths.chats_index)
    try:
        meta_store.get(args.chat)
    except ChatNotFoundError:
        now = now_ts_ms()
        meta_store.upsert(
            ChatMeta(
                id=args.chat,
                title=(args.input or "")[:60],
                mode=config.default_mode,
                assistant=config.assistant_name,
                created=now,
                updated=now,
            )
        )
    if args.mode is not None:
        meta_store.set_mode(args.chat, ChatMode(args.mode))

    event_bus = EventBus()
    if config.event_log_enabled:
        event_bus.subscribe(FileEventLogStore(paths.events_dir).append)

    registry = OperationRegistry()
    registry.register_all(file_operations(paths.project_root))
    orchestrator = TurnOrchestrator(
        source=source,
        executor=OperationExecutor(registry),
        store=FileChatStore(paths.chat_path(args.chat)),
        project_root=paths.project_root,
        meta_store=meta_store,
        event_bus=event_bus,
        config=config,
    )
    ctx = TurnContext(chat_id=args.chat, user_input=args.input, timeout_s=args.timeout)
    printer = _EventPrinter()

    async def _main() -> int:
        result = await orchestrator.run(ctx, printer.on_event)
        if result.status == "cancelled":
            return EXIT_CANCELLED
        if result.status == "failed":
            return EXIT_ERROR
        if not result.needs_approval or result.message is None:
            return EXIT_OK

        controller = orchestrator.approval_for(args.chat, result.message, on_update=printer.on_message_update)
        return await _resolve_approvals(controller, decide=args.decide)

    return asyncio.run(_main())


async def _resolve_approvals(controller: "ApprovalController", *, decide: str) -> int:
    from .runtime.approval import ApprovalChoice, ApprovalState
    from .runtime.cancel import TurnCancelled
    from .runtime.formatting import format_name

    while controller.state in (ApprovalState.MAIN, ApprovalState.APPROVING_SOME):
        options = controller.options()
        if decide == "approve":
            choice = ApprovalChoice.APPROVE if ApprovalChoice.APPROVE in options else ApprovalChoice.APPROVE_ALL
        elif decide == "reject":
            choice = ApprovalChoice.REJECT if ApprovalChoice.REJECT in options else ApprovalChoice.REJECT_ALL
        else:
            op = controller.current_operation
            if op is None:
                pending = ", ".join(format_name(o.type) for _, o in controller.pending_operations)
                question = f"Approve operations ({pending})?"
            else:
                question = f"{op.message or format_name(op.type)}\nApprove?"
            choice = ApprovalChoice(_ask_choice(question, [o.value for o in options]))
        try:
            await controller.choose(choice)
        except TurnCancelled:
            print("Cancelled.", file=sys.stderr)
            return EXIT_CANCELLED

    result = controller.result
    controller.dismiss()
    if result is None:
        return EXIT_ERROR
    print(result.describe())
    if result.has_errors:
        return EXIT_OPERATION_FAILED
    if result.rejected and not result.success:
        return EXIT_REJECTED
    return EXIT_OK


def _is_tty() -> bool:
    try:
        return bool(sys.stdin.isatty() and sys.stdout.isatty())
    except Exception:
        return False


def _ask_choice(question: str, options: list[str]) -> str:
    prompt_text = f"{question} [{'/'.join(options)}]: "
    plain = str(os.environ.get("STEWARD_PLAIN_INPUT") or "").strip() in {"1", "true", "yes", "on"}
    while True:
        if _is_tty() and not plain:
            from prompt_toolkit import prompt
            from prompt_toolkit.completion import WordCompleter

            answer = prompt(prompt_text, completer=WordCompleter(options, sentence=True))
        else:
            answer = input(prompt_text)
        answer = answer.strip().lower().replace(" ", "_").replace("-", "_")
        if answer in options:
            return answer
        print(f"Please answer one of: {', '.join(options)}", file=sys.stderr)


class _EventPrinter:
    """Line-oriented rendering of a turn's events for the terminal."""

    def __init__(self) -> None:
        self._shown = ""
        self._mid_line = False
        self._op_status: dict[int, str] = {}

    def on_event(self, event: "TurnEvent") -> None:
        from .runtime.events import TurnEventKind

        kind = event.kind
        payload = event.payload
        if kind in (TurnEventKind.PENDING_UPDATE, TurnEventKind.UPDATE, TurnEventKind.COMPLETE):
            self._render_message(payload.get("message"))
            if kind is TurnEventKind.COMPLETE:
                self._newline()
        elif kind is TurnEventKind.STATUS:
            status = payload.get("status")
            if status:
                self._line(f"· {status}")
        elif kind is TurnEventKind.USAGE:
            delta = payload.get("delta") or {}
            turn = payload.get("turn") or {}
            if any(delta.get(k) for k in ("input_tokens", "output_tokens", "reasoning_tokens", "cost")):
                self._line(
                    f"· usage: in={turn.get('input_tokens', 0)} out={turn.get('output_tokens', 0)} "
                    f"cost={float(turn.get('cost', 0.0)):.4f}"
                )
        elif kind is TurnEventKind.ERROR:
            self._newline()
            print(f"Error [{payload.get('error_code')}]: {payload.get('error')}", file=sys.stderr)
        elif kind is TurnEventKind.CANCELLED:
            self._newline()
            print("Cancelled.", file=sys.stderr)

    def on_message_update(self, message: Any) -> None:
        self._render_message(message.model_dump(mode="json"))

    def _newline(self) -> None:
        if self._mid_line:
            print(flush=True)
            self._mid_line = False

    def _line(self, text: str) -> None:
        self._newline()
        print(text, flush=True)

    def _render_message(self, message: Any) -> None:
        if not isinstance(message, dict):
            return
        text = "".join(
            str(c.get("content") or "")
            for c in message.get("content") or []
            if c.get("operation_index") is None and not str(c.get("content") or "").startswith("__")
        )
        if text != self._shown:
            if text.startswith(self._shown):
                sys.stdout.write(text[len(self._shown) :])
            else:
                # Text was reset or rewritten upstream.
                self._newline()
                sys.stdout.write(text)
            sys.stdout.flush()
            self._mid_line = bool(text) and not text.endswith("\n")
            self._shown = text

        for index, op in enumerate(message.get("operations") or []):
            status = str(op.get("status"))
            if self._op_status.get(index) == status:
                continue
            self._op_status[index] = status
            self._line(f"[op {index}] {op.get('type')}: {status}")
            if status != "pending" and op.get("message"):
                self._line(_indent(str(op["message"])))


def _indent(text: str, prefix: str = "    ") -> str:
    return "\n".join(prefix + line for line in text.splitlines())


def main(argv: list[str] | None = None) -> int:
    _configure_text_io()
    parser = _build_parser()
    args = parser.parse_args(argv)

    try:
        func = getattr(args, "func")
        return int(func(args))
    except KeyboardInterrupt:
        print("Interrupted.", file=sys.stderr)
        return EXIT_CANCELLED
