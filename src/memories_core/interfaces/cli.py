"""CLI commands and REPL."""

from __future__ import annotations

import json
import shlex
from dataclasses import asdict
from typing import Any, Callable

from memories_core.app import AppContext, status_summary
from memories_core.errors import QueueEntryNotFoundError, SaveError
from memories_core.memory.models import CaptureState, MemoryType
from memories_core.memory.store import clean_stale_locks

RESTRICTED_ALLOWED_COMMANDS = {"help", "exit", "config", "queue", "previews"}


def _emit(payload: Any) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False, default=str))


def _print_help() -> None:
    print("Commands:")
    print("help")
    print("exit")
    print("queue list|count|show <local_id>|remove <local_id>")
    print("capture <moment|story|memento> <text...>")
    print("sync now|one <local_id>|status")
    print("feed [--offline] [--filter moment,story] [--limit N]")
    print("previews list|clear")
    print("config")


def _parse_limit(tokens: list[str], default: int) -> int:
    lowered = [token.lower() for token in tokens]
    if "--limit" not in lowered:
        return default
    try:
        idx = lowered.index("--limit")
        if idx + 1 < len(tokens):
            return max(1, int(tokens[idx + 1]))
    except (ValueError, TypeError):
        return default
    return default


def _parse_filters(tokens: list[str]) -> set[MemoryType]:
    """Read ``--filter a,b``; raises ValueError on an unknown type name."""
    lowered = [token.lower() for token in tokens]
    if "--filter" not in lowered:
        return set()
    idx = lowered.index("--filter")
    if idx + 1 >= len(tokens):
        return set()
    names = [name.strip() for name in tokens[idx + 1].split(",") if name.strip()]
    return {MemoryType.parse(name) for name in names}


def _handle_queue(context: AppContext, tokens: list[str]) -> None:
    sub = tokens[1].lower() if len(tokens) > 1 else "list"
    if sub == "list":
        _emit([memory.to_json() for memory in context.queue.get_all_queued()])
        return
    if sub == "count":
        _emit({"total": context.queue.get_count(), "by_status": context.queue.status_summary()})
        return
    if sub in {"show", "remove"} and len(tokens) > 2:
        local_id = tokens[2]
        if sub == "show":
            memory = context.queue.get_by_local_id(local_id)
            _emit(memory.to_json() if memory else {"error": f"Memory not found in queue: {local_id}"})
            return
        context.queue.remove(local_id)
        _emit({"removed": local_id})
        return
    print("Usage: queue list|count|show <local_id>|remove <local_id>")


def _handle_capture(context: AppContext, tokens: list[str]) -> None:
    if len(tokens) < 3:
        print("Usage: capture <moment|story|memento> <text...>")
        return
    try:
        memory_type = MemoryType.parse(tokens[1])
    except ValueError as exc:
        print(f"{exc}. Usage: capture <moment|story|memento> <text...>")
        return
    text = " ".join(tokens[2:]).strip()
    outcome = context.capture.save_capture(CaptureState(memory_type=memory_type, input_text=text))
    _emit(outcome.to_dict())


def _handle_sync(context: AppContext, tokens: list[str]) -> None:
    sub = tokens[1].lower() if len(tokens) > 1 else "now"
    if sub == "now":
        _emit(asdict(context.synchronizer.sync_queued_memories()))
        return
    if sub == "one" and len(tokens) > 2:
        event = context.synchronizer.sync_memory(tokens[2])
        _emit({"local_id": event.local_id, "server_id": event.server_id, "memory_type": event.memory_type.api_value})
        return
    if sub == "status":
        _emit(status_summary(context))
        return
    print("Usage: sync now|one <local_id>|status")


def _handle_feed(context: AppContext, tokens: list[str]) -> None:
    lowered = [token.lower() for token in tokens]
    try:
        filters = _parse_filters(tokens)
    except ValueError as exc:
        print(f"{exc}. Usage: feed [--offline] [--filter moment,story,memento] [--limit N]")
        return
    page = context.feed.fetch_merged_feed(
        filters=filters,
        batch_size=_parse_limit(tokens, context.config.feed.batch_size),
        is_online=False if "--offline" in lowered else None,
    )
    _emit(
        {
            "has_more": page.has_more,
            "next_cursor": asdict(page.next_cursor) if page.next_cursor else None,
            "memories": [memory.to_json() for memory in page.memories],
        }
    )


def _handle_previews(context: AppContext, tokens: list[str]) -> None:
    sub = tokens[1].lower() if len(tokens) > 1 else "list"
    if sub == "list":
        previews = context.previews.fetch_previews(limit=_parse_limit(tokens, 50))
        _emit([preview.to_json() for preview in previews])
        return
    if sub == "clear":
        context.capture.reset_local_cache()
        _emit({"cleared": True})
        return
    print("Usage: previews list|clear")


def _handle_config(context: AppContext) -> None:
    snapshot = context.config_snapshot
    _emit(
        {
            "path": snapshot.path,
            "valid": snapshot.valid,
            "issues": snapshot.issues,
            "warnings": snapshot.warnings,
            "effective": asdict(context.config),
        }
    )


def _handlers(context: AppContext) -> dict[str, Callable[[list[str]], None]]:
    return {
        "help": lambda _: _print_help(),
        "queue": lambda tokens: _handle_queue(context, tokens),
        "capture": lambda tokens: _handle_capture(context, tokens),
        "sync": lambda tokens: _handle_sync(context, tokens),
        "feed": lambda tokens: _handle_feed(context, tokens),
        "previews": lambda tokens: _handle_previews(context, tokens),
        "config": lambda _: _handle_config(context),
    }


def _dispatch(context: AppContext, handlers: dict[str, Callable[[list[str]], None]], tokens: list[str]) -> int:
    command = tokens[0].lstrip("/").lower()
    if not context.config_snapshot.valid and command not in RESTRICTED_ALLOWED_COMMANDS:
        print("Config invalid. Command blocked. Allowed: " + ", ".join(sorted(RESTRICTED_ALLOWED_COMMANDS)))
        return 2
    handler = handlers.get(command)
    if handler is None:
        print("Unknown command. Use help.")
        return 2
    try:
        handler(tokens)
    except QueueEntryNotFoundError as exc:
        _emit({"error": str(exc)})
        return 1
    except SaveError as exc:
        _emit({"error": exc.error})
        return 1
    return 0


def execute_single_command(context: AppContext, command_line: str) -> int:
    """Execute one command non-interactively and return a process exit code."""
    try:
        tokens = shlex.split(command_line)
    except ValueError as exc:
        print(f"Parse error: {exc}")
        return 2
    if not tokens:
        _print_help()
        return 0
    return _dispatch(context, _handlers(context), tokens)


def run_cli(context: AppContext) -> None:
    """Run the REPL with auto sync and connectivity polling in the background."""
    handlers = _handlers(context)
    context.connectivity.start()
    if context.config_snapshot.valid and context.config.sync.interval_seconds > 0:
        context.synchronizer.start_auto_sync()

    print("Memories CLI ready. Type help for commands.")
    if not context.config_snapshot.valid:
        print("Config invalid. Entering diagnostics-only mode.")
        for issue in context.config_snapshot.issues:
            print(f"- {issue}")

    try:
        while True:
            raw = input("> ").strip()
            if not raw:
                continue
            try:
                tokens = shlex.split(raw)
            except ValueError as exc:
                print(f"Parse error: {exc}")
                continue
            if not tokens:
                continue
            if tokens[0].lstrip("/").lower() == "exit":
                break
            _dispatch(context, handlers, tokens)
    except (KeyboardInterrupt, EOFError):
        print("\nExiting...")
    finally:
        context.synchronizer.stop_auto_sync()
        context.connectivity.stop()
        context.feed.close()
        scan = clean_stale_locks(context.config.paths.data_root)
        if scan.removed:
            print(f"Cleaned stale locks: {scan.removed}")
