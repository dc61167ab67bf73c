"""Application entrypoint."""

from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path

from memories_core.app import build_context
from memories_core.config import AppConfig, ensure_runtime_config, read_config_snapshot
from memories_core.interfaces.cli import execute_single_command, run_cli

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Memories offline queue and sync CLI")
    parser.add_argument("--env", choices=["dev", "prod"], default="dev")
    parser.add_argument("--data-path", default=None)
    parser.add_argument("--backend-url", default=None)
    parser.add_argument("--sync-interval", default=None)
    parser.add_argument("command", nargs=argparse.REMAINDER)
    return parser.parse_args(argv)


def _load_dotenv(path: Path) -> None:
    """Load .env key/value pairs into process env without overriding existing env vars."""
    if not path.exists():
        return
    for line in path.read_text(encoding="utf-8").splitlines():
        raw = line.strip()
        if not raw or raw.startswith("#") or "=" not in raw:
            continue
        key, value = raw.split("=", 1)
        key = key.strip()
        value = value.strip()
        if not key:
            continue
        if value and ((value[0] == value[-1]) and value[0] in {'"', "'"}):
            value = value[1:-1]
        os.environ.setdefault(key, value)


def configure_logging(config: AppConfig) -> None:
    """Root level from config; records go to stderr and ``<log_dir>/memories.log``."""
    level = getattr(logging, config.logging.level.upper(), logging.INFO)
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    log_dir = Path(config.paths.log_dir)
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_dir / "memories.log", encoding="utf-8"))
    except OSError as exc:
        print(f"Log directory unavailable ({log_dir}): {exc}", file=sys.stderr)
    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=handlers, force=True)


def main(argv: list[str] | None = None) -> int:
    _load_dotenv(Path(".env"))
    args = parse_args(argv)
    overrides: dict[str, str] = {}
    if args.data_path:
        overrides["paths.data_root"] = str(args.data_path)
    if args.backend_url:
        overrides["backend.url"] = str(args.backend_url)
    if args.sync_interval is not None:
        overrides["sync.interval_seconds"] = str(args.sync_interval)

    snapshot = read_config_snapshot(env=args.env, cli_overrides=overrides)
    if snapshot.effective_config is None:
        print("Config is invalid. CLI will run in diagnostics-only mode.")
        for issue in snapshot.issues:
            print(f"- {issue}")

    runtime_config = ensure_runtime_config(snapshot, env=args.env)
    configure_logging(runtime_config)
    context = build_context(config=runtime_config, snapshot=snapshot)

    if args.command:
        command_line = " ".join(args.command).strip()
        return execute_single_command(context, command_line)

    run_cli(context)
    return 0


if __name__ == "__main__":
    sys.exit(main())
