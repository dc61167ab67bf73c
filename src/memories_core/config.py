"""Configuration loading and validation."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any


@dataclass(slots=True)
class AppSection:
    env: str


@dataclass(slots=True)
class PathsSection:
    data_root: str
    log_dir: str


@dataclass(slots=True)
class BackendSection:
    url: str
    anon_key: str
    access_token: str | None
    user_id: str | None
    timeout_seconds: int
    upload_timeout_seconds: int


@dataclass(slots=True)
class SyncSection:
    interval_seconds: int
    max_retries: int


@dataclass(slots=True)
class FeedSection:
    batch_size: int
    preview_multiplier: int


@dataclass(slots=True)
class ConnectivitySection:
    probe_url: str
    timeout_seconds: int
    poll_seconds: int


@dataclass(slots=True)
class LoggingSection:
    level: str


@dataclass(slots=True)
class AppConfig:
    app: AppSection
    paths: PathsSection
    backend: BackendSection
    sync: SyncSection
    feed: FeedSection
    connectivity: ConnectivitySection
    logging: LoggingSection


@dataclass(slots=True)
class ConfigSnapshot:
    path: str
    exists: bool
    valid: bool
    issues: list[str]
    warnings: list[str]
    effective_config: AppConfig | None
    effective_raw: dict[str, Any] | None = None


_LOG_LEVELS = {"debug", "info", "warning", "error", "critical"}


def _repo_root() -> Path:
    return Path(__file__).resolve().parents[2]


def _default_config_path(env: str) -> Path:
    return _repo_root() / "config" / f"{env}.json"


def _local_config_path() -> Path:
    return _repo_root() / "config" / "local.json"


def _deep_update(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    out = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(out.get(key), dict):
            out[key] = _deep_update(out[key], value)
        else:
            out[key] = value
    return out


def _parse_override_value(raw: str) -> Any:
    lowered = raw.strip().lower()
    if lowered == "true":
        return True
    if lowered == "false":
        return False
    if lowered == "null":
        return None
    try:
        if "." in raw:
            return float(raw)
        return int(raw)
    except ValueError:
        return raw


def _set_path(target: dict[str, Any], dotted: str, value: Any) -> None:
    parts = [p for p in dotted.split(".") if p]
    node: dict[str, Any] = target
    for part in parts[:-1]:
        current = node.get(part)
        if not isinstance(current, dict):
            current = {}
            node[part] = current
        node = current
    if parts:
        node[parts[-1]] = value


def _env_overrides() -> dict[str, Any]:
    mapping = {
        "MEMORIES_DATA_PATH": "paths.data_root",
        "MEMORIES_LOG_DIR": "paths.log_dir",
        "MEMORIES_BACKEND_URL": "backend.url",
        "MEMORIES_BACKEND_ANON_KEY": "backend.anon_key",
        "MEMORIES_BACKEND_ACCESS_TOKEN": "backend.access_token",
        "MEMORIES_BACKEND_USER_ID": "backend.user_id",
        "MEMORIES_SYNC_INTERVAL": "sync.interval_seconds",
        "MEMORIES_SYNC_MAX_RETRIES": "sync.max_retries",
        "MEMORIES_FEED_BATCH_SIZE": "feed.batch_size",
        "MEMORIES_PROBE_URL": "connectivity.probe_url",
        "MEMORIES_LOG_LEVEL": "logging.level",
    }
    out: dict[str, Any] = {}
    for env_name, cfg_path in mapping.items():
        raw = os.getenv(env_name)
        if raw is None:
            continue
        _set_path(out, cfg_path, _parse_override_value(raw))
    return out


def _require_int(section: dict[str, Any], name: str, key: str, issues: list[str], *, minimum: int = 0) -> None:
    value = section.get(key)
    if isinstance(value, bool) or not isinstance(value, int) or value < minimum:
        issues.append(f"{name}.{key} must be an integer >= {minimum}")


def _validate(raw: dict[str, Any]) -> tuple[list[str], list[str]]:
    issues: list[str] = []
    warnings: list[str] = []
    top_required = {"app", "paths", "backend", "sync", "feed", "connectivity", "logging"}
    top_unknown = set(raw.keys()) - top_required
    if top_unknown:
        issues.append(f"Unknown top-level keys: {', '.join(sorted(top_unknown))}")
    for key in sorted(top_required):
        if not isinstance(raw.get(key), dict):
            issues.append(f"Missing required section: {key}")
    if issues:
        return issues, warnings

    backend = raw["backend"]
    if not str(backend.get("url", "")).strip():
        warnings.append("backend.url is empty; the app will stay in offline mode")
    elif not str(backend.get("url", "")).startswith(("http://", "https://")):
        issues.append("backend.url must start with http:// or https://")
    if str(backend.get("url", "")).strip() and not str(backend.get("anon_key", "")).strip():
        warnings.append("backend.anon_key is empty; requests will be rejected by the backend")
    _require_int(backend, "backend", "timeout_seconds", issues, minimum=1)
    _require_int(backend, "backend", "upload_timeout_seconds", issues, minimum=1)

    sync = raw["sync"]
    _require_int(sync, "sync", "interval_seconds", issues)
    _require_int(sync, "sync", "max_retries", issues, minimum=1)

    feed = raw["feed"]
    _require_int(feed, "feed", "batch_size", issues, minimum=1)
    _require_int(feed, "feed", "preview_multiplier", issues, minimum=1)

    connectivity = raw["connectivity"]
    _require_int(connectivity, "connectivity", "timeout_seconds", issues, minimum=1)
    _require_int(connectivity, "connectivity", "poll_seconds", issues)

    level = str(raw["logging"].get("level", "")).lower()
    if level not in _LOG_LEVELS:
        issues.append(f"logging.level must be one of {'|'.join(sorted(_LOG_LEVELS))}")

    return issues, warnings


def _to_config(raw: dict[str, Any]) -> AppConfig:
    backend = raw["backend"]
    return AppConfig(
        app=AppSection(env=str(raw["app"].get("env", "dev"))),
        paths=PathsSection(data_root=str(raw["paths"]["data_root"]), log_dir=str(raw["paths"]["log_dir"])),
        backend=BackendSection(
            url=str(backend.get("url", "")).rstrip("/"),
            anon_key=str(backend.get("anon_key", "")),
            access_token=str(backend.get("access_token") or "").strip() or None,
            user_id=str(backend.get("user_id") or "").strip() or None,
            timeout_seconds=int(backend["timeout_seconds"]),
            upload_timeout_seconds=int(backend["upload_timeout_seconds"]),
        ),
        sync=SyncSection(
            interval_seconds=int(raw["sync"]["interval_seconds"]),
            max_retries=int(raw["sync"]["max_retries"]),
        ),
        feed=FeedSection(
            batch_size=int(raw["feed"]["batch_size"]),
            preview_multiplier=int(raw["feed"]["preview_multiplier"]),
        ),
        connectivity=ConnectivitySection(
            probe_url=str(raw["connectivity"].get("probe_url", "")),
            timeout_seconds=int(raw["connectivity"]["timeout_seconds"]),
            poll_seconds=int(raw["connectivity"]["poll_seconds"]),
        ),
        logging=LoggingSection(level=str(raw["logging"]["level"]).lower()),
    )


def _bootstrap_config(env: str) -> AppConfig:
    """Minimal runtime-safe config used when file config is invalid."""
    return AppConfig(
        app=AppSection(env=env),
        paths=PathsSection(data_root="./data", log_dir="data/logs"),
        backend=BackendSection(
            url="",
            anon_key="",
            access_token=None,
            user_id=None,
            timeout_seconds=15,
            upload_timeout_seconds=30,
        ),
        sync=SyncSection(interval_seconds=30, max_retries=3),
        feed=FeedSection(batch_size=20, preview_multiplier=3),
        connectivity=ConnectivitySection(probe_url="", timeout_seconds=3, poll_seconds=0),
        logging=LoggingSection(level="info"),
    )


def _invalid(path: Path, exists: bool, issues: list[str], warnings: list[str] | None = None) -> ConfigSnapshot:
    return ConfigSnapshot(
        path=str(path),
        exists=exists,
        valid=False,
        issues=issues,
        warnings=warnings or [],
        effective_config=None,
        effective_raw=None,
    )


def read_config_snapshot(env: str, cli_overrides: dict[str, str] | None = None) -> ConfigSnapshot:
    """Read config file, apply local/env/CLI overrides and return a validity snapshot."""
    path = _default_config_path(env)
    if not path.exists():
        return _invalid(path, False, [f"Config file does not exist: {path}"])

    try:
        file_raw = json.loads(path.read_text(encoding="utf-8"))
    except Exception as exc:  # noqa: BLE001
        return _invalid(path, True, [f"Failed to parse config JSON: {exc}"])
    if not isinstance(file_raw, dict):
        return _invalid(path, True, ["Top-level config must be an object"])

    warnings: list[str] = []
    merged = dict(file_raw)
    local_path = _local_config_path()
    if local_path.exists():
        try:
            local_raw = json.loads(local_path.read_text(encoding="utf-8"))
        except Exception as exc:  # noqa: BLE001
            return _invalid(path, True, [f"Failed to parse local config JSON ({local_path}): {exc}"])
        if not isinstance(local_raw, dict):
            return _invalid(path, True, [f"Local config must be a JSON object: {local_path}"])
        merged = _deep_update(merged, local_raw)
        warnings.append(f"Applied local config overrides from {local_path}")
    merged = _deep_update(merged, _env_overrides())
    if cli_overrides:
        cli_tree: dict[str, Any] = {}
        for key, value in cli_overrides.items():
            _set_path(cli_tree, key, _parse_override_value(value))
        merged = _deep_update(merged, cli_tree)

    issues, validation_warnings = _validate(merged)
    warnings.extend(validation_warnings)
    if issues:
        return _invalid(path, True, issues, warnings)
    return ConfigSnapshot(
        path=str(path),
        exists=True,
        valid=True,
        issues=[],
        warnings=warnings,
        effective_config=_to_config(merged),
        effective_raw=merged,
    )


def ensure_runtime_config(snapshot: ConfigSnapshot, env: str) -> AppConfig:
    """Return valid runtime config; fallback to bootstrap config when snapshot invalid."""
    if snapshot.effective_config is not None:
        return snapshot.effective_config
    return _bootstrap_config(env)
