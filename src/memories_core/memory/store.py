"""Key-value persistence with lock and atomic-write hardening."""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

from memories_core.errors import FileLockTimeoutError

logger = logging.getLogger(__name__)

_KEY_RE = re.compile(r"[^A-Za-z0-9_.-]")


class KeyValueStore(Protocol):
    """String store the queue and preview index serialize into."""

    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...

    def remove(self, key: str) -> None: ...


@dataclass(slots=True)
class LockHandle:
    target_path: str
    lock_path: str


@dataclass(slots=True)
class LockScanResult:
    scanned: int
    stale_found: int
    removed: int
    errors: list[str]


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
        return True
    except OSError:
        return False


def _read_lock_payload(lock_path: Path) -> dict[str, Any] | None:
    try:
        raw = json.loads(lock_path.read_text(encoding="utf-8"))
    except Exception:  # noqa: BLE001
        return None
    if not isinstance(raw, dict):
        return None
    return raw


def _is_stale(payload: dict[str, Any] | None, now_ts: float, stale_after_seconds: float) -> bool:
    if not payload:
        return True
    pid = payload.get("pid")
    created_ts = payload.get("created_ts")
    if not isinstance(pid, int) or not isinstance(created_ts, (int, float)):
        return True
    age = max(0.0, now_ts - float(created_ts))
    return (not _pid_alive(pid)) or age > stale_after_seconds


def acquire_file_lock(
    target_path: str,
    timeout_seconds: float = 10,
    stale_after_seconds: float = 1800,
) -> LockHandle:
    """Acquire an exclusive lock file next to target_path, reclaiming stale locks."""
    lock_path = Path(f"{target_path}.lock")
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    started = time.monotonic()
    attempt = 0
    while True:
        try:
            fd = os.open(str(lock_path), os.O_CREAT | os.O_EXCL | os.O_WRONLY)
            payload = {"pid": os.getpid(), "created_ts": time.time()}
            os.write(fd, json.dumps(payload).encode("utf-8"))
            os.close(fd)
            return LockHandle(target_path=target_path, lock_path=str(lock_path))
        except FileExistsError:
            if _is_stale(_read_lock_payload(lock_path), time.time(), stale_after_seconds):
                logger.warning("store: reclaiming stale lock %s", lock_path)
                try:
                    lock_path.unlink(missing_ok=True)
                except OSError:
                    logger.exception("store: failed to remove stale lock", extra={"lock_path": str(lock_path)})
            if time.monotonic() - started >= timeout_seconds:
                raise FileLockTimeoutError(str(lock_path), timeout_seconds=timeout_seconds, attempts=attempt)
            attempt += 1
            time.sleep(min(1.0, 0.05 * attempt))


def release_file_lock(handle: LockHandle) -> None:
    Path(handle.lock_path).unlink(missing_ok=True)


def clean_stale_locks(root: str | Path, stale_after_seconds: float = 1800) -> LockScanResult:
    """Remove stale lock files recursively under root."""
    scanned = 0
    stale_found = 0
    removed = 0
    errors: list[str] = []
    now_ts = time.time()
    root_path = Path(root)
    if not root_path.exists():
        return LockScanResult(scanned=0, stale_found=0, removed=0, errors=[])
    for lock_file in root_path.rglob("*.lock"):
        scanned += 1
        if not _is_stale(_read_lock_payload(lock_file), now_ts, stale_after_seconds):
            continue
        stale_found += 1
        try:
            lock_file.unlink(missing_ok=True)
            removed += 1
        except OSError as exc:
            errors.append(f"{lock_file}: {exc}")
    return LockScanResult(scanned=scanned, stale_found=stale_found, removed=removed, errors=errors)


def _atomic_write_text(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_path = tempfile.mkstemp(prefix=f"{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as file_handle:
            file_handle.write(text)
        os.replace(temp_path, path)
    finally:
        if os.path.exists(temp_path):
            os.unlink(temp_path)


class FileKeyValueStore:
    """One file per key under data_root/prefs."""

    def __init__(self, data_root: str | Path, *, lock_timeout_seconds: float = 10) -> None:
        self.data_root = Path(data_root)
        self.prefs_dir = self.data_root / "prefs"
        self._lock_timeout_seconds = lock_timeout_seconds

    def path_for(self, key: str) -> Path:
        safe = _KEY_RE.sub("_", key.strip()) or "_"
        return self.prefs_dir / f"{safe}.json"

    def get(self, key: str) -> str | None:
        path = self.path_for(key)
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def set(self, key: str, value: str) -> None:
        path = self.path_for(key)
        lock = acquire_file_lock(str(path), timeout_seconds=self._lock_timeout_seconds)
        try:
            _atomic_write_text(path, value)
        finally:
            release_file_lock(lock)

    def remove(self, key: str) -> None:
        path = self.path_for(key)
        lock = acquire_file_lock(str(path), timeout_seconds=self._lock_timeout_seconds)
        try:
            path.unlink(missing_ok=True)
        finally:
            release_file_lock(lock)


class InMemoryKeyValueStore:
    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self._values: dict[str, str] = dict(initial or {})
        self._lock = threading.Lock()

    def get(self, key: str) -> str | None:
        with self._lock:
            return self._values.get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self._values[key] = value

    def remove(self, key: str) -> None:
        with self._lock:
            self._values.pop(key, None)


def load_json_records(store: KeyValueStore, key: str) -> list[dict[str, Any]]:
    """Read a JSON array blob; corrupt blobs are parked under `<key>.corrupt` and read as empty."""
    raw = store.get(key)
    if raw is None:
        return []
    try:
        data = json.loads(raw)
        if not isinstance(data, list):
            raise ValueError(f"expected a JSON array, got {type(data).__name__}")
    except Exception as exc:  # noqa: BLE001
        logger.error("store: corrupt collection treated as empty", extra={"key": key, "error": str(exc)})
        try:
            store.set(f"{key}.corrupt", raw)
        except Exception:  # noqa: BLE001
            logger.exception("store: failed to back up corrupt collection", extra={"key": key})
        return []
    return [item for item in data if isinstance(item, dict)]


def save_json_records(store: KeyValueStore, key: str, records: list[dict[str, Any]]) -> None:
    store.set(key, json.dumps(records, ensure_ascii=False))
