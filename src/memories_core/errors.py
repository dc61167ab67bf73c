"""Error types shared by the queue, gateway and synchronizer."""

from __future__ import annotations

import json


class SaveError(Exception):
    """Generic failure saving a memory to the backend."""

    code = "save_failed"

    def __init__(self, message: str) -> None:
        self.message = message
        self.error = {"code": self.code, "message": message}
        super().__init__(message)

    def __str__(self) -> str:
        return self.message


class OfflineError(SaveError):
    code = "offline"


class StorageQuotaError(SaveError):
    code = "storage_quota"


class PermissionDeniedError(SaveError):
    code = "permission_denied"


class NetworkError(SaveError):
    code = "network"


class QueueEntryNotFoundError(LookupError):
    """Raised when a queue operation targets a local id that is not stored."""

    def __init__(self, local_id: str) -> None:
        self.local_id = local_id
        super().__init__(f"Memory not found in queue: {local_id}")


class FileLockTimeoutError(TimeoutError):
    """Timeout while acquiring a file lock, with structured details."""

    def __init__(self, lock_path: str, timeout_seconds: float, attempts: int) -> None:
        self.error = {
            "code": "lock_timeout",
            "message": f"Timed out waiting for lock: {lock_path}",
            "lock_path": lock_path,
            "timeout_seconds": timeout_seconds,
            "attempts": attempts,
        }
        super().__init__(json.dumps(self.error))
