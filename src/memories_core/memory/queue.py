"""Durable queue of memories captured offline."""

from __future__ import annotations

import logging
import threading
import uuid

from memories_core.errors import QueueEntryNotFoundError
from memories_core.events import EventChannel
from memories_core.memory.models import QueueChangeEvent, QueueChangeType, QueuedMemory, QueuedMemoryStatus
from memories_core.memory.store import KeyValueStore, load_json_records, save_json_records

logger = logging.getLogger(__name__)

QUEUE_KEY = "queued_memories"


class OfflineMemoryQueue:
    """Queue of moments, stories and mementos waiting for upload.

    The whole collection is one JSON array under ``QUEUE_KEY``. Every mutation
    reads the array, edits it in memory and writes it back while holding the
    store lock, then emits exactly one ``QueueChangeEvent``.
    """

    def __init__(self, store: KeyValueStore, changes: EventChannel[QueueChangeEvent] | None = None) -> None:
        self._store = store
        self._lock = threading.RLock()
        self.changes: EventChannel[QueueChangeEvent] = changes or EventChannel("queue_changes")

    @staticmethod
    def generate_local_id() -> str:
        return str(uuid.uuid4())

    def _load_all(self) -> list[QueuedMemory]:
        memories: list[QueuedMemory] = []
        for raw in load_json_records(self._store, QUEUE_KEY):
            try:
                memories.append(QueuedMemory.from_json(raw))
            except (ValueError, TypeError) as exc:
                logger.warning("queue: skipping unreadable record: %s", exc)
        return memories

    def _save_all(self, memories: list[QueuedMemory]) -> None:
        save_json_records(self._store, QUEUE_KEY, [memory.to_json() for memory in memories])

    def _upsert(self, memory: QueuedMemory) -> bool:
        with self._lock:
            memories = self._load_all()
            existed = any(item.local_id == memory.local_id for item in memories)
            memories = [item for item in memories if item.local_id != memory.local_id]
            memories.append(memory)
            self._save_all(memories)
        return existed

    def enqueue(self, memory: QueuedMemory) -> None:
        """Insert memory, replacing any stored record with the same local_id."""
        existed = self._upsert(memory)
        change = QueueChangeType.UPDATED if existed else QueueChangeType.ADDED
        logger.debug("queue: %s %s status=%s", change.value, memory.local_id, memory.status.value)
        self.changes.emit(QueueChangeEvent(local_id=memory.local_id, memory_type=memory.memory_type, type=change))

    def update(self, memory: QueuedMemory) -> None:
        self._upsert(memory)
        logger.debug("queue: updated %s status=%s", memory.local_id, memory.status.value)
        self.changes.emit(
            QueueChangeEvent(local_id=memory.local_id, memory_type=memory.memory_type, type=QueueChangeType.UPDATED)
        )

    def remove(self, local_id: str) -> None:
        with self._lock:
            memories = self._load_all()
            match = next((item for item in memories if item.local_id == local_id), None)
            if match is None:
                raise QueueEntryNotFoundError(local_id)
            self._save_all([item for item in memories if item.local_id != local_id])
        logger.debug("queue: removed %s", local_id)
        self.changes.emit(QueueChangeEvent(local_id=local_id, memory_type=match.memory_type, type=QueueChangeType.REMOVED))

    def get_by_local_id(self, local_id: str) -> QueuedMemory | None:
        return next((item for item in self._load_all() if item.local_id == local_id), None)

    def get_all_queued(self) -> list[QueuedMemory]:
        return self._load_all()

    def get_by_status(self, status: QueuedMemoryStatus | str) -> list[QueuedMemory]:
        wanted = QueuedMemoryStatus.parse(status)
        return [item for item in self._load_all() if item.status is wanted]

    def get_count(self) -> int:
        return len(self._load_all())

    def get_count_by_status(self, status: QueuedMemoryStatus | str) -> int:
        return len(self.get_by_status(status))

    def status_summary(self) -> dict[str, int]:
        summary = {status.value: 0 for status in QueuedMemoryStatus}
        for item in self._load_all():
            summary[item.status.value] += 1
        return summary
