"""Drain the offline queue through the remote save gateway."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from memories_core.connectivity import ConnectivityMonitor
from memories_core.errors import OfflineError, QueueEntryNotFoundError
from memories_core.events import EventChannel
from memories_core.gateway.save import RemoteSaveGateway
from memories_core.memory.models import QueuedMemory, QueuedMemoryStatus, SyncCompleteEvent, now_local
from memories_core.memory.queue import OfflineMemoryQueue
from memories_core.sync.loop import IntervalLoop

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_SECONDS = 30
DEFAULT_MAX_RETRIES = 3


@dataclass(slots=True)
class SyncPassResult:
    ran: bool
    skipped_reason: str | None = None
    attempted: int = 0
    synced: int = 0
    requeued: int = 0
    failed: int = 0


@dataclass(slots=True)
class AutoSyncStatus:
    running: bool
    interval_seconds: float
    is_syncing: bool
    listening_for_connectivity: bool


def _spawn_thread(fn: Callable[[], object]) -> None:
    threading.Thread(target=fn, name="memories-sync-pass", daemon=True).start()


class MemorySynchronizer:
    """Upload queued captures when the device is online.

    Batch passes are serialized by a non-blocking busy lock: a trigger that
    arrives while a pass is running is dropped. ``sync_memory`` does not take
    the busy lock, so a manual retry can overlap a batch pass; both paths
    write whole records and the last write for a local id wins.
    """

    def __init__(
        self,
        queue: OfflineMemoryQueue,
        connectivity: ConnectivityMonitor,
        gateway: RemoteSaveGateway,
        *,
        interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        clock: Callable[[], datetime] = now_local,
        spawn: Callable[[Callable[[], object]], None] = _spawn_thread,
    ) -> None:
        self._queue = queue
        self._connectivity = connectivity
        self._gateway = gateway
        self._interval_seconds = interval_seconds
        self._max_retries = max(1, max_retries)
        self._clock = clock
        self._spawn = spawn
        self._busy = threading.Lock()
        self._timer: IntervalLoop | None = None
        self._unsubscribe_connectivity: Callable[[], None] | None = None
        self.completions: EventChannel[SyncCompleteEvent] = EventChannel("sync_complete")

    @property
    def is_syncing(self) -> bool:
        return self._busy.locked()

    def subscribe(self, callback: Callable[[SyncCompleteEvent], None]) -> Callable[[], None]:
        return self.completions.subscribe(callback)

    def start_auto_sync(self) -> None:
        """Sync on every offline->online edge and every interval while online."""
        if self._unsubscribe_connectivity is None:
            self._unsubscribe_connectivity = self._connectivity.subscribe(self._on_connectivity_change)
        if self._timer is None:
            self._timer = IntervalLoop(self._interval_seconds, self._on_timer, name="memories-auto-sync")
            self._timer.start()
        logger.info("sync: auto sync started interval=%ss", self._interval_seconds)

    def stop_auto_sync(self) -> None:
        if self._timer is not None:
            self._timer.stop()
            self._timer = None
        if self._unsubscribe_connectivity is not None:
            self._unsubscribe_connectivity()
            self._unsubscribe_connectivity = None
        logger.info("sync: auto sync stopped")

    def auto_sync_status(self) -> AutoSyncStatus:
        return AutoSyncStatus(
            running=bool(self._timer and self._timer.status().running),
            interval_seconds=self._interval_seconds,
            is_syncing=self.is_syncing,
            listening_for_connectivity=self._unsubscribe_connectivity is not None,
        )

    def _on_connectivity_change(self, online: bool) -> None:
        if online and not self.is_syncing:
            self._spawn(self.sync_queued_memories)

    def _on_timer(self) -> None:
        if self.is_syncing:
            return
        if self._connectivity.is_online():
            self.sync_queued_memories()

    def sync_queued_memories(self) -> SyncPassResult:
        """Run one batch pass: queued records first, then previously failed ones."""
        if not self._busy.acquire(blocking=False):
            logger.debug("sync: pass already running; trigger ignored")
            return SyncPassResult(ran=False, skipped_reason="busy")
        try:
            if not self._connectivity.is_online():
                logger.debug("sync: offline; pass skipped")
                return SyncPassResult(ran=False, skipped_reason="offline")
            return self._run_pass()
        finally:
            self._busy.release()

    def _run_pass(self) -> SyncPassResult:
        queued = self._queue.get_by_status(QueuedMemoryStatus.QUEUED)
        failed = self._queue.get_by_status(QueuedMemoryStatus.FAILED)
        result = SyncPassResult(ran=True)
        for memory in [*queued, *failed]:
            result.attempted += 1
            try:
                self._sync_one(memory)
            except Exception as exc:  # noqa: BLE001
                logger.debug("sync: %s not synced this pass: %s", memory.local_id, exc)
                stored = self._queue.get_by_local_id(memory.local_id)
                if stored is not None and stored.status is QueuedMemoryStatus.FAILED:
                    result.failed += 1
                else:
                    result.requeued += 1
                continue
            result.synced += 1
        if result.attempted:
            logger.info(
                "sync: pass finished attempted=%s synced=%s requeued=%s failed=%s",
                result.attempted,
                result.synced,
                result.requeued,
                result.failed,
            )
        return result

    def sync_memory(self, local_id: str) -> SyncCompleteEvent:
        """Sync one record now; raises the underlying error after bookkeeping."""
        if not self._connectivity.is_online():
            raise OfflineError("Device is offline")
        memory = self._queue.get_by_local_id(local_id)
        if memory is None:
            raise QueueEntryNotFoundError(local_id)
        return self._sync_one(memory)

    def _sync_one(self, memory: QueuedMemory) -> SyncCompleteEvent:
        syncing = memory.copy_with(status=QueuedMemoryStatus.SYNCING, last_retry_at=self._clock())
        self._queue.update(syncing)
        try:
            state = memory.to_capture_state()
            if memory.is_update:
                saved = self._gateway.update(state)
            else:
                saved = self._gateway.create(state)
        except Exception as exc:
            self._record_failure(syncing, exc)
            raise

        self._queue.update(syncing.copy_with(status=QueuedMemoryStatus.COMPLETED, server_memory_id=saved.memory_id))
        event = SyncCompleteEvent(local_id=memory.local_id, server_id=saved.memory_id, memory_type=memory.memory_type)
        self.completions.emit(event)
        try:
            self._queue.remove(memory.local_id)
        except QueueEntryNotFoundError:
            logger.debug("sync: %s already removed by a concurrent sync", memory.local_id)
        logger.info("sync: %s synced as %s", memory.local_id, saved.memory_id)
        return event

    def _record_failure(self, memory: QueuedMemory, exc: Exception) -> None:
        retry_count = min(memory.retry_count + 1, self._max_retries)
        status = QueuedMemoryStatus.FAILED if retry_count >= self._max_retries else QueuedMemoryStatus.QUEUED
        self._queue.update(
            memory.copy_with(
                status=status,
                retry_count=retry_count,
                error_message=str(exc),
                last_retry_at=self._clock(),
            )
        )
        logger.warning(
            "sync: %s failed attempt=%s status=%s error=%s",
            memory.local_id,
            retry_count,
            status.value,
            exc,
        )
