from __future__ import annotations

from datetime import datetime, timezone

import pytest

from memories_core.connectivity import ConnectivityMonitor
from memories_core.errors import NetworkError, OfflineError, QueueEntryNotFoundError
from memories_core.memory.models import (
    OPERATION_UPDATE,
    CaptureState,
    MemoryType,
    QueuedMemory,
    QueuedMemoryStatus,
    SaveResult,
    SyncCompleteEvent,
)
from memories_core.memory.queue import OfflineMemoryQueue
from memories_core.memory.store import InMemoryKeyValueStore
from memories_core.sync.synchronizer import MemorySynchronizer

NOW = datetime(2025, 6, 1, 9, 30, tzinfo=timezone.utc)


class FakeGateway:
    def __init__(self, failures: int = 0, error: Exception | None = None) -> None:
        self.failures = failures
        self.error = error or NetworkError("Network error. Check your connection and try again.")
        self.calls: list[tuple[str, str | None]] = []
        self.before_return = None

    def _call(self, operation: str, state: CaptureState) -> SaveResult:
        self.calls.append((operation, state.input_text))
        if self.failures != 0:
            self.failures -= 1
            raise self.error
        if self.before_return is not None:
            self.before_return(state)
        memory_id = state.editing_memory_id or f"srv-{len(self.calls)}"
        return SaveResult(memory_id=memory_id, generated_title=state.memory_title)

    def create(self, state: CaptureState) -> SaveResult:
        return self._call("create", state)

    def update(self, state: CaptureState) -> SaveResult:
        return self._call("update", state)


def _online(value: bool = True) -> ConnectivityMonitor:
    monitor = ConnectivityMonitor()
    monitor.set_online(value)
    return monitor


def _queued(local_id: str, status: QueuedMemoryStatus = QueuedMemoryStatus.QUEUED, **changes) -> QueuedMemory:
    memory = QueuedMemory(
        local_id=local_id,
        memory_type=MemoryType.MOMENT,
        created_at=NOW,
        input_text=local_id,
        status=status,
    )
    return memory.copy_with(**changes) if changes else memory


def _build(gateway: FakeGateway, online: bool = True, **kwargs):
    queue = OfflineMemoryQueue(InMemoryKeyValueStore())
    connectivity = _online(online)
    sync = MemorySynchronizer(queue, connectivity, gateway, clock=lambda: NOW, **kwargs)
    return queue, connectivity, sync


def test_always_failing_record_is_capped_at_three_and_marked_failed() -> None:
    gateway = FakeGateway(failures=-1)
    queue, _, sync = _build(gateway)
    queue.enqueue(_queued("a"))

    results = [sync.sync_queued_memories() for _ in range(5)]

    stored = queue.get_by_local_id("a")
    assert stored is not None
    assert stored.status is QueuedMemoryStatus.FAILED
    assert stored.retry_count == 3
    assert stored.error_message == "Network error. Check your connection and try again."
    assert stored.last_retry_at == NOW
    assert [r.requeued for r in results] == [1, 1, 0, 0, 0]
    assert [r.failed for r in results] == [0, 0, 1, 1, 1]
    assert len(gateway.calls) == 5


def test_queued_records_are_attempted_before_failed_ones() -> None:
    gateway = FakeGateway()
    queue, _, sync = _build(gateway)
    queue.enqueue(_queued("f1", QueuedMemoryStatus.FAILED, retry_count=3))
    queue.enqueue(_queued("q1"))
    queue.enqueue(_queued("q2"))

    result = sync.sync_queued_memories()

    assert [text for _, text in gateway.calls] == ["q1", "q2", "f1"]
    assert result.synced == 3
    assert queue.get_count() == 0


def test_fail_then_succeed_emits_completion_exactly_once() -> None:
    gateway = FakeGateway(failures=1)
    queue, _, sync = _build(gateway)
    events: list[SyncCompleteEvent] = []
    sync.subscribe(events.append)
    queue.enqueue(_queued("a"))

    first = sync.sync_queued_memories()
    stored = queue.get_by_local_id("a")
    assert first.requeued == 1
    assert stored is not None
    assert stored.status is QueuedMemoryStatus.QUEUED
    assert stored.retry_count == 1

    second = sync.sync_queued_memories()
    assert second.synced == 1
    assert events == [SyncCompleteEvent(local_id="a", server_id="srv-2", memory_type=MemoryType.MOMENT)]
    assert queue.get_by_local_id("a") is None

    sync.sync_queued_memories()
    assert len(events) == 1


def test_trigger_while_pass_running_is_ignored() -> None:
    gateway = FakeGateway()
    queue, _, sync = _build(gateway)
    nested = []
    gateway.before_return = lambda state: nested.append(sync.sync_queued_memories())
    queue.enqueue(_queued("a"))

    result = sync.sync_queued_memories()

    assert result.synced == 1
    assert len(nested) == 1
    assert nested[0].ran is False
    assert nested[0].skipped_reason == "busy"
    assert sync.is_syncing is False


def test_offline_pass_is_a_no_op() -> None:
    gateway = FakeGateway()
    queue, _, sync = _build(gateway, online=False)
    queue.enqueue(_queued("a"))

    result = sync.sync_queued_memories()

    assert result.ran is False
    assert result.skipped_reason == "offline"
    assert gateway.calls == []
    stored = queue.get_by_local_id("a")
    assert stored is not None
    assert stored.status is QueuedMemoryStatus.QUEUED


def test_sync_memory_offline_raises_before_touching_gateway() -> None:
    gateway = FakeGateway()
    queue, _, sync = _build(gateway, online=False)
    queue.enqueue(_queued("a"))

    with pytest.raises(OfflineError):
        sync.sync_memory("a")
    with pytest.raises(OfflineError):
        sync.sync_memory("missing")
    assert gateway.calls == []


def test_sync_memory_unknown_id_raises_not_found() -> None:
    _, _, sync = _build(FakeGateway())
    with pytest.raises(QueueEntryNotFoundError):
        sync.sync_memory("missing")


def test_sync_memory_reraises_after_bookkeeping() -> None:
    gateway = FakeGateway(failures=1)
    queue, _, sync = _build(gateway)
    queue.enqueue(_queued("a"))

    with pytest.raises(NetworkError):
        sync.sync_memory("a")

    stored = queue.get_by_local_id("a")
    assert stored is not None
    assert stored.retry_count == 1
    assert stored.status is QueuedMemoryStatus.QUEUED

    event = sync.sync_memory("a")
    assert event.server_id == "srv-2"
    assert queue.get_count() == 0


def test_update_operation_goes_through_gateway_update() -> None:
    gateway = FakeGateway()
    queue, _, sync = _build(gateway)
    queue.enqueue(_queued("a", operation=OPERATION_UPDATE, target_memory_id="srv-77"))

    event = sync.sync_memory("a")

    assert gateway.calls == [("update", "a")]
    assert event.server_id == "srv-77"


def test_auto_sync_runs_on_offline_to_online_edge() -> None:
    gateway = FakeGateway()
    queue = OfflineMemoryQueue(InMemoryKeyValueStore())
    connectivity = ConnectivityMonitor()
    connectivity.set_online(False)
    sync = MemorySynchronizer(queue, connectivity, gateway, interval_seconds=0, spawn=lambda fn: fn())
    queue.enqueue(_queued("a"))

    sync.start_auto_sync()
    status = sync.auto_sync_status()
    assert status.listening_for_connectivity is True
    assert status.running is False

    connectivity.set_online(True)
    assert queue.get_count() == 0

    sync.stop_auto_sync()
    queue.enqueue(_queued("b"))
    connectivity.set_online(False)
    connectivity.set_online(True)
    assert queue.get_count() == 1
    assert sync.auto_sync_status().listening_for_connectivity is False


def test_concurrent_edit_during_upload_is_overwritten() -> None:
    gateway = FakeGateway()
    queue, _, sync = _build(gateway)
    queue.enqueue(_queued("a"))

    def _edit_while_uploading(state: CaptureState) -> None:
        stored = queue.get_by_local_id("a")
        assert stored is not None
        queue.update(stored.copy_with(input_text="edited mid-upload"))

    gateway.before_return = _edit_while_uploading
    result = sync.sync_queued_memories()

    # The completed write replaces the edit, then the record is removed.
    assert result.synced == 1
    assert gateway.calls == [("create", "a")]
    assert queue.get_by_local_id("a") is None


def test_interval_tick_syncs_while_online() -> None:
    gateway = FakeGateway()
    queue, _, sync = _build(gateway, interval_seconds=3600)
    queue.enqueue(_queued("a"))

    sync.start_auto_sync()
    try:
        assert sync.auto_sync_status().running is True
        assert sync._timer is not None
        sync._timer.tick_once()
    finally:
        sync.stop_auto_sync()

    assert gateway.calls == [("create", "a")]
    assert queue.get_count() == 0
    assert sync.auto_sync_status().running is False


def test_interval_tick_does_nothing_while_offline() -> None:
    gateway = FakeGateway()
    queue, _, sync = _build(gateway, online=False)
    queue.enqueue(_queued("a"))

    sync._on_timer()

    assert gateway.calls == []
    stored = queue.get_by_local_id("a")
    assert stored is not None
    assert stored.status is QueuedMemoryStatus.QUEUED
    assert stored.retry_count == 0


def test_interval_tick_during_running_pass_is_skipped() -> None:
    probes: list[int] = []

    def _probe() -> bool:
        probes.append(1)
        return True

    gateway = FakeGateway()
    queue = OfflineMemoryQueue(InMemoryKeyValueStore())
    sync = MemorySynchronizer(queue, ConnectivityMonitor(_probe), gateway, clock=lambda: NOW)
    queue.enqueue(_queued("a"))
    probes_during_tick: list[int] = []

    def _tick_mid_upload(state: CaptureState) -> None:
        before = len(probes)
        sync._on_timer()
        probes_during_tick.append(len(probes) - before)

    gateway.before_return = _tick_mid_upload

    result = sync.sync_queued_memories()

    assert result.synced == 1
    assert gateway.calls == [("create", "a")]
    assert probes_during_tick == [0]
