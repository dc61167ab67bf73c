"""Save-or-queue entry point used by capture screens and the CLI."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from memories_core.connectivity import ConnectivityMonitor
from memories_core.errors import OfflineError, QueueEntryNotFoundError
from memories_core.gateway.save import RemoteSaveGateway
from memories_core.memory.models import OPERATION_CREATE, OPERATION_UPDATE, CaptureState, QueuedMemory, SaveResult
from memories_core.memory.previews import LocalPreviewIndex
from memories_core.memory.queue import OfflineMemoryQueue

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CaptureOutcome:
    queued: bool
    local_id: str | None = None
    result: SaveResult | None = None

    @property
    def memory_id(self) -> str | None:
        return self.result.memory_id if self.result else None

    def to_dict(self) -> dict[str, object]:
        return {
            "queued": self.queued,
            "local_id": self.local_id,
            "memory_id": self.memory_id,
            "generated_title": self.result.generated_title if self.result else None,
        }


class CaptureService:
    """Save captures directly when possible and queue them otherwise."""

    def __init__(
        self,
        gateway: RemoteSaveGateway,
        queue: OfflineMemoryQueue,
        previews: LocalPreviewIndex,
        connectivity: ConnectivityMonitor,
    ) -> None:
        self._gateway = gateway
        self._queue = queue
        self._previews = previews
        self._connectivity = connectivity

    def save_capture(self, state: CaptureState) -> CaptureOutcome:
        """Create or update remotely; offline captures land in the queue instead.

        Errors other than ``OfflineError`` propagate so the caller can show them.
        """
        if self._connectivity.is_online():
            try:
                if state.is_editing:
                    result = self._gateway.update(state)
                else:
                    result = self._gateway.create(state)
                return CaptureOutcome(queued=False, result=result)
            except OfflineError as exc:
                logger.info("capture: gateway reported offline; queueing: %s", exc)
        return self._enqueue(state)

    def _enqueue(self, state: CaptureState) -> CaptureOutcome:
        local_id = self._queue.generate_local_id()
        operation = OPERATION_UPDATE if state.is_editing else OPERATION_CREATE
        memory = QueuedMemory.from_capture_state(
            local_id,
            state,
            operation=operation,
            target_memory_id=state.editing_memory_id,
        )
        self._queue.enqueue(memory)
        logger.info(
            "capture: queued %s for later sync",
            local_id,
            extra={"memory_type": state.memory_type.api_value, "operation": operation},
        )
        return CaptureOutcome(queued=True, local_id=local_id)

    def edit_queued(self, local_id: str, state: CaptureState) -> QueuedMemory:
        existing = self._queue.get_by_local_id(local_id)
        if existing is None:
            raise QueueEntryNotFoundError(local_id)
        edited = existing.copy_with_capture_state(state)
        self._queue.update(edited)
        logger.info("capture: edited queued %s", local_id)
        return edited

    def forget_remote_memory(self, server_id: str) -> bool:
        """Drop the cached preview after the server copy was deleted."""
        return self._previews.remove_preview_by_server_id(server_id)

    def reset_local_cache(self) -> None:
        self._previews.clear()
