"""Local preview index of already-synced memories for offline browsing."""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable

from memories_core.memory.models import LocalMemoryPreview, MemoryType
from memories_core.memory.store import KeyValueStore, load_json_records, save_json_records

logger = logging.getLogger(__name__)

PREVIEW_INDEX_KEY = "local_memory_preview_index"


class LocalPreviewIndex:
    """Previews keyed by server_id, stored as one JSON array."""

    def __init__(self, store: KeyValueStore) -> None:
        self._store = store
        self._lock = threading.RLock()

    def _load_all(self) -> list[LocalMemoryPreview]:
        previews: list[LocalMemoryPreview] = []
        for raw in load_json_records(self._store, PREVIEW_INDEX_KEY):
            try:
                previews.append(LocalMemoryPreview.from_json(raw))
            except (ValueError, TypeError) as exc:
                logger.warning("previews: skipping unreadable entry: %s", exc)
        return previews

    def _save_all(self, previews: Iterable[LocalMemoryPreview]) -> None:
        save_json_records(self._store, PREVIEW_INDEX_KEY, [preview.to_json() for preview in previews])

    def upsert_previews(self, previews: list[LocalMemoryPreview]) -> None:
        if not previews:
            return
        with self._lock:
            by_server_id = {preview.server_id: preview for preview in self._load_all()}
            for preview in previews:
                by_server_id[preview.server_id] = preview
            self._save_all(by_server_id.values())
        logger.debug("previews: upserted %s entries", len(previews))

    def fetch_previews(
        self,
        filters: Iterable[MemoryType] | None = None,
        limit: int = 50,
    ) -> list[LocalMemoryPreview]:
        previews = self._load_all()
        wanted = set(filters or ())
        if wanted:
            previews = [preview for preview in previews if preview.memory_type in wanted]
        previews.sort(key=lambda preview: preview.captured_at, reverse=True)
        return previews[: max(0, limit)]

    def remove_preview_by_server_id(self, server_id: str) -> bool:
        with self._lock:
            previews = self._load_all()
            kept = [preview for preview in previews if preview.server_id != server_id]
            if len(kept) == len(previews):
                return False
            self._save_all(kept)
        logger.info("previews: removed %s", server_id)
        return True

    def clear(self) -> None:
        with self._lock:
            self._store.remove(PREVIEW_INDEX_KEY)
        logger.info("previews: cleared index")

    def count(self) -> int:
        return len(self._load_all())
