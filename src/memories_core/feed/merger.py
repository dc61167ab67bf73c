"""Merge server pages, the offline queue and the preview index into one feed."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, replace

from memories_core.connectivity import ConnectivityMonitor
from memories_core.feed.adapters import preview_from_timeline, timeline_from_preview, timeline_from_queued
from memories_core.feed.models import FeedCursor, TimelineMemory
from memories_core.feed.repository import UnifiedFeedRepository
from memories_core.memory.models import ALL_MEMORY_TYPES, MemoryType, QueueChangeEvent
from memories_core.memory.previews import LocalPreviewIndex
from memories_core.memory.queue import OfflineMemoryQueue

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 20
DEFAULT_PREVIEW_MULTIPLIER = 3


@dataclass(slots=True)
class MergedFeedPage:
    memories: list[TimelineMemory]
    next_cursor: FeedCursor | None
    has_more: bool


def _sort_newest_first(memories: list[TimelineMemory]) -> list[TimelineMemory]:
    return sorted(memories, key=lambda memory: memory.effective_date, reverse=True)


class FeedMerger:
    """Build timeline pages that are usable online and offline.

    Online pages are the server page plus queued captures not yet shown
    on an earlier page; offline pages are queued captures plus cached
    previews.
    Items are never de-duplicated across sources, so a capture that syncs
    between two reads may briefly show twice.
    """

    def __init__(
        self,
        repository: UnifiedFeedRepository,
        queue: OfflineMemoryQueue,
        previews: LocalPreviewIndex,
        connectivity: ConnectivityMonitor,
        *,
        preview_multiplier: int = DEFAULT_PREVIEW_MULTIPLIER,
    ) -> None:
        self._repository = repository
        self._queue = queue
        self._previews = previews
        self._connectivity = connectivity
        self._preview_multiplier = max(1, preview_multiplier)
        self._stale = False
        self._unsubscribe = queue.changes.subscribe(self._on_queue_change)

    @property
    def is_stale(self) -> bool:
        return self._stale

    def invalidate(self) -> None:
        self._stale = True

    def _on_queue_change(self, event: QueueChangeEvent) -> None:
        logger.debug("feed: queue %s for %s; marking stale", event.type.value, event.local_id)
        self.invalidate()

    def close(self) -> None:
        self._unsubscribe()

    def _queued_matching(self, wanted: set[MemoryType], cursor: FeedCursor | None = None) -> list[TimelineMemory]:
        items = [timeline_from_queued(memory) for memory in self._queue.get_all_queued() if memory.memory_type in wanted]
        if cursor is None or cursor.before is None:
            return items
        before = cursor.before
        shown = set(cursor.shown)
        return [
            item
            for item in items
            if item.effective_date < before or (item.effective_date == before and item.local_id not in shown)
        ]

    def fetch_merged_feed(
        self,
        cursor: FeedCursor | None = None,
        filters: Iterable[MemoryType] | None = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        is_online: bool | None = None,
    ) -> MergedFeedPage:
        wanted = {MemoryType.from_api_value(item) for item in (filters or ())} or set(ALL_MEMORY_TYPES)
        online = self._connectivity.is_online() if is_online is None else is_online
        self._stale = False
        if online:
            return self._fetch_online(cursor, wanted, batch_size)
        return self._fetch_offline(wanted, batch_size)

    def _fetch_offline(self, wanted: set[MemoryType], batch_size: int) -> MergedFeedPage:
        queued = self._queued_matching(wanted)
        previews = [
            timeline_from_preview(preview)
            for preview in self._previews.fetch_previews(filters=wanted, limit=batch_size * self._preview_multiplier)
        ]
        merged = _sort_newest_first([*queued, *previews])
        logger.debug("feed: offline page queued=%s previews=%s", len(queued), len(previews))
        return MergedFeedPage(
            memories=merged[:batch_size],
            next_cursor=None,
            has_more=len(merged) > batch_size,
        )

    def _fetch_online(self, cursor: FeedCursor | None, wanted: set[MemoryType], batch_size: int) -> MergedFeedPage:
        page = self._repository.fetch_page(cursor=cursor, filters=wanted, batch_size=batch_size)
        self._cache_previews(page.memories)

        queued = self._queued_matching(wanted, cursor)
        merged = _sort_newest_first([*page.memories, *queued])
        kept = merged[:batch_size]
        has_more = page.has_more or len(merged) > batch_size
        logger.debug(
            "feed: online page remote=%s queued=%s kept=%s has_more=%s",
            len(page.memories),
            len(queued),
            len(kept),
            has_more,
        )
        if not has_more:
            return MergedFeedPage(memories=kept, next_cursor=None, has_more=False)

        position = self._server_position(page.memories, kept, cursor, page.next_cursor)
        return MergedFeedPage(memories=kept, next_cursor=self._with_queue_bound(position, kept, cursor), has_more=True)

    @staticmethod
    def _with_queue_bound(position: FeedCursor, kept: list[TimelineMemory], request_cursor: FeedCursor | None) -> FeedCursor:
        """Record how far queued captures have been shown.

        Captures dated exactly at the bound may have fallen off this page,
        so the ones that were shown are remembered by local id.
        """
        if not kept:
            return replace(
                position,
                before=request_cursor.before if request_cursor else None,
                shown=request_cursor.shown if request_cursor else (),
            )
        before = kept[-1].effective_date
        shown = tuple(
            memory.local_id
            for memory in kept
            if memory.is_offline_queued and memory.local_id and memory.effective_date == before
        )
        if request_cursor is not None and request_cursor.before == before:
            shown = (*request_cursor.shown, *shown)
        return replace(position, before=before, shown=shown)

    @staticmethod
    def _server_position(
        remote: list[TimelineMemory],
        kept: list[TimelineMemory],
        request_cursor: FeedCursor | None,
        remote_next: FeedCursor | None,
    ) -> FeedCursor:
        """Where the next server read starts.

        Remote rows that did not fit on this page are read again next time,
        so the position stops just before the first of them in server order.
        """
        kept_ids = {id(memory) for memory in kept}
        previous = FeedCursor(request_cursor.created_at, request_cursor.id) if request_cursor else FeedCursor()
        for memory in remote:
            if id(memory) not in kept_ids:
                return previous
            previous = FeedCursor.after(memory)
        if remote_next is not None:
            return FeedCursor(remote_next.created_at, remote_next.id)
        return previous

    def _cache_previews(self, memories: list[TimelineMemory]) -> None:
        if not memories:
            return
        try:
            self._previews.upsert_previews([preview_from_timeline(memory) for memory in memories])
        except Exception as exc:  # noqa: BLE001
            logger.warning("feed: preview cache update failed: %s", exc)
