"""Paginated reads of the server-side unified timeline."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any, Protocol

from memories_core.errors import SaveError
from memories_core.feed.models import FeedCursor, FeedPage, TimelineMemory
from memories_core.gateway.save import FEED_RPC
from memories_core.memory.models import ALL_MEMORY_TYPES, MemoryType, parse_iso

logger = logging.getLogger(__name__)


class FeedSource(Protocol):
    def fetch_feed_page(self, params: dict[str, Any]) -> Any: ...


def _normalize_filters(filters: Iterable[MemoryType] | None) -> set[MemoryType]:
    wanted = {MemoryType.from_api_value(item) for item in (filters or ())}
    return wanted or set(ALL_MEMORY_TYPES)


def _cursor_after(raw: list[Any]) -> FeedCursor | None:
    # The server pages over unfiltered rows, so the cursor follows the raw tail.
    for row in reversed(raw):
        if isinstance(row, dict) and row.get("id") is not None:
            return FeedCursor(created_at=parse_iso(row.get("created_at")), id=str(row["id"]))
    return None


class UnifiedFeedRepository:
    """Calls ``get_unified_timeline_feed`` and applies the type filter policy.

    The RPC accepts a single ``p_memory_type``. With one selected type the
    filter is pushed down; with two or three the RPC is asked for ``all`` and
    rows are filtered here.
    """

    def __init__(self, source: FeedSource) -> None:
        self._source = source

    def fetch_page(
        self,
        cursor: FeedCursor | None = None,
        filters: Iterable[MemoryType] | None = None,
        batch_size: int = 20,
    ) -> FeedPage:
        wanted = _normalize_filters(filters)
        post_filter = len(wanted) != 1
        params: dict[str, Any] = {
            "p_batch_size": batch_size,
            "p_memory_type": "all" if post_filter else next(iter(wanted)).api_value,
        }
        if cursor is not None:
            params.update(cursor.to_params())

        raw = self._source.fetch_feed_page(params)
        if not isinstance(raw, list):
            raise SaveError(f"Invalid response format from {FEED_RPC}")

        memories: list[TimelineMemory] = []
        for row in raw:
            if not isinstance(row, dict):
                logger.warning("feed: skipping non-object row")
                continue
            try:
                memories.append(TimelineMemory.from_server_row(row))
            except (KeyError, ValueError, TypeError) as exc:
                logger.warning("feed: skipping unreadable row: %s", exc)

        if post_filter:
            type_values = {item.api_value for item in wanted}
            memories = [memory for memory in memories if memory.memory_type in type_values]
            has_more = len(raw) >= batch_size
        else:
            has_more = len(memories) >= batch_size

        next_cursor = _cursor_after(raw) if has_more else None
        logger.debug(
            "feed: fetched %s rows kept=%s has_more=%s",
            len(raw),
            len(memories),
            has_more,
            extra={"p_memory_type": params["p_memory_type"]},
        )
        return FeedPage(memories=memories, next_cursor=next_cursor, has_more=has_more)
