"""Timeline read model shared by every feed source."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from memories_core.memory.models import MemoryType, parse_iso


class OfflineSyncStatus(str, Enum):
    QUEUED = "queued"
    SYNCING = "syncing"
    FAILED = "failed"
    SYNCED = "synced"


class MediaSource(str, Enum):
    LOCAL_FILE = "localFile"
    SUPABASE_STORAGE = "supabaseStorage"


@dataclass(slots=True)
class PrimaryMedia:
    type: str
    url: str
    index: int = 0
    source: MediaSource = MediaSource.SUPABASE_STORAGE
    poster_url: str | None = None

    @property
    def is_local(self) -> bool:
        return self.source is MediaSource.LOCAL_FILE

    @classmethod
    def from_json(cls, raw: dict[str, Any]) -> PrimaryMedia:
        source = MediaSource.LOCAL_FILE if raw.get("source") == MediaSource.LOCAL_FILE.value else MediaSource.SUPABASE_STORAGE
        return cls(
            type=str(raw.get("type") or "photo"),
            url=str(raw.get("url") or ""),
            index=int(raw.get("index") or 0),
            source=source,
            poster_url=raw.get("poster_url") if isinstance(raw.get("poster_url"), str) else None,
        )

    def to_json(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "url": self.url,
            "index": self.index,
            "source": self.source.value,
            "poster_url": self.poster_url,
        }


def season_for_month(month: int) -> str:
    if month in (12, 1, 2):
        return "Winter"
    if month in (3, 4, 5):
        return "Spring"
    if month in (6, 7, 8):
        return "Summer"
    if month in (9, 10, 11):
        return "Fall"
    return "Unknown"


@dataclass(slots=True)
class TimelineMemory:
    """One card in the unified feed, from the server, the queue or the preview index."""

    id: str
    user_id: str
    title: str
    memory_type: str
    captured_at: datetime
    created_at: datetime
    memory_date: datetime
    year: int
    season: str
    month: int
    day: int
    is_offline_queued: bool
    is_preview_only: bool
    is_detail_cached_locally: bool
    offline_sync_status: OfflineSyncStatus
    tags: list[str] = field(default_factory=list)
    input_text: str | None = None
    processed_text: str | None = None
    generated_title: str | None = None
    primary_media: PrimaryMedia | None = None
    snippet_text: str | None = None
    local_id: str | None = None
    server_id: str | None = None

    @property
    def effective_date(self) -> datetime:
        return self.memory_date

    @property
    def effective_id(self) -> str:
        return self.server_id or self.local_id or self.id

    @property
    def is_available_offline(self) -> bool:
        return self.is_offline_queued or self.is_detail_cached_locally

    @property
    def display_title(self) -> str:
        if self.generated_title:
            return self.generated_title
        if self.title:
            return self.title
        return MemoryType.from_api_value(self.memory_type).untitled_label

    @property
    def display_text(self) -> str | None:
        for candidate in (self.processed_text, self.input_text):
            if candidate and candidate.strip():
                return candidate.strip()
        return None

    @classmethod
    def from_server_row(cls, raw: dict[str, Any]) -> TimelineMemory:
        """Build from a get_unified_timeline_feed row."""
        row_id = str(raw["id"])
        captured_at = parse_iso(raw.get("captured_at"))
        created_at = parse_iso(raw.get("created_at"))
        if captured_at is None or created_at is None:
            raise ValueError(f"feed row {row_id} is missing timestamps")
        memory_date = parse_iso(raw.get("memory_date")) or captured_at
        primary = raw.get("primary_media")
        return cls(
            id=row_id,
            user_id=str(raw.get("user_id") or ""),
            title=str(raw.get("title") or ""),
            input_text=raw.get("input_text"),
            processed_text=raw.get("processed_text"),
            generated_title=raw.get("generated_title"),
            tags=[str(tag) for tag in raw.get("tags") or []],
            memory_type=str(raw.get("memory_type") or MemoryType.MOMENT.value),
            captured_at=captured_at,
            created_at=created_at,
            memory_date=memory_date,
            year=int(raw.get("year") or memory_date.year),
            season=str(raw.get("season") or season_for_month(memory_date.month)),
            month=int(raw.get("month") or memory_date.month),
            day=int(raw.get("day") or memory_date.day),
            primary_media=PrimaryMedia.from_json(primary) if isinstance(primary, dict) else None,
            snippet_text=raw.get("snippet_text"),
            is_offline_queued=False,
            is_preview_only=False,
            is_detail_cached_locally=False,
            local_id=None,
            server_id=row_id,
            offline_sync_status=OfflineSyncStatus.SYNCED,
        )

    def to_json(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "title": self.title,
            "display_title": self.display_title,
            "input_text": self.input_text,
            "processed_text": self.processed_text,
            "generated_title": self.generated_title,
            "tags": list(self.tags),
            "memory_type": self.memory_type,
            "captured_at": self.captured_at.isoformat(),
            "created_at": self.created_at.isoformat(),
            "memory_date": self.memory_date.isoformat(),
            "year": self.year,
            "season": self.season,
            "month": self.month,
            "day": self.day,
            "primary_media": self.primary_media.to_json() if self.primary_media else None,
            "snippet_text": self.snippet_text,
            "is_offline_queued": self.is_offline_queued,
            "is_preview_only": self.is_preview_only,
            "is_detail_cached_locally": self.is_detail_cached_locally,
            "local_id": self.local_id,
            "server_id": self.server_id,
            "offline_sync_status": self.offline_sync_status.value,
        }


@dataclass(slots=True)
class FeedCursor:
    """Server keyset position plus the oldest effective date already shown.

    ``before`` and ``shown`` never leave the client. A later merged page adds
    queued captures older than ``before``, and those dated exactly ``before``
    whose local id is not in ``shown``.
    """

    created_at: datetime | None = None
    id: str | None = None
    before: datetime | None = None
    shown: tuple[str, ...] = ()

    @property
    def is_empty(self) -> bool:
        return self.created_at is None and self.id is None

    def to_params(self) -> dict[str, Any]:
        if self.is_empty:
            return {}
        return {
            "p_cursor_created_at": self.created_at.isoformat() if self.created_at else None,
            "p_cursor_id": self.id,
        }

    @classmethod
    def after(cls, memory: TimelineMemory) -> FeedCursor:
        return cls(created_at=memory.created_at, id=memory.id)


@dataclass(slots=True)
class FeedPage:
    memories: list[TimelineMemory]
    next_cursor: FeedCursor | None
    has_more: bool
