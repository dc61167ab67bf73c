"""Convert queue records and previews into timeline cards."""

from __future__ import annotations

from memories_core.feed.models import MediaSource, OfflineSyncStatus, PrimaryMedia, TimelineMemory, season_for_month
from memories_core.memory.models import LocalMemoryPreview, MemoryType, QueuedMemory, QueuedMemoryStatus

_TITLE_CHARS = 60
_SNIPPET_CHARS = 200

_STATUS_MAP = {
    QueuedMemoryStatus.QUEUED: OfflineSyncStatus.QUEUED,
    QueuedMemoryStatus.SYNCING: OfflineSyncStatus.SYNCING,
    QueuedMemoryStatus.FAILED: OfflineSyncStatus.FAILED,
    QueuedMemoryStatus.COMPLETED: OfflineSyncStatus.SYNCED,
}


def _truncate(text: str, limit: int) -> str:
    return text if len(text) <= limit else f"{text[:limit]}..."


def _title_for_queued(queued: QueuedMemory) -> str:
    if queued.title and queued.title.strip():
        return queued.title.strip()
    if queued.input_text and queued.input_text.strip():
        return _truncate(queued.input_text.strip(), _TITLE_CHARS)
    return queued.memory_type.untitled_label


def _snippet(text: str | None) -> str | None:
    if not text or not text.strip():
        return None
    return _truncate(text.strip(), _SNIPPET_CHARS)


def _primary_media_for_queued(queued: QueuedMemory) -> PrimaryMedia | None:
    if queued.photo_paths:
        return PrimaryMedia(type="photo", url=queued.photo_paths[0], source=MediaSource.LOCAL_FILE)
    if queued.video_paths:
        poster = queued.video_poster_paths[0] if queued.video_poster_paths else None
        if poster and not poster.startswith("file://"):
            poster = f"file://{poster}"
        return PrimaryMedia(type="video", url=queued.video_paths[0], source=MediaSource.LOCAL_FILE, poster_url=poster or None)
    if queued.memory_type is MemoryType.STORY and queued.audio_path:
        return PrimaryMedia(type="audio", url=queued.audio_path, source=MediaSource.LOCAL_FILE)
    return None


def timeline_from_queued(queued: QueuedMemory) -> TimelineMemory:
    effective = queued.effective_date
    return TimelineMemory(
        id=queued.local_id,
        user_id="",
        title=_title_for_queued(queued),
        input_text=queued.input_text,
        tags=list(queued.tags),
        memory_type=queued.memory_type.api_value,
        captured_at=queued.captured_at or queued.created_at,
        created_at=queued.created_at,
        memory_date=effective,
        year=effective.year,
        season=season_for_month(effective.month),
        month=effective.month,
        day=effective.day,
        primary_media=_primary_media_for_queued(queued),
        snippet_text=_snippet(queued.input_text),
        is_offline_queued=True,
        is_preview_only=False,
        is_detail_cached_locally=True,
        local_id=queued.local_id,
        server_id=queued.server_memory_id,
        offline_sync_status=_STATUS_MAP[queued.status],
    )


def timeline_from_preview(preview: LocalMemoryPreview) -> TimelineMemory:
    captured = preview.captured_at
    return TimelineMemory(
        id=preview.server_id,
        user_id="",
        title=preview.title_or_first_line,
        memory_type=preview.memory_type.api_value,
        captured_at=captured,
        created_at=captured,
        memory_date=captured,
        year=captured.year,
        season=season_for_month(captured.month),
        month=captured.month,
        day=captured.day,
        snippet_text=preview.title_or_first_line,
        is_offline_queued=False,
        is_preview_only=not preview.is_detail_cached_locally,
        is_detail_cached_locally=preview.is_detail_cached_locally,
        local_id=None,
        server_id=preview.server_id,
        offline_sync_status=OfflineSyncStatus.SYNCED,
    )


def preview_from_timeline(memory: TimelineMemory) -> LocalMemoryPreview:
    """Snapshot a server card for the preview index, dated by its effective date."""
    return LocalMemoryPreview(
        server_id=memory.server_id or memory.id,
        memory_type=MemoryType.from_api_value(memory.memory_type),
        title_or_first_line=memory.display_title,
        captured_at=memory.effective_date,
        is_detail_cached_locally=memory.is_detail_cached_locally,
    )
