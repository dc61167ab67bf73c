"""Memory capture, queue and preview models."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class MemoryType(str, Enum):
    MOMENT = "moment"
    STORY = "story"
    MEMENTO = "memento"

    @property
    def api_value(self) -> str:
        return self.value

    @property
    def untitled_label(self) -> str:
        return f"Untitled {self.value.capitalize()}"

    @classmethod
    def from_api_value(cls, value: str | MemoryType | None) -> MemoryType:
        if isinstance(value, MemoryType):
            return value
        text = str(value or "").strip().lower()
        for member in cls:
            if member.value == text:
                return member
        return cls.MOMENT

    @classmethod
    def parse(cls, value: str) -> MemoryType:
        """Strict lookup for user input; raises ValueError for unknown names."""
        text = value.strip().lower()
        for member in cls:
            if member.value == text:
                return member
        raise ValueError(f"Unknown memory type: {value}")


ALL_MEMORY_TYPES: frozenset[MemoryType] = frozenset(MemoryType)


class QueuedMemoryStatus(str, Enum):
    QUEUED = "queued"
    SYNCING = "syncing"
    FAILED = "failed"
    COMPLETED = "completed"

    @classmethod
    def parse(cls, value: str | QueuedMemoryStatus | None) -> QueuedMemoryStatus:
        if isinstance(value, QueuedMemoryStatus):
            return value
        text = str(value or "").strip().lower()
        for member in cls:
            if member.value == text:
                return member
        return cls.QUEUED


class QueueChangeType(str, Enum):
    ADDED = "added"
    UPDATED = "updated"
    REMOVED = "removed"


OPERATION_CREATE = "create"
OPERATION_UPDATE = "update"


def now_local() -> datetime:
    """Return machine-local aware timestamp."""
    return datetime.now().astimezone()


def parse_iso(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if not text:
            return None
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    if parsed.tzinfo is None:
        # Naive timestamps are stored as UTC so ordering against aware values stays safe.
        return parsed.replace(tzinfo=timezone.utc)
    return parsed


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _str_list(raw: Any) -> list[str]:
    if not isinstance(raw, list):
        return []
    return [str(item) for item in raw if item is not None]


def _optional_str_list(raw: Any) -> list[str | None]:
    if not isinstance(raw, list):
        return []
    return [None if item is None else str(item) for item in raw]


def _optional_float(raw: Any) -> float | None:
    if isinstance(raw, bool) or not isinstance(raw, (int, float)):
        return None
    return float(raw)


def _optional_str(raw: Any) -> str | None:
    return None if raw is None else str(raw)


def _strip_file_scheme(url: str) -> str:
    return url[len("file://"):] if url.startswith("file://") else url


@dataclass(slots=True)
class QueueChangeEvent:
    local_id: str
    memory_type: MemoryType
    type: QueueChangeType


@dataclass(slots=True)
class SyncCompleteEvent:
    local_id: str
    server_id: str
    memory_type: MemoryType


@dataclass(slots=True)
class SaveResult:
    memory_id: str
    generated_title: str | None = None
    photo_urls: list[str] = field(default_factory=list)
    video_urls: list[str] = field(default_factory=list)
    has_location: bool = False


@dataclass(slots=True)
class CaptureState:
    """What the user captured, in the shape the save gateway consumes."""

    memory_type: MemoryType = MemoryType.MOMENT
    input_text: str | None = None
    original_input_text: str | None = None
    memory_title: str | None = None
    original_memory_title: str | None = None
    photo_paths: list[str] = field(default_factory=list)
    video_paths: list[str] = field(default_factory=list)
    video_poster_paths: list[str | None] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    latitude: float | None = None
    longitude: float | None = None
    location_status: str | None = None
    captured_at: datetime | None = None
    memory_date: datetime | None = None
    audio_path: str | None = None
    audio_duration: float | None = None
    memory_location_data: dict[str, Any] | None = None
    existing_photo_urls: list[str] = field(default_factory=list)
    existing_video_urls: list[str] = field(default_factory=list)
    existing_video_poster_urls: list[str | None] = field(default_factory=list)
    deleted_photo_urls: list[str] = field(default_factory=list)
    deleted_video_urls: list[str] = field(default_factory=list)
    deleted_video_poster_urls: list[str | None] = field(default_factory=list)
    editing_memory_id: str | None = None

    @property
    def has_input_text_changed(self) -> bool:
        return (self.input_text or "").strip() != (self.original_input_text or "").strip()

    @property
    def is_editing(self) -> bool:
        return self.editing_memory_id is not None


@dataclass(slots=True)
class QueuedMemory:
    """A capture waiting to be uploaded; local_id is the primary key."""

    local_id: str
    memory_type: MemoryType
    created_at: datetime
    input_text: str | None = None
    title: str | None = None
    original_title: str | None = None
    input_text_changed: bool = False
    audio_path: str | None = None
    audio_duration: float | None = None
    photo_paths: list[str] = field(default_factory=list)
    video_paths: list[str] = field(default_factory=list)
    video_poster_paths: list[str | None] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    latitude: float | None = None
    longitude: float | None = None
    location_status: str | None = None
    captured_at: datetime | None = None
    memory_date: datetime | None = None
    status: QueuedMemoryStatus = QueuedMemoryStatus.QUEUED
    retry_count: int = 0
    last_retry_at: datetime | None = None
    server_memory_id: str | None = None
    error_message: str | None = None
    operation: str = OPERATION_CREATE
    target_memory_id: str | None = None
    memory_location_data: dict[str, Any] | None = None
    existing_photo_urls: list[str] = field(default_factory=list)
    existing_video_urls: list[str] = field(default_factory=list)
    existing_video_poster_urls: list[str | None] = field(default_factory=list)
    deleted_photo_urls: list[str] = field(default_factory=list)
    deleted_video_urls: list[str] = field(default_factory=list)
    deleted_video_poster_urls: list[str | None] = field(default_factory=list)
    version: int = 4

    CURRENT_VERSION = 4

    @property
    def is_update(self) -> bool:
        return self.operation == OPERATION_UPDATE

    @property
    def effective_date(self) -> datetime:
        return self.memory_date or self.captured_at or self.created_at

    def copy_with(self, **changes: Any) -> QueuedMemory:
        return replace(self, **changes)

    @classmethod
    def from_capture_state(
        cls,
        local_id: str,
        state: CaptureState,
        *,
        audio_path: str | None = None,
        audio_duration: float | None = None,
        captured_at: datetime | None = None,
        operation: str = OPERATION_CREATE,
        target_memory_id: str | None = None,
        memory_location_data: dict[str, Any] | None = None,
    ) -> QueuedMemory:
        location = memory_location_data if memory_location_data is not None else state.memory_location_data
        return cls(
            local_id=local_id,
            memory_type=state.memory_type,
            created_at=now_local(),
            input_text=state.input_text,
            title=state.memory_title,
            original_title=state.original_memory_title,
            input_text_changed=state.has_input_text_changed,
            audio_path=audio_path if audio_path is not None else state.audio_path,
            audio_duration=audio_duration if audio_duration is not None else state.audio_duration,
            photo_paths=list(state.photo_paths),
            video_paths=list(state.video_paths),
            video_poster_paths=list(state.video_poster_paths),
            tags=list(state.tags),
            latitude=state.latitude,
            longitude=state.longitude,
            location_status=state.location_status,
            captured_at=captured_at or state.captured_at or now_local(),
            memory_date=state.memory_date,
            operation=operation,
            target_memory_id=target_memory_id,
            server_memory_id=target_memory_id if operation == OPERATION_UPDATE else None,
            memory_location_data=dict(location) if location is not None else None,
            existing_photo_urls=list(state.existing_photo_urls),
            existing_video_urls=list(state.existing_video_urls),
            existing_video_poster_urls=list(state.existing_video_poster_urls),
            deleted_photo_urls=list(state.deleted_photo_urls),
            deleted_video_urls=list(state.deleted_video_urls),
            deleted_video_poster_urls=list(state.deleted_video_poster_urls),
        )

    def to_capture_state(self) -> CaptureState:
        return CaptureState(
            memory_type=self.memory_type,
            input_text=self.input_text,
            original_input_text=self.input_text,
            memory_title=self.title,
            original_memory_title=self.original_title,
            photo_paths=list(self.photo_paths),
            video_paths=list(self.video_paths),
            video_poster_paths=list(self.video_poster_paths),
            tags=list(self.tags),
            latitude=self.latitude,
            longitude=self.longitude,
            location_status=self.location_status,
            captured_at=self.captured_at,
            memory_date=self.memory_date,
            audio_path=self.audio_path,
            audio_duration=self.audio_duration,
            memory_location_data=dict(self.memory_location_data) if self.memory_location_data is not None else None,
            existing_photo_urls=list(self.existing_photo_urls),
            existing_video_urls=list(self.existing_video_urls),
            existing_video_poster_urls=list(self.existing_video_poster_urls),
            deleted_photo_urls=list(self.deleted_photo_urls),
            deleted_video_urls=list(self.deleted_video_urls),
            deleted_video_poster_urls=list(self.deleted_video_poster_urls),
            editing_memory_id=self.target_memory_id if self.is_update else None,
        )

    def copy_with_capture_state(self, state: CaptureState) -> QueuedMemory:
        """Apply an edit made while the memory is still queued.

        Content comes from the capture; sync bookkeeping (status, retries,
        server id, created_at) and story audio are kept. Media the editor
        shows as ``file://`` urls are folded back into local paths unless the
        user deleted them.
        """
        deleted_photos = set(state.deleted_photo_urls)
        kept_photos = [
            _strip_file_scheme(url)
            for url in state.existing_photo_urls
            if f"file://{_strip_file_scheme(url)}" not in deleted_photos
        ]
        deleted_videos = set(state.deleted_video_urls)
        kept_videos: list[str] = []
        kept_posters: list[str | None] = []
        for idx, url in enumerate(state.existing_video_urls):
            path = _strip_file_scheme(url)
            if f"file://{path}" in deleted_videos:
                continue
            kept_videos.append(path)
            kept_posters.append(state.existing_video_poster_urls[idx] if idx < len(state.existing_video_poster_urls) else None)

        is_story = self.memory_type is MemoryType.STORY
        location = state.memory_location_data if state.memory_location_data is not None else self.memory_location_data
        return replace(
            self,
            memory_type=state.memory_type,
            input_text=state.input_text,
            title=state.memory_title,
            original_title=state.original_memory_title,
            input_text_changed=state.has_input_text_changed,
            audio_path=self.audio_path if is_story else None,
            audio_duration=self.audio_duration if is_story else None,
            photo_paths=kept_photos + list(state.photo_paths),
            video_paths=kept_videos + list(state.video_paths),
            video_poster_paths=kept_posters + list(state.video_poster_paths),
            tags=list(state.tags),
            latitude=state.latitude,
            longitude=state.longitude,
            location_status=state.location_status,
            captured_at=state.captured_at or self.captured_at,
            memory_date=state.memory_date or self.memory_date,
            memory_location_data=dict(location) if location is not None else None,
            existing_photo_urls=list(state.existing_photo_urls),
            existing_video_urls=list(state.existing_video_urls),
            existing_video_poster_urls=list(state.existing_video_poster_urls),
            deleted_photo_urls=list(state.deleted_photo_urls),
            deleted_video_urls=list(state.deleted_video_urls),
            deleted_video_poster_urls=list(state.deleted_video_poster_urls),
        )

    def to_json(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "localId": self.local_id,
            "memoryType": self.memory_type.api_value,
            "inputText": self.input_text,
            "title": self.title,
            "originalTitle": self.original_title,
            "inputTextChanged": self.input_text_changed,
            "audioPath": self.audio_path,
            "audioDuration": self.audio_duration,
            "photoPaths": list(self.photo_paths),
            "videoPaths": list(self.video_paths),
            "videoPosterPaths": list(self.video_poster_paths),
            "tags": list(self.tags),
            "latitude": self.latitude,
            "longitude": self.longitude,
            "locationStatus": self.location_status,
            "capturedAt": _iso(self.captured_at),
            "memoryDate": _iso(self.memory_date),
            "status": self.status.value,
            "retryCount": self.retry_count,
            "createdAt": _iso(self.created_at),
            "lastRetryAt": _iso(self.last_retry_at),
            "serverMemoryId": self.server_memory_id,
            "errorMessage": self.error_message,
            "operation": self.operation,
            "targetMemoryId": self.target_memory_id,
            "memoryLocationData": self.memory_location_data,
            "existingPhotoUrls": list(self.existing_photo_urls),
            "existingVideoUrls": list(self.existing_video_urls),
            "existingVideoPosterUrls": list(self.existing_video_poster_urls),
            "deletedPhotoUrls": list(self.deleted_photo_urls),
            "deletedVideoUrls": list(self.deleted_video_urls),
            "deletedVideoPosterUrls": list(self.deleted_video_poster_urls),
        }

    @classmethod
    def from_json(cls, raw: dict[str, Any]) -> QueuedMemory:
        """Parse a stored record; raises ValueError when required keys are unusable."""
        local_id = raw.get("localId")
        if not isinstance(local_id, str) or not local_id:
            raise ValueError("queued memory is missing localId")
        created_at = parse_iso(raw.get("createdAt"))
        if created_at is None:
            raise ValueError(f"queued memory {local_id} has invalid createdAt")
        retry_count = raw.get("retryCount", 0)
        location = raw.get("memoryLocationData")
        return cls(
            version=int(raw.get("version", 1) or 1),
            local_id=local_id,
            memory_type=MemoryType.from_api_value(raw.get("memoryType")),
            created_at=created_at,
            input_text=_optional_str(raw.get("inputText")),
            title=_optional_str(raw.get("title")),
            original_title=_optional_str(raw.get("originalTitle")),
            input_text_changed=bool(raw.get("inputTextChanged", False)),
            audio_path=_optional_str(raw.get("audioPath")),
            audio_duration=_optional_float(raw.get("audioDuration")),
            photo_paths=_str_list(raw.get("photoPaths")),
            video_paths=_str_list(raw.get("videoPaths")),
            video_poster_paths=_optional_str_list(raw.get("videoPosterPaths")),
            tags=_str_list(raw.get("tags")),
            latitude=_optional_float(raw.get("latitude")),
            longitude=_optional_float(raw.get("longitude")),
            location_status=_optional_str(raw.get("locationStatus")),
            captured_at=parse_iso(raw.get("capturedAt")),
            memory_date=parse_iso(raw.get("memoryDate")),
            status=QueuedMemoryStatus.parse(raw.get("status")),
            retry_count=retry_count if isinstance(retry_count, int) and retry_count >= 0 else 0,
            last_retry_at=parse_iso(raw.get("lastRetryAt")),
            server_memory_id=_optional_str(raw.get("serverMemoryId")),
            error_message=_optional_str(raw.get("errorMessage")),
            operation=str(raw.get("operation") or OPERATION_CREATE),
            target_memory_id=_optional_str(raw.get("targetMemoryId")),
            memory_location_data=dict(location) if isinstance(location, dict) else None,
            existing_photo_urls=_str_list(raw.get("existingPhotoUrls")),
            existing_video_urls=_str_list(raw.get("existingVideoUrls")),
            existing_video_poster_urls=_optional_str_list(raw.get("existingVideoPosterUrls")),
            deleted_photo_urls=_str_list(raw.get("deletedPhotoUrls")),
            deleted_video_urls=_str_list(raw.get("deletedVideoUrls")),
            deleted_video_poster_urls=_optional_str_list(raw.get("deletedVideoPosterUrls")),
        )


@dataclass(slots=True)
class LocalMemoryPreview:
    """Read-only summary of a synced memory, keyed by server_id."""

    server_id: str
    memory_type: MemoryType
    title_or_first_line: str
    captured_at: datetime
    is_detail_cached_locally: bool = False

    def to_json(self) -> dict[str, Any]:
        return {
            "serverId": self.server_id,
            "memoryType": self.memory_type.api_value,
            "titleOrFirstLine": self.title_or_first_line,
            "capturedAt": self.captured_at.isoformat(),
            "isDetailCachedLocally": self.is_detail_cached_locally,
        }

    @classmethod
    def from_json(cls, raw: dict[str, Any]) -> LocalMemoryPreview:
        server_id = raw.get("serverId")
        if not isinstance(server_id, str) or not server_id:
            raise ValueError("preview is missing serverId")
        captured_at = parse_iso(raw.get("capturedAt"))
        if captured_at is None:
            raise ValueError(f"preview {server_id} has invalid capturedAt")
        return cls(
            server_id=server_id,
            memory_type=MemoryType.from_api_value(raw.get("memoryType")),
            title_or_first_line=str(raw.get("titleOrFirstLine") or ""),
            captured_at=captured_at,
            is_detail_cached_locally=bool(raw.get("isDetailCachedLocally", False)),
        )


def first_line(text: str | None, max_chars: int = 80) -> str:
    if not text:
        return ""
    for line in text.strip().splitlines():
        stripped = line.strip()
        if stripped:
            return stripped if len(stripped) <= max_chars else stripped[:max_chars] + "..."
    return ""
