"""Remote save gateway: media upload plus memory row insert/update."""

from __future__ import annotations

import logging
import time
import urllib.error
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Protocol

from memories_core.errors import (
    NetworkError,
    OfflineError,
    PermissionDeniedError,
    SaveError,
    StorageQuotaError,
)
from memories_core.gateway.client import BackendHTTPError, SupabaseClient
from memories_core.memory.models import CaptureState, MemoryType, SaveResult

logger = logging.getLogger(__name__)

PHOTOS_BUCKET = "moments-photos"
VIDEOS_BUCKET = "moments-videos"
AUDIO_BUCKET = "stories-audio"
MEMORIES_TABLE = "memories"
FEED_RPC = "get_unified_timeline_feed"


class RemoteSaveGateway(Protocol):
    def create(self, state: CaptureState) -> SaveResult: ...

    def update(self, state: CaptureState) -> SaveResult: ...

    def fetch_feed_page(self, params: dict[str, Any]) -> Any: ...


def classify_error(exc: BaseException) -> SaveError:
    """Map a low-level failure onto the save error taxonomy."""
    if isinstance(exc, SaveError):
        return exc
    if isinstance(exc, BackendHTTPError):
        body = exc.body.lower()
        if exc.status == 413 or "quota" in body or "limit" in body:
            return StorageQuotaError("Storage limit reached. Please delete some memories.")
        if exc.status in {401, 403} or "permission" in body:
            return PermissionDeniedError("Permission denied. Please check app settings.")
        if exc.status >= 500:
            return NetworkError(f"Backend unavailable (HTTP {exc.status}). Try again later.")
        return SaveError(f"Failed to save memory: HTTP {exc.status}")
    if isinstance(exc, (urllib.error.URLError, TimeoutError, ConnectionError)):
        return NetworkError("Network error. Check your connection and try again.")
    text = str(exc).lower()
    if "quota" in text or "413" in text:
        return StorageQuotaError("Storage limit reached. Please delete some memories.")
    if "permission" in text or "403" in text:
        return PermissionDeniedError("Permission denied. Please check app settings.")
    if "network" in text or "timed out" in text:
        return NetworkError("Network error. Check your connection and try again.")
    return SaveError(f"Failed to save memory: {exc}")


def _location_wkt(state: CaptureState) -> str | None:
    if state.latitude is None or state.longitude is None:
        return None
    return f"POINT({state.longitude} {state.latitude})"


def _is_local(url: str) -> bool:
    return url.startswith("file://") or url.startswith("/")


class SupabaseSaveGateway:
    """Save captures to Supabase: uploads first, then the memory row."""

    def __init__(
        self,
        client: SupabaseClient,
        is_online: Callable[[], bool],
        *,
        upload_timeout_seconds: float = 30,
        max_upload_attempts: int = 3,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._client = client
        self._is_online = is_online
        self._upload_timeout_seconds = upload_timeout_seconds
        self._max_upload_attempts = max(1, max_upload_attempts)
        self._sleep = sleep

    def _require_online(self) -> None:
        if not self._client.configured or not self._is_online():
            raise OfflineError("Device is offline. Memory will be queued for sync.")

    def _object_path(self, index: int, suffix: str) -> str:
        owner = self._client.user_id or "anonymous"
        return f"{owner}/{time.time_ns() // 1_000_000}_{index}{suffix}"

    def _upload_with_retry(self, bucket: str, local_path: str, index: int, content_type: str) -> str | None:
        path = Path(local_path[len("file://"):] if local_path.startswith("file://") else local_path)
        if not path.exists():
            logger.warning("gateway: skipping missing media file %s", path)
            return None
        object_path = self._object_path(index, path.suffix or ".bin")
        for attempt in range(1, self._max_upload_attempts + 1):
            try:
                return self._client.upload(
                    bucket,
                    object_path,
                    path,
                    content_type=content_type,
                    timeout=self._upload_timeout_seconds,
                )
            except Exception as exc:  # noqa: BLE001
                logger.warning(
                    "gateway: upload attempt %s/%s failed for %s: %s",
                    attempt,
                    self._max_upload_attempts,
                    path.name,
                    exc,
                )
                if attempt >= self._max_upload_attempts:
                    raise
                self._sleep(float(1 << (attempt - 1)))
        raise SaveError(f"Failed to upload {path.name}")

    def _upload_media(self, state: CaptureState) -> tuple[list[str], list[str], list[str | None], str | None]:
        photo_urls: list[str] = []
        for index, local in enumerate(state.photo_paths):
            url = self._upload_with_retry(PHOTOS_BUCKET, local, index, "image/jpeg")
            if url:
                photo_urls.append(url)
        video_urls: list[str] = []
        poster_urls: list[str | None] = []
        for index, local in enumerate(state.video_paths):
            url = self._upload_with_retry(VIDEOS_BUCKET, local, index, "video/mp4")
            if not url:
                continue
            video_urls.append(url)
            poster = state.video_poster_paths[index] if index < len(state.video_poster_paths) else None
            poster_urls.append(self._upload_with_retry(PHOTOS_BUCKET, poster, index, "image/jpeg") if poster else None)
        audio_url = None
        if state.memory_type is MemoryType.STORY and state.audio_path:
            audio_url = self._upload_with_retry(AUDIO_BUCKET, state.audio_path, 0, "audio/m4a")
        return photo_urls, video_urls, poster_urls, audio_url

    def _content_fields(self, state: CaptureState) -> dict[str, Any]:
        title = (state.memory_title or "").strip() or state.memory_type.untitled_label
        fields: dict[str, Any] = {
            "title": title,
            "input_text": state.input_text,
            "tags": list(state.tags),
            "memory_type": state.memory_type.api_value,
            "location_status": state.location_status,
            "memory_location_data": state.memory_location_data,
        }
        if state.memory_date is not None:
            fields["memory_date"] = state.memory_date.astimezone(timezone.utc).isoformat()
        wkt = _location_wkt(state)
        if wkt is not None:
            fields["captured_location"] = wkt
        return fields

    def create(self, state: CaptureState) -> SaveResult:
        self._require_online()
        try:
            photo_urls, video_urls, poster_urls, audio_url = self._upload_media(state)
            now = datetime.now(timezone.utc).isoformat()
            row = {
                **self._content_fields(state),
                "processed_text": None,
                "photo_urls": photo_urls,
                "video_urls": video_urls,
                "video_poster_urls": poster_urls,
                "created_at": now,
                "updated_at": now,
                "metadata_version": 1,
            }
            if self._client.user_id:
                row["user_id"] = self._client.user_id
            if state.captured_at is not None:
                row["device_timestamp"] = state.captured_at.astimezone(timezone.utc).isoformat()
            if audio_url is not None:
                row["audio_path"] = audio_url
                row["audio_duration"] = state.audio_duration
            inserted = self._client.insert(MEMORIES_TABLE, row)
            memory_id = str(inserted.get("id") or "")
            if not memory_id:
                raise SaveError("Failed to save memory: backend returned no id")
        except Exception as exc:  # noqa: BLE001
            error = classify_error(exc)
            logger.warning("gateway: create failed code=%s: %s", error.code, error.message)
            raise error from exc
        logger.info("gateway: created memory %s", memory_id, extra={"memory_type": state.memory_type.api_value})
        return SaveResult(
            memory_id=memory_id,
            generated_title=row["title"],
            photo_urls=photo_urls,
            video_urls=video_urls,
            has_location="captured_location" in row,
        )

    def update(self, state: CaptureState) -> SaveResult:
        self._require_online()
        memory_id = state.editing_memory_id
        if not memory_id:
            raise SaveError("Failed to update memory: no target memory id")
        deleted_photos = set(state.deleted_photo_urls)
        deleted_videos = set(state.deleted_video_urls)
        try:
            new_photos, new_videos, new_posters, _ = self._upload_media(state)
            kept_photos = [u for u in state.existing_photo_urls if u not in deleted_photos and not _is_local(u)]
            kept_videos: list[str] = []
            kept_posters: list[str | None] = []
            for index, url in enumerate(state.existing_video_urls):
                if url in deleted_videos or _is_local(url):
                    continue
                kept_videos.append(url)
                kept_posters.append(
                    state.existing_video_poster_urls[index] if index < len(state.existing_video_poster_urls) else None
                )
            photo_urls = kept_photos + new_photos
            video_urls = kept_videos + new_videos
            changes = {
                **self._content_fields(state),
                "photo_urls": photo_urls,
                "video_urls": video_urls,
                "video_poster_urls": kept_posters + new_posters,
                "updated_at": datetime.now(timezone.utc).isoformat(),
            }
            self._client.update(MEMORIES_TABLE, memory_id, changes)
        except Exception as exc:  # noqa: BLE001
            error = classify_error(exc)
            logger.warning("gateway: update failed code=%s: %s", error.code, error.message)
            raise error from exc
        self._remove_deleted_media(state)
        logger.info("gateway: updated memory %s", memory_id)
        return SaveResult(
            memory_id=memory_id,
            generated_title=changes["title"],
            photo_urls=photo_urls,
            video_urls=video_urls,
            has_location="captured_location" in changes,
        )

    def _remove_deleted_media(self, state: CaptureState) -> None:
        targets = {
            PHOTOS_BUCKET: [*state.deleted_photo_urls, *[u for u in state.deleted_video_poster_urls if u]],
            VIDEOS_BUCKET: list(state.deleted_video_urls),
        }
        for bucket, urls in targets.items():
            paths = [p for p in (self._client.object_path_from_public_url(bucket, u) for u in urls) if p]
            if not paths:
                continue
            try:
                self._client.remove_objects(bucket, paths)
            except Exception as exc:  # noqa: BLE001
                logger.warning("gateway: failed to delete %s objects from %s: %s", len(paths), bucket, exc)

    def fetch_feed_page(self, params: dict[str, Any]) -> Any:
        """Call the unified timeline RPC; the raw decoded body is returned unchecked."""
        self._require_online()
        try:
            return self._client.rpc(FEED_RPC, params)
        except Exception as exc:  # noqa: BLE001
            error = classify_error(exc)
            logger.warning("gateway: %s failed code=%s: %s", FEED_RPC, error.code, error.message)
            raise error from exc
