from __future__ import annotations

import io
import json
import urllib.error
from pathlib import Path

import pytest

import memories_core.gateway.client as client_module
from memories_core.config import BackendSection
from memories_core.errors import (
    NetworkError,
    OfflineError,
    PermissionDeniedError,
    SaveError,
    StorageQuotaError,
)
from memories_core.gateway.client import BackendHTTPError, SupabaseClient
from memories_core.gateway.save import SupabaseSaveGateway, classify_error
from memories_core.memory.models import CaptureState, MemoryType

BASE_URL = "https://example.supabase.co"


class DummyResponse:
    def __init__(self, body: object, status: int = 200) -> None:
        self.status = status
        self._body = json.dumps(body).encode("utf-8") if body is not None else b""

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def read(self) -> bytes:
        return self._body


def _backend(url: str = BASE_URL) -> BackendSection:
    return BackendSection(
        url=url,
        anon_key="anon-key",
        access_token="user-token",
        user_id="user-1",
        timeout_seconds=15,
        upload_timeout_seconds=30,
    )


def _http_error(url: str, code: int, body: bytes = b"") -> urllib.error.HTTPError:
    return urllib.error.HTTPError(url, code, "error", {}, io.BytesIO(body))


def test_create_offline_raises_before_any_request(monkeypatch) -> None:
    calls: list[str] = []
    monkeypatch.setattr(client_module.urllib.request, "urlopen", lambda request, timeout=0: calls.append(request.full_url))
    gateway = SupabaseSaveGateway(SupabaseClient(_backend()), lambda: False)

    with pytest.raises(OfflineError):
        gateway.create(CaptureState(input_text="hello"))
    assert calls == []


def test_unconfigured_backend_counts_as_offline() -> None:
    gateway = SupabaseSaveGateway(SupabaseClient(_backend(url="")), lambda: True)
    with pytest.raises(OfflineError) as exc:
        gateway.update(CaptureState(editing_memory_id="srv-1"))
    assert exc.value.error["code"] == "offline"


def test_create_uploads_media_then_inserts_row(tmp_path: Path, monkeypatch) -> None:
    photo = tmp_path / "photo.jpg"
    photo.write_bytes(b"jpeg-bytes")
    captured: list[dict] = []

    def _fake_urlopen(request, timeout=0):
        entry = {
            "url": request.full_url,
            "method": request.get_method(),
            "headers": {k.lower(): v for k, v in request.header_items()},
            "timeout": timeout,
        }
        if "/rest/v1/" in request.full_url:
            entry["body"] = json.loads(request.data.decode("utf-8"))
            captured.append(entry)
            return DummyResponse([{"id": "srv-42"}], status=201)
        captured.append(entry)
        return DummyResponse({"Key": "ok"})

    monkeypatch.setattr(client_module.urllib.request, "urlopen", _fake_urlopen)
    gateway = SupabaseSaveGateway(SupabaseClient(_backend()), lambda: True)

    result = gateway.create(
        CaptureState(
            memory_type=MemoryType.MOMENT,
            input_text="at the beach",
            photo_paths=[str(photo)],
            latitude=52.5,
            longitude=13.4,
            tags=["summer"],
        )
    )

    upload, insert = captured
    assert upload["method"] == "POST"
    assert upload["url"].startswith(f"{BASE_URL}/storage/v1/object/moments-photos/user-1/")
    assert upload["headers"]["x-upsert"] == "false"
    assert upload["timeout"] == 30
    assert insert["url"] == f"{BASE_URL}/rest/v1/memories"
    assert insert["headers"]["authorization"] == "Bearer user-token"
    assert insert["headers"]["apikey"] == "anon-key"
    row = insert["body"]
    assert row["title"] == "Untitled Moment"
    assert row["memory_type"] == "moment"
    assert row["user_id"] == "user-1"
    assert row["captured_location"] == "POINT(13.4 52.5)"
    assert row["photo_urls"][0].startswith(f"{BASE_URL}/storage/v1/object/public/moments-photos/")
    assert row["tags"] == ["summer"]
    assert result.memory_id == "srv-42"
    assert result.has_location is True


def test_upload_is_retried_with_backoff(tmp_path: Path, monkeypatch) -> None:
    photo = tmp_path / "photo.jpg"
    photo.write_bytes(b"jpeg-bytes")
    attempts = {"upload": 0}

    def _fake_urlopen(request, timeout=0):
        if "/storage/v1/" in request.full_url:
            attempts["upload"] += 1
            if attempts["upload"] < 3:
                raise _http_error(request.full_url, 502)
            return DummyResponse({"Key": "ok"})
        return DummyResponse([{"id": "srv-1"}])

    sleeps: list[float] = []
    monkeypatch.setattr(client_module.urllib.request, "urlopen", _fake_urlopen)
    gateway = SupabaseSaveGateway(SupabaseClient(_backend()), lambda: True, sleep=sleeps.append)

    result = gateway.create(CaptureState(photo_paths=[str(photo)]))

    assert attempts["upload"] == 3
    assert sleeps == [1.0, 2.0]
    assert result.memory_id == "srv-1"


def test_upload_exhaustion_surfaces_classified_error(tmp_path: Path, monkeypatch) -> None:
    photo = tmp_path / "photo.jpg"
    photo.write_bytes(b"jpeg-bytes")

    def _fake_urlopen(request, timeout=0):
        raise _http_error(request.full_url, 413, b'{"message":"quota exceeded"}')

    monkeypatch.setattr(client_module.urllib.request, "urlopen", _fake_urlopen)
    gateway = SupabaseSaveGateway(SupabaseClient(_backend()), lambda: True, sleep=lambda _: None)

    with pytest.raises(StorageQuotaError):
        gateway.create(CaptureState(photo_paths=[str(photo)]))


def test_missing_media_file_is_skipped(monkeypatch) -> None:
    urls: list[str] = []

    def _fake_urlopen(request, timeout=0):
        urls.append(request.full_url)
        return DummyResponse([{"id": "srv-5"}])

    monkeypatch.setattr(client_module.urllib.request, "urlopen", _fake_urlopen)
    gateway = SupabaseSaveGateway(SupabaseClient(_backend()), lambda: True)

    result = gateway.create(CaptureState(photo_paths=["/does/not/exist.jpg"]))

    assert urls == [f"{BASE_URL}/rest/v1/memories"]
    assert result.photo_urls == []


def test_update_patches_row_and_removes_deleted_media(monkeypatch) -> None:
    captured: list[dict] = []

    def _fake_urlopen(request, timeout=0):
        captured.append(
            {
                "url": request.full_url,
                "method": request.get_method(),
                "body": json.loads(request.data.decode("utf-8")) if request.data else None,
            }
        )
        return DummyResponse(None, status=204)

    monkeypatch.setattr(client_module.urllib.request, "urlopen", _fake_urlopen)
    gateway = SupabaseSaveGateway(SupabaseClient(_backend()), lambda: True)
    keep = f"{BASE_URL}/storage/v1/object/public/moments-photos/user-1/keep.jpg"
    drop = f"{BASE_URL}/storage/v1/object/public/moments-photos/user-1/drop.jpg"

    result = gateway.update(
        CaptureState(
            input_text="edited",
            memory_title="Trip",
            existing_photo_urls=[keep, drop, "file:///local/pending.jpg"],
            deleted_photo_urls=[drop],
            editing_memory_id="srv-9",
        )
    )

    patch, delete = captured
    assert patch["method"] == "PATCH"
    assert patch["url"] == f"{BASE_URL}/rest/v1/memories?id=eq.srv-9"
    assert patch["body"]["photo_urls"] == [keep]
    assert patch["body"]["title"] == "Trip"
    assert delete["method"] == "DELETE"
    assert delete["url"] == f"{BASE_URL}/storage/v1/object/moments-photos"
    assert delete["body"] == {"prefixes": ["user-1/drop.jpg"]}
    assert result.memory_id == "srv-9"


def test_update_without_target_is_rejected() -> None:
    gateway = SupabaseSaveGateway(SupabaseClient(_backend()), lambda: True)
    with pytest.raises(SaveError):
        gateway.update(CaptureState(input_text="x"))


def test_classify_error_taxonomy() -> None:
    assert isinstance(classify_error(BackendHTTPError("POST", "/x", 413, "")), StorageQuotaError)
    assert isinstance(classify_error(BackendHTTPError("POST", "/x", 403, "")), PermissionDeniedError)
    assert isinstance(classify_error(BackendHTTPError("POST", "/x", 503, "")), NetworkError)
    assert isinstance(classify_error(urllib.error.URLError("refused")), NetworkError)
    assert isinstance(classify_error(TimeoutError()), NetworkError)
    plain = classify_error(BackendHTTPError("POST", "/x", 400, "bad column"))
    assert type(plain) is SaveError
    assert plain.error["code"] == "save_failed"
    offline = OfflineError("offline")
    assert classify_error(offline) is offline


def test_fetch_feed_page_calls_timeline_rpc(monkeypatch) -> None:
    captured: dict[str, object] = {}

    def _fake_urlopen(request, timeout=0):
        captured["url"] = request.full_url
        captured["body"] = json.loads(request.data.decode("utf-8"))
        return DummyResponse([{"id": "srv-1"}])

    monkeypatch.setattr(client_module.urllib.request, "urlopen", _fake_urlopen)
    gateway = SupabaseSaveGateway(SupabaseClient(_backend()), lambda: True)

    rows = gateway.fetch_feed_page({"p_batch_size": 20, "p_memory_type": "all"})

    assert rows == [{"id": "srv-1"}]
    assert captured["url"] == f"{BASE_URL}/rest/v1/rpc/get_unified_timeline_feed"
    assert captured["body"] == {"p_batch_size": 20, "p_memory_type": "all"}


def test_fetch_feed_page_classifies_failures(monkeypatch) -> None:
    def _fake_urlopen(request, timeout=0):
        raise _http_error(request.full_url, 401, b"{}")

    monkeypatch.setattr(client_module.urllib.request, "urlopen", _fake_urlopen)
    gateway = SupabaseSaveGateway(SupabaseClient(_backend()), lambda: True)

    with pytest.raises(PermissionDeniedError):
        gateway.fetch_feed_page({})


def test_upload_gives_up_after_last_attempt_and_raises_last_error(tmp_path: Path, monkeypatch) -> None:
    photo = tmp_path / "photo.jpg"
    photo.write_bytes(b"jpeg-bytes")
    attempts: list[str] = []

    def _fake_urlopen(request, timeout=0):
        attempts.append(request.full_url)
        raise ConnectionResetError("connection reset by peer")

    sleeps: list[float] = []
    monkeypatch.setattr(client_module.urllib.request, "urlopen", _fake_urlopen)
    gateway = SupabaseSaveGateway(SupabaseClient(_backend()), lambda: True, sleep=sleeps.append)

    with pytest.raises(NetworkError):
        gateway.create(CaptureState(photo_paths=[str(photo)]))

    assert len(attempts) == 3
    assert all("/storage/v1/" in url for url in attempts)
    assert sleeps == [1.0, 2.0]
