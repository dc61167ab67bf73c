"""Minimal Supabase REST/Storage client over urllib."""

from __future__ import annotations

import json
import logging
import urllib.error
import urllib.parse
import urllib.request
from pathlib import Path
from typing import Any

from memories_core.config import BackendSection

logger = logging.getLogger(__name__)


class BackendHTTPError(Exception):
    """Non-2xx answer from the backend."""

    def __init__(self, method: str, path: str, status: int, body: str) -> None:
        self.method = method
        self.path = path
        self.status = status
        self.body = body
        super().__init__(f"{method} {path} failed status={status} body={body[:300]}")


class SupabaseClient:
    """Thin wrapper around the PostgREST, RPC and Storage endpoints."""

    def __init__(self, backend: BackendSection) -> None:
        self._base_url = backend.url.rstrip("/")
        self._anon_key = backend.anon_key
        self._access_token = backend.access_token
        self._timeout = backend.timeout_seconds
        self.user_id = backend.user_id

    @property
    def base_url(self) -> str:
        return self._base_url

    @property
    def configured(self) -> bool:
        return bool(self._base_url)

    def _headers(self, extra: dict[str, str] | None = None) -> dict[str, str]:
        headers = {
            "apikey": self._anon_key,
            "Authorization": f"Bearer {self._access_token or self._anon_key}",
        }
        if extra:
            headers.update(extra)
        return headers

    def request(
        self,
        method: str,
        path: str,
        *,
        payload: Any = None,
        data: bytes | None = None,
        headers: dict[str, str] | None = None,
        timeout: float | None = None,
    ) -> Any:
        """Send a request and decode a JSON body; raises BackendHTTPError on non-2xx."""
        url = f"{self._base_url}{path}"
        extra = dict(headers or {})
        if payload is not None:
            data = json.dumps(payload).encode("utf-8")
            extra.setdefault("Content-Type", "application/json")
        request = urllib.request.Request(url=url, method=method, headers=self._headers(extra), data=data)
        try:
            with urllib.request.urlopen(request, timeout=timeout or self._timeout) as response:  # noqa: S310
                body = response.read().decode("utf-8", errors="replace")
                if not 200 <= response.status < 300:
                    raise BackendHTTPError(method, path, response.status, body)
        except urllib.error.HTTPError as exc:
            body = exc.read().decode("utf-8", errors="replace") if exc.fp is not None else ""
            logger.error("backend: %s %s failed status=%s body=%s", method, path, exc.code, body[:300])
            raise BackendHTTPError(method, path, exc.code, body) from exc
        if not body:
            return None
        try:
            return json.loads(body)
        except json.JSONDecodeError:
            return body

    def insert(self, table: str, row: dict[str, Any]) -> dict[str, Any]:
        result = self.request(
            "POST",
            f"/rest/v1/{table}",
            payload=row,
            headers={"Prefer": "return=representation"},
        )
        if isinstance(result, list) and result and isinstance(result[0], dict):
            return result[0]
        if isinstance(result, dict):
            return result
        raise ValueError(f"insert into {table} returned no row")

    def update(self, table: str, row_id: str, changes: dict[str, Any]) -> None:
        query = urllib.parse.urlencode({"id": f"eq.{row_id}"})
        self.request(
            "PATCH",
            f"/rest/v1/{table}?{query}",
            payload=changes,
            headers={"Prefer": "return=minimal"},
        )

    def rpc(self, function: str, params: dict[str, Any]) -> Any:
        return self.request("POST", f"/rest/v1/rpc/{function}", payload=params)

    def upload(self, bucket: str, object_path: str, file_path: Path, *, content_type: str, timeout: float) -> str:
        """Upload a local file and return its public url."""
        quoted = urllib.parse.quote(object_path)
        self.request(
            "POST",
            f"/storage/v1/object/{bucket}/{quoted}",
            data=file_path.read_bytes(),
            headers={"Content-Type": content_type, "x-upsert": "false"},
            timeout=timeout,
        )
        return self.public_url(bucket, object_path)

    def public_url(self, bucket: str, object_path: str) -> str:
        return f"{self._base_url}/storage/v1/object/public/{bucket}/{urllib.parse.quote(object_path)}"

    def remove_objects(self, bucket: str, object_paths: list[str]) -> None:
        if not object_paths:
            return
        self.request("DELETE", f"/storage/v1/object/{bucket}", payload={"prefixes": object_paths})

    def object_path_from_public_url(self, bucket: str, url: str) -> str | None:
        prefix = f"{self._base_url}/storage/v1/object/public/{bucket}/"
        if not url.startswith(prefix):
            return None
        return urllib.parse.unquote(url[len(prefix):])
