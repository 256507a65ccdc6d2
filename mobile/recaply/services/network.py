"""HTTP client for the Recaply backend."""

from __future__ import annotations

from contextlib import ExitStack
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import httpx

from ..config import CONFIG
from ..store.queue_store import QueueItem
from ..store.settings_store import SettingsStore


class ApiError(Exception):
    pass


class UploadRejected(ApiError):
    """The backend answered, but not with a usable success response."""

    def __init__(self, status_code: int, detail: str = "") -> None:
        super().__init__(f"Upload failed: {status_code} {detail}".strip())
        self.status_code = status_code
        self.detail = detail


class UploadTransportError(ApiError):
    """The request never produced a response (connect/read failure, timeout)."""


@dataclass(frozen=True, slots=True)
class UploadReceipt:
    recording_id: str
    transcription: str
    minutes_used: int = 0
    duration_seconds: float = 0.0
    segment_count: int = 1

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "UploadReceipt":
        return cls(
            recording_id=str(data["recording_id"]),
            transcription=str(data.get("transcription", "")),
            minutes_used=int(data.get("minutes_used", 0) or 0),
            duration_seconds=float(data.get("duration_seconds", 0.0) or 0.0),
            segment_count=int(data.get("segment_count", 1) or 1),
        )


class ApiClient:
    def __init__(
        self,
        settings: SettingsStore,
        *,
        timeout: float = CONFIG.upload_timeout_sec,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.settings_store = settings
        self.timeout = timeout
        self._client = client or httpx.Client(timeout=timeout)

    def has_credentials(self) -> bool:
        settings = self.settings_store.get()
        return bool(settings.api_token and settings.server_url)

    def _headers(self) -> dict:
        token = self.settings_store.get().api_token
        if not token:
            raise ApiError("API token missing")
        return {"Authorization": f"Bearer {token}"}

    def _url(self, path: str) -> str:
        base = self.settings_store.get().server_url.rstrip("/")
        if not base:
            raise ApiError("Server URL missing")
        return f"{base}{path}"

    def test_connection(self) -> bool:
        try:
            resp = self._client.get(self._url("/healthz"))
        except httpx.HTTPError as exc:
            raise UploadTransportError(str(exc)) from exc
        return resp.status_code == 200

    def upload_recording(self, item: QueueItem) -> UploadReceipt:
        """Send one queued recording; several refs go up as ordered segments."""

        headers = self._headers()
        multi = len(item.audio_refs) > 1
        path = "/api/audio/upload-segments" if multi else "/api/audio/upload"
        field = "segments" if multi else "audio"
        try:
            with ExitStack() as stack:
                files = []
                for index, ref in enumerate(item.audio_refs):
                    handle = stack.enter_context(open(ref, "rb"))
                    name = item.filename if index == 0 else f"segment_{index}{Path(ref).suffix}"
                    files.append((field, (name, handle, self._mime_type(ref))))
                resp = self._client.post(self._url(path), headers=headers, files=files)
        except OSError as exc:
            raise UploadTransportError(f"Could not read {exc.filename}: {exc.strerror}") from exc
        except httpx.HTTPError as exc:
            raise UploadTransportError(str(exc) or type(exc).__name__) from exc
        if resp.status_code == 401:
            raise UploadRejected(401, "Unauthorized: check API token")
        if not resp.is_success:
            raise UploadRejected(resp.status_code, self._error_detail(resp))
        try:
            return UploadReceipt.from_json(resp.json())
        except (ValueError, KeyError, TypeError) as exc:
            raise UploadRejected(resp.status_code, f"Invalid response: {exc}") from exc

    def _error_detail(self, resp: httpx.Response) -> str:
        try:
            body = resp.json()
        except ValueError:
            return resp.text[:200]
        if isinstance(body, dict):
            return str(body.get("detail") or body.get("error") or body)[:200]
        return str(body)[:200]

    def _mime_type(self, file_path: str) -> str:
        suffix = Path(file_path).suffix.lower()
        if suffix in {".m4a", ".mp4"}:
            return "audio/m4a"
        if suffix == ".flac":
            return "audio/flac"
        if suffix == ".mp3":
            return "audio/mpeg"
        return "audio/wav"

    def close(self) -> None:
        self._client.close()
