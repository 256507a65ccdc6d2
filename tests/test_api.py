import json

import pytest
from fastapi.testclient import TestClient

from src.api.services.audio_processor import ProbeError
from src.api.services.retry import RetryPolicy
from src.api.services.transcription import (
    ChunkDispatcher,
    ChunkTranscript,
    TranscriptionOrchestrator,
)


class FakeProcessor:
    def __init__(self, duration=90.0, probe_error=False):
        self.duration = duration
        self.probe_error = probe_error
        self.combined = []

    async def probe_duration(self, audio, filename=""):
        if self.probe_error:
            raise ProbeError("ffprobe failed: Invalid data")
        return self.duration

    async def split(self, audio, segment_seconds, filename=""):
        return [audio[:2], audio[2:]]

    async def combine(self, segments, filename=""):
        self.combined.append(len(segments))
        return b"".join(segments)


class EchoSpeechToText:
    def __init__(self, fail=False):
        self.fail = fail

    async def transcribe_chunk(self, audio, filename, content_type):
        if self.fail:
            raise ConnectionError("provider down")
        return ChunkTranscript(text=f"heard {len(audio)} bytes", duration_seconds=90.0)


async def _no_sleep(delay):
    return None


@pytest.fixture()
def make_client(tmp_path):
    from src.api.app import create_app
    from src.api.routers.audio import get_service
    from src.api.services.recording_service import RecordingService
    from src.api.settings import APISettings, get_settings

    def _make(processor=None, stt=None):
        get_settings.cache_clear()  # type: ignore
        settings = APISettings(
            api_tokens=["test-token"],
            data_dir=str(tmp_path),
            recordings_path=str(tmp_path / "recordings.jsonl"),
            audio_scratch_dir=str(tmp_path / "scratch"),
            whisper_mock_transcriber=True,
        )
        processor = processor or FakeProcessor()
        dispatcher = ChunkDispatcher(
            stt or EchoSpeechToText(), RetryPolicy.exponential(1), timeout=5.0, sleep=_no_sleep
        )
        orchestrator = TranscriptionOrchestrator(processor, dispatcher, chunk_threshold=1200)

        app = create_app()
        app.dependency_overrides[get_settings] = lambda: settings
        app.dependency_overrides[get_service] = lambda: RecordingService(
            settings, orchestrator=orchestrator
        )
        return TestClient(app), processor

    return _make


def _auth_headers():
    return {"Authorization": "Bearer test-token"}


def test_upload_requires_bearer_token(make_client):
    client, _ = make_client()
    resp = client.post("/api/audio/upload", files={"audio": ("a.m4a", b"1234", "audio/m4a")})
    assert resp.status_code == 401


def test_upload_rejects_unknown_token(make_client):
    client, _ = make_client()
    resp = client.post(
        "/api/audio/upload",
        headers={"Authorization": "Bearer nope"},
        files={"audio": ("a.m4a", b"1234", "audio/m4a")},
    )
    assert resp.status_code == 401


def test_upload_transcribes_and_records(make_client, tmp_path):
    client, _ = make_client()
    resp = client.post(
        "/api/audio/upload",
        headers=_auth_headers(),
        files={"audio": ("standup.m4a", b"123456", "audio/m4a")},
    )
    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert body["transcription"] == "heard 6 bytes"
    assert body["filename"] == "standup.m4a"
    assert body["size"] == 6
    assert body["minutes_used"] == 2
    assert body["segment_count"] == 1
    assert body["recording_id"]

    lines = (tmp_path / "recordings.jsonl").read_text().splitlines()
    stored = json.loads(lines[-1])
    assert stored["recording_id"] == body["recording_id"]
    assert stored["transcription"] == "heard 6 bytes"


def test_upload_segments_combines_in_order(make_client):
    client, processor = make_client()
    files = [
        ("segments", ("rec.m4a", b"aaa", "audio/m4a")),
        ("segments", ("segment_1.m4a", b"bb", "audio/m4a")),
    ]
    resp = client.post("/api/audio/upload-segments", headers=_auth_headers(), files=files)
    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert body["segment_count"] == 2
    assert body["size"] == 5
    assert processor.combined == [2]


def test_upload_segments_enforces_limit(make_client):
    client, _ = make_client()
    files = [("segments", (f"s{i}.m4a", b"x", "audio/m4a")) for i in range(51)]
    resp = client.post("/api/audio/upload-segments", headers=_auth_headers(), files=files)
    assert resp.status_code == 400


def test_undecodable_audio_is_422(make_client):
    client, _ = make_client(processor=FakeProcessor(probe_error=True))
    resp = client.post(
        "/api/audio/upload",
        headers=_auth_headers(),
        files={"audio": ("a.m4a", b"garbage", "audio/m4a")},
    )
    assert resp.status_code == 422


def test_exhausted_retries_report_chunk_index(make_client):
    client, _ = make_client(processor=FakeProcessor(duration=3000.0), stt=EchoSpeechToText(fail=True))
    resp = client.post(
        "/api/audio/upload",
        headers=_auth_headers(),
        files={"audio": ("long.m4a", b"abcdef", "audio/m4a")},
    )
    assert resp.status_code == 502
    assert resp.json()["detail"]["chunk_index"] == 0


def test_empty_upload_is_400(make_client):
    client, _ = make_client()
    resp = client.post(
        "/api/audio/upload",
        headers=_auth_headers(),
        files={"audio": ("a.m4a", b"", "audio/m4a")},
    )
    assert resp.status_code == 400


def test_health_is_public(make_client):
    client, _ = make_client()
    resp = client.get("/healthz")
    assert resp.status_code == 200
    body = resp.json()
    assert body["transcriber"] == "mock"
    assert body["ffmpeg"] in {"ok", "missing"}


def test_metrics_secured(make_client):
    client, _ = make_client()
    assert client.get("/metrics").status_code == 401
    client.post(
        "/api/audio/upload",
        headers=_auth_headers(),
        files={"audio": ("a.m4a", b"1234", "audio/m4a")},
    )
    resp = client.get("/metrics", headers=_auth_headers())
    assert resp.status_code == 200
    assert "api_requests_total" in resp.text
    assert "transcriptions_total" in resp.text
