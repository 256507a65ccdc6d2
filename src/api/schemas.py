"""Pydantic schemas for API contracts."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel


class UploadResponse(BaseModel):
    recording_id: str
    transcription: str
    filename: str
    size: int
    duration_seconds: float = 0.0
    minutes_used: int = 0
    segment_count: int = 1


class HealthResponse(BaseModel):
    ok: bool
    ffmpeg: str
    transcriber: str
    timestamp: datetime
