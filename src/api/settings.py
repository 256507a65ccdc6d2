"""API settings resolved from the environment."""

from __future__ import annotations

import os
import tempfile
from functools import lru_cache
from typing import List

from pydantic import BaseModel, Field


class APISettings(BaseModel):
    app_name: str = Field(default="Recaply API")
    version: str = Field(default="1.0.0")
    log_level: str = Field(default=os.getenv("LOG_LEVEL", "INFO"))
    data_dir: str = Field(default=os.getenv("DATA_DIR", "data"))
    recordings_path: str = Field(
        default=os.getenv("RECORDINGS_PATH", "data/recordings.jsonl")
    )
    api_tokens: List[str] = Field(default_factory=lambda: _split_tokens())
    openai_api_key: str | None = Field(default=os.getenv("OPENAI_API_KEY"))
    openai_whisper_model: str = Field(
        default=os.getenv("OPENAI_WHISPER_MODEL", "whisper-1")
    )
    transcription_language: str | None = Field(
        default=os.getenv("TRANSCRIPTION_LANGUAGE", "en") or None
    )
    # Long chunks take a while on the provider side.
    transcription_timeout_sec: float = Field(
        default=float(os.getenv("TRANSCRIPTION_TIMEOUT_SEC", "1800"))
    )
    chunk_threshold_sec: float = Field(
        default=float(os.getenv("CHUNK_THRESHOLD_SEC", str(20 * 60)))
    )
    concurrency_limit: int = Field(default=int(os.getenv("CONCURRENCY_LIMIT", "3")))
    max_retries: int = Field(default=int(os.getenv("MAX_RETRIES", "3")))
    audio_scratch_dir: str = Field(
        default=os.getenv(
            "AUDIO_SCRATCH_DIR", os.path.join(tempfile.gettempdir(), "recaply_audio")
        )
    )
    ffmpeg_binary: str = Field(default=os.getenv("FFMPEG_BINARY", "ffmpeg"))
    ffprobe_binary: str = Field(default=os.getenv("FFPROBE_BINARY", "ffprobe"))
    max_segments: int = Field(default=int(os.getenv("MAX_SEGMENTS", "50")))
    whisper_mock_transcriber: bool = Field(
        default=os.getenv("WHISPER_USE_MOCK", "false").lower() in {"1", "true", "yes"}
    )


def _split_tokens() -> List[str]:
    raw = os.getenv("API_TOKENS") or os.getenv("API_TOKEN") or ""
    return [token.strip() for token in raw.split(",") if token.strip()]


@lru_cache()
def get_settings() -> APISettings:
    return APISettings()
