"""FastAPI application factory."""

from __future__ import annotations

import logging
import shutil
from datetime import datetime, timezone

from fastapi import Depends, FastAPI

from .metrics import instrument_app, router as metrics_router
from .routers.audio import router as audio_router
from .schemas import HealthResponse
from .settings import APISettings, get_settings


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def create_app() -> FastAPI:
    settings = get_settings()
    configure_logging(settings.log_level)
    app = FastAPI(title=settings.app_name, version=settings.version)
    app.include_router(audio_router)
    app.include_router(metrics_router)

    @app.get("/healthz", response_model=HealthResponse)
    async def healthz(settings: APISettings = Depends(get_settings)) -> HealthResponse:
        ffmpeg_ok = bool(shutil.which(settings.ffmpeg_binary) and shutil.which(settings.ffprobe_binary))
        if settings.whisper_mock_transcriber:
            transcriber = "mock"
        elif settings.openai_api_key:
            transcriber = "openai"
        else:
            transcriber = "missing-key"
        return HealthResponse(
            ok=ffmpeg_ok and transcriber != "missing-key",
            ffmpeg="ok" if ffmpeg_ok else "missing",
            transcriber=transcriber,
            timestamp=datetime.now(timezone.utc),
        )

    return instrument_app(app)
