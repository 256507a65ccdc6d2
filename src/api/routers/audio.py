"""Recording upload endpoints."""

from __future__ import annotations

import logging
from typing import List

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile, status

from ..deps.auth import get_bearer_token
from ..schemas import UploadResponse
from ..services.audio_processor import AudioProcessingError
from ..services.recording_service import RecordingService
from ..services.transcription import TranscriptionFailed
from ..settings import APISettings, get_settings

LOGGER = logging.getLogger("recaply.api")

router = APIRouter(prefix="/api/audio", tags=["audio"])


def get_service(settings: APISettings = Depends(get_settings)) -> RecordingService:
    return RecordingService(settings)


@router.post("/upload", response_model=UploadResponse)
async def upload_recording(
    audio: UploadFile = File(...),
    _: str = Depends(get_bearer_token),
    service: RecordingService = Depends(get_service),
):
    return await _process(service, [audio])


@router.post("/upload-segments", response_model=UploadResponse)
async def upload_segments(
    segments: List[UploadFile] = File(...),
    _: str = Depends(get_bearer_token),
    settings: APISettings = Depends(get_settings),
    service: RecordingService = Depends(get_service),
):
    if len(segments) > settings.max_segments:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"At most {settings.max_segments} segments per upload",
        )
    return await _process(service, segments)


async def _process(service: RecordingService, files: List[UploadFile]) -> UploadResponse:
    try:
        record = await service.save_upload(files)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except AudioProcessingError as exc:
        LOGGER.warning("Audio processing failed: %s", exc)
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)
        ) from exc
    except TranscriptionFailed as exc:
        LOGGER.error("Transcription failed at chunk %d: %s", exc.chunk_index, exc)
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={"error": "Transcription failed", "chunk_index": exc.chunk_index},
        ) from exc
    return UploadResponse(**{key: record[key] for key in UploadResponse.model_fields})
