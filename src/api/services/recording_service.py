"""Turn uploaded recordings into stored transcripts."""

from __future__ import annotations

import json
import logging
import math
import threading
import time
import uuid
from pathlib import Path
from typing import Any, Dict, Optional, Sequence

from fastapi import UploadFile

from ..settings import APISettings
from .audio_processor import AudioProcessor
from .transcription import TranscriptionOrchestrator, build_orchestrator

LOGGER = logging.getLogger("recaply.api")


class RecordingLog:
    """Append-only JSONL record of processed recordings."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()

    def append(self, record: Dict[str, Any]) -> None:
        line = json.dumps(record, ensure_ascii=False)
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")


class RecordingService:
    def __init__(
        self,
        settings: APISettings,
        *,
        orchestrator: Optional[TranscriptionOrchestrator] = None,
        processor: Optional[AudioProcessor] = None,
    ) -> None:
        self.settings = settings
        self.orchestrator = orchestrator or build_orchestrator(settings)
        self.processor = processor or self.orchestrator.processor
        self.log = RecordingLog(settings.recordings_path)

    async def save_upload(self, files: Sequence[UploadFile]) -> Dict[str, Any]:
        """Transcribe one recording made of ``files`` (in playback order)."""

        if not files:
            raise ValueError("No audio provided")
        filename = files[0].filename or "recording.m4a"
        segments = [await upload.read() for upload in files]
        if not any(segments):
            raise ValueError("Uploaded audio is empty")
        if len(segments) > 1:
            LOGGER.info("Combining %d audio segments for %s", len(segments), filename)
        audio = await self.processor.combine(segments, filename)

        result = await self.orchestrator.transcribe(audio, filename)
        record = {
            "recording_id": uuid.uuid4().hex,
            "filename": filename,
            "size": len(audio),
            "transcription": result.text,
            "duration_seconds": result.duration_seconds,
            "minutes_used": math.ceil(result.duration_seconds / 60),
            "segment_count": len(segments),
            "created_at": time.time(),
        }
        self.log.append(record)
        LOGGER.info(
            "Stored recording %s (%s, %d bytes, %d minute(s))",
            record["recording_id"],
            filename,
            record["size"],
            record["minutes_used"],
        )
        return record
