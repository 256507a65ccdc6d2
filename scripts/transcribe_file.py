"""Transcribe a local recording with the same pipeline the API uses."""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

from src.api.app import configure_logging
from src.api.services.audio_processor import AudioProcessingError
from src.api.services.transcription import TranscriptionFailed, build_orchestrator
from src.api.settings import APISettings


def main() -> int:
    parser = argparse.ArgumentParser(description="Transcribe an audio file of any length.")
    parser.add_argument("audio", type=Path, help="Recording to transcribe.")
    parser.add_argument("--segment", type=Path, action="append", default=[],
                        help="Additional segment to append before transcription (repeatable).")
    parser.add_argument("--output", type=Path, help="Write the transcript here instead of stdout.")
    parser.add_argument("--mock", action="store_true", help="Use the offline mock transcriber.")
    args = parser.parse_args()

    settings = APISettings()
    if args.mock:
        settings = settings.model_copy(update={"whisper_mock_transcriber": True})
    configure_logging(settings.log_level)
    orchestrator = build_orchestrator(settings)

    async def run() -> str:
        parts = [args.audio.read_bytes()] + [path.read_bytes() for path in args.segment]
        audio = await orchestrator.processor.combine(parts, args.audio.name)
        result = await orchestrator.transcribe(audio, args.audio.name)
        return result.text

    try:
        text = asyncio.run(run())
    except (AudioProcessingError, TranscriptionFailed) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    if args.output:
        args.output.write_text(text + "\n", encoding="utf-8")
    else:
        print(text)
    return 0


if __name__ == "__main__":
    sys.exit(main())
