"""Long-form transcription: probe, split, dispatch in batches, reassemble."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol, Sequence

from openai import AsyncOpenAI

from ..metrics import CHUNK_DISPATCH_COUNTER, TRANSCRIBE_COUNTER, TRANSCRIBE_DURATION
from ..settings import APISettings
from .audio_processor import AudioProcessor
from .retry import RetryExhausted, RetryPolicy, Sleep

LOGGER = logging.getLogger("recaply.transcription")

_MIME_TYPES = {
    ".m4a": "audio/mp4",
    ".mp4": "audio/mp4",
    ".mp3": "audio/mpeg",
    ".wav": "audio/wav",
    ".flac": "audio/flac",
    ".ogg": "audio/ogg",
    ".webm": "audio/webm",
}


@dataclass(frozen=True, slots=True)
class AudioChunk:
    index: int
    data: bytes
    filename: str
    content_type: str


@dataclass(frozen=True, slots=True)
class ChunkTranscript:
    text: str
    duration_seconds: float


@dataclass(frozen=True, slots=True)
class ChunkResult:
    index: int
    text: str
    duration_seconds: float


@dataclass(frozen=True, slots=True)
class TranscriptionResult:
    text: str
    duration_seconds: float
    chunk_count: int = 1


class TranscriptionFailed(Exception):
    """A chunk could not be transcribed within its retry budget."""

    def __init__(self, chunk_index: int, attempts: int, cause: BaseException | None = None) -> None:
        message = f"Failed to transcribe chunk {chunk_index} after {attempts} attempt(s)"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)
        self.chunk_index = chunk_index
        self.attempts = attempts


class SpeechToText(Protocol):
    async def transcribe_chunk(
        self, audio: bytes, filename: str, content_type: str
    ) -> ChunkTranscript: ...


class OpenAISpeechToText:
    """Whisper over the OpenAI audio API."""

    def __init__(
        self,
        api_key: str,
        *,
        model: str = "whisper-1",
        language: Optional[str] = "en",
        timeout: float = 1800.0,
        client: Optional[AsyncOpenAI] = None,
    ) -> None:
        # Retries are owned by ChunkDispatcher, not the SDK.
        self._client = client or AsyncOpenAI(api_key=api_key, timeout=timeout, max_retries=0)
        self.model = model
        self.language = language

    async def transcribe_chunk(
        self, audio: bytes, filename: str, content_type: str
    ) -> ChunkTranscript:
        kwargs = {
            "model": self.model,
            "file": (filename, audio, content_type),
            "response_format": "verbose_json",
        }
        if self.language:
            kwargs["language"] = self.language
        transcript = await self._client.audio.transcriptions.create(**kwargs)
        duration = getattr(transcript, "duration", None) or 0.0
        return ChunkTranscript(text=transcript.text or "", duration_seconds=float(duration))


class MockSpeechToText:
    """Offline stand-in used when WHISPER_USE_MOCK is set."""

    async def transcribe_chunk(
        self, audio: bytes, filename: str, content_type: str
    ) -> ChunkTranscript:
        return ChunkTranscript(
            text=f"[mock transcript for {filename}]", duration_seconds=0.0
        )


class ChunkDispatcher:
    """Send chunks to a :class:`SpeechToText` with per-chunk retries."""

    def __init__(
        self,
        stt: SpeechToText,
        retry_policy: RetryPolicy,
        *,
        timeout: float,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.stt = stt
        self.retry_policy = retry_policy
        self.timeout = timeout
        self._sleep = sleep

    async def dispatch(self, chunk: AudioChunk) -> ChunkResult:
        async def attempt() -> ChunkTranscript:
            transcript = await asyncio.wait_for(
                self.stt.transcribe_chunk(chunk.data, chunk.filename, chunk.content_type),
                timeout=self.timeout,
            )
            CHUNK_DISPATCH_COUNTER.labels(outcome="success").inc()
            return transcript

        def on_failure(attempt_no: int, exc: BaseException) -> None:
            outcome = "timeout" if isinstance(exc, asyncio.TimeoutError) else "error"
            CHUNK_DISPATCH_COUNTER.labels(outcome=outcome).inc()
            LOGGER.warning(
                "Transcription attempt %d failed for chunk %d: %s",
                attempt_no + 1,
                chunk.index,
                str(exc) or type(exc).__name__,
            )

        try:
            transcript = await self.retry_policy.run(
                attempt, sleep=self._sleep, on_failure=on_failure
            )
        except RetryExhausted as exc:
            raise TranscriptionFailed(chunk.index, exc.attempts, exc.last_error) from exc
        return ChunkResult(
            index=chunk.index,
            text=transcript.text,
            duration_seconds=transcript.duration_seconds,
        )

    async def dispatch_all(
        self, chunks: Sequence[AudioChunk], concurrency_limit: int
    ) -> list[ChunkResult]:
        """Dispatch ``chunks`` in fixed-size batches; results come back in index order.

        Each batch runs to completion before the next starts. If any chunk in a
        finished batch failed, the lowest failing index is raised and nothing
        further is dispatched.
        """

        if concurrency_limit < 1:
            raise ValueError("concurrency_limit must be at least 1")
        results: list[ChunkResult] = []
        total_batches = (len(chunks) + concurrency_limit - 1) // concurrency_limit
        for start in range(0, len(chunks), concurrency_limit):
            batch = chunks[start : start + concurrency_limit]
            LOGGER.info(
                "Processing batch %d/%d (%d chunk(s))",
                start // concurrency_limit + 1,
                total_batches,
                len(batch),
            )
            outcomes = await asyncio.gather(
                *(self.dispatch(chunk) for chunk in batch), return_exceptions=True
            )
            failures = [item for item in outcomes if isinstance(item, BaseException)]
            if failures:
                chunk_failures = [item for item in failures if isinstance(item, TranscriptionFailed)]
                if len(chunk_failures) != len(failures):
                    raise next(item for item in failures if not isinstance(item, TranscriptionFailed))
                raise min(chunk_failures, key=lambda item: item.chunk_index)
            results.extend(outcomes)  # type: ignore[arg-type]
        return sorted(results, key=lambda item: item.index)


class TranscriptionOrchestrator:
    """Single entry point for turning a recording into text."""

    def __init__(
        self,
        processor: AudioProcessor,
        dispatcher: ChunkDispatcher,
        *,
        chunk_threshold: float = 20 * 60,
        concurrency_limit: int = 3,
    ) -> None:
        self.processor = processor
        self.dispatcher = dispatcher
        self.chunk_threshold = chunk_threshold
        self.concurrency_limit = concurrency_limit

    async def transcribe(self, audio: bytes, filename: str) -> TranscriptionResult:
        started = time.perf_counter()
        duration = await self.processor.probe_duration(audio, filename)
        LOGGER.info("Audio %s duration: %.2f minutes", filename, duration / 60)
        mode = "single" if duration <= self.chunk_threshold else "chunked"
        try:
            if mode == "single":
                result = await self._transcribe_whole(audio, filename)
            else:
                result = await self._transcribe_chunked(audio, filename)
        except Exception:
            TRANSCRIBE_COUNTER.labels(mode=mode, status="error").inc()
            raise
        TRANSCRIBE_COUNTER.labels(mode=mode, status="success").inc()
        TRANSCRIBE_DURATION.observe(time.perf_counter() - started)
        LOGGER.info(
            "Transcription complete for %s: %d chunk(s), %.1f seconds of audio",
            filename,
            result.chunk_count,
            result.duration_seconds,
        )
        return result

    async def _transcribe_whole(self, audio: bytes, filename: str) -> TranscriptionResult:
        chunk = AudioChunk(
            index=0, data=audio, filename=filename, content_type=content_type_for(filename)
        )
        result = await self.dispatcher.dispatch(chunk)
        return TranscriptionResult(text=result.text, duration_seconds=result.duration_seconds)

    async def _transcribe_chunked(self, audio: bytes, filename: str) -> TranscriptionResult:
        pieces = await self.processor.split(audio, self.chunk_threshold, filename)
        LOGGER.info("Split %s into %d chunk(s)", filename, len(pieces))
        stem, suffix = Path(filename).stem or "audio", Path(filename).suffix or ".m4a"
        chunks = [
            AudioChunk(
                index=index,
                data=data,
                filename=f"{stem}_chunk_{index:03d}{suffix}",
                content_type=content_type_for(filename),
            )
            for index, data in enumerate(pieces)
        ]
        results = await self.dispatcher.dispatch_all(chunks, self.concurrency_limit)
        return reduce_results(results)


def reduce_results(results: Sequence[ChunkResult]) -> TranscriptionResult:
    ordered = sorted(results, key=lambda item: item.index)
    return TranscriptionResult(
        text=" ".join(item.text for item in ordered),
        duration_seconds=sum(item.duration_seconds for item in ordered),
        chunk_count=len(ordered),
    )


def content_type_for(filename: str) -> str:
    return _MIME_TYPES.get(Path(filename).suffix.lower(), "audio/mpeg")


def build_speech_to_text(settings: APISettings) -> SpeechToText:
    if settings.whisper_mock_transcriber:
        LOGGER.warning("Speech-to-text mock mode enabled (unset WHISPER_USE_MOCK to transcribe).")
        return MockSpeechToText()
    if not settings.openai_api_key:
        raise RuntimeError("OPENAI_API_KEY is missing and WHISPER_USE_MOCK is not set")
    return OpenAISpeechToText(
        settings.openai_api_key,
        model=settings.openai_whisper_model,
        language=settings.transcription_language,
        timeout=settings.transcription_timeout_sec,
    )


def build_orchestrator(
    settings: APISettings, stt: Optional[SpeechToText] = None
) -> TranscriptionOrchestrator:
    dispatcher = ChunkDispatcher(
        stt or build_speech_to_text(settings),
        RetryPolicy.exponential(settings.max_retries),
        timeout=settings.transcription_timeout_sec,
    )
    return TranscriptionOrchestrator(
        AudioProcessor.from_settings(settings),
        dispatcher,
        chunk_threshold=settings.chunk_threshold_sec,
        concurrency_limit=settings.concurrency_limit,
    )
