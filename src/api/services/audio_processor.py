"""ffmpeg helpers: probe, split and combine audio without re-encoding."""

from __future__ import annotations

import asyncio
import json
import logging
import re
import shutil
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Sequence, Tuple

from ..settings import APISettings

LOGGER = logging.getLogger("recaply.audio")

DEFAULT_SUFFIX = ".m4a"
_CHUNK_PATTERN = re.compile(r"chunk_(\d+)")


class AudioProcessingError(Exception):
    """Base class for failures while handling raw audio."""


class ProbeError(AudioProcessingError):
    pass


class SplitError(AudioProcessingError):
    pass


class CombineError(AudioProcessingError):
    pass


class AudioProcessor:
    """Runs ffprobe/ffmpeg against scratch copies of in-memory audio.

    Every public call gets its own scratch directory which is removed when the
    call returns or raises.
    """

    def __init__(
        self,
        scratch_dir: str | Path,
        *,
        ffmpeg: str = "ffmpeg",
        ffprobe: str = "ffprobe",
    ) -> None:
        self.scratch_dir = Path(scratch_dir)
        self.ffmpeg = ffmpeg
        self.ffprobe = ffprobe

    @classmethod
    def from_settings(cls, settings: APISettings) -> "AudioProcessor":
        return cls(
            settings.audio_scratch_dir,
            ffmpeg=settings.ffmpeg_binary,
            ffprobe=settings.ffprobe_binary,
        )

    async def probe_duration(self, audio: bytes, filename: str = "") -> float:
        with self._scratch("probe_") as workdir:
            source = workdir / f"input{_suffix(filename)}"
            source.write_bytes(audio)
            info = await self._probe(source)
        return info[0]

    async def split(
        self, audio: bytes, segment_seconds: float, filename: str = ""
    ) -> list[bytes]:
        """Cut ``audio`` into chunks of at most ``segment_seconds`` each."""

        if segment_seconds <= 0:
            raise SplitError("segment length must be positive")
        suffix = _suffix(filename)
        with self._scratch("split_") as workdir:
            source = workdir / f"input{suffix}"
            source.write_bytes(audio)
            pattern = workdir / f"chunk_%05d{suffix}"
            try:
                code, _, stderr = await self._run(
                    self.ffmpeg,
                    "-y",
                    "-v",
                    "error",
                    "-i",
                    str(source),
                    "-f",
                    "segment",
                    "-segment_time",
                    _format_seconds(segment_seconds),
                    "-c",
                    "copy",
                    "-reset_timestamps",
                    "1",
                    str(pattern),
                )
            except OSError as exc:
                raise SplitError(f"could not run {self.ffmpeg}: {exc}") from exc
            if code != 0:
                raise SplitError(f"ffmpeg segment failed: {_tail(stderr)}")
            chunk_files = sorted(workdir.glob(f"chunk_*{suffix}"), key=_chunk_number)
            if not chunk_files:
                raise SplitError("ffmpeg produced no chunks")
            chunks = [path.read_bytes() for path in chunk_files]
        LOGGER.info("Split %d bytes into %d chunk(s)", len(audio), len(chunks))
        return chunks

    async def combine(self, segments: Sequence[bytes], filename: str = "") -> bytes:
        """Concatenate ``segments`` in order into one stream."""

        if not segments:
            raise CombineError("no audio segments provided")
        if len(segments) == 1:
            return segments[0]
        suffix = _suffix(filename)
        with self._scratch("combine_") as workdir:
            inputs: list[Path] = []
            formats: set[str] = set()
            for index, data in enumerate(segments):
                path = workdir / f"segment_{index:05d}{suffix}"
                path.write_bytes(data)
                try:
                    _, format_name = await self._probe(path)
                except ProbeError as exc:
                    raise CombineError(f"segment {index} is not decodable: {exc}") from exc
                formats.add(format_name)
                inputs.append(path)
            if len(formats) > 1:
                raise CombineError(
                    "segments use different containers: " + ", ".join(sorted(formats))
                )
            concat_list = workdir / "concat.txt"
            concat_list.write_text(
                "\n".join(f"file '{path.name}'" for path in inputs) + "\n",
                encoding="utf-8",
            )
            output = workdir / f"combined{suffix}"
            try:
                code, _, stderr = await self._run(
                    self.ffmpeg,
                    "-y",
                    "-v",
                    "error",
                    "-f",
                    "concat",
                    "-safe",
                    "0",
                    "-i",
                    str(concat_list),
                    "-c",
                    "copy",
                    str(output),
                )
            except OSError as exc:
                raise CombineError(f"could not run {self.ffmpeg}: {exc}") from exc
            if code != 0 or not output.exists():
                raise CombineError(f"ffmpeg concat failed: {_tail(stderr)}")
            combined = output.read_bytes()
        LOGGER.info("Combined %d segment(s) into %d bytes", len(segments), len(combined))
        return combined

    async def _probe(self, path: Path) -> Tuple[float, str]:
        try:
            code, stdout, stderr = await self._run(
                self.ffprobe,
                "-v",
                "error",
                "-show_entries",
                "format=duration,format_name",
                "-of",
                "json",
                str(path),
            )
        except OSError as exc:
            raise ProbeError(f"could not run {self.ffprobe}: {exc}") from exc
        if code != 0:
            raise ProbeError(f"ffprobe failed: {_tail(stderr)}")
        try:
            fmt = json.loads(stdout.decode("utf-8") or "{}")["format"]
            duration = float(fmt["duration"])
        except (ValueError, KeyError, TypeError) as exc:
            raise ProbeError(f"no duration reported for {path.name}") from exc
        return duration, str(fmt.get("format_name", ""))

    async def _run(self, *args: str) -> Tuple[int, bytes, bytes]:
        process = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await process.communicate()
        return process.returncode or 0, stdout, stderr

    @contextmanager
    def _scratch(self, prefix: str) -> Iterator[Path]:
        self.scratch_dir.mkdir(parents=True, exist_ok=True)
        workdir = Path(tempfile.mkdtemp(prefix=prefix, dir=self.scratch_dir))
        try:
            yield workdir
        finally:
            shutil.rmtree(workdir, ignore_errors=True)


def _suffix(filename: str) -> str:
    suffix = Path(filename or "").suffix.lower()
    return suffix or DEFAULT_SUFFIX


def _chunk_number(path: Path) -> int:
    match = _CHUNK_PATTERN.search(path.stem)
    return int(match.group(1)) if match else 0


def _format_seconds(value: float) -> str:
    return f"{value:.3f}".rstrip("0").rstrip(".")


def _tail(stderr: bytes, limit: int = 400) -> str:
    return stderr.decode("utf-8", errors="ignore").strip()[-limit:]
