"""Persistent queue of recordings awaiting upload."""

from __future__ import annotations

import json
import logging
import os
import threading
import time
import uuid
from dataclasses import asdict, dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence

from .files import write_json_atomic

LOGGER = logging.getLogger("recaply.mobile.queue")


class QueueStatus(str, Enum):
    PENDING = "pending"
    UPLOADING = "uploading"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(slots=True)
class QueueItem:
    id: str
    audio_refs: List[str]
    filename: str
    created_at: float
    status: QueueStatus = QueueStatus.PENDING
    attempts: int = 0
    last_error: Optional[str] = None
    updated_at: float = field(default_factory=time.time)

    @property
    def local_audio_ref(self) -> str:
        return self.audio_refs[0]

    def to_dict(self) -> Dict:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, raw: Dict) -> "QueueItem":
        refs = raw.get("audio_refs") or []
        if isinstance(refs, str):
            refs = [refs]
        return cls(
            id=str(raw["id"]),
            audio_refs=[str(ref) for ref in refs],
            filename=str(raw.get("filename", "")),
            created_at=float(raw.get("created_at", time.time())),
            status=QueueStatus(raw.get("status", QueueStatus.PENDING.value)),
            attempts=int(raw.get("attempts", 0)),
            last_error=raw.get("last_error"),
            updated_at=float(raw.get("updated_at", raw.get("created_at", time.time()))),
        )


class QueueClosedError(RuntimeError):
    pass


class UploadQueue:
    """JSON-file backed upload queue.

    One instance owns the file. All mutations happen under a lock and are
    written through a temp file + ``os.replace`` so a crash leaves either the old
    or the new queue on disk, never a torn one.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._closed = False
        self._data: List[QueueItem] = self._load()

    def enqueue(self, audio_refs: str | Sequence[str], filename: str) -> QueueItem:
        refs = [audio_refs] if isinstance(audio_refs, (str, os.PathLike)) else list(audio_refs)
        if not refs:
            raise ValueError("at least one audio file is required")
        now = time.time()
        item = QueueItem(
            id=uuid.uuid4().hex,
            audio_refs=[str(ref) for ref in refs],
            filename=filename,
            created_at=now,
            updated_at=now,
        )
        with self._lock:
            self._ensure_open()
            self._data.append(item)
            self._persist()
        LOGGER.info("Added to queue: %s (%s)", item.id, filename)
        return replace(item)

    def list(self, statuses: Optional[Iterable[QueueStatus]] = None) -> List[QueueItem]:
        wanted = set(statuses) if statuses is not None else None
        with self._lock:
            return [
                replace(item, audio_refs=list(item.audio_refs))
                for item in self._data
                if wanted is None or item.status in wanted
            ]

    def get(self, entry_id: str) -> Optional[QueueItem]:
        with self._lock:
            item = self._find(entry_id)
            return replace(item, audio_refs=list(item.audio_refs)) if item else None

    def update_status(
        self, entry_id: str, status: QueueStatus, error: Optional[str] = None
    ) -> Optional[QueueItem]:
        with self._lock:
            self._ensure_open()
            item = self._find(entry_id)
            if item is None:
                return None
            item.status = status
            item.updated_at = time.time()
            if status is QueueStatus.UPLOADING:
                item.attempts += 1
            if status is QueueStatus.FAILED:
                item.last_error = (error or "")[-200:] or None
            self._persist()
            LOGGER.debug("Updated queue item %s -> %s", entry_id, status.value)
            return replace(item, audio_refs=list(item.audio_refs))

    def remove(self, entry_id: str) -> bool:
        with self._lock:
            self._ensure_open()
            before = len(self._data)
            self._data = [item for item in self._data if item.id != entry_id]
            if len(self._data) == before:
                return False
            self._persist()
        LOGGER.info("Removed from queue: %s", entry_id)
        return True

    def discard(self, entry_id: str) -> bool:
        """Drop an item at the user's request, deleting its local audio."""

        item = self.get(entry_id)
        if item is None or not self.remove(entry_id):
            return False
        delete_audio(item)
        return True

    def pending_count(self) -> int:
        with self._lock:
            return sum(1 for item in self._data if item.status is QueueStatus.PENDING)

    def close(self) -> None:
        with self._lock:
            self._closed = True

    def __enter__(self) -> "UploadQueue":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)

    def _find(self, entry_id: str) -> Optional[QueueItem]:
        for item in self._data:
            if item.id == entry_id:
                return item
        return None

    def _ensure_open(self) -> None:
        if self._closed:
            raise QueueClosedError(f"upload queue {self.path} is closed")

    def _load(self) -> List[QueueItem]:
        if not self.path.exists():
            return []
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
            if not isinstance(raw, list):
                raise ValueError(f"expected a list, got {type(raw).__name__}")
        except (OSError, ValueError) as exc:
            backup = self.path.with_name(self.path.name + ".corrupt")
            LOGGER.error("Upload queue %s is unreadable (%s); moved to %s", self.path, exc, backup)
            os.replace(self.path, backup)
            return []
        changed = False
        kept: List[QueueItem] = []
        for position, entry in enumerate(raw):
            try:
                item = QueueItem.from_dict(entry)
            except (ValueError, TypeError, KeyError, AttributeError) as exc:
                LOGGER.error(
                    "Dropping malformed queue entry %d in %s (%r): %r", position, self.path, exc, entry
                )
                changed = True
                continue
            if item.status is QueueStatus.COMPLETED:
                changed = True
                continue
            if item.status is QueueStatus.UPLOADING:
                # The process died mid-upload; nothing confirmed it.
                item.status = QueueStatus.FAILED
                item.last_error = "interrupted"
                changed = True
            kept.append(item)
        if changed:
            write_json_atomic(self.path, [item.to_dict() for item in kept])
        return kept

    def _persist(self) -> None:
        write_json_atomic(self.path, [item.to_dict() for item in self._data])


def delete_audio(item: QueueItem) -> None:
    for ref in item.audio_refs:
        try:
            Path(ref).unlink(missing_ok=True)
        except OSError as exc:
            LOGGER.warning("Could not delete local file %s: %s", ref, exc)
