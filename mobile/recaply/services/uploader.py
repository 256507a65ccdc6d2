"""Drain the upload queue and keep draining it when the network allows."""

from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass
from typing import Callable, Optional

from ..config import CONFIG
from ..store.queue_store import QueueStatus, UploadQueue, delete_audio
from .connectivity import ConnectivitySource, ConnectivityState
from .logger import LogBuffer
from .network import ApiClient, ApiError, UploadRejected, UploadTransportError
from .policy import NetworkPolicyEvaluator


@dataclass(frozen=True, slots=True)
class QueuePassReport:
    uploaded: int = 0
    failed: int = 0
    skipped_reason: Optional[str] = None


class UploadQueueProcessor:
    """Upload every pending or failed item, one at a time.

    Local audio is deleted only after the backend has confirmed the upload.
    Failures are recorded on the item and never raised to the caller.
    """

    def __init__(
        self,
        queue: UploadQueue,
        client: ApiClient,
        policy: NetworkPolicyEvaluator,
        logger: LogBuffer,
    ) -> None:
        self.queue = queue
        self.client = client
        self.policy = policy
        self.logger = logger
        self._running = threading.Lock()

    def process_queue(self) -> QueuePassReport:
        if not self._running.acquire(blocking=False):
            self.logger.add("Queue pass already running; skipping", logging.DEBUG)
            return QueuePassReport(skipped_reason="already running")
        try:
            return self._process()
        finally:
            self._running.release()

    def _process(self) -> QueuePassReport:
        decision = self.policy.can_upload_now()
        if not decision.allowed:
            self.logger.add(f"Cannot upload at this time: {decision.reason}")
            return QueuePassReport(skipped_reason=decision.reason)
        if not self.client.has_credentials():
            self.logger.add("No server or token configured; uploads deferred", logging.WARNING)
            return QueuePassReport(skipped_reason="credentials missing")

        items = self.queue.list(statuses=(QueueStatus.PENDING, QueueStatus.FAILED))
        if items:
            self.logger.add(f"Found {len(items)} pending upload(s)")
        uploaded = failed = 0
        for item in items:
            if self.queue.update_status(item.id, QueueStatus.UPLOADING) is None:
                continue
            self.logger.add(f"Uploading recording {item.id[:6]}...")
            try:
                receipt = self.client.upload_recording(item)
            except Exception as exc:
                failed += 1
                self.queue.update_status(item.id, QueueStatus.FAILED, str(exc) or type(exc).__name__)
                self.logger.add(
                    f"Upload failed ({item.id[:6]}, {_failure_kind(exc)}): {exc}",
                    logging.WARNING if isinstance(exc, ApiError) else logging.ERROR,
                )
                continue
            self.queue.update_status(item.id, QueueStatus.COMPLETED)
            self.queue.remove(item.id)
            delete_audio(item)
            uploaded += 1
            self.logger.add(f"Recording {item.id[:6]} uploaded as {receipt.recording_id}")
        return QueuePassReport(uploaded=uploaded, failed=failed)


def _failure_kind(exc: Exception) -> str:
    if isinstance(exc, UploadRejected):
        return f"rejected {exc.status_code}"
    if isinstance(exc, UploadTransportError):
        return "transport"
    if isinstance(exc, ApiError):
        return "client"
    return type(exc).__name__


class QueueMonitor:
    """Runs queue passes on startup, on connectivity and on a timer.

    Connectivity callbacks and the periodic ticker only post triggers; a single
    worker thread consumes them, so two passes never overlap. Triggers that
    arrive while one is already waiting are coalesced.
    """

    def __init__(
        self,
        processor: UploadQueueProcessor,
        connectivity: ConnectivitySource,
        logger: LogBuffer,
        *,
        interval: float = CONFIG.monitor_interval_sec,
        on_pass: Optional[Callable[[QueuePassReport], None]] = None,
    ) -> None:
        self.processor = processor
        self.connectivity = connectivity
        self.logger = logger
        self.interval = interval
        self.on_pass = on_pass
        self._triggers: "queue.Queue[str]" = queue.Queue(maxsize=1)
        self._stop_event = threading.Event()
        self._periodic = threading.Event()
        self._worker: threading.Thread | None = None
        self._ticker: threading.Thread | None = None
        self._unsubscribe: Callable[[], None] | None = None

    def start(self) -> None:
        if self._worker and self._worker.is_alive():
            return
        self.logger.add("Starting queue monitoring...")
        self._stop_event.clear()
        self._unsubscribe = self.connectivity.subscribe(self._on_connectivity)
        self._worker = threading.Thread(target=self._run, name="queue-monitor", daemon=True)
        self._ticker = threading.Thread(target=self._tick, name="queue-ticker", daemon=True)
        self._worker.start()
        self._ticker.start()
        self.trigger("startup")

    def stop(self, timeout: float = 2.0) -> bool:
        """Stop monitoring; returns False if a pass is still running."""

        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None
        self._stop_event.set()
        self._periodic.set()
        for thread in (self._worker, self._ticker):
            if thread:
                thread.join(timeout=timeout)
        idle = not (self._worker and self._worker.is_alive())
        self._worker = self._ticker = None
        self._periodic.clear()
        return idle

    def set_periodic(self, enabled: bool) -> None:
        """Enable the timer, e.g. while a screen showing queue state is open."""

        if enabled:
            self._periodic.set()
        else:
            self._periodic.clear()

    def wake(self) -> None:
        self.trigger("wake")

    def trigger(self, reason: str) -> None:
        try:
            self._triggers.put_nowait(reason)
        except queue.Full:
            pass

    def _on_connectivity(self, state: ConnectivityState) -> None:
        if state.is_connected:
            self.trigger(f"connectivity:{state.type.value}")

    def _tick(self) -> None:
        while not self._stop_event.is_set():
            self._periodic.wait()
            if self._stop_event.wait(self.interval):
                break
            if self._periodic.is_set():
                self.trigger("periodic")

    def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                reason = self._triggers.get(timeout=0.5)
            except queue.Empty:
                continue
            if self._stop_event.is_set():
                break
            self.logger.add(f"Processing upload queue ({reason})", logging.DEBUG)
            try:
                report = self.processor.process_queue()
            except Exception as exc:
                self.logger.add(f"Error processing queue: {exc}", logging.ERROR)
                continue
            if self.on_pass:
                self.on_pass(report)
