"""Client entrypoint wiring the upload queue to the network and backend."""

from __future__ import annotations

import logging
import shutil
import time
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import httpx

from .config import CONFIG
from .services.connectivity import ConnectivitySource, ManualConnectivity
from .services.logger import LogBuffer
from .services.network import ApiClient
from .services.policy import NetworkPolicyEvaluator, UploadDecision
from .services.uploader import QueueMonitor, QueuePassReport, UploadQueueProcessor
from .store.queue_store import QueueItem, QueueStatus, UploadQueue
from .store.settings_store import NetworkPolicy, SettingsStore


class RecaplyClient:
    """Owns the stores and background monitor for one app session.

    ``start`` opens the queue and settings and begins monitoring; ``stop``
    tears the monitor down and closes the stores.
    """

    def __init__(
        self,
        base_dir: Path,
        connectivity: Optional[ConnectivitySource] = None,
        *,
        http_client: Optional[httpx.Client] = None,
        monitor_interval: float = CONFIG.monitor_interval_sec,
    ) -> None:
        self.base_dir = Path(base_dir)
        self.connectivity = connectivity or ManualConnectivity()
        self.recordings_dir = self.base_dir / CONFIG.recordings_dir
        self.logger = LogBuffer()
        self._http_client = http_client
        self._monitor_interval = monitor_interval
        self.settings: SettingsStore | None = None
        self.queue: UploadQueue | None = None
        self.api_client: ApiClient | None = None
        self.processor: UploadQueueProcessor | None = None
        self.monitor: QueueMonitor | None = None

    def start(self) -> None:
        if self.monitor is not None:
            return
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self.recordings_dir.mkdir(parents=True, exist_ok=True)
        self.settings = SettingsStore(self.base_dir / CONFIG.settings_file)
        self.queue = UploadQueue(self.base_dir / CONFIG.queue_file)
        self.api_client = ApiClient(self.settings, client=self._http_client)
        policy = NetworkPolicyEvaluator(self.connectivity, self.settings)
        self.processor = UploadQueueProcessor(self.queue, self.api_client, policy, self.logger)
        self.monitor = QueueMonitor(
            self.processor, self.connectivity, self.logger, interval=self._monitor_interval
        )
        self.monitor.start()

    def stop(self) -> None:
        if self.monitor is not None:
            idle = self.monitor.stop()
            self.monitor = None
            if not idle:
                # The worker still owns the client and queue; it exits after this pass.
                self.logger.add("Upload still in progress; leaving it to finish", logging.WARNING)
                self.api_client = None
                return
        if self.api_client is not None:
            self.api_client.close()
            self.api_client = None
        if self.queue is not None:
            self.queue.close()

    def __enter__(self) -> "RecaplyClient":
        self.start()
        return self

    def __exit__(self, *exc_info) -> None:
        self.stop()

    def enqueue_recording(self, local_audio_ref: str | Sequence[str], filename: str) -> QueueItem:
        item = self._queue().enqueue(local_audio_ref, filename)
        self.logger.add(f"Recording queued ({item.id[:6]})")
        if self.monitor is not None:
            self.monitor.wake()
        return item

    def save_capture(self, captured: Sequence[str | Path], filename: str) -> QueueItem:
        """Move finished capture files into app storage, then queue them."""

        stamp = int(time.time() * 1000)
        kept = []
        for index, source in enumerate(captured):
            source = Path(source)
            target = self.recordings_dir / f"{stamp}_{index:02d}{source.suffix or '.m4a'}"
            shutil.move(str(source), target)
            kept.append(str(target))
        item = self.enqueue_recording(kept, filename)
        self.logger.add("Recording saved locally; it will upload automatically")
        return item

    def process_queue(self) -> QueuePassReport:
        if self.processor is None:
            raise RuntimeError("client is not started")
        return self.processor.process_queue()

    def can_upload_now(self) -> UploadDecision:
        if self.processor is None:
            raise RuntimeError("client is not started")
        return self.processor.policy.can_upload_now()

    def get_pending_count(self) -> int:
        return self._queue().pending_count()

    def queue_status(self) -> Dict[str, int]:
        items = self._queue().list()
        return {
            status.value: sum(1 for item in items if item.status is status)
            for status in (QueueStatus.PENDING, QueueStatus.UPLOADING, QueueStatus.FAILED)
        }

    def update_network_policy(
        self, *, wifi_only: Optional[bool] = None, allow_cellular: Optional[bool] = None
    ) -> NetworkPolicy:
        if self.settings is None:
            raise RuntimeError("client is not started")
        policy = self.settings.update_network_policy(
            wifi_only=wifi_only, allow_cellular=allow_cellular
        )
        self.logger.add(f"Network policy updated: wifi_only={policy.wifi_only}, allow_cellular={policy.allow_cellular}")
        if self.monitor is not None:
            self.monitor.wake()
        return policy

    def discard(self, item_id: str) -> bool:
        return self._queue().discard(item_id)

    def log_lines(self) -> List[str]:
        """Recent client log lines, oldest first, for a status screen."""

        return self.logger.lines()

    def _queue(self) -> UploadQueue:
        if self.queue is None:
            raise RuntimeError("client is not started")
        return self.queue
