"""Static client configuration."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class ClientConfig:
    queue_file: str = "upload_queue.json"
    settings_file: str = "settings.json"
    recordings_dir: str = "recordings"
    upload_timeout_sec: float = 300.0
    monitor_interval_sec: float = 5.0
    log_capacity: int = 200


CONFIG = ClientConfig()
