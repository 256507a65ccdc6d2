"""Persistent settings storage for server access and upload policy."""

from __future__ import annotations

import json
import threading
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Any, Optional

from .files import write_json_atomic


@dataclass(slots=True)
class AppSettings:
    server_url: str = ""
    api_token: str = ""
    wifi_only: bool = False
    allow_cellular: bool = True


@dataclass(frozen=True, slots=True)
class NetworkPolicy:
    """When uploads may use the network. ``wifi_only`` wins over ``allow_cellular``."""

    wifi_only: bool = False
    allow_cellular: bool = True


class SettingsStore:
    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._settings = self._load()

    def _load(self) -> AppSettings:
        if not self.path.exists():
            return AppSettings()
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            raw = {}
        if not isinstance(raw, dict):
            raw = {}
        settings = AppSettings()
        settings.server_url = str(raw.get("server_url", ""))
        settings.api_token = str(raw.get("api_token", ""))
        settings.wifi_only = _as_bool(raw.get("wifi_only", settings.wifi_only))
        settings.allow_cellular = _as_bool(raw.get("allow_cellular", settings.allow_cellular))
        return settings

    def get(self) -> AppSettings:
        return self._settings

    def update(self, **kwargs: Any) -> AppSettings:
        with self._lock:
            for key, value in kwargs.items():
                if not hasattr(self._settings, key):
                    continue
                current = getattr(self._settings, key)
                if isinstance(current, bool):
                    setattr(self._settings, key, _as_bool(value))
                else:
                    setattr(self._settings, key, str(value or ""))
            self._persist()
        return self._settings

    def network_policy(self) -> NetworkPolicy:
        settings = self._settings
        return NetworkPolicy(wifi_only=settings.wifi_only, allow_cellular=settings.allow_cellular)

    def update_network_policy(
        self, *, wifi_only: Optional[bool] = None, allow_cellular: Optional[bool] = None
    ) -> NetworkPolicy:
        changes = {}
        if wifi_only is not None:
            changes["wifi_only"] = wifi_only
        if allow_cellular is not None:
            changes["allow_cellular"] = allow_cellular
        if changes:
            self.update(**changes)
        return self.network_policy()

    def _persist(self) -> None:
        write_json_atomic(self.path, asdict(self._settings))


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)
