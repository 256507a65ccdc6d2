"""Decide whether uploads may run on the current network."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from ..store.settings_store import SettingsStore
from .connectivity import ConnectionType, ConnectivitySource


@dataclass(frozen=True, slots=True)
class UploadDecision:
    allowed: bool
    reason: Optional[str] = None


class NetworkPolicyEvaluator:
    def __init__(self, connectivity: ConnectivitySource, settings: SettingsStore) -> None:
        self.connectivity = connectivity
        self.settings = settings

    def can_upload_now(self) -> UploadDecision:
        state = self.connectivity.current()
        policy = self.settings.network_policy()
        if not state.is_connected:
            return UploadDecision(False, "No internet connection")
        if policy.wifi_only:
            if state.type is not ConnectionType.WIFI:
                return UploadDecision(False, "WiFi only mode enabled")
            return UploadDecision(True)
        if not policy.allow_cellular and state.type is ConnectionType.CELLULAR:
            return UploadDecision(False, "Cellular data disabled")
        return UploadDecision(True)
