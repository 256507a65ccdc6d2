"""Connectivity signal consumed by the upload policy and queue monitor."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List

LOGGER = logging.getLogger("recaply.mobile.connectivity")


class ConnectionType(str, Enum):
    NONE = "none"
    WIFI = "wifi"
    CELLULAR = "cellular"
    OTHER = "other"


@dataclass(frozen=True, slots=True)
class ConnectivityState:
    type: ConnectionType = ConnectionType.NONE

    @property
    def is_connected(self) -> bool:
        return self.type is not ConnectionType.NONE


Listener = Callable[[ConnectivityState], None]


class ConnectivitySource:
    """Base class for anything that reports network reachability."""

    def current(self) -> ConnectivityState:
        raise NotImplementedError

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        raise NotImplementedError


class ManualConnectivity(ConnectivitySource):
    """Connectivity pushed in by the host platform (or by tests).

    ``set`` records the new state and notifies every subscriber on the calling
    thread.
    """

    def __init__(self, initial: ConnectionType = ConnectionType.NONE) -> None:
        self._state = ConnectivityState(initial)
        self._listeners: List[Listener] = []
        self._lock = threading.Lock()

    def current(self) -> ConnectivityState:
        return self._state

    def set(self, connection: ConnectionType | str) -> ConnectivityState:
        state = ConnectivityState(ConnectionType(connection))
        with self._lock:
            self._state = state
            listeners = list(self._listeners)
        LOGGER.info("Network state changed: %s", state.type.value)
        for listener in listeners:
            try:
                listener(state)
            except Exception:
                LOGGER.exception("Connectivity listener failed")
        return state

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe
