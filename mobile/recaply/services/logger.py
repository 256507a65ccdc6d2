"""In-memory log ring the UI can render, mirrored to stdlib logging."""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from typing import List

from ..config import CONFIG


class LogBuffer:
    def __init__(self, capacity: int = CONFIG.log_capacity, name: str = "recaply.mobile") -> None:
        self._lines: deque[str] = deque(maxlen=capacity)
        self._lock = threading.Lock()
        self._logger = logging.getLogger(name)

    def add(self, message: str, level: int = logging.INFO) -> None:
        stamp = time.strftime("%H:%M:%S")
        with self._lock:
            self._lines.append(f"[{stamp}] {message}")
        self._logger.log(level, message)

    def lines(self) -> List[str]:
        with self._lock:
            return list(self._lines)
