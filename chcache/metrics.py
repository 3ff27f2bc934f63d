"""Counters for monitoring batch writes."""

from __future__ import annotations

import threading
from dataclasses import dataclass


@dataclass(frozen=True)
class MetricsSnapshot:
    """A consistent copy of the counters at one moment."""

    success_inserts: int = 0
    failed_inserts: int = 0
    last_batch_size: int = 0


class Metrics:
    """Thread-safe counters of successful and failed batch writes."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._success = 0
        self._failed = 0
        self._last_batch_size = 0

    def inc_success(self, batch_size: int) -> None:
        with self._lock:
            self._success += 1
            self._last_batch_size = batch_size

    def inc_failed(self, batch_size: int) -> None:
        with self._lock:
            self._failed += 1
            self._last_batch_size = batch_size

    def snapshot(self) -> MetricsSnapshot:
        with self._lock:
            return MetricsSnapshot(self._success, self._failed, self._last_batch_size)