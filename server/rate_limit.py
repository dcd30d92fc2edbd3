"""
Per-IP sliding-window limiter for the certificate download endpoint.

Each client IP keeps the timestamps of its requests inside the last window;
a request is allowed while fewer than *limit* remain.  A background sweep
drops IPs that have been idle longer than *idle* so the table stays bounded.
"""
from __future__ import annotations

import logging
import threading
import time
from collections import deque
from typing import Callable, Deque, Dict, Optional

logger = logging.getLogger(__name__)


class DownloadRateLimiter:
    def __init__(
        self,
        limit: int = 10,
        window: float = 60.0,
        idle: float = 120.0,
        sweep_interval: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.limit = limit
        self.window = window
        self.idle = idle
        self.sweep_interval = sweep_interval
        self._clock = clock
        self._hits: Dict[str, Deque[float]] = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def allow(self, ip: str) -> bool:
        now = self._clock()
        with self._lock:
            hits = self._hits.setdefault(ip, deque())
            while hits and now - hits[0] >= self.window:
                hits.popleft()
            if len(hits) >= self.limit:
                return False
            hits.append(now)
            return True

    def sweep(self) -> int:
        """Forget IPs with no request in the idle period; returns how many."""
        now = self._clock()
        with self._lock:
            stale = [ip for ip, hits in self._hits.items() if not hits or now - hits[-1] > self.idle]
            for ip in stale:
                del self._hits[ip]
        if stale:
            logger.debug("Rate limiter dropped %d idle client(s)", len(stale))
        return len(stale)

    def tracked(self) -> int:
        with self._lock:
            return len(self._hits)

    # ── Background sweeper ────────────────────────────────────────────────

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="rate-limit-sweeper", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _loop(self) -> None:
        while not self._stop.wait(self.sweep_interval):
            self.sweep()
