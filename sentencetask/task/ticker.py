from __future__ import annotations

"""TickDriver: calls a tick callback once per interval on a daemon timer thread."""

import logging
import threading
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


class TickDriver:
    def __init__(self, on_tick: Callable[[], Any], interval_s: float = 1.0) -> None:
        self.on_tick = on_tick
        self.interval_s = float(interval_s)
        self._timer: Optional[threading.Timer] = None
        self._lock = threading.Lock()
        self._running = False
        # bumped on every arm; a timer from an older arm never ticks
        self._generation = 0

    def _arm_timer(self) -> None:
        if self._timer:
            self._timer.cancel()
        self._generation += 1
        self._timer = threading.Timer(self.interval_s, self._on_timer, args=(self._generation,))
        self._timer.daemon = True
        self._timer.start()

    def _on_timer(self, generation: int) -> None:
        with self._lock:
            if not self._running or generation != self._generation:
                return
        # Callback runs outside the lock so it may stop() or restart() the driver
        try:
            self.on_tick()
        except Exception:
            logger.exception("Tick callback failed")
        with self._lock:
            if self._running and generation == self._generation:
                self._arm_timer()

    def start(self) -> None:
        with self._lock:
            if self._running:
                return
            self._running = True
            self._arm_timer()

    def restart(self) -> None:
        """Begin a fresh full interval from now (a new trial started)."""
        with self._lock:
            if self._running:
                self._arm_timer()

    def stop(self) -> None:
        with self._lock:
            self._running = False
            self._generation += 1
            if self._timer:
                self._timer.cancel()
                self._timer = None

    def is_running(self) -> bool:
        return self._running
