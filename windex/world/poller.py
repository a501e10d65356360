"""
windex.world.poller

Background polling timer that triggers refreshes on a cadence.

Usage:
    poller = BackgroundPoller(lambda: orchestrator.refresh(), settings)
    poller.start()
    ...
    poller.reconfigure(new_settings)   # restarts with the new interval
    poller.stop()
"""

from __future__ import annotations

import threading
from typing import Any, Callable, Optional

from windex.core.config import Settings
from windex.core.logger import get_logger


class BackgroundPoller:
    """Calls refresh_action every polling_interval_sec seconds while enabled."""

    def __init__(
        self,
        refresh_action: Callable[[], Any],
        settings: Optional[Settings] = None,
        should_skip: Optional[Callable[[], bool]] = None,
    ):
        """
        Args:
            refresh_action: Called once per tick
            settings: Snapshot with polling_enabled / polling_interval_sec
            should_skip: Optional predicate; a True result skips the tick
                (e.g. the workstation is locked)
        """
        self._refresh_action = refresh_action
        self._should_skip = should_skip
        self.settings = settings or Settings.from_config()
        self.logger = get_logger()

        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.ticks = 0

    @property
    def interval_sec(self) -> float:
        return max(1, self.settings.polling_interval_sec)

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._thread is not None and self._thread.is_alive()

    def start(self) -> bool:
        """Start polling. Returns False if polling is disabled."""
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                return True

            if not self.settings.polling_enabled:
                self.logger.info("[POLL] Polling disabled")
                return False

            self._stop_event = threading.Event()
            self._thread = threading.Thread(
                target=self._run_loop,
                args=(self._stop_event, self.interval_sec),
                name="BackgroundPoller",
                daemon=True,
            )
            self._thread.start()

        self.logger.info(f"[POLL] Polling enabled with interval {self.interval_sec}s")
        return True

    def stop(self, timeout: float = 1.0) -> None:
        """Stop polling. Safe to call repeatedly."""
        with self._lock:
            thread = self._thread
            self._thread = None
            self._stop_event.set()

        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout)

    def reconfigure(self, settings: Settings) -> bool:
        """Restart the loop with a new settings snapshot."""
        self.stop()
        self.settings = settings
        return self.start()

    def _run_loop(self, stop_event: threading.Event, interval: float) -> None:
        """Background thread loop."""
        while not stop_event.wait(interval):
            if self._should_skip is not None:
                try:
                    if self._should_skip():
                        self.logger.debug("[POLL] Skip condition met, skipping refresh")
                        continue
                except Exception as e:
                    self.logger.log_error("[POLL] Skip predicate failed", e)

            self.logger.debug("[POLL] Running background refresh")
            try:
                self._refresh_action()
            except Exception as e:
                # Log but don't crash the loop
                self.logger.log_error("[POLL] Error during refresh", e)
            self.ticks += 1
