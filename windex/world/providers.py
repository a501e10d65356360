"""
windex.world.providers

Provider capability contract and the reusable provider bases.

- WindowProvider: what the orchestrator needs from any source
- CachingWindowProvider: de-duplicates overlapping scans and keeps a
  per-PID last-known-good cache so one flaky deep scan does not blank
  a process's windows
- WorkerHostedProvider: parent-side descriptor for a provider whose
  scan runs inside the scanner child process
"""

from __future__ import annotations

import threading
from typing import Dict, Iterable, List, Optional, Set, Tuple, Type

import psutil

from windex.core.config import Settings
from windex.core.logger import get_logger
from windex.world.window_record import WindowRecord


class WindowProvider:
    """
    Base class for anything that can enumerate window records.

    Subclasses must set plugin_name and implement get_windows().
    """

    plugin_name: str = ""
    # True if the scan must run in the scanner child process
    is_out_of_process: bool = False
    # Process names (without extension) this provider owns exclusively.
    # Declared on the class so the parent can route without instantiating.
    handled_processes: Tuple[str, ...] = ()

    def reload_settings(self, settings: Optional[Settings] = None) -> None:
        """Called before each refresh with the current settings snapshot."""

    def get_handled_processes(self) -> List[str]:
        return list(self.handled_processes)

    def set_exclusions(self, exclusions: Iterable[str]) -> None:
        """Receives process names owned by providers (for de-duplication)."""

    def get_windows(self) -> List[WindowRecord]:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.plugin_name}>"


class CachingWindowProvider(WindowProvider):
    """
    Provider base with scan de-duplication and per-PID last-known-good data.

    When a scan is already running, get_windows() returns a copy of the
    cached results instead of starting a duplicate scan. Override
    scan_windows() with the actual scanning logic.
    """

    def __init__(self) -> None:
        self._cache_lock = threading.Lock()
        self._scan_running = False
        self._cached_windows: List[WindowRecord] = []
        # pid -> good (non-fallback) records from the last scan that produced any
        self._last_known_good: Dict[int, List[WindowRecord]] = {}
        self.logger = get_logger()

    @property
    def is_scan_running(self) -> bool:
        with self._cache_lock:
            return self._scan_running

    @property
    def cached_windows(self) -> List[WindowRecord]:
        with self._cache_lock:
            return list(self._cached_windows)

    def scan_windows(self) -> List[WindowRecord]:
        raise NotImplementedError

    def get_windows(self) -> List[WindowRecord]:
        """Run a scan, or return cached results if one is already running."""
        with self._cache_lock:
            if self._scan_running:
                self.logger.debug(
                    f"[SCAN] {self.plugin_name}: scan in progress, returning "
                    f"{len(self._cached_windows)} cached results"
                )
                return list(self._cached_windows)
            self._scan_running = True

        try:
            self.logger.debug(f"[SCAN] {self.plugin_name}: starting window scan")
            raw = list(self.scan_windows())
            processed = self._apply_last_known_good(raw)

            with self._cache_lock:
                self._cached_windows = processed

            self.logger.debug(f"[SCAN] {self.plugin_name}: scan complete, found {len(processed)} windows")
            return list(processed)

        except Exception as e:
            self.logger.log_error(f"[PROVIDER] {self.plugin_name}: error during scan", e)
            with self._cache_lock:
                return list(self._cached_windows)

        finally:
            with self._cache_lock:
                self._scan_running = False

    def clear_cache(self) -> None:
        """Forget cached results so the next call reports only fresh data."""
        with self._cache_lock:
            self._cached_windows = []
            self._last_known_good.clear()

    def _apply_last_known_good(self, raw: List[WindowRecord]) -> List[WindowRecord]:
        """
        Substitute cached good records for PIDs that only produced fallbacks.

        Records without a PID pass through untouched.
        """
        groups: Dict[int, List[WindowRecord]] = {}
        order: List[int] = []
        processed: List[WindowRecord] = []

        for record in raw:
            if record.pid <= 0:
                processed.append(record)
                continue
            if record.pid not in groups:
                groups[record.pid] = []
                order.append(record.pid)
            groups[record.pid].append(record)

        seen: Set[int] = set()
        for pid in order:
            items = groups[pid]
            seen.add(pid)

            if any(not r.is_fallback for r in items):
                self._last_known_good[pid] = items
                processed.extend(items)
                continue

            cached = self._last_known_good.get(pid)
            if cached is None:
                processed.extend(items)
            elif _process_alive(pid):
                self.logger.info(
                    f"[LKG] {self.plugin_name}: transient failure for PID {pid}. "
                    f"Restoring {len(cached)} items from last-known-good cache."
                )
                processed.extend(cached)
            else:
                processed.extend(items)
                del self._last_known_good[pid]

        # PIDs missing from this scan are closed applications
        for pid in [p for p in self._last_known_good if p not in seen]:
            del self._last_known_good[pid]

        return processed


def _process_alive(pid: int) -> bool:
    """True if the process exists and is not a zombie."""
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.AccessDenied:
        return True
    except psutil.NoSuchProcess:
        return False


class WorkerHostedProvider(WindowProvider):
    """
    Parent-side stand-in for a provider that runs in the scanner child.

    It only carries routing data (plugin name, handled processes). Its
    windows arrive through the worker protocol, never from get_windows().
    """

    is_out_of_process = True

    def __init__(self, plugin_name: str, handled_processes: Optional[Iterable[str]] = None):
        self.plugin_name = plugin_name
        self.handled_processes = tuple(handled_processes or ())

    @classmethod
    def from_class(cls, provider_class: Type[WindowProvider]) -> "WorkerHostedProvider":
        """Describe a provider class from its class attributes, without instantiating it."""
        if not provider_class.plugin_name:
            raise ValueError(f"{provider_class.__name__} does not declare plugin_name")
        return cls(provider_class.plugin_name, provider_class.handled_processes)

    def get_windows(self) -> List[WindowRecord]:
        return []
