"""
windex.world.native_windows

Fast in-process enumerator of visible top-level windows.

Uses pywin32 (win32gui/win32process) for enumeration and psutil for
process names. On non-Windows platforms the enumerator reports nothing.
"""

from __future__ import annotations

import os
import sys
from typing import Iterable, List, Optional, Set, Tuple

import psutil

from windex.core.config import Config, Settings
from windex.world.providers import CachingWindowProvider
from windex.world.window_record import WindowRecord

if sys.platform == "win32":
    import win32gui
    import win32process


# Shell desktop window, never interesting in a switcher
_IGNORED_TITLES = {"Program Manager"}


def _process_info(pid: int) -> Tuple[str, Optional[str]]:
    """Return (name without extension, executable path) for a PID."""
    try:
        proc = psutil.Process(pid)
        name = os.path.splitext(proc.name())[0]
        try:
            exe = proc.exe() or None
        except (psutil.AccessDenied, psutil.ZombieProcess):
            exe = None
        return name, exe
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return "Window", None


class NativeWindowProvider(CachingWindowProvider):
    """
    Enumerates visible, titled top-level windows.

    Skips processes from the settings exclusion list and processes owned
    by other providers (the dynamic exclusions), case-insensitively.
    """

    plugin_name = "WindowFinder"

    def __init__(self, settings: Optional[Settings] = None):
        super().__init__()
        self._excluded: Set[str] = set(
            p.lower() for p in (settings.excluded_processes if settings else Config.EXCLUDED_PROCESSES)
        )
        self._dynamic_exclusions: Set[str] = set()

    def reload_settings(self, settings: Optional[Settings] = None) -> None:
        if settings is not None:
            self._excluded = set(p.lower() for p in settings.excluded_processes)

    def set_exclusions(self, exclusions: Iterable[str]) -> None:
        self._dynamic_exclusions = set(e.lower() for e in exclusions)

    def is_excluded(self, process_name: str) -> bool:
        lowered = process_name.lower()
        return lowered in self._excluded or lowered in self._dynamic_exclusions

    def scan_windows(self) -> List[WindowRecord]:
        if sys.platform != "win32":
            return []

        windows: List[WindowRecord] = []

        def callback(hwnd, extra):
            try:
                if not win32gui.IsWindowVisible(hwnd):
                    return True

                title = win32gui.GetWindowText(hwnd) or ""
                if not title.strip() or title in _IGNORED_TITLES:
                    return True

                pid = 0
                process_name, exe = "Window", None
                try:
                    _, pid = win32process.GetWindowThreadProcessId(hwnd)
                    if pid:
                        process_name, exe = _process_info(pid)
                except Exception as e:
                    self.logger.debug(f"[SCAN] process lookup failed for hwnd={hwnd}: {e}")

                if self.is_excluded(process_name):
                    self.logger.debug(f"[SCAN] Excluded window '{title}' from process '{process_name}'")
                    return True

                windows.append(WindowRecord(
                    hwnd=hwnd,
                    title=title,
                    process_name=process_name,
                    executable_path=exe,
                    pid=pid,
                ))
            except Exception as e:
                self.logger.debug(f"[SCAN] skipping hwnd={hwnd}: {e}")
            return True

        win32gui.EnumWindows(callback, None)
        return windows
