"""
windex.world.icon_service

Bounded cache in front of an icon extractor.

Extraction itself is platform glue and is injected as a callable that
takes an executable path and returns an opaque image handle (or None).
"""

from __future__ import annotations

import threading
from typing import Any, Callable, Dict, Optional

from windex.core.config import Config
from windex.core.logger import get_logger

IconExtractor = Callable[[str], Any]


class IconService:
    """Caches icons by executable path (case-insensitive)."""

    def __init__(self, extractor: IconExtractor, max_cache_size: Optional[int] = None):
        self._extractor = extractor
        self._max_cache_size = max(1, max_cache_size or Config.ICON_CACHE_SIZE)
        self._cache: Dict[str, Any] = {}
        self._lock = threading.Lock()
        self.logger = get_logger()

    def get_icon(self, executable_path: Optional[str]) -> Any:
        """
        Get the icon for an executable, extracting it on first use.

        When the cache is full and a new path arrives the whole cache is
        cleared to bound memory.
        """
        if not executable_path:
            return None

        key = executable_path.lower()
        with self._lock:
            if key in self._cache:
                return self._cache[key]
            if len(self._cache) >= self._max_cache_size:
                self._cache.clear()
                self.logger.debug(f"[ICON] Icon cache limit ({self._max_cache_size}) reached. Cleared cache.")

        try:
            icon = self._extractor(executable_path)
        except Exception as e:
            self.logger.log_error(f"[ICON] Failed to extract icon from {executable_path}", e)
            icon = None

        with self._lock:
            self._cache[key] = icon
        return icon

    def clear_cache(self) -> None:
        with self._lock:
            self._cache.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)
