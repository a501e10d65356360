"""
windex.world.window_record

The canonical entity for one discoverable window or tab.

Records compare by identity: two records are the same only if they are the
same object. The reconciler relies on this to keep a matched record stable
across refreshes. A provider may return several records sharing one hwnd
(tabs of one process); they stay distinct records.
"""

from __future__ import annotations

import weakref
from dataclasses import dataclass, field
from typing import Any, Optional


@dataclass(eq=False)
class WindowRecord:
    """One window or tab reported by a provider."""

    hwnd: int
    title: str = ""
    process_name: str = ""
    executable_path: Optional[str] = None
    is_fallback: bool = False
    pid: int = 0
    icon: Any = None
    _source_ref: Optional[weakref.ref] = field(default=None, repr=False)
    _source_name: Optional[str] = field(default=None, repr=False)

    @property
    def source(self) -> Any:
        """The owning provider, or None if unset or already collected."""
        if self._source_ref is None:
            return None
        return self._source_ref()

    @property
    def source_name(self) -> Optional[str]:
        """Plugin name of the owning provider (stable even if the provider is rebuilt)."""
        return self._source_name

    def attach_source(self, provider: Any) -> bool:
        """
        Set the owning provider if none is set yet.

        The source is set once on first observation and never reassigned.

        Returns:
            True if the source was set by this call
        """
        if self._source_name is not None:
            return False
        self._source_ref = weakref.ref(provider)
        self._source_name = provider.plugin_name
        return True

    def __str__(self) -> str:
        return f"{self.title} ({self.process_name})"
