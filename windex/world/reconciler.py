"""
windex.world.reconciler

Identity-preserving merge of a provider's new batch against the records
already known for that provider.

Two indices are kept and always mutated together:
- by hwnd: hwnd -> list of records (several tabs may share one hwnd)
- by provider: plugin name -> set of record ids

A matched record is the same object across refreshes until it is evicted.
Icon population is a separate pass that runs without the lock.
"""

from __future__ import annotations

import threading
import time
from typing import Any, Dict, Iterable, List, Optional, Sequence

from windex.core.logger import get_logger
from windex.world.window_record import WindowRecord


class WindowReconciler:
    """Matches incoming batches to cached records by (hwnd, title)."""

    def __init__(self, icon_service: Optional[Any] = None):
        self.icon_service = icon_service
        self._by_hwnd: Dict[int, List[WindowRecord]] = {}
        # id(record) -> record, so membership is by identity
        self._by_provider: Dict[str, Dict[int, WindowRecord]] = {}
        self._lock = threading.Lock()
        self.logger = get_logger()

    def reconcile(self, incoming: Sequence[WindowRecord], provider: Any) -> List[WindowRecord]:
        """
        Merge a provider's batch into the cache.

        For each incoming record the hwnd bucket is searched for an unclaimed
        record of the same provider: an exact title match wins, otherwise any
        unclaimed record for that hwnd is reused. Unmatched incoming records
        are registered as new. Cached records of this provider that nothing
        matched are evicted.

        Args:
            incoming: The provider's new batch, in display order
            provider: The provider that produced the batch

        Returns:
            The resolved records (matched or new), in incoming order
        """
        key = provider.plugin_name
        start = time.perf_counter()

        with self._lock:
            resolved: List[WindowRecord] = []
            claimed: Dict[int, WindowRecord] = {}
            possibly_stale: Dict[int, WindowRecord] = dict(self._by_provider.get(key, {}))

            for record in incoming:
                if id(record) in claimed:
                    continue

                match = self._find_match(record, key, claimed)

                if match is not None:
                    match.title = record.title
                    match.process_name = record.process_name
                    match.executable_path = record.executable_path or match.executable_path
                    match.is_fallback = record.is_fallback
                    if record.pid:
                        match.pid = record.pid
                    if match.attach_source(provider):
                        self._index_provider(match)

                    resolved.append(match)
                    claimed[id(match)] = match
                    possibly_stale.pop(id(match), None)
                else:
                    record.attach_source(provider)
                    self._add_internal(record)

                    resolved.append(record)
                    claimed[id(record)] = record
                    possibly_stale.pop(id(record), None)

            for stale in possibly_stale.values():
                self._remove_internal(stale)

        if self.logger.is_enabled_for("DEBUG"):
            elapsed_ms = (time.perf_counter() - start) * 1000
            self.logger.debug(
                f"[PERF] Reconciled {len(resolved)} items for {key} in {elapsed_ms:.2f}ms "
                f"(evicted={len(possibly_stale)})"
            )

        return resolved

    def _find_match(
        self,
        record: WindowRecord,
        key: str,
        claimed: Dict[int, WindowRecord],
    ) -> Optional[WindowRecord]:
        """Exact title first, then any free slot for the hwnd. Caller holds the lock."""
        candidates = [
            c for c in self._by_hwnd.get(record.hwnd, ())
            if id(c) not in claimed and c.source_name in (None, key)
        ]
        for candidate in candidates:
            if candidate.title == record.title:
                return candidate
        return candidates[0] if candidates else None

    def add_to_cache(self, record: WindowRecord, provider: Any) -> None:
        """Register a record for a provider in both indices"""
        with self._lock:
            record.attach_source(provider)
            self._add_internal(record)

    def remove_from_cache(self, record: WindowRecord) -> None:
        """Remove a record from both indices"""
        with self._lock:
            self._remove_internal(record)

    def _add_internal(self, record: WindowRecord) -> None:
        bucket = self._by_hwnd.setdefault(record.hwnd, [])
        if not any(r is record for r in bucket):
            bucket.append(record)
        self._index_provider(record)

    def _index_provider(self, record: WindowRecord) -> None:
        if record.source_name is not None:
            self._by_provider.setdefault(record.source_name, {})[id(record)] = record

    def _remove_internal(self, record: WindowRecord) -> None:
        bucket = self._by_hwnd.get(record.hwnd)
        if bucket is not None:
            bucket[:] = [r for r in bucket if r is not record]
            if not bucket:
                del self._by_hwnd[record.hwnd]

        if record.source_name is not None:
            members = self._by_provider.get(record.source_name)
            if members is not None:
                members.pop(id(record), None)
                if not members:
                    del self._by_provider[record.source_name]

    def populate_icons(self, records: Iterable[WindowRecord]) -> int:
        """
        Fill in missing icons from the icon service.

        Runs without the reconcile lock so a slow icon fetch never blocks
        list mutation.

        Returns:
            Number of records that received an icon
        """
        if self.icon_service is None:
            return 0

        filled = 0
        for record in list(records):
            if record.icon is not None or not record.executable_path:
                continue
            icon = self.icon_service.get_icon(record.executable_path)
            if icon is not None:
                record.icon = icon
                filled += 1
        return filled

    @property
    def cache_count(self) -> int:
        """Total entries across both indices (for memory diagnostics)"""
        with self._lock:
            return len(self._by_hwnd) + sum(len(m) for m in self._by_provider.values())

    def hwnd_index_count(self) -> int:
        with self._lock:
            return sum(len(bucket) for bucket in self._by_hwnd.values())

    def provider_index_count(self) -> int:
        with self._lock:
            return sum(len(m) for m in self._by_provider.values())

    def records_for(self, plugin_name: str) -> List[WindowRecord]:
        """Records currently attributed to a provider"""
        with self._lock:
            return list(self._by_provider.get(plugin_name, {}).values())
