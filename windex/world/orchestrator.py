"""
windex.world.orchestrator

Coordinates every provider into one stable, shared window list.

Each refresh:
1. reloads provider settings and recomputes cross-provider exclusions
2. starts the slow path (out-of-process providers) on a detached thread,
   unless a slow scan is still in flight
3. runs the fast path (in-process providers) concurrently, merging each
   provider's batch as soon as it completes

The fast and slow paths have independent non-blocking gates: a busy gate
drops the request instead of queueing it, and a slow scan never delays a
fast refresh. All list and index mutation happens under one lock; icons
are filled in afterwards, outside it.

Usage:
    orchestrator = WindowOrchestrator([NativeWindowProvider(), ...])
    orchestrator.add_listener(lambda provider, structural: redraw())
    orchestrator.refresh({"Teams"})
    windows = orchestrator.current_windows
"""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from windex.core.config import Settings
from windex.core.logger import get_logger
from windex.worker.client import NullWorkerClient, WorkerClient
from windex.worker.runners import InProcessRunner, WorkerRunner
from windex.world.providers import WindowProvider
from windex.world.reconciler import WindowReconciler
from windex.world.window_record import WindowRecord

ListUpdatedCallback = Callable[[WindowProvider, bool], Any]


class WindowOrchestrator:
    """Fans out to all providers and publishes incremental list updates."""

    def __init__(
        self,
        providers: Sequence[WindowProvider],
        reconciler: Optional[WindowReconciler] = None,
        worker_client: Optional[Any] = None,
        icon_service: Optional[Any] = None,
        fast_runner: Optional[InProcessRunner] = None,
        worker_runner: Optional[WorkerRunner] = None,
        settings: Optional[Settings] = None,
    ):
        """
        Args:
            providers: Every provider, in-process and out-of-process
            reconciler: Identity cache (default: new WindowReconciler)
            worker_client: Client for out-of-process providers (default:
                WorkerClient if any provider is out-of-process, else a null client)
            icon_service: Image lookup used by the default reconciler
            fast_runner: Strategy for in-process providers
            worker_runner: Strategy for out-of-process providers
            settings: Default settings snapshot when refresh() gets none
        """
        self.providers: List[WindowProvider] = list(providers)
        self.reconciler = reconciler or WindowReconciler(icon_service)
        if worker_client is None:
            if any(p.is_out_of_process for p in self.providers):
                worker_client = WorkerClient()
            else:
                worker_client = NullWorkerClient()
        self.worker_client = worker_client
        self.fast_runner = fast_runner or InProcessRunner()
        self.worker_runner = worker_runner or WorkerRunner(self.worker_client)
        self.settings = settings or Settings.from_config()
        self.logger = get_logger()

        # Guards _all_windows and every reconcile call
        self._lock = threading.Lock()
        self._fast_gate = threading.Lock()
        self._all_windows: List[WindowRecord] = []

        self._listeners: List[ListUpdatedCallback] = []
        self._listeners_lock = threading.Lock()

        self._icon_pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="IconFill")
        self._closed = False

    # ------------------------------------------------------------------
    # Public surface
    # ------------------------------------------------------------------

    @property
    def current_windows(self) -> Tuple[WindowRecord, ...]:
        """Immutable snapshot of the shared list"""
        with self._lock:
            return tuple(self._all_windows)

    @property
    def is_fast_path_running(self) -> bool:
        return self._fast_gate.locked()

    @property
    def is_slow_path_running(self) -> bool:
        return self.worker_runner.is_running

    @property
    def cache_count(self) -> int:
        """Total reconciler index entries (memory diagnostics)"""
        return self.reconciler.cache_count

    def add_listener(self, callback: ListUpdatedCallback) -> None:
        """Subscribe to list updates: callback(provider, is_structural_change)"""
        with self._listeners_lock:
            self._listeners.append(callback)

    def remove_listener(self, callback: ListUpdatedCallback) -> None:
        with self._listeners_lock:
            if callback in self._listeners:
                self._listeners.remove(callback)

    def refresh(
        self,
        disabled_plugins: Optional[Iterable[str]] = None,
        settings: Optional[Settings] = None,
    ) -> bool:
        """
        Run one refresh cycle.

        Blocks until the fast path has merged every in-process provider.
        The slow path keeps running in the background; its progress is
        visible only through listeners.

        Args:
            disabled_plugins: Plugin names to skip (default: from settings)
            settings: Settings snapshot for this cycle (default: self.settings)

        Returns:
            True if the cycle ran, False if it was dropped because a fast
            refresh was already in flight (or the orchestrator is closed)
        """
        if self._closed:
            self.logger.warning("[ORCH] refresh() called after close()")
            return False

        if not self._fast_gate.acquire(blocking=False):
            self.logger.debug("[ORCH] Fast refresh skipped: fast-path scan already in progress")
            return False

        try:
            settings = settings or self.settings
            if disabled_plugins is None:
                disabled_plugins = settings.disabled_plugins
            disabled = {name.lower() for name in disabled_plugins}

            handled = self._prepare_providers(settings)

            fast = [p for p in self.providers if not p.is_out_of_process]
            slow = [p for p in self.providers if p.is_out_of_process]

            if any(p.plugin_name.lower() not in disabled for p in slow):
                self.worker_runner.run(slow, disabled, handled, self._process_provider_results, settings)

            self.fast_runner.run(fast, disabled, self._process_provider_results)
            return True

        finally:
            self._fast_gate.release()

    def wait_for_slow_path(self, timeout: Optional[float] = None) -> bool:
        """Join the detached slow-path scan. True if it is finished."""
        return self.worker_runner.wait(timeout)

    def close(self) -> None:
        """Cancel the slow path, kill the worker, close providers. Idempotent."""
        if self._closed:
            return
        self._closed = True

        self.worker_runner.cancel()
        try:
            self.worker_client.dispose()
        except Exception as e:
            self.logger.log_error("[ORCH] Error disposing worker client", e)

        for provider in self.providers:
            closer = getattr(provider, "close", None)
            if callable(closer):
                try:
                    closer()
                except Exception as e:
                    self.logger.log_error(f"[ORCH] Error closing provider {provider.plugin_name}", e)

        self._icon_pool.shutdown(wait=False)

    def __enter__(self) -> "WindowOrchestrator":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Cycle internals
    # ------------------------------------------------------------------

    def _prepare_providers(self, settings: Settings) -> List[str]:
        """
        Reload settings on every provider and push the combined exclusions.

        Returns:
            Process names handled by any provider (case-insensitive unique)
        """
        handled: Dict[str, str] = {}
        for provider in self.providers:
            try:
                provider.reload_settings(settings)
                for process in provider.get_handled_processes():
                    handled.setdefault(process.lower(), process)
            except Exception as e:
                self.logger.log_error(f"[ORCH] Error reloading settings for {provider.plugin_name}", e)

        exclusions = list(handled.values())
        for provider in self.providers:
            try:
                provider.set_exclusions(exclusions)
            except Exception as e:
                self.logger.log_error(f"[ORCH] Error setting exclusions for {provider.plugin_name}", e)

        return exclusions

    def _has_existing_real_items(self, plugin_name: str) -> bool:
        """Caller holds the lock."""
        return any(w.source_name == plugin_name and not w.is_fallback for w in self._all_windows)

    def _process_provider_results(self, provider: WindowProvider, results: List[WindowRecord]) -> None:
        """
        Merge one provider's batch into the shared list and notify listeners.

        A batch made only of fallback records does not replace real records
        from an earlier scan (last-known-good).
        """
        key = provider.plugin_name
        reconciled: Optional[List[WindowRecord]] = None

        with self._lock:
            if results and all(r.is_fallback for r in results) and self._has_existing_real_items(key):
                kept = sum(1 for w in self._all_windows if w.source_name == key)
                self.logger.info(
                    f"[LKG] {key}: transient failure (only fallback items received). "
                    f"Preserving {kept} existing items."
                )
                structural = False
            else:
                self._all_windows = [w for w in self._all_windows if w.source_name != key]
                reconciled = self.reconciler.reconcile(results, provider)
                self._all_windows.extend(reconciled)
                structural = True

        self._emit(provider, structural)

        if reconciled and self.reconciler.icon_service is not None and not self._closed:
            try:
                self._icon_pool.submit(self._populate_icons, key, reconciled)
            except RuntimeError:
                # Pool shut down by a concurrent close()
                self.logger.debug(f"[ICON] Skipping icons for {key}: orchestrator closed")

    def _populate_icons(self, plugin_name: str, records: List[WindowRecord]) -> None:
        try:
            self.reconciler.populate_icons(records)
        except Exception as e:
            self.logger.log_error(f"[ICON] Error populating icons for {plugin_name}", e)

    def _emit(self, provider: WindowProvider, structural: bool) -> None:
        with self._listeners_lock:
            listeners = list(self._listeners)
        for callback in listeners:
            try:
                callback(provider, structural)
            except Exception as e:
                self.logger.log_error(f"[ORCH] List-updated listener failed for {provider.plugin_name}", e)
