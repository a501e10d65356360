"""windex.worker.runners

Provider execution strategies used by the orchestrator.

- InProcessRunner: fast providers, all at once on a thread pool; each
  provider's batch is handed to the callback as soon as it completes
- WorkerRunner: out-of-process providers through the WorkerClient, on a
  detached thread guarded by its own non-blocking gate

Both report through the same callback: on_results(provider, records).
"""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Set

from windex.core.config import Config, Settings
from windex.core.errors import ProviderFailure, UnroutableResultError
from windex.core.logger import get_logger
from windex.worker.client import WorkerClient
from windex.worker.protocol import PluginResult
from windex.world.providers import WindowProvider
from windex.world.window_record import WindowRecord

ResultCallback = Callable[[WindowProvider, List[WindowRecord]], None]


class InProcessRunner:
    """Runs in-process providers concurrently."""

    def __init__(self, max_workers: Optional[int] = None):
        self.max_workers = max_workers or Config.FAST_PATH_MAX_WORKERS
        self.logger = get_logger()

    def _collect(self, provider: WindowProvider, disabled: Set[str]) -> List[WindowRecord]:
        if provider.plugin_name.lower() in disabled:
            return []
        try:
            return list(provider.get_windows())
        except Exception as e:
            raise ProviderFailure(provider.plugin_name, e) from e

    def run(
        self,
        providers: Sequence[WindowProvider],
        disabled_plugins: Iterable[str],
        on_results: ResultCallback,
    ) -> None:
        """
        Enumerate every provider and report each batch as it completes.

        A provider that raises is reported with an empty batch so its stale
        records are evicted. Disabled providers are reported empty too.
        Returns once every provider has been reported.
        """
        if not providers:
            return

        disabled = {name.lower() for name in disabled_plugins}
        workers = max(1, min(self.max_workers, len(providers)))

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="FastProvider") as pool:
            futures = {pool.submit(self._collect, p, disabled): p for p in providers}
            for future in as_completed(futures):
                provider = futures[future]
                try:
                    results = future.result()
                except ProviderFailure as e:
                    self.logger.log_error(
                        f"[FAST] Provider {provider.plugin_name} failed during get_windows()", e.cause
                    )
                    results = []
                try:
                    on_results(provider, results)
                except Exception as e:
                    self.logger.log_error(f"[FAST] Error merging results for {provider.plugin_name}", e)


def build_process_map(providers: Iterable[WindowProvider]) -> Dict[str, WindowProvider]:
    """Map handled process names (lower-cased) to the first provider claiming them."""
    mapping: Dict[str, WindowProvider] = {}
    for provider in providers:
        try:
            handled = provider.get_handled_processes()
        except Exception as e:
            get_logger().log_error(f"[SLOW] get_handled_processes failed for {provider.plugin_name}", e)
            continue
        for process in handled:
            mapping.setdefault(process.lower(), provider)
    return mapping


def route_result(
    result: PluginResult,
    by_name: Dict[str, WindowProvider],
    by_process: Dict[str, WindowProvider],
) -> WindowProvider:
    """
    Find the provider a streamed result belongs to.

    Exact plugin-name match first (case-insensitive), then any of the
    result's window process names against the handled-process map.

    Raises:
        UnroutableResultError: if no provider matches
    """
    provider = by_name.get(result.plugin_name.lower())
    if provider is not None:
        return provider
    for process in result.process_names():
        provider = by_process.get(process.lower())
        if provider is not None:
            return provider
    raise UnroutableResultError(result.plugin_name)


class WorkerRunner:
    """
    Runs out-of-process providers through the worker client.

    A scan runs on a detached thread. If one is already in flight a new
    request is dropped. Completion is observable only through the
    callback (and wait()).
    """

    def __init__(self, worker_client: WorkerClient):
        self.worker_client = worker_client
        self.logger = get_logger()
        self._gate = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._cancel_event = threading.Event()

    @property
    def is_running(self) -> bool:
        return self._gate.locked()

    def run(
        self,
        providers: Sequence[WindowProvider],
        disabled_plugins: Iterable[str],
        handled_processes: Iterable[str],
        on_results: ResultCallback,
        settings: Optional[Settings] = None,
    ) -> bool:
        """
        Start a streaming scan unless one is already running.

        Returns:
            True if a scan was started, False if it was dropped
        """
        if not self._gate.acquire(blocking=False):
            self.logger.debug("[SLOW] Slow refresh skipped: previous worker scan still in progress")
            return False

        disabled = {name.lower() for name in disabled_plugins}
        worker_disabled = sorted(p.plugin_name for p in providers if p.plugin_name.lower() in disabled)
        excluded = sorted(set(handled_processes))
        timeout = settings.worker_timeout_sec if settings is not None else None
        self._cancel_event = threading.Event()

        try:
            self._thread = threading.Thread(
                target=self._scan,
                args=(list(providers), worker_disabled, excluded, on_results, timeout, self._cancel_event),
                name="SlowRefresh",
                daemon=True,
            )
            self._thread.start()
        except Exception:
            self._gate.release()
            raise
        return True

    def _scan(
        self,
        providers: List[WindowProvider],
        disabled: List[str],
        excluded: List[str],
        on_results: ResultCallback,
        timeout: Optional[float],
        cancel_event: threading.Event,
    ) -> None:
        try:
            by_name = {p.plugin_name.lower(): p for p in providers}
            by_process = build_process_map(providers)

            self.logger.info(f"[SLOW] Starting streaming scan for {len(providers)} out-of-process providers")

            for result in self.worker_client.scan_streaming(disabled, excluded, cancel_event, timeout):
                if result.error:
                    self.logger.warning(f"[SLOW] Plugin {result.plugin_name} error: {result.error}")

                try:
                    provider = route_result(result, by_name, by_process)
                except UnroutableResultError as e:
                    self.logger.warning(f"[SLOW] {e}, dropping {len(result.windows)} windows")
                    continue

                records = result.to_records()
                self.logger.debug(
                    f"[SLOW] Plugin {result.plugin_name} returned {len(records)} windows - processing immediately"
                )
                on_results(provider, records)

            self.logger.info("[SLOW] Streaming scan complete")

        except Exception as e:
            self.logger.log_error("[SLOW] Worker streaming error", e)

        finally:
            self._gate.release()

    def cancel(self) -> None:
        """Abandon the in-flight scan; the client kills the child."""
        self._cancel_event.set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for the detached scan thread to finish.

        Returns:
            True if no scan is running when this returns
        """
        thread = self._thread
        if thread is not None:
            thread.join(timeout)
            return not thread.is_alive()
        return True
