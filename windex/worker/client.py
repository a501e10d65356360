"""windex.worker.client

Client for the out-of-process scanner.

Deep scans (UI automation and the like) leak resources into whatever
process runs them, so they run in a child process that exits after each
scan. The client:
- spawns the child with piped stdin/stdout/stderr
- writes one request line and closes stdin
- yields each streamed PluginResult as the caller pulls it
- drains stderr on a separate thread into the log
- kills the child and its descendants on timeout, cancellation or dispose

Usage:
    client = WorkerClient(timeout_sec=10)
    for result in client.scan_streaming({"Teams"}, {"chrome"}):
        ...
    client.dispose()
"""

from __future__ import annotations

import os
import queue
import shutil
import subprocess
import sys
import threading
import time
from enum import Enum
from pathlib import Path
from typing import Iterable, Iterator, List, Optional

import psutil

from windex.core.config import Config
from windex.core.errors import (
    ProtocolDecodeError,
    WorkerDisposedError,
    WorkerNotFoundError,
    WorkerSpawnError,
    WorkerTimeoutError,
)
from windex.core.logger import get_logger
from windex.worker.protocol import PluginResult, ScanRequest
from windex.world.window_record import WindowRecord

# CREATE_NO_WINDOW - prevents a console window popup for the child
_CREATE_NO_WINDOW = 0x08000000

# How often the watchdog checks the deadline and cancel signals
_WATCHDOG_POLL_SEC = 0.05

# Grace period for the child to exit on its own after the final marker
_EXIT_GRACE_SEC = 2.0

# How long teardown waits for the pipe reader threads
_READER_JOIN_SEC = 0.5


class ScanStatus(Enum):
    """Outcome of the most recent scan"""
    IDLE = "idle"
    COMPLETED = "completed"
    NOT_FOUND = "not_found"
    SPAWN_FAILED = "spawn_failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"
    STREAM_CLOSED = "stream_closed"
    DISPOSED = "disposed"


def kill_process_tree(process: subprocess.Popen) -> None:
    """Kill a child process and every process it spawned."""
    try:
        children = psutil.Process(process.pid).children(recursive=True)
    except psutil.NoSuchProcess:
        children = []

    for child in children:
        try:
            child.kill()
        except psutil.NoSuchProcess:
            pass

    try:
        process.kill()
    except OSError:
        pass

    if children:
        psutil.wait_procs(children, timeout=1.0)


class WorkerClient:
    """
    Runs scans in the scanner child process, one at a time.

    The client owns at most one active child. dispose() kills it and is
    safe to call more than once.
    """

    def __init__(
        self,
        command: Optional[List[str]] = None,
        timeout_sec: Optional[float] = None,
        debug: Optional[bool] = None,
    ):
        """
        Args:
            command: Command line of the scanner (default from Config)
            timeout_sec: Hard wall-clock limit per scan (default from Config)
            debug: Pass --debug to the child (default from Config)
        """
        self.command = list(command) if command else Config.get_worker_command()
        self.timeout_sec = Config.WORKER_TIMEOUT_SEC if timeout_sec is None else timeout_sec
        self.debug = Config.WORKER_DEBUG if debug is None else debug
        self.logger = get_logger()
        self.last_status = ScanStatus.IDLE

        self._process_lock = threading.Lock()
        self._active_process: Optional[subprocess.Popen] = None
        self._disposed = False
        self._dispose_event = threading.Event()
        self._not_found_logged = False

        try:
            self._require_worker()
        except WorkerNotFoundError as e:
            self._log_not_found(e)

    @property
    def is_disposed(self) -> bool:
        return self._disposed

    @property
    def active_pid(self) -> Optional[int]:
        with self._process_lock:
            return self._active_process.pid if self._active_process else None

    def worker_exists(self) -> bool:
        """Check that the worker executable can be found"""
        exe = self.command[0]
        if os.sep in exe or (os.altsep and os.altsep in exe):
            return Path(exe).is_file()
        return shutil.which(exe) is not None

    def _require_worker(self) -> None:
        if not self.worker_exists():
            raise WorkerNotFoundError(f"Worker executable not found: {self.command[0]}")

    def _log_not_found(self, error: WorkerNotFoundError) -> None:
        if self._not_found_logged:
            return
        self._not_found_logged = True
        self.logger.warning(f"[WORKER] {error}")

    def _spawn(self, args: List[str]) -> subprocess.Popen:
        """Start the child with all three standard streams piped."""
        creationflags = _CREATE_NO_WINDOW if sys.platform == "win32" else 0
        try:
            return subprocess.Popen(
                args,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
                creationflags=creationflags,
            )
        except (OSError, ValueError) as e:
            raise WorkerSpawnError(f"Failed to start worker {args[0]}: {e}") from e

    def _pump_stdout(self, process: subprocess.Popen, lines: "queue.Queue[Optional[str]]") -> None:
        """Move stdout lines onto the queue; None marks end of stream."""
        try:
            for line in iter(process.stdout.readline, ""):
                lines.put(line)
        except (OSError, ValueError):
            pass
        finally:
            lines.put(None)

    def _drain_stderr(self, process: subprocess.Popen) -> None:
        """Forward the child's stderr to the log, line by line."""
        try:
            for line in process.stderr:
                line = line.rstrip()
                if line:
                    self.logger.debug(f"[WORKER-STDERR] {line}")
        except (OSError, ValueError):
            # Pipe closed underneath us during teardown
            pass

    def scan_streaming(
        self,
        disabled_plugins: Optional[Iterable[str]] = None,
        excluded_processes: Optional[Iterable[str]] = None,
        cancel_event: Optional[threading.Event] = None,
        timeout_sec: Optional[float] = None,
    ) -> Iterator[PluginResult]:
        """
        Run one scan and yield each provider's results as they arrive.

        Nothing is read until the caller pulls the next result, so the
        caller may stop early. On timeout, cancellation or dispose the
        child is killed and no further results are yielded; results
        already yielded stay with the caller. Malformed lines are logged
        and skipped.

        Args:
            disabled_plugins: Plugin names the child should skip
            excluded_processes: Process names owned by other providers
            cancel_event: Set it to abandon the scan
            timeout_sec: Override of the client's timeout for this scan

        Raises:
            WorkerDisposedError: if the client was already disposed
        """
        if self._disposed:
            raise WorkerDisposedError("WorkerClient has been disposed")

        try:
            self._require_worker()
        except WorkerNotFoundError as e:
            self._log_not_found(e)
            self.last_status = ScanStatus.NOT_FOUND
            return

        timeout = self.timeout_sec if timeout_sec is None else timeout_sec
        request = ScanRequest(
            disabled_plugins=sorted(disabled_plugins or []),
            excluded_processes=sorted(excluded_processes or []),
        )

        args = list(self.command)
        if self.debug:
            args.append("--debug")
        args.extend(["--parent", str(os.getpid())])

        try:
            process = self._spawn(args)
        except WorkerSpawnError as e:
            self.logger.log_error("[WORKER] Spawn failed", e)
            self.last_status = ScanStatus.SPAWN_FAILED
            return

        with self._process_lock:
            if self._disposed:
                kill_process_tree(process)
                process.wait()
                self.last_status = ScanStatus.DISPOSED
                return
            self._active_process = process

        start = time.perf_counter()
        self.logger.info(f"[WORKER] Starting streaming worker (pid={process.pid}, timeout={timeout:.1f}s)")

        stop = threading.Event()
        abort: List[ScanStatus] = []

        def aborted() -> bool:
            if abort or self._dispose_event.is_set():
                return True
            return cancel_event is not None and cancel_event.is_set()

        def abort_status() -> ScanStatus:
            if abort:
                return abort[0]
            if cancel_event is not None and cancel_event.is_set():
                return ScanStatus.CANCELLED
            return ScanStatus.DISPOSED

        def watchdog() -> None:
            deadline = time.monotonic() + timeout
            while not stop.wait(_WATCHDOG_POLL_SEC):
                if cancel_event is not None and cancel_event.is_set():
                    abort.append(ScanStatus.CANCELLED)
                elif self._dispose_event.is_set():
                    abort.append(ScanStatus.DISPOSED)
                elif time.monotonic() >= deadline:
                    abort.append(ScanStatus.TIMED_OUT)
                else:
                    continue
                self.logger.warning(f"[WORKER] Scan {abort[0].value}, killing worker pid={process.pid}")
                kill_process_tree(process)
                return

        lines: "queue.Queue[Optional[str]]" = queue.Queue()

        watchdog_thread = threading.Thread(target=watchdog, name="WorkerWatchdog", daemon=True)
        stdout_thread = threading.Thread(
            target=self._pump_stdout, args=(process, lines), name="WorkerStdout", daemon=True
        )
        stderr_thread = threading.Thread(
            target=self._drain_stderr, args=(process,), name="WorkerStderr", daemon=True
        )
        watchdog_thread.start()
        stdout_thread.start()
        stderr_thread.start()

        status: Optional[ScanStatus] = None
        try:
            try:
                process.stdin.write(request.to_json() + "\n")
                process.stdin.flush()
            except OSError as e:
                self.logger.warning(f"[WORKER] Could not send request: {e}")
            finally:
                try:
                    process.stdin.close()
                except OSError:
                    pass

            # A process that escaped the tree kill may hold stdout open, so
            # the wait for the next line must never outlast an abort.
            while not aborted():
                try:
                    line = lines.get(timeout=_WATCHDOG_POLL_SEC)
                except queue.Empty:
                    continue
                if line is None:
                    break

                try:
                    result = PluginResult.from_json(line)
                except ProtocolDecodeError as e:
                    self.logger.warning(f"[WORKER] Failed to parse streaming line: {e}")
                    continue

                if result is None:
                    continue

                if result.is_final:
                    self.logger.debug("[WORKER] Received final marker")
                    status = ScanStatus.COMPLETED
                    break

                self.logger.debug(
                    f"[WORKER] Received {len(result.windows)} windows from {result.plugin_name}"
                )
                if aborted():
                    break
                yield result

            if status is None:
                if aborted():
                    status = abort_status()
                    if status == ScanStatus.TIMED_OUT:
                        self.logger.log_error(
                            "[WORKER] Keeping partial results",
                            WorkerTimeoutError(f"No final marker within {timeout:.1f}s"),
                        )
                else:
                    status = ScanStatus.STREAM_CLOSED
                    self.logger.info("[WORKER] Worker output ended before the final marker")

        except GeneratorExit:
            status = ScanStatus.CANCELLED
            raise

        finally:
            stop.set()
            with self._process_lock:
                self._active_process = None

            self._finish_process(process, graceful=(status == ScanStatus.COMPLETED))
            watchdog_thread.join(timeout=1.0)
            for thread, stream in ((stdout_thread, process.stdout), (stderr_thread, process.stderr)):
                thread.join(timeout=_READER_JOIN_SEC)
                if thread.is_alive():
                    # Held open by an escaped descendant; the daemon reader ends with it
                    self.logger.warning(f"[WORKER] {thread.name} pipe still open after worker exit")
                    continue
                try:
                    stream.close()
                except (OSError, ValueError):
                    pass

            self.last_status = status or (abort_status() if aborted() else ScanStatus.CANCELLED)
            elapsed_ms = (time.perf_counter() - start) * 1000
            self.logger.info(
                f"[WORKER] Streaming worker finished in {elapsed_ms:.0f}ms (status={self.last_status.value})"
            )

    def _finish_process(self, process: subprocess.Popen, graceful: bool) -> None:
        """Make sure the child is gone before the scan is considered done."""
        if process.poll() is None:
            if graceful:
                try:
                    process.wait(timeout=_EXIT_GRACE_SEC)
                except subprocess.TimeoutExpired:
                    self.logger.warning(f"[WORKER] Worker pid={process.pid} did not exit, killing")
            if process.poll() is None:
                kill_process_tree(process)
        try:
            process.wait(timeout=5.0)
        except subprocess.TimeoutExpired:
            self.logger.error(f"[WORKER] Worker pid={process.pid} still running after kill")

    def scan(
        self,
        disabled_plugins: Optional[Iterable[str]] = None,
        excluded_processes: Optional[Iterable[str]] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> List[WindowRecord]:
        """
        Run one scan and collect every provider's windows into records.

        Records come back without a source; the caller attaches one.
        """
        if self._disposed:
            raise WorkerDisposedError("WorkerClient has been disposed")

        records: List[WindowRecord] = []
        try:
            for result in self.scan_streaming(disabled_plugins, excluded_processes, cancel_event):
                if result.error:
                    self.logger.warning(f"[WORKER] Plugin {result.plugin_name} error: {result.error}")
                records.extend(result.to_records())
        except Exception as e:
            self.logger.log_error("[WORKER] Scan failed mid-stream", e)
        return records

    def dispose(self) -> None:
        """Cancel any in-flight scan and kill its child. Idempotent."""
        with self._process_lock:
            if self._disposed:
                return
            self._disposed = True
            self._dispose_event.set()

            process = self._active_process
            self._active_process = None
            if process is not None and process.poll() is None:
                self.logger.info(f"[WORKER] Dispose called - killing active worker pid={process.pid}")
                try:
                    kill_process_tree(process)
                except Exception as e:
                    self.logger.log_error("[WORKER] Failed to kill active worker on dispose", e)

    close = dispose

    def __enter__(self) -> "WorkerClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.dispose()


class NullWorkerClient:
    """Worker client that never finds anything (no out-of-process providers)."""

    def __init__(self) -> None:
        self.last_status = ScanStatus.IDLE

    @property
    def is_disposed(self) -> bool:
        return False

    def scan_streaming(self, disabled_plugins=None, excluded_processes=None, cancel_event=None,
                       timeout_sec=None) -> Iterator[PluginResult]:
        return iter(())

    def scan(self, disabled_plugins=None, excluded_processes=None, cancel_event=None) -> List[WindowRecord]:
        return []

    def dispose(self) -> None:
        pass

    close = dispose
