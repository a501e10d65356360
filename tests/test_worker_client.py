"""Tests for WorkerClient against real child processes.

Each test spawns a small Python script as the "scanner" with
sys.executable -c, so streaming, timeouts, cancellation and process-tree
kills are exercised for real. The client appends --parent PID to the
command line; the scripts ignore their arguments.

Run with: python -m pytest tests/test_worker_client.py -v
"""

import json
import sys
import textwrap
import threading
import time

import psutil
import pytest

from fakes import FakeProvider, RecordingLogger, wait_until
from windex.core.errors import WorkerDisposedError
from windex.worker.client import NullWorkerClient, ScanStatus, WorkerClient
from windex.worker.runners import WorkerRunner


# ============================================================================
# CHILD SCRIPTS
# ============================================================================

HEADER = textwrap.dedent("""
    import json, os, subprocess, sys, time

    def emit(obj):
        sys.stdout.write((obj if isinstance(obj, str) else json.dumps(obj)) + "\\n")
        sys.stdout.flush()

    def result(name, windows=(), error=None):
        emit({"pluginName": name, "windows": list(windows), "error": error, "isFinal": False})

    def window(hwnd, title, process="app"):
        return {"hwnd": hwnd, "title": title, "processName": process,
                "executablePath": None, "pluginName": "", "isFallback": False}

    def final():
        emit({"pluginName": "", "windows": [], "error": None, "isFinal": True})

    request = sys.stdin.readline()
""")

STREAMING = """
result("Chrome", [window(555, "Tab A", "chrome"), window(555, "Tab B", "chrome")])
result("Teams", [window(9, "Chat", "ms-teams")])
final()
"""

ECHO_REQUEST = """
result("Echo", error=request.strip())
final()
"""

MALFORMED = """
emit("this is not json")
emit("")
emit("null")
emit('{"pluginName": "Bad", "windows": "nope"}')
result("Good", [window(1, "Fine")])
final()
"""

EOF_BEFORE_FINAL = """
result("Partial", [window(1, "Only")])
"""

LINES_AFTER_FINAL = """
result("First", [window(1, "One")])
final()
result("Ignored", [window(2, "Two")])
"""

PARTIAL_THEN_HANG = """
result(str(os.getpid()), [window(1, "Before hang")])
time.sleep(60)
"""

HANG = """
time.sleep(60)
"""

GRANDCHILD_THEN_HANG = """
child = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(60)"])
result(str(child.pid))
time.sleep(60)
"""

STDERR = """
sys.stderr.write("hello from child\\n")
sys.stderr.flush()
final()
"""

SLOW_STREAM = """
for i in range(50):
    result("Tick%d" % i, [window(i, "tick")])
    time.sleep(0.1)
final()
"""

# The launcher exits at once, so the sleeper is reparented out of the worker's
# tree while still holding the inherited stdout pipe.
ORPHAN_HOLDS_STDOUT = """
launcher = (
    "import subprocess, sys\\n"
    "p = subprocess.Popen([sys.executable, '-c', 'import time; time.sleep(30)'], stderr=subprocess.DEVNULL)\\n"
    "sys.stderr.write(str(p.pid))\\n"
)
helper = subprocess.run([sys.executable, "-c", launcher], stderr=subprocess.PIPE, text=True)
result(helper.stderr.strip())
time.sleep(60)
"""


def command(body):
    return [sys.executable, "-c", HEADER + textwrap.dedent(body)]


def gone(pid):
    """True if the process has exited (a zombie awaiting reaping counts)."""
    try:
        return psutil.Process(pid).status() == psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return True


@pytest.fixture
def make_client():
    clients = []

    def factory(body, timeout_sec=10.0):
        client = WorkerClient(command=command(body), timeout_sec=timeout_sec, debug=False)
        clients.append(client)
        return client

    yield factory
    for client in clients:
        client.dispose()


# ============================================================================
# STREAMING
# ============================================================================

class TestStreaming:
    """Results arrive one line at a time, in order, until the final marker."""

    def test_results_streamed_in_order(self, make_client):
        client = make_client(STREAMING)

        results = list(client.scan_streaming())

        assert [r.plugin_name for r in results] == ["Chrome", "Teams"]
        assert [w.title for w in results[0].windows] == ["Tab A", "Tab B"]
        assert results[0].windows[0].hwnd == 555
        assert client.last_status == ScanStatus.COMPLETED
        assert client.active_pid is None

    def test_request_written_to_stdin(self, make_client):
        client = make_client(ECHO_REQUEST)

        (echo,) = list(client.scan_streaming({"Teams", "Outlook"}, {"chrome"}))

        request = json.loads(echo.error)
        assert request == {
            "command": "scan",
            "disabledPlugins": ["Outlook", "Teams"],
            "excludedProcesses": ["chrome"],
        }

    def test_malformed_lines_skipped(self, make_client):
        client = make_client(MALFORMED)

        results = list(client.scan_streaming())

        assert [r.plugin_name for r in results] == ["Good"]
        assert client.last_status == ScanStatus.COMPLETED

    def test_eof_before_final_marker(self, make_client):
        client = make_client(EOF_BEFORE_FINAL)

        results = list(client.scan_streaming())

        assert [r.plugin_name for r in results] == ["Partial"]
        assert client.last_status == ScanStatus.STREAM_CLOSED

    def test_lines_after_final_marker_ignored(self, make_client):
        client = make_client(LINES_AFTER_FINAL)

        results = list(client.scan_streaming())

        assert [r.plugin_name for r in results] == ["First"]

    def test_scan_collects_records(self, make_client):
        client = make_client(STREAMING)

        records = client.scan()

        assert [r.title for r in records] == ["Tab A", "Tab B", "Chat"]
        assert all(r.source is None for r in records)

    def test_stderr_forwarded_to_log(self, make_client):
        client = make_client(STDERR)
        client.logger = RecordingLogger()

        list(client.scan_streaming())

        assert client.logger.contains("[WORKER-STDERR] hello from child", "DEBUG")

    def test_consecutive_scans_use_fresh_children(self, make_client):
        client = make_client(STREAMING)

        first = list(client.scan_streaming())
        second = list(client.scan_streaming())

        assert len(first) == len(second) == 2


# ============================================================================
# TIMEOUT, CANCELLATION, DISPOSAL
# ============================================================================

class TestTermination:
    """The child is always gone before a scan is considered finished."""

    def test_timeout_kills_child_and_keeps_partial_results(self, make_client):
        client = make_client(PARTIAL_THEN_HANG, timeout_sec=2.0)

        start = time.monotonic()
        results = list(client.scan_streaming())
        elapsed = time.monotonic() - start

        assert [r.windows[0].title for r in results] == ["Before hang"]
        assert client.last_status == ScanStatus.TIMED_OUT
        assert elapsed < 6.0
        assert gone(int(results[0].plugin_name))

    def test_timeout_without_output(self, make_client):
        client = make_client(HANG, timeout_sec=0.5)

        assert list(client.scan_streaming()) == []
        assert client.last_status == ScanStatus.TIMED_OUT

    def test_per_scan_timeout_override(self, make_client):
        client = make_client(HANG, timeout_sec=30.0)

        start = time.monotonic()
        list(client.scan_streaming(timeout_sec=0.5))

        assert time.monotonic() - start < 5.0
        assert client.last_status == ScanStatus.TIMED_OUT

    def test_descendants_killed(self, make_client):
        client = make_client(GRANDCHILD_THEN_HANG, timeout_sec=3.0)

        results = list(client.scan_streaming())

        grandchild = int(results[0].plugin_name)
        assert wait_until(lambda: gone(grandchild), timeout=5.0)

    def test_cancel_event_stops_scan(self, make_client):
        client = make_client(SLOW_STREAM)
        cancel = threading.Event()

        results = []
        start = time.monotonic()
        for result in client.scan_streaming(cancel_event=cancel):
            results.append(result)
            cancel.set()

        assert time.monotonic() - start < 5.0
        assert len(results) == 1
        assert client.last_status == ScanStatus.CANCELLED

    def test_abandoned_generator_kills_child(self, make_client):
        client = make_client(PARTIAL_THEN_HANG)

        stream = client.scan_streaming()
        first = next(stream)
        stream.close()

        assert gone(int(first.plugin_name))
        assert client.last_status == ScanStatus.CANCELLED
        assert client.active_pid is None

    def test_dispose_during_scan(self, make_client):
        client = make_client(PARTIAL_THEN_HANG)

        results = []
        for result in client.scan_streaming():
            results.append(result)
            threading.Thread(target=client.dispose).start()

        assert len(results) == 1
        assert gone(int(results[0].plugin_name))
        assert client.last_status == ScanStatus.DISPOSED
        assert client.is_disposed is True

    def test_dispose_twice_is_noop(self, make_client):
        client = make_client(STREAMING)

        client.dispose()
        client.dispose()

        assert client.is_disposed is True

    def test_scan_after_dispose_raises(self, make_client):
        client = make_client(STREAMING)
        client.dispose()

        with pytest.raises(WorkerDisposedError):
            list(client.scan_streaming())
        with pytest.raises(WorkerDisposedError):
            client.scan()

    def test_context_manager_disposes(self):
        with WorkerClient(command=command(STREAMING)) as client:
            assert len(list(client.scan_streaming())) == 2
        assert client.is_disposed is True


# ============================================================================
# MISSING OR BROKEN WORKER
# ============================================================================

class TestWorkerUnavailable:
    def test_missing_worker_yields_nothing(self, tmp_path):
        client = WorkerClient(command=[str(tmp_path / "no-such-worker")])
        client.logger = RecordingLogger()

        assert client.worker_exists() is False
        assert list(client.scan_streaming()) == []
        assert list(client.scan_streaming()) == []
        assert client.last_status == ScanStatus.NOT_FOUND

    def test_missing_worker_logged_once(self, tmp_path):
        client = WorkerClient(command=[str(tmp_path / "no-such-worker")])
        logger = RecordingLogger()
        client.logger = logger

        list(client.scan_streaming())
        list(client.scan_streaming())

        assert not logger.contains("not found")

    def test_spawn_failure(self, tmp_path):
        not_executable = tmp_path / "worker.txt"
        not_executable.write_text("plain text")

        client = WorkerClient(command=[str(not_executable)])

        assert list(client.scan_streaming()) == []
        assert client.last_status == ScanStatus.SPAWN_FAILED

    def test_null_client(self):
        client = NullWorkerClient()

        assert list(client.scan_streaming({"Teams"}, {"chrome"})) == []
        assert client.scan() == []
        client.dispose()
        client.dispose()


# ============================================================================
# ESCAPED DESCENDANTS
# ============================================================================

@pytest.fixture
def orphans():
    pids = []
    yield pids
    for pid in pids:
        try:
            psutil.Process(pid).kill()
        except psutil.NoSuchProcess:
            pass


class TestEscapedDescendants:
    """A process outside the killed tree keeping stdout open cannot stall a scan."""

    def test_timeout_returns_while_orphan_holds_stdout(self, make_client, orphans):
        client = make_client(ORPHAN_HOLDS_STDOUT, timeout_sec=2.0)

        start = time.monotonic()
        results = list(client.scan_streaming())
        elapsed = time.monotonic() - start
        orphans.extend(int(r.plugin_name) for r in results)

        assert len(results) == 1
        assert not gone(orphans[0])
        assert client.last_status == ScanStatus.TIMED_OUT
        assert elapsed < 6.0

    def test_dispose_returns_while_orphan_holds_stdout(self, make_client, orphans):
        client = make_client(ORPHAN_HOLDS_STDOUT)

        start = time.monotonic()
        for result in client.scan_streaming():
            orphans.append(int(result.plugin_name))
            threading.Thread(target=client.dispose).start()

        assert time.monotonic() - start < 6.0
        assert client.last_status == ScanStatus.DISPOSED

    def test_gate_free_for_next_scan(self, make_client, orphans):
        client = make_client(ORPHAN_HOLDS_STDOUT, timeout_sec=2.0)
        runner = WorkerRunner(client)
        runner.run([FakeProvider("Teams")], set(), [], lambda provider, records: None)

        finished = runner.wait(8.0)
        orphans.extend(_sleeper_pids())

        assert finished
        assert runner.is_running is False


def _sleeper_pids():
    """Leftover sleepers started by ORPHAN_HOLDS_STDOUT."""
    pids = []
    for proc in psutil.process_iter(["cmdline"]):
        cmdline = proc.info.get("cmdline") or []
        if "import time; time.sleep(30)" in cmdline:
            pids.append(proc.pid)
    return pids
