"""Tests for the scanner child entry point.

run_scan / handle_request are driven with io.StringIO in-process. One end
to end test runs the real scanner module through WorkerClient.

Run with: python -m pytest tests/test_scanner.py -v
"""

import io
import sys

import pytest

from fakes import CountingProvider, ExplodingProvider, FakeProvider, StaticProvider
from windex.worker.client import ScanStatus, WorkerClient
from windex.worker.protocol import PluginResult, ScanRequest
from windex.worker.scanner import describe_providers, handle_request, load_providers, parse_args, run_scan


def read_lines(out):
    return [PluginResult.from_json(line) for line in out.getvalue().splitlines()]


# ============================================================================
# run_scan
# ============================================================================

class TestRunScan:
    def test_one_line_per_provider(self):
        out = io.StringIO()
        providers = [FakeProvider("Teams", [(1, "Chat")], "ms-teams"), StaticProvider()]

        written = run_scan(ScanRequest(), providers, out)

        results = read_lines(out)
        assert written == 2
        assert [r.plugin_name for r in results] == ["Teams", "Static"]
        assert results[0].windows[0].plugin_name == "Teams"
        assert results[0].windows[0].process_name == "ms-teams"

    def test_disabled_plugins_skipped_case_insensitive(self):
        out = io.StringIO()
        providers = [FakeProvider("Teams"), StaticProvider()]

        run_scan(ScanRequest(disabled_plugins=["teams"]), providers, out)

        assert [r.plugin_name for r in read_lines(out)] == ["Static"]

    def test_plugins_filter(self):
        out = io.StringIO()
        providers = [FakeProvider("Teams"), StaticProvider()]

        run_scan(ScanRequest(plugins=["Static"]), providers, out)

        assert [r.plugin_name for r in read_lines(out)] == ["Static"]

    def test_failing_provider_reports_error_and_scan_continues(self):
        out = io.StringIO()

        run_scan(ScanRequest(), [ExplodingProvider(), StaticProvider()], out)

        failed, ok = read_lines(out)
        assert failed.plugin_name == "Exploding"
        assert failed.error == "Plugin Exploding failed: boom"
        assert failed.windows == []
        assert ok.windows[0].title == "Static window"

    def test_exclusions_passed_to_providers(self):
        provider = FakeProvider("Teams")

        run_scan(ScanRequest(excluded_processes=["chrome"]), [provider], io.StringIO())

        assert provider.exclusions == ["chrome"]
        assert provider.reloads == 1


# ============================================================================
# handle_request
# ============================================================================

class TestHandleRequest:
    def test_ends_with_final_marker(self):
        out = io.StringIO()

        assert handle_request('{"command":"scan"}', [StaticProvider()], out) is True

        results = read_lines(out)
        assert results[-1].is_final is True
        assert len(results) == 2

    def test_bad_request_still_finalizes(self):
        out = io.StringIO()

        assert handle_request("garbage", [StaticProvider()], out) is False

        error, final = read_lines(out)
        assert error.error.startswith("Bad request")
        assert final.is_final is True

    def test_no_request(self):
        out = io.StringIO()

        handle_request(None, [StaticProvider()], out)

        assert read_lines(out)[-1].is_final is True

    def test_unknown_command(self):
        out = io.StringIO()

        assert handle_request('{"command":"reboot"}', [StaticProvider()], out) is False

        error, final = read_lines(out)
        assert error.error == "Unknown command: reboot"
        assert final.is_final

    def test_load_errors_reported_first(self):
        out = io.StringIO()

        handle_request('{"command":"scan"}', [], out, load_errors=["Failed to load x:Y"])

        error, final = read_lines(out)
        assert error.error == "Failed to load x:Y"
        assert final.is_final


# ============================================================================
# PROVIDER LOADING AND ARGUMENTS
# ============================================================================

class TestLoadProviders:
    def test_loads_module_class_spec(self):
        providers, errors = load_providers(["fakes:StaticProvider"])

        assert errors == []
        assert [p.plugin_name for p in providers] == ["Static"]

    @pytest.mark.parametrize("spec", ["no_colon", "missing_module_xyz:Provider", "fakes:NoSuchClass"])
    def test_bad_specs_reported(self, spec):
        providers, errors = load_providers([spec])

        assert providers == []
        assert len(errors) == 1

    def test_non_provider_class_rejected(self):
        providers, errors = load_providers(["fakes:FakeWorkerClient"])

        assert providers == []
        assert "not a WindowProvider" in errors[0]

    def test_parse_args(self):
        args = parse_args(["--debug", "--parent", "123", "--providers", "a:B,c:D"])

        assert args.debug is True
        assert args.parent == 123
        assert args.providers == "a:B,c:D"


class TestDescribeProviders:
    """The parent reads routing data from the class and never builds the provider."""

    @pytest.fixture(autouse=True)
    def reset_count(self):
        CountingProvider.instances = 0

    def test_descriptor_from_class_attributes(self):
        hosted, errors = describe_providers(["fakes:CountingProvider"])

        assert errors == []
        (descriptor,) = hosted
        assert descriptor.plugin_name == "Counting"
        assert descriptor.get_handled_processes() == ["ms-teams", "Teams"]
        assert descriptor.is_out_of_process is True

    def test_provider_never_instantiated(self):
        describe_providers(["fakes:CountingProvider", "fakes:CountingProvider"])

        assert CountingProvider.instances == 0

    def test_loading_in_the_child_does_instantiate(self):
        load_providers(["fakes:CountingProvider"])

        assert CountingProvider.instances == 1

    @pytest.mark.parametrize("spec", [
        "no_colon",
        "missing_module_xyz:Provider",
        "fakes:NoSuchClass",
        "fakes:UnnamedProvider",
        "fakes:FakeWorkerClient",
    ])
    def test_bad_specs_reported(self, spec):
        hosted, errors = describe_providers([spec])

        assert hosted == []
        assert len(errors) == 1
        assert spec in errors[0]

    def test_good_specs_survive_bad_ones(self):
        hosted, errors = describe_providers(["fakes:NoSuchClass", "fakes:StaticProvider"])

        assert [h.plugin_name for h in hosted] == ["Static"]
        assert [h.get_handled_processes() for h in hosted] == [["static"]]
        assert len(errors) == 1


# ============================================================================
# END TO END
# ============================================================================

class TestScannerProcess:
    def test_real_scanner_process(self):
        """The scanner module answers a real client with one line per provider."""
        command = [
            sys.executable, "-m", "windex.worker.scanner",
            "--providers", "windex.world.native_windows:NativeWindowProvider",
        ]

        with WorkerClient(command=command, timeout_sec=30.0) as client:
            results = list(client.scan_streaming())

        assert [r.plugin_name for r in results] == ["WindowFinder"]
        assert results[0].error is None
        assert client.last_status == ScanStatus.COMPLETED
