"""windex.worker.scanner

Entry point of the scanner child process.

    python -m windex.worker.scanner [--debug] [--parent PID] [--providers mod:Class,...]

Reads one request line from stdin, runs each configured out-of-process
provider in turn and writes one PluginResult line per provider to stdout
as soon as it finishes, then the final marker. stdout carries only the
protocol; logs go to stderr, which the parent forwards.

When the process exits, whatever the provider scans leaked goes with it.
"""

from __future__ import annotations

import argparse
import importlib
import os
import sys
import threading
import time
from typing import Iterable, List, Optional, Sequence, TextIO, Tuple, Type

import psutil

from windex.core.config import Config, Settings
from windex.core.errors import ProtocolDecodeError
from windex.core.logger import get_logger, init_logger
from windex.worker.protocol import SCAN_COMMAND, PluginResult, ScanRequest, WindowResult
from windex.world.providers import WindowProvider, WorkerHostedProvider


def _resolve_class(spec: str) -> Type[WindowProvider]:
    """Import the provider class named by a "package.module:ClassName" spec."""
    module_name, _, class_name = spec.partition(":")
    if not module_name or not class_name:
        raise ValueError(f"Invalid provider spec {spec!r} (expected module:Class)")
    provider_class = getattr(importlib.import_module(module_name), class_name)
    if not (isinstance(provider_class, type) and issubclass(provider_class, WindowProvider)):
        raise TypeError(f"{class_name} is not a WindowProvider")
    return provider_class


def load_providers(specs: Iterable[str]) -> Tuple[List[WindowProvider], List[str]]:
    """
    Instantiate providers from "package.module:ClassName" specs.

    Returns:
        (providers, errors) - a spec that fails to load is reported in errors
    """
    logger = get_logger()
    providers: List[WindowProvider] = []
    errors: List[str] = []

    for spec in specs:
        try:
            provider = _resolve_class(spec)()
        except Exception as e:
            logger.error(f"[SCANNER] Failed to load {spec}: {e}")
            errors.append(f"Failed to load {spec}: {e}")
            continue
        logger.debug(f"[SCANNER] Loaded provider {provider.plugin_name} from {spec}")
        providers.append(provider)

    return providers, errors


def describe_providers(specs: Iterable[str]) -> Tuple[List[WorkerHostedProvider], List[str]]:
    """
    Build parent-side descriptors for the providers the child will load.

    Only the class attributes (plugin_name, handled_processes) are read;
    nothing is instantiated, so provider resources stay in the child.

    Returns:
        (descriptors, errors)
    """
    descriptors: List[WorkerHostedProvider] = []
    errors: List[str] = []

    for spec in specs:
        try:
            descriptors.append(WorkerHostedProvider.from_class(_resolve_class(spec)))
        except Exception as e:
            errors.append(f"Failed to describe {spec}: {e}")

    return descriptors, errors


def _write(out: TextIO, result: PluginResult) -> None:
    out.write(result.to_json() + "\n")
    out.flush()


def run_scan(
    request: ScanRequest,
    providers: Sequence[WindowProvider],
    out: TextIO,
    settings: Optional[Settings] = None,
) -> int:
    """
    Run every enabled provider and stream its results.

    A provider that raises produces a line with an error and no windows;
    the scan continues with the next provider.

    Returns:
        Number of provider result lines written (final marker excluded)
    """
    logger = get_logger()
    disabled = {name.lower() for name in request.disabled_plugins}
    wanted = {name.lower() for name in request.plugins} if request.plugins is not None else None
    written = 0

    for provider in providers:
        name = provider.plugin_name
        if name.lower() in disabled or (wanted is not None and name.lower() not in wanted):
            logger.debug(f"[SCANNER] Skipping disabled plugin: {name}")
            continue

        start = time.perf_counter()
        try:
            provider.reload_settings(settings)
            provider.set_exclusions(request.excluded_processes)
            windows = [WindowResult.from_record(w, name) for w in provider.get_windows()]
            result = PluginResult(plugin_name=name, windows=windows)
        except Exception as e:
            logger.error(f"[SCANNER] Plugin {name} failed: {e}")
            result = PluginResult(plugin_name=name, error=f"Plugin {name} failed: {e}")

        _write(out, result)
        written += 1
        logger.debug(
            f"[SCANNER] Plugin {name} found {len(result.windows)} windows "
            f"in {(time.perf_counter() - start) * 1000:.0f}ms"
        )

    return written


def handle_request(
    line: Optional[str],
    providers: Sequence[WindowProvider],
    out: TextIO,
    load_errors: Sequence[str] = (),
    settings: Optional[Settings] = None,
) -> bool:
    """
    Answer one request line. Always ends with the final marker.

    Returns:
        True if a scan ran
    """
    ran = False
    for error in load_errors:
        _write(out, PluginResult(error=error))

    try:
        request = ScanRequest.from_json(line or "")
        if request.command.lower() != SCAN_COMMAND:
            _write(out, PluginResult(error=f"Unknown command: {request.command}"))
        else:
            run_scan(request, providers, out, settings)
            ran = True
    except ProtocolDecodeError as e:
        get_logger().error(f"[SCANNER] Bad request: {e}")
        _write(out, PluginResult(error=f"Bad request: {e}"))

    _write(out, PluginResult.final())
    return ran


def start_parent_watchdog(parent_pid: int, interval_sec: float = 1.0) -> threading.Thread:
    """Exit this process if the parent goes away, so scans never outlive it."""
    def watch() -> None:
        while True:
            time.sleep(interval_sec)
            if not psutil.pid_exists(parent_pid):
                get_logger().warning(f"[SCANNER] Parent {parent_pid} gone, exiting")
                os._exit(1)

    thread = threading.Thread(target=watch, name="ParentWatchdog", daemon=True)
    thread.start()
    return thread


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Windex out-of-process window scanner")
    parser.add_argument("--debug", action="store_true", help="Verbose logging to stderr")
    parser.add_argument("--parent", type=int, default=None, help="Exit when this PID goes away")
    parser.add_argument(
        "--providers",
        type=str,
        default=None,
        help="Comma separated module:Class provider specs (default: WINDEX_WORKER_PROVIDERS)",
    )
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    init_logger("DEBUG" if args.debug else "WARNING", use_stderr=True)
    logger = get_logger()

    # The parent decodes UTF-8 regardless of the platform's default
    for stream in (sys.stdin, sys.stdout):
        if hasattr(stream, "reconfigure"):
            stream.reconfigure(encoding="utf-8")

    if args.parent:
        start_parent_watchdog(args.parent)

    specs = Config.WORKER_PROVIDERS
    if args.providers is not None:
        specs = [s.strip() for s in args.providers.split(",") if s.strip()]

    logger.debug(f"[SCANNER] Started (pid={os.getpid()}, parent={args.parent})")
    providers, load_errors = load_providers(specs)

    line = sys.stdin.readline()
    handle_request(line, providers, sys.stdout, load_errors, Settings.from_config())
    return 0


if __name__ == "__main__":
    sys.exit(main())
