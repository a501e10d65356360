#!/usr/bin/env python3
"""
Windex - window discovery engine.
Entry point for running refreshes from the command line.

Usage:
    python run.py                           # One refresh, print the window list
    python run.py --watch                   # Keep polling and reprint on changes
    python run.py --disable WindowFinder    # Skip a provider
    python run.py --worker-provider mypkg.teams:TeamsProvider
"""
import argparse
import sys
import threading

from rich.console import Console
from rich.table import Table

from windex.core.config import Config, Settings
from windex.core.logger import get_logger, init_logger
from windex.worker.client import WorkerClient
from windex.worker.scanner import describe_providers
from windex.world.native_windows import NativeWindowProvider
from windex.world.orchestrator import WindowOrchestrator
from windex.world.poller import BackgroundPoller


def parse_args():
    """Parse command line arguments"""
    parser = argparse.ArgumentParser(
        description="Windex - discover open windows across providers",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python run.py                          # One refresh
  python run.py --watch --interval 5     # Poll every 5 seconds
  python run.py --timeout 3              # Worker scan timeout
        """
    )

    parser.add_argument(
        "--watch",
        action="store_true",
        help="Keep polling and print the list after every update"
    )

    parser.add_argument(
        "--interval",
        type=int,
        default=Config.POLLING_INTERVAL_SEC,
        help=f"Polling interval in seconds (default: {Config.POLLING_INTERVAL_SEC})"
    )

    parser.add_argument(
        "--disable",
        action="append",
        default=[],
        metavar="PLUGIN",
        help="Disable a provider by plugin name (repeatable)"
    )

    parser.add_argument(
        "--worker-provider",
        action="append",
        default=[],
        metavar="MODULE:CLASS",
        help="Out-of-process provider spec handed to the scanner (repeatable)"
    )

    parser.add_argument(
        "--timeout",
        type=float,
        default=Config.WORKER_TIMEOUT_SEC,
        help=f"Worker scan timeout in seconds (default: {Config.WORKER_TIMEOUT_SEC})"
    )

    parser.add_argument(
        "--log-level",
        type=str,
        default=Config.LOG_LEVEL,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help=f"Logging level (default: {Config.LOG_LEVEL})"
    )

    parser.add_argument(
        "--quiet",
        action="store_true",
        help="Hide poll ticks, worker stderr and timing lines"
    )

    return parser.parse_args()


def print_windows(console: Console, orchestrator: WindowOrchestrator) -> None:
    """Print the current window list as a table"""
    table = Table(title="Open windows")
    table.add_column("hwnd", justify="right")
    table.add_column("Title")
    table.add_column("Process")
    table.add_column("Source")
    for record in orchestrator.current_windows:
        title = record.title + (" (fallback)" if record.is_fallback else "")
        table.add_row(str(record.hwnd), title, record.process_name, record.source_name or "")
    console.print(table)


def main():
    """Main entry point"""
    args = parse_args()
    init_logger(args.log_level, quiet_mode=args.quiet or Config.QUIET_MODE)
    logger = get_logger()
    console = Console()

    specs = args.worker_provider or Config.WORKER_PROVIDERS
    worker_command = None
    if specs and not Config.WORKER_COMMAND:
        worker_command = Config.get_worker_command() + ["--providers", ",".join(specs)]

    settings = Settings(
        disabled_plugins=frozenset(args.disable),
        excluded_processes=frozenset(Config.EXCLUDED_PROCESSES),
        worker_timeout_sec=args.timeout,
        polling_enabled=True,
        polling_interval_sec=max(1, args.interval),
        icon_cache_size=Config.ICON_CACHE_SIZE,
    )

    providers = [NativeWindowProvider(settings)]
    # Parent side only keeps routing data; the scan itself runs in the child
    hosted, load_errors = describe_providers(specs)
    for error in load_errors:
        logger.error(f"[MAIN] {error}")
    providers.extend(hosted)

    client = WorkerClient(command=worker_command, timeout_sec=args.timeout) if specs else None

    with WindowOrchestrator(providers, worker_client=client, settings=settings) as orchestrator:
        if not args.watch:
            orchestrator.refresh()
            orchestrator.wait_for_slow_path(timeout=args.timeout + 5)
            print_windows(console, orchestrator)
            return 0

        changed = threading.Event()
        orchestrator.add_listener(lambda provider, structural: structural and changed.set())

        poller = BackgroundPoller(orchestrator.refresh, settings)
        orchestrator.refresh()
        poller.start()
        logger.info("[MAIN] Watching for window changes (Ctrl+C to stop)")
        try:
            while True:
                if changed.wait(timeout=1.0):
                    changed.clear()
                    print_windows(console, orchestrator)
        except KeyboardInterrupt:
            logger.info("[MAIN] Stopping")
        finally:
            poller.stop()
    return 0


if __name__ == "__main__":
    sys.exit(main())
