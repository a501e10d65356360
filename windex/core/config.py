"""
Configuration module for Windex.
Centralizes all settings with environment variable overrides.
"""
import os
import sys
from dataclasses import dataclass, field
from typing import FrozenSet, Iterable, List, Optional


def _env_bool(name: str, default: str) -> bool:
    return os.environ.get(name, default).lower() in ("true", "1", "yes")


class Config:
    """Central configuration for Windex"""

    # Logging
    LOG_LEVEL: str = os.environ.get("WINDEX_LOG_LEVEL", "INFO")

    # Quiet Mode - hides poll ticks, worker stderr and perf lines
    QUIET_MODE: bool = _env_bool("WINDEX_QUIET_MODE", "false")

    # Out-of-process worker
    WORKER_TIMEOUT_SEC: float = float(os.environ.get("WINDEX_WORKER_TIMEOUT_SEC", "10.0"))
    WORKER_COMMAND: str = os.environ.get("WINDEX_WORKER_COMMAND", "")
    WORKER_PROVIDERS: List[str] = [
        p.strip() for p in os.environ.get("WINDEX_WORKER_PROVIDERS", "").split(",") if p.strip()
    ]
    WORKER_DEBUG: bool = _env_bool("WINDEX_WORKER_DEBUG", "false")

    # Background polling
    POLLING_ENABLED: bool = _env_bool("WINDEX_POLLING_ENABLED", "true")
    POLLING_INTERVAL_SEC: int = max(1, int(os.environ.get("WINDEX_POLLING_INTERVAL_SEC", "30")))

    # Processes the native enumerator never lists
    EXCLUDED_PROCESSES: List[str] = [
        p.strip() for p in os.environ.get("WINDEX_EXCLUDED_PROCESSES", "windex").split(",") if p.strip()
    ]

    ICON_CACHE_SIZE: int = int(os.environ.get("WINDEX_ICON_CACHE_SIZE", "200"))

    # Thread pool size for in-process providers
    FAST_PATH_MAX_WORKERS: int = max(1, int(os.environ.get("WINDEX_FAST_PATH_MAX_WORKERS", "8")))

    @classmethod
    def get_worker_command(cls) -> List[str]:
        """
        Get the command line used to spawn the scanner child process.
        Returns the WINDEX_WORKER_COMMAND override if set, otherwise runs
        the bundled scanner module with the current interpreter.
        """
        if cls.WORKER_COMMAND.strip():
            return cls.WORKER_COMMAND.split()
        return [sys.executable, "-m", "windex.worker.scanner"]


@dataclass(frozen=True)
class Settings:
    """
    Immutable settings snapshot passed into each refresh.

    Derived values (like the worker timeout) are read from the snapshot at
    call time; nothing subscribes to settings changes.
    """
    disabled_plugins: FrozenSet[str] = field(default_factory=frozenset)
    excluded_processes: FrozenSet[str] = field(default_factory=frozenset)
    worker_timeout_sec: float = 10.0
    polling_enabled: bool = True
    polling_interval_sec: int = 30
    icon_cache_size: int = 200

    @classmethod
    def from_config(cls, disabled_plugins: Optional[Iterable[str]] = None) -> "Settings":
        """Build a snapshot from the current Config values"""
        return cls(
            disabled_plugins=frozenset(disabled_plugins or ()),
            excluded_processes=frozenset(Config.EXCLUDED_PROCESSES),
            worker_timeout_sec=Config.WORKER_TIMEOUT_SEC,
            polling_enabled=Config.POLLING_ENABLED,
            polling_interval_sec=Config.POLLING_INTERVAL_SEC,
            icon_cache_size=Config.ICON_CACHE_SIZE,
        )

    def is_disabled(self, plugin_name: str) -> bool:
        """Case-insensitive check against the disabled plugin names"""
        lowered = plugin_name.lower()
        return any(name.lower() == lowered for name in self.disabled_plugins)
