"""
Logging module for Windex.
Simple, clean logging with rich formatting.
"""
import os
import re
from datetime import datetime
from typing import List, Optional

from rich.console import Console


# Patterns to filter out in quiet mode (poll ticks, child stderr, perf timings)
QUIET_MODE_FILTERS: List[str] = [
    r"\[POLL\]",                # Background poller ticks
    r"\[WORKER-STDERR\]",       # Forwarded scanner stderr
    r"\[PERF\]",                # Reconcile timings
    r"\[SCAN\]",                # Per-provider scan chatter
    r"Received final marker",   # Worker protocol end
    r"refresh skipped",         # Drop-on-busy notices
]

# Compiled patterns for efficient matching
_quiet_mode_patterns: Optional[List[re.Pattern]] = None


def _get_quiet_filters() -> List[re.Pattern]:
    """Get compiled regex patterns for quiet mode filtering"""
    global _quiet_mode_patterns
    if _quiet_mode_patterns is None:
        _quiet_mode_patterns = [re.compile(p, re.IGNORECASE) for p in QUIET_MODE_FILTERS]
    return _quiet_mode_patterns


def _should_filter_quiet(message: str) -> bool:
    """Check if message should be filtered in quiet mode"""
    for pattern in _get_quiet_filters():
        if pattern.search(message):
            return True
    return False


class LogLevel:
    """Log level constants"""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class Logger:
    """Simple logger with timestamps and rich formatting"""

    def __init__(self, level: str = "INFO", quiet_mode: bool = False, use_stderr: bool = False):
        self.level = level.upper()
        self.quiet_mode = quiet_mode
        self.level_priority = {
            "DEBUG": 0,
            "INFO": 1,
            "WARNING": 2,
            "ERROR": 3,
            "CRITICAL": 4
        }
        # The scanner child keeps stdout for the wire protocol
        self.console = Console(stderr=use_stderr)

    def _should_log(self, level: str) -> bool:
        """Check if message should be logged based on level"""
        return self.level_priority.get(level, 0) >= self.level_priority.get(self.level, 0)

    def _should_filter_message(self, message: str) -> bool:
        """Check if message should be filtered (quiet mode)"""
        if not self.quiet_mode:
            return False
        return _should_filter_quiet(message)

    def _format_message(self, level: str, message: str) -> str:
        """Format log message with timestamp"""
        timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S.%f")[:-3]
        return f"[{timestamp}] [{level:8}] {message}"

    def _get_level_color(self, level: str) -> str:
        """Get color for log level"""
        colors = {
            "DEBUG": "dim cyan",
            "INFO": "green",
            "WARNING": "yellow",
            "ERROR": "red",
            "CRITICAL": "bold red"
        }
        return colors.get(level, "white")

    def is_enabled_for(self, level: str) -> bool:
        """True if a message at this level would be emitted"""
        return self._should_log(level)

    def log(self, level: str, message: str) -> None:
        """Log a message at the specified level"""
        if not self._should_log(level):
            return

        # Filter out noisy messages in quiet mode
        if self._should_filter_message(message):
            return

        formatted = self._format_message(level, message)
        # markup/highlight off: window titles may contain [brackets]
        self.console.print(formatted, style=self._get_level_color(level), markup=False, highlight=False)

    def debug(self, message: str) -> None:
        """Log debug message"""
        self.log(LogLevel.DEBUG, message)

    def info(self, message: str) -> None:
        """Log info message"""
        self.log(LogLevel.INFO, message)

    def warning(self, message: str) -> None:
        """Log warning message"""
        self.log(LogLevel.WARNING, message)

    def error(self, message: str) -> None:
        """Log error message"""
        self.log(LogLevel.ERROR, message)

    def critical(self, message: str) -> None:
        """Log critical message"""
        self.log(LogLevel.CRITICAL, message)

    def log_error(self, message: str, cause: BaseException) -> None:
        """Log an error together with the exception that caused it"""
        self.log(LogLevel.ERROR, f"{message}: {type(cause).__name__}: {cause}")


# Global logger instance
_global_logger: Optional[Logger] = None


def init_logger(level: str = "INFO", quiet_mode: bool = False, use_stderr: bool = False) -> Logger:
    """
    Initialize global logger

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        quiet_mode: If True, filter out noisy messages like poll ticks
        use_stderr: If True, write to stderr instead of stdout
    """
    global _global_logger
    _global_logger = Logger(level, quiet_mode=quiet_mode, use_stderr=use_stderr)
    return _global_logger


def get_logger() -> Logger:
    """Get global logger instance"""
    global _global_logger
    if _global_logger is None:
        # Check environment for quiet mode
        quiet = os.environ.get("WINDEX_QUIET_MODE", "false").lower() in ("true", "1", "yes")
        level = os.environ.get("WINDEX_LOG_LEVEL", "INFO")
        _global_logger = Logger(level, quiet_mode=quiet)
    return _global_logger


def set_quiet_mode(enabled: bool) -> None:
    """Enable or disable quiet mode on the global logger"""
    global _global_logger
    if _global_logger:
        _global_logger.quiet_mode = enabled
