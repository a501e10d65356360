"""windex.worker.protocol

Wire format between the parent and the scanner child process.

Request (one line on the child's stdin, then stdin is closed):
    {"command":"scan","disabledPlugins":[...],"excludedProcesses":[...]}

Response (newline-delimited JSON on the child's stdout), one line per
completed provider scan, then a final marker:
    {"pluginName":"Chrome","windows":[{"hwnd":555,"title":"Tab A",
     "processName":"chrome","executablePath":null,"pluginName":"Chrome",
     "isFallback":false}],"error":null,"isFinal":false}
    {"pluginName":"","windows":[],"error":null,"isFinal":true}

Field names are camelCase.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from windex.core.errors import ProtocolDecodeError
from windex.world.window_record import WindowRecord

SCAN_COMMAND = "scan"


def _dumps(payload: Dict[str, Any]) -> str:
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False)


def _loads_object(line: str) -> Optional[Dict[str, Any]]:
    """Parse one line into a dict. Blank lines and JSON null give None."""
    if not line.strip():
        return None
    try:
        data = json.loads(line)
    except json.JSONDecodeError as e:
        raise ProtocolDecodeError(f"Invalid JSON: {e.msg} (pos {e.pos})", line) from e
    if data is None:
        return None
    if not isinstance(data, dict):
        raise ProtocolDecodeError(f"Expected a JSON object, got {type(data).__name__}", line)
    return data


def _opt_str(data: Dict[str, Any], key: str, line: str) -> Optional[str]:
    value = data.get(key)
    if value is not None and not isinstance(value, str):
        raise ProtocolDecodeError(f"Field {key!r} must be a string", line)
    return value


def _str_list(data: Dict[str, Any], key: str, line: str) -> Optional[List[str]]:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ProtocolDecodeError(f"Field {key!r} must be a list of strings", line)
    return list(value)


@dataclass
class ScanRequest:
    """Request written to the child's stdin"""
    command: str = SCAN_COMMAND
    disabled_plugins: List[str] = field(default_factory=list)
    excluded_processes: List[str] = field(default_factory=list)
    plugins: Optional[List[str]] = None

    def to_json(self) -> str:
        payload: Dict[str, Any] = {
            "command": self.command,
            "disabledPlugins": list(self.disabled_plugins),
            "excludedProcesses": list(self.excluded_processes),
        }
        if self.plugins is not None:
            payload["plugins"] = list(self.plugins)
        return _dumps(payload)

    @classmethod
    def from_json(cls, line: str) -> "ScanRequest":
        data = _loads_object(line)
        if data is None:
            raise ProtocolDecodeError("No request received", line)
        command = _opt_str(data, "command", line)
        return cls(
            command=command if command is not None else SCAN_COMMAND,
            disabled_plugins=_str_list(data, "disabledPlugins", line) or [],
            excluded_processes=_str_list(data, "excludedProcesses", line) or [],
            plugins=_str_list(data, "plugins", line),
        )


@dataclass
class WindowResult:
    """One window as reported by the child"""
    hwnd: int
    title: str = ""
    process_name: str = ""
    executable_path: Optional[str] = None
    plugin_name: str = ""
    is_fallback: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hwnd": self.hwnd,
            "title": self.title,
            "processName": self.process_name,
            "executablePath": self.executable_path,
            "pluginName": self.plugin_name,
            "isFallback": self.is_fallback,
        }

    @classmethod
    def from_dict(cls, data: Any, line: str = "") -> "WindowResult":
        if not isinstance(data, dict):
            raise ProtocolDecodeError("Window entry must be a JSON object", line)
        hwnd = data.get("hwnd", 0)
        if isinstance(hwnd, bool) or not isinstance(hwnd, int):
            raise ProtocolDecodeError("Field 'hwnd' must be an integer", line)
        is_fallback = data.get("isFallback", False)
        if not isinstance(is_fallback, bool):
            raise ProtocolDecodeError("Field 'isFallback' must be a boolean", line)
        return cls(
            hwnd=hwnd,
            title=_opt_str(data, "title", line) or "",
            process_name=_opt_str(data, "processName", line) or "",
            executable_path=_opt_str(data, "executablePath", line),
            plugin_name=_opt_str(data, "pluginName", line) or "",
            is_fallback=is_fallback,
        )

    @classmethod
    def from_record(cls, record: WindowRecord, plugin_name: str) -> "WindowResult":
        return cls(
            hwnd=record.hwnd,
            title=record.title,
            process_name=record.process_name,
            executable_path=record.executable_path,
            plugin_name=plugin_name,
            is_fallback=record.is_fallback,
        )

    def to_record(self) -> WindowRecord:
        """Build a fresh record; the source is attached later by the orchestrator"""
        return WindowRecord(
            hwnd=self.hwnd,
            title=self.title,
            process_name=self.process_name,
            executable_path=self.executable_path,
            is_fallback=self.is_fallback,
        )


@dataclass
class PluginResult:
    """One streamed response line: a provider's results, or the final marker"""
    plugin_name: str = ""
    windows: List[WindowResult] = field(default_factory=list)
    error: Optional[str] = None
    is_final: bool = False

    @classmethod
    def final(cls) -> "PluginResult":
        return cls(is_final=True)

    def to_json(self) -> str:
        return _dumps({
            "pluginName": self.plugin_name,
            "windows": [w.to_dict() for w in self.windows],
            "error": self.error,
            "isFinal": self.is_final,
        })

    @classmethod
    def from_json(cls, line: str) -> Optional["PluginResult"]:
        """
        Decode one response line.

        Returns:
            The decoded result, or None for a blank or null line

        Raises:
            ProtocolDecodeError: if the line is malformed
        """
        data = _loads_object(line)
        if data is None:
            return None

        raw_windows = data.get("windows")
        if raw_windows is None:
            raw_windows = []
        if not isinstance(raw_windows, list):
            raise ProtocolDecodeError("Field 'windows' must be a list", line)

        is_final = data.get("isFinal", False)
        if not isinstance(is_final, bool):
            raise ProtocolDecodeError("Field 'isFinal' must be a boolean", line)

        return cls(
            plugin_name=_opt_str(data, "pluginName", line) or "",
            windows=[WindowResult.from_dict(w, line) for w in raw_windows],
            error=_opt_str(data, "error", line),
            is_final=is_final,
        )

    def to_records(self) -> List[WindowRecord]:
        return [w.to_record() for w in self.windows]

    def process_names(self) -> List[str]:
        return [w.process_name for w in self.windows if w.process_name]
