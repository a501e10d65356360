"""
windex.worker - out-of-process scanning

Modules:
- protocol: NDJSON wire format between parent and scanner child
- client: WorkerClient, spawns the child and streams its results
- runners: fast (in-process) and slow (worker) provider runners
- scanner: the child process entry point
"""

from windex.worker.client import NullWorkerClient, ScanStatus, WorkerClient
from windex.worker.protocol import PluginResult, ScanRequest, WindowResult

__all__ = [
    "WorkerClient",
    "NullWorkerClient",
    "ScanStatus",
    "PluginResult",
    "ScanRequest",
    "WindowResult",
]
