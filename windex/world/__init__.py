"""
windex.world - window discovery and the shared window list

Modules:
- window_record: the canonical WindowRecord entity
- providers: provider contract and reusable provider bases
- native_windows: fast in-process top-level window enumerator
- reconciler: identity-preserving merge of provider batches
- icon_service: bounded icon cache in front of an extractor
- orchestrator: fast/slow fan-out, last-known-good policy, notifications
  (import from windex.world.orchestrator; it depends on windex.worker)
- poller: background refresh timer
"""

from windex.world.window_record import WindowRecord
from windex.world.providers import CachingWindowProvider, WindowProvider, WorkerHostedProvider
from windex.world.reconciler import WindowReconciler

__all__ = [
    "WindowRecord",
    "WindowProvider",
    "CachingWindowProvider",
    "WorkerHostedProvider",
    "WindowReconciler",
]
