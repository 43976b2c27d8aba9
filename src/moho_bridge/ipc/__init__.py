"""File-based IPC between an external controller and the MOHO host.

The host has no network interface; its only hook is a cooperative callback
fired on viewport repaints. Both sides therefore exchange JSON-RPC 2.0
envelopes through a shared directory.

Architecture::

    ClientChannel ── req_<id>.json ──>  shared dir  ──>  ServerLoop.tick()
                  <── resp_<id>.json ──             <──  Dispatcher / BatchExecutor
"""

from moho_bridge.ipc.codes import ErrorCode

BATCH_METHOD: str = "batch.execute"
"""Method name reserved for batch dispatch."""

SCREENSHOT_METHOD: str = "document.screenshot"
"""Heavyweight capture method, excluded from batches."""

__all__ = [
    "BATCH_METHOD",
    "SCREENSHOT_METHOD",
    "ErrorCode",
]
