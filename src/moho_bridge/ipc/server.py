"""Cooperative server loop (host side).

The MOHO host has no thread we can own: scripts only run when the host
invokes a callback, in practice the viewport repaint. :class:`ServerLoop`
is therefore a pollable object whose :meth:`ServerLoop.tick` does a small,
bounded amount of work and returns.

Architecture::

    host repaint ──> on_redraw(moho) ──> ServerLoop.tick(moho)
                                            │  bounded scan of req_*.json
                                            │  Dispatcher.handle_message()
                                            └─ write resp_<id>.json, delete req
"""

from __future__ import annotations

import logging
import os
import time
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path

from moho_bridge.ipc.codes import ErrorCode
from moho_bridge.ipc.dispatch import Dispatcher
from moho_bridge.ipc.protocol import (
    REQUEST_FILE_PREFIX,
    RESPONSE_FILE_PREFIX,
    TMP_FILE_SUFFIX,
    ServerStatus,
    encode_error,
    parse_file_id,
    response_path,
    status_path,
    write_atomic,
)

logger = logging.getLogger(__name__)

SERVER_VERSION: str = "0.1.0"
"""Version published in ``status.json``."""

DEFAULT_MAX_REQUESTS_PER_TICK: int = 2
"""Requests processed per tick, keeping each repaint short."""

DEFAULT_SCAN_LIMIT: int = 200
"""Directory entries examined per scan."""

DEFAULT_ORPHAN_TTL: float = 120.0
"""Age in seconds after which an unread response file is garbage."""

DEFAULT_GC_INTERVAL: float = 30.0
"""Minimum seconds between two orphan sweeps."""

_PROBE_FILE_NAME = ".mcp_test"


def _sort_key(file_id: str) -> tuple[int, int | str]:
    """Numeric IDs first, in numeric order; anything else after."""
    if file_id.isdigit():
        return (0, int(file_id))
    return (1, file_id)


class ServerLoop:
    """File-based request server driven by an external tick.

    Args:
        dispatcher: Validates and executes each decoded request.
        ipc_dir: Shared directory.
        max_requests_per_tick: Default cap on requests handled per tick.
        scan_limit: Cap on directory entries examined per scan.
        orphan_ttl: Age after which an unread response file is removed.
        gc_interval: Minimum delay between two orphan sweeps.
        clock: Monotonic clock, injectable for tests.
    """

    def __init__(
        self,
        dispatcher: Dispatcher,
        ipc_dir: Path,
        *,
        max_requests_per_tick: int = DEFAULT_MAX_REQUESTS_PER_TICK,
        scan_limit: int = DEFAULT_SCAN_LIMIT,
        orphan_ttl: float = DEFAULT_ORPHAN_TTL,
        gc_interval: float = DEFAULT_GC_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_requests_per_tick < 1:
            raise ValueError("max_requests_per_tick must be a positive integer")
        if scan_limit < 1:
            raise ValueError("scan_limit must be a positive integer")

        self._dispatcher = dispatcher
        self._ipc_dir = Path(ipc_dir)
        self._max_requests_per_tick = max_requests_per_tick
        self._scan_limit = scan_limit
        self._orphan_ttl = orphan_ttl
        self._gc_interval = gc_interval
        self._clock = clock
        self._running = False
        self._last_gc: float | None = None

    @property
    def ipc_dir(self) -> Path:
        """The shared IPC directory."""
        return self._ipc_dir

    @property
    def is_running(self) -> bool:
        """Whether :meth:`start` succeeded and :meth:`stop` was not called."""
        return self._running

    # ── Lifecycle ─────────────────────────────────────────────────────────

    def start(self) -> None:
        """Prepare the directory, sweep stale files and publish the status.

        Idempotent: a second call on a running server does nothing.

        Raises:
            OSError: If the IPC directory cannot be created or written.
        """
        if self._running:
            return

        self._ipc_dir.mkdir(parents=True, exist_ok=True)

        # Fail early if the directory is not writable
        probe = self._ipc_dir / _PROBE_FILE_NAME
        write_atomic(probe, b"ok")
        probe.unlink(missing_ok=True)

        removed = self._sweep()
        if removed:
            logger.info("Removed %d stale IPC files from a previous session", removed)

        status = ServerStatus(
            running=True,
            pid=os.getpid(),
            version=SERVER_VERSION,
            started_at=datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%SZ"),
        )
        write_atomic(
            status_path(self._ipc_dir),
            status.model_dump_json(by_alias=True).encode("utf-8"),
        )

        self._running = True
        self._last_gc = self._clock()
        logger.info("Server started. IPC directory: %s", self._ipc_dir)

    def stop(self) -> None:
        """Remove the status file and sweep remaining request/response files.

        Idempotent: calling it on a stopped server does nothing.
        """
        if not self._running:
            return

        status_path(self._ipc_dir).unlink(missing_ok=True)
        self._sweep()
        self._running = False
        logger.info("Server stopped")

    def _sweep(self) -> int:
        """Remove every request, response and temp file (full listing)."""
        removed = 0
        try:
            entries = list(os.scandir(self._ipc_dir))
        except FileNotFoundError:
            return 0

        for entry in entries:
            name = entry.name
            if not (
                name.startswith(REQUEST_FILE_PREFIX)
                or name.startswith(RESPONSE_FILE_PREFIX)
            ):
                continue
            try:
                os.unlink(entry.path)
                removed += 1
            except FileNotFoundError:
                pass
            except OSError:
                logger.warning("Failed to remove stale file: %s", entry.path, exc_info=True)
        return removed

    # ── Polling ───────────────────────────────────────────────────────────

    def tick(self, context: object = None, max_requests: int | None = None) -> int:
        """Process up to *max_requests* pending requests.

        Call this from the host callback. Handler failures never escape: each
        consumed request file gets a response file, error-shaped if needed.

        Args:
            context: Host object handed to every handler.
            max_requests: Per-tick cap; the constructor default when omitted.

        Returns:
            Number of request files consumed.
        """
        if not self._running:
            return 0

        cap = self._max_requests_per_tick if max_requests is None else max_requests
        processed = 0
        for file_id, request_file in self._scan_requests():
            if processed >= cap:
                break
            if self._process(file_id, request_file, context):
                processed += 1

        self._maybe_collect_orphans()
        return processed

    def _scan_requests(self) -> list[tuple[str, Path]]:
        """Bounded listing of pending request files, oldest ID first.

        At most ``scan_limit`` directory entries are examined, so the cost of
        one tick stays flat however many files accumulate.
        """
        pending: list[tuple[str, Path]] = []
        try:
            with os.scandir(self._ipc_dir) as it:
                for examined, entry in enumerate(it, start=1):
                    file_id = parse_file_id(entry.name, REQUEST_FILE_PREFIX)
                    if file_id is not None:
                        pending.append((file_id, Path(entry.path)))
                    if examined >= self._scan_limit:
                        break
        except FileNotFoundError:
            logger.warning("IPC directory disappeared: %s", self._ipc_dir)
            return []

        pending.sort(key=lambda item: _sort_key(item[0]))
        return pending

    def _process(self, file_id: str, request_file: Path, context: object) -> bool:
        """Handle one request file; returns ``False`` if it vanished."""
        try:
            payload = request_file.read_bytes()
        except FileNotFoundError:
            # Abandoned by a client that timed out
            logger.debug("Request file vanished before read: %s", request_file)
            return False
        except OSError as exc:
            logger.error("Cannot read request file %s: %s", request_file, exc)
            response = encode_error(
                self._fallback_id(file_id),
                ErrorCode.INTERNAL_ERROR,
                f"Cannot read request file: {exc}",
            )
        else:
            response = self._respond(file_id, payload, context)

        try:
            write_atomic(response_path(self._ipc_dir, file_id), response)
        except OSError:
            logger.error("Failed to write response for %s", request_file, exc_info=True)

        request_file.unlink(missing_ok=True)
        logger.debug("Processed request file %s", request_file.name)
        return True

    def _respond(self, file_id: str, payload: bytes, context: object) -> bytes:
        try:
            return self._dispatcher.handle_message(payload, context)
        except Exception as exc:
            logger.error("Dispatcher crashed on request %s", file_id, exc_info=True)
            return encode_error(
                self._fallback_id(file_id),
                ErrorCode.INTERNAL_ERROR,
                f"Server crash: {exc}",
            )

    @staticmethod
    def _fallback_id(file_id: str) -> int | None:
        return int(file_id) if file_id.isdigit() else None

    # ── Orphan collection ─────────────────────────────────────────────────

    def _maybe_collect_orphans(self) -> None:
        now = self._clock()
        if self._last_gc is not None and now - self._last_gc < self._gc_interval:
            return
        self._last_gc = now
        removed = self.collect_orphans()
        if removed:
            logger.info("Removed %d orphaned response files", removed)

    def collect_orphans(self) -> int:
        """Remove response and temp files older than ``orphan_ttl``.

        Responses nobody reads belong to clients that timed out. The scan is
        bounded by ``scan_limit`` like a regular tick.

        Returns:
            Number of files removed.
        """
        cutoff = time.time() - self._orphan_ttl
        removed = 0
        try:
            with os.scandir(self._ipc_dir) as it:
                for examined, entry in enumerate(it, start=1):
                    if examined > self._scan_limit:
                        break
                    name = entry.name
                    is_orphan_candidate = (
                        parse_file_id(name, RESPONSE_FILE_PREFIX) is not None
                        or name.endswith(TMP_FILE_SUFFIX)
                    )
                    if not is_orphan_candidate:
                        continue
                    try:
                        if entry.stat().st_mtime < cutoff:
                            os.unlink(entry.path)
                            removed += 1
                    except FileNotFoundError:
                        pass
        except FileNotFoundError:
            return 0
        return removed


def make_redraw_hook(server: ServerLoop) -> Callable[..., int]:
    """Wrap :meth:`ServerLoop.tick` for the host's repaint callback.

    The returned callable takes the host context as first argument (extra
    callback arguments such as the view are ignored) and never raises, so a
    failure cannot break the host's drawing.
    """

    def on_redraw(context: object = None, *_: object) -> int:
        try:
            return server.tick(context)
        except Exception:
            logger.error("Poll error", exc_info=True)
            return 0

    return on_redraw
