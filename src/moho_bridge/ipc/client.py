"""Client channel: the caller-facing half of the file IPC.

Protocol, per call:

1. Allocate the next correlation ID.
2. Write ``req_<id>.json`` atomically (``.tmp`` then rename).
3. Poll for ``resp_<id>.json`` every ``poll_interval`` seconds.
4. Read and delete the response, then return its result or raise its error.
5. On timeout, delete the request file (if the server has not consumed it
   yet) and raise :class:`RequestTimeoutError`.
"""

from __future__ import annotations

import itertools
import logging
import threading
from collections.abc import Mapping, Sequence

import anyio
from pydantic import ValidationError

from moho_bridge.config import BridgeConfig
from moho_bridge.exceptions import (
    NotConnectedError,
    ProtocolError,
    RequestTimeoutError,
    RPCError,
    ServerNotRunningError,
)
from moho_bridge.ipc import BATCH_METHOD
from moho_bridge.ipc.keepalive import KeepAlive, default_keep_alive
from moho_bridge.ipc.protocol import (
    TMP_FILE_SUFFIX,
    ServerStatus,
    decode_response,
    encode_request,
    request_path,
    response_path,
    status_path,
)

logger = logging.getLogger(__name__)


class ClientChannel:
    """Sends requests to the MOHO server through the shared directory.

    One channel may be shared by concurrent tasks: ID allocation is atomic,
    and each call only ever touches the files of its own ID.

    Args:
        config: Directory, polling and timeout settings. Built from the
            environment when omitted.
        keep_alive: Started on connect and stopped on disconnect so the
            host keeps repainting, and thus ticking, while idle. Defaults to
            the platform helper from :func:`default_keep_alive`.
    """

    def __init__(
        self,
        config: BridgeConfig | None = None,
        *,
        keep_alive: KeepAlive | None = None,
    ) -> None:
        self._config = config if config is not None else BridgeConfig.from_env()
        self._keep_alive = (
            keep_alive if keep_alive is not None else default_keep_alive(self._config.ipc_dir)
        )
        self._ids = itertools.count(1)
        self._id_lock = threading.Lock()
        self._connected = False

    @property
    def config(self) -> BridgeConfig:
        """Settings used by this channel."""
        return self._config

    @property
    def is_connected(self) -> bool:
        """Whether :meth:`connect` succeeded since the last disconnect."""
        return self._connected

    # ── Connection lifecycle ──────────────────────────────────────────────

    async def connect(self) -> None:
        """Verify the IPC directory and that the server reports running.

        Creates the directory when missing. Safe to call repeatedly.

        Raises:
            ServerNotRunningError: If ``status.json`` is missing, unreadable
                or reports ``running=false``.
        """
        if self._connected:
            return

        ipc_dir = anyio.Path(self._config.ipc_dir)
        await ipc_dir.mkdir(parents=True, exist_ok=True)

        status_file = anyio.Path(status_path(self._config.ipc_dir))
        try:
            raw_status = await status_file.read_bytes()
        except FileNotFoundError as exc:
            raise ServerNotRunningError(
                f"MOHO MCP server is not running. No status file found at "
                f"{status_file}. Start the MohoMCP Server from MOHO's Scripts "
                "menu first."
            ) from exc

        try:
            status = ServerStatus.model_validate_json(raw_status)
        except ValidationError as exc:
            raise ServerNotRunningError(
                f"Unreadable status file at {status_file}: {exc}"
            ) from exc

        if not status.running:
            raise ServerNotRunningError(
                "MOHO MCP server is not running (status.running=false)"
            )

        self._connected = True
        self._keep_alive.start()
        logger.info("Connected to MOHO via file IPC at %s", self._config.ipc_dir)

    def disconnect(self) -> None:
        """Forget the connection and stop the keep-alive.

        The next call requires :meth:`connect`.
        """
        self._connected = False
        self._keep_alive.stop()

    # ── Request / response ────────────────────────────────────────────────

    def _next_id(self) -> int:
        with self._id_lock:
            return next(self._ids)

    async def call(
        self,
        method: str,
        params: Mapping[str, object] | None = None,
        *,
        timeout: float | None = None,
    ) -> object:
        """Send one request and wait for its response.

        Args:
            method: Method name, e.g. ``"layer.getProperties"``.
            params: Method parameters.
            timeout: Seconds to wait; the config's timeout class for
                *method* when omitted.

        Returns:
            The ``result`` member of the response.

        Raises:
            NotConnectedError: If :meth:`connect` has not succeeded.
            RPCError: If the server answered with an error.
            RequestTimeoutError: If no response appeared in time.
            ProtocolError: If the response file is not a valid envelope.
        """
        if not self._connected:
            raise NotConnectedError(
                "Not connected to MOHO. Is the MOHO application running with "
                "the MCP plugin loaded?"
            )

        request_id = self._next_id()
        if timeout is None:
            timeout = self._config.timeout_for(method, params)

        payload = encode_request(request_id, method, params)
        req_path = anyio.Path(request_path(self._config.ipc_dir, request_id))
        resp_path = anyio.Path(response_path(self._config.ipc_dir, request_id))

        tmp_path = anyio.Path(f"{req_path}{TMP_FILE_SUFFIX}")
        await tmp_path.write_bytes(payload)
        await tmp_path.replace(req_path)
        logger.debug("Wrote request %s (id=%d)", method, request_id)

        content: bytes | None = None
        with anyio.move_on_after(timeout):
            content = await self._wait_for_response(resp_path)

        if content is None:
            await self._discard(req_path)
            logger.warning(
                "Request %s (id=%d) timed out after %ss", method, request_id, timeout
            )
            raise RequestTimeoutError(method, request_id, timeout)

        response = decode_response(content)
        response_id = response["id"]
        # A null id is only legitimate on errors the server could not correlate.
        if response_id != request_id and not (response_id is None and "error" in response):
            raise ProtocolError(
                f"Response id {response_id} does not match request id {request_id}"
            )
        if "error" in response:
            error = response["error"]
            raise RPCError(error["code"], error["message"], data=error.get("data"))
        return response.get("result")

    async def _wait_for_response(self, resp_path: anyio.Path) -> bytes:
        """Poll until *resp_path* exists, then read and delete it."""
        while True:
            try:
                content = await resp_path.read_bytes()
            except FileNotFoundError:
                await anyio.sleep(self._config.poll_interval)
                continue
            # The response is consumed; a timeout firing now must not lose it.
            with anyio.CancelScope(shield=True):
                await self._discard(resp_path)
            return content

    @staticmethod
    async def _discard(path: anyio.Path) -> None:
        try:
            await path.unlink()
        except FileNotFoundError:
            pass

    async def batch(
        self,
        operations: Sequence[object],
        *,
        stop_on_error: object = False,
        timeout: float | None = None,
    ) -> dict[str, object]:
        """Run ``batch.execute`` with *operations* in one round trip.

        Each operation is ``{"method": str, "params": dict}``. Entries and
        *stop_on_error* are sent as given; the server rejects malformed ones
        per entry or for the whole batch. The timeout grows with the number
        of operations unless given explicitly.

        Returns:
            ``{"results": [...], "summary": {...}}``.

        Raises:
            ValueError: If *operations* is empty or exceeds ``max_batch_size``.
        """
        if not operations:
            raise ValueError("operations must not be empty")
        if len(operations) > self._config.max_batch_size:
            raise ValueError(
                f"Too many operations: {len(operations)} "
                f"(max {self._config.max_batch_size})"
            )

        params: dict[str, object] = {
            "operations": list(operations),
            "stopOnError": stop_on_error,
        }
        result = await self.call(BATCH_METHOD, params, timeout=timeout)
        assert isinstance(result, dict)  # noqa: S101
        return result
