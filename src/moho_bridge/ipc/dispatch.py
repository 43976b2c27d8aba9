"""Request dispatch: allow-list → validation → handler lookup → execution.

The same :class:`Dispatcher` serves three callers: the server loop (one raw
request file at a time), the batch executor (one operation at a time) and
in-process code calling :meth:`Dispatcher.dispatch` directly.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping

from moho_bridge.exceptions import HandlerError, ProtocolError, RPCError
from moho_bridge.ipc import BATCH_METHOD
from moho_bridge.ipc.batch import DEFAULT_MAX_OPERATIONS, BatchExecutor
from moho_bridge.ipc.codes import ErrorCode
from moho_bridge.ipc.protocol import decode_request, encode_error, encode_response
from moho_bridge.ipc.registry import Handler, HandlerRegistry
from moho_bridge.ipc.validator import Validator, default_validator

logger = logging.getLogger(__name__)


class Dispatcher:
    """Gatekeeper between decoded requests and registered handlers.

    Args:
        validator: Allow-list and parameter schemas.
        registry: Registered domain handlers.
    """

    def __init__(self, validator: Validator, registry: HandlerRegistry) -> None:
        self.validator = validator
        self.registry = registry

    def resolve(self, method: str, params: object) -> Handler:
        """Run the gates for *method* and return its handler.

        Raises:
            RPCError: ``METHOD_NOT_FOUND`` if the method is not allowed or has
                no handler, ``INVALID_PARAMS`` if validation fails.
        """
        if not self.validator.is_allowed(method):
            raise RPCError(ErrorCode.METHOD_NOT_FOUND, f"Method not found: {method}")

        valid, message = self.validator.validate(method, params)
        if not valid:
            raise RPCError(ErrorCode.INVALID_PARAMS, message or "Invalid parameters")

        handler = self.registry.lookup(method)
        if handler is None:
            # Allow-list and registry out of sync
            raise RPCError(
                ErrorCode.METHOD_NOT_FOUND, f"No handler registered for: {method}"
            )
        return handler

    def invoke(
        self,
        handler: Handler,
        context: object,
        method: str,
        params: Mapping[str, object],
    ) -> object:
        """Execute *handler*, converting every failure into :class:`RPCError`.

        Raises:
            RPCError: With the handler's own code for :class:`HandlerError`
                (raised or returned), ``INTERNAL_ERROR`` for anything else.
        """
        try:
            result = handler(context, params)
        except HandlerError as exc:
            raise RPCError(exc.code, str(exc), data=exc.data) from exc
        except Exception as exc:
            logger.error("Handler for '%s' raised: %s", method, exc, exc_info=True)
            raise RPCError(
                ErrorCode.INTERNAL_ERROR,
                f"Handler error: {exc}",
                data={"exception": type(exc).__name__},
            ) from exc

        if isinstance(result, HandlerError):
            raise RPCError(result.code, str(result), data=result.data)
        return result

    def dispatch(self, context: object, method: str, params: object = None) -> object:
        """Validate and execute a single call.

        Args:
            context: Host object passed through to the handler.
            method: Method name.
            params: Call parameters (``None`` means no parameters).

        Returns:
            The handler's result.

        Raises:
            RPCError: If any gate rejects the call or the handler fails.
        """
        if params is None:
            params = {}
        handler = self.resolve(method, params)
        return self.invoke(handler, context, method, params)  # type: ignore[arg-type]

    def handle_message(self, payload: bytes | str, context: object) -> bytes:
        """Turn one raw request payload into one raw response payload.

        Never raises for request-level problems: malformed envelopes produce
        ``PARSE_ERROR`` responses with ``id: null``, gate and handler
        failures produce error responses carrying the request id.
        """
        try:
            request = decode_request(payload)
        except ProtocolError as exc:
            logger.warning("Rejected malformed request: %s", exc)
            return encode_error(None, ErrorCode.PARSE_ERROR, str(exc))

        request_id = request["id"]
        method = request["method"]
        logger.debug("Dispatching %s (id=%s)", method, request_id)

        try:
            result = self.dispatch(context, method, request["params"])
        except RPCError as exc:
            return encode_error(request_id, exc.code, exc.error_message, exc.data)

        try:
            return encode_response(request_id, result)
        except (TypeError, ValueError, ProtocolError) as exc:
            logger.error("Result of '%s' is not serializable: %s", method, exc)
            return encode_error(
                request_id,
                ErrorCode.INTERNAL_ERROR,
                f"Handler returned a non-serializable result: {exc}",
            )


def create_dispatcher(
    registry: HandlerRegistry | None = None,
    validator: Validator | None = None,
    *,
    max_batch_operations: int = DEFAULT_MAX_OPERATIONS,
) -> Dispatcher:
    """Build a dispatcher with the batch handler wired in.

    Args:
        registry: Domain handlers. A fresh empty registry when omitted.
        validator: Allow-list and schemas. The MOHO catalogue when omitted.
        max_batch_operations: Upper bound on operations per batch.

    Returns:
        A :class:`Dispatcher` whose registry serves ``batch.execute``.
    """
    dispatcher = Dispatcher(
        validator if validator is not None else default_validator(),
        registry if registry is not None else HandlerRegistry(),
    )
    dispatcher.registry.register(
        BATCH_METHOD,
        BatchExecutor(dispatcher, max_operations=max_batch_operations),
    )
    return dispatcher
