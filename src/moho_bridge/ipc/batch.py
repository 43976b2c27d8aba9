"""Batch execution: many operations in a single IPC round trip.

Each file round trip costs a few hundred milliseconds of polling latency, so
``batch.execute`` collapses N calls into one request. Operations run in
order, each isolated from the others: a failing operation produces an error
entry and the batch carries on (or, with ``stopOnError``, marks the rest as
skipped). Nothing is rolled back.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field

from moho_bridge.exceptions import HandlerError, RPCError
from moho_bridge.ipc import BATCH_METHOD, SCREENSHOT_METHOD
from moho_bridge.ipc.codes import ErrorCode
from moho_bridge.ipc.protocol import RPCErrorPayload

if TYPE_CHECKING:
    from moho_bridge.ipc.dispatch import Dispatcher

logger = logging.getLogger(__name__)

DEFAULT_MAX_OPERATIONS: int = 50
"""Maximum number of operations in a single batch."""

SKIPPED_MESSAGE: str = "Skipped (stopOnError)"
"""Fixed message of operations skipped after an earlier failure."""

DISALLOWED_IN_BATCH: frozenset[str] = frozenset({SCREENSHOT_METHOD, BATCH_METHOD})
"""Methods rejected inside a batch: full capture is too slow, nesting is banned."""


class BatchOperationResult(BaseModel):
    """Outcome of one operation, at its 1-based position."""

    index: int = Field(ge=1)
    success: bool
    result: object = None
    error: RPCErrorPayload | None = None


class BatchSummary(BaseModel):
    """Counters for a whole batch.

    ``executed`` equals ``succeeded + failed``; skipped operations are not
    executed.
    """

    total: int = Field(ge=0)
    executed: int = Field(default=0, ge=0)
    succeeded: int = Field(default=0, ge=0)
    failed: int = Field(default=0, ge=0)
    stopped_early: bool = Field(default=False, alias="stoppedEarly")

    model_config = {"populate_by_name": True}


def _error_payload(code: int, message: str, data: object = None) -> RPCErrorPayload:
    payload: RPCErrorPayload = {"code": int(code), "message": message}
    if data is not None:
        payload["data"] = data
    return payload


class BatchExecutor:
    """Handler for ``batch.execute``.

    Params: ``{"operations": [{"method": str, "params"?: dict}, ...],
    "stopOnError"?: bool}``.

    Returns ``{"results": [...], "summary": {...}}``.

    Args:
        dispatcher: Runs the allow-list, validation and handler for each
            operation, exactly as for a standalone request.
        max_operations: Upper bound on ``len(operations)``.
    """

    def __init__(
        self,
        dispatcher: Dispatcher,
        *,
        max_operations: int = DEFAULT_MAX_OPERATIONS,
    ) -> None:
        if max_operations < 1:
            raise ValueError("max_operations must be a positive integer")
        self._dispatcher = dispatcher
        self.max_operations = max_operations

    def __call__(self, context: object, params: Mapping[str, object]) -> dict[str, object]:
        """Execute the batch described by *params*.

        Raises:
            HandlerError: ``INVALID_PARAMS`` for batch-level structural
                problems (operations not a non-empty list, too many
                operations, non-boolean ``stopOnError``). No operation runs.
        """
        operations = params.get("operations")
        stop_on_error = params.get("stopOnError", False)

        if not isinstance(operations, list) or not operations:
            raise HandlerError(
                "operations must be a non-empty array", code=ErrorCode.INVALID_PARAMS
            )
        if len(operations) > self.max_operations:
            raise HandlerError(
                f"Too many operations: {len(operations)} (max {self.max_operations})",
                code=ErrorCode.INVALID_PARAMS,
            )
        if stop_on_error is None:
            stop_on_error = False
        if not isinstance(stop_on_error, bool):
            raise HandlerError(
                "stopOnError must be a boolean", code=ErrorCode.INVALID_PARAMS
            )

        results: list[BatchOperationResult] = []
        summary = BatchSummary(total=len(operations))

        for index, operation in enumerate(operations, start=1):
            if summary.stopped_early:
                results.append(
                    BatchOperationResult(
                        index=index,
                        success=False,
                        error=_error_payload(ErrorCode.SKIPPED, SKIPPED_MESSAGE),
                    )
                )
                continue

            outcome = self._run_operation(context, index, operation)
            results.append(outcome)
            summary.executed += 1
            if outcome.success:
                summary.succeeded += 1
            else:
                summary.failed += 1
                if stop_on_error:
                    summary.stopped_early = True

        logger.debug(
            "Batch finished: total=%d, executed=%d, succeeded=%d, failed=%d, "
            "stopped_early=%s",
            summary.total,
            summary.executed,
            summary.succeeded,
            summary.failed,
            summary.stopped_early,
        )

        return {
            "results": [r.model_dump(exclude_unset=True) for r in results],
            "summary": summary.model_dump(by_alias=True),
        }

    def _run_operation(
        self, context: object, index: int, operation: object
    ) -> BatchOperationResult:
        """Validate and execute one operation, never raising."""
        if not isinstance(operation, Mapping) or not isinstance(
            operation.get("method"), str
        ):
            return BatchOperationResult(
                index=index,
                success=False,
                error=_error_payload(
                    ErrorCode.INVALID_REQUEST,
                    f"Invalid operation at index {index}: must have a string 'method'",
                ),
            )

        method: str = operation["method"]
        op_params = operation.get("params")

        if method in DISALLOWED_IN_BATCH:
            return BatchOperationResult(
                index=index,
                success=False,
                error=_error_payload(
                    ErrorCode.METHOD_NOT_FOUND, f"Method not allowed in batch: {method}"
                ),
            )

        try:
            result = self._dispatcher.dispatch(context, method, op_params)
        except RPCError as exc:
            return BatchOperationResult(
                index=index,
                success=False,
                error=_error_payload(exc.code, exc.error_message, exc.data),
            )

        # Every entry must be JSON-encodable; the batch response is written as one file.
        try:
            json.dumps(result)
        except (TypeError, ValueError) as exc:
            logger.warning("Batch operation %d (%s) returned %r", index, method, result)
            return BatchOperationResult(
                index=index,
                success=False,
                error=_error_payload(
                    ErrorCode.INTERNAL_ERROR,
                    f"Handler returned a non-serializable result: {exc}",
                ),
            )

        return BatchOperationResult(index=index, success=True, result=result)
