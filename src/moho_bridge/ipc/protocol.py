"""IPC protocol: envelope types, constants, codec and file naming.

This module defines the wire protocol shared by the client channel and the
cooperative server loop. Each message is a single JSON-RPC 2.0 object stored
in its own file inside the shared IPC directory.

Directory layout::

    status.json        written by the server while it is running
    req_<id>.json      one per in-flight request (written by the client)
    resp_<id>.json     one per completed request (written by the server)

Files are always written to ``<name>.tmp`` first and renamed into place, so
a reader never observes a partially written message.
"""

from __future__ import annotations

import json
import os
from collections.abc import Mapping
from pathlib import Path
from typing import TypedDict

from pydantic import BaseModel, Field

from moho_bridge.exceptions import ProtocolError

# ── Constants ──────────────────────────────────────────────────────────────

JSONRPC_VERSION: str = "2.0"
"""Version tag carried by every envelope."""

MAX_MESSAGE_SIZE: int = 10_485_760
"""Maximum encoded message size in bytes (10 MB)."""

REQUEST_FILE_PREFIX: str = "req_"
"""Prefix for request file names."""

RESPONSE_FILE_PREFIX: str = "resp_"
"""Prefix for response file names."""

MESSAGE_FILE_SUFFIX: str = ".json"
"""Suffix for request/response file names."""

TMP_FILE_SUFFIX: str = ".tmp"
"""Suffix appended to files while they are being written."""

STATUS_FILE_NAME: str = "status.json"
"""Name of the server status file."""

_PREVIEW_LENGTH = 200


# ── Message TypedDicts ─────────────────────────────────────────────────────


class RPCRequest(TypedDict):
    """Request envelope written by the client."""

    jsonrpc: str
    id: int
    method: str
    params: dict[str, object]


class _RPCErrorPayloadRequired(TypedDict):
    code: int
    message: str


class RPCErrorPayload(_RPCErrorPayloadRequired, total=False):
    """Error object carried in an error response. ``data`` is optional."""

    data: object


class _RPCResponseRequired(TypedDict):
    jsonrpc: str
    id: int | None


class RPCResponse(_RPCResponseRequired, total=False):
    """Response envelope written by the server.

    Exactly one of ``result`` / ``error`` is present.
    """

    result: object
    error: RPCErrorPayload


class ServerStatus(BaseModel):
    """Contents of ``status.json``, published while the server runs."""

    running: bool
    pid: int | str | None = None
    version: str | None = None
    started_at: str | None = Field(default=None, alias="startedAt")

    model_config = {"populate_by_name": True}


# ── Encoding ───────────────────────────────────────────────────────────────


def _dump(message: Mapping[str, object]) -> bytes:
    payload = json.dumps(message, ensure_ascii=False).encode("utf-8")
    if len(payload) > MAX_MESSAGE_SIZE:
        raise ProtocolError(
            f"Message size {len(payload)} bytes exceeds "
            f"MAX_MESSAGE_SIZE ({MAX_MESSAGE_SIZE} bytes)"
        )
    return payload


def encode_request(
    request_id: int,
    method: str,
    params: Mapping[str, object] | None = None,
) -> bytes:
    """Serialize a request envelope.

    Args:
        request_id: Correlation ID (integer >= 1).
        method: Non-empty method name.
        params: JSON-serializable parameters.

    Returns:
        UTF-8 encoded JSON payload.

    Raises:
        ValueError: If *request_id* or *method* is invalid.
        ProtocolError: If the payload exceeds ``MAX_MESSAGE_SIZE``.
    """
    if isinstance(request_id, bool) or not isinstance(request_id, int) or request_id < 1:
        raise ValueError(f"request id must be an integer >= 1, got {request_id!r}")
    if not isinstance(method, str) or not method:
        raise ValueError("method must be a non-empty string")

    request: RPCRequest = {
        "jsonrpc": JSONRPC_VERSION,
        "id": request_id,
        "method": method,
        "params": dict(params or {}),
    }
    return _dump(request)


def encode_response(request_id: int | None, result: object) -> bytes:
    """Serialize a success response.

    Raises:
        TypeError: If *result* is not JSON-serializable.
    """
    response: RPCResponse = {
        "jsonrpc": JSONRPC_VERSION,
        "id": request_id,
        "result": result,
    }
    return _dump(response)


def encode_error(
    request_id: int | None,
    code: int,
    message: str,
    data: object = None,
) -> bytes:
    """Serialize an error response. ``data`` is omitted when ``None``."""
    error: RPCErrorPayload = {"code": int(code), "message": message}
    if data is not None:
        error["data"] = data
    response: RPCResponse = {
        "jsonrpc": JSONRPC_VERSION,
        "id": request_id,
        "error": error,
    }
    return _dump(response)


# ── Decoding ───────────────────────────────────────────────────────────────


def _load_object(data: bytes | str, peer: str) -> dict[str, object]:
    """Parse *data* into a JSON object carrying the version tag."""
    if isinstance(data, bytes):
        try:
            text = data.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ProtocolError(f"Invalid UTF-8 from {peer}: {exc}") from exc
    else:
        text = data

    trimmed = text.strip()
    if not trimmed:
        raise ProtocolError(f"Empty message from {peer}")

    preview = trimmed[:_PREVIEW_LENGTH]
    try:
        parsed = json.loads(trimmed)
    except json.JSONDecodeError as exc:
        raise ProtocolError(
            f"Invalid JSON from {peer}: {preview}", raw_payload=preview
        ) from exc

    if not isinstance(parsed, dict):
        raise ProtocolError(
            f"Message from {peer} is not a JSON object", raw_payload=preview
        )

    version = parsed.get("jsonrpc")
    if version != JSONRPC_VERSION:
        raise ProtocolError(
            f"Unexpected jsonrpc version: {version if version is not None else 'missing'}",
            raw_payload=preview,
        )
    return parsed


def _is_int(value: object) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def decode_request(data: bytes | str) -> RPCRequest:
    """Parse and validate a request envelope (server side).

    Raises:
        ProtocolError: If the payload is empty, not JSON, not an object, has
            the wrong version tag, lacks ``id`` / ``method``, or carries
            ``params`` that is not an object.
    """
    parsed = _load_object(data, "client")

    if "id" not in parsed or parsed["id"] is None:
        raise ProtocolError("Invalid request: missing id field")
    if not _is_int(parsed["id"]):
        raise ProtocolError("Invalid request: id must be an integer")

    method = parsed.get("method")
    if not isinstance(method, str) or not method:
        raise ProtocolError("Invalid request: missing or invalid method field")

    params = parsed.get("params")
    if params is None:
        params = {}
    if not isinstance(params, dict):
        raise ProtocolError("Invalid request: params must be an object")

    return {
        "jsonrpc": JSONRPC_VERSION,
        "id": parsed["id"],  # type: ignore[typeddict-item]
        "method": method,
        "params": params,  # type: ignore[typeddict-item]
    }


def decode_response(data: bytes | str) -> RPCResponse:
    """Parse and validate a response envelope (client side).

    Raises:
        ProtocolError: If the payload is not a well-formed response envelope.
    """
    parsed = _load_object(data, "MOHO server")

    if "id" not in parsed:
        raise ProtocolError("Invalid response: missing id field")
    response_id = parsed["id"]
    if response_id is not None and not _is_int(response_id):
        raise ProtocolError("Invalid response: id must be an integer or null")

    has_result = "result" in parsed
    has_error = "error" in parsed
    if has_result == has_error:
        raise ProtocolError(
            "Invalid response: exactly one of 'result' and 'error' must be present"
        )

    if has_result:
        return {
            "jsonrpc": JSONRPC_VERSION,
            "id": response_id,  # type: ignore[typeddict-item]
            "result": parsed["result"],
        }

    error = parsed["error"]
    if (
        not isinstance(error, dict)
        or not _is_int(error.get("code"))
        or not isinstance(error.get("message"), str)
    ):
        raise ProtocolError(
            "Invalid response: error must be an object with integer 'code' "
            "and string 'message'"
        )
    payload: RPCErrorPayload = {"code": error["code"], "message": error["message"]}
    if error.get("data") is not None:
        payload["data"] = error["data"]
    return {
        "jsonrpc": JSONRPC_VERSION,
        "id": response_id,  # type: ignore[typeddict-item]
        "error": payload,
    }


# ── File naming ────────────────────────────────────────────────────────────


def request_path(ipc_dir: Path, request_id: int) -> Path:
    """Path of the request file for *request_id*."""
    return ipc_dir / f"{REQUEST_FILE_PREFIX}{request_id}{MESSAGE_FILE_SUFFIX}"


def response_path(ipc_dir: Path, request_id: int | str) -> Path:
    """Path of the response file for *request_id*."""
    return ipc_dir / f"{RESPONSE_FILE_PREFIX}{request_id}{MESSAGE_FILE_SUFFIX}"


def status_path(ipc_dir: Path) -> Path:
    """Path of the server status file."""
    return ipc_dir / STATUS_FILE_NAME


def parse_file_id(name: str, prefix: str) -> str | None:
    """Extract the ID part of ``<prefix><id>.json``.

    Returns ``None`` for any other name, including ``.tmp`` files.
    """
    if not name.startswith(prefix) or not name.endswith(MESSAGE_FILE_SUFFIX):
        return None
    file_id = name[len(prefix) : -len(MESSAGE_FILE_SUFFIX)]
    return file_id or None


def write_atomic(path: Path, payload: bytes) -> None:
    """Write *payload* to ``<path>.tmp`` and rename it onto *path*."""
    tmp_path = path.with_name(path.name + TMP_FILE_SUFFIX)
    tmp_path.write_bytes(payload)
    os.replace(tmp_path, path)
