"""JSON-RPC error codes shared by both ends of the file IPC."""

from enum import IntEnum


class ErrorCode(IntEnum):
    """Closed error taxonomy carried in ``error.code``."""

    # Protocol-level
    PARSE_ERROR = -32700
    INVALID_REQUEST = -32600

    # Request validity
    METHOD_NOT_FOUND = -32601
    INVALID_PARAMS = -32602

    # Domain / internal
    INTERNAL_ERROR = -32603

    # Batch operation skipped after an earlier failure (stopOnError)
    SKIPPED = -32000

    # Application range (-32000 to -32099), raised by domain handlers
    NO_DOCUMENT = -32001
    LAYER_NOT_FOUND = -32002
    BONE_NOT_FOUND = -32003
    INVALID_FRAME = -32004
    HOST_ERROR = -32010
