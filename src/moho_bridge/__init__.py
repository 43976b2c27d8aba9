"""moho-bridge: file-based JSON-RPC between external controllers and MOHO."""

import logging
import os
import warnings

# Configure log level from environment variable
# Users can set MOHO_BRIDGE_LOG_LEVEL to DEBUG, INFO, WARNING, ERROR, or CRITICAL
# Default is WARNING (suppresses debug/info logs)
_VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
_log_level_env = os.getenv("MOHO_BRIDGE_LOG_LEVEL")
_log_level_str = (_log_level_env or "WARNING").upper()

if _log_level_str not in _VALID_LOG_LEVELS:
    warnings.warn(
        f"Invalid MOHO_BRIDGE_LOG_LEVEL='{_log_level_str}'. "
        f"Valid values: DEBUG, INFO, WARNING, ERROR, CRITICAL. Using WARNING.",
        stacklevel=1,
    )
    _log_level_str = "WARNING"

_logger = logging.getLogger("moho_bridge")
_logger.setLevel(getattr(logging, _log_level_str))

# Add handler only when env var is explicitly set and no handler exists yet
# (prevents duplicate handlers on module reload)
if _log_level_env is not None and not _logger.handlers:
    # stdout carries the MCP protocol, so logs go to stderr
    _handler = logging.StreamHandler()
    _handler.setFormatter(
        logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    )
    _logger.addHandler(_handler)

from moho_bridge.config import BridgeConfig, default_ipc_dir  # noqa: E402
from moho_bridge.exceptions import (  # noqa: E402
    HandlerError,
    MohoBridgeError,
    NotConnectedError,
    ProtocolError,
    RequestTimeoutError,
    RPCError,
    ServerNotRunningError,
    TransportError,
)
from moho_bridge.ipc import BATCH_METHOD, SCREENSHOT_METHOD, ErrorCode  # noqa: E402
from moho_bridge.ipc.batch import BatchExecutor  # noqa: E402
from moho_bridge.ipc.client import ClientChannel  # noqa: E402
from moho_bridge.ipc.dispatch import Dispatcher, create_dispatcher  # noqa: E402
from moho_bridge.ipc.registry import Handler, HandlerRegistry  # noqa: E402
from moho_bridge.ipc.server import ServerLoop, make_redraw_hook  # noqa: E402
from moho_bridge.ipc.validator import (  # noqa: E402
    FieldSpec,
    ValidationResult,
    Validator,
    default_validator,
)

__all__ = [
    "BridgeConfig",
    "default_ipc_dir",
    # Exceptions
    "MohoBridgeError",
    "ProtocolError",
    "RPCError",
    "HandlerError",
    "TransportError",
    "ServerNotRunningError",
    "NotConnectedError",
    "RequestTimeoutError",
    # Protocol
    "ErrorCode",
    "BATCH_METHOD",
    "SCREENSHOT_METHOD",
    # Client side
    "ClientChannel",
    # Host side
    "ServerLoop",
    "make_redraw_hook",
    "Dispatcher",
    "create_dispatcher",
    "BatchExecutor",
    "Handler",
    "HandlerRegistry",
    "Validator",
    "FieldSpec",
    "ValidationResult",
    "default_validator",
]
