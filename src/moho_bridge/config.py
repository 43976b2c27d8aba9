"""Bridge configuration: IPC directory, polling and timeout classes."""

from __future__ import annotations

import os
import tempfile
from collections.abc import Mapping
from pathlib import Path

from pydantic import BaseModel, Field

from moho_bridge.ipc import BATCH_METHOD, SCREENSHOT_METHOD
from moho_bridge.ipc.batch import DEFAULT_MAX_OPERATIONS

IPC_DIR_ENV_VAR: str = "MOHO_MCP_IPC_DIR"
"""Environment variable overriding the shared IPC directory."""

IPC_DIR_NAME: str = "moho-mcp"
"""Directory name under the platform temp directory."""

DEFAULT_POLL_INTERVAL: float = 0.1
DEFAULT_REQUEST_TIMEOUT: float = 10.0
DEFAULT_RENDER_TIMEOUT: float = 30.0
DEFAULT_BATCH_TIMEOUT_PER_OP: float = 0.5


def default_ipc_dir() -> Path:
    """Shared directory: ``$MOHO_MCP_IPC_DIR`` or ``<tempdir>/moho-mcp``."""
    override = os.getenv(IPC_DIR_ENV_VAR)
    if override:
        return Path(override)
    return Path(tempfile.gettempdir()) / IPC_DIR_NAME


class BridgeConfig(BaseModel):
    """Tunables shared by the client channel and the MCP bridge.

    All durations are in seconds.

    Attributes:
        ipc_dir: Shared directory holding status/request/response files.
        poll_interval: Delay between checks for a response file.
        request_timeout: Default timeout of a single call.
        render_timeout: Timeout of heavyweight capture calls.
        batch_timeout_per_op: Extra allowance per operation in a batch.
        max_batch_size: Maximum operations accepted in one batch.
    """

    ipc_dir: Path = Field(default_factory=default_ipc_dir)
    poll_interval: float = Field(default=DEFAULT_POLL_INTERVAL, gt=0)
    request_timeout: float = Field(default=DEFAULT_REQUEST_TIMEOUT, gt=0)
    render_timeout: float = Field(default=DEFAULT_RENDER_TIMEOUT, gt=0)
    batch_timeout_per_op: float = Field(default=DEFAULT_BATCH_TIMEOUT_PER_OP, ge=0)
    max_batch_size: int = Field(default=DEFAULT_MAX_OPERATIONS, ge=1)

    model_config = {"extra": "forbid", "frozen": True}

    @classmethod
    def from_env(cls, **overrides: object) -> BridgeConfig:
        """Build a config honouring ``MOHO_MCP_IPC_DIR``.

        Keyword arguments override individual fields.
        """
        values: dict[str, object] = {"ipc_dir": default_ipc_dir()}
        values.update(overrides)
        return cls.model_validate(values)

    def timeout_for(
        self, method: str, params: Mapping[str, object] | None = None
    ) -> float:
        """Pick the timeout class for a call.

        Capture calls get ``render_timeout``; a batch gets ``request_timeout``
        plus ``batch_timeout_per_op`` for each operation; everything else
        gets ``request_timeout``.
        """
        if method == SCREENSHOT_METHOD:
            return self.render_timeout
        if method == BATCH_METHOD:
            operations = (params or {}).get("operations")
            count = len(operations) if isinstance(operations, list) else 0
            return self.request_timeout + count * self.batch_timeout_per_op
        return self.request_timeout
