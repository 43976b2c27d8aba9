"""Static MOHO reference data published as MCP resources.

Keyboard shortcuts and the toolbar catalogue (MOHO Pro 14) ship with the
package as JSON under ``ipc/data``. Reading them never touches the host, so
an MCP client can look up a shortcut or tool without an IPC round trip.
"""

import json
import logging
from importlib import resources
from typing import NamedTuple

from mcp.types import Resource

from moho_bridge.exceptions import MohoBridgeError

logger = logging.getLogger(__name__)

RESOURCE_MIME_TYPE: str = "application/json"
"""MIME type of every resource body."""


class ResourceDefinition(NamedTuple):
    """One static resource and the packaged file holding its data."""

    uri: str
    name: str
    description: str
    data_file: str


RESOURCES: tuple[ResourceDefinition, ...] = (
    ResourceDefinition(
        uri="moho://shortcuts",
        name="shortcuts",
        description="Comprehensive Moho Pro 14 keyboard shortcuts organized by category",
        data_file="shortcuts.json",
    ),
    ResourceDefinition(
        uri="moho://tools",
        name="tools",
        description="All Moho Pro 14 tools organized by toolbar group with shortcuts "
        "and descriptions",
        data_file="tools.json",
    ),
)


def find_resource(uri: object) -> ResourceDefinition:
    """Look up the definition for *uri*.

    Accepts plain strings and ``AnyUrl`` values; a trailing slash is ignored.

    Raises:
        MohoBridgeError: If no resource has that URI.
    """
    wanted = str(uri).rstrip("/")
    for definition in RESOURCES:
        if definition.uri == wanted:
            return definition
    raise MohoBridgeError(f"Unknown resource: {uri}")


def load_resource_data(uri: object) -> object:
    """Parsed JSON data of the resource at *uri*."""
    definition = find_resource(uri)
    data_path = resources.files("moho_bridge.ipc").joinpath("data", definition.data_file)
    return json.loads(data_path.read_text(encoding="utf-8"))


def read_resource_text(uri: object) -> str:
    """Resource body as pretty-printed JSON text."""
    text = json.dumps(load_resource_data(uri), indent=2, ensure_ascii=False)
    logger.debug("Read resource %s (%d chars)", uri, len(text))
    return text


def build_mcp_resources() -> list[Resource]:
    """MCP :class:`Resource` entries for ``resources/list``."""
    return [
        Resource(
            uri=definition.uri,
            name=definition.name,
            description=definition.description,
            mimeType=RESOURCE_MIME_TYPE,
        )
        for definition in RESOURCES
    ]
