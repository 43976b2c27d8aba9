"""MCP bridge process: MCP stdio ↔ file IPC relay.

This module implements the process an MCP client starts as a subprocess.
It acts as a standard MCP stdio server (JSON-RPC 2.0 over stdin/stdout) and
relays ``tools/call`` requests to the
MOHO host through a :class:`ClientChannel`.

``tools/list`` is answered locally: every allow-listed method becomes a tool
whose name swaps the dot for an underscore (``layer.getProperties`` →
``layer_getProperties``) and whose input schema is derived from the
validator's required fields.

``resources/list`` and ``resources/read`` serve packaged MOHO reference data
(keyboard shortcuts, tool catalogue) without contacting the host.

Usage::

    python -m moho_bridge.ipc.bridge
"""

import asyncio
import json
import logging
import sys
from collections.abc import Mapping
from typing import TypedDict

from mcp.server import Server
from mcp.server.lowlevel.helper_types import ReadResourceContents
from mcp.server.stdio import stdio_server
from mcp.types import Resource, TextContent, Tool
from pydantic import AnyUrl

from moho_bridge.config import BridgeConfig
from moho_bridge.exceptions import MohoBridgeError
from moho_bridge.ipc import BATCH_METHOD, SCREENSHOT_METHOD
from moho_bridge.ipc.client import ClientChannel
from moho_bridge.ipc.resources import (
    RESOURCE_MIME_TYPE,
    build_mcp_resources,
    read_resource_text,
)
from moho_bridge.ipc.validator import PrimitiveType, Validator, default_validator

logger = logging.getLogger(__name__)

SERVER_NAME: str = "moho-mcp"
"""Name announced to MCP clients."""

INSTRUCTIONS: str = "\n".join(
    [
        "MohoMCP controls Moho animation software via file-based IPC. Each "
        "individual tool call incurs a few hundred milliseconds of polling "
        "latency.",
        "",
        "Use batch_execute whenever you need 2 or more operations: a batch of "
        "N operations completes in a single round trip.",
        "",
        "Use individual calls when a result decides the next operation, for "
        "document_screenshot (not allowed in batches), or for a single "
        "standalone operation.",
        "",
        'Inside batch_execute, method names use dots (e.g. "bone.setTransform"), '
        "not underscores. The params match each tool's parameter schema.",
    ]
)

TOOL_DESCRIPTIONS: dict[str, str] = {
    "document.getInfo": "Get information about the currently open MOHO document "
    "(name, path, dimensions, frame range, FPS)",
    "document.getLayers": "Get a list of all top-level layers in the current MOHO document",
    "document.setFrame": "Set the current frame of the document timeline",
    "document.screenshot": "Render the current (or given) frame to an image file",
    "layer.getProperties": "Get detailed properties of a specific layer "
    "(type, visibility, transform, etc.)",
    "layer.getChildren": "Get child layers of a group layer",
    "layer.getBones": "Get all bones in a bone layer",
    "layer.setTransform": "Set a layer's translation, rotation or scale at a frame",
    "layer.setVisibility": "Show or hide a layer",
    "layer.setOpacity": "Set a layer's opacity at a frame",
    "layer.setName": "Rename a layer",
    "layer.selectLayer": "Make a layer the active layer",
    "bone.getProperties": "Get detailed properties of a specific bone "
    "(position, angle, scale, parent, etc.)",
    "bone.setTransform": "Set a bone's position, angle or scale at a frame",
    "bone.selectBone": "Select a bone in a bone layer",
    "animation.getKeyframes": "Get keyframe data for a specific animation channel on a layer",
    "animation.getFrameState": "Get the evaluated state of a layer at a frame",
    "animation.setKeyframe": "Create or update a keyframe on an animation channel",
    "animation.deleteKeyframe": "Delete a keyframe from an animation channel",
    "animation.setInterpolation": "Set the interpolation mode of a keyframe",
    "mesh.getPoints": "Get the points of a vector layer's mesh",
    "mesh.getShapes": "Get the shapes of a vector layer's mesh",
    BATCH_METHOD: "Execute multiple MOHO operations in a single IPC round trip "
    "instead of one round trip per call. Method names use DOT notation. "
    f"Supports all methods EXCEPT: {SCREENSHOT_METHOD} (too slow), "
    f"{BATCH_METHOD} (no nesting). Returns {{ results: [{{ success, index, "
    "result|error }], summary: { total, executed, succeeded, failed, "
    "stoppedEarly } }. Use stopOnError: true when later operations depend "
    "on earlier ones succeeding.",
}

_JSON_TYPES: dict[PrimitiveType, str] = {
    "number": "number",
    "string": "string",
    "boolean": "boolean",
    "table": "object",
}


class ToolSchema(TypedDict):
    """Tool definition advertised by ``tools/list``."""

    name: str
    description: str
    input_schema: dict[str, object]


# ── Tool naming ───────────────────────────────────────────────────────────


def method_to_tool_name(method: str) -> str:
    """``layer.getProperties`` → ``layer_getProperties``."""
    return method.replace(".", "_", 1)


def tool_name_to_method(name: str) -> str:
    """``layer_getProperties`` → ``layer.getProperties``."""
    return name.replace("_", ".", 1)


# ── Schema building ───────────────────────────────────────────────────────


def _batch_input_schema(max_batch_size: int) -> dict[str, object]:
    return {
        "type": "object",
        "properties": {
            "operations": {
                "type": "array",
                "minItems": 1,
                "maxItems": max_batch_size,
                "description": "Array of operations to execute sequentially",
                "items": {
                    "type": "object",
                    "properties": {
                        "method": {
                            "type": "string",
                            "description": 'The JSON-RPC method name (e.g. "bone.setTransform")',
                        },
                        "params": {
                            "type": "object",
                            "description": "Parameters for the method",
                        },
                    },
                    "required": ["method"],
                },
            },
            "stopOnError": {
                "type": "boolean",
                "default": False,
                "description": "If true, skip the remaining operations after the first failure",
            },
        },
        "required": ["operations"],
    }


def build_tool_schemas(
    validator: Validator, *, max_batch_size: int = 50
) -> list[ToolSchema]:
    """Describe every allow-listed method as an MCP tool.

    Required fields come from the validator; other parameters (optional
    transform values, render size, ...) are let through unchanged.
    """
    schemas: list[ToolSchema] = []
    for method in validator.methods:
        if method == BATCH_METHOD:
            input_schema = _batch_input_schema(max_batch_size)
        else:
            fields = validator.schema_for(method) or ()
            input_schema = {
                "type": "object",
                "properties": {
                    field.name: {"type": _JSON_TYPES[field.type]} for field in fields
                },
                "required": [field.name for field in fields],
                "additionalProperties": True,
            }
        schemas.append(
            {
                "name": method_to_tool_name(method),
                "description": TOOL_DESCRIPTIONS.get(method, f"Call {method}"),
                "input_schema": input_schema,
            }
        )
    logger.debug("Built %d tool schemas", len(schemas))
    return schemas


def schemas_to_mcp_tools(schemas: list[ToolSchema]) -> list[Tool]:
    """Convert tool schemas to MCP :class:`Tool` objects."""
    return [
        Tool(
            name=schema["name"],
            description=schema["description"],
            inputSchema=schema["input_schema"],
        )
        for schema in schemas
    ]


# ── Tool execution ────────────────────────────────────────────────────────


async def call_bridge_tool(
    channel: ClientChannel,
    validator: Validator,
    name: str,
    arguments: Mapping[str, object] | None,
) -> list[TextContent]:
    """Relay one MCP tool call to MOHO.

    Lazily connects the channel on first use. The result is returned as
    pretty-printed JSON text.

    Raises:
        MohoBridgeError: On unknown tools, connection failures, timeouts and
            error responses. The MCP server reports these as ``isError``
            results carrying the message.
    """
    method = tool_name_to_method(name)
    if not validator.is_allowed(method):
        raise MohoBridgeError(f"Unknown tool: {name}")

    if not channel.is_connected:
        await channel.connect()

    params = dict(arguments or {})
    if method == BATCH_METHOD:
        operations = params.get("operations")
        if not isinstance(operations, list):
            raise MohoBridgeError("operations must be an array")
        result: object = await channel.batch(
            operations, stop_on_error=params.get("stopOnError", False)
        )
    else:
        result = await channel.call(method, params)

    return [TextContent(type="text", text=json.dumps(result, indent=2))]


# ── MCP Server assembly ──────────────────────────────────────────────────


def create_bridge_server(
    channel: ClientChannel,
    validator: Validator | None = None,
) -> Server:
    """Create an MCP server wired to the client channel.

    Tools are relayed to MOHO; the static reference resources
    (``moho://shortcuts``, ``moho://tools``) are served locally.

    Args:
        channel: Channel relaying ``call_tool`` requests to MOHO.
        validator: Allow-list used to build the tool list.

    Returns:
        Configured :class:`mcp.server.Server` ready to serve via stdio.
    """
    validator = validator if validator is not None else default_validator()
    mcp_tools = schemas_to_mcp_tools(
        build_tool_schemas(validator, max_batch_size=channel.config.max_batch_size)
    )
    mcp_resources = build_mcp_resources()
    server = Server(SERVER_NAME, instructions=INSTRUCTIONS)

    @server.list_tools()
    async def handle_list_tools() -> list[Tool]:
        return mcp_tools

    @server.call_tool()
    async def handle_call_tool(
        name: str, arguments: dict[str, object] | None
    ) -> list[TextContent]:
        return await call_bridge_tool(channel, validator, name, arguments)

    @server.list_resources()
    async def handle_list_resources() -> list[Resource]:
        return mcp_resources

    @server.read_resource()
    async def handle_read_resource(uri: AnyUrl) -> list[ReadResourceContents]:
        return [
            ReadResourceContents(
                content=read_resource_text(uri), mime_type=RESOURCE_MIME_TYPE
            )
        ]

    return server


# ── Entry point ───────────────────────────────────────────────────────────


async def _run_bridge(config: BridgeConfig) -> None:
    """Serve MCP over stdio until the client disconnects."""
    channel = ClientChannel(config)
    server = create_bridge_server(channel)

    logger.info("Bridge starting: ipc_dir=%s", config.ipc_dir)

    try:
        async with stdio_server() as (read_stream, write_stream):
            await server.run(
                read_stream,
                write_stream,
                server.create_initialization_options(),
            )
    finally:
        channel.disconnect()


def main() -> None:
    """Console entry point."""
    if len(sys.argv) > 1:
        print(
            f"Usage: {sys.executable} -m moho_bridge.ipc.bridge\n"
            "Set MOHO_MCP_IPC_DIR to override the IPC directory.",
            file=sys.stderr,
        )
        sys.exit(1)

    asyncio.run(_run_bridge(BridgeConfig.from_env()))


if __name__ == "__main__":
    main()
