"""MCP Server for the mobile dev bridge - lets AI inspect and drive running apps.

This server provides tools for:
- Reading application state, feature flags and storage
- Inspecting captured logs and network traffic, and mocking requests
- Walking registered UI components and simulating taps
- Tracing function execution and navigating between routes

Every built-in bridge method is exposed as a tool of the same name. Tools take
an optional ``device`` argument selecting the target session.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from mcp import types
from mcp.server import Server
from mcp.server.stdio import stdio_server

from .bridge import ControllerBridge
from .config import BridgeConfig
from .errors import BridgeError
from .registry import TARGET_ALL, TARGET_FIRST, DispatchResult
from .router import BUILTINS, Params

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
MAX_OUTPUT_CHARS = 50_000

DEVICE_PROPERTY = {
    "type": "string",
    "description": (
        "Target session id or device id. "
        f'"{TARGET_ALL}" sends to every connected device; '
        f'defaults to "{TARGET_FIRST}".'
    ),
}


# =============================================================================
# Output Size Helpers
# =============================================================================


def truncate_field(text: str | None, max_len: int) -> str | None:
    """Truncate a text field to max_len chars."""
    if not text or len(text) <= max_len:
        return text
    return f"{text[:max_len]}... [{len(text)} chars total]"


def format_json(data: Any) -> str:
    text = json.dumps(data, indent=2, default=str)
    return truncate_field(text, MAX_OUTPUT_CHARS) or ""


# =============================================================================
# Formatting
# =============================================================================


def format_session_summary(session: dict[str, Any]) -> str:
    """Format a connected session for display."""
    session_id = session.get("sessionId", "unknown")
    platform = session.get("platform", "unknown")
    app_name = session.get("appName", "")
    app_version = session.get("appVersion", "")
    capabilities = session.get("capabilities", [])
    pending = session.get("pendingRequests", 0)

    caps = f" [{', '.join(capabilities)}]" if capabilities else ""
    pending_str = f" ({pending} pending)" if pending else ""
    return f"- {session_id} ({platform}): {app_name} {app_version}{caps}{pending_str}"


def format_results(results: list[DispatchResult]) -> str:
    """Render dispatch outcomes; a single target renders its result directly."""
    if len(results) == 1:
        result = results[0]
        if not result.success:
            return f"Error: {result.error}"
        return format_json(result.data)
    return format_json([r.to_dict() for r in results])


# -----------------------------------------------------------------------------
# Tool Definitions
# -----------------------------------------------------------------------------


def tool_schema(params_model: type[Params]) -> dict[str, Any]:
    schema = params_model.model_json_schema(by_alias=True)
    schema.pop("title", None)
    schema.setdefault("type", "object")
    properties = schema.setdefault("properties", {})
    properties["device"] = dict(DEVICE_PROPERTY)
    schema.setdefault("required", [])
    return schema


def build_tools() -> list[types.Tool]:
    tools = [
        types.Tool(
            name="list_devices",
            description="""List applications currently connected to the bridge.

Shows session id, platform, app name/version and declared capabilities.
Use a session id as the `device` argument of other tools.""",
            inputSchema={
                "type": "object",
                "properties": {
                    "platform": {
                        "type": "string",
                        "description": "Only list sessions of this platform.",
                    },
                },
                "required": [],
            },
        )
    ]
    for command in BUILTINS.values():
        tools.append(
            types.Tool(
                name=command.name,
                description=command.description,
                inputSchema=tool_schema(command.params_model),
            )
        )
    return tools


async def handle_tool(
    bridge: ControllerBridge, name: str, arguments: dict[str, Any] | None
) -> list[types.TextContent]:
    """Handle one tool call; failures come back as text, never as exceptions."""
    arguments = dict(arguments or {})

    try:
        if name == "list_devices":
            sessions = bridge.registry.list_sessions(platform=arguments.get("platform"))
            if not sessions:
                return [
                    types.TextContent(
                        type="text",
                        text="No devices connected. Start your app with the bridge SDK enabled.",
                    )
                ]
            lines = [f"Connected devices ({len(sessions)}):"]
            lines.extend(format_session_summary(s.to_dict()) for s in sessions)
            return [types.TextContent(type="text", text="\n".join(lines))]

        elif name in BUILTINS:
            target = arguments.pop("device", None) or TARGET_FIRST
            results = await bridge.send_command(name, arguments, target=target)
            return [types.TextContent(type="text", text=format_results(results))]

        else:
            return [types.TextContent(type="text", text=f"Unknown tool: {name}")]

    except BridgeError as e:
        logger.info(f"Tool {name} failed: {e.message}")
        return [types.TextContent(type="text", text=f"Error: {e.message}")]
    except Exception as e:
        logger.exception(f"Error calling tool {name}")
        return [types.TextContent(type="text", text=f"Error: {str(e)}")]


def create_server(bridge: ControllerBridge) -> Server:
    """Build the MCP server exposing ``bridge`` to the assistant."""
    server = Server("mobile-dev-bridge")
    tools = build_tools()

    @server.list_tools()  # type: ignore
    async def list_tools() -> list[types.Tool]:
        """List available bridge tools."""
        return tools

    @server.call_tool()  # type: ignore
    async def call_tool(name: str, arguments: dict[str, Any]) -> list[types.TextContent]:
        """Handle tool calls."""
        return await handle_tool(bridge, name, arguments)

    return server


def configure_logging(level: str) -> None:
    # stdout carries the MCP stream; basicConfig writes to stderr.
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format=LOG_FORMAT)


async def main(config: BridgeConfig | None = None) -> None:
    """Run the websocket bridge and the MCP server."""
    config = config or BridgeConfig.from_env()
    configure_logging(config.log_level)
    logger.info("Starting mobile dev bridge MCP server")

    bridge = ControllerBridge(config)
    await bridge.start()
    server = create_server(bridge)
    try:
        async with stdio_server() as (read_stream, write_stream):
            await server.run(
                read_stream,
                write_stream,
                server.create_initialization_options(),
            )
    finally:
        await bridge.stop()


def run() -> None:
    """Entry point for the MCP server."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
