#!/usr/bin/env python3
"""
Overlay Companion MCP Server

Lets an AI agent look at the screen, draw temporary overlays on it and, when
the operating mode allows, click, type and use the clipboard.

Every tool funnels into ToolDispatcher.invoke, so the streamable HTTP
transport and the stdio transport return the same ToolResponse shape. Each MCP
connection gets its own logical session.

Requirements:
- Python 3.10+
- X11 display server for the default screen adapter
"""

import functools
import json
import logging
import threading
import textwrap
import weakref
from typing import Any, Dict, List, Optional

import anyio
from mcp.server.fastmcp import Context, FastMCP
from mcp.server.fastmcp.exceptions import ToolError as FastMCPToolError
from mcp.types import TextContent
from pydantic import BaseModel, Field, ValidationError
from starlette.requests import Request
from starlette.responses import JSONResponse

from overlay_companion.config import ServerConfig, load_config
from overlay_companion.errors import ToolError
from overlay_companion.models import Region, SessionStatus, ToolResponse
from overlay_companion.runtime import OverlayCompanion, configure_logging

logger = logging.getLogger(__name__)


def _envelope(response: ToolResponse):
    """Content pair in the same shape FastMCP produces for a ToolResponse return."""
    return (
        [TextContent(type="text", text=response.model_dump_json(indent=2))],
        response.model_dump(mode="json"),
    )


class OverlayCompanionMCP(FastMCP):
    """
    FastMCP whose tool-call failures still come back as ToolResponse envelopes.

    Unknown tool names and arguments FastMCP cannot bind are handed to the
    dispatcher unchanged, which answers with ``unknown_tool`` or
    ``invalid_params`` and the failing fields.
    """

    async def call_tool(self, name: str, arguments: Dict[str, Any]):
        arguments = arguments or {}
        if self._tool_manager.get_tool(name) is None:
            return _envelope(await _dispatch(name, arguments, self.get_context()))
        try:
            return await super().call_tool(name, arguments)
        except FastMCPToolError as exc:
            if not isinstance(exc.__cause__, ValidationError):
                raise
            logger.debug("Arguments for '%s' rejected by FastMCP, revalidating", name)
            return _envelope(await _dispatch(name, arguments, self.get_context()))


# Initialize FastMCP server
mcp = OverlayCompanionMCP("overlay-companion-mcp")

# Built on first use (or by main) so importing the module never touches the display
_runtime: Optional[OverlayCompanion] = None
_runtime_lock = threading.Lock()

# MCP connection -> session id. Entries vanish with the connection object.
_connection_sessions: "weakref.WeakKeyDictionary[Any, str]" = weakref.WeakKeyDictionary()
# Session used when a tool is called outside an MCP request (direct calls)
_local_session_id: Optional[str] = None
_bind_lock = threading.Lock()


def _get_runtime() -> OverlayCompanion:
    global _runtime
    with _runtime_lock:
        if _runtime is None:
            _runtime = OverlayCompanion(ServerConfig())
            _runtime.start()
        return _runtime


def set_runtime(runtime: Optional[OverlayCompanion]) -> None:
    """Install the runtime the tools dispatch into (None resets)."""
    global _runtime, _local_session_id
    with _runtime_lock:
        _runtime = runtime
    with _bind_lock:
        _local_session_id = None
        _connection_sessions.clear()


def _prompt_text(template: str) -> str:
    """Dedent and strip prompt template text for registration."""
    return textwrap.dedent(template).strip()


def _connection_of(ctx: Optional[Context]) -> Optional[Any]:
    if ctx is None:
        return None
    try:
        return ctx.request_context.session
    except (ValueError, LookupError, AttributeError):
        return None


def _connection_closed(session_id: str) -> None:
    runtime = _runtime
    if runtime is None:
        return
    try:
        runtime.sessions.close(session_id, reason="transport_disconnected")
    except ToolError as exc:
        logger.debug("Session %s already gone on disconnect: %s", session_id, exc.message)


def _bind(connection: Optional[Any], session_id: str) -> None:
    """Point ``connection`` (or the local caller) at ``session_id``. Caller holds _bind_lock."""
    global _local_session_id
    if connection is None:
        _local_session_id = session_id
        return
    _connection_sessions[connection] = session_id
    weakref.finalize(connection, _connection_closed, session_id)


def _session_for(ctx: Optional[Context]) -> str:
    """Return the session bound to the caller's connection, opening one on first use."""
    runtime = _get_runtime()
    connection = _connection_of(ctx)
    with _bind_lock:
        if connection is None:
            session_id = _local_session_id
        else:
            session_id = _connection_sessions.get(connection)
        if session_id is None:
            session_id = runtime.sessions.open().id
            _bind(connection, session_id)
        return session_id


async def _dispatch(tool: str, params: Dict[str, Any], ctx: Optional[Context]) -> ToolResponse:
    session_id = _session_for(ctx)
    runtime = _get_runtime()
    cleaned = {k: v for k, v in params.items() if v is not None}
    # The dispatcher is synchronous (locks, adapter I/O); keep it off the event loop
    return await anyio.to_thread.run_sync(
        functools.partial(runtime.dispatcher.invoke, tool, cleaned, session_id)
    )


def _dump(region: Optional[Region]) -> Optional[Dict[str, int]]:
    return region.model_dump() if region is not None else None


class PromptTemplateSummary(BaseModel):
    """Metadata for an MCP prompt template."""
    name: str = Field(description="Prompt identifier")
    title: str = Field(description="Prompt title")
    description: str = Field(description="Short description of what the prompt is for")


class PromptTemplatesResult(BaseModel):
    """Collection of available prompt templates exposed as tools."""
    templates: List[PromptTemplateSummary] = Field(
        description="Available prompt templates"
    )


# Observe


@mcp.tool()
async def take_screenshot(region: Optional[Region] = None, ctx: Context = None) -> ToolResponse:
    """
    Capture the screen, or one region of it, to a PNG file.

    Args:
        region: Optional {x, y, width, height} in logical screen pixels.
                The full screen is captured when omitted.

    Returns:
        ToolResponse whose result holds screenshot_ref, file_path, width,
        height and any environment warnings. Keep screenshot_ref if you may
        need re_anchor_element later.
    """
    return await _dispatch("take_screenshot", {"region": _dump(region)}, ctx)


@mcp.tool()
async def get_clipboard(ctx: Context = None) -> ToolResponse:
    """Read the text currently on the system clipboard."""
    return await _dispatch("get_clipboard", {}, ctx)


@mcp.tool()
async def get_display_info(ctx: Context = None) -> ToolResponse:
    """
    Describe the display: display server and the monitor layout.

    Only the primary monitor is reported (index 0, origin 0,0) with its size
    in logical pixels and the detected scaling factor.
    """
    return await _dispatch("get_display_info", {}, ctx)


@mcp.tool()
async def re_anchor_element(previous_region: Region, screenshot_ref: str, ctx: Context = None) -> ToolResponse:
    """
    Find where an element from an earlier screenshot is now.

    The pixels inside previous_region of the referenced screenshot are
    searched for (exact match) in a fresh capture.

    Args:
        previous_region: Where the element was, in logical pixels.
        screenshot_ref: screenshot_ref returned by take_screenshot.

    Returns:
        ToolResponse with found, region (new location) and moved.
    """
    return await _dispatch(
        "re_anchor_element",
        {"previous_region": _dump(previous_region), "screenshot_ref": screenshot_ref},
        ctx,
    )


# Annotate


@mcp.tool()
async def draw_overlay(
    region: Region,
    color: str,
    label: str = "",
    ttl_millis: int = 0,
    click_through: bool = True,
    ctx: Context = None,
) -> ToolResponse:
    """
    Draw a rectangular overlay on the screen.

    Args:
        region: {x, y, width, height}; width/height must be > 0 and x/y >= 0.
        color: Color name or #RRGGBB.
        label: Annotation text shown with the overlay.
        ttl_millis: Lifetime in milliseconds. 0 keeps it until removed.
        click_through: Let mouse clicks pass through the overlay.

    Returns:
        ToolResponse whose result.overlay carries the new overlay id.

    Examples:
        - draw_overlay(region={"x": 0, "y": 0, "width": 100, "height": 100}, color="red", label="Save")
        - draw_overlay(region=..., color="#00ff00", ttl_millis=3000)
    """
    return await _dispatch(
        "draw_overlay",
        {
            "region": _dump(region),
            "color": color,
            "label": label,
            "ttl_millis": ttl_millis,
            "click_through": click_through,
        },
        ctx,
    )


@mcp.tool()
async def batch_overlay(overlays: List[Dict[str, Any]], ctx: Context = None) -> ToolResponse:
    """
    Draw several overlays at once. Either all of them are drawn or none.

    Args:
        overlays: List of draw_overlay parameter objects
                  ({region, color, label?, ttl_millis?, click_through?}).

    Returns:
        ToolResponse with the created overlays. On failure the error details
        name the index of the offending entry.
    """
    return await _dispatch("batch_overlay", {"overlays": overlays}, ctx)


@mcp.tool()
async def remove_overlay(overlay_id: str, ctx: Context = None) -> ToolResponse:
    """Remove one overlay by id."""
    return await _dispatch("remove_overlay", {"overlay_id": overlay_id}, ctx)


@mcp.tool()
async def clear_overlays(ctx: Context = None) -> ToolResponse:
    """Remove every overlay. Safe to call when none are shown."""
    return await _dispatch("clear_overlays", {}, ctx)


@mcp.tool()
async def list_overlays(ctx: Context = None) -> ToolResponse:
    """List overlays that are currently visible (expired ones are left out)."""
    return await _dispatch("list_overlays", {}, ctx)


# Act


@mcp.tool()
async def click_at(x: int, y: int, button: str = "left", clicks: int = 1, ctx: Context = None) -> ToolResponse:
    """
    Click at logical screen coordinates.

    Needs autopilot mode to run directly. In assist and composing mode the
    call returns status "confirmation_required" with a token; call
    confirm_action(token) to perform the click.

    Args:
        x: X coordinate in logical pixels
        y: Y coordinate in logical pixels
        button: "left", "right" or "middle"
        clicks: 1 to 3
    """
    return await _dispatch("click_at", {"x": x, "y": y, "button": button, "clicks": clicks}, ctx)


@mcp.tool()
async def type_text(text: str, interval: float = 0.0, ctx: Context = None) -> ToolResponse:
    """
    Type text using the keyboard.

    Args:
        text: The string of text to type.
        interval: Seconds to wait between each key press (default 0.0).
    """
    return await _dispatch("type_text", {"text": text, "interval": interval}, ctx)


@mcp.tool()
async def set_clipboard(text: str, ctx: Context = None) -> ToolResponse:
    """Replace the clipboard contents with text."""
    return await _dispatch("set_clipboard", {"text": text}, ctx)


@mcp.tool()
async def compose_actions(steps: List[Dict[str, Any]], ctx: Context = None) -> ToolResponse:
    """
    Run several input actions as one batch.

    In composing mode the whole batch runs without per-step confirmation; in
    assist mode the batch needs a single confirmation.

    Args:
        steps: List of actions. Each action is a dict with:
            - action: "click" | "type" | "set_clipboard" | "wait"
            - x, y, button, clicks: for click
            - text, interval: for type / set_clipboard
            - duration: for wait (seconds, max 5)

    Example:
        compose_actions(steps=[
            {"action": "click", "x": 400, "y": 300},
            {"action": "type", "text": "hello"},
            {"action": "wait", "duration": 0.5}
        ])
    """
    return await _dispatch("compose_actions", {"steps": steps}, ctx)


# Mode and confirmation


@mcp.tool()
async def set_mode(mode: str, ctx: Context = None) -> ToolResponse:
    """
    Switch the operating mode: passive, assist, autopilot or composing.

    passive only observes; assist draws overlays freely and asks for
    confirmation before input; autopilot runs everything; composing is assist
    plus unconfirmed compose_actions batches.
    """
    return await _dispatch("set_mode", {"mode": mode}, ctx)


@mcp.tool()
async def get_mode(ctx: Context = None) -> ToolResponse:
    """Return the current mode and what it permits per action category."""
    return await _dispatch("get_mode", {}, ctx)


@mcp.tool()
async def confirm_action(token: str, ctx: Context = None) -> ToolResponse:
    """
    Run an action that was deferred with status "confirmation_required".

    Tokens are single use, expire after a short time and only work from the
    session that received them.
    """
    return await _dispatch("confirm_action", {"token": token}, ctx)


# Sessions


@mcp.tool()
async def open_session(ctx: Context = None) -> ToolResponse:
    """Start a fresh session for this connection (ends the previous one)."""
    runtime = _get_runtime()
    previous = _session_for(ctx)
    response = await _dispatch("open_session", {}, ctx)
    if response.success and response.result:
        connection = _connection_of(ctx)
        with _bind_lock:
            _bind(connection, response.result["session"]["id"])
        try:
            if runtime.sessions.status(previous).status is SessionStatus.ACTIVE:
                runtime.sessions.close(previous, reason="replaced")
        except ToolError as exc:
            logger.debug("Previous session %s not closed: %s", previous, exc.message)
    return response


@mcp.tool()
async def close_session(ctx: Context = None) -> ToolResponse:
    """End this connection's session, cancelling its confirmations and subscriptions."""
    return await _dispatch("close_session", {}, ctx)


@mcp.tool()
async def get_session_status(session_id: Optional[str] = None, ctx: Context = None) -> ToolResponse:
    """Return a session's status (this connection's session by default)."""
    return await _dispatch("get_session_status", {"session_id": session_id}, ctx)


# Events


@mcp.tool()
async def subscribe_events(types: Optional[List[str]] = None, ctx: Context = None) -> ToolResponse:
    """
    Start receiving server events from now on.

    Args:
        types: Any of overlay_created, overlay_removed, overlay_expired,
               mode_changed, session_ended. All types when omitted.

    Returns:
        ToolResponse with subscription_id for poll_events.
    """
    return await _dispatch("subscribe_events", {"types": types}, ctx)


@mcp.tool()
async def poll_events(
    subscription_id: str,
    max_events: int = 100,
    timeout_ms: int = 0,
    ctx: Context = None,
) -> ToolResponse:
    """
    Fetch queued events for a subscription.

    Waits up to timeout_ms for the first event. "dropped" counts events
    discarded because the subscription fell behind.
    """
    return await _dispatch(
        "poll_events",
        {"subscription_id": subscription_id, "max_events": max_events, "timeout_ms": timeout_ms},
        ctx,
    )


@mcp.tool()
async def unsubscribe_events(subscription_id: str, ctx: Context = None) -> ToolResponse:
    """Stop a subscription."""
    return await _dispatch("unsubscribe_events", {"subscription_id": subscription_id}, ctx)


# MCP prompt templates

_PROMPT_TEMPLATE_META: Dict[str, Dict[str, str]] = {
    "annotate_before_acting": {
        "title": "Annotate the target before acting",
        "description": "Highlight what you are about to click so the user can follow along.",
    },
    "confirmation_flow": {
        "title": "Handle confirmation_required responses",
        "description": "Explain how to complete a deferred action with confirm_action.",
    },
    "overlay_cleanup": {
        "title": "Clean up overlays",
        "description": "Remove the overlays drawn for a finished task.",
    },
}


@mcp.prompt(
    name="annotate_before_acting",
    title="Annotate the target before acting",
    description="Highlight what you are about to click so the user can follow along.",
)
def prompt_annotate_before_acting(goal: str, target_hint: Optional[str] = None) -> str:
    """Prompt template for overlay-first interaction."""
    target = target_hint or "the element you intend to use"
    return _prompt_text(
        f"""
        Goal: {goal}. Call `get_mode` first and `take_screenshot` to locate {target}.
        Draw it with `draw_overlay(region=..., color="yellow", label=..., ttl_millis=5000)` before any input.
        Only then call `click_at` / `type_text`; if the response status is "confirmation_required", wait for the user.
        """
    )


@mcp.prompt(
    name="confirmation_flow",
    title="Handle confirmation_required responses",
    description="Explain how to complete a deferred action with confirm_action.",
)
def prompt_confirmation_flow(tool: str) -> str:
    """Prompt template for the two-step confirmation protocol."""
    return _prompt_text(
        f"""
        `{tool}` returned status "confirmation_required" with confirmation.token.
        Describe the pending action to the user. If they approve, call `confirm_action(token=...)` once before confirmation.expires_at.
        Do not retry with the same token: a second use fails with already_confirmed.
        """
    )


@mcp.prompt(
    name="overlay_cleanup",
    title="Clean up overlays",
    description="Remove the overlays drawn for a finished task.",
)
def prompt_overlay_cleanup(keep_labels: Optional[str] = None) -> str:
    """Prompt template for removing leftover overlays."""
    keep = f"except those labelled {keep_labels}" if keep_labels else "that you drew"
    return _prompt_text(
        f"""
        Call `list_overlays` and remove every overlay {keep} with `remove_overlay(overlay_id=...)`.
        Use `clear_overlays` when nothing should stay on screen.
        """
    )


@mcp.tool()
async def list_prompt_templates() -> PromptTemplatesResult:
    """List available prompt templates for clients without prompt support."""
    templates = [
        PromptTemplateSummary(
            name=name,
            title=meta["title"],
            description=meta["description"],
        )
        for name, meta in _PROMPT_TEMPLATE_META.items()
    ]
    return PromptTemplatesResult(templates=templates)


def client_config(config: ServerConfig) -> Dict[str, Any]:
    """MCP client configuration snippet for the enabled transports."""
    servers: Dict[str, Any] = {}
    if "http" in config.transports:
        servers["overlay-companion"] = {
            "type": "http",
            "url": f"http://{config.host}:{config.port}{mcp.settings.streamable_http_path}",
        }
    if "stdio" in config.transports:
        servers["overlay-companion-stdio"] = {
            "command": "overlay-companion-mcp",
            "args": ["--transport", "stdio"],
        }
    return {"mcpServers": servers}


@mcp.custom_route("/config", methods=["GET"])
async def http_client_config(request: Request) -> JSONResponse:
    return JSONResponse(client_config(_get_runtime().config))


async def _serve(config: ServerConfig) -> None:
    async with anyio.create_task_group() as tg:
        if "http" in config.transports:
            tg.start_soon(mcp.run_streamable_http_async)
        if "stdio" in config.transports:
            tg.start_soon(mcp.run_stdio_async)


def main(argv: Optional[List[str]] = None):
    """Entry point for the MCP server."""
    config = load_config(argv)
    configure_logging(config.log_level)
    mcp.settings.host = config.host
    mcp.settings.port = config.port
    mcp.settings.log_level = config.log_level

    runtime = OverlayCompanion(config)
    set_runtime(runtime)
    runtime.start()
    logger.info("Transports: %s", ", ".join(sorted(config.transports)))
    if "http" in config.transports:
        logger.info("Client config: %s", json.dumps(client_config(config)))
    try:
        anyio.run(_serve, config)
    except KeyboardInterrupt:
        pass
    finally:
        runtime.stop()
        set_runtime(None)


if __name__ == "__main__":
    main()
