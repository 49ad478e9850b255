"""Tests for the MCP tool surface."""

import asyncio
import gc
import json
import logging
from types import SimpleNamespace

from mcp.shared.memory import create_connected_server_and_client_session
from starlette.testclient import TestClient

from overlay_companion import server
from overlay_companion.config import ServerConfig
from overlay_companion.dispatcher import TOOLS
from overlay_companion.models import Region, SessionStatus
from overlay_companion.runtime import configure_logging

REGION = Region(x=10, y=20, width=30, height=40)


def run(coro):
    return asyncio.run(coro)


class FakeConnection:
    """Stands in for an MCP ServerSession."""


def _ctx(connection):
    return SimpleNamespace(request_context=SimpleNamespace(session=connection))


def _structured(result):
    """Structured ToolResponse from FastMCP.call_tool, checked against its text content."""
    if isinstance(result, tuple):
        content, structured = result
        assert json.loads(content[0].text) == structured
        return structured
    return result


async def _call_over_session(name, arguments):
    async with create_connected_server_and_client_session(server.mcp) as session:
        return await session.call_tool(name, arguments)


class TestRegistration:
    def test_every_tool_registered(self):
        names = {tool.name for tool in run(server.mcp.list_tools())}

        assert set(TOOLS) <= names
        assert "list_prompt_templates" in names

    def test_context_hidden_from_schema(self):
        tools = {tool.name: tool for tool in run(server.mcp.list_tools())}

        properties = tools["click_at"].inputSchema["properties"]
        assert set(properties) == {"x", "y", "button", "clicks"}

    def test_prompts_registered(self):
        names = {prompt.name for prompt in run(server.mcp.list_prompts())}
        assert names == set(server._PROMPT_TEMPLATE_META)


class TestToolCalls:
    """Call the MCP tool functions directly against a recording adapter."""

    def test_draw_and_list(self, server_runtime):
        drawn = run(server.draw_overlay(region=REGION, color="red", label="Save", ttl_millis=0))

        assert drawn.success is True
        listed = run(server.list_overlays())
        assert listed.result["count"] == 1
        assert listed.result["overlays"][0]["region"] == REGION.model_dump()

    def test_error_shape(self, server_runtime):
        response = run(server.remove_overlay(overlay_id="nope"))

        assert response.success is False
        assert response.status == "error"
        assert response.error.code == "not_found"

    def test_batch_error_index(self, server_runtime):
        overlays = [
            {"region": REGION.model_dump(), "color": "red"},
            {"region": {"x": 0, "y": 0, "width": 5, "height": -1}, "color": "red"},
        ]
        response = run(server.batch_overlay(overlays=overlays))

        assert response.error.code == "invalid_region"
        assert response.error.details["index"] == 1

    def test_confirmation_flow(self, server_runtime, recording_adapter):
        pending = run(server.click_at(x=5, y=6))

        assert pending.status == "confirmation_required"
        assert recording_adapter.calls_named("click") == []

        done = run(server.confirm_action(token=pending.confirmation.token))

        assert done.success is True
        assert recording_adapter.calls_named("click") == [("click", 5, 6, "left", 1)]

        again = run(server.confirm_action(token=pending.confirmation.token))
        assert again.error.code == "already_confirmed"

    def test_mode_switch(self, server_runtime, recording_adapter):
        assert run(server.set_mode(mode="autopilot")).result["previous"] == "assist"
        response = run(server.type_text(text="hi"))

        assert response.status == "ok"
        assert recording_adapter.calls_named("type_text") == [("type_text", "hi", 0.0)]
        assert run(server.get_mode()).result["mode"] == "autopilot"

    def test_bad_mode(self, server_runtime):
        assert run(server.set_mode(mode="sideways")).error.code == "invalid_params"

    def test_adapter_failure(self, server_runtime, recording_adapter):
        recording_adapter.fail_on.add("get_clipboard")

        response = run(server.get_clipboard())

        assert response.error.code == "adapter_failure"
        assert "Xauthority" not in response.error.message

    def test_screenshot_region(self, server_runtime):
        response = run(server.take_screenshot(region=REGION))
        assert (response.result["width"], response.result["height"]) == (30, 40)

    def test_events(self, server_runtime):
        sub = run(server.subscribe_events(types=["mode_changed"])).result
        run(server.set_mode(mode="passive"))

        polled = run(server.poll_events(subscription_id=sub["subscription_id"]))

        assert [e["payload"] for e in polled.result["events"]] == [{"from": "assist", "to": "passive"}]
        assert run(server.unsubscribe_events(subscription_id=sub["subscription_id"])).success is True


class TestCallTool:
    """Calls routed through FastMCP, the path both transports take."""

    def test_success(self, server_runtime):
        response = _structured(run(server.mcp.call_tool("draw_overlay", {"region": REGION.model_dump(), "color": "red"})))

        assert response["success"] is True
        assert response["status"] == "ok"
        assert response["result"]["overlay"]["region"] == REGION.model_dump()

    def test_confirmation_required(self, server_runtime, recording_adapter):
        response = _structured(run(server.mcp.call_tool("click_at", {"x": 5, "y": 6})))

        assert response["status"] == "confirmation_required"
        assert response["confirmation"]["tool"] == "click_at"
        assert response["confirmation"]["token"]
        assert recording_adapter.calls_named("click") == []

    def test_error(self, server_runtime):
        response = _structured(run(server.mcp.call_tool("remove_overlay", {"overlay_id": "nope"})))

        assert response["success"] is False
        assert response["error"]["code"] == "not_found"

    def test_wrongly_typed_argument(self, server_runtime, recording_adapter):
        response = _structured(run(server.mcp.call_tool("click_at", {"x": "abc", "y": 1})))

        assert response["status"] == "error"
        assert response["tool"] == "click_at"
        assert response["error"]["code"] == "invalid_params"
        assert response["error"]["details"]["fields"] == ["x"]
        assert recording_adapter.calls == []

    def test_incomplete_region(self, server_runtime):
        response = _structured(run(server.mcp.call_tool("draw_overlay", {"region": {"x": 0, "y": 0}, "color": "red"})))

        assert response["error"]["code"] == "invalid_params"
        fields = response["error"]["details"]["fields"]
        assert "region.width" in fields
        assert "region.height" in fields
        assert server_runtime.overlays.list_active() == []

    def test_missing_argument(self, server_runtime):
        response = _structured(run(server.mcp.call_tool("remove_overlay", {})))

        assert response["error"]["code"] == "invalid_params"
        assert response["error"]["details"]["fields"] == ["overlay_id"]

    def test_unknown_tool(self, server_runtime):
        response = _structured(run(server.mcp.call_tool("open_browser", {"url": "x"})))

        assert response["success"] is False
        assert response["tool"] == "open_browser"
        assert response["error"]["code"] == "unknown_tool"

    def test_client_session_gets_envelope(self, server_runtime):
        result = run(_call_over_session("click_at", {"x": "abc", "y": 1}))

        assert result.isError is False
        assert result.structuredContent["error"]["code"] == "invalid_params"
        assert json.loads(result.content[0].text) == result.structuredContent

    def test_same_shape_in_and_out_of_session(self, server_runtime):
        for name, arguments in (
            ("click_at", {"x": "abc", "y": 1}),
            ("remove_overlay", {"overlay_id": "nope"}),
            ("open_browser", {}),
        ):
            direct = _structured(run(server.mcp.call_tool(name, arguments)))
            remote = run(_call_over_session(name, arguments))

            assert remote.structuredContent == direct

    def test_client_session_success(self, server_runtime):
        result = run(_call_over_session("draw_overlay", {"region": REGION.model_dump(), "color": "blue"}))

        assert result.structuredContent["success"] is True
        assert len(server_runtime.overlays.list_active()) == 1


class TestSessions:
    """Connections map to sessions."""

    def test_direct_calls_share_a_session(self, server_runtime):
        first = run(server.get_session_status()).result["session"]["id"]
        second = run(server.get_session_status()).result["session"]["id"]
        assert first == second

    def test_connections_get_separate_sessions(self, server_runtime):
        a, b = FakeConnection(), FakeConnection()

        first = run(server.get_session_status(ctx=_ctx(a))).result["session"]["id"]
        second = run(server.get_session_status(ctx=_ctx(b))).result["session"]["id"]
        again = run(server.get_session_status(ctx=_ctx(a))).result["session"]["id"]

        assert first != second
        assert first == again

    def test_token_only_valid_on_issuing_connection(self, server_runtime):
        a, b = FakeConnection(), FakeConnection()
        pending = run(server.click_at(x=1, y=1, ctx=_ctx(a)))

        response = run(server.confirm_action(token=pending.confirmation.token, ctx=_ctx(b)))

        assert response.error.code == "permission_denied"

    def test_open_session_replaces_previous(self, server_runtime):
        old = run(server.get_session_status()).result["session"]["id"]
        pending = run(server.click_at(x=1, y=1))

        opened = run(server.open_session()).result["session"]["id"]

        assert opened != old
        assert run(server.get_session_status()).result["session"]["id"] == opened
        ended = server_runtime.sessions.status(old)
        assert ended.status is SessionStatus.ENDED
        assert ended.ended_reason == "replaced"
        response = run(server.confirm_action(token=pending.confirmation.token))
        assert response.error.code == "token_expired"

    def test_close_session(self, server_runtime):
        closed = run(server.close_session()).result["session"]
        assert closed["status"] == "ended"

        response = run(server.list_overlays())
        assert response.error.code == "session_expired"

    def test_disconnect_ends_session(self, server_runtime):
        connection = FakeConnection()
        session_id = run(server.get_session_status(ctx=_ctx(connection))).result["session"]["id"]

        del connection
        gc.collect()

        ended = server_runtime.sessions.status(session_id)
        assert ended.status is SessionStatus.ENDED
        assert ended.ended_reason == "transport_disconnected"


class TestPrompts:
    def test_list_prompt_templates(self):
        result = run(server.list_prompt_templates())
        assert [t.name for t in result.templates] == list(server._PROMPT_TEMPLATE_META)

    def test_annotate_prompt(self):
        text = server.prompt_annotate_before_acting("save the file", target_hint="the Save button")
        assert "save the file" in text
        assert "the Save button" in text
        assert "draw_overlay" in text

    def test_confirmation_prompt(self):
        text = server.prompt_confirmation_flow("click_at")
        assert "`click_at`" in text
        assert "confirm_action" in text

    def test_cleanup_prompt(self):
        assert "except those labelled keep" in server.prompt_overlay_cleanup("keep")
        assert "that you drew" in server.prompt_overlay_cleanup()


class TestClientConfig:
    def test_http_only(self):
        config = ServerConfig(port=4000)

        servers = server.client_config(config)["mcpServers"]

        assert list(servers) == ["overlay-companion"]
        assert servers["overlay-companion"]["url"] == (
            f"http://localhost:4000{server.mcp.settings.streamable_http_path}"
        )

    def test_both_transports(self):
        servers = server.client_config(ServerConfig(transports="http,stdio"))["mcpServers"]

        assert servers["overlay-companion-stdio"]["args"] == ["--transport", "stdio"]
        assert "overlay-companion" in servers

    def test_config_route(self, server_runtime):
        client = TestClient(server.mcp.streamable_http_app())

        response = client.get("/config")

        assert response.status_code == 200
        assert response.json() == server.client_config(server_runtime.config)


class TestLogging:
    def test_configure_logging_is_idempotent(self):
        configure_logging("DEBUG")
        configure_logging("WARNING")

        package_logger = logging.getLogger("overlay_companion")
        ours = [h for h in package_logger.handlers if getattr(h, "_overlay_companion", False)]
        assert len(ours) == 1
        assert package_logger.level == logging.WARNING
