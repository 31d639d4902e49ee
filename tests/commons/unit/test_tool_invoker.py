"""
Unit tests for ToolRegistry and HttpToolInvoker
"""

import asyncio

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp import test_utils

from backend.commons.errors import ToolError
from backend.commons.runtime.tool_invoker import BaseTool, HttpToolInvoker, ToolRegistry


class EchoTool(BaseTool):
    name = "echo"
    description = "Echo the input back."

    def get_schema(self):
        return {"type": "object", "properties": {"text": {"type": "string"}}}

    async def execute(self, text: str = ""):
        return text


def test_list_tools_filters_by_enabled(tools):
    assert [t["name"] for t in tools.list_tools()] == ["lookup", "fail"]
    assert [t["name"] for t in tools.list_tools(["fail", "missing"])] == ["fail"]
    assert tools.list_tools([]) == []


def test_tool_definitions_are_claude_format():
    registry = ToolRegistry([EchoTool()])

    assert registry.list_tools() == [
        {
            "name": "echo",
            "description": "Echo the input back.",
            "input_schema": {"type": "object", "properties": {"text": {"type": "string"}}},
        }
    ]
    assert registry.tool_names() == ["echo"]
    assert isinstance(registry.get_tool("echo"), EchoTool)


@pytest.mark.asyncio
async def test_invoke_wraps_non_dict_results():
    registry = ToolRegistry([EchoTool()])

    assert await registry.invoke("echo", {"text": "hi"}, {}) == {"result": "hi"}


@pytest.mark.asyncio
async def test_invoke_unknown_tool(tools):
    with pytest.raises(ToolError) as exc_info:
        await tools.invoke("missing", {}, {"agent_id": "a"})

    assert exc_info.value.tool_name == "missing"
    assert isinstance(exc_info.value.cause, KeyError)


@pytest.mark.asyncio
async def test_invoke_wraps_tool_exceptions(tools):
    with pytest.raises(ToolError) as exc_info:
        await tools.invoke("fail", {}, {})

    assert isinstance(exc_info.value.cause, RuntimeError)
    assert exc_info.value.elapsed >= 0


@pytest_asyncio.fixture
async def tool_server():
    """Remote tool endpoint that records requests."""
    received = []

    async def handle(request):
        body = await request.json()
        received.append(body)
        name = body["toolCall"]["name"]
        if name == "broken":
            return web.Response(status=500, text="server exploded")
        if name == "slow":
            await asyncio.sleep(1)
        if name == "list":
            return web.json_response([1, 2])
        return web.json_response({"echo": body["args"]})

    app = web.Application()
    app.router.add_post("/tools", handle)
    server = test_utils.TestServer(app)
    await server.start_server()
    server.received = received
    yield server
    await server.close()


@pytest.mark.asyncio
async def test_http_invoke_posts_tool_call(tool_server):
    invoker = HttpToolInvoker(str(tool_server.make_url("/tools")))

    result = await invoker.invoke("lookup", {"query": "x"}, {"agent_id": "a", "session_id": "s"})

    assert result == {"echo": {"query": "x"}}
    assert tool_server.received == [
        {
            "args": {"query": "x"},
            "toolCall": {"name": "lookup", "args": {"query": "x"}},
            "metadata": {"agent_id": "a", "session_id": "s"},
        }
    ]


@pytest.mark.asyncio
async def test_http_invoke_wraps_list_results(tool_server):
    invoker = HttpToolInvoker(str(tool_server.make_url("/tools")))

    assert await invoker.invoke("list", {}, {}) == {"result": [1, 2]}


@pytest.mark.asyncio
async def test_http_error_status_is_tool_error(tool_server):
    invoker = HttpToolInvoker(str(tool_server.make_url("/tools")))

    with pytest.raises(ToolError) as exc_info:
        await invoker.invoke("broken", {}, {})

    assert "500" in str(exc_info.value.cause)


@pytest.mark.asyncio
async def test_http_timeout_is_tool_error(tool_server):
    invoker = HttpToolInvoker(str(tool_server.make_url("/tools")), timeout=0.1)

    with pytest.raises(ToolError) as exc_info:
        await invoker.invoke("slow", {}, {})

    assert isinstance(exc_info.value.cause, asyncio.TimeoutError)


@pytest.mark.asyncio
async def test_http_unreachable_endpoint_is_tool_error():
    invoker = HttpToolInvoker("http://127.0.0.1:1/tools", timeout=2)

    with pytest.raises(ToolError):
        await invoker.invoke("lookup", {}, {})


def test_http_catalog_filtering():
    catalog = [{"name": "a"}, {"name": "b"}]
    invoker = HttpToolInvoker("http://localhost/tools", catalog=catalog)

    assert invoker.list_tools() == catalog
    assert invoker.list_tools(["b"]) == [{"name": "b"}]
