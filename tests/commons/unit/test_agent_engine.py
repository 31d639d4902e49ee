"""
Unit tests for the Claude model adapter (no network: the Anthropic client is faked)
"""

from types import SimpleNamespace

import pytest
from anthropic.types import TextBlock, ToolUseBlock

from backend.commons.errors import ModelError
from backend.commons.runtime.agent_engine import ClaudeModel, GenerationOptions
from backend.commons.runtime.types import Message, MessageRole

from fakes import assistant, call, user


def response(*blocks):
    return SimpleNamespace(
        content=list(blocks),
        usage=SimpleNamespace(input_tokens=3, output_tokens=5),
    )


def text_delta(text):
    return SimpleNamespace(type="content_block_delta", delta=SimpleNamespace(type="text_delta", text=text))


class FakeStream:
    def __init__(self, events, final):
        self.events = events
        self.final = final

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for event in self.events:
            yield event

    async def get_final_message(self):
        return self.final


class FakeMessages:
    def __init__(self, result, events=()):
        self.result = result
        self.events = list(events)
        self.requests = []

    async def create(self, **request):
        self.requests.append(("create", request))
        return self.result

    def stream(self, **request):
        self.requests.append(("stream", request))
        return FakeStream(self.events, self.result)


class FakeClient:
    def __init__(self, result, events=()):
        self.messages = FakeMessages(result, events)
        self.closed = False

    async def close(self):
        self.closed = True


@pytest.fixture
def make_model(config):
    def factory(result, events=()):
        client = FakeClient(result, events)
        return ClaudeModel(config, client=client), client

    return factory


def options(**kwargs):
    kwargs.setdefault("temperature", 0.5)
    kwargs.setdefault("top_p", 1.0)
    return GenerationOptions(**kwargs)


def test_convert_messages(config):
    model = ClaudeModel(config, client=FakeClient(None))
    messages = [
        Message(role=MessageRole.SYSTEM, content="You are helpful."),
        user("look up x"),
        assistant("Checking.", call("lookup", "c1", query="x"), call("lookup", "c2", query="y")),
        Message(role=MessageRole.TOOL, content='{"answer": 1}', tool_call_id="c1"),
        Message(role=MessageRole.TOOL, content='{"answer": 2}', tool_call_id="c2"),
        user("thanks"),
    ]

    system, converted = model._convert_messages(messages)

    assert system == "You are helpful."
    assert [m["role"] for m in converted] == ["user", "assistant", "user"]
    assert converted[1]["content"] == [
        {"type": "text", "text": "Checking."},
        {"type": "tool_use", "id": "c1", "name": "lookup", "input": {"query": "x"}},
        {"type": "tool_use", "id": "c2", "name": "lookup", "input": {"query": "y"}},
    ]
    # Both tool results and the next user turn share one user message
    assert converted[2]["content"] == [
        {"type": "tool_result", "tool_use_id": "c1", "content": '{"answer": 1}'},
        {"type": "tool_result", "tool_use_id": "c2", "content": '{"answer": 2}'},
        {"type": "text", "text": "thanks"},
    ]


def test_convert_skips_empty_messages(config):
    model = ClaudeModel(config, client=FakeClient(None))

    system, converted = model._convert_messages([user(""), user("hi")])

    assert system == ""
    assert converted == [{"role": "user", "content": [{"type": "text", "text": "hi"}]}]


@pytest.mark.asyncio
async def test_invoke_builds_request(make_model):
    model, client = make_model(response(TextBlock(type="text", text="hello")))
    tools = [{"name": "lookup", "description": "", "input_schema": {"type": "object"}}]

    message = await model.invoke(
        [Message(role=MessageRole.SYSTEM, content="sys"), user("hi")],
        options(temperature=0.2, top_p=0.8, tools=tools, max_tokens=100),
    )

    assert message.role == MessageRole.ASSISTANT
    assert message.content == "hello"
    assert message.tool_calls is None

    kind, request = client.messages.requests[0]
    assert kind == "create"
    assert request["temperature"] == 0.2
    assert request["top_p"] == 0.8
    assert request["max_tokens"] == 100
    assert request["system"] == "sys"
    assert request["tools"] == tools
    assert request["model"] == model.config.model


@pytest.mark.asyncio
async def test_invoke_omits_default_top_p_and_empty_fields(make_model):
    model, client = make_model(response(TextBlock(type="text", text="hello")))

    await model.invoke([user("hi")], options(model="claude-other"))

    _, request = client.messages.requests[0]
    assert "top_p" not in request
    assert "system" not in request
    assert "tools" not in request
    assert request["model"] == "claude-other"
    assert request["max_tokens"] == model.config.max_tokens


@pytest.mark.asyncio
async def test_invoke_parses_tool_use(make_model):
    model, _ = make_model(
        response(
            TextBlock(type="text", text="Let me check."),
            ToolUseBlock(type="tool_use", id="tu_1", name="lookup", input={"query": "x"}),
        )
    )

    message = await model.invoke([user("x?")], options())

    assert message.content == "Let me check."
    assert [(tc.id, tc.name, tc.arguments) for tc in message.tool_calls] == [
        ("tu_1", "lookup", {"query": "x"})
    ]


@pytest.mark.asyncio
async def test_invoke_empty_response_is_model_error(make_model):
    model, _ = make_model(response())

    with pytest.raises(ModelError):
        await model.invoke([user("hi")], options())


@pytest.mark.asyncio
async def test_invoke_without_messages_is_model_error(make_model):
    model, client = make_model(response(TextBlock(type="text", text="unused")))

    with pytest.raises(ModelError):
        await model.invoke([Message(role=MessageRole.SYSTEM, content="only system")], options())

    assert client.messages.requests == []


@pytest.mark.asyncio
async def test_invoke_streams_to_callbacks(make_model):
    events = [
        SimpleNamespace(type="message_start"),
        text_delta("Hel"),
        text_delta("lo"),
        SimpleNamespace(type="content_block_delta", delta=SimpleNamespace(type="input_json_delta")),
    ]
    model, client = make_model(response(TextBlock(type="text", text="Hello")), events)
    sync_tokens = []
    async_tokens = []

    async def async_callback(text):
        async_tokens.append(text)

    message = await model.invoke(
        [user("hi")], options(callbacks=[sync_tokens.append, async_callback])
    )

    assert client.messages.requests[0][0] == "stream"
    assert sync_tokens == ["Hel", "lo"]
    assert async_tokens == ["Hel", "lo"]
    assert message.content == "Hello"


@pytest.mark.asyncio
async def test_close_closes_client(make_model):
    model, client = make_model(response())

    await model.close()

    assert client.closed
