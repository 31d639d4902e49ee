"""
Unit tests for AgentContainer
"""

import asyncio
import time

import pytest

from backend.commons.config import CommonsConfig
from backend.commons.errors import (
    ImmutableFieldError,
    InteractionTimeoutError,
    NotFoundError,
    ToolError,
)
from backend.commons.runtime.container import AgentContainer
from backend.commons.runtime.registry import ContextRegistry
from backend.commons.runtime.types import EventType, StepName

from fakes import BlockingModel, ScriptedModel, assistant, call, user


class CountingStore:
    """Wraps a session store and counts create_session calls."""

    def __init__(self, inner):
        self.inner = inner
        self.creates = []

    def create_session(self, agent_id, **kwargs):
        self.creates.append(kwargs.get("session_id"))
        return self.inner.create_session(agent_id, **kwargs)

    def __getattr__(self, name):
        return getattr(self.inner, name)


class CountingRegistry(ContextRegistry):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.created = []

    def _register(self, session_id, context):
        self.created.append(context)
        super()._register(session_id, context)


@pytest.mark.asyncio
async def test_run_agent_creates_session_and_context(container, persistence_service):
    result = await container.run_agent("agent-1", [user("hi")], session_id="s1", initiator="Alice")

    session = persistence_service.get_session("s1")
    assert session.agent_id == "agent-1"
    assert session.initiator == "alice"
    assert container.registry.has("s1")
    assert container.get_context("s1").final_result["message_id"] == result.final_message.message_id


@pytest.mark.asyncio
async def test_run_unknown_agent_creates_nothing(container, persistence_service):
    with pytest.raises(NotFoundError):
        await container.run_agent("ghost", [user("hi")], session_id="s1")

    assert persistence_service.get_session("s1") is None
    assert not container.registry.has("s1")


@pytest.mark.asyncio
async def test_concurrent_runs_share_one_session(config, tools, persistence_service, agent):
    """Two runs with the same explicit session id: one create_session, one context"""
    store = CountingStore(persistence_service)
    registry = CountingRegistry(store)
    container = AgentContainer(
        config,
        model=ScriptedModel(),
        tools=tools,
        agents=persistence_service,
        sessions=store,
        registry=registry,
    )

    results = await asyncio.gather(
        container.run_agent("agent-1", [user("one")], session_id="shared"),
        container.run_agent("agent-1", [user("two")], session_id="shared"),
    )

    assert [r.session_id for r in results] == ["shared", "shared"]
    assert store.creates == ["shared"]
    assert len(registry.created) == 1
    assert registry.count() == 1


@pytest.mark.asyncio
async def test_interaction_success(container, persistence_service):
    parent = await container.run_agent("agent-1", [user("start")], session_id="parent")
    container.model.script.append(assistant("hello from agent-2"))

    result = await container.interact_with_agent(
        "agent-1",
        "agent-2",
        [user("hi agent-2")],
        session_id="child",
        parent_session_id=parent.session_id,
        timeout=5,
    )

    assert result.session_id == "child"
    assert result.final["content"] == "hello from agent-2"

    child = persistence_service.get_session("child")
    assert child.parent_session_id == "parent"
    assert child.agent_id == "agent-2"
    assert [c.child_session_id for c in container.get_child_sessions("parent")] == ["child"]

    context = container.get_context("child")
    interactions = context.get_agent_interactions()
    assert len(interactions) == 1
    assert interactions[0].agent_id == "agent-2"
    assert interactions[0].payload.initiator == "agent-1"
    assert context.get_messages_for_agent("agent-1")[0].content == "hi agent-2"
    assert len(container.get_context("parent").get_agent_interactions()) == 1


@pytest.mark.asyncio
async def test_interaction_timeout(config, tools, persistence_service, agent, other_agent):
    """No final event within the bound -> InteractionTimeoutError, never early"""
    container = AgentContainer(
        config,
        model=BlockingModel(),
        tools=tools,
        agents=persistence_service,
        sessions=persistence_service,
    )
    timeout = 0.2

    start = time.monotonic()
    with pytest.raises(InteractionTimeoutError) as exc_info:
        await container.interact_with_agent("agent-1", "agent-2", [user("hello?")], timeout=timeout)
    elapsed = time.monotonic() - start

    assert elapsed >= timeout - 0.01
    assert exc_info.value.initiator == "agent-1"
    assert exc_info.value.target == "agent-2"
    assert exc_info.value.timeout == timeout
    assert container.get_context(exc_info.value.session_id).final_result is None


@pytest.mark.asyncio
async def test_interaction_uses_configured_timeout(tools, persistence_service, agent, other_agent, temp_db):
    config = CommonsConfig(anthropic_api_key="k", database_url=temp_db, interaction_timeout=0.1)
    container = AgentContainer(
        config,
        model=BlockingModel(),
        tools=tools,
        agents=persistence_service,
        sessions=persistence_service,
    )

    with pytest.raises(InteractionTimeoutError) as exc_info:
        await container.interact_with_agent("agent-1", "agent-2", [user("hello?")])

    assert exc_info.value.timeout == 0.1


@pytest.mark.asyncio
async def test_interaction_propagates_run_failure(container, persistence_service):
    persistence_service.update_agent("agent-2", {"tools": ["fail"]})
    container.model.script.append(assistant("", call("fail", "c1")))

    with pytest.raises(ToolError):
        await container.interact_with_agent("agent-1", "agent-2", [user("do it")], timeout=5)


@pytest.mark.asyncio
async def test_interaction_with_unknown_parent(container):
    with pytest.raises(NotFoundError):
        await container.interact_with_agent(
            "agent-1", "agent-2", [user("hi")], parent_session_id="missing", timeout=1
        )


def test_update_agent_rejects_immutable_fields(container):
    with pytest.raises(ImmutableFieldError):
        container.update_agent("agent-1", {"wallet": {"address": "0xdef"}})
    with pytest.raises(ImmutableFieldError):
        container.update_agent("agent-1", {"agent_id": "renamed"})

    updated = container.update_agent("agent-1", {"persona": "Curious.", "temperature": 0.1})
    assert updated.persona == "Curious."
    assert updated.temperature == 0.1
    assert updated.wallet == {"address": "0xabc"}


@pytest.mark.asyncio
async def test_generate_title_persists(container, persistence_service):
    await container.run_agent("agent-1", [user("Plan a trip to Lisbon")], session_id="s1")
    container.model.script.append(assistant(" Lisbon Trip Plan "))

    title = await container.generate_title("s1")

    assert title == "Lisbon Trip Plan"
    assert persistence_service.get_session("s1").title == "Lisbon Trip Plan"


@pytest.mark.asyncio
async def test_generate_title_unknown_session(container):
    with pytest.raises(NotFoundError):
        await container.generate_title("missing", [user("hi")])


@pytest.mark.asyncio
async def test_automatic_title_is_persisted(tools, persistence_service, agent, temp_db):
    config = CommonsConfig(anthropic_api_key="k", database_url=temp_db, generate_titles=True)
    container = AgentContainer(
        config,
        model=ScriptedModel([assistant("answer"), assistant("Short Title")]),
        tools=tools,
        agents=persistence_service,
        sessions=persistence_service,
    )

    result = await container.run_agent("agent-1", [user("question")], session_id="s1")

    assert result.state.steps[-2] == StepName.GENERATE_TITLE
    assert persistence_service.get_session("s1").title == "Short Title"


@pytest.mark.asyncio
async def test_automatic_title_only_for_untitled_sessions(tools, persistence_service, agent, temp_db):
    config = CommonsConfig(anthropic_api_key="k", database_url=temp_db, generate_titles=True)
    model = ScriptedModel([assistant("a1"), assistant("First Title"), assistant("a2"), assistant("a3")])
    container = AgentContainer(
        config,
        model=model,
        tools=tools,
        agents=persistence_service,
        sessions=persistence_service,
    )

    await container.run_agent("agent-1", [user("q1")], session_id="s1")
    second = await container.run_agent("agent-1", [user("q2")], session_id="s1")
    streamed = [
        u.step
        async for u in container.stream_agent("agent-1", [user("q3")], session_id="s1")
        if u.kind == "step"
    ]

    assert StepName.GENERATE_TITLE not in second.state.steps
    assert StepName.GENERATE_TITLE not in streamed
    assert len(model.calls) == 4
    assert persistence_service.get_session("s1").title == "First Title"


@pytest.mark.asyncio
async def test_session_locks_released(container):
    for i in range(20):
        await container.run_agent("agent-1", [user("hi")], session_id=f"s{i}")
        container.clear_context(f"s{i}")

    assert container._session_locks == {}
    assert container.registry.count() == 0


@pytest.mark.asyncio
async def test_session_locks_released_after_concurrent_runs(container, persistence_service):
    await asyncio.gather(
        *(container.run_agent("agent-1", [user(str(i))], session_id="shared") for i in range(5))
    )

    assert container._session_locks == {}
    assert persistence_service.get_session("shared") is not None


@pytest.mark.asyncio
async def test_stream_agent(container, persistence_service):
    updates = [u async for u in container.stream_agent("agent-1", [user("hi")], session_id="s1")]

    assert updates[-1].step == StepName.END
    assert persistence_service.get_session("s1") is not None


@pytest.mark.asyncio
async def test_save_clear_load_reset(container, persistence_service):
    await container.run_agent("agent-1", [user("remember me")], session_id="s1")
    before = container.get_context("s1").get_messages()

    snapshot = container.save_context("s1")
    assert snapshot.message_count == len(before)

    assert container.clear_context("s1") is True
    assert container.get_context("s1") is None

    restored = container.load_context("s1")
    assert restored.get_messages() == before

    container.reset_context("s1")
    assert container.get_context("s1") is None
    assert persistence_service.get_session("s1").history == []


@pytest.mark.asyncio
async def test_event_logging_hook(tools, persistence_service, agent, temp_db):
    config = CommonsConfig(anthropic_api_key="k", database_url=temp_db, enable_event_logging=True)
    persistence_service.config = config
    container = AgentContainer(
        config,
        model=ScriptedModel(),
        tools=tools,
        agents=persistence_service,
        sessions=persistence_service,
    )

    await container.run_agent("agent-1", [user("hi")], session_id="s1")

    events = persistence_service.get_events("s1")
    assert [e["type"] for e in events] == [
        EventType.MESSAGE.value,
        EventType.MESSAGE.value,
        EventType.FINAL.value,
    ]
