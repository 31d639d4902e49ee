"""
Shared fixtures for commons unit tests: temp SQLite persistence, a scripted
language model and an in-process tool registry.
"""

import os
import tempfile

import pytest

from backend.commons.config import CommonsConfig
from backend.commons.persistence import PersistenceService
from backend.commons.runtime.container import AgentContainer
from backend.commons.runtime.tool_invoker import ToolRegistry
from backend.commons.runtime.types import AgentDefinition

from fakes import ScriptedModel


@pytest.fixture
def temp_db():
    """Create a temporary database for testing"""
    fd, path = tempfile.mkstemp(suffix=".db")
    os.close(fd)
    yield f"sqlite:///{path}"
    os.unlink(path)


@pytest.fixture
def config(temp_db):
    return CommonsConfig(
        anthropic_api_key="test-key",
        database_url=temp_db,
        log_level="INFO",
    )


@pytest.fixture
def persistence_service(config):
    """Create a PersistenceService with temp database"""
    service = PersistenceService(config)
    yield service
    service.close()


@pytest.fixture
def agent(persistence_service):
    return persistence_service.create_agent(
        AgentDefinition(
            agent_id="agent-1",
            name="Researcher",
            persona="A careful researcher.",
            instructions="Answer briefly.",
            wallet={"address": "0xabc"},
            tools=["lookup", "fail"],
        )
    )


@pytest.fixture
def other_agent(persistence_service):
    return persistence_service.create_agent(
        AgentDefinition(agent_id="agent-2", name="Helper", persona="Helpful.", tools=[])
    )


@pytest.fixture
def tools():
    registry = ToolRegistry()

    async def lookup(query: str = "") -> dict:
        return {"answer": f"result for {query}"}

    async def fail(**kwargs) -> dict:
        raise RuntimeError("tool exploded")

    schema = {"type": "object", "properties": {"query": {"type": "string"}}}
    registry.register_function("lookup", "Look something up.", schema, lookup)
    registry.register_function("fail", "Always fails.", {"type": "object", "properties": {}}, fail)
    return registry


@pytest.fixture
def model():
    return ScriptedModel()


@pytest.fixture
def container(config, model, tools, persistence_service, agent, other_agent):
    return AgentContainer(
        config,
        model=model,
        tools=tools,
        agents=persistence_service,
        sessions=persistence_service,
    )
