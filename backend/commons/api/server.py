"""
Commons API Server

aiohttp-based HTTP server with WebSocket streaming of agent runs.
"""

from typing import Any, Dict, Optional

import aiohttp
from aiohttp import web

from .. import __version__
from ..config import CommonsConfig
from ..errors import InteractionTimeoutError, ModelError, NotFoundError, ToolError
from ..persistence import PersistenceService
from ..runtime import (
    AgentContainer,
    AgentDefinition,
    AgentRunResult,
    ClaudeModel,
    HttpToolInvoker,
    SharedContext,
    ToolRegistry,
)
from ..runtime.types import new_id
from ...utils.logger import get_logger

logger = get_logger(__name__)

API_PREFIX = "/api/commons"


# ============================================
# Helpers
# ============================================


def _error_response(error: Exception, action: str, **context: Any) -> web.Response:
    """Map runtime errors to HTTP status codes and log them."""
    if isinstance(error, NotFoundError):
        status = 404
    elif isinstance(error, InteractionTimeoutError):
        status = 504
    elif isinstance(error, (ToolError, ModelError)):
        status = 502
    elif isinstance(error, ValueError):
        status = 400
    else:
        status = 500

    if status >= 500:
        logger.exception(f"Error {action}", status=status, **context)
    else:
        logger.warning(f"Rejected {action}", status=status, error=str(error), **context)

    return web.json_response({"error": str(error), "type": type(error).__name__}, status=status)


async def _read_json(request: web.Request) -> Dict[str, Any]:
    if not request.can_read_body:
        return {}
    data = await request.json()
    if not isinstance(data, dict):
        raise ValueError("request body must be a JSON object")
    return data


def _require_messages(data: Dict[str, Any]) -> list:
    messages = data.get("messages")
    if not isinstance(messages, list) or not messages:
        raise ValueError("messages must be a non-empty list")
    return messages


def _run_to_dict(result: AgentRunResult) -> Dict[str, Any]:
    final = result.final_message
    return {
        "session_id": result.session_id,
        "title": result.state.title,
        "messages": [m.to_dict() for m in result.messages],
        "final_message": final.to_dict() if final else None,
        "steps": [s.value for s in result.state.steps],
    }


def _context_to_dict(context: SharedContext) -> Dict[str, Any]:
    return {
        "session_id": context.session_id,
        "statistics": context.get_statistics().to_dict(),
        "messages": [m.to_dict() for m in context.get_messages()],
        "tool_calls": [tc.to_dict() for tc in context.get_tool_calls()],
        "agent_interactions": [e.to_dict() for e in context.get_agent_interactions()],
        "final_result": context.final_result,
    }


# ============================================
# Agent handlers
# ============================================


async def create_agent_handler(request: web.Request) -> web.Response:
    """
    POST /api/commons/agents
    Register an agent definition.
    """
    container: AgentContainer = request.app["container"]

    try:
        data = await _read_json(request)
        agent = AgentDefinition(
            agent_id=data.get("agent_id") or new_id(),
            name=data.get("name", ""),
            persona=data.get("persona", ""),
            instructions=data.get("instructions", ""),
            wallet=data.get("wallet"),
            tools=list(data.get("tools") or []),
            temperature=data.get("temperature"),
            top_p=data.get("top_p"),
        )
        created = container.create_agent(agent)
        return web.json_response(created.to_dict(), status=201)

    except Exception as e:
        return _error_response(e, "creating agent")


async def get_agent_handler(request: web.Request) -> web.Response:
    """
    GET /api/commons/agents/{agent_id}
    """
    container: AgentContainer = request.app["container"]
    agent_id = request.match_info["agent_id"]

    try:
        return web.json_response(container.get_agent(agent_id).to_dict())
    except Exception as e:
        return _error_response(e, "getting agent", agent_id=agent_id)


async def update_agent_handler(request: web.Request) -> web.Response:
    """
    PATCH /api/commons/agents/{agent_id}
    Update mutable agent fields. agent_id, wallet and created_at are rejected.
    """
    container: AgentContainer = request.app["container"]
    agent_id = request.match_info["agent_id"]

    try:
        data = await _read_json(request)
        agent = container.update_agent(agent_id, data)
        return web.json_response(agent.to_dict())

    except Exception as e:
        return _error_response(e, "updating agent", agent_id=agent_id)


async def run_agent_handler(request: web.Request) -> web.Response:
    """
    POST /api/commons/agents/{agent_id}/run
    Run an agent turn and return the final state.

    Body: {"messages": [...], "session_id"?, "config"?, "initiator"?, "parent_session_id"?}
    """
    container: AgentContainer = request.app["container"]
    agent_id = request.match_info["agent_id"]

    try:
        data = await _read_json(request)
        result = await container.run_agent(
            agent_id,
            _require_messages(data),
            session_id=data.get("session_id"),
            config=data.get("config"),
            initiator=data.get("initiator"),
            parent_session_id=data.get("parent_session_id"),
        )
        return web.json_response(_run_to_dict(result))

    except Exception as e:
        return _error_response(e, "running agent", agent_id=agent_id)


async def interact_handler(request: web.Request) -> web.Response:
    """
    POST /api/commons/agents/{agent_id}/interact
    Have {agent_id} start or continue a conversation with another agent.

    Body: {"target_agent_id", "messages", "session_id"?, "parent_session_id"?, "timeout"?}
    """
    container: AgentContainer = request.app["container"]
    agent_id = request.match_info["agent_id"]

    try:
        data = await _read_json(request)
        target = data.get("target_agent_id")
        if not target:
            raise ValueError("target_agent_id is required")

        timeout = data.get("timeout")
        result = await container.interact_with_agent(
            agent_id,
            target,
            _require_messages(data),
            session_id=data.get("session_id"),
            parent_session_id=data.get("parent_session_id"),
            timeout=float(timeout) if timeout is not None else None,
        )
        return web.json_response(result.to_dict())

    except Exception as e:
        return _error_response(e, "running interaction", agent_id=agent_id)


async def stream_agent_handler(request: web.Request) -> web.WebSocketResponse:
    """
    WebSocket /api/commons/agents/{agent_id}/stream

    Each text frame is a run request (same body as /run). The server answers
    with {"type": "update", ...} frames for steps and tokens, then
    {"type": "done", "session_id"} or {"type": "error", ...}.
    """
    ws = web.WebSocketResponse()
    await ws.prepare(request)

    container: AgentContainer = request.app["container"]
    agent_id = request.match_info["agent_id"]

    logger.info("WebSocket connected", agent_id=agent_id)

    try:
        async for msg in ws:
            if msg.type == aiohttp.WSMsgType.TEXT:
                try:
                    data = msg.json()
                    session_id = data.get("session_id") or new_id()
                    async for update in container.stream_agent(
                        agent_id,
                        _require_messages(data),
                        session_id=session_id,
                        config=data.get("config"),
                        initiator=data.get("initiator"),
                        parent_session_id=data.get("parent_session_id"),
                    ):
                        if ws.closed:
                            break
                        await ws.send_json({"type": "update", **update.to_dict()})
                    if not ws.closed:
                        await ws.send_json({"type": "done", "session_id": session_id})
                except Exception as e:
                    logger.exception("Streaming run failed", agent_id=agent_id)
                    if not ws.closed:
                        await ws.send_json(
                            {"type": "error", "data": {"message": str(e), "error": type(e).__name__}}
                        )
            elif msg.type == aiohttp.WSMsgType.ERROR:
                logger.error("WebSocket error", agent_id=agent_id, error=str(ws.exception()))

    finally:
        if not ws.closed:
            await ws.close()
        logger.info("WebSocket closed", agent_id=agent_id)

    return ws


# ============================================
# Session handlers
# ============================================


async def get_context_handler(request: web.Request) -> web.Response:
    """
    GET /api/commons/sessions/{session_id}/context
    Current in-memory shared context of a session.
    """
    container: AgentContainer = request.app["container"]
    session_id = request.match_info["session_id"]

    context = container.get_context(session_id)
    if context is None:
        return web.json_response({"error": "No active context for session"}, status=404)

    return web.json_response(_context_to_dict(context))


async def save_context_handler(request: web.Request) -> web.Response:
    """
    POST /api/commons/sessions/{session_id}/context/save
    """
    container: AgentContainer = request.app["container"]
    session_id = request.match_info["session_id"]

    try:
        snapshot = container.save_context(session_id)
        return web.json_response(snapshot.to_dict())
    except Exception as e:
        return _error_response(e, "saving context", session_id=session_id)


async def load_context_handler(request: web.Request) -> web.Response:
    """
    POST /api/commons/sessions/{session_id}/context/load
    """
    container: AgentContainer = request.app["container"]
    session_id = request.match_info["session_id"]

    try:
        context = container.load_context(session_id)
        return web.json_response(_context_to_dict(context))
    except Exception as e:
        return _error_response(e, "loading context", session_id=session_id)


async def delete_context_handler(request: web.Request) -> web.Response:
    """
    DELETE /api/commons/sessions/{session_id}/context[?reset=true]

    Without reset, only the in-memory context is dropped. With reset=true the
    stored history and metrics are emptied too.
    """
    container: AgentContainer = request.app["container"]
    session_id = request.match_info["session_id"]

    try:
        if request.query.get("reset", "false").lower() == "true":
            existed = container.get_context(session_id) is not None
            container.reset_context(session_id)
            return web.json_response({"cleared": existed, "reset": True})

        return web.json_response({"cleared": container.clear_context(session_id), "reset": False})
    except Exception as e:
        return _error_response(e, "clearing context", session_id=session_id)


async def generate_title_handler(request: web.Request) -> web.Response:
    """
    POST /api/commons/sessions/{session_id}/title
    Body (optional): {"messages": [...]}; defaults to the session's context.
    """
    container: AgentContainer = request.app["container"]
    session_id = request.match_info["session_id"]

    try:
        data = await _read_json(request)
        title = await container.generate_title(session_id, data.get("messages"))
        return web.json_response({"session_id": session_id, "title": title})
    except Exception as e:
        return _error_response(e, "generating title", session_id=session_id)


async def child_sessions_handler(request: web.Request) -> web.Response:
    """
    GET /api/commons/sessions/{session_id}/children
    """
    container: AgentContainer = request.app["container"]
    session_id = request.match_info["session_id"]

    children = container.get_child_sessions(session_id)
    return web.json_response(
        {"children": [c.to_dict() for c in children], "count": len(children)}
    )


async def health_handler(request: web.Request) -> web.Response:
    """
    GET /api/commons/health
    """
    container: AgentContainer = request.app["container"]
    return web.json_response(
        {
            "status": "ok",
            "version": __version__,
            "active_contexts": container.registry.count(),
        }
    )


# ============================================
# Application
# ============================================


async def on_startup(app: web.Application) -> None:
    """Build the runtime unless a container was injected."""
    if "container" in app:
        logger.info("Commons API server started with injected container")
        return

    config: CommonsConfig = app["config"]

    persistence = PersistenceService(config)
    model = ClaudeModel(config)
    if config.tool_endpoint_url:
        tools = HttpToolInvoker(config.tool_endpoint_url, timeout=config.tool_timeout)
    else:
        tools = ToolRegistry()

    app["persistence"] = persistence
    app["container"] = AgentContainer(
        config,
        model=model,
        tools=tools,
        agents=persistence,
        sessions=persistence,
    )

    logger.info("Commons API server started", model=config.model)


async def on_cleanup(app: web.Application) -> None:
    """Cleanup on shutdown."""
    if "container" in app:
        await app["container"].close()
    if "persistence" in app:
        app["persistence"].close()

    logger.info("Commons API server stopped")


def create_app(config: CommonsConfig, container: Optional[AgentContainer] = None) -> web.Application:
    """
    Create the aiohttp application with routes.

    Args:
        config: CommonsConfig instance
        container: Prebuilt container (tests); built on startup if omitted

    Returns:
        Configured aiohttp application
    """
    app = web.Application()
    app["config"] = config
    if container is not None:
        app["container"] = container

    # Agents
    app.router.add_post(f"{API_PREFIX}/agents", create_agent_handler)
    app.router.add_get(f"{API_PREFIX}/agents/{{agent_id}}", get_agent_handler)
    app.router.add_patch(f"{API_PREFIX}/agents/{{agent_id}}", update_agent_handler)
    app.router.add_post(f"{API_PREFIX}/agents/{{agent_id}}/run", run_agent_handler)
    app.router.add_get(f"{API_PREFIX}/agents/{{agent_id}}/stream", stream_agent_handler)
    app.router.add_post(f"{API_PREFIX}/agents/{{agent_id}}/interact", interact_handler)

    # Sessions
    app.router.add_get(f"{API_PREFIX}/sessions/{{session_id}}/context", get_context_handler)
    app.router.add_post(f"{API_PREFIX}/sessions/{{session_id}}/context/save", save_context_handler)
    app.router.add_post(f"{API_PREFIX}/sessions/{{session_id}}/context/load", load_context_handler)
    app.router.add_delete(f"{API_PREFIX}/sessions/{{session_id}}/context", delete_context_handler)
    app.router.add_post(f"{API_PREFIX}/sessions/{{session_id}}/title", generate_title_handler)
    app.router.add_get(f"{API_PREFIX}/sessions/{{session_id}}/children", child_sessions_handler)

    app.router.add_get(f"{API_PREFIX}/health", health_handler)

    # Register lifecycle hooks
    app.on_startup.append(on_startup)
    app.on_cleanup.append(on_cleanup)

    return app
