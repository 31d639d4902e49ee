"""
Context Registry

Owns the one SharedContext (and its EventBus) of every live session, and moves
contexts between memory and the SessionStore.

Usage:
    registry = ContextRegistry(store)
    context = registry.get_or_create(session_id)
    registry.save_to_store(session_id)
"""

import json
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set

from .event_bus import EventBus
from .shared_context import SharedContext
from .types import AgentEvent, Message, ToolCallRecord
from ..errors import InvariantViolation, NotFoundError
from ..persistence.stores import SessionStore
from ...utils.logger import get_logger

logger = get_logger(__name__)

CONTEXT_METADATA_TYPE = "shared_context_metadata"

EMPTY_METRICS = {"tool_calls": 0, "error_count": 0, "total_duration_ms": 0}

ContextHook = Callable[[SharedContext], None]


@dataclass
class ContextSnapshot:
    """Summary of a context written to the store"""

    session_id: str
    message_count: int
    tool_call_count: int
    interaction_count: int
    has_final_result: bool
    last_updated: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "message_count": self.message_count,
            "tool_call_count": self.tool_call_count,
            "interaction_count": self.interaction_count,
            "has_final_result": self.has_final_result,
            "last_updated": self.last_updated.isoformat(),
        }


class ContextRegistry:
    """
    Registry of live shared contexts, keyed by session id.

    At most one context exists per session id. Entries are created lazily by
    get_or_create() and only removed by clear() or reset().
    """

    def __init__(
        self,
        store: Optional[SessionStore] = None,
        maxsize: int = 1000,
        on_create: Optional[ContextHook] = None,
    ):
        """
        Args:
            store: Session store used by save/load/reset
            maxsize: Queue bound for async consumers of each bus
            on_create: Called once for each new context, before it is returned
                to anyone. Runs under the registry lock and must not call back
                into the registry.
        """
        self._store = store
        self._maxsize = maxsize
        self._on_create = on_create
        self._contexts: Dict[str, SharedContext] = {}
        self._lock = threading.Lock()

    # ============================================
    # Lifecycle
    # ============================================

    def get_or_create(self, session_id: str) -> SharedContext:
        """Return the session's context, creating it on first access."""
        with self._lock:
            context = self._contexts.get(session_id)
            if context is not None:
                return context

            context = SharedContext(session_id, EventBus(session_id, maxsize=self._maxsize))
            self._register(session_id, context)
            if self._on_create is not None:
                self._on_create(context)

        logger.debug("Created shared context", session_id=session_id)
        return context

    def get(self, session_id: str) -> Optional[SharedContext]:
        with self._lock:
            return self._contexts.get(session_id)

    def _register(self, session_id: str, context: SharedContext) -> None:
        # Caller holds self._lock
        if session_id in self._contexts:
            raise InvariantViolation(f"Context already registered for session {session_id}")
        self._contexts[session_id] = context

    def clear(self, session_id: str) -> bool:
        """
        Drop the session's context and close its bus.

        Returns:
            True if a context existed
        """
        with self._lock:
            context = self._contexts.pop(session_id, None)

        if context is None:
            return False

        context.close()
        logger.info("Cleared shared context", session_id=session_id)
        return True

    def has(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._contexts

    def list_active_ids(self) -> Set[str]:
        with self._lock:
            return set(self._contexts)

    def count(self) -> int:
        with self._lock:
            return len(self._contexts)

    # ============================================
    # Durable storage
    # ============================================

    def save_to_store(self, session_id: str) -> ContextSnapshot:
        """
        Write the session's context to its stored history and metrics.

        The whole snapshot goes out in one update_session call.

        Raises:
            NotFoundError: If the session is not in the store
        """
        store = self._require_store()
        if store.get_session(session_id) is None:
            raise NotFoundError("Session", session_id)

        context = self.get_or_create(session_id)
        messages = context.get_messages()
        tool_calls = context.get_tool_calls()
        interactions = context.get_agent_interactions()
        final_result = context.final_result
        now = datetime.utcnow()

        history: List[Dict[str, Any]] = [
            {
                "role": msg.role.value,
                "content": msg.content,
                "timestamp": msg.timestamp.isoformat(),
                "metadata": {"message_index": index, "from_shared_context": True},
            }
            for index, msg in enumerate(messages)
        ]
        history.append(
            {
                "role": "system",
                "content": json.dumps(
                    {
                        "type": CONTEXT_METADATA_TYPE,
                        "data": {
                            "messages": [m.to_dict() for m in messages],
                            "tool_calls": [tc.to_dict() for tc in tool_calls],
                            "agent_interactions": [e.to_dict() for e in interactions],
                            "final_result": final_result,
                            "last_updated": now.isoformat(),
                            "total_events": len(context.contributions),
                        },
                    },
                    default=str,
                ),
                "timestamp": now.isoformat(),
                "metadata": {"is_context_metadata": True, "from_shared_context": True},
            }
        )

        metrics = {
            "tool_calls": len(tool_calls),
            "error_count": context.failed_tool_calls(),
            "total_duration_ms": sum(tc.duration_ms for tc in tool_calls),
        }

        store.update_session(session_id, {"history": history, "metrics": metrics})

        logger.info(
            "Saved shared context",
            session_id=session_id,
            messages=len(messages),
            tool_calls=len(tool_calls),
            interactions=len(interactions),
        )
        return ContextSnapshot(
            session_id=session_id,
            message_count=len(messages),
            tool_call_count=len(tool_calls),
            interaction_count=len(interactions),
            has_final_result=final_result is not None,
            last_updated=now,
        )

    def load_from_store(self, session_id: str) -> SharedContext:
        """
        Rebuild the session's context from its stored snapshot.

        Messages and tool calls are attributed to the session's agent;
        interactions keep their own agent ids. A context that already holds
        events is returned unchanged.

        Raises:
            NotFoundError: If the session is not in the store
        """
        store = self._require_store()
        session = store.get_session(session_id)
        if session is None:
            raise NotFoundError("Session", session_id)

        context = self.get_or_create(session_id)
        if not context.is_empty():
            logger.debug("Context already populated, skipping load", session_id=session_id)
            return context

        data = self._find_snapshot(session.history)
        if data is None:
            logger.debug("No saved context found", session_id=session_id)
            return context

        for item in data.get("messages") or []:
            context.publish_message(session.agent_id, Message.from_dict(item))
        for item in data.get("tool_calls") or []:
            context.publish_tool_call(session.agent_id, ToolCallRecord.from_dict(item))
        for item in data.get("agent_interactions") or []:
            context.publish(AgentEvent.from_dict(item))
        if data.get("final_result") is not None:
            context.publish_final(session.agent_id, data["final_result"])

        logger.info(
            "Loaded shared context",
            session_id=session_id,
            events=len(context.contributions),
        )
        return context

    def reset(self, session_id: str) -> None:
        """
        Drop the in-memory context and empty the stored history and metrics.

        Raises:
            NotFoundError: If the session is not in the store
        """
        store = self._require_store()
        store.update_session(session_id, {"history": [], "metrics": dict(EMPTY_METRICS)})
        self.clear(session_id)
        logger.info("Reset shared context", session_id=session_id)

    # ============================================
    # Helpers
    # ============================================

    def _require_store(self) -> SessionStore:
        if self._store is None:
            raise RuntimeError("ContextRegistry has no session store")
        return self._store

    @staticmethod
    def _find_snapshot(history: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        for entry in reversed(history or []):
            if not (entry.get("metadata") or {}).get("is_context_metadata"):
                continue
            try:
                parsed = json.loads(entry.get("content") or "")
            except (TypeError, ValueError):
                logger.warning("Unreadable context metadata entry, ignoring")
                continue
            if isinstance(parsed, dict) and parsed.get("type") == CONTEXT_METADATA_TYPE:
                return parsed.get("data") or {}
        return None
