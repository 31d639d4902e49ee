"""
Shared Session Context

Read-model for one session, built by consuming that session's EventBus.
Projections (messages, tool calls, agent interactions, final result) are pure
functions of the contributions log, applied in publication order.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Set

from .event_bus import EventBus
from .types import (
    AgentEvent,
    AgentInteraction,
    EventType,
    Message,
    ToolCallRecord,
    ToolCallStatus,
)
from ...utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class ContextStatistics:
    """Summary of a shared context"""

    total_messages: int
    total_tool_calls: int
    total_agent_interactions: int
    total_events: int
    has_finalized: bool
    last_activity: Optional[datetime]
    active_agents: Set[str] = field(default_factory=set)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_messages": self.total_messages,
            "total_tool_calls": self.total_tool_calls,
            "total_agent_interactions": self.total_agent_interactions,
            "total_events": self.total_events,
            "has_finalized": self.has_finalized,
            "last_activity": self.last_activity.isoformat() if self.last_activity else None,
            "active_agents": sorted(self.active_agents),
        }


class SharedContext:
    """
    Aggregated state of one session's collaboration.

    The aggregate subscribes to its bus before anyone else can, so every other
    subscriber observes projections that already include the event it is
    handling. Accessors return copies; the only way to change state is publish().
    """

    def __init__(self, session_id: str, bus: Optional[EventBus] = None):
        self.session_id = session_id
        self.bus = bus or EventBus(session_id)

        self._contributions: List[AgentEvent] = []
        self._messages: List[Message] = []
        self._tool_calls: List[ToolCallRecord] = []
        self._agent_interactions: List[AgentEvent] = []
        self._final_result: Optional[Dict[str, Any]] = None

        self._unsubscribe = self.bus.subscribe(self._apply)

    # ============================================
    # Write side
    # ============================================

    def publish(self, event: AgentEvent) -> None:
        """Publish an event to this session's bus."""
        self.bus.publish(event)

    def publish_message(self, agent_id: str, message: Message) -> AgentEvent:
        event = AgentEvent(type=EventType.MESSAGE, agent_id=agent_id, payload=message)
        self.publish(event)
        return event

    def publish_tool_call(self, agent_id: str, record: ToolCallRecord) -> AgentEvent:
        event = AgentEvent(type=EventType.TOOL, agent_id=agent_id, payload=record)
        self.publish(event)
        return event

    def publish_interaction(self, agent_id: str, interaction: AgentInteraction) -> AgentEvent:
        event = AgentEvent(type=EventType.AGENT_CALL, agent_id=agent_id, payload=interaction)
        self.publish(event)
        return event

    def publish_final(self, agent_id: str, result: Dict[str, Any]) -> AgentEvent:
        event = AgentEvent(type=EventType.FINAL, agent_id=agent_id, payload=result)
        self.publish(event)
        return event

    def _apply(self, event: AgentEvent) -> None:
        self._contributions.append(event)

        if event.type == EventType.MESSAGE:
            self._messages.append(event.payload)
        elif event.type == EventType.TOOL:
            self._tool_calls.append(event.payload)
        elif event.type == EventType.AGENT_CALL:
            logger.debug(
                "Agent interaction registered",
                session_id=self.session_id,
                agent_id=event.agent_id,
                initiator=event.payload.initiator,
            )
            self._agent_interactions.append(event)
        elif event.type == EventType.FINAL:
            self._final_result = event.payload

    # ============================================
    # Read side
    # ============================================

    @property
    def contributions(self) -> List[AgentEvent]:
        return list(self._contributions)

    @property
    def final_result(self) -> Optional[Dict[str, Any]]:
        return self._final_result

    def get_messages(self) -> List[Message]:
        return list(self._messages)

    def get_messages_for_agent(self, agent_id: str) -> List[Message]:
        return [
            evt.payload
            for evt in self._contributions
            if evt.type == EventType.MESSAGE and evt.agent_id == agent_id
        ]

    def get_tool_calls(self) -> List[ToolCallRecord]:
        return list(self._tool_calls)

    def get_agent_interactions(self) -> List[AgentEvent]:
        return list(self._agent_interactions)

    def failed_tool_calls(self) -> int:
        return sum(1 for tc in self._tool_calls if tc.status == ToolCallStatus.ERROR)

    def get_statistics(self) -> ContextStatistics:
        return ContextStatistics(
            total_messages=len(self._messages),
            total_tool_calls=len(self._tool_calls),
            total_agent_interactions=len(self._agent_interactions),
            total_events=len(self._contributions),
            has_finalized=self._final_result is not None,
            last_activity=max((e.timestamp for e in self._contributions), default=None),
            active_agents={e.agent_id for e in self._contributions},
        )

    def is_empty(self) -> bool:
        return not self._contributions

    def close(self) -> None:
        """Detach from the bus and close it. Used when the registry drops the entry."""
        self._unsubscribe()
        self.bus.close()

    def __repr__(self) -> str:
        return f"<SharedContext(session_id={self.session_id}, events={len(self._contributions)})>"
