"""
Commons Runtime Type Definitions

Core data types: agent events, messages, tool calls, agents and sessions.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if value:
        return datetime.fromisoformat(value)
    return datetime.utcnow()


def new_id() -> str:
    return str(uuid.uuid4())


# ============================================
# Enums
# ============================================


class EventType(str, Enum):
    """Shared-context event types"""

    MESSAGE = "message"  # A chat message joined the conversation
    TOOL = "tool"  # A tool call was attempted
    AGENT_CALL = "agentCall"  # One agent started an interaction with another
    FINAL = "final"  # A terminal result was produced


class MessageRole(str, Enum):
    """Message role"""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class StepName(str, Enum):
    """Steps of the agent step machine"""

    START = "__start__"
    MODEL = "model"
    TOOLS = "tools"
    GENERATE_TITLE = "generate_title"
    END = "__end__"


class ToolCallStatus(str, Enum):
    SUCCESS = "success"
    ERROR = "error"


# ============================================
# Messages
# ============================================


ContentPart = Dict[str, Any]
MessageContent = Union[str, List[ContentPart]]


@dataclass
class ToolCall:
    """Tool call requested by the model"""

    id: str
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "arguments": self.arguments}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ToolCall":
        return cls(id=data["id"], name=data["name"], arguments=data.get("arguments") or {})


@dataclass
class Message:
    """Single message in a conversation"""

    role: MessageRole
    content: MessageContent = ""
    message_id: str = field(default_factory=new_id)
    tool_calls: Optional[List[ToolCall]] = None
    tool_call_id: Optional[str] = None
    name: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.utcnow)

    def __post_init__(self):
        if not isinstance(self.role, MessageRole):
            self.role = MessageRole(self.role)

    @property
    def pending_tool_calls(self) -> List[ToolCall]:
        if self.role != MessageRole.ASSISTANT:
            return []
        return list(self.tool_calls or [])

    def text(self) -> str:
        """Plain text of the message; for multi-part content, the first text part."""
        if isinstance(self.content, str):
            return self.content
        for part in self.content or []:
            if isinstance(part, dict) and part.get("type") == "text":
                return part.get("text", "")
        return ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message_id": self.message_id,
            "role": self.role.value,
            "content": self.content,
            "tool_calls": [tc.to_dict() for tc in self.tool_calls] if self.tool_calls else None,
            "tool_call_id": self.tool_call_id,
            "name": self.name,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        tool_calls = data.get("tool_calls")
        return cls(
            role=MessageRole(data["role"]),
            content=data.get("content", ""),
            message_id=data.get("message_id") or new_id(),
            tool_calls=[ToolCall.from_dict(tc) for tc in tool_calls] if tool_calls else None,
            tool_call_id=data.get("tool_call_id"),
            name=data.get("name"),
            timestamp=_parse_dt(data.get("timestamp")),
        )


# ============================================
# Shared-Context Payloads
# ============================================


@dataclass
class ToolCallRecord:
    """Outcome of one tool invocation"""

    name: str
    status: ToolCallStatus
    arguments: Dict[str, Any] = field(default_factory=dict)
    tool_call_id: Optional[str] = None
    duration_ms: float = 0.0
    result: Any = None
    error: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.utcnow)

    def __post_init__(self):
        if not isinstance(self.status, ToolCallStatus):
            self.status = ToolCallStatus(self.status)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tool_call_id": self.tool_call_id,
            "name": self.name,
            "status": self.status.value,
            "arguments": self.arguments,
            "duration_ms": self.duration_ms,
            "result": self.result,
            "error": self.error,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ToolCallRecord":
        return cls(
            name=data["name"],
            status=ToolCallStatus(data.get("status", ToolCallStatus.SUCCESS.value)),
            arguments=data.get("arguments") or {},
            tool_call_id=data.get("tool_call_id"),
            duration_ms=data.get("duration_ms", 0.0),
            result=data.get("result"),
            error=data.get("error"),
            timestamp=_parse_dt(data.get("timestamp")),
        )


@dataclass
class AgentInteraction:
    """An agent-to-agent call registered on a session"""

    initiator: str
    target_agent_id: Optional[str] = None
    message: Optional[str] = None
    session_id: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "initiator": self.initiator,
            "target_agent_id": self.target_agent_id,
            "message": self.message,
            "session_id": self.session_id,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AgentInteraction":
        return cls(
            initiator=data["initiator"],
            target_agent_id=data.get("target_agent_id"),
            message=data.get("message"),
            session_id=data.get("session_id"),
            timestamp=_parse_dt(data.get("timestamp")),
        )


_PAYLOAD_TYPES = {
    EventType.MESSAGE: Message,
    EventType.TOOL: ToolCallRecord,
    EventType.AGENT_CALL: AgentInteraction,
}


@dataclass(frozen=True)
class AgentEvent:
    """
    Immutable fact published to a session's event log.

    Payloads are typed by event type: MESSAGE carries a Message, TOOL a
    ToolCallRecord, AGENT_CALL an AgentInteraction and FINAL a plain dict.
    Dict payloads for the first three are converted with from_dict.
    """

    type: EventType
    agent_id: str
    payload: Any
    timestamp: datetime = field(default_factory=datetime.utcnow)

    def __post_init__(self):
        if not isinstance(self.type, EventType):
            object.__setattr__(self, "type", EventType(self.type))

        expected = _PAYLOAD_TYPES.get(self.type)
        if expected is None:
            if not isinstance(self.payload, dict):
                raise TypeError(f"{self.type.value} payload must be a dict")
            return
        if isinstance(self.payload, dict):
            object.__setattr__(self, "payload", expected.from_dict(self.payload))
        elif not isinstance(self.payload, expected):
            raise TypeError(
                f"{self.type.value} payload must be {expected.__name__}, "
                f"got {type(self.payload).__name__}"
            )

    def to_dict(self) -> Dict[str, Any]:
        payload = self.payload.to_dict() if hasattr(self.payload, "to_dict") else self.payload
        return {
            "type": self.type.value,
            "agent_id": self.agent_id,
            "payload": payload,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AgentEvent":
        return cls(
            type=EventType(data["type"]),
            agent_id=data["agent_id"],
            payload=data["payload"],
            timestamp=_parse_dt(data.get("timestamp")),
        )


# ============================================
# Agents and Sessions
# ============================================


@dataclass
class AgentDefinition:
    """Identity and behaviour of an agent"""

    agent_id: str
    name: str = ""
    persona: str = ""
    instructions: str = ""
    wallet: Optional[Dict[str, Any]] = None
    tools: List[str] = field(default_factory=list)
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)

    IMMUTABLE_FIELDS = frozenset({"agent_id", "wallet", "created_at"})

    def public_profile(self) -> Dict[str, Any]:
        """Agent fields that may be shown to a model (no credentials, no prompt text)."""
        return {
            "agent_id": self.agent_id,
            "name": self.name,
            "tools": list(self.tools),
            "temperature": self.temperature,
            "top_p": self.top_p,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "name": self.name,
            "persona": self.persona,
            "instructions": self.instructions,
            "tools": list(self.tools),
            "temperature": self.temperature,
            "top_p": self.top_p,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


@dataclass
class ChildSessionInfo:
    """An agent-to-agent conversation started from a parent session"""

    child_session_id: str
    child_agent_id: str
    title: Optional[str]
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "child_session_id": self.child_session_id,
            "child_agent_id": self.child_agent_id,
            "title": self.title,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


@dataclass
class Session:
    """A conversation thread"""

    session_id: str
    agent_id: str
    initiator: Optional[str] = None
    parent_session_id: Optional[str] = None
    title: Optional[str] = None
    history: List[Dict[str, Any]] = field(default_factory=list)
    metrics: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)

    IMMUTABLE_FIELDS = frozenset({"session_id", "agent_id", "parent_session_id", "created_at"})

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "agent_id": self.agent_id,
            "initiator": self.initiator,
            "parent_session_id": self.parent_session_id,
            "title": self.title,
            "metrics": self.metrics,
            "history_length": len(self.history),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


# ============================================
# Step Machine State
# ============================================


@dataclass
class GenerationParams:
    """Resolved sampling parameters for one model call"""

    temperature: float
    top_p: float

    @classmethod
    def resolve(
        cls,
        override: Optional[Dict[str, Any]],
        agent: Optional[AgentDefinition],
        default_temperature: float,
        default_top_p: float,
    ) -> "GenerationParams":
        """Call-time override, then the agent's default, then the system default."""
        override = override or {}

        def pick(key: str, agent_value: Optional[float], fallback: float) -> float:
            if override.get(key) is not None:
                return float(override[key])
            if agent_value is not None:
                return float(agent_value)
            return fallback

        return cls(
            temperature=pick("temperature", agent.temperature if agent else None, default_temperature),
            top_p=pick("top_p", agent.top_p if agent else None, default_top_p),
        )

    def to_dict(self) -> Dict[str, float]:
        return {"temperature": self.temperature, "top_p": self.top_p}


@dataclass
class AgentRunState:
    """State threaded through the step machine for one run"""

    session_id: str
    agent_id: str
    messages: List[Message] = field(default_factory=list)
    title: Optional[str] = None
    child_sessions: Dict[str, str] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)
    params: Optional[GenerationParams] = None
    steps: List[StepName] = field(default_factory=list)

    @property
    def last_message(self) -> Optional[Message]:
        return self.messages[-1] if self.messages else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "agent_id": self.agent_id,
            "title": self.title,
            "messages": [m.to_dict() for m in self.messages],
            "child_sessions": self.child_sessions,
            "metadata": self.metadata,
            "params": self.params.to_dict() if self.params else None,
            "steps": [s.value for s in self.steps],
        }


@dataclass
class AgentRunResult:
    """Final state of a batch run"""

    state: AgentRunState
    session_id: str

    @property
    def messages(self) -> List[Message]:
        return self.state.messages

    @property
    def final_message(self) -> Optional[Message]:
        return self.state.last_message


@dataclass
class StepUpdate:
    """One item of a streaming run: a completed step or a model text delta"""

    kind: str  # "step" | "token"
    session_id: str
    step: Optional[StepName] = None
    text: Optional[str] = None
    state: Optional[AgentRunState] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"kind": self.kind, "session_id": self.session_id}
        if self.step is not None:
            data["step"] = self.step.value
        if self.text is not None:
            data["text"] = self.text
        if self.kind == "step" and self.state is not None and self.state.last_message:
            data["message"] = self.state.last_message.to_dict()
        return data
