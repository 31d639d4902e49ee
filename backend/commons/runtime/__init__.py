"""
Commons Runtime Core

Core runtime components: AgentStepMachine (agent turns), EventBus and
SharedContext (per-session collaboration state), ContextRegistry (one context
per session), AgentContainer (orchestration) and type definitions.
"""

# Always available: type definitions
from .types import (
    EventType,
    MessageRole,
    StepName,
    ToolCallStatus,
    Message,
    ToolCall,
    ToolCallRecord,
    AgentInteraction,
    AgentEvent,
    AgentDefinition,
    ChildSessionInfo,
    Session,
    GenerationParams,
    AgentRunState,
    AgentRunResult,
    StepUpdate,
)

# Import runtime components
from .event_bus import EventBus, EventStream
from .shared_context import SharedContext, ContextStatistics
from .registry import ContextRegistry, ContextSnapshot
from .tool_invoker import ToolInvoker, ToolRegistry, BaseTool, HttpToolInvoker
from .agent_engine import LanguageModel, ClaudeModel, GenerationOptions
from .step_machine import AgentStepMachine
from .container import AgentContainer, InteractionResult

__all__ = [
    # Types
    "EventType",
    "MessageRole",
    "StepName",
    "ToolCallStatus",
    "Message",
    "ToolCall",
    "ToolCallRecord",
    "AgentInteraction",
    "AgentEvent",
    "AgentDefinition",
    "ChildSessionInfo",
    "Session",
    "GenerationParams",
    "AgentRunState",
    "AgentRunResult",
    "StepUpdate",
    # Components
    "EventBus",
    "EventStream",
    "SharedContext",
    "ContextStatistics",
    "ContextRegistry",
    "ContextSnapshot",
    "ToolInvoker",
    "ToolRegistry",
    "BaseTool",
    "HttpToolInvoker",
    "LanguageModel",
    "ClaudeModel",
    "GenerationOptions",
    "AgentStepMachine",
    "AgentContainer",
    "InteractionResult",
]
