"""
Store Interfaces

Durable storage consumed by the runtime. Records are read and written whole;
an update either applies every field of the delta or raises.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from ..runtime.types import AgentDefinition, ChildSessionInfo, Session


class SessionStore(ABC):
    """Session records: metadata, history and metrics."""

    @abstractmethod
    def create_session(
        self,
        agent_id: str,
        session_id: Optional[str] = None,
        initiator: Optional[str] = None,
        parent_session_id: Optional[str] = None,
        title: Optional[str] = None,
    ) -> Session:
        """Create a session. Raises NotFoundError for an unknown parent."""

    @abstractmethod
    def get_session(self, session_id: str) -> Optional[Session]:
        """Return the session or None."""

    @abstractmethod
    def update_session(self, session_id: str, delta: Dict[str, Any]) -> Session:
        """Apply a field delta. Raises NotFoundError or ImmutableFieldError."""

    @abstractmethod
    def get_child_sessions(self, parent_session_id: str) -> List[ChildSessionInfo]:
        """Sessions whose parent is the given session, oldest first."""

    @abstractmethod
    def list_sessions(
        self, agent_id: Optional[str] = None, limit: int = 50, offset: int = 0
    ) -> List[Session]:
        """Sessions ordered by most recent update."""


class AgentDefinitionStore(ABC):
    """Agent definitions."""

    @abstractmethod
    def create_agent(self, agent: AgentDefinition) -> AgentDefinition:
        """Register an agent."""

    @abstractmethod
    def get_agent(self, agent_id: str) -> AgentDefinition:
        """Return the agent. Raises NotFoundError."""

    @abstractmethod
    def update_agent(self, agent_id: str, delta: Dict[str, Any]) -> AgentDefinition:
        """Apply a field delta. Raises NotFoundError or ImmutableFieldError."""
