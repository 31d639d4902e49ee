"""
Persistence Layer

Store interfaces and the SQLAlchemy service backing agents, sessions and events.
"""

from .models import Base, AgentModel, SessionModel, AgentEventModel
from .stores import SessionStore, AgentDefinitionStore
from .service import PersistenceService

__all__ = [
    "Base",
    "AgentModel",
    "SessionModel",
    "AgentEventModel",
    "SessionStore",
    "AgentDefinitionStore",
    "PersistenceService",
]
