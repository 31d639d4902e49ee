"""
Commons SQLAlchemy Models

Database models for agents, sessions and (optionally) bus events.
"""

from datetime import datetime

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import declarative_base

from ..runtime.types import EventType

Base = declarative_base()


class AgentModel(Base):
    """Agent definition persistence model"""

    __tablename__ = "agents"

    # Primary key
    agent_id = Column(String(255), primary_key=True)

    # Behaviour
    name = Column(String(255), nullable=False, default="")
    persona = Column(Text, nullable=False, default="")
    instructions = Column(Text, nullable=False, default="")
    tools = Column(JSON, nullable=False, default=list)
    temperature = Column(Float)
    top_p = Column(Float)

    # Opaque credential handle
    wallet = Column(JSON)

    # Timestamps
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self):
        return f"<Agent(id={self.agent_id}, name={self.name})>"


class SessionModel(Base):
    """Session persistence model"""

    __tablename__ = "sessions"

    # Primary key
    session_id = Column(String(255), primary_key=True)

    # Ownership
    agent_id = Column(String(255), nullable=False, index=True)
    initiator = Column(String(255), index=True)
    parent_session_id = Column(String(255), ForeignKey("sessions.session_id"), index=True)

    # Content
    title = Column(String(500))
    history = Column(JSON, nullable=False, default=list)
    metrics = Column(JSON, nullable=False, default=dict)

    # Timestamps
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Indexes
    __table_args__ = (
        Index("idx_sessions_agent_created", "agent_id", "created_at"),
    )

    def __repr__(self):
        return f"<Session(id={self.session_id}, agent={self.agent_id})>"


class AgentEventModel(Base):
    """Bus event persistence model (optional, for debugging/analytics)"""

    __tablename__ = "agent_events"

    # Primary key
    id = Column(Integer, primary_key=True, autoincrement=True)

    # Foreign key
    session_id = Column(String(255), ForeignKey("sessions.session_id"), nullable=False)

    # Event data
    event_type = Column(Enum(EventType), nullable=False)
    agent_id = Column(String(255), nullable=False)
    timestamp = Column(DateTime, nullable=False, default=datetime.utcnow)
    data = Column(JSON, nullable=False)

    # Indexes
    __table_args__ = (
        Index("idx_events_session_type", "session_id", "event_type"),
        Index("idx_events_timestamp", "timestamp"),
    )

    def __repr__(self):
        return f"<AgentEvent(id={self.id}, type={self.event_type.value})>"
