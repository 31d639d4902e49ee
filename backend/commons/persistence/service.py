"""
Commons Persistence Service

CRUD operations for agents, sessions and events, implementing the
SessionStore and AgentDefinitionStore interfaces on SQLAlchemy.
"""

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import create_engine, desc
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session as DBSession
from sqlalchemy.orm import sessionmaker

from .models import AgentEventModel, AgentModel, Base, SessionModel
from .stores import AgentDefinitionStore, SessionStore
from ..config import CommonsConfig
from ..errors import ImmutableFieldError, NotFoundError
from ..runtime.types import AgentDefinition, AgentEvent, ChildSessionInfo, Session
from ...utils.logger import get_logger

logger = get_logger(__name__)

_SESSION_UPDATABLE = {"title", "history", "metrics", "initiator", "updated_at"}
_AGENT_UPDATABLE = {"name", "persona", "instructions", "tools", "temperature", "top_p", "updated_at"}


class PersistenceService(SessionStore, AgentDefinitionStore):
    """
    Service for persisting agents, sessions and events.

    Features:
    - SQLAlchemy ORM with connection pooling
    - One DB session per operation, rolled back and re-raised on failure
    - Type conversion between domain and persistence models
    """

    def __init__(self, config: CommonsConfig):
        """
        Initialize persistence service.

        Args:
            config: Runtime configuration with database URL
        """
        self.config = config

        # SQLite doesn't support pool_size/max_overflow
        engine_kwargs = {"echo": config.log_level == "DEBUG"}
        if not config.database_url.startswith("sqlite"):
            engine_kwargs["pool_size"] = config.db_pool_size
            engine_kwargs["max_overflow"] = config.db_max_overflow

        self.engine = create_engine(config.database_url, **engine_kwargs)
        self.SessionLocal = sessionmaker(bind=self.engine, autocommit=False, autoflush=False)

        Base.metadata.create_all(bind=self.engine)
        logger.info("PersistenceService initialized", database_url=config.database_url)

    def get_db(self) -> DBSession:
        """Get a new database session."""
        return self.SessionLocal()

    # ============================================
    # Agent Operations
    # ============================================

    def create_agent(self, agent: AgentDefinition) -> AgentDefinition:
        db = self.get_db()
        try:
            model = AgentModel(
                agent_id=agent.agent_id,
                name=agent.name,
                persona=agent.persona,
                instructions=agent.instructions,
                tools=list(agent.tools),
                temperature=agent.temperature,
                top_p=agent.top_p,
                wallet=agent.wallet,
                created_at=agent.created_at,
                updated_at=agent.updated_at,
            )
            db.add(model)
            db.commit()
            logger.debug("Created agent", agent_id=agent.agent_id)
            return self._agent_model_to_domain(model)
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("Failed to create agent", agent_id=agent.agent_id, error=str(e))
            raise
        finally:
            db.close()

    def get_agent(self, agent_id: str) -> AgentDefinition:
        db = self.get_db()
        try:
            model = db.query(AgentModel).filter_by(agent_id=agent_id).first()
            if not model:
                raise NotFoundError("Agent", agent_id)
            return self._agent_model_to_domain(model)
        finally:
            db.close()

    def update_agent(self, agent_id: str, delta: Dict[str, Any]) -> AgentDefinition:
        """
        Update an agent.

        Raises:
            ImmutableFieldError: If the delta touches agent_id, wallet or created_at
            NotFoundError: If the agent does not exist
        """
        forbidden = set(delta) & AgentDefinition.IMMUTABLE_FIELDS
        if forbidden:
            raise ImmutableFieldError("agent", forbidden)
        unknown = set(delta) - _AGENT_UPDATABLE
        if unknown:
            raise ValueError(f"Unknown agent fields: {', '.join(sorted(unknown))}")

        db = self.get_db()
        try:
            model = db.query(AgentModel).filter_by(agent_id=agent_id).first()
            if not model:
                raise NotFoundError("Agent", agent_id)
            for key, value in delta.items():
                setattr(model, key, value)
            model.updated_at = delta.get("updated_at") or datetime.utcnow()
            db.commit()
            logger.debug("Updated agent", agent_id=agent_id, fields=sorted(delta))
            return self._agent_model_to_domain(model)
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("Failed to update agent", agent_id=agent_id, error=str(e))
            raise
        finally:
            db.close()

    # ============================================
    # Session Operations
    # ============================================

    def create_session(
        self,
        agent_id: str,
        session_id: Optional[str] = None,
        initiator: Optional[str] = None,
        parent_session_id: Optional[str] = None,
        title: Optional[str] = None,
    ) -> Session:
        session_id = session_id or str(uuid.uuid4())
        now = datetime.utcnow()

        db = self.get_db()
        try:
            if parent_session_id and not db.query(SessionModel).filter_by(
                session_id=parent_session_id
            ).first():
                raise NotFoundError("Session", parent_session_id)

            model = SessionModel(
                session_id=session_id,
                agent_id=agent_id,
                initiator=initiator.lower() if initiator else None,
                parent_session_id=parent_session_id,
                title=title,
                history=[],
                metrics={},
                created_at=now,
                updated_at=now,
            )
            db.add(model)
            db.commit()
            logger.debug(
                "Created session",
                session_id=session_id,
                agent_id=agent_id,
                parent_session_id=parent_session_id,
            )
            return self._session_model_to_domain(model)
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("Failed to create session", session_id=session_id, error=str(e))
            raise
        finally:
            db.close()

    def get_session(self, session_id: str) -> Optional[Session]:
        db = self.get_db()
        try:
            model = db.query(SessionModel).filter_by(session_id=session_id).first()
            if not model:
                return None
            return self._session_model_to_domain(model)
        finally:
            db.close()

    def update_session(self, session_id: str, delta: Dict[str, Any]) -> Session:
        """
        Update a session in a single transaction.

        Raises:
            ImmutableFieldError: If the delta touches identity or parent fields
            NotFoundError: If the session does not exist
        """
        forbidden = set(delta) & Session.IMMUTABLE_FIELDS
        if forbidden:
            raise ImmutableFieldError("session", forbidden)
        unknown = set(delta) - _SESSION_UPDATABLE
        if unknown:
            raise ValueError(f"Unknown session fields: {', '.join(sorted(unknown))}")

        db = self.get_db()
        try:
            model = db.query(SessionModel).filter_by(session_id=session_id).first()
            if not model:
                raise NotFoundError("Session", session_id)
            for key, value in delta.items():
                setattr(model, key, value)
            model.updated_at = delta.get("updated_at") or datetime.utcnow()
            db.commit()
            logger.debug("Updated session", session_id=session_id, fields=sorted(delta))
            return self._session_model_to_domain(model)
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("Failed to update session", session_id=session_id, error=str(e))
            raise
        finally:
            db.close()

    def get_child_sessions(self, parent_session_id: str) -> List[ChildSessionInfo]:
        db = self.get_db()
        try:
            models = (
                db.query(SessionModel)
                .filter_by(parent_session_id=parent_session_id)
                .order_by(SessionModel.created_at)
                .all()
            )
            logger.debug(
                "Found child sessions",
                parent_session_id=parent_session_id,
                count=len(models),
            )
            return [
                ChildSessionInfo(
                    child_session_id=m.session_id,
                    child_agent_id=m.agent_id,
                    title=m.title,
                    created_at=m.created_at,
                    updated_at=m.updated_at,
                )
                for m in models
            ]
        finally:
            db.close()

    def list_sessions(
        self, agent_id: Optional[str] = None, limit: int = 50, offset: int = 0
    ) -> List[Session]:
        db = self.get_db()
        try:
            query = db.query(SessionModel)
            if agent_id:
                query = query.filter_by(agent_id=agent_id)
            models = query.order_by(desc(SessionModel.updated_at)).limit(limit).offset(offset).all()
            return [self._session_model_to_domain(m) for m in models]
        finally:
            db.close()

    # ============================================
    # Event Operations (Optional, for debugging)
    # ============================================

    def save_event(self, session_id: str, event: AgentEvent) -> None:
        """
        Save a bus event to the database (if event logging is enabled).

        Failures are logged and not raised: event logging must never break a run.
        """
        if not self.config.enable_event_logging:
            return

        db = self.get_db()
        try:
            model = AgentEventModel(
                session_id=session_id,
                event_type=event.type,
                agent_id=event.agent_id,
                timestamp=event.timestamp,
                data=event.to_dict()["payload"],
            )
            db.add(model)
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(
                "Failed to save event",
                session_id=session_id,
                event_type=event.type.value,
                error=str(e),
            )
        finally:
            db.close()

    def get_events(self, session_id: str) -> List[Dict[str, Any]]:
        db = self.get_db()
        try:
            models = (
                db.query(AgentEventModel)
                .filter_by(session_id=session_id)
                .order_by(AgentEventModel.id)
                .all()
            )
            return [
                {
                    "type": m.event_type.value,
                    "agent_id": m.agent_id,
                    "payload": m.data,
                    "timestamp": m.timestamp.isoformat(),
                }
                for m in models
            ]
        finally:
            db.close()

    # ============================================
    # Helper Methods
    # ============================================

    def _agent_model_to_domain(self, model: AgentModel) -> AgentDefinition:
        return AgentDefinition(
            agent_id=model.agent_id,
            name=model.name or "",
            persona=model.persona or "",
            instructions=model.instructions or "",
            wallet=model.wallet,
            tools=list(model.tools or []),
            temperature=model.temperature,
            top_p=model.top_p,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )

    def _session_model_to_domain(self, model: SessionModel) -> Session:
        return Session(
            session_id=model.session_id,
            agent_id=model.agent_id,
            initiator=model.initiator,
            parent_session_id=model.parent_session_id,
            title=model.title,
            history=list(model.history or []),
            metrics=dict(model.metrics or {}),
            created_at=model.created_at,
            updated_at=model.updated_at,
        )

    def close(self) -> None:
        """Close the database engine."""
        self.engine.dispose()
        logger.info("PersistenceService closed")
