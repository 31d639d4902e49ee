"""
Commons Agent Container

Session-level orchestration around the step machine: ensures sessions exist,
hands runs their shared context, runs agent-to-agent interactions with a
timeout, and persists titles and context snapshots.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

from .agent_engine import LanguageModel
from .registry import ContextRegistry, ContextSnapshot
from .shared_context import SharedContext
from .step_machine import AgentStepMachine, MessageInput
from .tool_invoker import ToolInvoker
from .types import (
    AgentDefinition,
    AgentEvent,
    AgentInteraction,
    AgentRunResult,
    AgentRunState,
    ChildSessionInfo,
    EventType,
    Message,
    MessageRole,
    Session,
    StepName,
    StepUpdate,
    new_id,
)
from ..config import CommonsConfig
from ..errors import InteractionTimeoutError, NotFoundError
from ..persistence.stores import AgentDefinitionStore, SessionStore
from ...utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class InteractionResult:
    """Outcome of an agent-to-agent interaction"""

    session_id: str
    initiator: str
    target_agent_id: str
    final: Dict[str, Any]
    run: Optional[AgentRunResult] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "initiator": self.initiator,
            "target_agent_id": self.target_agent_id,
            "final": self.final,
        }


class AgentContainer:
    """
    Container for agent runs and their sessions.

    Features:
    - One stored session per id, even under concurrent first runs
    - One shared context per session (via ContextRegistry)
    - Agent-to-agent interactions bounded by a timeout
    - Title generation and context save/load/reset
    """

    def __init__(
        self,
        config: CommonsConfig,
        model: LanguageModel,
        tools: ToolInvoker,
        agents: AgentDefinitionStore,
        sessions: SessionStore,
        registry: Optional[ContextRegistry] = None,
        title_model: Optional[LanguageModel] = None,
    ):
        """
        Initialize container.

        Args:
            config: Runtime configuration
            model: LanguageModel for agent turns
            tools: ToolInvoker for tool calls
            agents: Agent definition store
            sessions: Session store
            registry: Context registry; one backed by `sessions` is created if omitted
            title_model: LanguageModel for titles; defaults to `model`
        """
        self.config = config
        self.model = model
        self.tools = tools
        self.agents = agents
        self.sessions = sessions
        self.registry = registry or ContextRegistry(
            sessions,
            maxsize=config.event_queue_maxsize,
            on_create=self._log_events if config.enable_event_logging else None,
        )
        self.machine = AgentStepMachine(
            model=model,
            tools=tools,
            agents=agents,
            sessions=sessions,
            config=config,
            title_model=title_model,
        )

        self._session_locks: Dict[str, asyncio.Lock] = {}

        logger.info("AgentContainer initialized", event_logging=config.enable_event_logging)

    # ============================================
    # Sessions
    # ============================================

    def _session_lock(self, session_id: str) -> asyncio.Lock:
        return self._session_locks.setdefault(session_id, asyncio.Lock())

    def _release_lock(self, session_id: str, lock: Optional[asyncio.Lock] = None) -> None:
        # Only the idle lock registered for this id is dropped
        current = self._session_locks.get(session_id)
        if current is not None and (lock is None or current is lock) and not current.locked():
            del self._session_locks[session_id]

    async def ensure_session(
        self,
        agent_id: str,
        session_id: str,
        initiator: Optional[str] = None,
        parent_session_id: Optional[str] = None,
    ) -> Session:
        """
        Return the stored session, creating it on first use.

        Concurrent callers with the same id are serialized, so the store sees
        exactly one create_session call per id. The lock is dropped again once
        no caller holds it.
        """
        lock = self._session_lock(session_id)
        try:
            async with lock:
                session = self.sessions.get_session(session_id)
                if session is not None:
                    return session

                session = self.sessions.create_session(
                    agent_id,
                    session_id=session_id,
                    initiator=initiator,
                    parent_session_id=parent_session_id,
                )
                logger.info(
                    "Session created",
                    session_id=session_id,
                    agent_id=agent_id,
                    parent_session_id=parent_session_id,
                )
                return session
        finally:
            self._release_lock(session_id, lock)

    def get_child_sessions(self, session_id: str) -> List[ChildSessionInfo]:
        return self.sessions.get_child_sessions(session_id)

    def create_agent(self, agent: AgentDefinition) -> AgentDefinition:
        created = self.agents.create_agent(agent)
        logger.info("Agent created", agent_id=created.agent_id)
        return created

    def get_agent(self, agent_id: str) -> AgentDefinition:
        return self.agents.get_agent(agent_id)

    def update_agent(self, agent_id: str, delta: Dict[str, Any]) -> AgentDefinition:
        """
        Update an agent definition.

        Raises:
            ImmutableFieldError: agent_id, wallet and created_at cannot change
            NotFoundError: Unknown agent
        """
        agent = self.agents.update_agent(agent_id, delta)
        logger.info("Agent updated", agent_id=agent_id, fields=sorted(delta))
        return agent

    # ============================================
    # Runs
    # ============================================

    async def run_agent(
        self,
        agent_id: str,
        messages: Sequence[MessageInput],
        session_id: Optional[str] = None,
        config: Optional[Dict[str, Any]] = None,
        initiator: Optional[str] = None,
        parent_session_id: Optional[str] = None,
    ) -> AgentRunResult:
        """
        Run an agent in a session and return the final state.

        Raises:
            NotFoundError: Unknown agent or parent session
            ToolError, ModelError: A step failed
        """
        self.agents.get_agent(agent_id)
        session_id = session_id or new_id()
        session = await self.ensure_session(agent_id, session_id, initiator, parent_session_id)
        context = self.registry.get_or_create(session_id)

        result = await self.machine.run(
            agent_id,
            messages,
            session_id=session_id,
            config=config,
            context=context,
            initiator=initiator,
            title=session.title,
        )
        self._persist_title(session, result.state)
        return result

    async def stream_agent(
        self,
        agent_id: str,
        messages: Sequence[MessageInput],
        session_id: Optional[str] = None,
        config: Optional[Dict[str, Any]] = None,
        initiator: Optional[str] = None,
        parent_session_id: Optional[str] = None,
    ) -> AsyncIterator[StepUpdate]:
        """Streaming counterpart of run_agent."""
        self.agents.get_agent(agent_id)
        session_id = session_id or new_id()
        session = await self.ensure_session(agent_id, session_id, initiator, parent_session_id)
        context = self.registry.get_or_create(session_id)

        async for update in self.machine.stream(
            agent_id,
            messages,
            session_id=session_id,
            config=config,
            context=context,
            initiator=initiator,
            title=session.title,
        ):
            if update.kind == "step" and update.step == StepName.END:
                self._persist_title(session, update.state)
            yield update

    async def interact_with_agent(
        self,
        initiator_agent_id: str,
        target_agent_id: str,
        messages: Sequence[MessageInput],
        session_id: Optional[str] = None,
        parent_session_id: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> InteractionResult:
        """
        Have one agent talk to another in a child session.

        The interaction is registered with an agentCall event, the target agent
        runs, and the call returns once the target publishes its final event.

        Args:
            initiator_agent_id: Agent starting the interaction
            target_agent_id: Agent being addressed
            messages: Messages for the target
            session_id: Existing interaction session to continue
            parent_session_id: Session the interaction was started from
            timeout: Seconds to wait for the final event (config default if None)

        Raises:
            InteractionTimeoutError: No final event within the timeout
            NotFoundError: Unknown target agent or parent session
        """
        timeout = timeout if timeout is not None else self.config.interaction_timeout
        self.agents.get_agent(target_agent_id)
        session_id = session_id or new_id()

        await self.ensure_session(
            target_agent_id,
            session_id,
            initiator=initiator_agent_id,
            parent_session_id=parent_session_id,
        )
        context = self.registry.get_or_create(session_id)

        incoming = [m if isinstance(m, Message) else Message.from_dict(m) for m in messages]
        text = next((m.text() for m in reversed(incoming) if m.role == MessageRole.USER), None)
        interaction = AgentInteraction(
            initiator=initiator_agent_id,
            target_agent_id=target_agent_id,
            message=text,
            session_id=session_id,
        )
        context.publish_interaction(target_agent_id, interaction)
        if parent_session_id and parent_session_id != session_id:
            self.registry.get_or_create(parent_session_id).publish_interaction(
                target_agent_id, interaction
            )

        logger.info(
            "Agent interaction started",
            session_id=session_id,
            initiator=initiator_agent_id,
            target=target_agent_id,
            timeout=timeout,
        )

        waiter = asyncio.create_task(
            context.bus.wait_for(
                EventType.FINAL,
                predicate=lambda event: event.agent_id == target_agent_id,
                timeout=timeout,
            )
        )
        # Let the waiter subscribe before the run can publish
        await asyncio.sleep(0)
        runner = asyncio.create_task(
            self.run_agent(
                target_agent_id,
                incoming,
                session_id=session_id,
                initiator=initiator_agent_id,
                parent_session_id=parent_session_id,
            )
        )

        try:
            final_event = await self._await_final(waiter, runner)
        except asyncio.TimeoutError:
            logger.error(
                "Agent interaction timed out",
                session_id=session_id,
                initiator=initiator_agent_id,
                target=target_agent_id,
                timeout=timeout,
            )
            raise InteractionTimeoutError(
                initiator_agent_id, target_agent_id, session_id, timeout
            ) from None
        finally:
            pending = [task for task in (waiter, runner) if not task.done()]
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        run_result = runner.result() if runner.done() and not runner.cancelled() else None
        logger.info(
            "Agent interaction completed",
            session_id=session_id,
            initiator=initiator_agent_id,
            target=target_agent_id,
        )
        return InteractionResult(
            session_id=session_id,
            initiator=initiator_agent_id,
            target_agent_id=target_agent_id,
            final=final_event.payload,
            run=run_result,
        )

    @staticmethod
    async def _await_final(waiter: asyncio.Task, runner: asyncio.Task) -> AgentEvent:
        """Return the final event, or raise the run's error if it failed first."""
        pending = {waiter, runner}
        while True:
            done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
            if runner in done and runner.exception() is not None:
                raise runner.exception()
            if waiter in done:
                return waiter.result()

    # ============================================
    # Titles
    # ============================================

    async def generate_title(
        self, session_id: str, messages: Optional[Sequence[MessageInput]] = None
    ) -> Optional[str]:
        """
        Generate and store a title for a session.

        Uses the given messages, or the session's shared context when none are
        passed. Returns None when there is no user text to title.

        Raises:
            NotFoundError: Unknown session
        """
        session = self.sessions.get_session(session_id)
        if session is None:
            raise NotFoundError("Session", session_id)

        if messages:
            history = [m if isinstance(m, Message) else Message.from_dict(m) for m in messages]
        else:
            history = self.registry.get_or_create(session_id).get_messages()

        state = AgentRunState(session_id=session_id, agent_id=session.agent_id, messages=history)
        title = await self.machine.generate_title(state)
        if title:
            self.sessions.update_session(session_id, {"title": title})
            logger.info("Session titled", session_id=session_id, title=title)
        return title

    def _persist_title(self, session: Session, state: Optional[AgentRunState]) -> None:
        if state is None or not state.title or state.title == session.title:
            return
        self.sessions.update_session(session.session_id, {"title": state.title})
        session.title = state.title

    # ============================================
    # Shared context
    # ============================================

    def get_context(self, session_id: str) -> Optional[SharedContext]:
        return self.registry.get(session_id)

    def save_context(self, session_id: str) -> ContextSnapshot:
        return self.registry.save_to_store(session_id)

    def load_context(self, session_id: str) -> SharedContext:
        return self.registry.load_from_store(session_id)

    def clear_context(self, session_id: str) -> bool:
        self._release_lock(session_id)
        return self.registry.clear(session_id)

    def reset_context(self, session_id: str) -> None:
        self._release_lock(session_id)
        self.registry.reset(session_id)

    def _log_events(self, context: SharedContext) -> None:
        save_event = getattr(self.sessions, "save_event", None)
        if save_event is None:
            return
        context.bus.subscribe(lambda event: save_event(context.session_id, event))

    async def close(self) -> None:
        """Drop every live context and close the models."""
        for session_id in self.registry.list_active_ids():
            self.registry.clear(session_id)
        self._session_locks.clear()
        await self.model.close()
        if self.machine.title_model is not self.model:
            await self.machine.title_model.close()
        logger.info("AgentContainer closed")
