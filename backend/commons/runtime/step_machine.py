"""
Agent Step Machine

Drives one agent turn: call the model, run any tools it asked for, and loop
until the model answers without tool calls.

    START -> model -> (tools -> model)* -> [generate_title] -> END

Batch (run) and streaming (stream) modes share the same step function.
"""

import asyncio
import json
import time
from datetime import datetime
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Sequence, Union

from .agent_engine import GenerationOptions, LanguageModel
from .shared_context import SharedContext
from .tool_invoker import ToolInvoker
from .types import (
    AgentDefinition,
    AgentRunResult,
    AgentRunState,
    GenerationParams,
    Message,
    MessageRole,
    StepName,
    StepUpdate,
    ToolCall,
    ToolCallRecord,
    ToolCallStatus,
    new_id,
)
from ..config import CommonsConfig
from ..errors import ModelError, ToolError
from ..persistence.stores import AgentDefinitionStore, SessionStore
from ...utils.logger import get_logger

logger = get_logger(__name__)

TITLE_INSTRUCTION = (
    "Generate a short, descriptive title (max 6 words) for this conversation "
    "based on the user's message. Do not use quotes or special characters."
)

MessageInput = Union[Message, Dict[str, Any]]
TokenSink = Callable[[str], Any]

_DONE = object()


class AgentStepMachine:
    """
    Runs agents against a LanguageModel and a ToolInvoker.

    When a SharedContext is passed to run()/stream(), every message, tool
    attempt and the final result is published to it. Messages already in the
    context are replayed ahead of the new ones, so a session id resumes the
    conversation it names.
    """

    def __init__(
        self,
        model: LanguageModel,
        tools: ToolInvoker,
        agents: AgentDefinitionStore,
        sessions: SessionStore,
        config: CommonsConfig,
        title_model: Optional[LanguageModel] = None,
    ):
        """
        Args:
            model: Model used for agent turns
            tools: Dispatcher for tool calls
            agents: Source of agent definitions
            sessions: Source of child-session summaries for the system prompt
            config: Defaults for generation parameters and title generation
            title_model: Model used for titles; defaults to `model`
        """
        self.model = model
        self.title_model = title_model or model
        self.tools = tools
        self.agents = agents
        self.sessions = sessions
        self.config = config

    # ============================================
    # Entry points
    # ============================================

    async def run(
        self,
        agent_id: str,
        messages: Sequence[MessageInput],
        session_id: Optional[str] = None,
        config: Optional[Dict[str, Any]] = None,
        context: Optional[SharedContext] = None,
        initiator: Optional[str] = None,
        title: Optional[str] = None,
    ) -> AgentRunResult:
        """
        Run the agent to completion.

        Args:
            agent_id: Agent to run
            messages: New messages for this turn
            session_id: Session to run in; a new id is generated if omitted
            config: Call-time overrides ({"temperature", "top_p"})
            context: Shared context to publish to
            initiator: Author of the incoming messages (defaults to the agent)
            title: Existing session title; the title step is skipped when set

        Raises:
            NotFoundError: Unknown agent
            ToolError: A tool call failed
            ModelError: The model call failed
        """
        state: Optional[AgentRunState] = None
        async for update in self._execute(
            agent_id, messages, session_id or new_id(), config, context, initiator, None, title
        ):
            state = update.state
        return AgentRunResult(state=state, session_id=state.session_id)

    async def stream(
        self,
        agent_id: str,
        messages: Sequence[MessageInput],
        session_id: Optional[str] = None,
        config: Optional[Dict[str, Any]] = None,
        context: Optional[SharedContext] = None,
        initiator: Optional[str] = None,
        title: Optional[str] = None,
    ) -> AsyncIterator[StepUpdate]:
        """
        Run the agent, yielding a "step" update after every step and a
        "token" update for each model text delta.
        """
        session_id = session_id or new_id()
        queue: asyncio.Queue = asyncio.Queue()

        def on_token(text: str) -> None:
            queue.put_nowait(StepUpdate(kind="token", session_id=session_id, text=text))

        async def pump() -> None:
            try:
                async for update in self._execute(
                    agent_id, messages, session_id, config, context, initiator, on_token, title
                ):
                    queue.put_nowait(update)
            except Exception as e:
                queue.put_nowait(e)
            finally:
                queue.put_nowait(_DONE)

        task = asyncio.create_task(pump())
        try:
            while True:
                item = await queue.get()
                if item is _DONE:
                    break
                if isinstance(item, Exception):
                    raise item
                yield item
        finally:
            if not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

    # ============================================
    # Step function
    # ============================================

    async def _execute(
        self,
        agent_id: str,
        messages: Sequence[MessageInput],
        session_id: str,
        overrides: Optional[Dict[str, Any]],
        context: Optional[SharedContext],
        initiator: Optional[str],
        on_token: Optional[TokenSink],
        title: Optional[str] = None,
    ) -> AsyncIterator[StepUpdate]:
        run_start = time.perf_counter()
        agent = self.agents.get_agent(agent_id)
        incoming = [m if isinstance(m, Message) else Message.from_dict(m) for m in messages]

        prior = context.get_messages() if context is not None else []
        state = AgentRunState(
            session_id=session_id,
            agent_id=agent_id,
            messages=prior + incoming,
            title=title,
            params=GenerationParams.resolve(
                overrides, agent, self.config.default_temperature, self.config.default_top_p
            ),
        )

        if context is not None:
            author = initiator or agent_id
            for msg in incoming:
                if msg.role != MessageRole.SYSTEM:
                    context.publish_message(author, msg)

        logger.info(
            "Run started",
            session_id=session_id,
            agent_id=agent_id,
            resumed_messages=len(prior),
            temperature=state.params.temperature,
            top_p=state.params.top_p,
        )

        step = StepName.START
        while step != StepName.END:
            if step == StepName.MODEL:
                await self._model_step(state, agent, context, on_token)
            elif step == StepName.TOOLS:
                await self._tools_step(state, context)
            elif step == StepName.GENERATE_TITLE:
                await self.generate_title(state)

            state.steps.append(step)
            yield StepUpdate(kind="step", session_id=session_id, step=step, state=state)
            step = self._next_step(step, state)

        final = state.last_message
        if context is not None:
            context.publish_final(
                agent_id,
                {
                    "session_id": session_id,
                    "message_id": final.message_id if final else None,
                    "content": final.content if final else None,
                },
            )

        state.steps.append(StepName.END)
        logger.info(
            "Run completed",
            session_id=session_id,
            agent_id=agent_id,
            steps=len(state.steps),
            duration_ms=round((time.perf_counter() - run_start) * 1000, 2),
        )
        yield StepUpdate(kind="step", session_id=session_id, step=StepName.END, state=state)

    def _next_step(self, step: StepName, state: AgentRunState) -> StepName:
        if step == StepName.START:
            return StepName.MODEL
        if step == StepName.MODEL:
            return self.branch(state)
        if step == StepName.TOOLS:
            return StepName.MODEL
        return StepName.END

    def branch(self, state: AgentRunState) -> StepName:
        """
        Choose the step after `model`.

        Pending tool calls on the last message always win. Otherwise the
        title side path is taken only when automatic titles are enabled and
        the state has no title yet.
        """
        last = state.last_message
        if last is not None and last.pending_tool_calls:
            return StepName.TOOLS
        if self.config.generate_titles and not state.title:
            return StepName.GENERATE_TITLE
        return StepName.END

    # ============================================
    # model
    # ============================================

    async def _model_step(
        self,
        state: AgentRunState,
        agent: AgentDefinition,
        context: Optional[SharedContext],
        on_token: Optional[TokenSink],
    ) -> None:
        if not state.messages or state.messages[0].role != MessageRole.SYSTEM:
            state.messages.insert(0, self._system_message(agent, state))

        options = GenerationOptions(
            temperature=state.params.temperature,
            top_p=state.params.top_p,
            tools=self.tools.list_tools(agent.tools),
            callbacks=[on_token] if on_token else [],
            max_tokens=self.config.max_tokens,
            model=self.config.model,
        )
        response = await self._call_model(self.model, list(state.messages), options, state)

        state.messages.append(response)
        state.metadata.setdefault("messages", {})[response.message_id] = {
            "agent_id": state.agent_id,
            "config": state.params.to_dict(),
        }
        if context is not None:
            context.publish_message(state.agent_id, response)

    async def _call_model(
        self,
        model: LanguageModel,
        messages: List[Message],
        options: GenerationOptions,
        state: AgentRunState,
    ) -> Message:
        start = time.perf_counter()
        try:
            response = await model.invoke(messages, options)
        except ModelError as e:
            e.elapsed = time.perf_counter() - start
            self._log_model_failure(e, state)
            raise
        except Exception as e:
            error = ModelError("model", cause=e, elapsed=time.perf_counter() - start)
            self._log_model_failure(error, state)
            raise error from e

        if not isinstance(response, Message):
            error = ModelError(
                "model",
                cause=TypeError(f"expected Message, got {type(response).__name__}"),
                elapsed=time.perf_counter() - start,
            )
            self._log_model_failure(error, state)
            raise error

        logger.debug(
            "Model call finished",
            session_id=state.session_id,
            model=options.model,
            duration_ms=round((time.perf_counter() - start) * 1000, 2),
            tool_calls=len(response.tool_calls or []),
        )
        return response

    @staticmethod
    def _log_model_failure(error: ModelError, state: AgentRunState) -> None:
        logger.error(
            "Model call failed",
            session_id=state.session_id,
            agent_id=state.agent_id,
            model=error.model,
            duration_ms=round(error.elapsed * 1000, 2),
            error=str(error.cause),
        )

    def _system_message(self, agent: AgentDefinition, state: AgentRunState) -> Message:
        children = self.sessions.get_child_sessions(state.session_id)
        state.child_sessions = {c.child_session_id: c.child_agent_id for c in children}

        sections = [
            "You are the following agent:",
            json.dumps(agent.public_profile()),
            "",
            "Persona:",
            agent.persona,
            "",
            "Instructions:",
            agent.instructions,
            "",
            f"The current date and time is {datetime.utcnow().isoformat()}Z.",
            f"**SESSION ID**: {state.session_id}",
            "",
            "You can interact with other agents one at a time. Once a conversation "
            "with another agent has started, continue it by passing the sessionId "
            "returned from the first interaction.",
        ]
        if children:
            sections += [
                "",
                "EXISTING CHILD SESSIONS:",
                "You have the following ongoing conversations with other agents. Use these "
                "sessionIds to continue existing conversations instead of starting new ones:",
            ]
            sections += [
                f"- Agent {c.child_agent_id}: {c.title or 'Untitled conversation'} "
                f"(sessionId={c.child_session_id}, started: {c.created_at.isoformat()})"
                for c in children
            ]

        return Message(role=MessageRole.SYSTEM, content="\n".join(sections))

    # ============================================
    # tools
    # ============================================

    async def _tools_step(self, state: AgentRunState, context: Optional[SharedContext]) -> None:
        pending = state.last_message.pending_tool_calls
        meta = {"agent_id": state.agent_id, "session_id": state.session_id}

        outcomes = await asyncio.gather(
            *(self._dispatch(call, meta, state, context) for call in pending),
            return_exceptions=True,
        )

        first_error: Optional[ToolError] = None
        for call, outcome in zip(pending, outcomes):
            if isinstance(outcome, ToolError):
                first_error = first_error or outcome
                content = json.dumps({"error": str(outcome.cause or outcome)}, default=str)
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                content = json.dumps(outcome, default=str)

            result_message = Message(
                role=MessageRole.TOOL,
                content=content,
                tool_call_id=call.id,
                name=call.name,
            )
            state.messages.append(result_message)
            if context is not None:
                context.publish_message(state.agent_id, result_message)

        if first_error is not None:
            raise first_error

    async def _dispatch(
        self,
        call: ToolCall,
        meta: Dict[str, Any],
        state: AgentRunState,
        context: Optional[SharedContext],
    ) -> Dict[str, Any]:
        start = time.perf_counter()
        try:
            result = await self.tools.invoke(call.name, call.arguments, dict(meta))
        except Exception as e:
            elapsed = time.perf_counter() - start
            if isinstance(e, ToolError):
                error = e
                error.elapsed = elapsed
            else:
                error = ToolError(call.name, cause=e, elapsed=elapsed)

            self._record_tool(
                context,
                state,
                ToolCallRecord(
                    name=call.name,
                    status=ToolCallStatus.ERROR,
                    arguments=call.arguments,
                    tool_call_id=call.id,
                    duration_ms=round(elapsed * 1000, 2),
                    error=str(error.cause or error),
                ),
            )
            logger.error(
                "Tool call failed",
                session_id=state.session_id,
                agent_id=state.agent_id,
                tool_name=call.name,
                duration_ms=round(elapsed * 1000, 2),
                error=str(error.cause or error),
            )
            if error is e:
                raise
            raise error from e

        elapsed = time.perf_counter() - start
        self._record_tool(
            context,
            state,
            ToolCallRecord(
                name=call.name,
                status=ToolCallStatus.SUCCESS,
                arguments=call.arguments,
                tool_call_id=call.id,
                duration_ms=round(elapsed * 1000, 2),
                result=result,
            ),
        )
        logger.info(
            "Tool executed",
            session_id=state.session_id,
            tool_name=call.name,
            duration_ms=round(elapsed * 1000, 2),
        )
        return result

    @staticmethod
    def _record_tool(
        context: Optional[SharedContext], state: AgentRunState, record: ToolCallRecord
    ) -> None:
        if context is not None:
            context.publish_tool_call(state.agent_id, record)

    # ============================================
    # generate_title
    # ============================================

    async def generate_title(self, state: AgentRunState) -> Optional[str]:
        """
        Title the conversation from its most recent user message.

        Returns None (and leaves the state untouched) when there is no user
        message with text.
        """
        user_message = next(
            (m for m in reversed(state.messages) if m.role == MessageRole.USER),
            None,
        )
        if user_message is None:
            return None

        text = user_message.text()[: self.config.title_input_chars]
        if not text.strip():
            return None

        options = GenerationOptions(
            temperature=self.config.title_temperature,
            top_p=1.0,
            max_tokens=self.config.title_max_tokens,
            model=self.config.title_model,
        )
        response = await self._call_model(
            self.title_model,
            [
                Message(role=MessageRole.SYSTEM, content=TITLE_INSTRUCTION),
                Message(role=MessageRole.USER, content=text),
            ],
            options,
            state,
        )

        title = response.text().strip()
        if title:
            state.title = title
        logger.debug("Generated title", session_id=state.session_id, title=title)
        return state.title if title else None
