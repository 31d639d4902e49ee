"""
Commons Agent Engine

Language model interface used by the step machine, and its Claude adapter.
"""

import inspect
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from anthropic import AsyncAnthropic
from anthropic.types import TextBlock, ToolUseBlock

from .types import Message, MessageRole, ToolCall
from ..config import CommonsConfig
from ..errors import ModelError
from ...utils.logger import get_logger

logger = get_logger(__name__)

TokenCallback = Callable[[str], Any]


@dataclass
class GenerationOptions:
    """Per-call options for a language model invocation"""

    temperature: float
    top_p: float
    tools: List[Dict[str, Any]] = field(default_factory=list)
    callbacks: List[TokenCallback] = field(default_factory=list)
    max_tokens: Optional[int] = None
    model: Optional[str] = None


class LanguageModel(ABC):
    """A chat model that may request tool calls."""

    @abstractmethod
    async def invoke(self, messages: List[Message], options: GenerationOptions) -> Message:
        """
        Produce the next assistant message.

        Text deltas are passed to every callback in options.callbacks as they
        arrive. The returned message carries any tool calls the model requested.
        """

    async def close(self) -> None:
        """Release client resources."""


class ClaudeModel(LanguageModel):
    """
    LanguageModel backed by the Anthropic Messages API.

    Features:
    - Streaming text generation when callbacks are registered
    - Tool calling (tool_use / tool_result blocks)
    - System messages folded into the system parameter
    """

    def __init__(self, config: CommonsConfig, client: Optional[AsyncAnthropic] = None):
        """
        Initialize the adapter.

        Args:
            config: Runtime configuration (model ids, max tokens)
            client: Preconfigured Anthropic client; one is created from the API key if omitted
        """
        self.config = config
        self.client = client or AsyncAnthropic(api_key=config.anthropic_api_key)
        logger.info("ClaudeModel initialized", model=config.model)

    async def invoke(self, messages: List[Message], options: GenerationOptions) -> Message:
        system, anthropic_messages = self._convert_messages(messages)
        if not anthropic_messages:
            raise ModelError(options.model or self.config.model, cause=ValueError("no messages to send"))

        request: Dict[str, Any] = {
            "model": options.model or self.config.model,
            "max_tokens": options.max_tokens or self.config.max_tokens,
            "temperature": options.temperature,
            "messages": anthropic_messages,
        }
        # 1.0 is the API default
        if options.top_p != 1.0:
            request["top_p"] = options.top_p
        if system:
            request["system"] = system
        if options.tools:
            request["tools"] = options.tools

        if options.callbacks:
            async with self.client.messages.stream(**request) as stream:
                async for event in stream:
                    if event.type == "content_block_delta" and getattr(event.delta, "type", None) == "text_delta":
                        await self._notify(options.callbacks, event.delta.text)
                final_message = await stream.get_final_message()
        else:
            final_message = await self.client.messages.create(**request)

        return self._to_message(final_message, request["model"])

    def _to_message(self, response: Any, model: str) -> Message:
        content_blocks = getattr(response, "content", None)
        if content_blocks is None:
            raise ModelError(model, cause=ValueError("response has no content"))

        text_parts: List[str] = []
        tool_calls: List[ToolCall] = []
        for block in content_blocks:
            if isinstance(block, TextBlock):
                text_parts.append(block.text)
            elif isinstance(block, ToolUseBlock):
                tool_calls.append(
                    ToolCall(id=block.id, name=block.name, arguments=dict(block.input or {}))
                )

        text = "".join(text_parts)
        if not text and not tool_calls:
            raise ModelError(model, cause=ValueError("empty response"))

        usage = getattr(response, "usage", None)
        logger.debug(
            "Model response received",
            model=model,
            tool_calls=len(tool_calls),
            input_tokens=getattr(usage, "input_tokens", None),
            output_tokens=getattr(usage, "output_tokens", None),
        )

        return Message(
            role=MessageRole.ASSISTANT,
            content=text,
            tool_calls=tool_calls or None,
        )

    @staticmethod
    async def _notify(callbacks: List[TokenCallback], text: str) -> None:
        for callback in callbacks:
            result = callback(text)
            if inspect.isawaitable(result):
                await result

    def _convert_messages(self, messages: List[Message]) -> Tuple[str, List[Dict[str, Any]]]:
        """
        Convert domain messages to Anthropic API format.

        Args:
            messages: Conversation, possibly including system and tool messages

        Returns:
            (system prompt, Anthropic message dicts). Consecutive messages with
            the same API role are merged so user/assistant turns alternate.
        """
        system_parts: List[str] = []
        converted: List[Dict[str, Any]] = []

        for msg in messages:
            if msg.role == MessageRole.SYSTEM:
                text = msg.text()
                if text:
                    system_parts.append(text)
                continue

            if msg.role == MessageRole.TOOL:
                role = "user"
                blocks = [
                    {
                        "type": "tool_result",
                        "tool_use_id": msg.tool_call_id,
                        "content": msg.text(),
                    }
                ]
            elif msg.role == MessageRole.ASSISTANT:
                role = "assistant"
                blocks = self._content_blocks(msg.content)
                for tc in msg.tool_calls or []:
                    blocks.append(
                        {"type": "tool_use", "id": tc.id, "name": tc.name, "input": tc.arguments}
                    )
            else:
                role = "user"
                blocks = self._content_blocks(msg.content)

            if not blocks:
                continue

            if converted and converted[-1]["role"] == role:
                converted[-1]["content"].extend(blocks)
            else:
                converted.append({"role": role, "content": blocks})

        return "\n\n".join(system_parts), converted

    @staticmethod
    def _content_blocks(content: Any) -> List[Dict[str, Any]]:
        if isinstance(content, str):
            return [{"type": "text", "text": content}] if content else []
        return [dict(part) for part in content or [] if isinstance(part, dict)]

    async def close(self) -> None:
        """Close the Anthropic client."""
        await self.client.close()
        logger.info("ClaudeModel closed")
