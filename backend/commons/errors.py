"""
Commons Error Taxonomy

Errors raised by the runtime. Step-level errors carry enough context
(tool or model name, elapsed time) for the caller to log them.
"""

from typing import Optional


class CommonsError(Exception):
    """Base class for all runtime errors."""


class NotFoundError(CommonsError):
    """A referenced agent or session does not exist."""

    def __init__(self, kind: str, identifier: str):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} not found: {identifier}")


class ToolError(CommonsError):
    """A tool invocation failed."""

    def __init__(self, tool_name: str, cause: Optional[BaseException] = None, elapsed: float = 0.0):
        self.tool_name = tool_name
        self.cause = cause
        self.elapsed = elapsed
        super().__init__(f"Tool '{tool_name}' failed after {elapsed:.3f}s: {cause}")


class ModelError(CommonsError):
    """The language model call failed or returned an unusable response."""

    def __init__(self, model: str = "model", cause: Optional[BaseException] = None, elapsed: float = 0.0):
        self.model = model
        self.cause = cause
        self.elapsed = elapsed
        super().__init__(f"Model call '{model}' failed after {elapsed:.3f}s: {cause}")


class InteractionTimeoutError(CommonsError):
    """The other agent never published a final event within the bound."""

    def __init__(self, initiator: str, target: str, session_id: str, timeout: float):
        self.initiator = initiator
        self.target = target
        self.session_id = session_id
        self.timeout = timeout
        super().__init__(
            f"Interaction {initiator} -> {target} (session {session_id}) "
            f"timed out after {timeout}s"
        )


class InvariantViolation(CommonsError):
    """An internal invariant was broken. Unreachable through the public API."""


class ImmutableFieldError(CommonsError, ValueError):
    """An update tried to change identity or credential fields."""

    def __init__(self, kind: str, fields):
        self.kind = kind
        self.fields = sorted(fields)
        super().__init__(f"Cannot update immutable {kind} fields: {', '.join(self.fields)}")


__all__ = [
    "CommonsError",
    "NotFoundError",
    "ToolError",
    "ModelError",
    "InteractionTimeoutError",
    "InvariantViolation",
    "ImmutableFieldError",
]
