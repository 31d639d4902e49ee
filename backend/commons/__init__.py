"""
Agent Commons Runtime

Runs LLM-driven agents that converse, call tools and collaborate with other
agents inside shared, addressable sessions.
"""

__version__ = "1.0.0"

from .config import CommonsConfig
from .errors import (
    CommonsError,
    NotFoundError,
    ToolError,
    ModelError,
    InteractionTimeoutError,
    InvariantViolation,
    ImmutableFieldError,
)

__all__ = [
    "CommonsConfig",
    "CommonsError",
    "NotFoundError",
    "ToolError",
    "ModelError",
    "InteractionTimeoutError",
    "InvariantViolation",
    "ImmutableFieldError",
    "__version__",
]
