"""
Tool Invocation

The ToolInvoker interface the step machine dispatches tool calls through, an
in-process ToolRegistry of BaseTool instances, and an HTTP invoker that
forwards calls to a remote tool endpoint.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

import aiohttp

from ..errors import ToolError
from ...utils.logger import get_logger

logger = get_logger(__name__)

ToolResult = Dict[str, Any]


class ToolInvoker(ABC):
    """Executes tools on behalf of agents."""

    @abstractmethod
    async def invoke(self, tool_name: str, args: Dict[str, Any], meta: Dict[str, Any]) -> ToolResult:
        """
        Execute one tool call.

        Args:
            tool_name: Name the model used for the tool
            args: Arguments decoded from the model's tool call
            meta: Caller context, at least agent_id and session_id

        Raises:
            ToolError: If the tool is unknown or fails
        """

    @abstractmethod
    def list_tools(self, enabled: Optional[Iterable[str]] = None) -> List[Dict[str, Any]]:
        """Tool definitions in Claude format, limited to `enabled` when given."""


# ============================================
# In-process tools
# ============================================


class BaseTool(ABC):
    """Base class for in-process tools."""

    name: str = ""
    description: str = ""

    @abstractmethod
    def get_schema(self) -> Dict[str, Any]:
        """Get the tool's input schema in Anthropic format."""

    @abstractmethod
    async def execute(self, **kwargs) -> ToolResult:
        """Execute the tool with given arguments."""

    def to_claude_tool(self) -> Dict[str, Any]:
        """Convert to Claude tool definition format."""
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.get_schema(),
        }


class FunctionTool(BaseTool):
    """Wraps a coroutine function as a tool."""

    def __init__(
        self,
        name: str,
        description: str,
        schema: Dict[str, Any],
        func: Callable[..., Awaitable[ToolResult]],
    ):
        self.name = name
        self.description = description
        self._schema = schema
        self._func = func

    def get_schema(self) -> Dict[str, Any]:
        return self._schema

    async def execute(self, **kwargs) -> ToolResult:
        return await self._func(**kwargs)


class ToolRegistry(ToolInvoker):
    """
    Registry of in-process tools.

    One registry per container; nothing is shared between instances.
    """

    def __init__(self, tools: Optional[Iterable[BaseTool]] = None):
        self._tools: Dict[str, BaseTool] = {}
        for tool in tools or []:
            self.register_tool(tool)

    def register_tool(self, tool: BaseTool) -> None:
        """Register a tool instance."""
        self._tools[tool.name] = tool
        logger.debug("Registered tool", tool_name=tool.name)

    def register_function(
        self,
        name: str,
        description: str,
        schema: Dict[str, Any],
        func: Callable[..., Awaitable[ToolResult]],
    ) -> None:
        """Register a standalone coroutine function as a tool."""
        self.register_tool(FunctionTool(name, description, schema, func))

    def get_tool(self, name: str) -> Optional[BaseTool]:
        return self._tools.get(name)

    def tool_names(self) -> List[str]:
        return list(self._tools.keys())

    def list_tools(self, enabled: Optional[Iterable[str]] = None) -> List[Dict[str, Any]]:
        if enabled is None:
            return [tool.to_claude_tool() for tool in self._tools.values()]
        wanted = set(enabled)
        return [tool.to_claude_tool() for name, tool in self._tools.items() if name in wanted]

    async def invoke(self, tool_name: str, args: Dict[str, Any], meta: Dict[str, Any]) -> ToolResult:
        tool = self._tools.get(tool_name)
        if tool is None:
            raise ToolError(tool_name, cause=KeyError(f"Unknown tool: {tool_name}"))

        start = time.perf_counter()
        try:
            result = await tool.execute(**(args or {}))
        except ToolError:
            raise
        except Exception as e:
            raise ToolError(tool_name, cause=e, elapsed=time.perf_counter() - start) from e

        logger.debug(
            "Tool executed",
            tool_name=tool_name,
            agent_id=meta.get("agent_id"),
            session_id=meta.get("session_id"),
            duration_ms=round((time.perf_counter() - start) * 1000, 2),
        )
        return result if isinstance(result, dict) else {"result": result}


# ============================================
# Remote tools
# ============================================


class HttpToolInvoker(ToolInvoker):
    """
    Forwards tool calls to an HTTP endpoint.

    Each call POSTs {"args", "toolCall": {"name", "args"}, "metadata"} to the
    endpoint and expects a JSON object back.
    """

    def __init__(
        self,
        endpoint_url: str,
        catalog: Optional[List[Dict[str, Any]]] = None,
        timeout: float = 120.0,
    ):
        """
        Args:
            endpoint_url: URL that receives tool calls
            catalog: Tool definitions (Claude format) offered to models
            timeout: Per-call timeout in seconds
        """
        self.endpoint_url = endpoint_url
        self.catalog = list(catalog or [])
        self.timeout = timeout

    def list_tools(self, enabled: Optional[Iterable[str]] = None) -> List[Dict[str, Any]]:
        if enabled is None:
            return list(self.catalog)
        wanted = set(enabled)
        return [tool for tool in self.catalog if tool.get("name") in wanted]

    async def invoke(self, tool_name: str, args: Dict[str, Any], meta: Dict[str, Any]) -> ToolResult:
        body = {
            "args": args,
            "toolCall": {"name": tool_name, "args": args},
            "metadata": meta,
        }
        start = time.perf_counter()
        try:
            async with aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            ) as session:
                async with session.post(self.endpoint_url, json=body) as resp:
                    if resp.status >= 400:
                        text = await resp.text()
                        raise ToolError(
                            tool_name,
                            cause=RuntimeError(f"HTTP {resp.status}: {text[:200]}"),
                            elapsed=time.perf_counter() - start,
                        )
                    data = await resp.json()
        except ToolError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.error(
                "Remote tool call failed",
                tool_name=tool_name,
                endpoint=self.endpoint_url,
                error=str(e),
            )
            raise ToolError(tool_name, cause=e, elapsed=time.perf_counter() - start) from e

        return data if isinstance(data, dict) else {"result": data}
