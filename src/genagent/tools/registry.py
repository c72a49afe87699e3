"""
Tool Registry.

Maps tool names to their definition and executor, and routes tool calls to
the matching executor. Lookups read a snapshot of an immutable mapping, so
concurrent dispatches never observe a half-applied registration; writes
replace the mapping.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, replace
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Callable, Mapping, Optional

from ..domain.entities import ToolCallItem, ToolDefinition, ToolOutputItem
from ..domain.ports import IToolExecutor
from ..exceptions import ToolExecutionError, ToolNotFoundError, ToolTimeoutError
from ..resilience import with_timeout
from .executors import FunctionToolExecutor, MCPToolExecutor, definition_from_function

if TYPE_CHECKING:
    from .mcp_client import MCPClient

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ToolRegistration:
    """A tool definition bound to its executor."""

    definition: ToolDefinition
    executor: IToolExecutor

    @property
    def name(self) -> str:
        return self.definition.name


class ToolRegistry:
    """Registry of all tools available to the session.

    Usage:
        registry = ToolRegistry()
        registry.register_function(get_weather)
        await registry.register_mcp_server(mcp_client, require_approval=True)

        output = await registry.dispatch(tool_call)
    """

    def __init__(self, default_timeout_seconds: Optional[float] = None):
        """Initialize the tool registry.

        Args:
            default_timeout_seconds: Timeout for tools that do not set their own
        """
        self.default_timeout_seconds = default_timeout_seconds
        self._tools: Mapping[str, ToolRegistration] = MappingProxyType({})

    def register(self, definition: ToolDefinition, executor: IToolExecutor) -> None:
        """Register (or replace) a tool."""
        tools = dict(self._tools)
        if definition.name in tools:
            logger.info(f"Replacing tool registration: {definition.name}")
        tools[definition.name] = ToolRegistration(definition, executor)
        self._tools = MappingProxyType(tools)
        logger.info(f"Registered tool {definition.name} ({definition.kind.value})")

    def register_function(
        self,
        func: Callable[..., Any],
        name: Optional[str] = None,
        description: Optional[str] = None,
        parameters: Optional[dict[str, Any]] = None,
        timeout_seconds: Optional[float] = None,
    ) -> ToolDefinition:
        """Register a Python callable, deriving its schema from the signature."""
        definition = definition_from_function(func, name, description, parameters)
        if timeout_seconds is not None:
            definition.timeout_seconds = timeout_seconds
        self.register(definition, FunctionToolExecutor(func, name=definition.name))
        return definition

    async def register_mcp_server(
        self,
        client: MCPClient,
        require_approval: bool = True,
    ) -> list[str]:
        """Discover the tools of an MCP server and register each of them.

        Returns:
            Names of the registered tools
        """
        tools = await client.list_tools()
        names = []
        for tool in tools:
            definition = replace(tool, requires_approval=require_approval)
            self.register(definition, MCPToolExecutor(client, tool.name))
            names.append(tool.name)
        logger.info(f"Registered {len(names)} tools from MCP server {client.server_label}")
        return names

    def unregister(self, name: str) -> bool:
        """Remove a tool. Returns False if it was not registered."""
        if name not in self._tools:
            return False
        tools = dict(self._tools)
        del tools[name]
        self._tools = MappingProxyType(tools)
        logger.info(f"Unregistered tool {name}")
        return True

    def get(self, name: str) -> Optional[ToolRegistration]:
        return self._tools.get(name)

    def has(self, name: str) -> bool:
        return name in self._tools

    def definitions(self) -> list[ToolDefinition]:
        """Definitions of every registered tool, in registration order."""
        return [r.definition for r in self._tools.values()]

    def __len__(self) -> int:
        return len(self._tools)

    async def dispatch(
        self,
        tool_call: ToolCallItem,
        timeout_seconds: Optional[float] = None,
    ) -> ToolOutputItem:
        """Execute a tool call and wrap the result in a ToolOutputItem.

        Tool failures and timeouts become error outputs; they never raise.

        Args:
            tool_call: Tool call from the model
            timeout_seconds: Overrides the tool's own and the default timeout

        Raises:
            ToolNotFoundError: If no executor is registered under the name
        """
        registration = self._tools.get(tool_call.name)
        if registration is None:
            raise ToolNotFoundError(tool_call.name)

        timeout = (
            timeout_seconds
            or registration.definition.timeout_seconds
            or self.default_timeout_seconds
        )
        logger.debug(f"Executing tool: {tool_call.name} (call {tool_call.call_id})")
        started = time.monotonic()

        try:
            if tool_call.raw_arguments is not None:
                raise ToolExecutionError(
                    "Tool arguments were not valid JSON",
                    tool_name=tool_call.name,
                    details={"raw": tool_call.raw_arguments[:200]},
                )
            output = await with_timeout(
                registration.executor.execute(tool_call.arguments),
                timeout,
                lambda: ToolTimeoutError(tool_call.name, timeout),
            )
        except ToolTimeoutError as e:
            logger.warning(str(e))
            return self._failure(tool_call, e, started)
        except ToolExecutionError as e:
            logger.warning(f"Tool {tool_call.name} failed: {e.message}")
            return self._failure(tool_call, e, started)
        except Exception as e:
            logger.exception(f"Unexpected error in tool {tool_call.name}: {e}")
            return self._failure(tool_call, e, started)

        return ToolOutputItem.success(
            tool_call.call_id,
            output,
            tool_name=tool_call.name,
            latency_ms=int((time.monotonic() - started) * 1000),
        )

    @staticmethod
    def _failure(tool_call: ToolCallItem, error: Exception, started: float) -> ToolOutputItem:
        message = error.message if isinstance(error, ToolExecutionError) else str(error)
        return ToolOutputItem.failure(
            tool_call.call_id,
            message,
            tool_name=tool_call.name,
            error_kind=getattr(error, "kind", "tool_execution"),
            latency_ms=int((time.monotonic() - started) * 1000),
        )
