"""
Tool Executors.

Every tool kind shares one capability: ``execute(arguments) -> str``.

- FunctionToolExecutor: in-process Python callable (sync or async)
- ShellToolExecutor: external process, JSON arguments on stdin
- HostedToolExecutor: tool run by the provider itself (e.g. web search)
- MCPToolExecutor: tool on a remote MCP server
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import os
from typing import TYPE_CHECKING, Any, Callable, Optional, get_type_hints

from ..domain.entities import ToolDefinition, ToolKind
from ..domain.ports import IToolExecutor
from ..exceptions import MCPError, ToolExecutionError

if TYPE_CHECKING:
    from .mcp_client import MCPClient

logger = logging.getLogger(__name__)

# Python annotation -> JSON Schema type
_JSON_TYPES = {
    str: "string",
    int: "integer",
    float: "number",
    bool: "boolean",
    dict: "object",
    list: "array",
}


def _to_text(result: Any) -> str:
    if result is None:
        return ""
    if isinstance(result, str):
        return result
    return json.dumps(result, default=str)


def definition_from_function(
    func: Callable[..., Any],
    name: Optional[str] = None,
    description: Optional[str] = None,
    parameters: Optional[dict[str, Any]] = None,
) -> ToolDefinition:
    """Build a ToolDefinition from a function signature and docstring.

    Parameters without a default are required. Unknown annotations map to
    ``string``.
    """
    if parameters is None:
        try:
            hints = get_type_hints(func)
        except (NameError, TypeError):
            hints = {}
        properties: dict[str, Any] = {}
        required: list[str] = []
        for param in inspect.signature(func).parameters.values():
            if param.kind in (param.VAR_POSITIONAL, param.VAR_KEYWORD):
                continue
            annotation = hints.get(param.name, str)
            origin = getattr(annotation, "__origin__", annotation)
            properties[param.name] = {"type": _JSON_TYPES.get(origin, "string")}
            if param.default is inspect.Parameter.empty:
                required.append(param.name)
        parameters = {"type": "object", "properties": properties}
        if required:
            parameters["required"] = required

    doc = inspect.getdoc(func) or ""
    return ToolDefinition(
        name=name or func.__name__,
        description=description if description is not None else doc.split("\n")[0],
        parameters=parameters,
        kind=ToolKind.LOCAL,
    )


class FunctionToolExecutor(IToolExecutor):
    """Runs an in-process Python callable.

    Sync callables run in a worker thread so they never block the event loop.
    Non-string results are JSON-encoded.
    """

    kind = ToolKind.LOCAL

    def __init__(self, func: Callable[..., Any], name: Optional[str] = None):
        self.func = func
        self.name = name or getattr(func, "__name__", "function")
        self._is_async = inspect.iscoroutinefunction(func)

    async def execute(self, arguments: dict[str, Any]) -> str:
        try:
            if self._is_async:
                result = await self.func(**arguments)
            else:
                result = await asyncio.to_thread(self.func, **arguments)
        except ToolExecutionError:
            raise
        except Exception as e:
            raise ToolExecutionError(
                f"Tool '{self.name}' failed: {e}", tool_name=self.name, cause=e
            ) from e
        return _to_text(result)


class ShellToolExecutor(IToolExecutor):
    """Runs an external command per call.

    Arguments are written to stdin as JSON; stdout is the tool output.
    The process is killed if the call is cancelled (e.g. on timeout).
    """

    kind = ToolKind.SHELL

    def __init__(
        self,
        command: list[str],
        name: Optional[str] = None,
        cwd: Optional[str] = None,
        env: Optional[dict[str, str]] = None,
    ):
        if not command:
            raise ValueError("command must not be empty")
        self.command = list(command)
        self.name = name or os.path.basename(command[0])
        self.cwd = cwd
        self.env = env

    async def execute(self, arguments: dict[str, Any]) -> str:
        env = {**os.environ, **self.env} if self.env else None
        try:
            process = await asyncio.create_subprocess_exec(
                *self.command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.cwd,
                env=env,
            )
        except OSError as e:
            raise ToolExecutionError(
                f"Failed to start '{self.command[0]}': {e}", tool_name=self.name, cause=e
            ) from e

        try:
            stdout, stderr = await process.communicate(json.dumps(arguments).encode())
        except asyncio.CancelledError:
            if process.returncode is None:
                process.kill()
                await process.wait()
            logger.warning(f"Shell tool {self.name} killed on cancellation")
            raise

        if process.returncode != 0:
            message = stderr.decode(errors="replace").strip() or f"exit code {process.returncode}"
            raise ToolExecutionError(
                f"Tool '{self.name}' failed: {message}",
                tool_name=self.name,
                details={"exit_code": process.returncode},
            )

        return stdout.decode(errors="replace")


class HostedToolExecutor(IToolExecutor):
    """A tool executed by the provider (web search, code interpreter, ...).

    The provider runs the tool inside its own response; locally there is
    nothing to do beyond acknowledging the call.
    """

    kind = ToolKind.HOSTED

    def __init__(self, provider_config: dict[str, Any], name: Optional[str] = None):
        self.provider_config = dict(provider_config)
        self.name = name or str(provider_config.get("type", "hosted"))

    def definition(self, description: str = "") -> ToolDefinition:
        return ToolDefinition(
            name=self.name,
            description=description,
            kind=ToolKind.HOSTED,
            hosted_config=self.provider_config,
        )

    async def execute(self, arguments: dict[str, Any]) -> str:
        return json.dumps({"status": "hosted", "tool": self.name})


class MCPToolExecutor(IToolExecutor):
    """Calls one tool on a remote MCP server."""

    kind = ToolKind.MCP

    def __init__(self, client: MCPClient, tool_name: str):
        self.client = client
        self.name = tool_name

    @property
    def server_label(self) -> str:
        return self.client.server_label

    async def execute(self, arguments: dict[str, Any]) -> str:
        try:
            return await self.client.call_tool(self.name, arguments)
        except MCPError as e:
            raise ToolExecutionError(
                f"MCP tool '{self.name}' failed: {e.message}",
                tool_name=self.name,
                cause=e,
            ) from e
