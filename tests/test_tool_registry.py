"""
Tests for the tool registry and executors.

Covers registration, schema derivation from function signatures, dispatch
with error capture and timeouts, and every executor kind.
"""

import asyncio
import json
import sys
import time
from typing import Optional
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from genagent.domain.entities import ToolCallItem, ToolDefinition, ToolKind
from genagent.exceptions import MCPError, ToolExecutionError, ToolNotFoundError
from genagent.tools import ToolRegistry
from genagent.tools.executors import (
    FunctionToolExecutor,
    HostedToolExecutor,
    MCPToolExecutor,
    ShellToolExecutor,
    definition_from_function,
)


SLEEP_SCRIPT = "import time; time.sleep(10)"


def get_weather(city: str, days: int = 1, metric: Optional[bool] = None) -> dict:
    """Get the forecast for a city.

    Longer description that is not part of the tool description.
    """
    return {"city": city, "days": days}


def call(name, arguments=None, call_id="c1", raw_arguments=None):
    return ToolCallItem(
        call_id=call_id,
        name=name,
        arguments=arguments or {},
        raw_arguments=raw_arguments,
    )


# ============================================
# Schema Derivation
# ============================================


class TestDefinitionFromFunction:
    def test_schema_from_signature(self):
        definition = definition_from_function(get_weather)

        assert definition.name == "get_weather"
        assert definition.description == "Get the forecast for a city."
        assert definition.kind == ToolKind.LOCAL
        assert definition.parameters == {
            "type": "object",
            "properties": {
                "city": {"type": "string"},
                "days": {"type": "integer"},
                "metric": {"type": "string"},
            },
            "required": ["city"],
        }

    def test_explicit_schema_and_name(self):
        schema = {"type": "object", "properties": {"q": {"type": "string"}}}
        definition = definition_from_function(
            get_weather, name="forecast", description="", parameters=schema
        )
        assert definition.name == "forecast"
        assert definition.description == ""
        assert definition.parameters is schema


# ============================================
# Registry
# ============================================


class TestToolRegistry:
    def test_register_and_lookup(self):
        registry = ToolRegistry()
        definition = registry.register_function(get_weather, timeout_seconds=5)

        assert len(registry) == 1
        assert registry.has("get_weather")
        assert registry.get("get_weather").definition is definition
        assert definition.timeout_seconds == 5
        assert registry.definitions() == [definition]

    def test_register_replaces_existing(self):
        registry = ToolRegistry()
        registry.register_function(get_weather)
        registry.register_function(lambda: "x", name="get_weather", description="v2")
        assert len(registry) == 1
        assert registry.get("get_weather").definition.description == "v2"

    def test_unregister(self):
        registry = ToolRegistry()
        registry.register_function(get_weather)
        assert registry.unregister("get_weather") is True
        assert registry.unregister("get_weather") is False
        assert not registry.has("get_weather")

    def test_snapshot_unaffected_by_later_registration(self):
        registry = ToolRegistry()
        registry.register_function(get_weather)
        snapshot = registry.definitions()
        registry.register_function(lambda: "pong", name="ping", description="")
        assert [d.name for d in snapshot] == ["get_weather"]

    @pytest.mark.asyncio
    async def test_dispatch_success(self):
        registry = ToolRegistry()
        registry.register_function(get_weather)

        output = await registry.dispatch(call("get_weather", {"city": "Lisbon", "days": 2}))

        assert not output.is_error
        assert json.loads(output.output) == {"city": "Lisbon", "days": 2}
        assert output.call_id == "c1"
        assert output.metadata["tool_name"] == "get_weather"
        assert output.metadata["latency_ms"] >= 0

    @pytest.mark.asyncio
    async def test_dispatch_unknown_tool(self):
        with pytest.raises(ToolNotFoundError):
            await ToolRegistry().dispatch(call("missing"))

    @pytest.mark.asyncio
    async def test_dispatch_captures_exceptions(self):
        def explode(reason: str) -> str:
            raise RuntimeError(reason)

        registry = ToolRegistry()
        registry.register_function(explode)

        output = await registry.dispatch(call("explode", {"reason": "disk full"}))

        assert output.is_error
        assert "disk full" in output.error
        assert output.metadata["error_kind"] == "tool_execution"

    @pytest.mark.asyncio
    async def test_dispatch_bad_arguments(self):
        registry = ToolRegistry()
        registry.register_function(get_weather)

        output = await registry.dispatch(call("get_weather", {"town": "Lisbon"}))

        assert output.is_error
        assert output.metadata["error_kind"] == "tool_execution"

    @pytest.mark.asyncio
    async def test_dispatch_unparseable_arguments(self):
        registry = ToolRegistry()
        registry.register_function(get_weather)

        output = await registry.dispatch(call("get_weather", raw_arguments='{"city": '))

        assert output.is_error
        assert output.error == "Tool arguments were not valid JSON"

    @pytest.mark.asyncio
    async def test_dispatch_timeout(self):
        async def slow() -> str:
            await asyncio.sleep(10)
            return "late"

        registry = ToolRegistry(default_timeout_seconds=0.05)
        registry.register_function(slow)

        output = await registry.dispatch(call("slow"))

        assert output.is_error
        assert output.metadata["error_kind"] == "tool_timeout"
        assert "timed out" in output.error

    @pytest.mark.asyncio
    async def test_dispatch_timeout_override(self):
        async def slow() -> str:
            await asyncio.sleep(10)
            return "late"

        registry = ToolRegistry()
        registry.register_function(slow, timeout_seconds=60)

        output = await registry.dispatch(call("slow"), timeout_seconds=0.05)

        assert output.metadata["error_kind"] == "tool_timeout"

    @pytest.mark.asyncio
    async def test_register_mcp_server(self):
        client = MagicMock()
        client.server_label = "docs"
        client.list_tools = AsyncMock(return_value=[
            ToolDefinition(name="search_docs", kind=ToolKind.MCP, server_label="docs"),
            ToolDefinition(name="delete_page", kind=ToolKind.MCP, server_label="docs"),
        ])
        client.call_tool = AsyncMock(return_value="3 results")

        registry = ToolRegistry()
        names = await registry.register_mcp_server(client, require_approval=True)

        assert names == ["search_docs", "delete_page"]
        assert all(d.requires_approval for d in registry.definitions())

        output = await registry.dispatch(call("search_docs", {"q": "auth"}))
        assert output.output == "3 results"
        client.call_tool.assert_awaited_once_with("search_docs", {"q": "auth"})


# ============================================
# Executors
# ============================================


class TestExecutors:
    @pytest.mark.asyncio
    async def test_function_executor_async(self):
        async def add(a: int, b: int) -> int:
            return a + b

        assert await FunctionToolExecutor(add).execute({"a": 2, "b": 3}) == "5"

    @pytest.mark.asyncio
    async def test_function_executor_none_result(self):
        assert await FunctionToolExecutor(lambda: None, name="noop").execute({}) == ""

    @pytest.mark.asyncio
    async def test_function_executor_wraps_errors(self):
        def broken():
            raise KeyError("id")

        with pytest.raises(ToolExecutionError) as exc_info:
            await FunctionToolExecutor(broken).execute({})
        assert exc_info.value.tool_name == "broken"

    @pytest.mark.asyncio
    async def test_shell_executor_reads_stdin(self):
        script = "import json, sys; args = json.load(sys.stdin); print(args['n'] * 2)"
        executor = ShellToolExecutor([sys.executable, "-c", script], name="double")

        assert (await executor.execute({"n": 21})).strip() == "42"

    @pytest.mark.asyncio
    async def test_shell_executor_nonzero_exit(self):
        script = "import sys; sys.stderr.write('no such file'); sys.exit(3)"
        executor = ShellToolExecutor([sys.executable, "-c", script], name="fails")

        with pytest.raises(ToolExecutionError) as exc_info:
            await executor.execute({})
        assert "no such file" in exc_info.value.message
        assert exc_info.value.details["exit_code"] == 3

    @pytest.mark.asyncio
    async def test_shell_executor_missing_binary(self, tmp_path):
        executor = ShellToolExecutor([str(tmp_path / "missing-binary")])
        with pytest.raises(ToolExecutionError):
            await executor.execute({})

    @pytest.mark.asyncio
    async def test_shell_executor_env(self):
        script = "import os; print(os.environ['TOOL_MODE'])"
        executor = ShellToolExecutor([sys.executable, "-c", script], env={"TOOL_MODE": "dry"})
        assert (await executor.execute({})).strip() == "dry"

    @pytest.mark.asyncio
    async def test_shell_executor_killed_on_timeout(self):
        spawned = []
        spawn = asyncio.create_subprocess_exec

        async def recording_spawn(*args, **kwargs):
            process = await spawn(*args, **kwargs)
            spawned.append(process)
            return process

        registry = ToolRegistry()
        registry.register(
            ToolDefinition(name="nap", kind=ToolKind.SHELL),
            ShellToolExecutor([sys.executable, "-c", SLEEP_SCRIPT], name="nap"),
        )

        started = time.monotonic()
        with patch("genagent.tools.executors.asyncio.create_subprocess_exec", new=recording_spawn):
            output = await registry.dispatch(call("nap"), timeout_seconds=0.05)

        assert time.monotonic() - started < 5
        assert output.metadata["error_kind"] == "tool_timeout"
        assert spawned[0].returncode is not None

    @pytest.mark.asyncio
    async def test_shell_executor_killed_on_cancel(self):
        spawned = []
        spawn = asyncio.create_subprocess_exec

        async def recording_spawn(*args, **kwargs):
            process = await spawn(*args, **kwargs)
            spawned.append(process)
            return process

        executor = ShellToolExecutor([sys.executable, "-c", SLEEP_SCRIPT], name="nap")
        with patch("genagent.tools.executors.asyncio.create_subprocess_exec", new=recording_spawn):
            task = asyncio.create_task(executor.execute({}))
            while not spawned:
                await asyncio.sleep(0.01)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        assert spawned[0].returncode is not None

    def test_shell_executor_requires_command(self):
        with pytest.raises(ValueError):
            ShellToolExecutor([])

    @pytest.mark.asyncio
    async def test_hosted_executor(self):
        executor = HostedToolExecutor({"type": "web_search_preview"})
        definition = executor.definition("Search the web")

        assert definition.name == "web_search_preview"
        assert definition.to_openai_format() == {"type": "web_search_preview"}
        assert json.loads(await executor.execute({})) == {
            "status": "hosted",
            "tool": "web_search_preview",
        }

    @pytest.mark.asyncio
    async def test_mcp_executor_wraps_errors(self):
        client = MagicMock()
        client.call_tool = AsyncMock(side_effect=MCPError("server gone"))

        with pytest.raises(ToolExecutionError) as exc_info:
            await MCPToolExecutor(client, "search_docs").execute({})
        assert "server gone" in exc_info.value.message
