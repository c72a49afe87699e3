"""Shared fixtures: a scripted chat provider and controller builders."""

import asyncio
from typing import Any, Optional

import pytest

from genagent.config import AgentConfig
from genagent.domain.entities import ChatEvent, ChatEventType
from genagent.domain.ports import IChatProvider
from genagent.memory.conversation import InMemoryConversationStore
from genagent.orchestrator import SessionController
from genagent.tools import ToolRegistry


class Hang:
    """Script step that blocks until the stream is cancelled."""


class ScriptedProvider(IChatProvider):
    """Chat provider that replays one scripted event list per call.

    A script step is a ChatEvent (yielded), an Exception (raised) or Hang.
    """

    def __init__(self, rounds: list[list[Any]], service: str = "fake", ordered: bool = True):
        self.rounds = list(rounds)
        self.payloads = []
        self.service = service
        self.requires_ordered_tool_outputs = ordered
        self.closed = False

    @property
    def name(self) -> str:
        return self.service

    @property
    def default_model(self) -> str:
        return "fake-model"

    async def stream(self, payload):
        self.payloads.append(payload)
        if not self.rounds:
            raise AssertionError("Unexpected provider call")
        for step in self.rounds.pop(0):
            if isinstance(step, Exception):
                raise step
            if isinstance(step, Hang):
                await asyncio.sleep(3600)
            yield step

    async def close(self) -> None:
        self.closed = True


def text(content: str) -> ChatEvent:
    return ChatEvent.text_delta(content)


def tool_call(call_id: str, name: str, arguments: Optional[dict] = None) -> list[ChatEvent]:
    return [
        ChatEvent.tool_call_start(call_id, name),
        ChatEvent.tool_call_end(call_id, arguments or {}, name=name),
    ]


def done(**usage: int) -> ChatEvent:
    return ChatEvent(
        type=ChatEventType.DONE,
        sequence=0,
        metadata={"finish_reason": "stop", "usage": dict(usage)},
    )


def make_config(**overrides: Any) -> AgentConfig:
    values = dict(
        model="fake-model",
        chat_service="fake",
        retry_initial_delay=0,
        retry_max_delay=0.01,
        generate_titles=False,
    )
    values.update(overrides)
    return AgentConfig(**values)


@pytest.fixture
def store():
    return InMemoryConversationStore()


@pytest.fixture
def registry():
    return ToolRegistry()


@pytest.fixture
def make_controller(store, registry):
    """Build a controller around a ScriptedProvider."""

    def factory(rounds, config: Optional[AgentConfig] = None, **kwargs):
        provider = kwargs.pop("provider", None) or ScriptedProvider(rounds)
        controller = SessionController(
            provider,
            tool_registry=kwargs.pop("tool_registry", registry),
            conversation_store=kwargs.pop("conversation_store", store),
            config=config or make_config(),
            **kwargs,
        )
        return controller, provider

    return factory
