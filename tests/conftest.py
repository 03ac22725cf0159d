"""Shared fixtures: a scripted FastGPT gateway and seeded in-memory stores."""

import asyncio
import json
from typing import Any

import pytest

from shared.config import FastGPTSettings, StoreSettings
from shared.models import Agent, AgentStatus, GroupChat


class FakeFastGPTClient:
    """
    Scripted stand-in for FastGPTClient.

    Dispatch replies are consumed in order (the last one repeats). Agent
    replies are keyed by API key: a list of fragments or an exception.
    Streams for a key listed in ``gates`` wait on that event before each
    fragment.
    """

    def __init__(self) -> None:
        self.dispatch_replies: list[Any] = []
        self.agent_replies: dict[str, Any] = {}
        self.gates: dict[str, asyncio.Event] = {}
        self.complete_calls: list[dict[str, Any]] = []
        self.stream_calls: list[dict[str, Any]] = []

    async def complete(self, api_key, chat_id, messages, base_url=None, **extra):
        self.complete_calls.append({
            "api_key": api_key,
            "chat_id": chat_id,
            "messages": list(messages),
            **extra,
        })
        if not self.dispatch_replies:
            reply: Any = "[]"
        elif len(self.dispatch_replies) > 1:
            reply = self.dispatch_replies.pop(0)
        else:
            reply = self.dispatch_replies[0]

        if isinstance(reply, BaseException):
            raise reply
        return {"choices": [{"message": {"role": "assistant", "content": reply}}]}

    async def stream(self, api_key, chat_id, messages, base_url=None):
        self.stream_calls.append({
            "api_key": api_key,
            "chat_id": chat_id,
            "messages": list(messages),
        })
        reply = self.agent_replies.get(api_key, ["好的"])
        if isinstance(reply, BaseException):
            raise reply

        for fragment in reply:
            gate = self.gates.get(api_key)
            if gate is not None:
                await gate.wait()
            yield fragment

    def streamed_keys(self) -> list[str]:
        return [call["api_key"] for call in self.stream_calls]


def make_agents() -> list[Agent]:
    return [
        Agent(id="default", name="默认智能体", status=AgentStatus.ONLINE, api_key="key-default"),
        Agent(id="travel", name="旅行管家", status=AgentStatus.ONLINE, api_key="key-travel"),
        Agent(id="food", name="美食家", status=AgentStatus.ONLINE, api_key="key-food"),
        Agent(id="mute", name="沉默者", status=AgentStatus.OFFLINE),
    ]


@pytest.fixture
def fake_client() -> FakeFastGPTClient:
    return FakeFastGPTClient()


@pytest.fixture
def agents() -> list[Agent]:
    return make_agents()


@pytest.fixture
def directory(agents):
    from store.agents import InMemoryAgentDirectory

    return InMemoryAgentDirectory(agents, default_agent_id="default")


@pytest.fixture
def fastgpt_settings() -> FastGPTSettings:
    return FastGPTSettings(
        dispatch_api_key="dispatch-key",
        dispatch_max_attempts=3,
        dispatch_retry_delay_seconds=0,
    )


@pytest.fixture
def store_settings() -> StoreSettings:
    return StoreSettings(save_max_attempts=3, save_retry_delay_seconds=0)


@pytest.fixture
def resolver(fake_client, directory, fastgpt_settings, store_settings):
    from orchestrator.dispatch import DispatchResolver

    return DispatchResolver(fake_client, directory, fastgpt_settings, store_settings)


@pytest.fixture
def responder(fake_client, directory):
    from orchestrator.responder import AgentResponder

    return AgentResponder(fake_client, directory)


@pytest.fixture
def group() -> GroupChat:
    return GroupChat(
        id="g1",
        name="周末计划",
        agent_ids=["travel", "food", {"id": "ghost"}],
    )


@pytest.fixture
def repository(group):
    from store.groupchats import InMemoryGroupChatRepository

    return InMemoryGroupChatRepository([group])


def dispatch_json(*pairs: tuple[str, str]) -> str:
    """Dispatch center reply selecting the given (id, name) pairs."""
    return json.dumps([{"id": i, "name": n} for i, n in pairs], ensure_ascii=False)


@pytest.fixture
def dispatch_reply():
    return dispatch_json

