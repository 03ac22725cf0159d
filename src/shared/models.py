"""Core data models for the group chat orchestrator.

This module defines all shared data structures used across the service.
Wire payloads use camelCase aliases; Python code uses snake_case.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

# Display names of the non-agent speakers
USER_NAME = "用户"
DISPATCH_CENTER_NAME = "调度中心"
SYSTEM_NAME = "系统"

USER_COLOR = "bg-indigo-600"
DISPATCH_CENTER_COLOR = "bg-gray-500"
SYSTEM_COLOR = "bg-red-500"
DEFAULT_AGENT_COLOR = "#6366f1"

UNKNOWN_AGENT_NAME = "未知智能体"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


class WireModel(BaseModel):
    """Base for models exchanged with clients and stores."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )

    def to_wire(self) -> dict[str, Any]:
        """Serialize with camelCase keys and JSON-compatible values."""
        return self.model_dump(mode="json", by_alias=True)


class AgentStatus(str, Enum):
    """Coarse presence indicator; any value may overwrite any other."""
    ONLINE = "online"
    BUSY = "busy"
    OFFLINE = "offline"


class Message(WireModel):
    """A single chat message, agent or user authored."""
    id: str = Field(default_factory=new_id)
    agent_name: str
    agent_color: str = DEFAULT_AGENT_COLOR
    content: str = ""
    timestamp: datetime = Field(default_factory=utcnow)
    is_user: bool = False
    is_thinking: bool = False

    @property
    def is_notice(self) -> bool:
        """Dispatch center and system messages are never sent to agents."""
        return not self.is_user and self.agent_name in (DISPATCH_CENTER_NAME, SYSTEM_NAME)


class Agent(WireModel):
    """A named persona backed by its own FastGPT credential."""
    id: str
    name: str
    role: str = ""
    introduction: str = ""
    status: AgentStatus = AgentStatus.OFFLINE
    color: str = DEFAULT_AGENT_COLOR
    avatar: str = ""
    api_key: Optional[str] = Field(default=None, repr=False)
    base_url: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _map_document_id(cls, data: Any) -> Any:
        if isinstance(data, dict) and "id" not in data and "_id" in data:
            data = dict(data)
            data["id"] = str(data.pop("_id"))
        return data

    def public_dict(self) -> dict[str, Any]:
        """Client-safe representation without the credential."""
        return self.model_dump(mode="json", by_alias=True, exclude={"api_key"})


class AgentId(BaseModel):
    """An unexpanded reference to an agent in the directory."""
    id: str


# Tagged union: bare identifier or populated record
AgentRef = Union[AgentId, Agent]


def parse_agent_ref(raw: Any) -> AgentRef:
    """
    Normalize one raw agent reference.

    Args:
        raw: A bare id string, a dict (populated document or ``{"id": ...}``),
            an ``AgentId`` or an ``Agent``

    Returns:
        ``AgentId`` for bare references, ``Agent`` for expanded records

    Raises:
        ValueError: If the value cannot be interpreted as a reference
    """
    if isinstance(raw, (AgentId, Agent)):
        return raw
    if isinstance(raw, str):
        return AgentId(id=raw)
    if isinstance(raw, dict):
        if "name" in raw:
            return Agent.model_validate(raw)
        ref_id = raw.get("id", raw.get("_id"))
        if ref_id is not None:
            return AgentId(id=str(ref_id))
    raise ValueError(f"Unsupported agent reference: {raw!r}")


class GroupChat(WireModel):
    """A conversation bound to a fixed set of candidate agents."""
    id: str
    name: str
    description: str = ""
    agent_ids: list[AgentRef] = Field(default_factory=list)
    avatar: str = ""
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("agent_ids", mode="before")
    @classmethod
    def _normalize_refs(cls, value: Any) -> list[AgentRef]:
        return [parse_agent_ref(item) for item in (value or [])]


class Conversation(WireModel):
    """A persisted 1:1 chat transcript."""
    id: str
    title: str
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    messages: list[Message] = Field(default_factory=list)
    version: int = 0


class DispatchCandidate(BaseModel):
    """One agent chosen by the dispatch center; never persisted."""
    id: str
    name: str


class ChatTurnMessage(BaseModel):
    """A message in the shape FastGPT expects."""
    role: Literal["user", "assistant"]
    content: str


def to_turn_history(messages: list[Message]) -> list[ChatTurnMessage]:
    """
    Convert board messages to FastGPT history.

    Agent replies are prefixed with the agent name so every agent can tell
    who said what. Notices and unfinished placeholders are skipped.
    """
    history: list[ChatTurnMessage] = []
    for message in messages:
        if message.is_notice or message.is_thinking:
            continue
        if message.is_user:
            history.append(ChatTurnMessage(role="user", content=message.content))
        else:
            history.append(ChatTurnMessage(
                role="assistant",
                content=f"{message.agent_name}：{message.content}"
            ))
    return history


class AppendResult(BaseModel):
    """Outcome of an idempotent group message append."""
    message: Message
    already_exists: bool = False
