"""Group chat repository.

Looks up group chats (with their agent references populated where the
directory knows them) and stores group messages. Appends are idempotent
on the message id: a repeated append reports ``already_exists`` and never
creates a duplicate.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Optional

from pymongo.errors import DuplicateKeyError, PyMongoError

from shared.logging import get_logger
from shared.models import AgentId, AppendResult, GroupChat, Message
from store.errors import StoreError
from store.mongo import id_filter

logger = get_logger(__name__)


class GroupChatRepository(ABC):
    """Abstract group chat repository."""

    @abstractmethod
    async def get(self, group_id: str) -> Optional[GroupChat]:
        """Get a group chat by id."""
        pass

    @abstractmethod
    async def append(self, group_id: str, message: Message) -> AppendResult:
        """Append a message unless one with the same id already exists."""
        pass

    @abstractmethod
    async def list_messages(self, group_id: str) -> list[Message]:
        """List a group's messages in chronological order."""
        pass


class InMemoryGroupChatRepository(GroupChatRepository):
    """Group chats and their messages held in process memory."""

    def __init__(self, groups: Optional[list[GroupChat]] = None) -> None:
        self._groups: dict[str, GroupChat] = {g.id: g for g in groups or []}
        self._messages: dict[str, dict[str, Message]] = {}
        self._lock = asyncio.Lock()

    def add(self, group: GroupChat) -> None:
        """Add or replace a group chat."""
        self._groups[group.id] = group

    async def get(self, group_id: str) -> Optional[GroupChat]:
        return self._groups.get(group_id)

    async def append(self, group_id: str, message: Message) -> AppendResult:
        async with self._lock:
            messages = self._messages.setdefault(group_id, {})
            existing = messages.get(message.id)
            if existing is not None:
                return AppendResult(message=existing, already_exists=True)

            messages[message.id] = message

        return AppendResult(message=message)

    async def list_messages(self, group_id: str) -> list[Message]:
        messages = self._messages.get(group_id, {})
        return sorted(messages.values(), key=lambda m: m.timestamp)


class MongoGroupChatRepository(GroupChatRepository):
    """
    Group chats backed by MongoDB.

    Agent references are populated from the agents collection the way the
    document mapper would; ids the directory does not know stay bare.
    """

    def __init__(self, groups: Any, messages: Any, agents: Any) -> None:
        self.groups = groups
        self.messages = messages
        self.agents = agents

    async def initialize(self) -> None:
        """Create the unique index that makes appends idempotent."""
        await self.messages.create_index(
            [("groupId", 1), ("id", 1)],
            unique=True
        )

    async def get(self, group_id: str) -> Optional[GroupChat]:
        doc = await self.groups.find_one(id_filter(group_id))
        if doc is None:
            return None

        data = dict(doc)
        data["id"] = str(data.pop("_id"))
        raw_ids = data.get("agentIds") or []

        agent_docs = await self.agents.find(
            {"_id": {"$in": raw_ids}}
        ).to_list(length=None)
        by_id = {str(a["_id"]): a for a in agent_docs}

        data["agentIds"] = [
            by_id.get(str(ref)) or AgentId(id=str(ref))
            for ref in raw_ids
        ]
        return GroupChat.model_validate(data)

    async def append(self, group_id: str, message: Message) -> AppendResult:
        doc = {"groupId": group_id, **message.model_dump(by_alias=True, exclude={"is_thinking"})}

        try:
            await self.messages.insert_one(doc)
        except DuplicateKeyError:
            existing = await self.messages.find_one({"groupId": group_id, "id": message.id})
            logger.debug("Group message already stored", group_id=group_id, message_id=message.id)
            if existing is None:
                return AppendResult(message=message, already_exists=True)
            return AppendResult(message=Message.model_validate(existing), already_exists=True)
        except PyMongoError as e:
            raise StoreError(f"Failed to append group message: {e}") from e

        return AppendResult(message=message)

    async def list_messages(self, group_id: str) -> list[Message]:
        docs = await self.messages.find({"groupId": group_id}).sort("timestamp", 1).to_list(length=None)
        return [Message.model_validate(doc) for doc in docs]
