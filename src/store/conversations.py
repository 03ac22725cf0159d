"""Conversation Store.

Persists 1:1 chat transcripts. Saves replace the full message list
(last writer wins per conversation) and are guarded by a version token:
a stale ``expected_version`` yields ``SaveConflict`` carrying the latest
stored state instead of raising.
"""

import asyncio
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional, Union

from pymongo import ReturnDocument
from pymongo.errors import PyMongoError

from shared.logging import get_logger
from shared.models import Conversation, Message, utcnow
from store.errors import StoreError
from store.mongo import id_filter

logger = get_logger(__name__)


@dataclass
class Saved:
    """The write went through."""
    conversation: Conversation


@dataclass
class SaveConflict:
    """Another writer got there first; ``latest`` is what is stored now."""
    latest: Conversation


@dataclass
class SaveFailed:
    """The write failed for a reason other than a version conflict."""
    error: str
    not_found: bool = False


SaveResult = Union[Saved, SaveConflict, SaveFailed]


class ConversationStore(ABC):
    """Abstract conversation store."""

    @abstractmethod
    async def create(self, title: str, messages: list[Message]) -> Conversation:
        """Create a conversation and return it with its assigned id."""
        pass

    @abstractmethod
    async def get(self, conversation_id: str) -> Optional[Conversation]:
        """Get a conversation by id."""
        pass

    @abstractmethod
    async def save(
        self,
        conversation_id: str,
        messages: list[Message],
        expected_version: int
    ) -> SaveResult:
        """
        Replace the message list if the stored version still matches.

        Args:
            conversation_id: Conversation identifier
            messages: Full message list to store
            expected_version: Version the caller last saw

        Returns:
            Saved, SaveConflict or SaveFailed
        """
        pass

    @abstractmethod
    async def list_summaries(self) -> list[dict[str, Any]]:
        """List conversations, most recently updated first."""
        pass

    @abstractmethod
    async def delete(self, conversation_id: str) -> bool:
        """Delete a conversation. Returns False if it did not exist."""
        pass


def summarize(conversation: Conversation, preview_length: int = 50) -> dict[str, Any]:
    """Build a list entry with a preview of the first agent reply."""
    reply = next((m for m in conversation.messages if not m.is_user), None)
    if reply is None:
        preview = "暂无消息"
    elif len(reply.content) > preview_length:
        preview = reply.content[:preview_length] + "..."
    else:
        preview = reply.content

    return {
        "id": conversation.id,
        "title": conversation.title,
        "date": conversation.updated_at.isoformat(),
        "preview": preview,
    }


class InMemoryConversationStore(ConversationStore):
    """
    Conversation store held in process memory.

    The lock only guards the dict against interleaved compare-and-swap; it
    is never held across a call into the orchestrator.
    """

    def __init__(self) -> None:
        self._conversations: dict[str, Conversation] = {}
        self._lock = asyncio.Lock()

    async def create(self, title: str, messages: list[Message]) -> Conversation:
        conversation = Conversation(
            id=uuid.uuid4().hex,
            title=title,
            messages=list(messages)
        )

        async with self._lock:
            self._conversations[conversation.id] = conversation

        logger.info("Conversation created", conversation_id=conversation.id)
        return conversation

    async def get(self, conversation_id: str) -> Optional[Conversation]:
        return self._conversations.get(conversation_id)

    async def save(
        self,
        conversation_id: str,
        messages: list[Message],
        expected_version: int
    ) -> SaveResult:
        async with self._lock:
            current = self._conversations.get(conversation_id)
            if current is None:
                return SaveFailed(error="聊天记录不存在", not_found=True)

            if current.version != expected_version:
                return SaveConflict(latest=current)

            updated = current.model_copy(update={
                "messages": list(messages),
                "updated_at": utcnow(),
                "version": current.version + 1,
            })
            self._conversations[conversation_id] = updated

        return Saved(conversation=updated)

    async def list_summaries(self) -> list[dict[str, Any]]:
        conversations = sorted(
            self._conversations.values(),
            key=lambda c: c.updated_at,
            reverse=True
        )
        return [summarize(c) for c in conversations]

    async def delete(self, conversation_id: str) -> bool:
        async with self._lock:
            if conversation_id in self._conversations:
                del self._conversations[conversation_id]
                logger.info("Conversation deleted", conversation_id=conversation_id)
                return True
        return False


class MongoConversationStore(ConversationStore):
    """Conversation store backed by the ``chats`` collection."""

    def __init__(self, collection: Any) -> None:
        self.collection = collection

    @staticmethod
    def _to_conversation(doc: dict[str, Any]) -> Conversation:
        data = dict(doc)
        data["id"] = str(data.pop("_id"))
        data.setdefault("version", 0)
        return Conversation.model_validate(data)

    @staticmethod
    def _dump_messages(messages: list[Message]) -> list[dict[str, Any]]:
        return [m.model_dump(by_alias=True, exclude={"is_thinking"}) for m in messages]

    async def create(self, title: str, messages: list[Message]) -> Conversation:
        now = utcnow()
        doc = {
            "title": title,
            "messages": self._dump_messages(messages),
            "createdAt": now,
            "updatedAt": now,
            "version": 0,
        }
        try:
            result = await self.collection.insert_one(doc)
        except PyMongoError as e:
            raise StoreError(f"Failed to create conversation: {e}") from e
        doc["_id"] = result.inserted_id

        logger.info("Conversation created", conversation_id=str(result.inserted_id))
        return self._to_conversation(doc)

    async def get(self, conversation_id: str) -> Optional[Conversation]:
        doc = await self.collection.find_one(id_filter(conversation_id))
        return self._to_conversation(doc) if doc else None

    async def save(
        self,
        conversation_id: str,
        messages: list[Message],
        expected_version: int
    ) -> SaveResult:
        query = {**id_filter(conversation_id), "version": expected_version}

        try:
            doc = await self.collection.find_one_and_update(
                query,
                {
                    "$set": {
                        "messages": self._dump_messages(messages),
                        "updatedAt": utcnow(),
                    },
                    "$inc": {"version": 1},
                },
                return_document=ReturnDocument.AFTER
            )
            if doc is not None:
                return Saved(conversation=self._to_conversation(doc))

            latest = await self.collection.find_one(id_filter(conversation_id))
        except PyMongoError as e:
            logger.warning("Conversation save failed", conversation_id=conversation_id, error=str(e))
            return SaveFailed(error=str(e))

        if latest is None:
            return SaveFailed(error="聊天记录不存在", not_found=True)
        return SaveConflict(latest=self._to_conversation(latest))

    async def list_summaries(self) -> list[dict[str, Any]]:
        docs = await self.collection.find({}).sort("updatedAt", -1).to_list(length=None)
        return [summarize(self._to_conversation(doc)) for doc in docs]

    async def delete(self, conversation_id: str) -> bool:
        result = await self.collection.delete_one(id_filter(conversation_id))
        if result.deleted_count:
            logger.info("Conversation deleted", conversation_id=conversation_id)
            return True
        return False
