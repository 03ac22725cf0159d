"""Persistence collaborators: agent directory, conversations, group chats."""

from store.agents import AgentDirectory, InMemoryAgentDirectory, MongoAgentDirectory
from store.conversations import (
    ConversationStore,
    InMemoryConversationStore,
    MongoConversationStore,
    Saved,
    SaveConflict,
    SaveFailed,
    SaveResult,
)
from store.groupchats import (
    GroupChatRepository,
    InMemoryGroupChatRepository,
    MongoGroupChatRepository,
)
from store.errors import StoreError
from store.factory import Stores, create_stores

__all__ = [
    "AgentDirectory",
    "InMemoryAgentDirectory",
    "MongoAgentDirectory",
    "ConversationStore",
    "InMemoryConversationStore",
    "MongoConversationStore",
    "Saved",
    "SaveConflict",
    "SaveFailed",
    "SaveResult",
    "GroupChatRepository",
    "InMemoryGroupChatRepository",
    "MongoGroupChatRepository",
    "StoreError",
    "Stores",
    "create_stores",
]
