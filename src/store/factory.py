"""Store construction from settings."""

from dataclasses import dataclass
from typing import Optional

from shared.config import Settings
from shared.logging import get_logger
from shared.models import Agent, GroupChat
from store.agents import AgentDirectory, InMemoryAgentDirectory, MongoAgentDirectory
from store.conversations import (
    ConversationStore,
    InMemoryConversationStore,
    MongoConversationStore,
)
from store.groupchats import (
    GroupChatRepository,
    InMemoryGroupChatRepository,
    MongoGroupChatRepository,
)
from store.mongo import (
    AGENTS_COLLECTION,
    CHATS_COLLECTION,
    GROUP_MESSAGES_COLLECTION,
    GROUPCHATS_COLLECTION,
    MongoConnection,
)

logger = get_logger(__name__)


@dataclass
class Stores:
    """The persistence collaborators the orchestrator needs."""
    agents: AgentDirectory
    conversations: ConversationStore
    groupchats: GroupChatRepository
    connection: Optional[MongoConnection] = None

    async def close(self) -> None:
        if self.connection is not None:
            await self.connection.close()


def create_memory_stores(settings: Settings) -> Stores:
    """Build in-memory stores seeded from the settings file."""
    agents = [Agent.model_validate(a) for a in settings.agents]
    groups = [GroupChat.model_validate(g) for g in settings.groupchats]

    logger.info("Using in-memory stores", agent_count=len(agents), group_count=len(groups))

    return Stores(
        agents=InMemoryAgentDirectory(agents, default_agent_id=settings.store.default_agent_id),
        conversations=InMemoryConversationStore(),
        groupchats=InMemoryGroupChatRepository(groups),
    )


async def create_mongo_stores(settings: Settings) -> Stores:
    """Connect to MongoDB and build the collection-backed stores."""
    connection = MongoConnection(settings.store.mongodb_url, settings.store.database)
    await connection.connect()

    groupchats = MongoGroupChatRepository(
        groups=connection.collection(GROUPCHATS_COLLECTION),
        messages=connection.collection(GROUP_MESSAGES_COLLECTION),
        agents=connection.collection(AGENTS_COLLECTION),
    )
    await groupchats.initialize()

    return Stores(
        agents=MongoAgentDirectory(
            connection.collection(AGENTS_COLLECTION),
            default_agent_id=settings.store.default_agent_id
        ),
        conversations=MongoConversationStore(connection.collection(CHATS_COLLECTION)),
        groupchats=groupchats,
        connection=connection,
    )


async def create_stores(settings: Settings) -> Stores:
    """
    Build stores for the configured backend.

    Raises:
        ValueError: If the backend is not supported
    """
    backends = {"memory", "mongodb"}
    if settings.store.backend not in backends:
        raise ValueError(
            f"Unsupported store backend: {settings.store.backend}. "
            f"Supported: {sorted(backends)}"
        )

    if settings.store.backend == "mongodb":
        return await create_mongo_stores(settings)
    return create_memory_stores(settings)
