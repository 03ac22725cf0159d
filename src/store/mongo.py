"""MongoDB connection handling.

Uses Motor (async MongoDB driver) for async operations.
"""

from typing import Any, Optional

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorCollection, AsyncIOMotorDatabase

from shared.logging import get_logger

logger = get_logger(__name__)

# Collection names
AGENTS_COLLECTION = "agents"
CHATS_COLLECTION = "chats"
GROUPCHATS_COLLECTION = "groupchats"
GROUP_MESSAGES_COLLECTION = "groupchat_messages"


def id_filter(value: str) -> dict[str, Any]:
    """Match a document by ObjectId when the value is one, else by raw _id."""
    if ObjectId.is_valid(value):
        return {"_id": ObjectId(value)}
    return {"_id": value}


class MongoConnection:
    """Owns the Motor client for the lifetime of the application."""

    def __init__(self, url: str, database: str) -> None:
        self.url = url
        self.database_name = database
        self._client: Optional[AsyncIOMotorClient] = None
        self._db: Optional[AsyncIOMotorDatabase] = None

    async def connect(self) -> None:
        """Open the connection and verify it with a ping."""
        self._client = AsyncIOMotorClient(self.url)
        self._db = self._client[self.database_name]

        try:
            await self._client.admin.command("ping")
        except Exception as e:
            logger.error("Failed to connect to MongoDB", error=str(e))
            raise

        # Log host only, the URL may embed credentials
        logger.info(
            "MongoDB connection established",
            host=self.url.split("@")[-1],
            database=self.database_name
        )

    async def close(self) -> None:
        """Close the connection."""
        if self._client:
            self._client.close()
            self._client = None
            self._db = None
            logger.info("MongoDB connection closed")

    @property
    def database(self) -> AsyncIOMotorDatabase:
        if self._db is None:
            raise RuntimeError("Database not initialized. Call connect() first.")
        return self._db

    def collection(self, name: str) -> AsyncIOMotorCollection:
        """Get a collection by name."""
        return self.database[name]
