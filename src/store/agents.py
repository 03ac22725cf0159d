"""Agent Directory.

Stores agent identity, credentials and display metadata. Resolution
precedence for a dispatch candidate is: by id, then by exact name, then the
directory-wide default agent.
"""

from abc import ABC, abstractmethod
from typing import Any, Optional

from pymongo import ReturnDocument

from shared.logging import get_logger
from shared.models import Agent, AgentStatus
from store.mongo import id_filter

logger = get_logger(__name__)


class AgentDirectory(ABC):
    """
    Abstract agent directory.

    Subclasses implement raw lookups; resolution rules live here so every
    backend resolves candidates the same way.
    """

    def __init__(self, default_agent_id: str) -> None:
        self.default_agent_id = default_agent_id

    @abstractmethod
    async def get(self, agent_id: str) -> Optional[Agent]:
        """Get an agent by id."""
        pass

    @abstractmethod
    async def get_by_name(self, name: str) -> Optional[Agent]:
        """Get an agent by exact name."""
        pass

    @abstractmethod
    async def list_agents(self) -> list[Agent]:
        """List all agents."""
        pass

    @abstractmethod
    async def update_credentials(
        self,
        agent_id: str,
        api_key: str,
        base_url: Optional[str] = None
    ) -> Optional[Agent]:
        """
        Replace an agent's credential.

        Returns:
            The updated agent, or None if it does not exist
        """
        pass

    async def get_default(self) -> Optional[Agent]:
        """Get the well-known default agent."""
        return await self.get(self.default_agent_id)

    async def resolve(
        self,
        agent_id: Optional[str] = None,
        name: Optional[str] = None
    ) -> Optional[Agent]:
        """
        Resolve an agent by id, then exact name, then the default.

        Args:
            agent_id: Candidate id, may be unknown to the directory
            name: Candidate name

        Returns:
            The resolved agent, or None when even the default is missing
        """
        if agent_id:
            agent = await self.get(agent_id)
            if agent:
                return agent
        if name:
            agent = await self.get_by_name(name)
            if agent:
                return agent

        logger.info("Agent not found, using default", agent_id=agent_id, name=name)
        return await self.get_default()

    async def count_online(self) -> int:
        """Count agents whose status is online."""
        agents = await self.list_agents()
        return sum(1 for a in agents if a.status == AgentStatus.ONLINE)


class InMemoryAgentDirectory(AgentDirectory):
    """Agent directory held in process memory."""

    def __init__(
        self,
        agents: Optional[list[Agent]] = None,
        default_agent_id: str = "default"
    ) -> None:
        super().__init__(default_agent_id)
        self._agents: dict[str, Agent] = {a.id: a for a in agents or []}

    def add(self, agent: Agent) -> None:
        """Add or replace an agent."""
        self._agents[agent.id] = agent

    async def get(self, agent_id: str) -> Optional[Agent]:
        return self._agents.get(agent_id)

    async def get_by_name(self, name: str) -> Optional[Agent]:
        for agent in self._agents.values():
            if agent.name == name:
                return agent
        return None

    async def list_agents(self) -> list[Agent]:
        return list(self._agents.values())

    async def update_credentials(
        self,
        agent_id: str,
        api_key: str,
        base_url: Optional[str] = None
    ) -> Optional[Agent]:
        agent = self._agents.get(agent_id)
        if agent is None:
            return None

        update: dict[str, Any] = {"api_key": api_key}
        if base_url is not None:
            update["base_url"] = base_url

        agent = agent.model_copy(update=update)
        self._agents[agent_id] = agent
        logger.info("Agent credentials updated", agent_id=agent_id)
        return agent


class MongoAgentDirectory(AgentDirectory):
    """Agent directory backed by the ``agents`` collection."""

    def __init__(self, collection: Any, default_agent_id: str) -> None:
        super().__init__(default_agent_id)
        self.collection = collection

    async def get(self, agent_id: str) -> Optional[Agent]:
        doc = await self.collection.find_one(id_filter(agent_id))
        return Agent.model_validate(doc) if doc else None

    async def get_by_name(self, name: str) -> Optional[Agent]:
        doc = await self.collection.find_one({"name": name})
        return Agent.model_validate(doc) if doc else None

    async def list_agents(self) -> list[Agent]:
        docs = await self.collection.find({}).to_list(length=None)
        return [Agent.model_validate(doc) for doc in docs]

    async def update_credentials(
        self,
        agent_id: str,
        api_key: str,
        base_url: Optional[str] = None
    ) -> Optional[Agent]:
        fields: dict[str, Any] = {"apiKey": api_key}
        if base_url is not None:
            fields["baseUrl"] = base_url

        doc = await self.collection.find_one_and_update(
            id_filter(agent_id),
            {"$set": fields},
            return_document=ReturnDocument.AFTER
        )
        if doc is None:
            return None

        logger.info("Agent credentials updated", agent_id=agent_id)
        return Agent.model_validate(doc)
