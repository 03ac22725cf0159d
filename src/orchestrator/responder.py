"""Agent responder: streams one agent's reply into its placeholder.

Shared by the 1:1, group and discussion paths. Failures are written into
the agent's own message and never raised, so siblings keep running.
Agent completions are never retried.
"""

from contextlib import aclosing
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Sequence

from fastgpt_client.client import FastGPTClient
from fastgpt_client.errors import FastGPTError
from orchestrator import notices
from orchestrator.board import MessageBoard
from orchestrator.cancellation import CancellationToken
from shared.logging import get_logger
from shared.models import Agent, ChatTurnMessage, DispatchCandidate, Message
from store.agents import AgentDirectory

logger = get_logger(__name__)

FinalizedCallback = Callable[[Message], Awaitable[None]]


@dataclass
class AgentReply:
    """Outcome of one agent call."""
    agent_name: str
    message_id: str
    ok: bool = True
    error: Optional[str] = None
    cancelled: bool = False


class AgentResponder:
    """Resolves candidates to agents and streams their replies."""

    def __init__(self, client: FastGPTClient, directory: AgentDirectory) -> None:
        self.client = client
        self.directory = directory

    async def resolve_candidate(
        self,
        candidate: DispatchCandidate,
        known: Sequence[Agent] = ()
    ) -> Agent:
        """
        Find the agent behind a dispatch candidate.

        Agents already loaded for the chat are matched by id and then by name
        before asking the directory. A candidate nobody knows becomes a bare
        agent without credential, which fails with the missing-key notice.
        """
        for agent in known:
            if agent.id == candidate.id and agent.api_key:
                return agent
        for agent in known:
            if agent.name == candidate.name and agent.api_key:
                return agent

        agent = await self.directory.resolve(candidate.id, candidate.name)
        if agent is None:
            logger.warning("No agent for candidate", agent_id=candidate.id, name=candidate.name)
            return Agent(id=candidate.id, name=candidate.name)
        return agent

    def open(self, board: MessageBoard, agent: Agent) -> Message:
        """Post the thinking placeholder the reply will stream into."""
        placeholder = notices.thinking_placeholder(agent)
        board.append(placeholder)
        return placeholder

    async def run(
        self,
        board: MessageBoard,
        message_id: str,
        agent: Agent,
        history: Sequence[ChatTurnMessage],
        chat_id: str,
        token: CancellationToken,
        on_finalized: Optional[FinalizedCallback] = None
    ) -> AgentReply:
        """
        Stream one agent's reply into ``message_id``.

        The token is checked before every fragment is applied. Once it is set
        nothing more is written and ``on_finalized`` is not called.
        """
        reply = AgentReply(agent_name=agent.name, message_id=message_id)

        if not agent.api_key:
            logger.warning("Agent has no API key", agent=agent.name)
            reply.ok, reply.error = False, "missing_api_key"
            return await self._finish(
                board, reply, token, on_finalized, notices.missing_api_key(agent.name)
            )

        received = False
        try:
            stream = self.client.stream(
                agent.api_key, chat_id, history, base_url=agent.base_url
            )
            async with aclosing(stream) as fragments:
                async for fragment in fragments:
                    if token.cancelled:
                        reply.cancelled = True
                        return reply
                    board.append_fragment(message_id, fragment)
                    received = True
        except FastGPTError as e:
            if token.cancelled:
                reply.cancelled = True
                return reply

            logger.warning("Agent call failed", agent=agent.name, error=str(e))
            reply.ok, reply.error = False, str(e)
            return await self._finish(
                board, reply, token, on_finalized, notices.describe_failure(e)
            )

        content = None if received else notices.empty_reply(agent.name)
        logger.debug("Agent reply complete", agent=agent.name, message_id=message_id)
        return await self._finish(board, reply, token, on_finalized, content)

    async def _finish(
        self,
        board: MessageBoard,
        reply: AgentReply,
        token: CancellationToken,
        on_finalized: Optional[FinalizedCallback],
        content: Optional[str]
    ) -> AgentReply:
        if token.cancelled:
            reply.cancelled = True
            return reply

        message = board.finalize(reply.message_id, content)
        if on_finalized is not None and message is not None:
            await token.guard(on_finalized)(message)
        return reply
