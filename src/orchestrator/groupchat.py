"""Group chat orchestration.

A non-discussion group turn dispatches once and runs every chosen agent
concurrently. Each finalized reply is appended to the group's message
store as soon as its stream ends, in whatever order the streams finish.
Discussion turns are handed to ``DiscussionSession``.
"""

import asyncio
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Optional

from fastgpt_client.errors import FastGPTError
from orchestrator import notices
from orchestrator.board import MessageBoard
from orchestrator.cancellation import CancellationToken
from orchestrator.discussion import DiscussionSession
from orchestrator.dispatch import DispatchResolver
from orchestrator.mentions import extract_mention, strip_mentions
from orchestrator.responder import AgentReply, AgentResponder
from shared.logging import get_logger
from shared.models import (
    UNKNOWN_AGENT_NAME,
    Agent,
    AgentStatus,
    ChatTurnMessage,
    DispatchCandidate,
    GroupChat,
    Message,
    to_turn_history,
)
from store.agents import AgentDirectory
from store.errors import StoreError
from store.groupchats import GroupChatRepository

logger = get_logger(__name__)


async def resolve_group_agents(group: GroupChat, directory: AgentDirectory) -> list[Agent]:
    """
    Normalize a group's agent references to full agents.

    Bare ids are looked up in the directory; ids it does not know become an
    offline placeholder agent so the group can still be shown.
    """
    agents: list[Agent] = []
    for ref in group.agent_ids:
        if isinstance(ref, Agent):
            agents.append(ref)
            continue

        agent = await directory.get(ref.id)
        if agent is None:
            logger.warning("Unknown agent in group", group_id=group.id, agent_id=ref.id)
            agent = Agent(id=ref.id, name=UNKNOWN_AGENT_NAME, status=AgentStatus.OFFLINE)
        agents.append(agent)
    return agents


@dataclass
class GroupTurn:
    """Handle on a launched group turn."""
    group_id: str
    token: CancellationToken
    user_message: Optional[Message] = None
    placeholders: list[Message] = field(default_factory=list)
    tasks: list[asyncio.Task] = field(default_factory=list)
    aborted: bool = False
    dispatch_error: Optional[str] = None

    async def wait(self) -> list[AgentReply]:
        """Wait for every agent call; cancelled calls are left out."""
        if not self.tasks:
            return []
        results = await asyncio.gather(*self.tasks, return_exceptions=True)
        return [r for r in results if isinstance(r, AgentReply)]

    def cancel(self) -> None:
        self.token.cancel("group turn cancelled")


class GroupChatOrchestrator:
    """
    Runs group chat turns and owns the live boards of recently used groups.

    Boards are loaded from the stored messages on first use and evicted
    least recently used first, except while a discussion holds them.
    Finished discussions are dropped.
    """

    def __init__(
        self,
        resolver: DispatchResolver,
        responder: AgentResponder,
        directory: AgentDirectory,
        repository: GroupChatRepository,
        discussion_rounds: int = 3,
        round_delay: float = 1.0,
        board_cache_size: int = 128
    ) -> None:
        self.resolver = resolver
        self.responder = responder
        self.directory = directory
        self.repository = repository
        self.discussion_rounds = discussion_rounds
        self.round_delay = round_delay
        self.board_cache_size = board_cache_size

        self._boards: OrderedDict[str, MessageBoard] = OrderedDict()
        self._discussions: dict[str, DiscussionSession] = {}

    async def board(self, group_id: str) -> MessageBoard:
        """Get the live board of a group, loading stored messages once."""
        board = self._boards.get(group_id)
        if board is not None:
            self._boards.move_to_end(group_id)
            return board

        board = MessageBoard(await self.repository.list_messages(group_id))
        self._boards[group_id] = board
        self._evict_boards()
        return board

    def _evict_boards(self) -> None:
        excess = len(self._boards) - self.board_cache_size
        for group_id in list(self._boards):
            if excess <= 0:
                break
            if group_id in self._discussions:
                continue
            del self._boards[group_id]
            excess -= 1
            logger.debug("Group board evicted", group_id=group_id)

    def _drop_finished_discussions(self) -> None:
        finished = [gid for gid, s in self._discussions.items() if s.finished]
        for group_id in finished:
            del self._discussions[group_id]

    def discussion(self, group_id: str) -> Optional[DiscussionSession]:
        """The group's running or paused discussion, if any."""
        self._drop_finished_discussions()
        return self._discussions.get(group_id)

    async def persist(self, group_id: str, message: Message) -> None:
        """Append one finalized message; store failures are logged only."""
        try:
            result = await self.repository.append(group_id, message)
        except StoreError as e:
            logger.error(
                "Group message append failed",
                group_id=group_id,
                message_id=message.id,
                error=str(e)
            )
            return

        if result.already_exists:
            logger.debug("Group message already persisted", group_id=group_id, message_id=message.id)

    def _mentioned(
        self,
        board: MessageBoard,
        group: GroupChat,
        agents: list[Agent],
        text: str
    ) -> tuple[Optional[list[DispatchCandidate]], bool]:
        """Returns (candidates, aborted). No mention yields (None, False)."""
        mention = extract_mention(text)
        if mention is None:
            return None, False

        target = next((a for a in agents if a.name == mention), None)
        if target is None:
            logger.info("Unknown agent mentioned", group_id=group.id, name=mention)
            board.append(notices.system_message(
                notices.unknown_mention(mention, [a.name for a in agents])
            ))
            return None, True
        return [DispatchCandidate(id=target.id, name=target.name)], False

    async def send(
        self,
        group: GroupChat,
        text: str,
        token: Optional[CancellationToken] = None
    ) -> GroupTurn:
        """
        Launch a non-discussion group turn.

        Returns as soon as the agent calls are started; await
        ``GroupTurn.wait()`` for them to finish.

        Raises:
            ValueError: If the text is empty or the group has no agents
        """
        text = text.strip()
        if not text:
            raise ValueError("消息内容不能为空")

        agents = await resolve_group_agents(group, self.directory)
        if not agents:
            raise ValueError("群聊中没有智能体")

        token = token or CancellationToken()
        turn = GroupTurn(group_id=group.id, token=token)
        board = await self.board(group.id)

        candidates, aborted = self._mentioned(board, group, agents, text)
        if aborted:
            turn.aborted = True
            return turn

        content = strip_mentions(text) if candidates else text
        history = to_turn_history(board.messages)
        history.append(ChatTurnMessage(role="user", content=content))

        turn.user_message = notices.user_message(content)
        board.append(turn.user_message)
        await self.persist(group.id, turn.user_message)

        if candidates is None:
            placeholder = notices.dispatch_message(notices.DISPATCHING_TEXT, thinking=True)
            board.append(placeholder)
            try:
                candidates = await self.resolver.resolve(
                    history, group.id, group_id=group.id, token=token
                )
            except FastGPTError as e:
                logger.error("Group dispatch failed", group_id=group.id, error=str(e))
                failed = board.finalize(placeholder.id, notices.dispatch_failed(e))
                turn.dispatch_error = str(e)
                if failed is not None:
                    await self.persist(group.id, failed)
                return turn
            board.remove(placeholder.id)

        chat_id = f"groupchat_{group.id}"

        async def on_finalized(message: Message) -> None:
            await self.persist(group.id, message)

        for candidate in candidates:
            agent = await self.responder.resolve_candidate(candidate, agents)
            placeholder = self.responder.open(board, agent)
            task = asyncio.create_task(self.responder.run(
                board, placeholder.id, agent, history, chat_id, token, on_finalized
            ))
            token.track(task)
            turn.placeholders.append(placeholder)
            turn.tasks.append(task)

        logger.info(
            "Group turn launched",
            group_id=group.id,
            agents=[p.agent_name for p in turn.placeholders]
        )
        return turn

    async def start_discussion(
        self,
        group: GroupChat,
        text: str,
        rounds: Optional[int] = None
    ) -> DiscussionSession:
        """
        Start a discussion, aborting any discussion still running in the group.

        Raises:
            ValueError: If the text is empty or the group has no agents
        """
        text = text.strip()
        if not text:
            raise ValueError("消息内容不能为空")

        agents = await resolve_group_agents(group, self.directory)
        if not agents:
            raise ValueError("群聊中没有智能体")

        self._drop_finished_discussions()
        previous = self._discussions.get(group.id)
        if previous is not None and previous.is_active:
            await previous.abort()

        session = DiscussionSession(
            group=group,
            agents=agents,
            board=await self.board(group.id),
            resolver=self.resolver,
            responder=self.responder,
            persist=self.persist,
            rounds=rounds or self.discussion_rounds,
            round_delay=self.round_delay,
        )
        self._discussions[group.id] = session
        await session.start(text)
        return session

    async def shutdown(self) -> None:
        """Abort running discussions."""
        for session in list(self._discussions.values()):
            if session.is_active:
                await session.abort()
            await session.wait()
