"""Discussion mode for group chats.

A discussion runs a fixed number of rounds. Every round asks the dispatch
center afresh (discuss mode, one candidate), lets that agent answer the
whole discussion so far, and adds its answer to the rolling history.
Rounds run strictly one after another.
"""

import asyncio
from enum import Enum
from typing import Awaitable, Callable, Optional

from fastgpt_client.errors import FastGPTError
from orchestrator import notices
from orchestrator.board import MessageBoard
from orchestrator.cancellation import CancellationToken
from orchestrator.dispatch import DispatchConfigurationError, DispatchResolver
from orchestrator.responder import AgentResponder
from shared.logging import get_logger
from shared.models import Agent, ChatTurnMessage, GroupChat, Message

logger = get_logger(__name__)

PersistCallback = Callable[[str, Message], Awaitable[None]]


class DiscussionStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    ABORTED = "aborted"
    FAILED = "failed"


class DiscussionSession:
    """
    One discussion in one group chat.

    ``pause()`` lets the running round finish and stops before the next;
    ``resume()`` continues with the round after the last finished one.
    ``abort()`` cancels the in-flight call; rounds already persisted stay.
    """

    def __init__(
        self,
        group: GroupChat,
        agents: list[Agent],
        board: MessageBoard,
        resolver: DispatchResolver,
        responder: AgentResponder,
        persist: PersistCallback,
        rounds: int = 3,
        round_delay: float = 1.0
    ) -> None:
        if rounds < 1:
            raise ValueError("rounds must be at least 1")

        self.group = group
        self.agents = agents
        self.board = board
        self.resolver = resolver
        self.responder = responder
        self.persist = persist
        self.rounds = rounds
        self.round_delay = round_delay

        self.token = CancellationToken()
        self.status = DiscussionStatus.IDLE
        self.next_round = 1
        self.completed_rounds: list[int] = []
        self.history: list[ChatTurnMessage] = []

        self._pause_requested = False
        self._task: Optional[asyncio.Task] = None

    @property
    def chat_id(self) -> str:
        return f"groupchat_{self.group.id}"

    @property
    def is_active(self) -> bool:
        return self.status in (DiscussionStatus.RUNNING, DiscussionStatus.PAUSED)

    @property
    def completed(self) -> bool:
        return self.status == DiscussionStatus.COMPLETED

    @property
    def finished(self) -> bool:
        return self.status in (
            DiscussionStatus.COMPLETED, DiscussionStatus.ABORTED, DiscussionStatus.FAILED
        )

    async def _post(self, message: Message) -> None:
        self.board.append(message)
        await self.persist(self.group.id, message)

    async def start(self, text: str) -> asyncio.Task:
        """Post the topic and launch round 1."""
        if self.status != DiscussionStatus.IDLE:
            raise RuntimeError("Discussion already started")

        await self._post(notices.user_message(text))
        self.history.append(ChatTurnMessage(role="user", content=text))
        await self._post(notices.dispatch_message(notices.discussion_started(self.rounds)))

        logger.info("Discussion started", group_id=self.group.id, rounds=self.rounds)
        return self._launch()

    def _launch(self) -> asyncio.Task:
        self.status = DiscussionStatus.RUNNING
        self._pause_requested = False
        self._task = self.token.track(asyncio.create_task(self._run()))
        return self._task

    def pause(self) -> bool:
        """Request a pause after the running round. Returns False if not running."""
        if self.status != DiscussionStatus.RUNNING:
            return False
        self._pause_requested = True
        logger.info("Discussion pause requested", group_id=self.group.id, next_round=self.next_round)
        return True

    async def resume(self) -> Optional[asyncio.Task]:
        """
        Continue a paused discussion.

        A pause still pending on the running round is withdrawn and the
        running task is returned. Does nothing otherwise.
        """
        if self.status == DiscussionStatus.RUNNING and self._pause_requested:
            self._pause_requested = False
            logger.info("Discussion pause withdrawn", group_id=self.group.id, next_round=self.next_round)
            return self._task

        if self.status != DiscussionStatus.PAUSED:
            return None

        await self._post(notices.dispatch_message(
            notices.discussion_resumed(self.next_round, self.rounds)
        ))
        logger.info("Discussion resumed", group_id=self.group.id, next_round=self.next_round)
        return self._launch()

    async def abort(self) -> None:
        """Stop the discussion, cancel the in-flight call and post the notice."""
        if self.finished:
            return
        self.status = DiscussionStatus.ABORTED
        self.token.cancel("discussion aborted")
        await self._post(notices.dispatch_message(notices.discussion_aborted()))
        logger.info("Discussion aborted", group_id=self.group.id, completed_rounds=self.completed_rounds)

    async def wait(self) -> None:
        """Wait for the current run to stop (finished, paused or aborted)."""
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)

    async def _run(self) -> None:
        while self.next_round <= self.rounds:
            if self._pause_requested:
                self.status = DiscussionStatus.PAUSED
                await self._post(notices.dispatch_message(
                    notices.discussion_paused(self.next_round, self.rounds)
                ))
                logger.info("Discussion paused", group_id=self.group.id, next_round=self.next_round)
                return

            round_number = self.next_round
            try:
                await self._run_round(round_number)
            except DispatchConfigurationError as e:
                logger.error("Discussion cannot dispatch", group_id=self.group.id, error=str(e))
                self.status = DiscussionStatus.FAILED
                await self._post(notices.system_message(
                    notices.discussion_round_failed(round_number, e)
                ))
                return
            except FastGPTError as e:
                logger.warning(
                    "Discussion round failed",
                    group_id=self.group.id,
                    round=round_number,
                    error=str(e)
                )
                await self._post(notices.dispatch_message(
                    notices.discussion_round_failed(round_number, e)
                ))

            self.next_round = round_number + 1
            if self.next_round <= self.rounds and self.round_delay > 0:
                await asyncio.sleep(self.round_delay)

        self.status = DiscussionStatus.COMPLETED
        await self._post(notices.dispatch_message(notices.discussion_completed(self.rounds)))
        logger.info("Discussion completed", group_id=self.group.id, rounds=self.rounds)

    async def _run_round(self, round_number: int) -> None:
        candidates = await self.resolver.resolve(
            self.history,
            self.chat_id,
            group_id=self.group.id,
            discuss=True,
            token=self.token
        )
        agent = await self.responder.resolve_candidate(candidates[0], self.agents)
        await self._post(notices.dispatch_message(
            notices.discussion_round(round_number, agent.name)
        ))

        prompt = [ChatTurnMessage(
            role="user",
            content="\n\n".join(m.content for m in self.history)
        )]
        placeholder = self.responder.open(self.board, agent)

        async def on_finalized(message: Message) -> None:
            await self.persist(self.group.id, message)

        reply = await self.responder.run(
            self.board, placeholder.id, agent, prompt, self.chat_id, self.token, on_finalized
        )

        if reply.ok and not reply.cancelled:
            message = self.board.get(placeholder.id)
            if message is not None:
                self.history.append(ChatTurnMessage(
                    role="assistant",
                    content=f"{agent.name}：{message.content}"
                ))
        self.completed_rounds.append(round_number)
