"""1:1 chat orchestration.

One user turn: optional ``@Name`` mention, otherwise the dispatch center
picks the agents; each agent answers in turn with the same history; the
transcript is then saved.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Protocol

from fastgpt_client.errors import FastGPTError
from orchestrator import notices
from orchestrator.board import MessageBoard
from orchestrator.cancellation import CancellationToken
from orchestrator.dispatch import DispatchResolver
from orchestrator.mentions import extract_mention, strip_mentions
from orchestrator.persistence import TranscriptSaver
from orchestrator.responder import AgentReply, AgentResponder
from shared.logging import get_logger
from shared.models import (
    ChatTurnMessage,
    Conversation,
    DispatchCandidate,
    Message,
    new_id,
    to_turn_history,
)
from store.agents import AgentDirectory
from store.conversations import Saved, SaveConflict, SaveFailed
from store.errors import StoreError

logger = get_logger(__name__)


class TurnState(str, Enum):
    """Where a turn currently is."""
    IDLE = "idle"
    AWAITING_DISPATCH = "awaiting_dispatch"
    RESPONDING_SINGLE = "responding_single"
    RESPONDING_PARALLEL = "responding_parallel"
    RESPONDING_SEQUENTIAL = "responding_sequential"
    PERSISTING = "persisting"


class ConversationListener(Protocol):
    """Notified when a conversation is created or saved."""

    def on_conversation_created(self, conversation: Conversation) -> None:
        ...

    def on_conversation_updated(self, conversation: Conversation) -> None:
        ...


class NullConversationListener:
    """Listener that ignores every event."""

    def on_conversation_created(self, conversation: Conversation) -> None:
        pass

    def on_conversation_updated(self, conversation: Conversation) -> None:
        pass


@dataclass
class ChatSession:
    """Live state of one 1:1 chat."""
    board: MessageBoard = field(default_factory=MessageBoard)
    conversation_id: Optional[str] = None
    version: int = 0
    chat_id: str = field(default_factory=lambda: f"chat_{new_id()}")
    state: TurnState = TurnState.IDLE

    @classmethod
    def from_conversation(cls, conversation: Conversation) -> "ChatSession":
        return cls(
            board=MessageBoard(conversation.messages),
            conversation_id=conversation.id,
            version=conversation.version,
            chat_id=f"chat_{conversation.id}",
        )


@dataclass
class TurnResult:
    """What one turn did."""
    messages: list[Message]
    replies: list[AgentReply] = field(default_factory=list)
    conversation_id: Optional[str] = None
    aborted: bool = False
    cancelled: bool = False
    dispatch_error: Optional[str] = None
    persisted: bool = False
    save_error: Optional[str] = None

    @property
    def agent_calls(self) -> int:
        return len(self.replies)


def make_title(messages: list[Message], max_length: int = 20) -> str:
    """Title from the first user message, truncated."""
    first = next((m for m in messages if m.is_user), None)
    if first is None:
        return "新对话"
    return first.content[:max_length]


class ChatOrchestrator:
    """
    Runs 1:1 chat turns.

    Calls for several candidates are issued one after another, all with the
    history as it was when the user sent the message.
    """

    def __init__(
        self,
        resolver: DispatchResolver,
        responder: AgentResponder,
        directory: AgentDirectory,
        saver: TranscriptSaver,
        listener: Optional[ConversationListener] = None,
        title_max_length: int = 20
    ) -> None:
        self.resolver = resolver
        self.responder = responder
        self.directory = directory
        self.saver = saver
        self.listener = listener or NullConversationListener()
        self.title_max_length = title_max_length

    async def send(
        self,
        session: ChatSession,
        text: str,
        token: Optional[CancellationToken] = None
    ) -> TurnResult:
        """
        Run one user turn to completion.

        Args:
            session: The chat to add the turn to
            text: Raw user input, may start with ``@Name``
            token: Cancellation token; a cancelled turn is not persisted

        Returns:
            TurnResult describing the calls made and the save outcome

        Raises:
            ValueError: If the text is empty
        """
        text = text.strip()
        if not text:
            raise ValueError("消息内容不能为空")

        token = token or CancellationToken()
        board = session.board
        mention = extract_mention(text)
        content = strip_mentions(text) if mention else text

        candidates: list[DispatchCandidate] = []
        agents = []
        if mention is not None:
            agents = await self.directory.list_agents()
            target = next((a for a in agents if a.name == mention), None)
            if target is None:
                logger.info("Unknown agent mentioned", name=mention)
                board.append(notices.system_message(
                    notices.unknown_mention(mention, [a.name for a in agents])
                ))
                return TurnResult(
                    messages=board.messages,
                    conversation_id=session.conversation_id,
                    aborted=True
                )
            candidates = [DispatchCandidate(id=target.id, name=target.name)]

        history = to_turn_history(board.messages)
        history.append(ChatTurnMessage(role="user", content=content))
        board.append(notices.user_message(content))
        result = TurnResult(messages=[], conversation_id=session.conversation_id)

        if mention is None:
            session.state = TurnState.AWAITING_DISPATCH
            placeholder = notices.dispatch_message(notices.DISPATCHING_TEXT, thinking=True)
            board.append(placeholder)
            try:
                candidates = await self.resolver.resolve(history, session.chat_id, token=token)
            except FastGPTError as e:
                logger.error("Dispatch failed", chat_id=session.chat_id, error=str(e))
                board.finalize(placeholder.id, notices.dispatch_failed(e))
                result.dispatch_error = str(e)
            else:
                board.remove(placeholder.id)

        session.state = TurnState.RESPONDING_SINGLE
        for candidate in candidates:
            if token.cancelled:
                break
            agent = await self.responder.resolve_candidate(candidate, agents)
            placeholder = self.responder.open(board, agent)
            reply = await self.responder.run(
                board, placeholder.id, agent, history, session.chat_id, token
            )
            result.replies.append(reply)

        if token.cancelled:
            session.state = TurnState.IDLE
            result.cancelled = True
            result.messages = board.messages
            return result

        session.state = TurnState.PERSISTING
        await self._persist(session, result)
        session.state = TurnState.IDLE

        result.messages = board.messages
        result.conversation_id = session.conversation_id
        return result

    async def _persist(self, session: ChatSession, result: TurnResult) -> None:
        messages = session.board.messages

        if session.conversation_id is None:
            try:
                conversation = await self.saver.create(
                    make_title(messages, self.title_max_length), messages
                )
            except StoreError as e:
                logger.error("Conversation create failed", error=str(e))
                result.save_error = str(e)
                return

            session.conversation_id = conversation.id
            session.version = conversation.version
            result.persisted = True
            self.listener.on_conversation_created(conversation)
            return

        outcome = await self.saver.save(session.conversation_id, messages, session.version)
        if isinstance(outcome, Saved):
            session.version = outcome.conversation.version
            result.persisted = True
            self.listener.on_conversation_updated(outcome.conversation)
        elif isinstance(outcome, SaveConflict):
            session.version = outcome.latest.version
            result.save_error = "保存冲突，请稍后重试"
        elif isinstance(outcome, SaveFailed):
            result.save_error = outcome.error
