"""Group chat orchestrator - FastAPI Application.

The service provides:
- 1:1 chat turns with dispatch-center routing
- Group chat turns (concurrent agents) and discussions
- Transcript and group message persistence
"""

import uuid
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from fastgpt_client.client import FastGPTClient
from orchestrator.chat import ChatOrchestrator, ChatSession
from orchestrator.discussion import DiscussionSession
from orchestrator.dispatch import DispatchResolver
from orchestrator.groupchat import GroupChatOrchestrator
from orchestrator.persistence import TranscriptSaver
from orchestrator.responder import AgentResponder
from shared.config import Settings, get_settings
from shared.logging import bind_context, clear_context, get_logger, setup_logging
from shared.models import Conversation, GroupChat, Message
from store.conversations import Saved, SaveConflict, SaveFailed
from store.errors import StoreError
from store.factory import Stores, create_stores

logger = get_logger(__name__)


# Request/Response Models
class ChatTurnRequest(BaseModel):
    """One 1:1 chat turn."""
    message: str = Field(..., description="User message, may start with @Name")
    chat_id: Optional[str] = Field(default=None, description="Existing conversation ID")


class TranscriptRequest(BaseModel):
    """Full transcript replacement."""
    messages: list[Message]
    version: Optional[int] = Field(default=None, description="Version last seen by the client")


class GroupChatRequest(BaseModel):
    """One group chat turn."""
    message: str
    discuss: bool = False
    rounds: Optional[int] = Field(default=None, ge=1)


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    store_backend: str
    online_agents: int


class ConversationListener:
    """Logs conversation lifecycle events."""

    def on_conversation_created(self, conversation: Conversation) -> None:
        logger.info("Conversation created", conversation_id=conversation.id, title=conversation.title)

    def on_conversation_updated(self, conversation: Conversation) -> None:
        logger.debug(
            "Conversation updated",
            conversation_id=conversation.id,
            version=conversation.version
        )


# Global instances
_settings: Optional[Settings] = None
_stores: Optional[Stores] = None
_client: Optional[FastGPTClient] = None
_saver: Optional[TranscriptSaver] = None
_chat: Optional[ChatOrchestrator] = None
_groups: Optional[GroupChatOrchestrator] = None


def build_orchestrators(
    settings: Settings,
    stores: Stores,
    client: FastGPTClient
) -> tuple[ChatOrchestrator, GroupChatOrchestrator, TranscriptSaver]:
    """Wire the orchestrators from settings, stores and a FastGPT client."""
    resolver = DispatchResolver(client, stores.agents, settings.fastgpt, settings.store)
    responder = AgentResponder(client, stores.agents)
    saver = TranscriptSaver.from_settings(stores.conversations, settings.store)

    chat = ChatOrchestrator(
        resolver=resolver,
        responder=responder,
        directory=stores.agents,
        saver=saver,
        listener=ConversationListener(),
        title_max_length=settings.orchestrator.title_max_length,
    )
    groups = GroupChatOrchestrator(
        resolver=resolver,
        responder=responder,
        directory=stores.agents,
        repository=stores.groupchats,
        discussion_rounds=settings.orchestrator.discussion_rounds,
        round_delay=settings.orchestrator.round_delay_seconds,
        board_cache_size=settings.orchestrator.board_cache_size,
    )
    return chat, groups, saver


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    global _settings, _stores, _client, _saver, _chat, _groups

    # Startup
    logger.info("Starting group chat orchestrator")

    _settings = get_settings()
    setup_logging(_settings.log_level, json_output=_settings.environment == "production")

    _stores = await create_stores(_settings)
    _client = FastGPTClient.from_settings(_settings.fastgpt)
    _chat, _groups, _saver = build_orchestrators(_settings, _stores, _client)

    if not _settings.fastgpt.dispatch_api_key:
        logger.warning("No dispatch API key configured, only @mentions will work")

    logger.info(
        "Orchestrator started",
        store_backend=_settings.store.backend,
        fastgpt=_settings.fastgpt.base_url
    )

    yield

    # Shutdown
    logger.info("Shutting down orchestrator")

    await _groups.shutdown()
    await _client.close()
    await _stores.close()


# Create FastAPI app
app = FastAPI(
    title="Group Chat Orchestrator",
    description="Multi-agent chat dispatch and streaming orchestration over FastGPT",
    version="0.1.0",
    lifespan=lifespan
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_context(request: Request, call_next):
    clear_context()
    request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
    bind_context(request_id=request_id, path=request.url.path)
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


def _require_ready() -> None:
    if _stores is None or _chat is None or _groups is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Orchestrator not initialized"
        )


async def _get_group(group_id: str) -> GroupChat:
    group = await _stores.groupchats.get(group_id)
    if group is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="群聊不存在"
        )
    return group


def _get_discussion(group_id: str) -> DiscussionSession:
    session = _groups.discussion(group_id)
    if session is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="该群聊没有进行中的讨论"
        )
    return session


def _discussion_state(session: DiscussionSession) -> dict[str, Any]:
    return {
        "status": session.status.value,
        "rounds": session.rounds,
        "nextRound": session.next_round,
        "completedRounds": session.completed_rounds,
        "completed": session.completed,
    }


@app.get("/health", response_model=HealthResponse, tags=["System"])
async def health_check():
    """Health check endpoint."""
    _require_ready()

    return HealthResponse(
        status="healthy",
        store_backend=_settings.store.backend,
        online_agents=await _stores.agents.count_online()
    )


@app.get("/agents/default", tags=["Agents"])
async def get_default_agent():
    """Public info of the default agent."""
    _require_ready()

    agent = await _stores.agents.get_default()
    if agent is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="默认智能体不存在"
        )
    return agent.public_dict()


@app.post("/chats/turn", tags=["Chat"])
async def chat_turn(request: ChatTurnRequest):
    """
    Run one 1:1 chat turn to completion.

    Without ``chat_id`` a new conversation is created once the turn finishes.
    """
    _require_ready()

    if request.chat_id:
        conversation = await _stores.conversations.get(request.chat_id)
        if conversation is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="聊天记录不存在"
            )
        session = ChatSession.from_conversation(conversation)
    else:
        session = ChatSession()

    try:
        result = await _chat.send(session, request.message)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    return {
        "chatId": result.conversation_id,
        "messages": [m.to_wire() for m in result.messages],
        "agentCalls": result.agent_calls,
        "aborted": result.aborted,
        "dispatchError": result.dispatch_error,
        "persisted": result.persisted,
        "saveError": result.save_error,
    }


@app.get("/chats", tags=["Chat"])
async def list_chats():
    """List conversations, most recent first."""
    _require_ready()
    return {"chats": await _stores.conversations.list_summaries()}


@app.get("/chats/{chat_id}", tags=["Chat"])
async def get_chat(chat_id: str):
    """Get a conversation transcript."""
    _require_ready()

    conversation = await _stores.conversations.get(chat_id)
    if conversation is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="聊天记录不存在"
        )
    return conversation.to_wire()


@app.put("/chats/{chat_id}", tags=["Chat"])
async def save_chat(chat_id: str, request: TranscriptRequest):
    """Replace a transcript; version conflicts are resolved last-writer-wins."""
    _require_ready()

    version = request.version
    if version is None:
        current = await _stores.conversations.get(chat_id)
        if current is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="聊天记录不存在"
            )
        version = current.version

    result = await _saver.save(chat_id, request.messages, version)

    if isinstance(result, Saved):
        return result.conversation.to_wire()
    if isinstance(result, SaveFailed) and result.not_found:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=result.error)

    detail = result.error if isinstance(result, SaveFailed) else "保存冲突，请稍后重试"
    if isinstance(result, SaveConflict):
        logger.warning("Transcript save kept conflicting", chat_id=chat_id)
    raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=detail)


@app.delete("/chats/{chat_id}", tags=["Chat"])
async def delete_chat(chat_id: str):
    """Delete a conversation."""
    _require_ready()

    deleted = await _stores.conversations.delete(chat_id)
    if not deleted:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="聊天记录不存在"
        )
    return {"status": "deleted"}


@app.post("/groupchats/{group_id}/chat", tags=["Group Chat"])
async def group_chat(group_id: str, request: GroupChatRequest):
    """
    Run a group chat turn.

    Non-discussion turns return the launched placeholders right away; the
    replies are persisted as they finish. Discussion turns start a session
    controlled through the discussion endpoints.
    """
    _require_ready()
    group = await _get_group(group_id)

    try:
        if request.discuss:
            session = await _groups.start_discussion(group, request.message, request.rounds)
            return {"discussion": _discussion_state(session)}

        turn = await _groups.send(group, request.message)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    board = await _groups.board(group_id)
    return {
        "userMessage": turn.user_message.to_wire() if turn.user_message else None,
        "placeholders": [p.to_wire() for p in turn.placeholders],
        "aborted": turn.aborted,
        "dispatchError": turn.dispatch_error,
        "messages": [m.to_wire() for m in board.messages],
    }


@app.post("/groupchats/{group_id}/discussion/pause", tags=["Group Chat"])
async def pause_discussion(group_id: str):
    """Pause after the running round."""
    _require_ready()
    session = _get_discussion(group_id)

    if not session.pause():
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="讨论未在进行中"
        )
    return {"discussion": _discussion_state(session)}


@app.post("/groupchats/{group_id}/discussion/resume", tags=["Group Chat"])
async def resume_discussion(group_id: str):
    """Resume a paused discussion with the next round."""
    _require_ready()
    session = _get_discussion(group_id)

    task = await session.resume()
    if task is None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="讨论未暂停"
        )
    return {"discussion": _discussion_state(session)}


@app.post("/groupchats/{group_id}/discussion/abort", tags=["Group Chat"])
async def abort_discussion(group_id: str):
    """Abort the discussion; persisted rounds are kept."""
    _require_ready()
    session = _get_discussion(group_id)

    await session.abort()
    return {"discussion": _discussion_state(session)}


@app.get("/groupchats/{group_id}/messages", tags=["Group Chat"])
async def list_group_messages(group_id: str):
    """List persisted group messages."""
    _require_ready()
    await _get_group(group_id)

    messages = await _stores.groupchats.list_messages(group_id)
    return {"messages": [m.to_wire() for m in messages]}


@app.post("/groupchats/{group_id}/messages", tags=["Group Chat"])
async def append_group_message(group_id: str, message: Message):
    """Append a message; repeating the same id reports alreadyExists."""
    _require_ready()
    await _get_group(group_id)

    try:
        result = await _stores.groupchats.append(group_id, message)
    except StoreError as e:
        logger.error("Group message append failed", group_id=group_id, error=str(e))
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))

    return {
        "message": result.message.to_wire(),
        "alreadyExists": result.already_exists,
    }


def main():
    """Run the orchestrator server."""
    import uvicorn

    settings = get_settings()

    uvicorn.run(
        "orchestrator.main:app",
        host=settings.orchestrator.host,
        port=settings.orchestrator.port,
        reload=settings.environment == "development"
    )


if __name__ == "__main__":
    main()
