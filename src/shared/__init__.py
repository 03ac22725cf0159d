"""Shared models, configuration and logging for the group chat orchestrator."""

from shared.models import (
    Agent,
    AgentId,
    AgentRef,
    AgentStatus,
    AppendResult,
    ChatTurnMessage,
    Conversation,
    DispatchCandidate,
    GroupChat,
    Message,
)
from shared.config import Settings, get_settings
from shared.logging import get_logger, setup_logging

__all__ = [
    "Agent",
    "AgentId",
    "AgentRef",
    "AgentStatus",
    "AppendResult",
    "ChatTurnMessage",
    "Conversation",
    "DispatchCandidate",
    "GroupChat",
    "Message",
    "Settings",
    "get_settings",
    "get_logger",
    "setup_logging",
]
