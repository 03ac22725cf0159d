"""Orchestrator for 1:1 chats, group chats and discussions.

Routes user turns through the FastGPT dispatch center, streams agent
replies into per-chat message boards and persists the results.
"""

from orchestrator.cancellation import CancellationToken
from orchestrator.chat import ChatOrchestrator, ChatSession, TurnResult, TurnState
from orchestrator.discussion import DiscussionSession, DiscussionStatus
from orchestrator.dispatch import DispatchConfigurationError, DispatchResolver
from orchestrator.groupchat import GroupChatOrchestrator, GroupTurn
from orchestrator.responder import AgentReply, AgentResponder

__all__ = [
    "CancellationToken",
    "ChatOrchestrator",
    "ChatSession",
    "TurnResult",
    "TurnState",
    "DiscussionSession",
    "DiscussionStatus",
    "DispatchConfigurationError",
    "DispatchResolver",
    "GroupChatOrchestrator",
    "GroupTurn",
    "AgentReply",
    "AgentResponder",
]
