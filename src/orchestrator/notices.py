"""User-facing texts and the notice messages built from them."""

from typing import Iterable, Union

from fastgpt_client.errors import FastGPTError, FastGPTHTTPError
from shared.models import (
    DISPATCH_CENTER_COLOR,
    DISPATCH_CENTER_NAME,
    SYSTEM_COLOR,
    SYSTEM_NAME,
    USER_COLOR,
    USER_NAME,
    Agent,
    DispatchCandidate,
    Message,
)

THINKING_TEXT = "思考中......"
DISPATCHING_TEXT = "正在分析问题，选择合适的智能体..."

INVALID_CREDENTIAL = "[API密钥无效或未授权，请检查智能体配置]"
RATE_LIMITED = "[请求过于频繁，请稍后再试]"
SERVER_ERROR = "[服务器内部错误，请稍后再试]"
REQUEST_FAILED = "[请求出错，请稍后再试]"


def describe_failure(error: BaseException) -> str:
    """Map an agent call failure to the text shown in place of its reply."""
    if isinstance(error, FastGPTHTTPError):
        if error.status_code in (401, 403):
            return INVALID_CREDENTIAL
        if error.status_code == 429:
            return RATE_LIMITED
        if error.status_code == 500:
            return SERVER_ERROR
    return REQUEST_FAILED


def missing_api_key(agent_name: str) -> str:
    return f"{agent_name}暂无回复 - API密钥未找到"


def empty_reply(agent_name: str) -> str:
    return f"{agent_name}暂无回复"


def unknown_mention(name: str, available: Iterable[str]) -> str:
    names = "、".join(available) or "无"
    return f"未找到名为“{name}”的智能体。可用的智能体：{names}"


def dispatch_failed(error: FastGPTError) -> str:
    return f"调度失败：{error}"


def discussion_started(rounds: int) -> str:
    return f"开始讨论（共{rounds}轮）"


def discussion_round(round_number: int, agent_name: str) -> str:
    return f"第{round_number}轮讨论：选择智能体 {agent_name} 参与讨论"


def discussion_round_failed(round_number: int, error: BaseException) -> str:
    return f"第{round_number}轮讨论失败：{error}"


def discussion_paused(next_round: int, rounds: int) -> str:
    return f"讨论已暂停（第{next_round}/{rounds}轮），点击继续讨论按钮可恢复"


def discussion_resumed(next_round: int, rounds: int) -> str:
    return f"讨论继续（第{next_round}/{rounds}轮）"


def discussion_completed(rounds: int) -> str:
    return f"讨论已完成，共进行了{rounds}轮"


def discussion_aborted() -> str:
    return "讨论已终止"


def user_message(content: str) -> Message:
    return Message(
        agent_name=USER_NAME,
        agent_color=USER_COLOR,
        content=content,
        is_user=True
    )


def dispatch_message(content: str, thinking: bool = False) -> Message:
    return Message(
        agent_name=DISPATCH_CENTER_NAME,
        agent_color=DISPATCH_CENTER_COLOR,
        content=content,
        is_thinking=thinking
    )


def system_message(content: str) -> Message:
    return Message(
        agent_name=SYSTEM_NAME,
        agent_color=SYSTEM_COLOR,
        content=content
    )


def thinking_placeholder(agent: Union[Agent, DispatchCandidate]) -> Message:
    """The message an agent's reply streams into."""
    color = getattr(agent, "color", None)
    return Message(
        agent_name=agent.name,
        content=THINKING_TEXT,
        is_thinking=True,
        **({"agent_color": color} if color else {})
    )
