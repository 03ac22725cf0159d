"""Dispatch Resolver.

Asks the FastGPT dispatch center which agents should answer a turn and
turns its reply into a non-empty, validated candidate list.
"""

import json
from typing import Any, Optional, Sequence

from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_incrementing,
)

from fastgpt_client.client import FastGPTClient
from fastgpt_client.errors import FastGPTConfigurationError, FastGPTError
from orchestrator.cancellation import CancellationToken
from shared.config import FastGPTSettings, StoreSettings
from shared.logging import get_logger
from shared.models import ChatTurnMessage, DispatchCandidate
from shared.schema import dispatch_payload_errors
from store.agents import AgentDirectory

logger = get_logger(__name__)


class DispatchConfigurationError(FastGPTConfigurationError):
    """No dispatch credential is configured."""
    pass


def _is_transient(error: BaseException) -> bool:
    return isinstance(error, FastGPTError) and error.is_transient


def extract_content(response: dict[str, Any]) -> Optional[str]:
    """Pull ``choices[0].message.content`` out of a completion body."""
    choices = response.get("choices") if isinstance(response, dict) else None
    if not choices or not isinstance(choices, list):
        return None

    message = choices[0].get("message") if isinstance(choices[0], dict) else None
    content = message.get("content") if isinstance(message, dict) else None
    return content if isinstance(content, str) else None


def parse_candidates(content: Optional[str]) -> list[DispatchCandidate]:
    """
    Parse the dispatch center's reply.

    Returns an empty list for anything that is not a JSON array of
    ``{id, name}`` objects.
    """
    if content is None:
        return []

    try:
        data = json.loads(content)
    except json.JSONDecodeError as e:
        logger.warning("Dispatch reply is not JSON", error=str(e), content=content[:200])
        return []

    errors = dispatch_payload_errors(data)
    if errors:
        logger.warning("Dispatch reply failed validation", errors=errors)
        return []

    return [DispatchCandidate(id=item["id"], name=item["name"]) for item in data]


class DispatchResolver:
    """
    Resolves which agents answer a turn.

    The result is never empty: unusable replies fall back to the default
    agent. Transient I/O is retried with linear backoff; configuration,
    authentication and rate-limit errors are not.
    """

    def __init__(
        self,
        client: FastGPTClient,
        directory: AgentDirectory,
        settings: Optional[FastGPTSettings] = None,
        store_settings: Optional[StoreSettings] = None
    ) -> None:
        self.client = client
        self.directory = directory
        self.settings = settings or FastGPTSettings()
        self.store_settings = store_settings or StoreSettings()

    def _api_key(self, discuss: bool) -> str:
        key = self.settings.dispatch_api_key
        if discuss and self.settings.discussion_dispatch_api_key:
            key = self.settings.discussion_dispatch_api_key

        if not key:
            raise DispatchConfigurationError("调度中心API密钥未配置")
        return key

    async def default_candidate(self) -> DispatchCandidate:
        """The directory's default agent, or the configured well-known one."""
        agent = await self.directory.get_default()
        if agent is not None:
            return DispatchCandidate(id=agent.id, name=agent.name)

        return DispatchCandidate(
            id=self.store_settings.default_agent_id,
            name=self.store_settings.default_agent_name
        )

    async def _request(
        self,
        api_key: str,
        messages: Sequence[ChatTurnMessage],
        chat_id: str,
        extra: dict[str, Any]
    ) -> dict[str, Any]:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.settings.dispatch_max_attempts),
            wait=wait_incrementing(
                start=self.settings.dispatch_retry_delay_seconds,
                increment=self.settings.dispatch_retry_delay_seconds
            ),
            retry=retry_if_exception(_is_transient),
            reraise=True
        )

        async for attempt in retrying:
            with attempt:
                attempt_number = attempt.retry_state.attempt_number
                if attempt_number > 1:
                    logger.info("Retrying dispatch", chat_id=chat_id, attempt=attempt_number)
                return await self.client.complete(api_key, chat_id, messages, **extra)

        raise AssertionError("unreachable")

    async def resolve(
        self,
        messages: Sequence[ChatTurnMessage],
        chat_id: str,
        group_id: Optional[str] = None,
        discuss: bool = False,
        token: Optional[CancellationToken] = None
    ) -> list[DispatchCandidate]:
        """
        Ask the dispatch center which agents should answer.

        Args:
            messages: Conversation history sent to the dispatch center
            chat_id: FastGPT chat identifier
            group_id: Group chat id, sent along for group turns
            discuss: Discussion mode, exactly one candidate is returned
            token: Cancellation token of the calling batch

        Returns:
            A non-empty list of candidates

        Raises:
            DispatchConfigurationError: If no dispatch credential is configured
            FastGPTError: If the dispatch call failed after retries
        """
        api_key = self._api_key(discuss)
        if token is not None:
            token.raise_if_cancelled()

        extra: dict[str, Any] = {"discuss": discuss}
        if group_id is not None:
            extra["groupId"] = group_id

        response = await self._request(api_key, messages, chat_id, extra)
        candidates = parse_candidates(extract_content(response))

        if not candidates:
            fallback = await self.default_candidate()
            logger.info("Dispatch returned no candidates, using default agent", agent=fallback.name)
            candidates = [fallback]

        if discuss:
            candidates = candidates[:1]

        logger.info(
            "Dispatch resolved",
            chat_id=chat_id,
            discuss=discuss,
            agents=[c.name for c in candidates]
        )
        return candidates
