"""FastGPT client for agent completions and dispatch calls.

Provides a clean interface over the FastGPT chat completions endpoint.
Handles request formatting, status mapping and stream decoding. The client
never chooses a credential: every call receives the bearer key explicitly.
"""

from typing import Any, AsyncIterator, Optional, Sequence

import httpx

from fastgpt_client.errors import (
    FastGPTConfigurationError,
    FastGPTConnectionError,
    FastGPTResponseError,
    FastGPTTimeoutError,
    error_for_status,
)
from fastgpt_client.streaming import iter_fragments
from shared.config import FastGPTSettings
from shared.logging import get_logger
from shared.models import ChatTurnMessage

logger = get_logger(__name__)


class FastGPTClient:
    """
    Client for the FastGPT chat completions API.

    Provides methods for:
    - Non-streaming completions (used by the dispatch center)
    - Streaming completions yielding text fragments (used per agent)

    The client is stateless apart from its connection pool and reusable.
    """

    def __init__(
        self,
        base_url: str = "https://cloud.fastgpt.io",
        completions_path: str = "/api/v1/chat/completions",
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ) -> None:
        """
        Initialize FastGPT client.

        Args:
            base_url: Default FastGPT base URL, overridable per call
            completions_path: Path of the chat completions endpoint
            timeout: Request timeout in seconds
            transport: Optional httpx transport (tests inject a mock)
        """
        self.base_url = base_url.rstrip("/")
        self.completions_path = completions_path
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @classmethod
    def from_settings(cls, settings: FastGPTSettings) -> "FastGPTClient":
        """Create a client from FastGPT settings."""
        return cls(
            base_url=settings.base_url,
            completions_path=settings.completions_path,
            timeout=settings.timeout_seconds
        )

    def _url(self, base_url: Optional[str]) -> str:
        root = (base_url or self.base_url).rstrip("/")
        return f"{root}{self.completions_path}"

    @staticmethod
    def _headers(api_key: str) -> dict[str, str]:
        if not api_key:
            raise FastGPTConfigurationError("A bearer credential is required for every FastGPT call")
        return {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }

    @staticmethod
    def _payload(
        chat_id: str,
        messages: Sequence[ChatTurnMessage],
        stream: bool,
        extra: dict[str, Any]
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "chatId": chat_id,
            "stream": stream,
            "detail": False,
            "messages": [m.model_dump() for m in messages],
        }
        payload.update({k: v for k, v in extra.items() if v is not None})
        return payload

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                transport=self._transport
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "FastGPTClient":
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit."""
        await self.close()

    async def complete(
        self,
        api_key: str,
        chat_id: str,
        messages: Sequence[ChatTurnMessage],
        base_url: Optional[str] = None,
        **extra: Any
    ) -> dict[str, Any]:
        """
        Request a non-streaming completion.

        Args:
            api_key: Bearer credential chosen by the caller
            chat_id: FastGPT chat identifier
            messages: Conversation history
            base_url: Optional per-agent base URL
            **extra: Additional top-level body fields (e.g. ``discuss``)

        Returns:
            The parsed response body

        Raises:
            FastGPTConfigurationError: If no credential was supplied
            FastGPTConnectionError: If FastGPT is unreachable or times out
            FastGPTHTTPError: If FastGPT answers with an error status
            FastGPTResponseError: If the body is not valid JSON
        """
        headers = self._headers(api_key)
        payload = self._payload(chat_id, messages, False, extra)

        logger.debug("Requesting completion", chat_id=chat_id, message_count=len(messages))

        try:
            client = await self._get_client()
            response = await client.post(self._url(base_url), json=payload, headers=headers)
        except httpx.TimeoutException as e:
            raise FastGPTTimeoutError(f"FastGPT request timed out: {e}") from e
        except httpx.TransportError as e:
            raise FastGPTConnectionError(f"Cannot connect to FastGPT: {e}") from e

        if response.status_code >= 400:
            logger.warning(
                "FastGPT returned an error",
                chat_id=chat_id,
                status=response.status_code
            )
            raise error_for_status(response.status_code, response.reason_phrase)

        try:
            return response.json()
        except ValueError as e:
            logger.warning(
                "FastGPT returned a non-JSON body",
                chat_id=chat_id,
                content_type=response.headers.get("content-type")
            )
            raise FastGPTResponseError(f"Invalid JSON from FastGPT: {e}") from e

    async def stream(
        self,
        api_key: str,
        chat_id: str,
        messages: Sequence[ChatTurnMessage],
        base_url: Optional[str] = None
    ) -> AsyncIterator[str]:
        """
        Request a streaming completion.

        The returned iterator is lazy, finite and cannot be restarted. It ends
        at the transport's terminal marker or when the consumer stops iterating.

        Args:
            api_key: Bearer credential chosen by the caller
            chat_id: FastGPT chat identifier
            messages: Conversation history
            base_url: Optional per-agent base URL

        Yields:
            Text fragments in receipt order

        Raises:
            FastGPTConfigurationError: If no credential was supplied
            FastGPTConnectionError: If FastGPT is unreachable or times out
            FastGPTHTTPError: If FastGPT answers with an error status
            FastGPTStreamError: If the stream ends without a terminal marker
        """
        headers = self._headers(api_key)
        payload = self._payload(chat_id, messages, True, {})

        logger.debug("Opening completion stream", chat_id=chat_id, message_count=len(messages))

        try:
            client = await self._get_client()
            async with client.stream(
                "POST", self._url(base_url), json=payload, headers=headers
            ) as response:
                if response.status_code >= 400:
                    await response.aread()
                    logger.warning(
                        "FastGPT stream rejected",
                        chat_id=chat_id,
                        status=response.status_code
                    )
                    raise error_for_status(response.status_code, response.reason_phrase)

                async for fragment in iter_fragments(response.aiter_lines()):
                    yield fragment
        except httpx.TimeoutException as e:
            raise FastGPTTimeoutError(f"FastGPT stream timed out: {e}") from e
        except httpx.TransportError as e:
            raise FastGPTConnectionError(f"Cannot connect to FastGPT: {e}") from e
