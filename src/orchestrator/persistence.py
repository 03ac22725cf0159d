"""Transcript persistence with conflict handling and bounded retries.

Saves are last-writer-wins: on a version conflict the latest stored
version is adopted and the caller's message list is written over it.
"""

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    retry_if_result,
    stop_after_attempt,
    wait_incrementing,
)

from shared.config import StoreSettings
from shared.logging import get_logger
from shared.models import Conversation, Message
from store.conversations import ConversationStore, Saved, SaveConflict, SaveFailed, SaveResult
from store.errors import StoreError

logger = get_logger(__name__)


def _should_retry(result: SaveResult) -> bool:
    if isinstance(result, Saved):
        return False
    if isinstance(result, SaveFailed) and result.not_found:
        return False
    return True


def _last_result(retry_state: RetryCallState) -> SaveResult:
    return retry_state.outcome.result()


class TranscriptSaver:
    """Creates and saves conversations through a ``ConversationStore``."""

    def __init__(
        self,
        store: ConversationStore,
        max_attempts: int = 3,
        retry_delay: float = 1.0
    ) -> None:
        self.store = store
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay

    @classmethod
    def from_settings(cls, store: ConversationStore, settings: StoreSettings) -> "TranscriptSaver":
        return cls(
            store,
            max_attempts=settings.save_max_attempts,
            retry_delay=settings.save_retry_delay_seconds
        )

    def _wait(self):
        return wait_incrementing(start=self.retry_delay, increment=self.retry_delay)

    async def create(self, title: str, messages: list[Message]) -> Conversation:
        """
        Create a conversation, retrying store I/O errors.

        Raises:
            StoreError: If every attempt failed
        """
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=self._wait(),
            retry=retry_if_exception_type(StoreError),
            reraise=True
        )
        return await retrying(self.store.create, title, messages)

    async def save(
        self,
        conversation_id: str,
        messages: list[Message],
        expected_version: int
    ) -> SaveResult:
        """
        Save the full message list.

        Args:
            conversation_id: Conversation identifier
            messages: Messages to store
            expected_version: Version the caller last saw

        Returns:
            ``Saved`` on success, otherwise the result of the last attempt
        """
        version = expected_version

        async def attempt() -> SaveResult:
            nonlocal version
            result = await self.store.save(conversation_id, messages, version)

            if isinstance(result, SaveConflict):
                logger.info(
                    "Save conflict, adopting latest version",
                    conversation_id=conversation_id,
                    expected_version=version,
                    latest_version=result.latest.version
                )
                version = result.latest.version
            elif isinstance(result, SaveFailed):
                logger.warning(
                    "Save attempt failed",
                    conversation_id=conversation_id,
                    error=result.error
                )
            return result

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=self._wait(),
            retry=retry_if_result(_should_retry),
            retry_error_callback=_last_result
        )
        result = await retrying(attempt)

        if not isinstance(result, Saved):
            logger.error(
                "Conversation save gave up",
                conversation_id=conversation_id,
                attempts=self.max_attempts
            )
        return result
