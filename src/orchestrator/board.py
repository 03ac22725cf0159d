"""Message board: the in-memory message list of one chat.

Every mutation goes through ``update(fn)``, where ``fn`` is a pure function
of the latest list. Updates run synchronously, so concurrent streams that
interleave on the event loop never lose each other's writes.
"""

from typing import Callable, Iterable, Optional

from shared.logging import get_logger
from shared.models import Message

logger = get_logger(__name__)

Update = Callable[[list[Message]], list[Message]]
ChangeListener = Callable[[list[Message]], None]


class MessageBoard:
    """Ordered messages of a chat plus listeners notified on every change."""

    def __init__(self, messages: Optional[Iterable[Message]] = None) -> None:
        self._messages: list[Message] = list(messages or [])
        self._listeners: list[ChangeListener] = []

    @property
    def messages(self) -> list[Message]:
        """A snapshot copy of the current messages."""
        return list(self._messages)

    def __len__(self) -> int:
        return len(self._messages)

    def subscribe(self, listener: ChangeListener) -> Callable[[], None]:
        """Register a change listener. Returns a function that removes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def update(self, fn: Update) -> list[Message]:
        """Replace the list with ``fn(latest)`` and notify listeners."""
        self._messages = list(fn(list(self._messages)))
        snapshot = self.messages
        for listener in list(self._listeners):
            listener(snapshot)
        return snapshot

    def get(self, message_id: str) -> Optional[Message]:
        return next((m for m in self._messages if m.id == message_id), None)

    def append(self, *messages: Message) -> None:
        self.update(lambda current: [*current, *messages])

    def remove(self, message_id: str) -> None:
        self.update(lambda current: [m for m in current if m.id != message_id])

    def patch(self, message_id: str, **changes) -> None:
        """Apply field changes to one message; unknown ids are ignored."""

        def apply(current: list[Message]) -> list[Message]:
            return [
                m.model_copy(update=changes) if m.id == message_id else m
                for m in current
            ]

        self.update(apply)

    def append_fragment(self, message_id: str, fragment: str) -> None:
        """
        Apply one streamed fragment.

        The first fragment replaces the thinking placeholder text, later
        fragments are appended.
        """

        def apply(current: list[Message]) -> list[Message]:
            updated = []
            for m in current:
                if m.id == message_id:
                    content = fragment if m.is_thinking else m.content + fragment
                    m = m.model_copy(update={"content": content, "is_thinking": False})
                updated.append(m)
            return updated

        self.update(apply)

    def finalize(self, message_id: str, content: Optional[str] = None) -> Optional[Message]:
        """Clear the thinking flag, optionally replacing the content."""
        changes: dict = {"is_thinking": False}
        if content is not None:
            changes["content"] = content

        self.patch(message_id, **changes)
        return self.get(message_id)
