"""Server-sent event parsing for FastGPT streaming completions.

FastGPT streams OpenAI-style chunks as ``data: {...}`` lines and ends the
stream with ``data: [DONE]`` (or a chunk whose finish_reason is ``stop``).
"""

import json
from typing import AsyncIterator, Optional

from fastgpt_client.errors import FastGPTStreamError
from shared.logging import get_logger

logger = get_logger(__name__)

DATA_PREFIX = "data: "
DONE_MARKER = "[DONE]"


class StreamEvent:
    """A parsed stream line: a text fragment, the terminal marker, or neither."""

    __slots__ = ("fragment", "done")

    def __init__(self, fragment: Optional[str] = None, done: bool = False) -> None:
        self.fragment = fragment
        self.done = done


def parse_line(line: str) -> Optional[StreamEvent]:
    """
    Parse one SSE line.

    Args:
        line: Raw line without the trailing newline

    Returns:
        A StreamEvent, or None for lines that carry nothing (comments,
        blank lines, malformed chunks, empty deltas)
    """
    if not line.startswith(DATA_PREFIX):
        return None

    data_str = line[len(DATA_PREFIX):].strip()
    if data_str == DONE_MARKER:
        return StreamEvent(done=True)

    try:
        chunk = json.loads(data_str)
    except json.JSONDecodeError:
        logger.warning("Dropping malformed stream chunk", chunk=data_str[:200])
        return None

    if not isinstance(chunk, dict):
        return None

    choices = chunk.get("choices") or []
    if not choices or not isinstance(choices[0], dict):
        return None

    choice = choices[0]
    delta = choice.get("delta") or {}
    content = delta.get("content") if isinstance(delta, dict) else None
    done = choice.get("finish_reason") == "stop"

    if not content and not done:
        return None

    return StreamEvent(fragment=content or None, done=done)


async def iter_fragments(lines: AsyncIterator[str]) -> AsyncIterator[str]:
    """
    Turn SSE lines into text fragments.

    Stops at the terminal marker. A transport that closes before the marker
    arrives is reported as a truncated stream.

    Raises:
        FastGPTStreamError: If the lines run out without a terminal marker
    """
    async for line in lines:
        event = parse_line(line)
        if event is None:
            continue
        if event.fragment:
            yield event.fragment
        if event.done:
            return

    raise FastGPTStreamError("Stream ended without a terminal marker")
