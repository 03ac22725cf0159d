"""Explicit ``@Name`` mentions in user text."""

import re
from typing import Optional

# A mention starts the text or follows whitespace, so e-mail addresses are not mentions
MENTION_PATTERN = re.compile(r"(?:^|(?<=\s))@(\S+)")


def extract_mention(text: str) -> Optional[str]:
    """Return the first mentioned name, or None."""
    match = MENTION_PATTERN.search(text)
    return match.group(1) if match else None


def strip_mentions(text: str) -> str:
    """
    Remove every mention token from the text.

    Falls back to the original text when nothing else is left, so a bare
    ``@Name`` still sends something to the agent.
    """
    stripped = MENTION_PATTERN.sub("", text).strip()
    return stripped or text.strip()
