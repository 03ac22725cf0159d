"""structlog configuration.

Every event passes through ``redact_secrets`` before rendering, so agent
and dispatch credentials stay out of the output.
"""

import logging
import sys
from typing import Any

import structlog
from structlog.types import Processor

REDACTED = "[REDACTED]"

# Matched case-insensitively at any nesting depth
SENSITIVE_KEYS = frozenset({"api_key", "apikey", "authorization", "token", "secret", "password"})


def _mask(key: Any, value: Any) -> Any:
    if str(key).lower() in SENSITIVE_KEYS:
        return REDACTED
    if isinstance(value, dict):
        return {k: _mask(k, v) for k, v in value.items()}
    return value


def redact_secrets(
    logger: logging.Logger, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """structlog processor masking credential values."""
    return {key: _mask(key, value) for key, value in event_dict.items()}


def _renderer(json_output: bool) -> list[Processor]:
    if not json_output:
        return [structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())]
    # Agent names and replies are mostly Chinese; keep them readable
    return [
        structlog.processors.format_exc_info,
        structlog.processors.JSONRenderer(ensure_ascii=False),
    ]


def setup_logging(log_level: str = "INFO", json_output: bool = False) -> None:
    """
    Configure structlog and the stdlib root logger.

    Args:
        log_level: Level name such as ``DEBUG`` or ``WARNING``
        json_output: Render JSON lines instead of the console format
    """
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        raise ValueError(f"Unknown log level: {log_level}")

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            redact_secrets,
            *_renderer(json_output),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )

    # uvicorn and motor log through the stdlib
    logging.basicConfig(format="%(levelname)s %(name)s: %(message)s", stream=sys.stdout, level=level)


def get_logger(name: str | None = None, **initial_context: Any) -> structlog.BoundLogger:
    """Return a structlog logger, optionally pre-bound with ``initial_context``."""
    logger = structlog.get_logger(name)
    return logger.bind(**initial_context) if initial_context else logger


def bind_context(**context: Any) -> None:
    """Attach values (request id, chat id) to every event of the current task."""
    structlog.contextvars.bind_contextvars(**context)


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()
