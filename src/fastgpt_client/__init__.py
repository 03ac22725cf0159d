"""FastGPT Client - streaming and non-streaming chat completions."""

from fastgpt_client.client import FastGPTClient
from fastgpt_client.errors import (
    FastGPTAuthError,
    FastGPTConfigurationError,
    FastGPTConnectionError,
    FastGPTError,
    FastGPTHTTPError,
    FastGPTRateLimitError,
    FastGPTResponseError,
    FastGPTServerError,
    FastGPTStreamError,
    FastGPTTimeoutError,
)

__all__ = [
    "FastGPTClient",
    "FastGPTAuthError",
    "FastGPTConfigurationError",
    "FastGPTConnectionError",
    "FastGPTError",
    "FastGPTHTTPError",
    "FastGPTRateLimitError",
    "FastGPTResponseError",
    "FastGPTServerError",
    "FastGPTStreamError",
    "FastGPTTimeoutError",
]
