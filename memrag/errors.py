"""
Error taxonomy shared by the ingestion and query engines.

    MemragError
      ConfigurationError        missing credentials / index host (fatal)
      InputValidationError      bad caller input (fatal, surfaced)
      ProviderError             external dependency failed
        TransientProviderError  429 / 5xx / timeout / network (retried)
          RateLimitExceededError   local limiter wait budget exhausted
        PermanentProviderError  auth / malformed request (never retried)
      LLMResponseError          LLM answered but not with usable JSON
      RetrievalError            vector search failed (the only fatal query error)
      IngestionError            a fatal ingestion stage failed
"""
from __future__ import annotations

import asyncio
from typing import Optional

import httpx


class MemragError(Exception):
    """Base class for every error raised by memrag."""


class ConfigurationError(MemragError):
    pass


class InputValidationError(MemragError):
    pass


class ProviderError(MemragError):
    """An external provider call failed. `retryable` drives the retry policy."""

    retryable: bool = True

    def __init__(self, provider: str, message: str, status_code: Optional[int] = None) -> None:
        self.provider = provider
        self.status_code = status_code
        prefix = f"{provider} error"
        if status_code is not None:
            prefix += f" ({status_code})"
        super().__init__(f"{prefix}: {message}")


class TransientProviderError(ProviderError):
    retryable = True


class PermanentProviderError(ProviderError):
    retryable = False


class RateLimitExceededError(TransientProviderError):
    def __init__(self, provider: str, waited_s: float) -> None:
        super().__init__(provider, f"rate limit wait exceeded after {waited_s:.1f}s", status_code=429)
        self.waited_s = waited_s


class LLMResponseError(MemragError):
    pass


class RetrievalError(MemragError):
    pass


class IngestionError(MemragError):
    def __init__(self, stage: str, message: str, retryable: bool = True) -> None:
        self.stage = stage
        self.retryable = retryable
        super().__init__(f"{stage} failed: {message}")


# --- Classification -----------------------------------------------------------

_NON_RETRYABLE_MARKERS = ("400", "401", "403", "404", "invalid", "validation")
_RETRYABLE_MARKERS = (
    "rate limit", "429", "timeout", "timed out", "network", "econnreset",
    "socket", "connection", "500", "502", "503", "504",
)


def classify_http_error(provider: str, status_code: int, body: str = "") -> ProviderError:
    """Map an HTTP status to the transient/permanent split."""
    message = body[:300] if body else f"HTTP {status_code}"
    if status_code in (401, 403):
        return PermanentProviderError(provider, f"authentication failed: {message}", status_code)
    if status_code in (400, 404, 422):
        return PermanentProviderError(provider, f"invalid request: {message}", status_code)
    return TransientProviderError(provider, message, status_code)


def is_retryable_error(error: BaseException) -> bool:
    """
    Decide whether an arbitrary exception is worth another attempt.

    Typed provider errors decide by class; timeouts and transport errors are
    transient; anything else falls back to message heuristics and defaults to
    retryable.
    """
    if isinstance(error, (ProviderError, IngestionError)):
        return error.retryable
    if isinstance(error, (ConfigurationError, InputValidationError)):
        return False
    if isinstance(error, (asyncio.TimeoutError, httpx.TimeoutException, httpx.TransportError)):
        return True

    message = str(error).lower()
    if any(marker in message for marker in _RETRYABLE_MARKERS):
        return True
    if any(marker in message for marker in _NON_RETRYABLE_MARKERS):
        return False
    return True
