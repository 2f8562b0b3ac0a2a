"""Failure taxonomy for completion requests and chat turns."""

from __future__ import annotations

import asyncio
from enum import Enum

import httpx
from openai import (
    APIConnectionError,
    APIStatusError,
    APITimeoutError,
    AuthenticationError,
    NotFoundError,
    PermissionDeniedError,
    RateLimitError,
)

__all__ = [
    "ErrorKind",
    "CopilotError",
    "RateLimitedError",
    "ProviderTimeoutError",
    "RequestCancelledError",
    "ProviderMisconfiguredError",
    "UnexpectedProviderResponseError",
    "ProviderError",
    "classify_provider_error",
]


class ErrorKind(str, Enum):
    RATE_LIMITED = "rate_limited"
    PROVIDER_TIMEOUT = "provider_timeout"
    USER_CANCELLED = "user_cancelled"
    PROVIDER_MISCONFIGURED = "provider_misconfigured"
    UNEXPECTED_RESPONSE = "unexpected_response"
    PROVIDER_ERROR = "provider_error"


class CopilotError(Exception):
    """Base class for failures raised inside the orchestration core.

    ``retryable`` defaults per subclass and may be cleared on an instance.
    """

    kind: ErrorKind = ErrorKind.PROVIDER_ERROR
    retryable: bool = False

    def __init__(self, message: str = "", *, cause: BaseException | None = None) -> None:
        super().__init__(message or self.__class__.__name__)
        self.cause = cause
        # Set by the provider when capabilities ran before the failure.
        self.capabilities_dispatched = False


class RateLimitedError(CopilotError):
    kind = ErrorKind.RATE_LIMITED
    retryable = True


class ProviderTimeoutError(CopilotError):
    """The provider did not answer in time. Never raised for caller cancellation."""

    kind = ErrorKind.PROVIDER_TIMEOUT
    retryable = True


class RequestCancelledError(CopilotError):
    kind = ErrorKind.USER_CANCELLED


class ProviderMisconfiguredError(CopilotError):
    kind = ErrorKind.PROVIDER_MISCONFIGURED


class UnexpectedProviderResponseError(CopilotError):
    kind = ErrorKind.UNEXPECTED_RESPONSE


class ProviderError(CopilotError):
    kind = ErrorKind.PROVIDER_ERROR


def classify_provider_error(exc: BaseException) -> CopilotError:
    """Map an SDK or transport exception onto the copilot taxonomy.

    ``CopilotError`` instances pass through unchanged. Anything unrecognised becomes a
    non-retryable :class:`ProviderError`.
    """

    if isinstance(exc, CopilotError):
        return exc
    if isinstance(exc, RateLimitError):
        return RateLimitedError(str(exc) or "Rate limit exceeded", cause=exc)
    if isinstance(exc, APIStatusError) and getattr(exc, "status_code", None) == 429:
        return RateLimitedError(str(exc) or "Rate limit exceeded", cause=exc)
    # APITimeoutError subclasses APIConnectionError, so it must be checked first.
    if isinstance(exc, (APITimeoutError, httpx.TimeoutException, asyncio.TimeoutError)):
        return ProviderTimeoutError(str(exc) or "Provider request timed out", cause=exc)
    if isinstance(exc, (AuthenticationError, PermissionDeniedError, NotFoundError)):
        return ProviderMisconfiguredError(str(exc) or "Provider rejected the configuration", cause=exc)
    if isinstance(exc, APIStatusError) and getattr(exc, "status_code", None) == 408:
        return ProviderTimeoutError(str(exc) or "Provider request timed out", cause=exc)
    if isinstance(exc, APIConnectionError):
        return ProviderError(str(exc) or "Unable to reach the completion provider", cause=exc)
    return ProviderError(str(exc) or exc.__class__.__name__, cause=exc)
