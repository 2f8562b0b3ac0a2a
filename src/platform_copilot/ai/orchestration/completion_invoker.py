"""Completion requests with bounded retries and cooperative cancellation.

Rate-limited and timed-out requests are retried with linear backoff
(``base_delay * attempt``) unless capabilities were already dispatched. Request
deadlines belong to the provider client. A caller-supplied :class:`asyncio.Event`
aborts an in-flight request or a pending backoff promptly; cancellation is never retried and
wins over any failure that lands at the same time. Every outcome is returned as a
:class:`CompletionResult`; only raw task cancellation propagates.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping, Sequence, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_incrementing,
)

from ...services import telemetry
from ...services.settings import RetrySettings
from ..ai_types import CompletionProvider, CompletionSettings, ProviderCompletion
from ..capabilities import CapabilityRegistry
from ..errors import (
    CopilotError,
    ErrorKind,
    ProviderMisconfiguredError,
    RequestCancelledError,
    classify_provider_error,
)
from .types import CompletionResult, TurnStatus

__all__ = ["RetryPolicy", "CompletionInvoker", "CANCELLED_MESSAGE"]

LOGGER = logging.getLogger(__name__)

CANCELLED_MESSAGE = "Request cancelled."

SleepFn = Callable[[float], Awaitable[None]]
_T = TypeVar("_T")

_REMEDIATION = (
    "• Wait a minute and try again",
    "• Simplify the request or split it into smaller steps",
    "• Check the provider's quota and capacity, or ask an administrator to raise it",
)


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    """Linear backoff policy for retryable provider failures.

    Attributes:
        max_retries: Retries after the first attempt.
        base_delay_seconds: Delay before retry ``n`` is ``base_delay_seconds * n``.
    """

    max_retries: int = 3
    base_delay_seconds: float = 10.0

    @classmethod
    def from_settings(cls, settings: RetrySettings) -> "RetryPolicy":
        return cls(
            max_retries=max(0, int(settings.max_retries)),
            base_delay_seconds=max(0.0, float(settings.base_delay_seconds)),
        )

    @property
    def max_attempts(self) -> int:
        return max(0, self.max_retries) + 1

    def delay_for(self, retry_number: int) -> float:
        return self.base_delay_seconds * max(1, retry_number)


class CompletionInvoker:
    """Issues one completion request, retrying rate limits and timeouts."""

    def __init__(
        self,
        provider: CompletionProvider | None,
        *,
        policy: RetryPolicy | None = None,
        capabilities: CapabilityRegistry | None = None,
        sleep: SleepFn | None = None,
    ) -> None:
        self._provider = provider
        self._policy = policy if policy is not None else RetryPolicy()
        self._capabilities = capabilities
        self._sleep = sleep or asyncio.sleep

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    async def invoke(
        self,
        messages: Sequence[Mapping[str, Any]],
        settings: CompletionSettings,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> CompletionResult:
        provider = self._provider
        if provider is None:
            return _failure(ProviderMisconfiguredError("No completion provider is configured"), attempts=0)

        attempts = 0
        retrying = AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(self._policy.max_attempts),
            wait=wait_incrementing(
                start=self._policy.base_delay_seconds,
                increment=self._policy.base_delay_seconds,
            ),
            retry=retry_if_exception(_is_retryable),
            sleep=self._cancellable_sleep(cancel_event),
            before_sleep=self._log_retry,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    attempts += 1
                    completion = await self._attempt(provider, messages, settings, cancel_event)
        except RequestCancelledError:
            LOGGER.info("Completion cancelled by caller after %s attempt(s)", attempts)
            return CompletionResult(
                status=TurnStatus.CANCELLED,
                content=CANCELLED_MESSAGE,
                attempts=attempts,
                error_kind=ErrorKind.USER_CANCELLED,
            )
        except CopilotError as exc:
            if exc.retryable:
                LOGGER.warning("Completion failed after %s attempt(s): %s", attempts, exc)
            else:
                LOGGER.error("Completion failed with %s: %s", exc.kind.value, exc)
            return _failure(exc, attempts=attempts)

        return CompletionResult(
            status=TurnStatus.SUCCESS,
            content=completion.content or "",
            metadata=completion.metadata or {},
            attempts=attempts,
        )

    async def _attempt(
        self,
        provider: CompletionProvider,
        messages: Sequence[Mapping[str, Any]],
        settings: CompletionSettings,
        cancel_event: asyncio.Event | None,
    ) -> ProviderCompletion:
        if cancel_event is not None and cancel_event.is_set():
            raise RequestCancelledError("Request cancelled before dispatch")
        try:
            return await _race(provider.complete(messages, settings, self._capabilities), cancel_event)
        except RequestCancelledError:
            raise
        except Exception as exc:
            if cancel_event is not None and cancel_event.is_set():
                raise RequestCancelledError("Request cancelled during a failing attempt") from exc
            mapped = classify_provider_error(exc)
            if mapped is exc:
                raise
            raise mapped from exc

    def _cancellable_sleep(self, cancel_event: asyncio.Event | None) -> SleepFn:
        async def _sleep(seconds: float) -> None:
            if cancel_event is None:
                await self._sleep(seconds)
                return
            if cancel_event.is_set():
                raise RequestCancelledError("Request cancelled during backoff")
            await _race(self._sleep(seconds), cancel_event)

        return _sleep

    @staticmethod
    def _log_retry(retry_state: RetryCallState) -> None:
        outcome = retry_state.outcome
        error = outcome.exception() if outcome is not None else None
        delay = retry_state.next_action.sleep if retry_state.next_action is not None else 0.0
        kind = error.kind.value if isinstance(error, CopilotError) else "unknown"
        LOGGER.warning(
            "Completion attempt %s failed (%s); retrying in %.1fs",
            retry_state.attempt_number,
            kind,
            delay,
        )
        telemetry.emit(
            "completion.retry",
            {"attempt": retry_state.attempt_number, "error_kind": kind, "delay_seconds": delay},
        )


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, CopilotError) and error.retryable


async def _race(awaitable: Awaitable[_T], cancel_event: asyncio.Event | None) -> _T:
    """Await ``awaitable`` unless ``cancel_event`` fires first.

    Raises :class:`RequestCancelledError` when the event is set before or together with
    completion of the awaitable, even if the awaitable failed.
    """

    if cancel_event is None:
        return await awaitable
    task = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(cancel_event.wait())
    try:
        await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        waiter.cancel()
        raise
    if cancel_event.is_set():
        waiter.cancel()
        if not task.done():
            task.cancel()
        # Collect the task outcome so a late failure is not reported as never retrieved.
        await asyncio.gather(task, return_exceptions=True)
        raise RequestCancelledError("Request cancelled by caller")
    waiter.cancel()
    return task.result()


def _failure(error: CopilotError, *, attempts: int) -> CompletionResult:
    return CompletionResult(
        status=TurnStatus.ERROR,
        content=_explain(error, attempts),
        attempts=attempts,
        error_kind=error.kind,
    )


def _explain(error: CopilotError, attempts: int) -> str:
    if error.kind is ErrorKind.RATE_LIMITED:
        headline = (
            f"The AI service is receiving too many requests and is rate limiting this one "
            f"(tried {attempts} time(s))."
        )
        return "\n".join([headline, "", "You can:", *_REMEDIATION])
    if error.kind is ErrorKind.PROVIDER_TIMEOUT:
        headline = f"The AI service did not respond in time (tried {attempts} time(s))."
        return "\n".join([headline, "", "You can:", *_REMEDIATION])
    if error.kind is ErrorKind.PROVIDER_MISCONFIGURED:
        return (
            "The AI completion service is not available. Configure an OpenAI-compatible "
            "endpoint, model and API key, then try again."
        )
    if error.kind is ErrorKind.UNEXPECTED_RESPONSE:
        return "The AI service returned a response that could not be understood. Please try again."
    return f"The AI service returned an error: {error}. Please try again or rephrase your request."
