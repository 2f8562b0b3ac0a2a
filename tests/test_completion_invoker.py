"""Tests for completion retries, backoff and cooperative cancellation."""

from __future__ import annotations

import asyncio
from types import SimpleNamespace
from typing import Any, cast

import httpx
import pytest
from openai import APITimeoutError, AsyncOpenAI

from platform_copilot.ai.ai_types import CompletionSettings, ProviderCompletion
from platform_copilot.ai.capabilities import CapabilityParameter, CapabilityRegistry, CapabilitySpec
from platform_copilot.ai.client import ClientSettings, OpenAICompletionProvider
from platform_copilot.ai.errors import ErrorKind, ProviderError, ProviderTimeoutError, RateLimitedError
from platform_copilot.ai.orchestration.completion_invoker import (
    CANCELLED_MESSAGE,
    CompletionInvoker,
    RetryPolicy,
)
from platform_copilot.ai.orchestration.types import TurnStatus
from platform_copilot.services import telemetry as telemetry_service
from platform_copilot.services.settings import RetrySettings
from tests.helpers import RecordingSleep, ScriptedProvider

MESSAGES = [{"role": "user", "content": "Create a storage account"}]
SETTINGS = CompletionSettings(model="gpt-4o", temperature=0.2, max_output_tokens=200)


class _BlockingProvider:
    """Provider whose call never finishes on its own."""

    def __init__(self) -> None:
        self.started = asyncio.Event()
        self.cancelled = False
        self.calls = 0

    async def complete(self, history: Any, settings: Any, capabilities: Any = None) -> ProviderCompletion:
        self.calls += 1
        self.started.set()
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        raise AssertionError("unreachable")


class _CancelThenFailProvider:
    """Sets the caller's cancel signal and fails with a retryable error in the same step."""

    def __init__(self, cancel_event: asyncio.Event) -> None:
        self._cancel_event = cancel_event
        self.calls = 0

    async def complete(self, history: Any, settings: Any, capabilities: Any = None) -> ProviderCompletion:
        self.calls += 1
        self._cancel_event.set()
        raise RateLimitedError("429 Too Many Requests")


@pytest.mark.asyncio
async def test_success_on_first_attempt() -> None:
    provider = ScriptedProvider(ProviderCompletion(content="Done", metadata={"usage": {"completion_tokens": 3}}))
    sleep = RecordingSleep()

    result = await CompletionInvoker(provider, sleep=sleep).invoke(MESSAGES, SETTINGS)

    assert result.status is TurnStatus.SUCCESS
    assert result.succeeded
    assert result.content == "Done"
    assert result.metadata == {"usage": {"completion_tokens": 3}}
    assert result.attempts == 1
    assert sleep.delays == []
    assert provider.calls[0]["settings"] is SETTINGS


@pytest.mark.asyncio
@pytest.mark.parametrize("max_retries", [0, 1, 3])
async def test_rate_limit_retries_are_bounded(max_retries: int) -> None:
    provider = ScriptedProvider(RateLimitedError("429"))
    sleep = RecordingSleep()
    invoker = CompletionInvoker(provider, policy=RetryPolicy(max_retries=max_retries), sleep=sleep)

    result = await invoker.invoke(MESSAGES, SETTINGS)

    assert provider.call_count == max_retries + 1
    assert result.attempts == max_retries + 1
    assert result.status is TurnStatus.ERROR
    assert result.error_kind is ErrorKind.RATE_LIMITED
    assert len(sleep.delays) == max_retries


@pytest.mark.asyncio
async def test_backoff_grows_linearly_with_attempt_number() -> None:
    provider = ScriptedProvider(RateLimitedError("429"))
    sleep = RecordingSleep()

    await CompletionInvoker(provider, sleep=sleep).invoke(MESSAGES, SETTINGS)

    assert provider.call_count == 4
    assert sleep.delays == [10.0, 20.0, 30.0]


@pytest.mark.asyncio
async def test_exhausted_rate_limit_returns_remediation_text() -> None:
    provider = ScriptedProvider(RateLimitedError("429"))

    result = await CompletionInvoker(provider, sleep=RecordingSleep()).invoke(MESSAGES, SETTINGS)

    assert "rate limiting" in result.content
    assert "tried 4 time(s)" in result.content
    assert "You can:" in result.content
    bullets = [line for line in result.content.splitlines() if line.startswith("•")]
    assert 2 <= len(bullets) <= 3
    assert "Traceback" not in result.content


@pytest.mark.asyncio
async def test_timeout_is_retried_then_succeeds() -> None:
    provider = ScriptedProvider(ProviderTimeoutError("slow"), asyncio.TimeoutError(), "Recovered")
    sleep = RecordingSleep()

    result = await CompletionInvoker(provider, sleep=sleep).invoke(MESSAGES, SETTINGS)

    assert result.succeeded
    assert result.content == "Recovered"
    assert result.attempts == 3
    assert sleep.delays == [10.0, 20.0]


@pytest.mark.asyncio
async def test_failure_after_capability_dispatch_is_not_retried() -> None:
    error = ProviderTimeoutError("read timeout")
    error.retryable = False
    error.capabilities_dispatched = True
    provider = ScriptedProvider(error, "unused")
    sleep = RecordingSleep()

    result = await CompletionInvoker(provider, sleep=sleep).invoke(MESSAGES, SETTINGS)

    assert provider.call_count == 1
    assert result.attempts == 1
    assert result.error_kind is ErrorKind.PROVIDER_TIMEOUT
    assert sleep.delays == []


class _ScriptedCompletions:
    """``chat.completions`` stand-in replaying responses or raising exceptions."""

    def __init__(self, *outcomes: Any) -> None:
        self._outcomes = list(outcomes)
        self.calls = 0

    async def create(self, **kwargs: Any) -> Any:
        self.calls += 1
        outcome = self._outcomes[min(self.calls - 1, len(self._outcomes) - 1)]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


def _chat_response(content: str | None, tool_calls: list[Any] | None = None) -> SimpleNamespace:
    message = SimpleNamespace(content=content, tool_calls=tool_calls)
    choice = SimpleNamespace(message=message, finish_reason="tool_calls" if tool_calls else "stop")
    return SimpleNamespace(choices=[choice], usage=None, model="gpt-4o")


def _provision_call() -> SimpleNamespace:
    return SimpleNamespace(
        id="call-1",
        type="function",
        function=SimpleNamespace(name="Provision", arguments='{"name": "stacct01"}'),
    )


def _slow_provisioning_registry(runs: list[str], delay: float) -> CapabilityRegistry:
    async def _provision(name: str) -> str:
        runs.append(name)
        await asyncio.sleep(delay)
        return f"created {name}"

    return CapabilityRegistry(
        [
            CapabilitySpec(
                name="Provision",
                description="Provision a storage account",
                handler=_provision,
                parameters=(CapabilityParameter("name", required=True),),
            )
        ]
    )


def _openai_provider(completions: _ScriptedCompletions, *, request_timeout: float) -> OpenAICompletionProvider:
    client = SimpleNamespace(chat=SimpleNamespace(completions=completions))
    settings = ClientSettings(
        base_url="http://local", api_key="test", model="gpt-4o", request_timeout=request_timeout
    )
    return OpenAICompletionProvider(settings, client=cast(AsyncOpenAI, client))


@pytest.mark.asyncio
async def test_slow_capability_is_not_a_provider_timeout() -> None:
    runs: list[str] = []
    completions = _ScriptedCompletions(_chat_response(None, [_provision_call()]), _chat_response("Created stacct01."))
    provider = _openai_provider(completions, request_timeout=0.01)
    invoker = CompletionInvoker(
        provider, capabilities=_slow_provisioning_registry(runs, delay=0.05), sleep=RecordingSleep()
    )

    result = await invoker.invoke(MESSAGES, SETTINGS)

    assert result.status is TurnStatus.SUCCESS
    assert result.content == "Created stacct01."
    assert result.attempts == 1
    assert runs == ["stacct01"]
    assert completions.calls == 2


@pytest.mark.asyncio
async def test_timeout_after_dispatch_does_not_rerun_capability() -> None:
    runs: list[str] = []
    timeout = APITimeoutError(request=httpx.Request("POST", "http://local/chat/completions"))
    completions = _ScriptedCompletions(_chat_response(None, [_provision_call()]), timeout)
    provider = _openai_provider(completions, request_timeout=30)
    sleep = RecordingSleep()
    invoker = CompletionInvoker(provider, capabilities=_slow_provisioning_registry(runs, delay=0), sleep=sleep)

    result = await invoker.invoke(MESSAGES, SETTINGS)

    assert result.status is TurnStatus.ERROR
    assert result.error_kind is ErrorKind.PROVIDER_TIMEOUT
    assert result.attempts == 1
    assert runs == ["stacct01"]
    assert completions.calls == 2
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_timeout_before_dispatch_is_still_retried() -> None:
    runs: list[str] = []
    timeout = APITimeoutError(request=httpx.Request("POST", "http://local/chat/completions"))
    completions = _ScriptedCompletions(timeout, _chat_response("Done."))
    provider = _openai_provider(completions, request_timeout=30)
    sleep = RecordingSleep()
    invoker = CompletionInvoker(provider, capabilities=_slow_provisioning_registry(runs, delay=0), sleep=sleep)

    result = await invoker.invoke(MESSAGES, SETTINGS)

    assert result.succeeded
    assert result.attempts == 2
    assert runs == []
    assert sleep.delays == [10.0]


@pytest.mark.asyncio
async def test_non_retryable_error_fails_immediately() -> None:
    provider = ScriptedProvider(ProviderError("boom"))
    sleep = RecordingSleep()

    result = await CompletionInvoker(provider, sleep=sleep).invoke(MESSAGES, SETTINGS)

    assert provider.call_count == 1
    assert result.error_kind is ErrorKind.PROVIDER_ERROR
    assert sleep.delays == []
    assert "boom" in result.content


@pytest.mark.asyncio
async def test_unknown_exception_is_classified_not_raised() -> None:
    provider = ScriptedProvider(RuntimeError("socket closed"))

    result = await CompletionInvoker(provider, sleep=RecordingSleep()).invoke(MESSAGES, SETTINGS)

    assert result.status is TurnStatus.ERROR
    assert result.error_kind is ErrorKind.PROVIDER_ERROR


@pytest.mark.asyncio
async def test_missing_provider_is_misconfiguration() -> None:
    result = await CompletionInvoker(None).invoke(MESSAGES, SETTINGS)

    assert result.status is TurnStatus.ERROR
    assert result.error_kind is ErrorKind.PROVIDER_MISCONFIGURED
    assert result.attempts == 0


@pytest.mark.asyncio
async def test_cancel_signal_set_before_dispatch_skips_provider() -> None:
    provider = ScriptedProvider("never")
    cancel_event = asyncio.Event()
    cancel_event.set()

    result = await CompletionInvoker(provider).invoke(MESSAGES, SETTINGS, cancel_event=cancel_event)

    assert result.status is TurnStatus.CANCELLED
    assert result.cancelled
    assert result.content == CANCELLED_MESSAGE
    assert result.error_kind is ErrorKind.USER_CANCELLED
    assert provider.call_count == 0


@pytest.mark.asyncio
async def test_cancel_signal_aborts_in_flight_call() -> None:
    provider = _BlockingProvider()
    cancel_event = asyncio.Event()
    invoker = CompletionInvoker(provider)

    task = asyncio.create_task(invoker.invoke(MESSAGES, SETTINGS, cancel_event=cancel_event))
    await provider.started.wait()
    cancel_event.set()
    result = await asyncio.wait_for(task, timeout=1.0)

    assert result.status is TurnStatus.CANCELLED
    assert provider.cancelled
    assert provider.calls == 1


@pytest.mark.asyncio
async def test_cancellation_wins_over_concurrent_retryable_failure() -> None:
    cancel_event = asyncio.Event()
    provider = _CancelThenFailProvider(cancel_event)
    sleep = RecordingSleep()

    result = await CompletionInvoker(provider, sleep=sleep).invoke(MESSAGES, SETTINGS, cancel_event=cancel_event)

    assert result.status is TurnStatus.CANCELLED
    assert result.error_kind is ErrorKind.USER_CANCELLED
    assert provider.calls == 1
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_cancel_during_backoff_stops_retrying() -> None:
    provider = ScriptedProvider(RateLimitedError("429"))
    cancel_event = asyncio.Event()
    delays: list[float] = []

    async def _sleep(seconds: float) -> None:
        delays.append(seconds)
        cancel_event.set()

    result = await CompletionInvoker(provider, sleep=_sleep).invoke(MESSAGES, SETTINGS, cancel_event=cancel_event)

    assert result.status is TurnStatus.CANCELLED
    assert provider.call_count == 1
    assert delays == [10.0]


@pytest.mark.asyncio
async def test_task_cancellation_propagates() -> None:
    provider = _BlockingProvider()
    invoker = CompletionInvoker(provider)

    task = asyncio.create_task(invoker.invoke(MESSAGES, SETTINGS, cancel_event=asyncio.Event()))
    await provider.started.wait()
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    await asyncio.sleep(0)
    assert provider.cancelled


@pytest.mark.asyncio
async def test_retry_emits_telemetry() -> None:
    events: list[dict[str, Any]] = []
    telemetry_service.register_event_listener("completion.retry", events.append)
    provider = ScriptedProvider(RateLimitedError("429"), "ok")

    await CompletionInvoker(provider, sleep=RecordingSleep()).invoke(MESSAGES, SETTINGS)

    assert len(events) == 1
    assert events[0]["attempt"] == 1
    assert events[0]["error_kind"] == "rate_limited"
    assert events[0]["delay_seconds"] == 10.0


@pytest.mark.asyncio
async def test_capabilities_are_forwarded_to_provider() -> None:
    registry = CapabilityRegistry()
    provider = ScriptedProvider("ok")

    await CompletionInvoker(provider, capabilities=registry).invoke(MESSAGES, SETTINGS)

    assert provider.calls[0]["capabilities"] is registry


def test_retry_policy_from_settings_and_delays() -> None:
    policy = RetryPolicy.from_settings(RetrySettings(max_retries=2, base_delay_seconds=5))

    assert policy.max_attempts == 3
    assert [policy.delay_for(n) for n in (1, 2, 3)] == [5.0, 10.0, 15.0]
