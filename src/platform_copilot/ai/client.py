"""Token counting and the OpenAI-compatible completion provider."""

from __future__ import annotations

import inspect
import json
import logging
import math
import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, MutableMapping, Sequence, cast

import tiktoken
from openai import AsyncOpenAI
from openai.types.chat import ChatCompletionMessageParam

from .ai_types import CompletionSettings, ProviderCompletion, TokenCounterProtocol
from .capabilities import CapabilityNotFoundError, CapabilityRegistry
from .errors import ProviderMisconfiguredError, UnexpectedProviderResponseError, classify_provider_error

LOGGER = logging.getLogger(__name__)

__all__ = [
    "ApproxByteCounter",
    "TiktokenCounter",
    "ModelProfile",
    "MODEL_PROFILES",
    "DEFAULT_MODEL",
    "normalize_model_name",
    "TokenCounterRegistry",
    "ClientSettings",
    "OpenAICompletionProvider",
    "build_provider",
]

_DEFAULT_BYTES_PER_TOKEN = 4


# -----------------------------------------------------------------------------
# Token counters
# -----------------------------------------------------------------------------


class ApproxByteCounter(TokenCounterProtocol):
    """Deterministic fallback counter that estimates tokens via byte length."""

    def __init__(
        self,
        *,
        model_name: str | None = None,
        charset: str = "utf-8",
        bytes_per_token: int = _DEFAULT_BYTES_PER_TOKEN,
    ) -> None:
        self.model_name = model_name
        self._charset = charset
        self._bytes_per_token = max(1, int(bytes_per_token))

    def count(self, text: str) -> int:
        return self.estimate(text)

    def estimate(self, text: str) -> int:
        if not text:
            return 0
        data = text.encode(self._charset, errors="ignore")
        return max(1, math.ceil(len(data) / self._bytes_per_token))


class TiktokenCounter(TokenCounterProtocol):
    """Token counter backed by OpenAI's tiktoken package."""

    def __init__(self, model_name: str, *, encoding_name: str | None = None) -> None:
        if not model_name:
            raise ValueError("model_name is required for TiktokenCounter")
        self.model_name = model_name
        self._encoding = self._load_encoding(model_name, encoding_name)
        self._fallback = ApproxByteCounter(model_name=model_name)

    def count(self, text: str) -> int:
        if not text:
            return 0
        try:
            return len(self._encoding.encode(text, disallowed_special=()))
        except Exception:  # pragma: no cover - defensive guard
            LOGGER.debug("tiktoken encode failed; falling back to approximation", exc_info=True)
            return self._fallback.estimate(text)

    def estimate(self, text: str) -> int:
        return self._fallback.estimate(text)

    @staticmethod
    def _load_encoding(model_name: str, encoding_name: str | None) -> Any:
        try:
            if encoding_name:
                return tiktoken.get_encoding(encoding_name)
            return tiktoken.encoding_for_model(model_name)
        except Exception:  # pragma: no cover - falls back to default encoding
            LOGGER.debug("Falling back to cl100k_base encoding for model %s", model_name)
            return tiktoken.get_encoding("cl100k_base")


# -----------------------------------------------------------------------------
# Model table
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ModelProfile:
    encoding: str
    max_context: int
    max_completion: int


DEFAULT_MODEL = "gpt-4o"

MODEL_PROFILES: Mapping[str, ModelProfile] = {
    "gpt-4o": ModelProfile("o200k_base", 128_000, 16_384),
    "gpt-4o-mini": ModelProfile("o200k_base", 128_000, 16_384),
    "gpt-4-turbo": ModelProfile("cl100k_base", 128_000, 4_096),
    "gpt-4-turbo-preview": ModelProfile("cl100k_base", 128_000, 4_096),
    "gpt-4": ModelProfile("cl100k_base", 8_192, 4_096),
    "gpt-4-32k": ModelProfile("cl100k_base", 32_768, 4_096),
    "gpt-3.5-turbo": ModelProfile("cl100k_base", 16_385, 4_096),
    "gpt-3.5-turbo-16k": ModelProfile("cl100k_base", 16_385, 4_096),
}

# Ordered: more specific families first.
_FAMILY_MARKERS: tuple[tuple[tuple[str, ...], str], ...] = (
    (("gpt-4o-mini",), "gpt-4o-mini"),
    (("gpt-4o",), "gpt-4o"),
    (("gpt-4-turbo",), "gpt-4-turbo"),
    (("gpt-4-32k",), "gpt-4-32k"),
    (("gpt-4",), "gpt-4"),
    (("gpt-3.5-turbo-16k",), "gpt-3.5-turbo-16k"),
    (("gpt-3.5", "gpt-35"), "gpt-3.5-turbo"),
)


def normalize_model_name(model_name: str | None) -> str:
    """Resolve deployment names such as ``prod-gpt-4o-east`` to a known model family."""

    normalized = (model_name or "").strip().lower()
    if not normalized:
        return DEFAULT_MODEL
    for markers, family in _FAMILY_MARKERS:
        if any(marker in normalized for marker in markers):
            return family
    return DEFAULT_MODEL


class TokenCounterRegistry:
    """Model-aware token counting with per-family tokenizer caching.

    Implements the ``count_tokens`` / ``max_context_window`` contract the orchestration
    core consumes. With ``precise=False`` every family uses the byte-length estimator,
    which keeps tests and offline environments away from tiktoken's encoding downloads.
    """

    _shared: TokenCounterRegistry | None = None

    def __init__(
        self,
        *,
        fallback: TokenCounterProtocol | None = None,
        precise: bool = True,
    ) -> None:
        self._fallback = fallback if fallback is not None else ApproxByteCounter()
        self._precise = precise
        self._counters: Dict[str, TokenCounterProtocol] = {}
        self._lock = threading.Lock()

    @classmethod
    def global_instance(cls) -> "TokenCounterRegistry":
        if cls._shared is None:
            cls._shared = TokenCounterRegistry()
        return cls._shared

    def register(self, model_name: str, counter: TokenCounterProtocol) -> None:
        if not (model_name or "").strip():
            raise ValueError("model_name is required for token counter registration")
        with self._lock:
            self._counters[normalize_model_name(model_name)] = counter

    def unregister(self, model_name: str) -> None:
        with self._lock:
            self._counters.pop(normalize_model_name(model_name), None)

    def has(self, model_name: str | None) -> bool:
        with self._lock:
            return normalize_model_name(model_name) in self._counters

    def get(self, model_name: str | None = None) -> TokenCounterProtocol:
        key = normalize_model_name(model_name)
        with self._lock:
            counter = self._counters.get(key)
            if counter is None:
                counter = self._build_counter(key)
                self._counters[key] = counter
            return counter

    def count_tokens(self, text: str, model_name: str | None = None) -> int:
        if not text:
            return 0
        counter = self.get(model_name)
        try:
            return counter.count(text)
        except Exception:  # pragma: no cover - defensive guard
            LOGGER.debug("Token counter failed; falling back to estimate", exc_info=True)
            return counter.estimate(text)

    def estimate(self, text: str) -> int:
        return self._fallback.estimate(text)

    def max_context_window(self, model_name: str | None = None) -> int:
        return MODEL_PROFILES[normalize_model_name(model_name)].max_context

    def max_completion_tokens(self, model_name: str | None = None) -> int:
        return MODEL_PROFILES[normalize_model_name(model_name)].max_completion

    def _build_counter(self, family: str) -> TokenCounterProtocol:
        if not self._precise:
            return self._fallback
        profile = MODEL_PROFILES[family]
        try:
            return TiktokenCounter(family, encoding_name=profile.encoding)
        except Exception as exc:  # pragma: no cover - defensive logging
            LOGGER.warning("Failed to initialize tiktoken for %s: %s; using estimates", family, exc)
            return self._fallback


# -----------------------------------------------------------------------------
# Completion provider
# -----------------------------------------------------------------------------


@dataclass(slots=True)
class ClientSettings:
    """Subset of settings required to configure the provider."""

    base_url: str
    api_key: str
    model: str
    organization: str | None = None
    request_timeout: float | None = 120.0
    max_tool_iterations: int = 8
    default_headers: Mapping[str, str] | None = None
    debug_logging: bool = False


class OpenAICompletionProvider:
    """Completion provider over ``AsyncOpenAI`` that performs capability dispatch itself.

    When the model requests capabilities, they are invoked through the registry and the
    results fed back until the model answers in plain text or the iteration cap is hit.
    The SDK's own retries are disabled; retry policy belongs to the completion invoker.
    """

    def __init__(self, settings: ClientSettings, *, client: AsyncOpenAI | None = None) -> None:
        self._settings = settings
        self._client = client or self._build_client(settings)

    @property
    def settings(self) -> ClientSettings:
        return self._settings

    async def complete(
        self,
        history: Sequence[Mapping[str, Any]],
        settings: CompletionSettings,
        capabilities: CapabilityRegistry | None = None,
    ) -> ProviderCompletion:
        """Run the request, dispatching requested capabilities until a text answer arrives.

        Each ``chat.completions.create`` call is bounded by the client timeout; capability
        handlers are not. A failure once any capability has been dispatched is raised as
        non-retryable so the caller never replays side effects.
        """

        dispatched: list[dict[str, Any]] = []
        try:
            return await self._dispatch_loop(history, settings, capabilities, dispatched)
        except Exception as exc:
            if not dispatched:
                raise
            error = classify_provider_error(exc)
            error.retryable = False
            error.capabilities_dispatched = True
            LOGGER.warning(
                "Completion failed after dispatching %s capability call(s): %s", len(dispatched), error
            )
            if error is exc:
                raise
            raise error from exc

    async def _dispatch_loop(
        self,
        history: Sequence[Mapping[str, Any]],
        settings: CompletionSettings,
        capabilities: CapabilityRegistry | None,
        dispatched: list[dict[str, Any]],
    ) -> ProviderCompletion:
        messages = self._coerce_messages(history)
        tools: list[dict[str, Any]] = []
        if capabilities is not None and settings.dispatch_enabled:
            tools = capabilities.to_openai_tools()
        usage: dict[str, int] = {"prompt_tokens": 0, "completion_tokens": 0, "total_tokens": 0}
        max_iterations = max(0, int(self._settings.max_tool_iterations))

        iteration = 0
        while True:
            payload = self._build_chat_payload(messages, settings, tools)
            if self._settings.debug_logging:
                self._log_prompt_payload(payload)
            response = await self._client.chat.completions.create(**payload)
            _accumulate_usage(usage, getattr(response, "usage", None))
            choices = getattr(response, "choices", None) or []
            if not choices:
                raise UnexpectedProviderResponseError("Provider returned no choices")
            choice = choices[0]
            message = choice.message
            tool_calls = list(getattr(message, "tool_calls", None) or [])

            if not tool_calls or capabilities is None or iteration >= max_iterations:
                if tool_calls and iteration >= max_iterations:
                    LOGGER.warning("Capability dispatch stopped after %s iteration(s)", iteration)
                return ProviderCompletion(
                    content=getattr(message, "content", None) or "",
                    metadata={
                        "tool_calls": dispatched,
                        "usage": dict(usage),
                        "finish_reason": getattr(choice, "finish_reason", None),
                        "model": getattr(response, "model", None) or settings.model,
                    },
                )

            messages.append(_assistant_tool_message(message, tool_calls))
            for call in tool_calls:
                name = call.function.name
                arguments = call.function.arguments
                dispatched.append({"id": call.id, "name": name, "arguments": arguments})
                try:
                    result = await capabilities.invoke(name, arguments)
                except CapabilityNotFoundError:
                    LOGGER.warning("Provider requested unknown capability %s", name)
                    result = f"Error: unknown capability {name}"
                messages.append({"role": "tool", "tool_call_id": call.id, "content": result})
            iteration += 1

    def _build_client(self, settings: ClientSettings) -> AsyncOpenAI:
        headers = dict(settings.default_headers) if settings.default_headers else None
        return AsyncOpenAI(
            api_key=settings.api_key,
            base_url=settings.base_url,
            organization=settings.organization,
            timeout=settings.request_timeout,
            max_retries=0,
            default_headers=headers,
        )

    def _build_chat_payload(
        self,
        messages: Sequence[ChatCompletionMessageParam],
        settings: CompletionSettings,
        tools: Sequence[Mapping[str, Any]],
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": settings.model or self._settings.model,
            "messages": list(messages),
        }
        if tools:
            payload["tools"] = list(tools)
            payload["tool_choice"] = "auto"
        if settings.temperature is not None:
            payload["temperature"] = settings.temperature
        if settings.max_output_tokens is not None:
            payload["max_tokens"] = settings.max_output_tokens
        return payload

    @staticmethod
    def _coerce_messages(history: Sequence[Mapping[str, Any]]) -> List[ChatCompletionMessageParam]:
        normalized: List[ChatCompletionMessageParam] = []
        for message in history:
            if isinstance(message, MutableMapping):
                normalized.append(cast(ChatCompletionMessageParam, dict(message)))
            else:
                try:
                    normalized.append(cast(ChatCompletionMessageParam, dict(message)))
                except TypeError as exc:  # pragma: no cover - defensive guard
                    raise TypeError("Messages must be mapping-like objects") from exc
        if not normalized:
            raise ValueError("At least one message is required for a completion")
        return normalized

    def _log_prompt_payload(self, payload: Mapping[str, Any]) -> None:
        try:
            serialized = json.dumps(payload, ensure_ascii=False, indent=2)
        except (TypeError, ValueError):
            LOGGER.debug("Completion payload (unserializable): %s", payload)
        else:
            LOGGER.debug("Completion payload:\n%s", serialized)

    async def aclose(self) -> None:
        """Close the underlying OpenAI client to release network resources."""

        close = getattr(self._client, "close", None)
        if close is None:
            return
        try:
            result = close()
        except Exception as exc:  # pragma: no cover - defensive guard
            LOGGER.debug("Provider close failed to start: %s", exc)
            return
        if inspect.isawaitable(result):
            await result


def _assistant_tool_message(message: Any, tool_calls: Sequence[Any]) -> ChatCompletionMessageParam:
    return cast(
        ChatCompletionMessageParam,
        {
            "role": "assistant",
            "content": getattr(message, "content", None) or "",
            "tool_calls": [
                {
                    "id": call.id,
                    "type": "function",
                    "function": {"name": call.function.name, "arguments": call.function.arguments or "{}"},
                }
                for call in tool_calls
            ],
        },
    )


def _accumulate_usage(totals: MutableMapping[str, int], usage: Any) -> None:
    if usage is None:
        return
    for key in ("prompt_tokens", "completion_tokens", "total_tokens"):
        value = getattr(usage, key, None)
        if isinstance(value, int):
            totals[key] += value


def build_provider(settings: Any, *, client: AsyncOpenAI | None = None) -> OpenAICompletionProvider:
    """Create a provider from :class:`~platform_copilot.services.settings.Settings`.

    Raises :class:`ProviderMisconfiguredError` when no API key or model is configured.
    """

    api_key = (getattr(settings, "api_key", "") or "").strip()
    model = (getattr(settings, "model", "") or "").strip()
    if not model:
        raise ProviderMisconfiguredError("No completion model is configured")
    if not api_key and client is None:
        raise ProviderMisconfiguredError("No API key is configured for the completion provider")
    client_settings = ClientSettings(
        base_url=settings.base_url,
        api_key=api_key,
        model=model,
        organization=getattr(settings, "organization", None),
        request_timeout=getattr(settings, "request_timeout", None),
        max_tool_iterations=getattr(settings, "max_tool_iterations", 8),
        default_headers=getattr(settings, "default_headers", None) or None,
        debug_logging=bool(getattr(settings, "debug_logging", False)),
    )
    return OpenAICompletionProvider(client_settings, client=client)
