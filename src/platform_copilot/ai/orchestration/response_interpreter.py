"""Extracts capability invocations and usage from raw completion metadata.

Metadata shape differs between providers and SDK versions, so extraction goes
through an adapter chosen at configuration time. Extraction never raises: missing or
malformed metadata means "no capability invoked".
"""

from __future__ import annotations

import logging
from typing import Any, Mapping, Protocol, Sequence, runtime_checkable

from ..ai_types import ModelTokenCounter
from .types import CapabilityCall

__all__ = [
    "MetadataAdapter",
    "OpenAIMetadataAdapter",
    "AliasProbingAdapter",
    "select_metadata_adapter",
    "ResponseInterpreter",
]

LOGGER = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Adapters
# -----------------------------------------------------------------------------


@runtime_checkable
class MetadataAdapter(Protocol):
    name: str

    def capability_calls(self, metadata: Mapping[str, Any]) -> list[CapabilityCall]:
        ...

    def completion_tokens(self, metadata: Mapping[str, Any]) -> int | None:
        ...


class OpenAIMetadataAdapter:
    """Metadata produced by :class:`~platform_copilot.ai.client.OpenAICompletionProvider`.

    ``tool_calls`` holds ``{"id", "name", "arguments"}`` records and ``usage`` mirrors
    the OpenAI usage object.
    """

    name = "openai"

    def capability_calls(self, metadata: Mapping[str, Any]) -> list[CapabilityCall]:
        calls: list[CapabilityCall] = []
        for item in metadata.get("tool_calls") or ():
            if isinstance(item, Mapping):
                name = item.get("name") or (item.get("function") or {}).get("name")
                if name:
                    calls.append(
                        CapabilityCall(name=str(name), arguments=item.get("arguments"), call_id=item.get("id"))
                    )
                continue
            function = getattr(item, "function", None)
            name = getattr(function, "name", None)
            if name:
                calls.append(
                    CapabilityCall(
                        name=str(name),
                        arguments=getattr(function, "arguments", None),
                        call_id=getattr(item, "id", None),
                    )
                )
        return calls

    def completion_tokens(self, metadata: Mapping[str, Any]) -> int | None:
        usage = metadata.get("usage")
        value = usage.get("completion_tokens") if isinstance(usage, Mapping) else getattr(usage, "completion_tokens", None)
        return value if isinstance(value, int) and not isinstance(value, bool) else None


class AliasProbingAdapter:
    """Adapter for providers whose metadata keys are not known in advance.

    Probes a fixed, ordered list of container keys and name fields and uses the first
    match.
    """

    name = "probing"

    CALL_KEYS: Sequence[str] = ("tool_calls", "ToolCalls", "function_calls", "FunctionCalls")
    NAME_FIELDS: Sequence[str] = ("name", "function.name", "FunctionName", "tool_name")
    USAGE_KEYS: Sequence[str] = ("usage", "Usage")
    COMPLETION_FIELDS: Sequence[str] = ("completion_tokens", "CompletionTokens", "output_tokens")

    def capability_calls(self, metadata: Mapping[str, Any]) -> list[CapabilityCall]:
        for key in self.CALL_KEYS:
            if key not in metadata or metadata[key] is None:
                continue
            calls = self._coerce_calls(metadata[key])
            if calls:
                return calls
        return []

    def completion_tokens(self, metadata: Mapping[str, Any]) -> int | None:
        for key in self.USAGE_KEYS:
            usage = metadata.get(key)
            if usage is None:
                continue
            for field_name in self.COMPLETION_FIELDS:
                value = _lookup(usage, field_name)
                if isinstance(value, int) and not isinstance(value, bool):
                    return value
        return None

    def _coerce_calls(self, value: Any) -> list[CapabilityCall]:
        if isinstance(value, str):
            return [CapabilityCall(name=part.strip()) for part in value.split(",") if part.strip()]
        if isinstance(value, Mapping) or not isinstance(value, (list, tuple)):
            value = [value]
        calls: list[CapabilityCall] = []
        for item in value:
            if isinstance(item, str):
                if item.strip():
                    calls.append(CapabilityCall(name=item.strip()))
                continue
            name = self._probe_name(item)
            if name:
                arguments = _lookup(item, "arguments") or _lookup(item, "function.arguments")
                call_id = _lookup(item, "id")
                calls.append(
                    CapabilityCall(
                        name=name,
                        arguments=arguments if isinstance(arguments, str) else None,
                        call_id=call_id if isinstance(call_id, str) else None,
                    )
                )
        return calls

    def _probe_name(self, item: Any) -> str | None:
        for field_name in self.NAME_FIELDS:
            value = _lookup(item, field_name)
            if isinstance(value, str) and value.strip():
                return value.strip()
        return None


def _lookup(source: Any, dotted: str) -> Any:
    current = source
    for part in dotted.split("."):
        if current is None:
            return None
        if isinstance(current, Mapping):
            current = current.get(part)
        else:
            current = getattr(current, part, None)
    return current


_ADAPTERS: Mapping[str, type] = {
    "openai": OpenAIMetadataAdapter,
    "probing": AliasProbingAdapter,
}


def select_metadata_adapter(name: str | None) -> MetadataAdapter:
    """Resolve the configured adapter. ``auto`` means the native OpenAI shape."""

    key = (name or "auto").strip().lower()
    if key == "auto":
        key = "openai"
    adapter_type = _ADAPTERS.get(key)
    if adapter_type is None:
        LOGGER.warning("Unknown metadata adapter '%s'; using openai", name)
        adapter_type = OpenAIMetadataAdapter
    return adapter_type()


# -----------------------------------------------------------------------------
# Interpreter
# -----------------------------------------------------------------------------


class ResponseInterpreter:
    def __init__(self, adapter: MetadataAdapter | None = None, *, counter: ModelTokenCounter | None = None) -> None:
        self._adapter = adapter if adapter is not None else OpenAIMetadataAdapter()
        self._counter = counter

    @property
    def adapter(self) -> MetadataAdapter:
        return self._adapter

    def extract_capability_calls(self, completion: Any) -> list[CapabilityCall] | None:
        """Return the capabilities invoked during the completion, or ``None`` if none were."""

        metadata = _metadata_of(completion)
        if not metadata:
            return None
        try:
            calls = self._adapter.capability_calls(metadata)
        except Exception:  # pragma: no cover - defensive guard
            LOGGER.debug("Capability extraction failed for adapter %s", self._adapter.name, exc_info=True)
            return None
        return calls or None

    def extract_completion_tokens(self, completion: Any, *, model_name: str | None = None) -> int:
        """Completion tokens from usage metadata, else counted from the completion text."""

        metadata = _metadata_of(completion)
        if metadata:
            try:
                tokens = self._adapter.completion_tokens(metadata)
            except Exception:  # pragma: no cover - defensive guard
                LOGGER.debug("Usage extraction failed for adapter %s", self._adapter.name, exc_info=True)
                tokens = None
            if tokens is not None:
                return max(0, tokens)
        content = getattr(completion, "content", None)
        if self._counter is None or not isinstance(content, str) or not content:
            return 0
        return self._counter.count_tokens(content, model_name)


def _metadata_of(completion: Any) -> Mapping[str, Any] | None:
    if completion is None:
        return None
    if isinstance(completion, Mapping):
        metadata = completion.get("metadata", completion)
    else:
        metadata = getattr(completion, "metadata", None)
    return metadata if isinstance(metadata, Mapping) else None
