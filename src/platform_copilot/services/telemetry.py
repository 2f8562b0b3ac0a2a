"""In-process telemetry: event listeners and per-turn token usage records."""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import asdict, dataclass, field
from threading import Lock
from typing import Any, Callable, Iterable, Mapping, Protocol

LOGGER = logging.getLogger(__name__)

__all__ = [
    "TurnUsageEvent",
    "TelemetrySink",
    "InMemoryTelemetrySink",
    "TokenUsageTotals",
    "summarize_usage_totals",
    "register_event_listener",
    "unregister_event_listener",
    "emit",
]

_EVENT_LISTENERS: dict[str, list[Callable[[dict[str, Any]], None]]] = {}
_LISTENER_LOCK = Lock()


@dataclass(slots=True)
class TurnUsageEvent:
    """Token attribution recorded for a single chat turn."""

    conversation_id: str
    model: str
    system_prompt_tokens: int
    rag_context_tokens: int
    history_tokens: int
    user_prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    utilization: float
    capability_names: tuple[str, ...] = ()
    timestamp: float = field(default_factory=time.time)

    def to_payload(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["capability_names"] = list(self.capability_names)
        return payload


class TelemetrySink(Protocol):
    def record(self, event: TurnUsageEvent) -> None:  # pragma: no cover - protocol stub
        ...


class InMemoryTelemetrySink:
    """Ring buffer of recent usage events for local inspection and tests."""

    def __init__(self, capacity: int = 200) -> None:
        self._capacity = max(10, capacity)
        self._buffer: deque[TurnUsageEvent] = deque(maxlen=self._capacity)
        self._lock = Lock()

    @property
    def capacity(self) -> int:
        return self._capacity

    def record(self, event: TurnUsageEvent) -> None:
        with self._lock:
            self._buffer.append(event)

    def tail(self, limit: int | None = None) -> list[TurnUsageEvent]:
        with self._lock:
            events = list(self._buffer)
        if limit is None or limit >= len(events):
            return events
        return events[-limit:]

    def __len__(self) -> int:
        with self._lock:
            return len(self._buffer)


@dataclass(slots=True)
class TokenUsageTotals:
    prompt_tokens: int
    completion_tokens: int
    event_count: int

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    def as_status_text(self) -> str:
        return (
            f"Prompt {self.prompt_tokens:,} · Completion {self.completion_tokens:,}"
            f" · Turns {self.event_count}"
        )


def summarize_usage_totals(events: Iterable[TurnUsageEvent] | None) -> TokenUsageTotals | None:
    """Aggregate prompt/completion totals across recorded turns."""

    if events is None:
        return None
    prompt_total = 0
    completion_total = 0
    event_count = 0
    for event in events:
        if event is None:
            continue
        event_count += 1
        completion = max(0, int(event.completion_tokens))
        completion_total += completion
        prompt_total += max(0, int(event.total_tokens) - completion)
    if event_count == 0:
        return None
    return TokenUsageTotals(
        prompt_tokens=prompt_total,
        completion_tokens=completion_total,
        event_count=event_count,
    )


def register_event_listener(event_name: str, callback: Callable[[dict[str, Any]], None]) -> None:
    """Register a callback invoked whenever :func:`emit` fires *event_name*."""

    if not event_name or callback is None:
        return
    with _LISTENER_LOCK:
        listeners = _EVENT_LISTENERS.setdefault(event_name, [])
        if callback not in listeners:
            listeners.append(callback)


def unregister_event_listener(event_name: str, callback: Callable[[dict[str, Any]], None]) -> None:
    with _LISTENER_LOCK:
        listeners = _EVENT_LISTENERS.get(event_name)
        if listeners and callback in listeners:
            listeners.remove(callback)


def emit(event_name: str, payload: Mapping[str, Any] | None = None) -> None:
    """Broadcast a structured telemetry event to in-process listeners."""

    if not event_name:
        return
    event_payload: dict[str, Any] = {"event": event_name}
    if payload:
        event_payload.update(payload)
    with _LISTENER_LOCK:
        listeners = list(_EVENT_LISTENERS.get(event_name, ()))
    for callback in listeners:
        try:
            callback(dict(event_payload))
        except Exception:  # pragma: no cover - listeners must not break emitters
            LOGGER.debug("Telemetry listener %s failed", callback, exc_info=True)
    LOGGER.debug("Telemetry emit %s: %s", event_name, event_payload)
