"""Core type definitions for the conversation orchestration pipeline.

Snapshots, history windows and analysis results are frozen so they can be handed
between stages (and across tasks) without defensive copying. ``ConversationContext``
is the one mutable record and is owned by the conversation store.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Mapping, Sequence

from ..client import normalize_model_name
from ..errors import ErrorKind

__all__ = [
    "MAX_HISTORY_MESSAGES",
    "FORMATTING_OVERHEAD_RATIO",
    "MessageRole",
    "MessageSnapshot",
    "ConversationContext",
    "ChatHistoryResult",
    "TokenUsageMetrics",
    "CapabilityCall",
    "MissingInformationAnalysis",
    "ProactiveSuggestion",
    "SuggestionPriority",
    "TurnStatus",
    "CompletionResult",
    "ChatResponse",
]

MAX_HISTORY_MESSAGES = 20
FORMATTING_OVERHEAD_RATIO = 0.05


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# -----------------------------------------------------------------------------
# Conversation state
# -----------------------------------------------------------------------------

MessageRole = Literal["user", "assistant", "system"]


@dataclass(slots=True, frozen=True)
class MessageSnapshot:
    """One message of a conversation as it was at the time it was recorded.

    Attributes:
        role: ``user`` or ``assistant`` (``system`` only for imported transcripts).
        content: Message text.
        timestamp: When the message was recorded.
        capability_name: Capability that produced the message, if any.
    """

    role: MessageRole
    content: str
    timestamp: datetime = field(default_factory=_utcnow)
    capability_name: str | None = None

    @classmethod
    def user(cls, content: str) -> "MessageSnapshot":
        return cls(role="user", content=content)

    @classmethod
    def assistant(cls, content: str, *, capability_name: str | None = None) -> "MessageSnapshot":
        return cls(role="assistant", content=content, capability_name=capability_name)


@dataclass(slots=True)
class ConversationContext:
    """Per-conversation state held by the conversation store.

    Callers always receive copies; mutation happens through the store's update
    operation only.
    """

    conversation_id: str
    user_id: str | None = None
    started_at: datetime = field(default_factory=_utcnow)
    last_activity_at: datetime = field(default_factory=_utcnow)
    messages: list[MessageSnapshot] = field(default_factory=list)
    used_capabilities: list[str] = field(default_factory=list)
    workflow_state: dict[str, Any] = field(default_factory=dict)
    message_count: int = 0

    def copy(self) -> "ConversationContext":
        return ConversationContext(
            conversation_id=self.conversation_id,
            user_id=self.user_id,
            started_at=self.started_at,
            last_activity_at=self.last_activity_at,
            messages=list(self.messages),
            used_capabilities=list(self.used_capabilities),
            workflow_state=dict(self.workflow_state),
            message_count=self.message_count,
        )

    @property
    def is_empty(self) -> bool:
        return not self.messages


# -----------------------------------------------------------------------------
# History window
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ChatHistoryResult:
    """A token-budgeted window of conversation history.

    ``token_count`` is always the re-measured count of ``formatted_history``.
    """

    formatted_history: str
    token_count: int
    message_count: int
    truncated_message_count: int
    max_tokens: int
    model_name: str
    messages: tuple[MessageSnapshot, ...] = ()

    @classmethod
    def empty(cls, *, max_tokens: int, model_name: str) -> "ChatHistoryResult":
        return cls(
            formatted_history="",
            token_count=0,
            message_count=0,
            truncated_message_count=0,
            max_tokens=max_tokens,
            model_name=model_name,
        )

    @property
    def is_empty(self) -> bool:
        return self.message_count == 0 or not self.formatted_history

    @property
    def was_truncated(self) -> bool:
        return self.truncated_message_count > 0

    @property
    def utilization_percentage(self) -> float:
        if self.max_tokens <= 0:
            return 0.0
        return self.token_count / self.max_tokens * 100


# -----------------------------------------------------------------------------
# Token accounting
# -----------------------------------------------------------------------------

# USD per 1K tokens: (prompt, completion)
_PRICING_PER_1K: Mapping[str, tuple[float, float]] = {
    "gpt-4o": (0.0025, 0.01),
    "gpt-4o-mini": (0.00015, 0.0006),
    "gpt-4-turbo": (0.01, 0.03),
    "gpt-4-turbo-preview": (0.01, 0.03),
    "gpt-4": (0.03, 0.06),
    "gpt-4-32k": (0.06, 0.12),
    "gpt-3.5-turbo": (0.0005, 0.0015),
    "gpt-3.5-turbo-16k": (0.0005, 0.0015),
}


@dataclass(slots=True)
class TokenUsageMetrics:
    """Per-component token attribution for one turn.

    Components are counted independently. ``total_prompt_tokens`` adds a fixed
    formatting allowance on top of their sum, and ``total_tokens`` is always
    ``total_prompt_tokens + completion_tokens``.
    """

    model_name: str
    system_prompt_tokens: int = 0
    rag_context_tokens: int = 0
    history_tokens: int = 0
    user_prompt_tokens: int = 0
    formatting_overhead_tokens: int = 0
    completion_tokens: int = 0
    max_context_window: int = 0
    rag_result_count: int = 0
    history_message_count: int = 0

    @classmethod
    def from_components(
        cls,
        *,
        model_name: str,
        system_prompt_tokens: int,
        rag_context_tokens: int,
        history_tokens: int,
        user_prompt_tokens: int,
        max_context_window: int = 0,
        rag_result_count: int = 0,
        history_message_count: int = 0,
    ) -> "TokenUsageMetrics":
        component_sum = system_prompt_tokens + rag_context_tokens + history_tokens + user_prompt_tokens
        return cls(
            model_name=model_name,
            system_prompt_tokens=system_prompt_tokens,
            rag_context_tokens=rag_context_tokens,
            history_tokens=history_tokens,
            user_prompt_tokens=user_prompt_tokens,
            formatting_overhead_tokens=int(component_sum * FORMATTING_OVERHEAD_RATIO),
            max_context_window=max_context_window,
            rag_result_count=rag_result_count,
            history_message_count=history_message_count,
        )

    @property
    def component_tokens(self) -> int:
        return (
            self.system_prompt_tokens
            + self.rag_context_tokens
            + self.history_tokens
            + self.user_prompt_tokens
        )

    @property
    def total_prompt_tokens(self) -> int:
        return self.component_tokens + self.formatting_overhead_tokens

    @property
    def total_tokens(self) -> int:
        return self.total_prompt_tokens + self.completion_tokens

    @property
    def utilization(self) -> float:
        """Fraction (0..1+) of the model context window consumed by this turn."""

        if self.max_context_window <= 0:
            return 0.0
        return self.total_tokens / self.max_context_window

    @property
    def estimated_cost(self) -> float:
        prompt_rate, completion_rate = _PRICING_PER_1K[normalize_model_name(self.model_name)]
        return (
            self.total_prompt_tokens / 1000 * prompt_rate
            + self.completion_tokens / 1000 * completion_rate
        )

    def record_completion(self, completion_tokens: int, *, max_context_window: int | None = None) -> None:
        self.completion_tokens = max(0, int(completion_tokens))
        if max_context_window is not None:
            self.max_context_window = max(0, int(max_context_window))

    def component_shares(self) -> dict[str, float]:
        """Share of the context window taken by each component, for budget tuning."""

        window = self.max_context_window
        components = {
            "system_prompt": self.system_prompt_tokens,
            "rag_context": self.rag_context_tokens,
            "history": self.history_tokens,
            "user_prompt": self.user_prompt_tokens,
            "formatting_overhead": self.formatting_overhead_tokens,
            "completion": self.completion_tokens,
        }
        if window <= 0:
            return {name: 0.0 for name in components}
        return {name: tokens / window for name, tokens in components.items()}

    def compact_summary(self) -> str:
        return (
            f"{self.total_tokens:,} tokens (prompt {self.total_prompt_tokens:,}: "
            f"system {self.system_prompt_tokens:,}, rag {self.rag_context_tokens:,}, "
            f"history {self.history_tokens:,}, user {self.user_prompt_tokens:,}; "
            f"completion {self.completion_tokens:,}) | {self.utilization:.1%} of "
            f"{self.max_context_window:,} | ${self.estimated_cost:.4f}"
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "model_name": self.model_name,
            "system_prompt_tokens": self.system_prompt_tokens,
            "rag_context_tokens": self.rag_context_tokens,
            "history_tokens": self.history_tokens,
            "user_prompt_tokens": self.user_prompt_tokens,
            "formatting_overhead_tokens": self.formatting_overhead_tokens,
            "total_prompt_tokens": self.total_prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
            "max_context_window": self.max_context_window,
            "utilization": self.utilization,
            "estimated_cost": self.estimated_cost,
            "rag_result_count": self.rag_result_count,
            "history_message_count": self.history_message_count,
        }


# -----------------------------------------------------------------------------
# Turn analysis
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class CapabilityCall:
    name: str
    arguments: str | None = None
    call_id: str | None = None


@dataclass(slots=True, frozen=True)
class MissingInformationAnalysis:
    """Outcome of scanning a completion for missing required information."""

    requires_follow_up: bool
    missing_fields: tuple[str, ...] = ()
    follow_up_prompt: str | None = None
    capability_name: str | None = None

    @classmethod
    def satisfied(cls, capability_name: str | None = None) -> "MissingInformationAnalysis":
        return cls(requires_follow_up=False, capability_name=capability_name)


SuggestionPriority = Literal["high", "medium", "low"]


@dataclass(slots=True, frozen=True)
class ProactiveSuggestion:
    title: str
    description: str
    capability_name: str
    priority: SuggestionPriority = "low"


# -----------------------------------------------------------------------------
# Results
# -----------------------------------------------------------------------------


class TurnStatus(str, Enum):
    SUCCESS = "success"
    CANCELLED = "cancelled"
    ERROR = "error"


@dataclass(slots=True, frozen=True)
class CompletionResult:
    """Terminal outcome of a completion invocation, including retries.

    Attributes:
        status: Success, cancelled or error.
        content: Completion text on success; user-facing explanation otherwise.
        metadata: Provider metadata on success.
        attempts: Provider calls made, including the first.
        error_kind: Failure category for non-successful results.
    """

    status: TurnStatus
    content: str
    metadata: Mapping[str, Any] = field(default_factory=dict)
    attempts: int = 0
    error_kind: ErrorKind | None = None

    @property
    def succeeded(self) -> bool:
        return self.status is TurnStatus.SUCCESS

    @property
    def cancelled(self) -> bool:
        return self.status is TurnStatus.CANCELLED


@dataclass(slots=True)
class ChatResponse:
    """What the orchestrator hands back for every turn. Never an exception."""

    conversation_id: str
    content: str
    success: bool
    status: TurnStatus
    intent_type: str
    capability_calls: Sequence[CapabilityCall] = ()
    follow_up: MissingInformationAnalysis | None = None
    suggestions: Sequence[ProactiveSuggestion] = ()
    token_usage: TokenUsageMetrics | None = None
    processing_time_ms: float = 0.0
    model: str | None = None
    error_kind: ErrorKind | None = None

    @property
    def capability_executed(self) -> bool:
        return bool(self.capability_calls)

    @property
    def requires_follow_up(self) -> bool:
        return bool(self.follow_up and self.follow_up.requires_follow_up)
