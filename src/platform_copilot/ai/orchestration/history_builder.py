"""Token-budgeted conversation history windows.

The builder keeps the newest messages that fit a token budget. Inclusion is decided
with per-message estimates; the reported cost is always the recount of the final
joined string, since separators and role labels do not add up per message.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Sequence

from ...services.settings import HistorySettings
from ..ai_types import ModelTokenCounter
from ..client import DEFAULT_MODEL
from .types import ChatHistoryResult, ConversationContext, MessageSnapshot

__all__ = ["HistoryOptions", "HistoryBuilder"]

LOGGER = logging.getLogger(__name__)

_TIMESTAMP_PLACEHOLDER = "{timestamp}"
_SEARCH_CONTEXT_MAX_TOKENS = 1_000
_SUMMARY_USER_CHARS = 100
_SUMMARY_ASSISTANT_CHARS = 150


@dataclass(slots=True, frozen=True)
class HistoryOptions:
    """Budget and formatting rules for one history window.

    Attributes:
        max_tokens: Token ceiling for the window.
        reserved_tokens: Allowance held back for content not yet known.
        minimum_messages: Messages kept even when they break the ceiling.
        include_system_messages: Keep ``system`` role messages.
        model_name: Model whose tokenizer does the counting.
        format_template: Per-message template with ``{role}``, ``{content}`` and
            ``{timestamp}`` placeholders.
        message_separator: Joins formatted messages.
        include_timestamps: Render ``{timestamp}``; otherwise it is stripped.
        timestamp_format: ``strftime`` format for timestamps.
    """

    max_tokens: int = 4_000
    reserved_tokens: int = 0
    minimum_messages: int = 2
    include_system_messages: bool = False
    model_name: str = DEFAULT_MODEL
    format_template: str = "[{timestamp}] {role}: {content}"
    message_separator: str = "\n\n"
    include_timestamps: bool = False
    timestamp_format: str = "%Y-%m-%d %H:%M:%S"

    @property
    def available_tokens(self) -> int:
        return self.max_tokens - self.reserved_tokens

    @classmethod
    def from_settings(cls, settings: HistorySettings, *, model_name: str) -> "HistoryOptions":
        return cls(
            max_tokens=settings.max_tokens,
            reserved_tokens=settings.reserved_tokens,
            minimum_messages=settings.minimum_messages,
            include_system_messages=settings.include_system_messages,
            model_name=model_name,
        )

    @classmethod
    def for_search(cls, *, model_name: str = DEFAULT_MODEL) -> "HistoryOptions":
        return cls(
            max_tokens=_SEARCH_CONTEXT_MAX_TOKENS,
            minimum_messages=1,
            model_name=model_name,
            message_separator="\n",
        )


class HistoryBuilder:
    """Selects and formats the newest messages that fit a token budget."""

    def __init__(self, counter: ModelTokenCounter, *, default_options: HistoryOptions | None = None) -> None:
        self._counter = counter
        self._default_options = default_options if default_options is not None else HistoryOptions()

    @property
    def default_options(self) -> HistoryOptions:
        return self._default_options

    def build(
        self,
        messages: Sequence[MessageSnapshot],
        options: HistoryOptions | None = None,
    ) -> ChatHistoryResult:
        """Return the largest suffix of ``messages`` that fits the budget.

        Never raises for budget problems: a non-positive budget or empty input yields an
        empty result that still reports ``max_tokens``. The minimum-message floor wins
        over the ceiling, so a single oversized message is still returned when
        ``minimum_messages >= 1``.
        """

        options = options or self._default_options
        if not messages:
            return ChatHistoryResult.empty(max_tokens=options.max_tokens, model_name=options.model_name)

        available = options.available_tokens
        if available <= 0:
            LOGGER.warning(
                "No tokens available for chat history (max_tokens=%s, reserved=%s)",
                options.max_tokens,
                options.reserved_tokens,
            )
            return ChatHistoryResult.empty(max_tokens=options.max_tokens, model_name=options.model_name)

        candidates = self._filter(messages, options)
        separator_tokens = self._count(options.message_separator, options)

        # Newest first; reversed back to chronological order below.
        window: list[MessageSnapshot] = []
        used = 0
        for message in reversed(candidates):
            cost = self._count(self._format(message, options), options)
            if window:
                cost += separator_tokens
            if used + cost > available and len(window) >= options.minimum_messages:
                break
            window.append(message)
            used += cost
        window.reverse()

        formatted = self._join(window, options)
        token_count = self._count(formatted, options)
        while token_count > available and len(window) > max(options.minimum_messages, 0):
            window.pop(0)
            formatted = self._join(window, options)
            token_count = self._count(formatted, options)

        result = ChatHistoryResult(
            formatted_history=formatted,
            token_count=token_count,
            message_count=len(window),
            truncated_message_count=len(candidates) - len(window),
            max_tokens=options.max_tokens,
            model_name=options.model_name,
            messages=tuple(window),
        )
        if result.was_truncated:
            LOGGER.info(
                "Chat history truncated: %s/%s messages, %s tokens",
                result.message_count,
                len(candidates),
                result.token_count,
            )
        return result

    def build_from_context(
        self,
        context: ConversationContext | None,
        options: HistoryOptions | None = None,
    ) -> ChatHistoryResult:
        options = options or self._default_options
        if context is None or not context.messages:
            return ChatHistoryResult.empty(max_tokens=options.max_tokens, model_name=options.model_name)
        return self.build(context.messages, options)

    def append_message(
        self,
        existing: ChatHistoryResult,
        message: MessageSnapshot,
        options: HistoryOptions | None = None,
    ) -> ChatHistoryResult:
        """Rebuild ``existing`` with one more message at the end."""

        return self.build([*existing.messages, message], options)

    def search_context(self, context: ConversationContext | None, max_messages: int = 5) -> str:
        """Compact block of the last few messages, used to enrich retrieval queries."""

        if context is None or not context.messages or max_messages <= 0:
            return ""
        options = HistoryOptions.for_search(model_name=self._default_options.model_name)
        return self.build(context.messages[-max_messages:], options).formatted_history

    def conversation_summary(self, context: ConversationContext | None, exchange_count: int = 3) -> str:
        if context is None or not context.messages:
            return "No conversation history."
        recent = context.messages[-exchange_count * 2 :] if exchange_count > 0 else []
        if not recent:
            return "No recent messages."
        lines: list[str] = []
        for index in range(0, len(recent) - 1, 2):
            user_message, assistant_message = recent[index], recent[index + 1]
            lines.append(f"User asked about {_truncate(user_message.content, _SUMMARY_USER_CHARS)}")
            lines.append(
                f"Assistant responded with {_truncate(assistant_message.content, _SUMMARY_ASSISTANT_CHARS)}"
            )
        return "\n".join(lines)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _count(self, text: str, options: HistoryOptions) -> int:
        if not text:
            return 0
        return self._counter.count_tokens(text, options.model_name)

    @staticmethod
    def _filter(messages: Sequence[MessageSnapshot], options: HistoryOptions) -> list[MessageSnapshot]:
        if options.include_system_messages:
            return list(messages)
        return [message for message in messages if (message.role or "").lower() != "system"]

    @staticmethod
    def _format(message: MessageSnapshot, options: HistoryOptions) -> str:
        formatted = options.format_template
        formatted = formatted.replace("{role}", message.role or "unknown")
        if options.include_timestamps and message.timestamp is not None:
            formatted = formatted.replace(_TIMESTAMP_PLACEHOLDER, message.timestamp.strftime(options.timestamp_format))
        else:
            formatted = formatted.replace(f"[{_TIMESTAMP_PLACEHOLDER}] ", "").replace(_TIMESTAMP_PLACEHOLDER, "")
        # Content last so braces inside it are never treated as placeholders.
        return formatted.replace("{content}", message.content or "")

    def _join(self, window: Sequence[MessageSnapshot], options: HistoryOptions) -> str:
        rendered = (self._format(message, options) for message in window)
        return options.message_separator.join(text for text in rendered if text.strip())


def _truncate(content: str | None, limit: int) -> str:
    if not content:
        return "..."
    if len(content) <= limit:
        return content
    return content[:limit] + "..."
