"""Detects missing required information in a completion and phrases one clarifying question.

Field extraction is a table-driven heuristic: the pattern table can be replaced from
configuration. Its output is advisory. When clarification is needed the provider is
asked, under a strict token and time budget, for a single friendly question about the
most critical field; any failure there falls back to a templated question.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Pattern, Sequence

from ...services.settings import FollowUpSettings
from .. import prompts
from ..ai_types import CompletionProvider, CompletionSettings
from .types import MessageSnapshot, MissingInformationAnalysis

__all__ = ["FollowUpPatterns", "FollowUpAnalyzer"]

LOGGER = logging.getLogger(__name__)

_FIELD_WORD = r"[A-Za-z][\w\-/()]*"

DEFAULT_SIGNAL_PATTERNS: tuple[str, ...] = (
    r"❌",
    r"\b(?:cannot|can't|unable to)\s+(?:proceed|submit|continue)\b",
    r"\bsubmission\s+(?:is\s+)?blocked\b",
    r"\b(?:is|are)\s+missing\b",
    r"\bmissing\s+(?:required\s+)?(?:information|fields?|parameters?|details)\b",
    r"\bplease\s+provide\b",
    # Only a question that ends the reply asks the user for something.
    r"\?\s*\Z",
)

DEFAULT_STRUCTURED_PATTERNS: tuple[str, ...] = (
    rf"(?P<field>(?:{_FIELD_WORD}[ \t]+){{0,3}}{_FIELD_WORD})[ \t]+(?:is|are)[ \t]+(?:required|missing)\b",
    rf"\bmissing[ \t]+(?:required[ \t]+)?(?:field|parameter|value)[ \t]*:[ \t]*(?P<field>(?:{_FIELD_WORD}[ \t]+){{0,3}}{_FIELD_WORD})",
)

DEFAULT_QUESTION_PATTERNS: tuple[str, ...] = (
    r"\bwhat\s+(?:is|are)\s+(?:the\s+|your\s+)?(?P<field>[^?\n]{1,60}?)\s*\?",
    r"\bwhich\s+(?P<field>\w+(?:\s+\w+)?)\s+(?:should|would|do|does|is|are|will|can)\b",
    r"\bplease\s+provide\s+(?:the\s+|your\s+|a\s+|an\s+)?(?P<field>[^.?!,;:\n]{1,60})",
)

# Header line introducing a bullet list of fields, e.g. "Missing required fields:".
DEFAULT_LIST_HEADER_PATTERN = r"^[^\n]*\b(?:missing|required)\b[^\n]*:\s*$"
_BULLET = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s+(?P<item>.+?)\s*$")

_LEADING_STOPWORDS = frozenset({"the", "a", "an", "your", "also", "and", "that", "field", "value"})


@dataclass(slots=True)
class FollowUpPatterns:
    """Compiled pattern table driving signal detection and field extraction."""

    signals: tuple[Pattern[str], ...]
    structured: tuple[Pattern[str], ...]
    questions: tuple[Pattern[str], ...]
    list_header: Pattern[str] = field(
        default_factory=lambda: re.compile(DEFAULT_LIST_HEADER_PATTERN, re.IGNORECASE | re.MULTILINE)
    )

    @classmethod
    def from_strings(
        cls,
        *,
        signals: Sequence[str] | None = None,
        structured: Sequence[str] | None = None,
        questions: Sequence[str] | None = None,
    ) -> "FollowUpPatterns":
        return cls(
            signals=_compile(signals or DEFAULT_SIGNAL_PATTERNS, re.IGNORECASE),
            # Structured patterns rely on field capitalisation, so they stay case-sensitive.
            structured=_compile(structured or DEFAULT_STRUCTURED_PATTERNS, 0),
            questions=_compile(questions or DEFAULT_QUESTION_PATTERNS, re.IGNORECASE),
        )

    @classmethod
    def default(cls) -> "FollowUpPatterns":
        return cls.from_strings()


def _compile(patterns: Sequence[str], flags: int) -> tuple[Pattern[str], ...]:
    return tuple(re.compile(pattern, flags) for pattern in patterns)


class FollowUpAnalyzer:
    """Decides between Satisfied and NeedsClarification for a single completion.

    Holds no per-conversation state; the next turn starts a fresh analysis.
    """

    def __init__(
        self,
        provider: CompletionProvider | None = None,
        *,
        settings: FollowUpSettings | None = None,
        patterns: FollowUpPatterns | None = None,
    ) -> None:
        self._provider = provider
        self._settings = settings if settings is not None else FollowUpSettings()
        self._patterns = patterns if patterns is not None else FollowUpPatterns.from_strings(
            signals=self._settings.signal_patterns,
            structured=self._settings.structured_patterns,
            questions=self._settings.question_patterns,
        )

    @property
    def patterns(self) -> FollowUpPatterns:
        return self._patterns

    async def analyze(
        self,
        completion_text: str,
        *,
        model_name: str,
        capability_name: str | None = None,
        recent_messages: Sequence[MessageSnapshot] = (),
        cancel_event: asyncio.Event | None = None,
    ) -> MissingInformationAnalysis:
        if not self._settings.enabled or not completion_text or not completion_text.strip():
            return MissingInformationAnalysis.satisfied(capability_name)
        if not self.has_missing_signal(completion_text):
            return MissingInformationAnalysis.satisfied(capability_name)

        fields = self.extract_missing_fields(completion_text)
        if not fields:
            LOGGER.debug("Missing-information signal without extractable fields; treating as satisfied")
            return MissingInformationAnalysis.satisfied(capability_name)

        question = await self._phrase_question(
            fields,
            model_name=model_name,
            capability_name=capability_name,
            recent_messages=recent_messages,
            cancel_event=cancel_event,
        )
        LOGGER.info("Follow-up required for %s: %s", capability_name or "conversation", ", ".join(fields))
        return MissingInformationAnalysis(
            requires_follow_up=True,
            missing_fields=tuple(fields),
            follow_up_prompt=question,
            capability_name=capability_name,
        )

    def has_missing_signal(self, text: str) -> bool:
        return any(pattern.search(text) for pattern in self._patterns.signals)

    def extract_missing_fields(self, text: str) -> list[str]:
        """Structured matches first; generic question patterns only if those find nothing."""

        limit = max(1, int(self._settings.max_fields))
        fields = self._structured_fields(text)
        if not fields:
            fields = _in_text_order(
                (match.start("field"), match.group("field"))
                for pattern in self._patterns.questions
                for match in pattern.finditer(text)
            )
        return _dedupe(fields, limit)

    def _structured_fields(self, text: str) -> list[str]:
        headers = list(self._patterns.list_header.finditer(text))
        found: list[tuple[int, str]] = []
        for pattern in self._patterns.structured:
            for match in pattern.finditer(text):
                # "The following fields are required:" introduces a list; it is not a field.
                if any(header.start() <= match.start() < header.end() for header in headers):
                    continue
                found.append((match.start("field"), match.group("field")))
        found.extend(self._bullet_fields(text, headers))
        return _in_text_order(found)

    @staticmethod
    def _bullet_fields(text: str, headers: Sequence[re.Match[str]]) -> list[tuple[int, str]]:
        results: list[tuple[int, str]] = []
        for header in headers:
            offset = header.end()
            collected = 0
            for line in text[offset:].lstrip("\n").splitlines():
                if not line.strip():
                    if collected:
                        break
                    continue
                bullet = _BULLET.match(line)
                if bullet is None:
                    break
                item = re.split(r"\s*(?::|\s[-–]\s)", bullet.group("item"), maxsplit=1)[0]
                results.append((offset, item.replace("*", "").replace("`", "")))
                offset += 1
                collected += 1
        return results

    async def _phrase_question(
        self,
        fields: Sequence[str],
        *,
        model_name: str,
        capability_name: str | None,
        recent_messages: Sequence[MessageSnapshot],
        cancel_event: asyncio.Event | None,
    ) -> str:
        fallback = prompts.fallback_follow_up_question(fields[0])
        if self._provider is None or (cancel_event is not None and cancel_event.is_set()):
            return fallback

        history_lines = [
            f"{message.role}: {message.content[: prompts.FOLLOW_UP_HISTORY_CHARS]}"
            for message in list(recent_messages)[-prompts.FOLLOW_UP_HISTORY_MESSAGES :]
        ]
        messages: list[Mapping[str, Any]] = [
            {"role": "system", "content": prompts.follow_up_system_prompt()},
            {
                "role": "user",
                "content": prompts.follow_up_user_prompt(
                    capability_name=capability_name,
                    missing_fields=fields,
                    recent_history=history_lines,
                ),
            },
        ]
        settings = CompletionSettings(
            model=model_name,
            temperature=self._settings.temperature,
            max_output_tokens=self._settings.max_output_tokens,
            capability_dispatch="none",
        )
        try:
            completion = await asyncio.wait_for(
                self._provider.complete(messages, settings, None),
                timeout=self._settings.timeout_seconds,
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            LOGGER.warning("Clarifying question request failed (%s); using template", exc)
            return fallback

        question = self._validate_question(getattr(completion, "content", None))
        if question is None:
            LOGGER.debug("Clarifying question rejected by validation; using template")
            return fallback
        return question

    def _validate_question(self, text: Any) -> str | None:
        if not isinstance(text, str):
            return None
        cleaned = " ".join(text.split()).strip().strip("\"'").strip()
        if not cleaned:
            return None
        if len(cleaned) > self._settings.max_question_chars:
            return None
        return cleaned


def _in_text_order(matches: Iterable[tuple[int, str]]) -> list[str]:
    return [value for _, value in sorted(matches, key=lambda item: item[0])]


def _dedupe(candidates: Sequence[str], limit: int) -> list[str]:
    seen: set[str] = set()
    fields: list[str] = []
    for candidate in candidates:
        cleaned = _clean_field(candidate)
        key = cleaned.casefold()
        if not cleaned or key in seen:
            continue
        seen.add(key)
        fields.append(cleaned)
        if len(fields) >= limit:
            break
    return fields


def _clean_field(value: str) -> str:
    words = value.strip().strip(".:;,-*").split()
    while len(words) > 1 and words[0].casefold() in _LEADING_STOPWORDS:
        words.pop(0)
    return " ".join(words)
