"""Shared test helpers and stub classes.

Import from here instead of duplicating these fakes in individual test files.
"""

from __future__ import annotations

from typing import Any, Mapping, Sequence

from platform_copilot.ai.ai_types import CompletionSettings, ProviderCompletion


class WordCounter:
    """Token counter stub: one token per whitespace-separated word.

    Example:
        from tests.helpers import WordCounter

        builder = HistoryBuilder(WordCounter())
    """

    def __init__(self, context_window: int = 1_000) -> None:
        self.context_window = context_window
        self.calls: list[tuple[str, str | None]] = []

    def count_tokens(self, text: str, model_name: str | None = None) -> int:
        self.calls.append((text, model_name))
        return len(text.split())

    def max_context_window(self, model_name: str | None = None) -> int:
        return self.context_window


class ScriptedProvider:
    """Completion provider stub that replays a script of results or exceptions.

    The last entry repeats once the script is exhausted.
    """

    def __init__(self, *outcomes: ProviderCompletion | BaseException | str) -> None:
        self._outcomes = list(outcomes) or ["ok"]
        self.calls: list[dict[str, Any]] = []

    @property
    def call_count(self) -> int:
        return len(self.calls)

    async def complete(
        self,
        history: Sequence[Mapping[str, Any]],
        settings: CompletionSettings,
        capabilities: Any = None,
    ) -> ProviderCompletion:
        self.calls.append({"history": list(history), "settings": settings, "capabilities": capabilities})
        outcome = self._outcomes[min(len(self.calls) - 1, len(self._outcomes) - 1)]
        if isinstance(outcome, BaseException):
            raise outcome
        if isinstance(outcome, str):
            return ProviderCompletion(content=outcome, metadata={})
        return outcome


class RecordingSleep:
    """Replacement for ``asyncio.sleep`` that records requested delays and returns at once."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
