"""Composes the exact prompt text sent to the provider, with per-component token counts."""

from __future__ import annotations

import logging
from typing import Any, NamedTuple, Sequence

from .. import prompts
from ..ai_types import ModelTokenCounter
from .types import ChatHistoryResult, TokenUsageMetrics

__all__ = ["AssembledPrompt", "PromptAssembler"]

LOGGER = logging.getLogger(__name__)


class AssembledPrompt(NamedTuple):
    system_text: str
    user_text: str
    metrics: TokenUsageMetrics

    def to_messages(self) -> list[dict[str, Any]]:
        return [
            {"role": "system", "content": self.system_text},
            {"role": "user", "content": self.user_text},
        ]


class PromptAssembler:
    """Builds system and user text and attributes tokens to each contributor.

    Counting is done per component (base system prompt, retrieved context, history,
    user prompt), never on the concatenated text, so utilisation can be traced back to
    whichever part is consuming the budget.
    """

    def __init__(self, counter: ModelTokenCounter, *, include_rag_context: bool = True) -> None:
        self._counter = counter
        self._include_rag_context = include_rag_context

    def assemble(
        self,
        system_prompt: str,
        rag_snippets: Sequence[str] | None,
        history: ChatHistoryResult | None,
        user_prompt: str,
        *,
        model_name: str,
    ) -> AssembledPrompt:
        snippets = [snippet for snippet in (rag_snippets or ()) if snippet and snippet.strip()]
        if not self._include_rag_context:
            snippets = []

        system_text = system_prompt
        if snippets:
            system_text = f"{system_prompt}\n\n{prompts.knowledge_base_block(snippets)}"

        user_text = user_prompt
        if history is not None and not history.is_empty:
            user_text = prompts.conversation_block(history.formatted_history, user_prompt)

        metrics = TokenUsageMetrics.from_components(
            model_name=model_name,
            system_prompt_tokens=self._count(system_prompt, model_name),
            rag_context_tokens=self._count("\n".join(snippets), model_name) if snippets else 0,
            history_tokens=history.token_count if history is not None and not history.is_empty else 0,
            user_prompt_tokens=self._count(user_prompt, model_name),
            max_context_window=self._counter.max_context_window(model_name),
            rag_result_count=len(snippets),
            history_message_count=history.message_count if history is not None else 0,
        )
        LOGGER.debug(
            "Token breakdown - system: %s, rag: %s, history: %s, user: %s, overhead: %s",
            metrics.system_prompt_tokens,
            metrics.rag_context_tokens,
            metrics.history_tokens,
            metrics.user_prompt_tokens,
            metrics.formatting_overhead_tokens,
        )
        return AssembledPrompt(system_text=system_text, user_text=user_text, metrics=metrics)

    def _count(self, text: str, model_name: str) -> int:
        if not text:
            return 0
        return self._counter.count_tokens(text, model_name)
