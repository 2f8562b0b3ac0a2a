"""Tests for prompt assembly and per-component token attribution."""

from __future__ import annotations

import pytest

from platform_copilot.ai import prompts
from platform_copilot.ai.orchestration.history_builder import HistoryBuilder, HistoryOptions
from platform_copilot.ai.orchestration.prompt_assembler import PromptAssembler
from platform_copilot.ai.orchestration.types import ChatHistoryResult, MessageSnapshot
from tests.helpers import WordCounter

SYSTEM = "You are a helpful platform assistant."


def _empty_history() -> ChatHistoryResult:
    return ChatHistoryResult.empty(max_tokens=4_000, model_name="gpt-4o")


def test_empty_conversation_leaves_prompts_untouched() -> None:
    counter = WordCounter(context_window=128_000)
    assembler = PromptAssembler(counter)

    assembled = assembler.assemble(SYSTEM, [], _empty_history(), "Create a storage account", model_name="gpt-4o")

    assert assembled.system_text == SYSTEM
    assert assembled.user_text == "Create a storage account"
    assert "RECENT CONVERSATION CONTEXT" not in assembled.user_text
    assert assembled.metrics.user_prompt_tokens == 4
    assert assembled.metrics.history_tokens == 0
    assert assembled.metrics.rag_context_tokens == 0
    assert assembled.metrics.max_context_window == 128_000


def test_history_block_wraps_user_prompt() -> None:
    counter = WordCounter()
    history = HistoryBuilder(counter).build(
        [MessageSnapshot.user("hello there"), MessageSnapshot.assistant("hi")],
        HistoryOptions(max_tokens=100),
    )

    assembled = PromptAssembler(counter).assemble(SYSTEM, None, history, "next step?", model_name="gpt-4o")

    assert assembled.user_text.startswith("RECENT CONVERSATION CONTEXT:")
    assert "user: hello there" in assembled.user_text
    assert assembled.user_text.endswith("CURRENT QUESTION:\nnext step?")
    assert assembled.metrics.history_tokens == history.token_count
    assert assembled.metrics.history_message_count == 2
    # Only the raw question counts as user prompt.
    assert assembled.metrics.user_prompt_tokens == 2


def test_knowledge_base_block_lists_snippets_with_stable_indices() -> None:
    snippets = ["Storage accounts need a unique name.", "  ", "Use GRS for geo-redundancy."]

    assembled = PromptAssembler(WordCounter()).assemble(SYSTEM, snippets, None, "q", model_name="gpt-4o")

    assert assembled.system_text.startswith(SYSTEM + "\n\n" + prompts.DELIMITER)
    assert "[Source 1]\n" + prompts.SOURCE_RULE + "\nStorage accounts need a unique name." in assembled.system_text
    assert "[Source 2]\n" + prompts.SOURCE_RULE + "\nUse GRS for geo-redundancy." in assembled.system_text
    assert "[Source 3]" not in assembled.system_text
    assert assembled.system_text.rstrip().endswith(prompts.DELIMITER)
    assert assembled.metrics.rag_result_count == 2
    assert assembled.metrics.rag_context_tokens == 10


def test_retrieved_context_skipped_when_disabled() -> None:
    assembler = PromptAssembler(WordCounter(), include_rag_context=False)

    assembled = assembler.assemble(SYSTEM, ["snippet text"], None, "q", model_name="gpt-4o")

    assert assembled.system_text == SYSTEM
    assert assembled.metrics.rag_context_tokens == 0


def test_system_prompt_counted_without_knowledge_block() -> None:
    assembled = PromptAssembler(WordCounter()).assemble(
        SYSTEM, ["one two three"], None, "q", model_name="gpt-4o"
    )

    assert assembled.metrics.system_prompt_tokens == len(SYSTEM.split())
    assert assembled.metrics.rag_context_tokens == 3


@pytest.mark.parametrize(
    "snippets, user_prompt",
    [
        ([], "short"),
        (["alpha beta"], "a much longer question with many words in it"),
        (["one", "two three four", "five six"], "deploy " * 40),
    ],
)
def test_total_prompt_tokens_sum_components_plus_overhead(snippets: list[str], user_prompt: str) -> None:
    counter = WordCounter()
    history = HistoryBuilder(counter).build(
        [MessageSnapshot.user("earlier question"), MessageSnapshot.assistant("earlier answer here")],
        HistoryOptions(max_tokens=100),
    )

    metrics = PromptAssembler(counter).assemble(
        SYSTEM * 10, snippets, history, user_prompt, model_name="gpt-4o"
    ).metrics

    components = (
        metrics.system_prompt_tokens
        + metrics.rag_context_tokens
        + metrics.history_tokens
        + metrics.user_prompt_tokens
    )
    assert metrics.formatting_overhead_tokens == int(components * 0.05)
    assert metrics.total_prompt_tokens == components + metrics.formatting_overhead_tokens
    assert metrics.total_tokens == metrics.total_prompt_tokens + metrics.completion_tokens


def test_to_messages_orders_system_then_user() -> None:
    assembled = PromptAssembler(WordCounter()).assemble(SYSTEM, None, None, "hello", model_name="gpt-4o")

    assert assembled.to_messages() == [
        {"role": "system", "content": SYSTEM},
        {"role": "user", "content": "hello"},
    ]
