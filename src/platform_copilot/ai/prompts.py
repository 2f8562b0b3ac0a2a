"""Prompt templates for the platform-engineering copilot.

Covers the base system instruction, the delimited knowledge-base and conversation
blocks wrapped around retrieved snippets and history, and the narrowly-scoped prompt
used to phrase a single clarifying question.
"""

from __future__ import annotations

from typing import Sequence

# Clarifying-question context limits
FOLLOW_UP_HISTORY_MESSAGES = 4
FOLLOW_UP_HISTORY_CHARS = 200

DELIMITER = "═" * 59
SOURCE_RULE = "-" * 59


def base_system_prompt() -> str:
    """Default instruction block used when settings do not override it."""

    return f"""{_role_section()}

## How to work
{_workflow_section()}

## When information is missing
{_missing_information_section()}"""


def _role_section() -> str:
    return (
        "You are a platform engineering copilot. You help engineers provision cloud "
        "infrastructure, assess compliance, analyse costs, manage environments and onboard "
        "missions by calling the capabilities available to you."
    )


def _workflow_section() -> str:
    return """- Prefer calling a capability over describing what the user could do manually.
- Never invent resource names, identifiers or subscription details.
- Summarise capability results concisely and call out anything that failed.
- Ground answers in the knowledge base context when it is provided and cite sources as [Source N]."""


def _missing_information_section() -> str:
    return """- If a request cannot proceed, state exactly which fields are required, one per line, as "<Field> is required".
- Do not guess values for required fields."""


def knowledge_base_block(snippets: Sequence[str]) -> str:
    """Render retrieved snippets between unambiguous delimiters with stable source indices."""

    lines = [
        DELIMITER,
        "KNOWLEDGE BASE CONTEXT (Retrieved Documentation)",
        DELIMITER,
        "",
        "Use the following retrieved documentation to answer the user's question accurately.",
        "Cite specific sources when making claims. If the context doesn't contain relevant information,",
        "acknowledge this and use your general knowledge appropriately.",
        "",
    ]
    for index, snippet in enumerate(snippets, start=1):
        lines.extend([f"[Source {index}]", SOURCE_RULE, snippet, ""])
    lines.extend([DELIMITER, "END KNOWLEDGE BASE CONTEXT", DELIMITER])
    return "\n".join(lines)


def conversation_block(formatted_history: str, user_prompt: str) -> str:
    return "\n".join(
        [
            "RECENT CONVERSATION CONTEXT:",
            DELIMITER,
            formatted_history,
            DELIMITER,
            "",
            "CURRENT QUESTION:",
            user_prompt,
        ]
    )


def follow_up_system_prompt() -> str:
    return (
        "You write one short, friendly clarifying question for a platform engineering "
        "assistant. Ask only about the single most important missing detail. Do not list "
        "every missing field, do not apologise, and reply with the question only."
    )


def follow_up_user_prompt(
    *,
    capability_name: str | None,
    missing_fields: Sequence[str],
    recent_history: Sequence[str],
) -> str:
    """Build the request asking the provider to phrase a clarifying question."""

    capability = capability_name or "the requested operation"
    parts = [
        f"Operation: {capability}",
        f"Missing information (most important first): {', '.join(missing_fields)}",
    ]
    if recent_history:
        parts.append("Recent conversation:")
        parts.extend(f"- {line}" for line in recent_history)
    parts.append(f"Ask the user for the {missing_fields[0]}.")
    return "\n".join(parts)


def fallback_follow_up_question(field_name: str) -> str:
    return f"To continue, could you please provide the {field_name}?"
