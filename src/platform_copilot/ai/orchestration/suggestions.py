"""Rule-driven proactive next-step suggestions."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Sequence

from .types import MessageSnapshot, ProactiveSuggestion

__all__ = ["SuggestionRule", "SuggestionEngine", "DEFAULT_RULES", "DEFAULT_SUGGESTIONS"]

LOGGER = logging.getLogger(__name__)

MAX_SUGGESTIONS = 3
RECENT_CAPABILITY_WINDOW = 3

_PRIORITY_RANK = {"high": 0, "medium": 1, "low": 2}


@dataclass(slots=True, frozen=True)
class SuggestionRule:
    """Suggestions offered after a capability whose name contains ``trigger``."""

    trigger: str
    suggestions: tuple[ProactiveSuggestion, ...]

    def matches(self, capability_name: str) -> bool:
        return self.trigger.casefold() in capability_name.casefold()


DEFAULT_RULES: tuple[SuggestionRule, ...] = (
    SuggestionRule(
        "Infrastructure",
        (
            ProactiveSuggestion(
                title="Run Compliance Assessment",
                description="Check the newly provisioned resources against your compliance baseline.",
                capability_name="ComplianceAgent",
                priority="high",
            ),
            ProactiveSuggestion(
                title="Set Up Cost Monitoring",
                description="Add budgets and alerts so spend on the new resources stays visible.",
                capability_name="CostManagementAgent",
                priority="medium",
            ),
        ),
    ),
    SuggestionRule(
        "Compliance",
        (
            ProactiveSuggestion(
                title="Review Environment Configuration",
                description="Inspect environment settings that affect the compliance findings.",
                capability_name="EnvironmentAgent",
                priority="high",
            ),
        ),
    ),
    SuggestionRule(
        "Cost",
        (
            ProactiveSuggestion(
                title="Discover Resource Utilization",
                description="Find idle or oversized resources behind the current spend.",
                capability_name="DiscoveryAgent",
                priority="medium",
            ),
        ),
    ),
    SuggestionRule(
        "Onboarding",
        (
            ProactiveSuggestion(
                title="Provision Infrastructure",
                description="Create the infrastructure requested during onboarding.",
                capability_name="InfrastructureAgent",
                priority="high",
            ),
        ),
    ),
)

DEFAULT_SUGGESTIONS: tuple[ProactiveSuggestion, ...] = (
    ProactiveSuggestion(
        title="Discover Azure Resources",
        description="List the resources in your subscriptions.",
        capability_name="DiscoveryAgent",
    ),
    ProactiveSuggestion(
        title="Analyze Costs",
        description="Break down recent spend by service and resource group.",
        capability_name="CostManagementAgent",
    ),
    ProactiveSuggestion(
        title="Check Compliance Status",
        description="Summarise the current compliance posture.",
        capability_name="ComplianceAgent",
    ),
)


class SuggestionEngine:
    """Maps recently used capabilities to ranked follow-on suggestions.

    ``suggest`` is a pure function of its inputs and never raises; an internal failure
    yields an empty list.
    """

    def __init__(
        self,
        rules: Sequence[SuggestionRule] = DEFAULT_RULES,
        *,
        defaults: Sequence[ProactiveSuggestion] = DEFAULT_SUGGESTIONS,
        limit: int = MAX_SUGGESTIONS,
    ) -> None:
        self._rules = tuple(rules)
        self._defaults = tuple(defaults)
        self._limit = max(0, limit)

    def suggest(
        self,
        recent_capabilities: Sequence[str],
        recent_messages: Sequence[MessageSnapshot] = (),
    ) -> list[ProactiveSuggestion]:
        try:
            return self._suggest(recent_capabilities)
        except Exception:  # pragma: no cover - defensive guard
            LOGGER.debug("Suggestion generation failed", exc_info=True)
            return []

    def _suggest(self, recent_capabilities: Sequence[str]) -> list[ProactiveSuggestion]:
        recent = [name for name in recent_capabilities if name][-RECENT_CAPABILITY_WINDOW:]
        matched: list[ProactiveSuggestion] = []
        # Newest capability first so its suggestions win ties on priority.
        for capability in reversed(recent):
            for rule in self._rules:
                if rule.matches(capability):
                    matched.extend(rule.suggestions)
        if not matched:
            return list(self._defaults[: self._limit])

        ranked = sorted(matched, key=lambda suggestion: _PRIORITY_RANK.get(suggestion.priority, len(_PRIORITY_RANK)))
        unique: list[ProactiveSuggestion] = []
        seen: set[str] = set()
        for suggestion in ranked:
            key = suggestion.title.casefold()
            if key in seen:
                continue
            seen.add(key)
            unique.append(suggestion)
        return unique[: self._limit]
