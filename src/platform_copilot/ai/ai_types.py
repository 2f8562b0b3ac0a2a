"""Shared typing contracts for AI infrastructure."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Mapping, Protocol, Sequence, runtime_checkable

if TYPE_CHECKING:  # pragma: no cover - import cycle guard
    from .capabilities import CapabilityRegistry

__all__ = [
    "TokenCounterProtocol",
    "ModelTokenCounter",
    "CompletionProvider",
    "CompletionSettings",
    "ProviderCompletion",
]


class TokenCounterProtocol(Protocol):
    """Protocol describing tokenizer implementations."""

    model_name: str | None

    def count(self, text: str) -> int:
        """Return the precise token count for *text*."""
        ...

    def estimate(self, text: str) -> int:
        """Return a deterministic fallback estimate when precise counts fail."""
        ...


@runtime_checkable
class ModelTokenCounter(Protocol):
    """Model-aware counting service consumed by the orchestration core."""

    def count_tokens(self, text: str, model_name: str | None = None) -> int:
        ...

    def max_context_window(self, model_name: str | None = None) -> int:
        ...


@dataclass(slots=True, frozen=True)
class CompletionSettings:
    """Per-request knobs forwarded to the provider untouched."""

    model: str
    temperature: float | None = 0.2
    max_output_tokens: int | None = None
    capability_dispatch: str = "auto"

    @property
    def dispatch_enabled(self) -> bool:
        return self.capability_dispatch.strip().lower() == "auto"


@dataclass(slots=True)
class ProviderCompletion:
    """Raw completion returned by a provider: text plus loosely-shaped metadata."""

    content: str
    metadata: Mapping[str, Any] = field(default_factory=dict)


@runtime_checkable
class CompletionProvider(Protocol):
    async def complete(
        self,
        history: Sequence[Mapping[str, Any]],
        settings: CompletionSettings,
        capabilities: "CapabilityRegistry | None" = None,
    ) -> ProviderCompletion:
        ...
