"""Completion provider, token counting, capabilities and orchestration."""

from .capabilities import CapabilityParameter, CapabilityRegistry, CapabilitySpec
from .client import (
    ApproxByteCounter,
    ClientSettings,
    OpenAICompletionProvider,
    TiktokenCounter,
    TokenCounterRegistry,
    build_provider,
)

__all__ = [
    "ApproxByteCounter",
    "CapabilityParameter",
    "CapabilityRegistry",
    "CapabilitySpec",
    "ClientSettings",
    "OpenAICompletionProvider",
    "TiktokenCounter",
    "TokenCounterRegistry",
    "build_provider",
]
