"""Configuration and telemetry services."""

from .settings import Settings, SettingsStore
from .telemetry import InMemoryTelemetrySink, TurnUsageEvent, emit, register_event_listener

__all__ = [
    "Settings",
    "SettingsStore",
    "InMemoryTelemetrySink",
    "TurnUsageEvent",
    "emit",
    "register_event_listener",
]
