"""Shared pytest fixtures."""

from __future__ import annotations

import os

import pytest

from platform_copilot.services import telemetry as telemetry_service
from tests.helpers import RecordingSleep, WordCounter


@pytest.fixture
def word_counter() -> WordCounter:
    return WordCounter()


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture(autouse=True)
def _reset_telemetry_listeners():
    yield
    telemetry_service._EVENT_LISTENERS.clear()  # type: ignore[attr-defined]


@pytest.fixture(autouse=True)
def _isolated_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in list(os.environ):
        if name.startswith("PLATFORM_COPILOT_"):
            monkeypatch.delenv(name, raising=False)
