"""Tests for settings persistence, secret encryption and overrides."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from platform_copilot.services.settings import (
    FollowUpSettings,
    HistorySettings,
    SecretVault,
    Settings,
    SettingsStore,
    redact_secret,
)


def _store(tmp_path: Path) -> SettingsStore:
    return SettingsStore(tmp_path / "settings.json")


def test_defaults_when_file_missing(tmp_path: Path) -> None:
    settings = _store(tmp_path).load()

    assert settings == Settings()
    assert settings.retry.max_retries == 3
    assert settings.retry.base_delay_seconds == 10.0
    assert settings.history.max_stored_messages == 20
    assert settings.store.idle_ttl_seconds == 3_600.0


def test_roundtrip_encrypts_api_key(tmp_path: Path) -> None:
    store = _store(tmp_path)
    original = Settings(
        api_key="sk-secret-value",
        model="gpt-4o-mini",
        history=HistorySettings(max_tokens=2_000, minimum_messages=4),
        follow_up=FollowUpSettings(max_fields=3),
    )

    path = store.save(original)
    raw = json.loads(path.read_text(encoding="utf-8"))
    loaded = store.load()

    assert "api_key" not in raw
    assert "sk-secret-value" not in path.read_text(encoding="utf-8")
    assert raw["version"] == 1
    assert loaded.api_key == "sk-secret-value"
    assert loaded.model == "gpt-4o-mini"
    assert loaded.history.max_tokens == 2_000
    assert loaded.history.minimum_messages == 4
    assert loaded.follow_up.max_fields == 3
    assert store.vault.key_path.exists()


def test_undecryptable_key_is_dropped(tmp_path: Path) -> None:
    path = tmp_path / "settings.json"
    path.write_text(json.dumps({"model": "gpt-4", "api_key_ciphertext": "not-a-token"}), encoding="utf-8")

    settings = SettingsStore(path).load()

    assert settings.api_key == ""
    assert settings.model == "gpt-4"


@pytest.mark.parametrize("body", ["{not json", "[1, 2, 3]"])
def test_unreadable_file_falls_back_to_defaults(tmp_path: Path, body: str) -> None:
    path = tmp_path / "settings.json"
    path.write_text(body, encoding="utf-8")

    assert SettingsStore(path).load() == Settings()


def test_unknown_and_malformed_fields_are_ignored(tmp_path: Path) -> None:
    path = tmp_path / "settings.json"
    path.write_text(
        json.dumps({"model": "gpt-4-turbo", "colour": "blue", "history": {"max_tokens": 500, "extra": 1}, "retry": 7}),
        encoding="utf-8",
    )

    settings = SettingsStore(path).load()

    assert settings.model == "gpt-4-turbo"
    assert settings.history.max_tokens == 500
    assert settings.retry.max_retries == 3


def test_runtime_overrides_merge_nested_groups(tmp_path: Path) -> None:
    settings = _store(tmp_path).load(
        overrides={
            "temperature": 0.7,
            "retry": {"max_retries": 1},
            "metadata": {"team": "platform"},
            "unknown": "ignored",
            "model": None,
        }
    )

    assert settings.temperature == 0.7
    assert settings.retry.max_retries == 1
    assert settings.retry.base_delay_seconds == 10.0
    assert settings.metadata == {"team": "platform"}
    assert settings.model == "gpt-4o"


def test_environment_overrides(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PLATFORM_COPILOT_API_KEY", "env-key")
    monkeypatch.setenv("PLATFORM_COPILOT_MODEL", "gpt-35-turbo")
    monkeypatch.setenv("PLATFORM_COPILOT_DEBUG_LOGGING", "yes")
    monkeypatch.setenv("PLATFORM_COPILOT_MAX_OUTPUT_TOKENS", "512")
    monkeypatch.setenv("PLATFORM_COPILOT_REQUEST_TIMEOUT", "not-a-number")

    settings = _store(tmp_path).load()

    assert settings.api_key == "env-key"
    assert settings.model == "gpt-35-turbo"
    assert settings.debug_logging is True
    assert settings.max_output_tokens == 512
    assert settings.request_timeout == 120.0


def test_vault_rejects_foreign_tokens(tmp_path: Path) -> None:
    vault = SecretVault(key_path=tmp_path / "one.key")
    other = SecretVault(key_path=tmp_path / "two.key")
    token = vault.encrypt("hunter2")

    assert vault.decrypt(token) == "hunter2"
    assert vault.encrypt("") == ""
    assert vault.decrypt(None) == ""
    with pytest.raises(ValueError):
        other.decrypt(token)


@pytest.mark.parametrize(
    "value, expected",
    [("", ""), ("abc", "***"), ("sk-1234567890", "sk*********90"), ("  abcdef  ", "ab**ef")],
)
def test_redact_secret(value: str, expected: str) -> None:
    assert redact_secret(value) == expected
