"""Settings dataclasses and persistence helpers."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping

from cryptography.fernet import Fernet, InvalidToken

__all__ = [
    "Settings",
    "HistorySettings",
    "RetrySettings",
    "FollowUpSettings",
    "ConversationStoreSettings",
    "SettingsStore",
    "SecretVault",
    "redact_secret",
]

LOGGER = logging.getLogger(__name__)
_SETTINGS_DIR = Path.home() / ".platform_copilot"
_DEFAULT_SETTINGS_PATH = _SETTINGS_DIR / "settings.json"
_SETTINGS_VERSION = 1
_ENV_OVERRIDES: Mapping[str, str] = {
    "PLATFORM_COPILOT_API_KEY": "api_key",
    "PLATFORM_COPILOT_BASE_URL": "base_url",
    "PLATFORM_COPILOT_MODEL": "model",
    "PLATFORM_COPILOT_ORGANIZATION": "organization",
    "PLATFORM_COPILOT_CAPABILITY_DISPATCH": "capability_dispatch",
    "PLATFORM_COPILOT_METADATA_ADAPTER": "metadata_adapter",
}
_BOOL_ENV_OVERRIDES: Mapping[str, str] = {
    "PLATFORM_COPILOT_DEBUG_LOGGING": "debug_logging",
    "PLATFORM_COPILOT_INCLUDE_RAG_CONTEXT": "include_rag_context",
}
_FLOAT_ENV_OVERRIDES: Mapping[str, str] = {
    "PLATFORM_COPILOT_REQUEST_TIMEOUT": "request_timeout",
    "PLATFORM_COPILOT_TEMPERATURE": "temperature",
}
_INT_ENV_OVERRIDES: Mapping[str, str] = {
    "PLATFORM_COPILOT_MAX_OUTPUT_TOKENS": "max_output_tokens",
    "PLATFORM_COPILOT_MAX_TOOL_ITERATIONS": "max_tool_iterations",
}
_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_API_KEY_FIELD = "api_key_ciphertext"


@dataclass(slots=True)
class HistorySettings:
    """Token budget used when windowing conversation history into a prompt."""

    max_tokens: int = 4_000
    reserved_tokens: int = 0
    minimum_messages: int = 2
    include_system_messages: bool = False
    max_stored_messages: int = 20


@dataclass(slots=True)
class RetrySettings:
    """Linear backoff for rate-limited or timed-out completion requests."""

    max_retries: int = 3
    base_delay_seconds: float = 10.0


@dataclass(slots=True)
class FollowUpSettings:
    enabled: bool = True
    max_fields: int = 5
    max_question_chars: int = 300
    max_output_tokens: int = 150
    temperature: float = 0.3
    timeout_seconds: float = 20.0
    signal_patterns: list[str] | None = None
    structured_patterns: list[str] | None = None
    question_patterns: list[str] | None = None


@dataclass(slots=True)
class ConversationStoreSettings:
    shard_count: int = 16
    max_conversations: int = 5_000
    idle_ttl_seconds: float = 3_600.0


@dataclass(slots=True)
class Settings:
    """Runtime configuration for the conversation orchestration core."""

    base_url: str = "https://api.openai.com/v1"
    api_key: str = ""
    model: str = "gpt-4o"
    organization: str | None = None
    temperature: float = 0.2
    max_output_tokens: int = 4_000
    request_timeout: float = 120.0
    capability_dispatch: str = "auto"
    metadata_adapter: str = "auto"
    max_tool_iterations: int = 8
    include_rag_context: bool = True
    system_prompt: str | None = None
    debug_logging: bool = False
    default_headers: dict[str, str] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)
    history: HistorySettings = field(default_factory=HistorySettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    follow_up: FollowUpSettings = field(default_factory=FollowUpSettings)
    store: ConversationStoreSettings = field(default_factory=ConversationStoreSettings)


_NESTED_GROUPS: Mapping[str, type] = {
    "history": HistorySettings,
    "retry": RetrySettings,
    "follow_up": FollowUpSettings,
    "store": ConversationStoreSettings,
}


class SecretVault:
    """Fernet encryption for secrets persisted beside the settings file."""

    def __init__(self, *, key_path: Path | None = None) -> None:
        self._key_path = key_path or (_SETTINGS_DIR / "settings.key")
        self._fernet: Fernet | None = None

    @property
    def key_path(self) -> Path:
        return self._key_path

    def encrypt(self, secret: str) -> str:
        if not secret:
            return ""
        token = self._get_fernet().encrypt(secret.encode("utf-8"))
        return token.decode("ascii")

    def decrypt(self, token: str | None) -> str:
        if not token:
            return ""
        try:
            raw = self._get_fernet().decrypt(token.encode("ascii"))
        except InvalidToken as exc:
            raise ValueError("Invalid Fernet token") from exc
        return raw.decode("utf-8")

    def _get_fernet(self) -> Fernet:
        if self._fernet is None:
            self._fernet = Fernet(self._load_or_create_key())
        return self._fernet

    def _load_or_create_key(self) -> bytes:
        path = self._key_path
        path.parent.mkdir(parents=True, exist_ok=True)
        if path.exists():
            return path.read_bytes().strip()
        key = Fernet.generate_key()
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_bytes(key)
        if os.name != "nt":  # pragma: no cover - depends on OS
            os.chmod(tmp_path, 0o600)
        tmp_path.replace(path)
        return key


class SettingsStore:
    """Persistence adapter for :class:`Settings`."""

    def __init__(self, path: Path | None = None, *, vault: SecretVault | None = None) -> None:
        self._path = path or _DEFAULT_SETTINGS_PATH
        self._vault = vault if vault is not None else SecretVault(key_path=self._path.with_suffix(".key"))

    @property
    def path(self) -> Path:
        return self._path

    @property
    def vault(self) -> SecretVault:
        return self._vault

    def load(self, *, overrides: Mapping[str, Any] | None = None) -> Settings:
        """Load settings from disk, then apply runtime and environment overrides."""

        payload = self._read_payload()
        settings = Settings()
        if payload:
            api_key = self._decrypt_api_key(payload.pop(_API_KEY_FIELD, None))
            data = _filter_fields(payload)
            for group_name, group_type in _NESTED_GROUPS.items():
                group_payload = data.get(group_name)
                if isinstance(group_payload, Mapping):
                    data[group_name] = _build_group(group_type, group_payload)
                elif group_name in data:
                    data.pop(group_name)
            try:
                settings = Settings(**data)
            except TypeError as exc:
                LOGGER.warning("Settings payload contained unexpected data: %s", exc)
                settings = Settings()
            if api_key:
                settings = replace(settings, api_key=api_key)
            LOGGER.debug("Settings loaded from %s (model=%s)", self._path, settings.model)

        if overrides:
            settings = self._apply_overrides(settings, overrides, source="runtime")
        return self._apply_env_overrides(settings)

    def save(self, settings: Settings) -> Path:
        """Persist settings with an atomic replace; the API key is stored encrypted."""

        body = json.dumps(self._serialize(settings), indent=2, sort_keys=True)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(".tmp")
        tmp_path.write_text(body, encoding="utf-8")
        tmp_path.replace(self._path)
        LOGGER.debug("Settings saved to %s", self._path)
        return self._path

    def _serialize(self, settings: Settings) -> Dict[str, Any]:
        data = asdict(settings)
        api_key = data.pop("api_key", "") or ""
        if api_key:
            try:
                data[_API_KEY_FIELD] = self._vault.encrypt(api_key)
            except Exception as exc:  # pragma: no cover - extremely rare
                LOGGER.warning("Failed to encrypt API key: %s", exc)
        data["version"] = _SETTINGS_VERSION
        return data

    def _read_payload(self) -> Dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as exc:
            LOGGER.warning("Settings file %s is not valid JSON: %s", self._path, exc)
            return {}
        if not isinstance(payload, dict):
            LOGGER.warning("Settings file %s does not contain an object", self._path)
            return {}
        return payload

    def _decrypt_api_key(self, ciphertext: str | None) -> str:
        if not ciphertext:
            return ""
        try:
            return self._vault.decrypt(ciphertext)
        except ValueError as exc:
            LOGGER.warning("Unable to decrypt API key: %s", exc)
            return ""

    def _apply_overrides(
        self,
        settings: Settings,
        overrides: Mapping[str, Any],
        *,
        source: str,
    ) -> Settings:
        allowed = {item.name for item in fields(Settings)}
        filtered: Dict[str, Any] = {}
        for key, value in overrides.items():
            if key not in allowed or value is None:
                continue
            group_type = _NESTED_GROUPS.get(key)
            if group_type is not None and isinstance(value, Mapping):
                value = replace(getattr(settings, key), **_known_keys(group_type, value))
            filtered[key] = value
        metadata_override = filtered.get("metadata")
        if isinstance(metadata_override, Mapping):
            merged = dict(settings.metadata or {})
            merged.update(metadata_override)
            filtered["metadata"] = merged
        if filtered:
            LOGGER.debug("Applying %s settings overrides: %s", source, sorted(filtered))
            settings = replace(settings, **filtered)
        return settings

    def _apply_env_overrides(self, settings: Settings) -> Settings:
        overrides: Dict[str, Any] = {}
        for env_name, field_name in _ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is not None:
                overrides[field_name] = value
        for env_name, field_name in _BOOL_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is not None:
                overrides[field_name] = value.strip().lower() in _TRUE_VALUES
        for env_name, field_name in _INT_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is None:
                continue
            try:
                overrides[field_name] = int(value, 10)
            except ValueError:
                LOGGER.warning("Environment override %s=%s is not a valid integer", env_name, value)
        for env_name, field_name in _FLOAT_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is None:
                continue
            try:
                overrides[field_name] = float(value)
            except ValueError:
                LOGGER.warning("Environment override %s=%s is not a valid float", env_name, value)
        if overrides:
            settings = self._apply_overrides(settings, overrides, source="environment")
        return settings


def _filter_fields(payload: Mapping[str, Any]) -> Dict[str, Any]:
    allowed = {item.name for item in fields(Settings)} - {"api_key"}
    return {key: value for key, value in payload.items() if key in allowed}


def _known_keys(group_type: type, payload: Mapping[str, Any]) -> Dict[str, Any]:
    allowed = {item.name for item in fields(group_type)}
    return {key: value for key, value in payload.items() if key in allowed}


def _build_group(group_type: type, payload: Mapping[str, Any]) -> Any:
    try:
        return group_type(**_known_keys(group_type, payload))
    except TypeError:
        LOGGER.warning("Ignoring malformed %s settings block", group_type.__name__)
        return group_type()


def redact_secret(value: str) -> str:
    stripped = (value or "").strip()
    if not stripped:
        return ""
    if len(stripped) <= 4:
        return "*" * len(stripped)
    return f"{stripped[:2]}{'*' * (len(stripped) - 4)}{stripped[-2:]}"
