"""Logging setup for the copilot service.

Log records pass through :class:`SecretRedactingFilter` before reaching any handler, so
a configured API key never lands in the rotating log file even when request payloads
are logged at DEBUG.
"""

from __future__ import annotations

import logging
import logging.handlers
import os
from pathlib import Path
from typing import Any, Iterable

__all__ = [
    "LOG_FORMAT",
    "SecretRedactingFilter",
    "setup_logging",
    "setup_logging_from_settings",
    "get_logger",
    "get_log_path",
]

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
_DEFAULT_LOG_DIR = Path.home() / ".platform_copilot" / "logs"
_LOG_FILE_NAME = "platform_copilot.log"
_LOG_DIR_ENV = "PLATFORM_COPILOT_LOG_DIR"
_NOISY_LOGGERS: tuple[str, ...] = ("asyncio", "httpx", "httpcore", "openai")
_MASK = "***"

_state: dict[str, Any] = {"path": None, "filter": None}


class SecretRedactingFilter(logging.Filter):
    """Replaces known secret values in the rendered message with a mask."""

    def __init__(self, secrets: Iterable[str] = ()) -> None:
        super().__init__()
        self._secrets: set[str] = set()
        self.update(secrets)

    def update(self, secrets: Iterable[str]) -> None:
        # Very short values would mask ordinary words.
        self._secrets.update(secret for secret in secrets if secret and len(secret) >= 8)

    def filter(self, record: logging.LogRecord) -> bool:
        if not self._secrets:
            return True
        message = record.getMessage()
        redacted = message
        for secret in self._secrets:
            redacted = redacted.replace(secret, _MASK)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


def setup_logging(
    level: int = logging.INFO,
    *,
    log_dir: Path | str | None = None,
    console: bool = True,
    max_bytes: int = 1_000_000,
    backup_count: int = 3,
    secrets: Iterable[str] = (),
    force: bool = False,
) -> Path:
    """Route root logging to a rotating file and, optionally, the console.

    Calling again without ``force`` only registers additional ``secrets`` and returns
    the existing log path.
    """

    existing_path: Path | None = _state["path"]
    if existing_path is not None and not force:
        _state["filter"].update(secrets)
        return existing_path

    target_dir = _resolve_log_dir(log_dir)
    target_dir.mkdir(parents=True, exist_ok=True)
    log_path = target_dir / _LOG_FILE_NAME
    redactor = SecretRedactingFilter(secrets)
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=_DATE_FORMAT)

    handlers: list[logging.Handler] = [
        logging.handlers.RotatingFileHandler(
            log_path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
        )
    ]
    if console:
        handlers.append(logging.StreamHandler())
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        handler.addFilter(redactor)

    logging.basicConfig(level=level, handlers=handlers, force=True)
    logging.captureWarnings(True)
    for name in _NOISY_LOGGERS:
        # HTTP client chatter drowns out turn logs at INFO.
        logging.getLogger(name).setLevel(max(logging.WARNING, level))

    _state["path"] = log_path
    _state["filter"] = redactor
    return log_path


def setup_logging_from_settings(settings: Any, **kwargs: Any) -> Path:
    """Configure logging from :class:`~platform_copilot.services.settings.Settings`.

    ``debug_logging`` switches to DEBUG and the configured API key is registered for
    redaction.
    """

    level = logging.DEBUG if getattr(settings, "debug_logging", False) else logging.INFO
    api_key = getattr(settings, "api_key", "") or ""
    return setup_logging(level, secrets=[api_key], **kwargs)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def get_log_path() -> Path | None:
    """Return the active log file, or ``None`` before :func:`setup_logging` ran."""

    return _state["path"]


def _resolve_log_dir(log_dir: Path | str | None) -> Path:
    return Path(log_dir or os.environ.get(_LOG_DIR_ENV) or _DEFAULT_LOG_DIR).expanduser()
