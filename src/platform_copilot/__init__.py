"""Conversation orchestration core for the platform-engineering copilot."""

__version__ = "0.1.0"

__all__ = ["__version__"]
