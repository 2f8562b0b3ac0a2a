"""Utility helpers shared across the copilot."""
