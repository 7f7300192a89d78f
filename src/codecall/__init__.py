"""Codecall — voice-first orchestrator for headless coding-agent CLIs."""

__version__ = "0.1.0"
