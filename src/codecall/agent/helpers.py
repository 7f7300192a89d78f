"""Shared helper functions for agent error reporting."""

from __future__ import annotations


def format_stderr_preview(stderr_text: str, max_lines: int = 5) -> str:
    """Extract and format the last N non-empty lines from stderr output."""
    lines = [line for line in stderr_text.split("\n") if line.strip()]
    last = lines[-max_lines:] if len(lines) > max_lines else lines
    return "\n  ".join(last)


def spawn_error_message(exc: OSError, executable: str) -> str:
    """Turn a failed ``exec`` into a message a user can act on."""
    if isinstance(exc, FileNotFoundError):
        return (
            f"Agent CLI not found at {executable}. "
            "Make sure 'cursor-agent' is installed, or set agent_path."
        )
    if isinstance(exc, PermissionError):
        return f"Agent CLI at {executable} is not executable."
    return f"Failed to start agent CLI {executable}: {exc}"
