"""Completion summaries — asking the agent for one and pulling it back out."""

from __future__ import annotations

import re

#: Appended to every new prompt so the final output carries a speakable line.
SUMMARY_INSTRUCTION = (
    "\n\n[IMPORTANT: When you complete this task, end with a brief 1-2 "
    'sentence summary starting with "SUMMARY:" that describes what you '
    "accomplished.]"
)

#: Fallback text when the output has nothing usable.
DEFAULT_SUMMARY = "Task completed."

#: Longest fallback line used as a summary.
MAX_FALLBACK_CHARS = 200

_SUMMARY_RE = re.compile(r"SUMMARY:\s*(.+?)(?:\n|$)", re.IGNORECASE)


def with_summary_instruction(prompt: str) -> str:
    return prompt + SUMMARY_INSTRUCTION


def extract_summary(output: str) -> str:
    """Return the text after the first ``SUMMARY:`` marker.

    Without a marker, the last non-blank line that is not a markdown
    heading is used, truncated to :data:`MAX_FALLBACK_CHARS`.
    """
    match = _SUMMARY_RE.search(output)
    if match:
        return match.group(1).strip()

    lines = [
        line for line in output.split("\n")
        if line.strip() and not line.startswith("#")
    ]
    if lines:
        return lines[-1][:MAX_FALLBACK_CHARS]
    return DEFAULT_SUMMARY
