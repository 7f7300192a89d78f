"""Shared constants and type aliases for the Codecall runtime."""

from __future__ import annotations

from typing import Literal

#: Lifecycle state of a single agent.
AgentStatus = Literal["idle", "listening", "working", "reporting"]

#: Env var the agent CLI reads its API key from.
API_KEY_ENV = "CURSOR_API_KEY"

#: Env var that overrides executable resolution.
AGENT_PATH_ENV = "CODECALL_AGENT_PATH"

#: Seconds without any stdout before the watchdog reports a stall.
DEFAULT_WATCHDOG_TIMEOUT = 10.0
