"""Per-agent state tracked by the orchestrator."""

from __future__ import annotations

import secrets
import string
import time
from dataclasses import dataclass, field

from codecall.agent.process import ProcessHandle
from codecall.constants import AgentStatus

_ID_ALPHABET = string.digits + string.ascii_lowercase


def generate_agent_id() -> str:
    """Return ``agent-<epoch ms>-<9 base36 chars>``."""
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(9))
    return f"agent-{int(time.time() * 1000)}-{suffix}"


@dataclass
class AgentInstance:
    """One logical agent: its current process plus accumulated state.

    ``output`` survives follow-ups; ``handle`` is replaced on each one and
    ``turn_offset`` marks where the latest turn's output begins.
    The file lists are what the agent reported touching, not what is on disk.
    """

    id: str
    handle: ProcessHandle
    prompt: str
    status: AgentStatus = "working"
    output: str = ""
    modified_files: list[str] = field(default_factory=list)
    read_files: list[str] = field(default_factory=list)
    model: str | None = None
    duration_ms: int | None = None
    muted: bool = False
    follow_ups: int = 0
    turn_offset: int = 0
    created_at: float = field(default_factory=time.time)

    def add_modified_file(self, path: str) -> bool:
        """Record a written path; ``False`` if it was already listed."""
        if path in self.modified_files:
            return False
        self.modified_files.append(path)
        return True

    def add_read_file(self, path: str) -> bool:
        """Record a read path; ``False`` if it was already listed."""
        if path in self.read_files:
            return False
        self.read_files.append(path)
        return True

    @property
    def turn_output(self) -> str:
        """Output produced since the latest prompt was sent."""
        return self.output[self.turn_offset:]

    @property
    def short_id(self) -> str:
        """Display name built from the random suffix, e.g. ``agent-k3x9q0``."""
        return f"agent-{self.id.rsplit('-', 1)[-1][:6]}"
