"""Pydantic v2 models for session recording events."""

from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Discriminator, Field, Tag


class _EventBase(BaseModel):
    """Common envelope fields shared by every session event."""

    model_config = ConfigDict(extra="forbid")

    ts: str = Field(description="ISO 8601 timestamp with milliseconds")
    seq: int = Field(ge=0, description="Monotonic sequence number")


class SessionStartEvent(_EventBase):
    """Emitted once at the start of a session."""

    type: Literal["session_start"] = "session_start"
    session_id: str = Field(description="Unique session identifier")
    label: str = Field(description="Session label, used in the file name")
    executable: str | None = Field(
        default=None, description="Resolved agent CLI path, if known"
    )


class SessionEndEvent(_EventBase):
    """Emitted once when a session ends."""

    type: Literal["session_end"] = "session_end"
    reason: Literal["complete", "user_shutdown", "ctrl_c", "error"] = Field(
        description="Why the session ended",
    )
    duration_ms: int = Field(description="Total session duration in milliseconds")
    agents_spawned: int = Field(
        default=0, description="Number of agents spawned during the session"
    )


class AgentSpawnedEvent(_EventBase):
    """An agent process was launched (initially or for a follow-up)."""

    type: Literal["agent_spawned"] = "agent_spawned"
    agent: str = Field(description="Agent id")
    prompt: str = Field(description="User instruction that started the process")
    follow_up: bool = Field(default=False, description="Respawn carrying context")


class CaptionEvent(_EventBase):
    """A text delta streamed by an agent."""

    type: Literal["caption"] = "caption"
    agent: str = Field(description="Agent id")
    text: str = Field(description="Caption delta")


class StatusChangeEvent(_EventBase):
    type: Literal["status_change"] = "status_change"
    agent: str = Field(description="Agent id")
    status: Literal["idle", "listening", "working", "reporting"] = Field(
        description="New agent status",
    )


class ToolActivityEvent(_EventBase):
    """An agent started a tool call."""

    type: Literal["tool_activity"] = "tool_activity"
    agent: str = Field(description="Agent id")
    tool: str = Field(description="'write', 'read', or the raw tool key")
    path: str | None = Field(default=None, description="Target file, if any")


class AgentCompleteEvent(_EventBase):
    type: Literal["agent_complete"] = "agent_complete"
    agent: str = Field(description="Agent id")
    duration_ms: int = Field(description="Duration reported by the CLI")
    summary: str = Field(description="Extracted completion summary")


class SpeakingStartEvent(_EventBase):
    """An agent was promoted to the speaking slot."""

    type: Literal["speaking_start"] = "speaking_start"
    agent: str = Field(description="Agent id")
    text: str | None = Field(default=None, description="Text to vocalize")


class ErrorEvent(_EventBase):
    """An error encountered during the session."""

    type: Literal["error"] = "error"
    agent: str | None = Field(
        default=None,
        description="Agent that hit the error (null for spawn-level errors)",
    )
    error: str = Field(description="Error description")
    context: str | None = Field(
        default=None,
        description="Error context: spawn, stderr, exit, watchdog",
    )


class AgentDismissedEvent(_EventBase):
    type: Literal["agent_dismissed"] = "agent_dismissed"
    agent: str = Field(description="Agent id")


def _event_discriminator(v: Any) -> str:
    """Extract the discriminator value from raw data or a model instance."""
    if isinstance(v, dict):
        return str(v.get("type", ""))
    return str(getattr(v, "type", ""))


SessionEvent = Annotated[
    Annotated[SessionStartEvent, Tag("session_start")]
    | Annotated[SessionEndEvent, Tag("session_end")]
    | Annotated[AgentSpawnedEvent, Tag("agent_spawned")]
    | Annotated[CaptionEvent, Tag("caption")]
    | Annotated[StatusChangeEvent, Tag("status_change")]
    | Annotated[ToolActivityEvent, Tag("tool_activity")]
    | Annotated[AgentCompleteEvent, Tag("agent_complete")]
    | Annotated[SpeakingStartEvent, Tag("speaking_start")]
    | Annotated[ErrorEvent, Tag("error")]
    | Annotated[AgentDismissedEvent, Tag("agent_dismissed")],
    Discriminator(_event_discriminator),
]
"""Discriminated union of all session event types."""
