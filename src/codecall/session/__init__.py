"""Session recording — event models and JSONL recorder."""

from codecall.session.models import (
    AgentCompleteEvent,
    AgentDismissedEvent,
    AgentSpawnedEvent,
    CaptionEvent,
    ErrorEvent,
    SessionEndEvent,
    SessionEvent,
    SessionStartEvent,
    SpeakingStartEvent,
    StatusChangeEvent,
    ToolActivityEvent,
)
from codecall.session.recorder import EndReason, SessionRecorder

__all__ = [
    "AgentCompleteEvent",
    "AgentDismissedEvent",
    "AgentSpawnedEvent",
    "CaptionEvent",
    "EndReason",
    "ErrorEvent",
    "SessionEndEvent",
    "SessionEvent",
    "SessionRecorder",
    "SessionStartEvent",
    "SpeakingStartEvent",
    "StatusChangeEvent",
    "ToolActivityEvent",
]
