"""Line-delimited JSON parsing and typed stream events for the agent CLI.

The agent CLI (``--output-format stream-json``) writes one JSON object per
line on stdout.  Chunks arrive at arbitrary boundaries, so the parser keeps
the trailing fragment between calls and only decodes complete lines.
"""

from __future__ import annotations

import codecs
import json
import logging
from collections.abc import Callable
from typing import Annotated, Any, Literal

from pydantic import (
    BaseModel,
    ConfigDict,
    Discriminator,
    Tag,
    TypeAdapter,
    ValidationError,
)

logger = logging.getLogger(__name__)

#: Maximum characters buffered for a single line before it is discarded (1 MB).
MAX_LINE_CHARS = 1_048_576


class JSONLineParser:
    """Incremental decoder from a byte stream to JSON objects.

    Malformed lines are skipped without raising: not everything the CLI
    prints is structured.  Every complete non-empty line, valid or not, is
    passed to *on_line* so callers can surface raw diagnostics.
    """

    def __init__(self, on_line: Callable[[str], None] | None = None) -> None:
        self._on_line = on_line
        self._buffer = ""
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    @property
    def pending(self) -> str:
        """The incomplete fragment waiting for its delimiter."""
        return self._buffer

    def feed(self, chunk: bytes | str) -> list[dict[str, Any]]:
        """Consume *chunk* and return the objects parsed from complete lines."""
        if not chunk:
            return []
        text = self._decoder.decode(chunk) if isinstance(chunk, bytes) else chunk
        self._buffer += text

        *lines, self._buffer = self._buffer.split("\n")
        if len(self._buffer) > MAX_LINE_CHARS:
            logger.warning(
                "stream line exceeds %d chars without a newline, discarding",
                MAX_LINE_CHARS,
            )
            self._buffer = ""

        records: list[dict[str, Any]] = []
        for line in lines:
            line = line.strip()
            if not line:
                continue
            if self._on_line is not None:
                self._on_line(line)
            record = _loads(line)
            if record is not None:
                records.append(record)
        return records

    def close(self) -> str | None:
        """Flush the leftover fragment as a raw line (never parsed).

        Returns ``None`` when nothing was left over.
        """
        self._buffer += self._decoder.decode(b"", final=True)
        leftover = self._buffer.strip()
        self._buffer = ""
        return leftover or None


def _loads(line: str) -> dict[str, Any] | None:
    try:
        data = json.loads(line)
    except json.JSONDecodeError:
        logger.debug("skipping non-JSON stream line: %s", line[:200])
        return None
    if not isinstance(data, dict):
        logger.debug("skipping non-object stream line: %s", line[:200])
        return None
    return data


# ------------------------------------------------------------------ #
# Event models
# ------------------------------------------------------------------ #


class _EventBase(BaseModel):
    """Fields common to every stream event; unknown fields are ignored."""

    model_config = ConfigDict(extra="ignore")

    subtype: str | None = None


class SystemEvent(_EventBase):
    """Session metadata, ``subtype="init"`` carries the model name."""

    type: Literal["system"] = "system"
    model: str | None = None


class ContentBlock(BaseModel):
    model_config = ConfigDict(extra="ignore")

    text: str | None = None


class AssistantMessage(BaseModel):
    model_config = ConfigDict(extra="ignore")

    content: list[ContentBlock] = []


class AssistantEvent(_EventBase):
    """An incremental text delta from the model."""

    type: Literal["assistant"] = "assistant"
    message: AssistantMessage | None = None

    @property
    def text(self) -> str:
        if self.message is None or not self.message.content:
            return ""
        return self.message.content[0].text or ""


class ToolCallEvent(_EventBase):
    """A tool invocation, ``subtype`` is ``started`` or ``completed``."""

    type: Literal["tool_call"] = "tool_call"
    tool_call: dict[str, Any] | None = None

    def file_target(self) -> tuple[Literal["write", "read"], str] | None:
        """Return ``(kind, path)`` for write/read calls, else ``None``."""
        payload = self.tool_call or {}
        for key, kind in (("writeToolCall", "write"), ("readToolCall", "read")):
            call = payload.get(key)
            if not isinstance(call, dict):
                continue
            args = call.get("args")
            if isinstance(args, dict) and isinstance(args.get("path"), str):
                return kind, args["path"]  # type: ignore[return-value]
        return None

    @property
    def tool_name(self) -> str:
        """The identifying key of the call, e.g. ``shellToolCall``."""
        if not self.tool_call:
            return "unknown"
        return next(iter(self.tool_call))


class ResultEvent(_EventBase):
    """Emitted once when the agent finishes its task."""

    type: Literal["result"] = "result"
    duration_ms: float | None = None
    result: str | None = None
    is_error: bool = False


def _event_discriminator(v: Any) -> str:
    if isinstance(v, dict):
        return str(v.get("type", ""))
    return str(getattr(v, "type", ""))


StreamEvent = Annotated[
    Annotated[SystemEvent, Tag("system")]
    | Annotated[AssistantEvent, Tag("assistant")]
    | Annotated[ToolCallEvent, Tag("tool_call")]
    | Annotated[ResultEvent, Tag("result")],
    Discriminator(_event_discriminator),
]
"""Discriminated union of the stream events the orchestrator consumes."""

_EVENT_ADAPTER: TypeAdapter[StreamEvent] = TypeAdapter(StreamEvent)


def parse_event(record: dict[str, Any]) -> StreamEvent | None:
    """Validate a decoded line; unknown types and bad payloads give ``None``."""
    try:
        return _EVENT_ADAPTER.validate_python(record)
    except ValidationError as exc:
        logger.debug("dropping unrecognised stream event: %s", exc.errors()[:1])
        return None
