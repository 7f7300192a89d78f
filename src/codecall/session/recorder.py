"""Session recorder — append-only JSONL writer for session events."""

from __future__ import annotations

import re
import threading
import time
import uuid
from datetime import UTC, datetime
from pathlib import Path
from typing import IO, Literal

from codecall.session.models import (
    AgentSpawnedEvent,
    SessionEndEvent,
    SessionEvent,
    SessionStartEvent,
)

#: Valid label pattern: alphanumeric, hyphens and underscores.
_SAFE_NAME_RE = re.compile(r"^[a-zA-Z0-9_-]+$")

EndReason = Literal["complete", "user_shutdown", "ctrl_c", "error"]


class SessionRecorder:
    """Records session events to an append-only JSONL file.

    Thread-safe: all writes are serialized through a ``threading.Lock``.
    Crash-safe: the file is flushed after every event.
    """

    def __init__(
        self,
        label: str = "codecall",
        sessions_dir: Path | None = None,
        executable: str | None = None,
    ) -> None:
        if not _SAFE_NAME_RE.match(label):
            msg = (
                f"Invalid session label {label!r}: must contain only "
                "alphanumeric characters, hyphens, and underscores."
            )
            raise ValueError(msg)

        self._label = label
        self._lock = threading.Lock()
        self._seq = 0
        self._closed = False
        self._start_ns = time.monotonic_ns()
        self._agents_spawned = 0

        self._session_id = uuid.uuid4().hex[:12]

        if sessions_dir is None:
            sessions_dir = Path("sessions")
        sessions_dir.mkdir(parents=True, exist_ok=True)

        date_str = datetime.now(tz=UTC).strftime("%Y-%m-%d")
        base = f"{date_str}_{label}_{self._session_id}"
        self._session_file = sessions_dir / f"{base}.jsonl"

        self._fh: IO[str] | None = None
        try:
            self._fh = self._session_file.open("a", encoding="utf-8")
            self.record(
                SessionStartEvent(
                    ts="",  # overwritten by record()
                    seq=0,  # overwritten by record()
                    session_id=self._session_id,
                    label=label,
                    executable=executable,
                )
            )
        except Exception:
            self._close_handles()
            raise

    # ------------------------------------------------------------------
    # Public properties
    # ------------------------------------------------------------------

    @property
    def session_id(self) -> str:
        """Unique session identifier (12-char hex)."""
        return self._session_id

    @property
    def session_file(self) -> Path:
        return self._session_file

    @property
    def event_count(self) -> int:
        """Number of events recorded so far."""
        return self._seq

    @property
    def closed(self) -> bool:
        return self._closed

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def record(self, event: SessionEvent) -> None:
        """Write *event* to the JSONL file.

        Stamps ``ts`` and ``seq`` on every event, then flushes to disk.
        Silently drops events after the recorder has been closed.
        """
        with self._lock:
            if self._closed or self._fh is None:
                return
            event.seq = self._seq
            event.ts = _iso_now()
            self._seq += 1
            if isinstance(event, AgentSpawnedEvent) and not event.follow_up:
                self._agents_spawned += 1
            self._fh.write(event.model_dump_json() + "\n")
            self._fh.flush()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def end(self, reason: EndReason) -> None:
        """Write a ``session_end`` event and close the file.

        Idempotent — calling ``end()`` on an already-closed recorder is a
        no-op.
        """
        if self._closed:
            return

        duration_ms = int((time.monotonic_ns() - self._start_ns) / 1_000_000)
        self.record(
            SessionEndEvent(
                ts="",
                seq=0,
                reason=reason,
                duration_ms=duration_ms,
                agents_spawned=self._agents_spawned,
            )
        )
        self.close()

    def close(self) -> None:
        """Close the file **without** writing a ``session_end`` event."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._close_handles()

    def _close_handles(self) -> None:
        if self._fh is not None and not self._fh.closed:
            self._fh.close()


def _iso_now() -> str:
    """Return the current UTC time as ISO 8601 with milliseconds."""
    return datetime.now(tz=UTC).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"
