"""SpeakingQueue — one-at-a-time arbitration of the shared audio channel."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass
class SpeakingQueueEntry:
    """An agent waiting for its turn, with the text it will say."""

    agent_id: str
    text: str | None = None


class SpeakingQueue:
    """FIFO with promote-to-front and a single "currently speaking" slot.

    Each agent id is in exactly one state: not queued, queued, or
    speaking.  The queue never decides when speech ends; the audio layer
    calls :meth:`finish_speaking` when playback is over.
    """

    def __init__(
        self,
        on_start_speaking: Callable[[str, str | None], None] | None = None,
    ) -> None:
        self._entries: list[SpeakingQueueEntry] = []
        self._current: SpeakingQueueEntry | None = None
        self._on_start_speaking = on_start_speaking

    # ------------------------------------------------------------------ #
    # Queries
    # ------------------------------------------------------------------ #

    @property
    def currently_speaking(self) -> str | None:
        return self._current.agent_id if self._current is not None else None

    @property
    def current_entry(self) -> SpeakingQueueEntry | None:
        return self._current

    def queued_ids(self) -> list[str]:
        """Snapshot of waiting agent ids, head first."""
        return [entry.agent_id for entry in self._entries]

    def entries(self) -> list[SpeakingQueueEntry]:
        return list(self._entries)

    def __contains__(self, agent_id: object) -> bool:
        return any(entry.agent_id == agent_id for entry in self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    # ------------------------------------------------------------------ #
    # Transitions
    # ------------------------------------------------------------------ #

    def queue_to_speak(self, agent_id: str, text: str | None = None) -> bool:
        """Append *agent_id* to the tail unless it is queued or speaking.

        Returns ``True`` if a new entry was added.  Promotion is attempted
        either way.
        """
        added = False
        if agent_id != self.currently_speaking and agent_id not in self:
            self._entries.append(SpeakingQueueEntry(agent_id, text))
            added = True
        self._promote()
        return added

    def allow_to_speak(self, agent_id: str, text: str | None = None) -> None:
        """Move *agent_id* to the head of the queue, adding it if absent.

        *text* is only used for a new entry; a queued agent keeps its own.
        """
        if agent_id == self.currently_speaking:
            return
        existing = self._pop(agent_id)
        self._entries.insert(0, existing or SpeakingQueueEntry(agent_id, text))
        if self._current is None:
            self._promote()

    def finish_speaking(self) -> str | None:
        """Free the slot and promote the next agent.

        Safe to call when nobody is speaking.  Returns the id that was
        speaking, if any.
        """
        finished = self.currently_speaking
        self._current = None
        self._promote()
        return finished

    def remove(self, agent_id: str) -> bool:
        """Drop *agent_id* from the queue and the speaking slot.

        Does not promote; the next agent gets the slot on the next
        :meth:`finish_speaking` or :meth:`queue_to_speak`.
        """
        removed = self._pop(agent_id) is not None
        if self.currently_speaking == agent_id:
            self._current = None
            removed = True
        return removed

    def clear(self) -> None:
        self._entries.clear()
        self._current = None

    # ------------------------------------------------------------------ #
    # Internal
    # ------------------------------------------------------------------ #

    def _pop(self, agent_id: str) -> SpeakingQueueEntry | None:
        for index, entry in enumerate(self._entries):
            if entry.agent_id == agent_id:
                return self._entries.pop(index)
        return None

    def _promote(self) -> None:
        # The only place the speaking slot is ever filled.
        if self._current is not None or not self._entries:
            return
        self._current = self._entries.pop(0)
        logger.debug("%s starts speaking", self._current.agent_id)
        if self._on_start_speaking is not None:
            self._on_start_speaking(self._current.agent_id, self._current.text)
