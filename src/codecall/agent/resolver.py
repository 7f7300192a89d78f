"""Locate the agent CLI binary across platform-specific install locations."""

from __future__ import annotations

import logging
import os
import shutil
import sys
from collections.abc import Sequence
from pathlib import Path

logger = logging.getLogger(__name__)

#: Executable names tried on ``PATH``, in order.
DEFAULT_NAMES: tuple[str, ...] = ("cursor-agent", "agent")


def default_candidates() -> list[Path]:
    """Install locations the CLI's installer uses on this platform."""
    home = Path.home()
    if sys.platform == "win32":
        local = Path(os.environ.get("LOCALAPPDATA", home / "AppData" / "Local"))
        return [
            local / "Programs" / "cursor-agent" / "cursor-agent.exe",
            local / "cursor-agent" / "cursor-agent.exe",
        ]
    candidates = [
        home / ".local" / "bin" / "cursor-agent",
        home / ".local" / "bin" / "agent",
        Path("/usr/local/bin/cursor-agent"),
    ]
    if sys.platform == "darwin":
        candidates.append(Path("/opt/homebrew/bin/cursor-agent"))
    return candidates


def _is_executable(path: Path) -> bool:
    return path.is_file() and os.access(path, os.X_OK)


class ExecutableResolver:
    """Resolve the agent binary once and cache the answer.

    The cache lives on the instance, so two orchestrators never share a
    stale result.  ``resolve()`` returns ``None`` when nothing is found;
    a missing CLI is a user-facing condition, not a bug.
    """

    def __init__(
        self,
        candidates: Sequence[Path | str] | None = None,
        names: Sequence[str] = DEFAULT_NAMES,
        override: str | None = None,
    ) -> None:
        self._candidates = (
            [Path(c) for c in candidates]
            if candidates is not None
            else default_candidates()
        )
        self._names = tuple(names)
        self._override = override
        self._cached: str | None = None

    @property
    def cached(self) -> str | None:
        return self._cached

    def set_override(self, path: str | None) -> None:
        """Pin the executable path, replacing whatever was cached."""
        self._override = path
        self._cached = None

    def clear_cache(self) -> None:
        self._cached = None

    def resolve(self) -> str | None:
        """Return the first usable executable path, or ``None``."""
        if self._cached is not None:
            return self._cached

        found = self._search()
        if found is not None:
            logger.debug("resolved agent executable: %s", found)
            self._cached = found
        return found

    def _search(self) -> str | None:
        if self._override:
            override = Path(self._override).expanduser()
            if _is_executable(override):
                return str(override)
            on_path = shutil.which(self._override)
            if on_path:
                return on_path
            logger.warning(
                "configured agent path %s is not an executable file", override
            )
            return None

        for name in self._names:
            on_path = shutil.which(name)
            if on_path:
                return on_path

        for candidate in self._candidates:
            path = candidate.expanduser()
            if _is_executable(path):
                return str(path)

        return None

    def describe_search(self) -> str:
        """Human-readable list of everything ``resolve`` looks at."""
        if self._override:
            return self._override
        places = [f"{name} on PATH" for name in self._names]
        places.extend(str(c) for c in self._candidates)
        return ", ".join(places)
