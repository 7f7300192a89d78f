"""Process lifecycle — spawn, signal and observe one agent CLI subprocess."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
from collections.abc import Callable, Mapping, Sequence
from typing import Protocol

from codecall.constants import API_KEY_ENV

logger = logging.getLogger(__name__)

#: Bytes requested per read from the subprocess pipes.
_READ_CHUNK = 65_536

#: Seconds to wait after SIGTERM before SIGKILL.
_SIGTERM_WAIT = 3.0

#: Flags that put the CLI in non-interactive, streaming, auto-approve mode.
PROTOCOL_FLAGS: tuple[str, ...] = (
    "-p",
    "--force",
    "--output-format",
    "stream-json",
    "--stream-partial-output",
)


def build_context_prompt(accumulated_output: str, new_prompt: str) -> str:
    """Fold previous output into a fresh prompt.

    The CLI has no native multi-turn mode, so every follow-up is a new
    process that receives the earlier conversation as a preamble.
    """
    return f"Previous context:\n{accumulated_output}\n\nNew instruction: {new_prompt}"


class ProcessListener(Protocol):
    """Receives I/O and lifecycle events for the handles it is bound to."""

    def on_spawn(self, handle: ProcessHandle) -> None: ...

    def on_stdout(self, handle: ProcessHandle, chunk: bytes) -> None: ...

    def on_stderr(self, handle: ProcessHandle, chunk: bytes) -> None: ...

    def on_spawn_error(self, handle: ProcessHandle, exc: OSError) -> None: ...

    def on_exit(self, handle: ProcessHandle, returncode: int | None) -> None: ...


class ProcessHandle:
    """One launched (or launching) CLI subprocess.

    The subprocess is created asynchronously, so ``process`` stays ``None``
    until the spawn task gets to run.
    """

    def __init__(self, argv: Sequence[str], prompt: str) -> None:
        self.argv = list(argv)
        self.prompt = prompt
        self.process: asyncio.subprocess.Process | None = None
        self.task: asyncio.Task[None] | None = None
        self.stop_requested = False
        self.interrupted = False

    @property
    def pid(self) -> int | None:
        return self.process.pid if self.process is not None else None

    @property
    def returncode(self) -> int | None:
        return self.process.returncode if self.process is not None else None

    @property
    def running(self) -> bool:
        """True while the subprocess exists and has not exited."""
        return self.process is not None and self.process.returncode is None

    @property
    def finished(self) -> bool:
        """True once the spawn/pump task has completed in any way."""
        return self.task is not None and self.task.done()

    def send_signal(self, sig: int) -> bool:
        """Deliver *sig*; ``False`` if there is no live process to signal."""
        proc = self.process
        if proc is None or proc.returncode is not None:
            return False
        try:
            proc.send_signal(sig)
        except ProcessLookupError:
            return False
        return True

    def kill(self) -> bool:
        self.stop_requested = True
        return self.send_signal(signal.SIGKILL)

    async def wait(self) -> int | None:
        """Wait until the pump task finishes and return the exit code."""
        if self.task is not None:
            await asyncio.gather(self.task, return_exceptions=True)
        return self.returncode

    def __repr__(self) -> str:
        return f"<ProcessHandle pid={self.pid} returncode={self.returncode}>"


class ProcessController:
    """Launches agent CLI processes and translates control intents to signals.

    Configuration is plain data handed in at construction; nothing here
    reads settings on its own.
    """

    def __init__(
        self,
        executable: str,
        *,
        env: Mapping[str, str] | None = None,
        working_directory: str | None = None,
        api_key: str | None = None,
        extra_args: Sequence[str] = (),
    ) -> None:
        self.executable = executable
        self._env = dict(env or {})
        self._cwd = working_directory
        self._api_key = api_key
        self._extra_args = tuple(extra_args)

    # ------------------------------------------------------------------ #
    # Invocation
    # ------------------------------------------------------------------ #

    def build_argv(self, prompt: str) -> list[str]:
        """Executable, protocol flags, extra flags, then the prompt last."""
        return [self.executable, *PROTOCOL_FLAGS, *self._extra_args, prompt]

    def build_env(self) -> dict[str, str]:
        env = dict(os.environ)
        env.update(self._env)
        if self._api_key:
            env[API_KEY_ENV] = self._api_key
        return env

    def spawn(self, prompt: str, listener: ProcessListener) -> ProcessHandle:
        """Start a process for *prompt* without waiting for it.

        Must be called from inside a running event loop.  Spawn failures
        are delivered to ``listener.on_spawn_error``, never raised here.
        """
        handle = ProcessHandle(self.build_argv(prompt), prompt)
        handle.task = asyncio.create_task(self._run(handle, listener))
        return handle

    def restart_with_context(
        self,
        old_handle: ProcessHandle,
        accumulated_output: str,
        new_prompt: str,
        listener: ProcessListener,
    ) -> ProcessHandle:
        """Terminate *old_handle* and spawn a new process carrying context."""
        self.terminate(old_handle)
        prompt = build_context_prompt(accumulated_output, new_prompt)
        return self.spawn(prompt, listener)

    # ------------------------------------------------------------------ #
    # Signals
    # ------------------------------------------------------------------ #

    def terminate(self, handle: ProcessHandle) -> bool:
        """Send SIGTERM.  Returns whether a stop was actually issued.

        A process that is still being created is flagged and terminated
        as soon as it exists.
        """
        if handle.stop_requested:
            return False
        if handle.process is None:
            if handle.task is None or handle.task.done():
                return False
            handle.stop_requested = True
            return True
        sent = handle.send_signal(signal.SIGTERM)
        if sent:
            handle.stop_requested = True
        return sent

    def interrupt(self, handle: ProcessHandle) -> bool:
        """Send SIGINT, the soft stop.  ``False`` when nothing is running."""
        if handle.stop_requested:
            return False
        sent = handle.send_signal(signal.SIGINT)
        if sent:
            handle.interrupted = True
        return sent

    async def stop(self, handle: ProcessHandle, timeout: float = _SIGTERM_WAIT) -> None:
        """Terminate and wait; escalate to SIGKILL after *timeout* seconds."""
        self.terminate(handle)
        if handle.task is None:
            return
        done, _ = await asyncio.wait({handle.task}, timeout=timeout)
        if not done:
            logger.warning("pid %s ignored SIGTERM, sending SIGKILL", handle.pid)
            handle.kill()
            await handle.wait()

    # ------------------------------------------------------------------ #
    # Internal
    # ------------------------------------------------------------------ #

    async def _run(self, handle: ProcessHandle, listener: ProcessListener) -> None:
        """Create the subprocess, pump both pipes, then report the exit."""
        try:
            proc = await asyncio.create_subprocess_exec(
                *handle.argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self.build_env(),
                cwd=self._cwd,
                start_new_session=True,
            )
        except OSError as exc:
            logger.error("failed to spawn %s: %s", handle.argv[0], exc)
            listener.on_spawn_error(handle, exc)
            return

        handle.process = proc
        if handle.stop_requested:
            with contextlib.suppress(ProcessLookupError):
                proc.terminate()
        logger.debug("spawned pid %d: %s", proc.pid, handle.argv[0])
        listener.on_spawn(handle)

        try:
            await asyncio.gather(
                _pump(proc.stdout, lambda chunk: listener.on_stdout(handle, chunk)),
                _pump(proc.stderr, lambda chunk: listener.on_stderr(handle, chunk)),
            )
            returncode = await proc.wait()
        except asyncio.CancelledError:
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            raise

        logger.debug("pid %d exited with code %s", proc.pid, returncode)
        listener.on_exit(handle, returncode)


async def _pump(
    stream: asyncio.StreamReader | None,
    sink: Callable[[bytes], None],
) -> None:
    """Forward every chunk of *stream* to *sink* until EOF."""
    if stream is None:
        return
    while True:
        try:
            chunk = await stream.read(_READ_CHUNK)
        except (ConnectionResetError, OSError) as exc:
            logger.error("error reading subprocess pipe: %s", exc)
            return
        if not chunk:
            return
        sink(chunk)
