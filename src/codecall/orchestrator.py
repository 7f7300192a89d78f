"""AgentOrchestrator — registry of live agents and router for their events.

Every public operation is synchronous: it issues a spawn or a signal and
returns.  Process output arrives later on the event loop and is routed
back to the agent that owns the handle.  Output from a handle that no
longer belongs to a registered agent is dropped.
"""

from __future__ import annotations

import asyncio
import codecs
import dataclasses
import functools
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any

from codecall.agent.helpers import spawn_error_message
from codecall.agent.models import AgentInstance, generate_agent_id
from codecall.agent.process import ProcessController, ProcessHandle
from codecall.agent.resolver import ExecutableResolver
from codecall.agent.stream import (
    AssistantEvent,
    JSONLineParser,
    ResultEvent,
    SystemEvent,
    ToolCallEvent,
    parse_event,
)
from codecall.config.models import OrchestratorConfig
from codecall.constants import DEFAULT_WATCHDOG_TIMEOUT, AgentStatus
from codecall.session.models import (
    AgentCompleteEvent,
    AgentDismissedEvent,
    AgentSpawnedEvent,
    CaptionEvent,
    ErrorEvent,
    SessionEvent,
    SpeakingStartEvent,
    StatusChangeEvent,
    ToolActivityEvent,
)
from codecall.session.recorder import SessionRecorder
from codecall.speaking import SpeakingQueue
from codecall.summary import extract_summary, with_summary_instruction

logger = logging.getLogger(__name__)


@dataclass
class AgentCallbacks:
    """Hooks for the UI and voice layers.  Every hook is optional."""

    on_caption: Callable[[str, str], None] | None = None
    on_status_change: Callable[[str, AgentStatus], None] | None = None
    on_complete: Callable[[str, int], None] | None = None
    on_start_speaking: Callable[[str], None] | None = None
    on_speak: Callable[[str, str | None], None] | None = None
    on_error: Callable[[str | None, str], None] | None = None
    on_model_info: Callable[[str, str], None] | None = None
    on_tool_activity: Callable[[str, str, str | None], None] | None = None
    on_raw_output: Callable[[str, str], None] | None = None


class _AgentListener:
    """Routes process events for one agent id back to the orchestrator.

    The same listener serves every process the agent runs; each handle
    gets its own line parser so a respawn starts from a clean buffer.
    """

    def __init__(self, orchestrator: AgentOrchestrator, agent_id: str) -> None:
        self._orchestrator = orchestrator
        self.agent_id = agent_id
        self._parsers: dict[ProcessHandle, JSONLineParser] = {}
        self._stderr_decoders: dict[ProcessHandle, codecs.IncrementalDecoder] = {}
        self._seen_output: set[ProcessHandle] = set()

    def has_output(self, handle: ProcessHandle) -> bool:
        return handle in self._seen_output

    def on_spawn(self, handle: ProcessHandle) -> None:
        logger.debug("%s running as pid %s", self.agent_id, handle.pid)

    def on_stdout(self, handle: ProcessHandle, chunk: bytes) -> None:
        self._seen_output.add(handle)
        parser = self._parsers.get(handle)
        if parser is None:
            parser = JSONLineParser(
                on_line=functools.partial(
                    self._orchestrator._handle_raw_line, self.agent_id, handle
                )
            )
            self._parsers[handle] = parser
        for record in parser.feed(chunk):
            self._orchestrator._dispatch(self.agent_id, handle, record)

    def on_stderr(self, handle: ProcessHandle, chunk: bytes) -> None:
        decoder = self._stderr_decoders.get(handle)
        if decoder is None:
            decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
            self._stderr_decoders[handle] = decoder
        text = decoder.decode(chunk)
        if text:
            self._orchestrator._handle_stderr(self.agent_id, handle, text)

    def on_spawn_error(self, handle: ProcessHandle, exc: OSError) -> None:
        self._parsers.pop(handle, None)
        self._stderr_decoders.pop(handle, None)
        self._orchestrator._handle_spawn_error(self.agent_id, handle, exc)

    def on_exit(self, handle: ProcessHandle, returncode: int | None) -> None:
        parser = self._parsers.pop(handle, None)
        if parser is not None:
            leftover = parser.close()
            if leftover is not None:
                self._orchestrator._handle_raw_line(self.agent_id, handle, leftover)
        decoder = self._stderr_decoders.pop(handle, None)
        if decoder is not None:
            tail = decoder.decode(b"", final=True)
            if tail:
                self._orchestrator._handle_stderr(self.agent_id, handle, tail)
        output_seen = handle in self._seen_output
        self._seen_output.discard(handle)
        self._orchestrator._handle_exit(self.agent_id, handle, returncode, output_seen)


class AgentOrchestrator:
    """Owns the agent registry, the speaking queue and executable discovery.

    Must be driven from a running asyncio event loop: spawning schedules
    a task and the watchdog uses ``loop.call_later``.
    """

    def __init__(
        self,
        *,
        resolver: ExecutableResolver | None = None,
        api_key: str | None = None,
        working_directory: str | None = None,
        env: dict[str, str] | None = None,
        extra_args: Sequence[str] = (),
        watchdog_timeout: float = DEFAULT_WATCHDOG_TIMEOUT,
        summary_instruction: bool = True,
        recorder: SessionRecorder | None = None,
        callbacks: AgentCallbacks | None = None,
    ) -> None:
        self._resolver = resolver or ExecutableResolver()
        self._api_key = api_key
        self._working_directory = working_directory
        self._env = dict(env or {})
        self._extra_args = tuple(extra_args)
        self._watchdog_timeout = watchdog_timeout
        self._summary_instruction = summary_instruction
        self._recorder = recorder
        self._callbacks = callbacks or AgentCallbacks()

        self._controller: ProcessController | None = None
        self._agents: dict[str, AgentInstance] = {}
        self._listeners: dict[str, _AgentListener] = {}
        self._watchdogs: dict[str, asyncio.TimerHandle] = {}
        self._speaking = SpeakingQueue(on_start_speaking=self._handle_start_speaking)

    @classmethod
    def from_config(
        cls,
        config: OrchestratorConfig,
        *,
        recorder: SessionRecorder | None = None,
        callbacks: AgentCallbacks | None = None,
    ) -> AgentOrchestrator:
        return cls(
            resolver=ExecutableResolver(override=config.agent_path),
            api_key=config.api_key,
            working_directory=config.working_directory,
            env=config.env,
            extra_args=config.extra_args,
            watchdog_timeout=config.watchdog_timeout,
            summary_instruction=config.summary_instruction,
            recorder=recorder,
            callbacks=callbacks,
        )

    @property
    def resolver(self) -> ExecutableResolver:
        return self._resolver

    @property
    def speaking_queue(self) -> SpeakingQueue:
        return self._speaking

    def set_callbacks(self, **callbacks: Callable[..., None] | None) -> None:
        """Merge *callbacks* into the current set; unknown names raise ``TypeError``."""
        self._callbacks = dataclasses.replace(self._callbacks, **callbacks)

    # ------------------------------------------------------------------ #
    # Lifecycle operations
    # ------------------------------------------------------------------ #

    def spawn_agent(self, prompt: str) -> str | None:
        """Launch a new agent for *prompt* and return its id immediately.

        Returns ``None`` (after reporting through ``on_error``) when the
        agent CLI cannot be found.
        """
        executable = self._resolver.resolve()
        if executable is None:
            msg = (
                "Agent CLI not found. Install cursor-agent or set agent_path "
                f"(searched: {self._resolver.describe_search()})"
            )
            self._report_error(None, msg, context="spawn")
            return None

        controller = self._controller_for(executable)
        agent_id = generate_agent_id()
        listener = _AgentListener(self, agent_id)
        full_prompt = (
            with_summary_instruction(prompt) if self._summary_instruction else prompt
        )
        handle = controller.spawn(full_prompt, listener)

        agent = AgentInstance(id=agent_id, handle=handle, prompt=prompt)
        self._agents[agent_id] = agent
        self._listeners[agent_id] = listener
        self._record(AgentSpawnedEvent(ts="", seq=0, agent=agent_id, prompt=prompt))
        self._arm_watchdog(agent)
        logger.info("spawned %s", agent_id)
        return agent_id

    def dismiss_agent(self, agent_id: str) -> bool:
        """Stop and forget *agent_id*.  ``False`` if it is unknown."""
        agent = self._agents.pop(agent_id, None)
        if agent is None:
            return False
        self._listeners.pop(agent_id, None)
        self._disarm_watchdog(agent_id)
        if self._controller is not None:
            self._controller.terminate(agent.handle)

        was_speaking = self._speaking.currently_speaking == agent_id
        self._speaking.remove(agent_id)
        self._record(AgentDismissedEvent(ts="", seq=0, agent=agent_id))
        logger.info("dismissed %s", agent_id)
        if was_speaking:
            self._speaking.finish_speaking()
        return True

    def dismiss_all(self) -> int:
        """Dismiss every agent; returns how many there were."""
        ids = list(self._agents)
        for agent_id in ids:
            self.dismiss_agent(agent_id)
        return len(ids)

    def interrupt_agent(self, agent_id: str) -> bool:
        """Soft-stop a ``working`` agent and put it in ``listening``."""
        agent = self._agents.get(agent_id)
        if agent is None or agent.status != "working" or self._controller is None:
            return False
        if not self._controller.interrupt(agent.handle):
            return False
        self._disarm_watchdog(agent_id)
        self._set_status(agent, "listening", force=True)
        return True

    def send_follow_up(self, agent_id: str, prompt: str) -> bool:
        """Respawn *agent_id* with its previous output as context.

        The old process is terminated; its late output is ignored because
        the agent now owns a new handle.
        """
        agent = self._agents.get(agent_id)
        listener = self._listeners.get(agent_id)
        if agent is None or listener is None or self._controller is None:
            return False

        full_prompt = (
            with_summary_instruction(prompt) if self._summary_instruction else prompt
        )
        # A summary still waiting to be spoken belongs to the previous turn.
        if agent_id in self._speaking:
            self._speaking.remove(agent_id)
        agent.handle = self._controller.restart_with_context(
            agent.handle, agent.output, full_prompt, listener
        )
        agent.prompt = prompt
        agent.follow_ups += 1
        agent.turn_offset = len(agent.output)
        self._record(
            AgentSpawnedEvent(
                ts="", seq=0, agent=agent_id, prompt=prompt, follow_up=True
            )
        )
        self._set_status(agent, "working", force=True)
        self._arm_watchdog(agent)
        return True

    def set_muted(self, agent_id: str, muted: bool) -> bool:
        """Mute or unmute an agent.  Muted agents are never queued to speak."""
        agent = self._agents.get(agent_id)
        if agent is None:
            return False
        agent.muted = muted
        if muted and agent_id in self._speaking:
            self._speaking.remove(agent_id)
        return True

    def dispose(self) -> None:
        """Terminate every process and clear all state.  Idempotent."""
        for timer in self._watchdogs.values():
            timer.cancel()
        self._watchdogs.clear()
        if self._controller is not None:
            for agent in self._agents.values():
                self._controller.terminate(agent.handle)
        self._agents.clear()
        self._listeners.clear()
        self._speaking.clear()

    async def shutdown(self, timeout: float = 3.0) -> None:
        """Stop every process (SIGTERM, then SIGKILL after *timeout*), then dispose."""
        handles = [agent.handle for agent in self._agents.values()]
        controller = self._controller
        self.dispose()
        if controller is None or not handles:
            return
        await asyncio.gather(*(controller.stop(h, timeout=timeout) for h in handles))

    # ------------------------------------------------------------------ #
    # Speaking
    # ------------------------------------------------------------------ #

    def queue_to_speak(self, agent_id: str, text: str | None = None) -> bool:
        """Queue a registered, unmuted agent; ``text`` defaults to its summary."""
        agent = self._agents.get(agent_id)
        if agent is None or agent.muted:
            return False
        if text is None:
            text = extract_summary(agent.turn_output)
        return self._speaking.queue_to_speak(agent_id, text)

    def allow_to_speak(self, agent_id: str) -> bool:
        """Move an agent to the head of the queue.

        An agent that was not queued is added with its latest summary.
        Unknown and muted agents are refused.
        """
        agent = self._agents.get(agent_id)
        if agent is None or agent.muted:
            return False
        self._speaking.allow_to_speak(agent_id, extract_summary(agent.turn_output))
        return True

    def finish_speaking(self) -> str | None:
        return self._speaking.finish_speaking()

    # ------------------------------------------------------------------ #
    # Queries
    # ------------------------------------------------------------------ #

    def get_agents(self) -> list[AgentInstance]:
        return list(self._agents.values())

    def get_agent(self, agent_id: str) -> AgentInstance | None:
        return self._agents.get(agent_id)

    def get_agent_count(self) -> int:
        return len(self._agents)

    def get_modified_files(self, agent_id: str) -> list[str]:
        agent = self._agents.get(agent_id)
        return list(agent.modified_files) if agent is not None else []

    def get_read_files(self, agent_id: str) -> list[str]:
        agent = self._agents.get(agent_id)
        return list(agent.read_files) if agent is not None else []

    def get_currently_speaking(self) -> str | None:
        return self._speaking.currently_speaking

    def get_speaking_queue(self) -> list[str]:
        return self._speaking.queued_ids()

    def snapshot(self) -> list[dict[str, Any]]:
        """Plain-data view of every agent, suitable for a UI state push."""
        speaking = self._speaking.currently_speaking
        queued = set(self._speaking.queued_ids())
        return [
            {
                "id": agent.id,
                "short_id": agent.short_id,
                "status": agent.status,
                "prompt": agent.prompt,
                "model": agent.model,
                "pid": agent.handle.pid,
                "modified_files": list(agent.modified_files),
                "read_files": list(agent.read_files),
                "duration_ms": agent.duration_ms,
                "follow_ups": agent.follow_ups,
                "muted": agent.muted,
                "is_currently_speaking": agent.id == speaking,
                "is_in_queue": agent.id in queued,
            }
            for agent in self._agents.values()
        ]

    # ------------------------------------------------------------------ #
    # Event routing (called by _AgentListener)
    # ------------------------------------------------------------------ #

    def _current(self, agent_id: str, handle: ProcessHandle) -> AgentInstance | None:
        """The agent if it is still registered and still owns *handle*."""
        agent = self._agents.get(agent_id)
        if agent is None or agent.handle is not handle:
            return None
        return agent

    def _handle_raw_line(self, agent_id: str, handle: ProcessHandle, line: str) -> None:
        if self._current(agent_id, handle) is not None:
            self._emit("on_raw_output", agent_id, line)

    def _dispatch(
        self, agent_id: str, handle: ProcessHandle, record: dict[str, Any]
    ) -> None:
        agent = self._current(agent_id, handle)
        if agent is None:
            return
        event = parse_event(record)
        match event:
            case SystemEvent():
                self._on_system(agent, event)
            case AssistantEvent():
                self._on_assistant(agent, event)
            case ToolCallEvent():
                self._on_tool_call(agent, event)
            case ResultEvent():
                self._on_result(agent, event)

    def _on_system(self, agent: AgentInstance, event: SystemEvent) -> None:
        if event.subtype != "init" or not event.model:
            return
        agent.model = event.model
        self._emit("on_model_info", agent.id, event.model)

    def _on_assistant(self, agent: AgentInstance, event: AssistantEvent) -> None:
        text = event.text
        if not text:
            return
        agent.output += text
        self._record(CaptionEvent(ts="", seq=0, agent=agent.id, text=text))
        self._emit("on_caption", agent.id, text)

    def _on_tool_call(self, agent: AgentInstance, event: ToolCallEvent) -> None:
        if event.subtype != "started":
            return
        self._set_status(agent, "working")

        target = event.file_target()
        if target is None:
            tool, path = event.tool_name, None
        else:
            tool, path = target
            if tool == "write":
                agent.add_modified_file(path)
            else:
                agent.add_read_file(path)
        self._record(
            ToolActivityEvent(ts="", seq=0, agent=agent.id, tool=tool, path=path)
        )
        self._emit("on_tool_activity", agent.id, tool, path)

    def _on_result(self, agent: AgentInstance, event: ResultEvent) -> None:
        self._disarm_watchdog(agent.id)
        duration_ms = int(event.duration_ms or 0)
        agent.duration_ms = duration_ms
        summary = extract_summary(agent.turn_output)

        self._set_status(agent, "reporting", force=True)
        self._record(
            AgentCompleteEvent(
                ts="", seq=0, agent=agent.id, duration_ms=duration_ms, summary=summary
            )
        )
        self._emit("on_complete", agent.id, duration_ms)

        # A callback may have dismissed or muted the agent.
        if self._agents.get(agent.id) is agent and not agent.muted:
            self._speaking.queue_to_speak(agent.id, summary)

    def _handle_stderr(self, agent_id: str, handle: ProcessHandle, text: str) -> None:
        if self._current(agent_id, handle) is None:
            return
        self._report_error(agent_id, text, context="stderr")

    def _handle_spawn_error(
        self, agent_id: str, handle: ProcessHandle, exc: OSError
    ) -> None:
        agent = self._current(agent_id, handle)
        if agent is None:
            return
        self._disarm_watchdog(agent_id)
        msg = spawn_error_message(exc, handle.argv[0])

        if agent.follow_ups == 0:
            # Nothing ever ran; the half-created agent is not kept.
            self._agents.pop(agent_id, None)
            self._listeners.pop(agent_id, None)
            self._speaking.remove(agent_id)
            self._report_error(None, msg, context="spawn")
            return

        self._report_error(agent_id, msg, context="spawn")
        if self._current(agent_id, handle) is agent:
            self._set_status(agent, "listening", force=True)

    def _handle_exit(
        self,
        agent_id: str,
        handle: ProcessHandle,
        returncode: int | None,
        output_seen: bool,
    ) -> None:
        agent = self._current(agent_id, handle)
        if agent is None:
            return
        self._disarm_watchdog(agent_id)
        logger.info("%s exited with code %s", agent_id, returncode)

        stopped = handle.stop_requested or handle.interrupted
        if not stopped and not output_seen:
            msg = (
                f"Agent exited (code {returncode}) without producing any output. "
                "The agent CLI is likely misconfigured: check that it is "
                "installed, executable and logged in (or that CURSOR_API_KEY is set)."
            )
            self._report_error(agent_id, msg, context="exit")
        elif not stopped and returncode not in (0, None):
            self._report_error(
                agent_id, f"Agent exited with code {returncode}", context="exit"
            )

        # The process is gone; an agent that never reported is no longer working.
        if self._current(agent_id, handle) is agent and agent.status == "working":
            self._set_status(agent, "idle")

    # ------------------------------------------------------------------ #
    # Watchdog
    # ------------------------------------------------------------------ #

    def _arm_watchdog(self, agent: AgentInstance) -> None:
        self._disarm_watchdog(agent.id)
        loop = asyncio.get_running_loop()
        self._watchdogs[agent.id] = loop.call_later(
            self._watchdog_timeout, self._watchdog_fired, agent.id, agent.handle
        )

    def _disarm_watchdog(self, agent_id: str) -> None:
        timer = self._watchdogs.pop(agent_id, None)
        if timer is not None:
            timer.cancel()

    def _watchdog_fired(self, agent_id: str, handle: ProcessHandle) -> None:
        self._watchdogs.pop(agent_id, None)
        agent = self._current(agent_id, handle)
        listener = self._listeners.get(agent_id)
        if agent is None or listener is None:
            return
        if agent.status != "working" or handle.finished or listener.has_output(handle):
            return

        timeout = self._watchdog_timeout
        if handle.process is None:
            msg = (
                f"Agent CLI did not start within {timeout:g}s. "
                f"{handle.argv[0]} is likely missing a dependency or not runnable."
            )
        else:
            msg = (
                f"No output from agent after {timeout:g}s. The agent CLI may be "
                "stalled, or missing a dependency such as its login or "
                "CURSOR_API_KEY."
            )
        self._report_error(agent_id, msg, context="watchdog")

    # ------------------------------------------------------------------ #
    # Internal
    # ------------------------------------------------------------------ #

    def _controller_for(self, executable: str) -> ProcessController:
        if self._controller is None or self._controller.executable != executable:
            self._controller = ProcessController(
                executable,
                env=self._env,
                working_directory=self._working_directory,
                api_key=self._api_key,
                extra_args=self._extra_args,
            )
        return self._controller

    def _set_status(
        self, agent: AgentInstance, status: AgentStatus, *, force: bool = False
    ) -> None:
        if agent.status == status and not force:
            return
        agent.status = status
        self._record(StatusChangeEvent(ts="", seq=0, agent=agent.id, status=status))
        self._emit("on_status_change", agent.id, status)

    def _handle_start_speaking(self, agent_id: str, text: str | None) -> None:
        self._record(SpeakingStartEvent(ts="", seq=0, agent=agent_id, text=text))
        self._emit("on_start_speaking", agent_id)
        self._emit("on_speak", agent_id, text)

    def _report_error(self, agent_id: str | None, message: str, context: str) -> None:
        logger.error("%s: %s", agent_id or "orchestrator", message.rstrip())
        self._record(
            ErrorEvent(ts="", seq=0, agent=agent_id, error=message, context=context)
        )
        self._emit("on_error", agent_id, message)

    def _record(self, event: SessionEvent) -> None:
        if self._recorder is not None:
            self._recorder.record(event)

    def _emit(self, name: str, *args: Any) -> None:
        callback = getattr(self._callbacks, name)
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            logger.exception("%s callback raised", name)
