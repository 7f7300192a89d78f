"""codecall run — spawn agents for one or more prompts and stream their output."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from pathlib import Path

import click

from codecall.agent.helpers import format_stderr_preview
from codecall.config.models import OrchestratorConfig
from codecall.config.parser import ConfigError, load_config
from codecall.constants import AgentStatus
from codecall.orchestrator import AgentOrchestrator
from codecall.session.recorder import EndReason, SessionRecorder

logger = logging.getLogger(__name__)

#: Prefix colours assigned to agents in spawn order.
_COLORS = ("cyan", "magenta", "yellow", "blue", "green", "bright_red")


@click.command()
@click.argument("prompts", nargs=-1, required=True)
@click.option(
    "-f", "--file", "config_file", type=click.Path(), help="Config file path."
)
@click.option(
    "--no-speak",
    is_flag=True,
    help="Don't print each agent's summary when it takes the speaking slot.",
)
@click.option(
    "--record/--no-record",
    default=None,
    help="Record the session to JSONL (overrides the config file).",
)
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose output.")
def run(
    prompts: tuple[str, ...],
    config_file: str | None,
    no_speak: bool,
    record: bool | None,
    verbose: bool,
) -> None:
    """Spawn one agent per PROMPT and wait until they have all reported."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        config = load_config(Path(config_file) if config_file else None)
    except ConfigError as exc:
        click.echo(f"Error: {exc}", err=True)
        raise SystemExit(1) from exc

    should_record = config.record if record is None else record
    exit_code = asyncio.run(
        _run_session(config, list(prompts), not no_speak, should_record, verbose)
    )
    raise SystemExit(exit_code)


# ------------------------------------------------------------------ #
# Console output
# ------------------------------------------------------------------ #


class _Console:
    """Prints agent events with a coloured per-agent prefix.

    Captions arrive as deltas, so text is buffered per agent and printed
    one complete line at a time.
    """

    def __init__(self, orchestrator: AgentOrchestrator, verbose: bool) -> None:
        self._orchestrator = orchestrator
        self._verbose = verbose
        self._colors: dict[str, str] = {}
        self._pending: dict[str, str] = {}

    def prefix(self, agent_id: str | None) -> str:
        if agent_id is None:
            return click.style("[codecall]", fg="red", bold=True)
        color = self._colors.setdefault(
            agent_id, _COLORS[len(self._colors) % len(_COLORS)]
        )
        agent = self._orchestrator.get_agent(agent_id)
        name = agent.short_id if agent is not None else agent_id
        return click.style(f"[{name}]", fg=color, bold=True)

    def caption(self, agent_id: str, text: str) -> None:
        buffered = self._pending.get(agent_id, "") + text
        *lines, rest = buffered.split("\n")
        self._pending[agent_id] = rest
        for line in lines:
            click.echo(f"{self.prefix(agent_id)} {line}")

    def flush(self, agent_id: str) -> None:
        rest = self._pending.pop(agent_id, "")
        if rest.strip():
            click.echo(f"{self.prefix(agent_id)} {rest}")

    def tool(self, agent_id: str, tool: str, path: str | None) -> None:
        target = f" {path}" if path else ""
        click.echo(
            f"{self.prefix(agent_id)} " + click.style(f"{tool}{target}", dim=True)
        )

    def status(self, agent_id: str, status: AgentStatus) -> None:
        if self._verbose:
            click.echo(f"{self.prefix(agent_id)} " + click.style(status, dim=True))

    def model(self, agent_id: str, model: str) -> None:
        if self._verbose:
            label = click.style(f"model: {model}", dim=True)
            click.echo(f"{self.prefix(agent_id)} {label}")

    def error(self, agent_id: str | None, message: str) -> None:
        preview = format_stderr_preview(message)
        click.echo(
            f"{self.prefix(agent_id)} " + click.style(f"error: {preview}", fg="red"),
            err=True,
        )

    def complete(self, agent_id: str, duration_ms: int) -> None:
        self.flush(agent_id)
        click.echo(
            f"{self.prefix(agent_id)} "
            + click.style(f"done in {duration_ms / 1000:.1f}s", fg="green")
        )

    def speak(self, agent_id: str, text: str | None) -> None:
        click.echo(f"{self.prefix(agent_id)} " + click.style(f"» {text}", bold=True))


# ------------------------------------------------------------------ #
# Session runner
# ------------------------------------------------------------------ #


async def _run_session(
    config: OrchestratorConfig,
    prompts: list[str],
    speak: bool,
    record: bool,
    verbose: bool,
) -> int:
    """Run every prompt to completion; returns the process exit code."""
    loop = asyncio.get_running_loop()
    finished = asyncio.Event()
    completed: set[str] = set()

    recorder = (
        SessionRecorder(sessions_dir=Path(config.sessions_dir))
        if record
        else None
    )
    orchestrator = AgentOrchestrator.from_config(config, recorder=recorder)
    console = _Console(orchestrator, verbose)

    def _check_finished() -> None:
        agents = orchestrator.get_agents()
        if any(agent.status == "working" for agent in agents):
            return
        if orchestrator.get_currently_speaking() or orchestrator.get_speaking_queue():
            return
        finished.set()

    def _on_status_change(agent_id: str, status: AgentStatus) -> None:
        console.status(agent_id, status)
        if status != "working":
            console.flush(agent_id)
            loop.call_soon(_check_finished)

    def _on_complete(agent_id: str, duration_ms: int) -> None:
        completed.add(agent_id)
        console.complete(agent_id, duration_ms)

    def _on_error(agent_id: str | None, message: str) -> None:
        console.error(agent_id, message)
        loop.call_soon(_check_finished)

    def _on_speak(agent_id: str, text: str | None) -> None:
        if speak:
            console.speak(agent_id, text)
        # No audio here, so speaking ends as soon as the summary is shown.
        loop.call_soon(_finish_speaking)

    def _finish_speaking() -> None:
        orchestrator.finish_speaking()
        _check_finished()

    orchestrator.set_callbacks(
        on_caption=console.caption,
        on_status_change=_on_status_change,
        on_complete=_on_complete,
        on_error=_on_error,
        on_model_info=console.model,
        on_tool_activity=console.tool,
        on_speak=_on_speak,
    )

    def _async_exception_handler(
        loop: asyncio.AbstractEventLoop,
        context: dict[str, object],
    ) -> None:
        msg = context.get("message", "Unhandled async exception")
        exc = context.get("exception")
        click.echo(click.style(f"  ⚠ async error: {msg}", fg="red"), err=True)
        if exc:
            click.echo(f"    {type(exc).__name__}: {exc}", err=True)

    loop.set_exception_handler(_async_exception_handler)

    reason: EndReason = "complete"
    interrupted: list[str] = []

    def _signal_shutdown(sig_name: str) -> None:
        click.echo(f"\nReceived {sig_name}, stopping agents...", err=True)
        interrupted.append(sig_name)
        finished.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, _signal_shutdown, sig.name)

    spawned: list[str] = []
    for prompt in prompts:
        agent_id = orchestrator.spawn_agent(prompt)
        if agent_id is None:
            continue
        spawned.append(agent_id)
        click.echo(f"{console.prefix(agent_id)} {click.style(prompt, italic=True)}")

    try:
        if spawned:
            await finished.wait()
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError):
                loop.remove_signal_handler(sig)
        for agent in orchestrator.get_agents():
            console.flush(agent.id)
        await orchestrator.shutdown()
        if interrupted:
            reason = "ctrl_c" if interrupted[0] == "SIGINT" else "user_shutdown"
        elif len(spawned) < len(prompts) or not completed.issuperset(spawned):
            reason = "error"
        if recorder is not None:
            recorder.end(reason)
            click.echo(f"Session log: {recorder.session_file}")

    if interrupted:
        return 130
    if len(spawned) < len(prompts):
        return 1
    return 0 if completed.issuperset(spawned) else 1
