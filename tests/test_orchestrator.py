"""Tests for AgentOrchestrator — registry, event routing and speaking."""

from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
import re
import sys
import textwrap
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock

import pytest

from codecall.agent.process import ProcessHandle, build_context_prompt
from codecall.agent.resolver import ExecutableResolver
from codecall.config.models import OrchestratorConfig
from codecall.orchestrator import AgentCallbacks, AgentOrchestrator
from codecall.session.recorder import SessionRecorder
from codecall.summary import SUMMARY_INSTRUCTION

# ------------------------------------------------------------------ #
# Helpers
# ------------------------------------------------------------------ #


class FakeController:
    """Stands in for ProcessController; handles never start a process."""

    def __init__(self, executable: str, **kwargs: Any) -> None:
        self.executable = executable
        self.kwargs = kwargs
        self.spawned: list[tuple[ProcessHandle, Any]] = []
        self.terminated: list[ProcessHandle] = []
        self.stopped: list[ProcessHandle] = []
        self.interrupt_result = True

    def spawn(self, prompt: str, listener: Any) -> ProcessHandle:
        handle = ProcessHandle([self.executable, prompt], prompt)
        self.spawned.append((handle, listener))
        return handle

    def restart_with_context(
        self, old: ProcessHandle, output: str, new_prompt: str, listener: Any
    ) -> ProcessHandle:
        self.terminate(old)
        return self.spawn(build_context_prompt(output, new_prompt), listener)

    def terminate(self, handle: ProcessHandle) -> bool:
        if handle.stop_requested:
            return False
        handle.stop_requested = True
        self.terminated.append(handle)
        return True

    def interrupt(self, handle: ProcessHandle) -> bool:
        if self.interrupt_result:
            handle.interrupted = True
        return self.interrupt_result

    async def stop(self, handle: ProcessHandle, timeout: float = 3.0) -> None:
        self.terminate(handle)
        self.stopped.append(handle)


Controllers = list[FakeController]


@pytest.fixture
def controllers(monkeypatch: pytest.MonkeyPatch) -> Controllers:
    created: Controllers = []

    def _factory(executable: str, **kwargs: Any) -> FakeController:
        controller = FakeController(executable, **kwargs)
        created.append(controller)
        return controller

    monkeypatch.setattr("codecall.orchestrator.ProcessController", _factory)
    return created


def _callbacks() -> AgentCallbacks:
    return AgentCallbacks(
        **{f.name: MagicMock(name=f.name) for f in dataclasses.fields(AgentCallbacks)}
    )


def _resolver(path: str | None = "/usr/local/bin/cursor-agent") -> MagicMock:
    resolver = MagicMock(spec=ExecutableResolver)
    resolver.resolve.return_value = path
    resolver.describe_search.return_value = "cursor-agent on PATH"
    return resolver


def _make(
    resolver: MagicMock | None = None, **kwargs: Any
) -> tuple[AgentOrchestrator, AgentCallbacks]:
    callbacks = _callbacks()
    orch = AgentOrchestrator(
        resolver=resolver or _resolver(), callbacks=callbacks, **kwargs
    )
    return orch, callbacks


def _line(obj: dict[str, Any]) -> bytes:
    return (json.dumps(obj) + "\n").encode()


def _assistant(text: str) -> bytes:
    return _line({"type": "assistant", "message": {"content": [{"text": text}]}})


def _tool(kind: str, path: str | None = None, subtype: str = "started") -> bytes:
    call: dict[str, Any] = {"args": {"path": path} if path else {}}
    return _line({"type": "tool_call", "subtype": subtype, "tool_call": {kind: call}})


def _result(duration_ms: int = 1500) -> bytes:
    return _line({"type": "result", "subtype": "success", "duration_ms": duration_ms})


def _current(controller: FakeController) -> tuple[ProcessHandle, Any]:
    return controller.spawned[-1]


def _feed(controller: FakeController, *chunks: bytes, index: int = -1) -> None:
    handle, listener = controller.spawned[index]
    for chunk in chunks:
        listener.on_stdout(handle, chunk)


# ------------------------------------------------------------------ #
# Spawning
# ------------------------------------------------------------------ #


class TestSpawnAgent:
    async def test_returns_id_and_registers(self, controllers: Controllers) -> None:
        orch, _ = _make()
        agent_id = orch.spawn_agent("fix the bug")

        assert agent_id is not None
        assert re.fullmatch(r"agent-\d+-[0-9a-z]{9}", agent_id)
        agent = orch.get_agent(agent_id)
        assert agent is not None
        assert agent.status == "working"
        assert agent.prompt == "fix the bug"
        assert agent.output == ""
        assert orch.get_agent_count() == 1

    async def test_ids_are_unique(self, controllers: Controllers) -> None:
        orch, _ = _make()
        ids = {orch.spawn_agent(f"task {i}") for i in range(20)}
        assert len(ids) == 20

    async def test_summary_instruction_appended(
        self, controllers: Controllers
    ) -> None:
        orch, _ = _make()
        orch.spawn_agent("fix the bug")
        handle, _ = _current(controllers[0])
        assert handle.prompt == "fix the bug" + SUMMARY_INSTRUCTION

    async def test_summary_instruction_disabled(
        self, controllers: Controllers
    ) -> None:
        orch, _ = _make(summary_instruction=False)
        orch.spawn_agent("fix the bug")
        handle, _ = _current(controllers[0])
        assert handle.prompt == "fix the bug"

    async def test_controller_receives_settings(
        self, controllers: Controllers
    ) -> None:
        orch, _ = _make(api_key="sk", env={"A": "1"}, extra_args=["--model", "m"])
        orch.spawn_agent("x")
        controller = controllers[0]
        assert controller.executable == "/usr/local/bin/cursor-agent"
        assert controller.kwargs["api_key"] == "sk"
        assert controller.kwargs["env"] == {"A": "1"}
        assert controller.kwargs["extra_args"] == ("--model", "m")

    async def test_missing_executable(self, controllers: Controllers) -> None:
        orch, cb = _make(resolver=_resolver(None))
        assert orch.spawn_agent("x") is None
        assert orch.get_agent_count() == 0
        assert controllers == []
        cb.on_error.assert_called_once()
        agent_id, message = cb.on_error.call_args.args
        assert agent_id is None
        assert "not found" in message


# ------------------------------------------------------------------ #
# Event routing
# ------------------------------------------------------------------ #


class TestStreamDispatch:
    async def test_system_init_reports_model(
        self, controllers: Controllers
    ) -> None:
        orch, cb = _make()
        agent_id = orch.spawn_agent("x")
        init = {"type": "system", "subtype": "init", "model": "gpt-5"}
        _feed(controllers[0], _line(init))

        cb.on_model_info.assert_called_once_with(agent_id, "gpt-5")
        assert orch.get_agent(agent_id).model == "gpt-5"

    async def test_assistant_deltas_accumulate(
        self, controllers: Controllers
    ) -> None:
        orch, cb = _make()
        agent_id = orch.spawn_agent("x")
        _feed(controllers[0], _assistant("Hel"), _assistant("lo "), _assistant("world"))

        assert orch.get_agent(agent_id).output == "Hello world"
        assert [c.args for c in cb.on_caption.call_args_list] == [
            (agent_id, "Hel"),
            (agent_id, "lo "),
            (agent_id, "world"),
        ]

    async def test_empty_delta_ignored(self, controllers: Controllers) -> None:
        orch, cb = _make()
        orch.spawn_agent("x")
        _feed(controllers[0], _assistant(""))
        cb.on_caption.assert_not_called()

    async def test_chunk_boundaries_do_not_matter(
        self, controllers: Controllers
    ) -> None:
        orch, cb = _make()
        agent_id = orch.spawn_agent("x")
        data = _assistant("one") + _assistant("two")
        _feed(controllers[0], *(data[i : i + 7] for i in range(0, len(data), 7)))

        assert orch.get_agent(agent_id).output == "onetwo"
        assert cb.on_caption.call_count == 2

    async def test_write_and_read_tracking(
        self, controllers: Controllers
    ) -> None:
        orch, cb = _make()
        agent_id = orch.spawn_agent("x")
        _feed(
            controllers[0],
            _tool("writeToolCall", "a.py"),
            _tool("writeToolCall", "a.py"),
            _tool("readToolCall", "b.py"),
            _tool("writeToolCall", "c.py"),
        )

        assert orch.get_modified_files(agent_id) == ["a.py", "c.py"]
        assert orch.get_read_files(agent_id) == ["b.py"]
        assert [c.args for c in cb.on_tool_activity.call_args_list] == [
            (agent_id, "write", "a.py"),
            (agent_id, "write", "a.py"),
            (agent_id, "read", "b.py"),
            (agent_id, "write", "c.py"),
        ]

    async def test_generic_tool_activity(self, controllers: Controllers) -> None:
        orch, cb = _make()
        agent_id = orch.spawn_agent("x")
        _feed(controllers[0], _tool("shellToolCall"))
        cb.on_tool_activity.assert_called_once_with(agent_id, "shellToolCall", None)
        assert orch.get_modified_files(agent_id) == []

    async def test_completed_tool_call_ignored(
        self, controllers: Controllers
    ) -> None:
        orch, cb = _make()
        agent_id = orch.spawn_agent("x")
        _feed(controllers[0], _tool("writeToolCall", "a.py", subtype="completed"))
        cb.on_tool_activity.assert_not_called()
        assert orch.get_modified_files(agent_id) == []

    async def test_tool_call_status_change_only_on_transition(
        self, controllers: Controllers
    ) -> None:
        orch, cb = _make()
        agent_id = orch.spawn_agent("x")
        _feed(controllers[0], _tool("shellToolCall"))
        cb.on_status_change.assert_not_called()

        orch.get_agent(agent_id).status = "listening"
        _feed(controllers[0], _tool("shellToolCall"), _tool("shellToolCall"))
        cb.on_status_change.assert_called_once_with(agent_id, "working")

    async def test_result_reports_and_queues_to_speak(
        self, controllers: Controllers
    ) -> None:
        orch, cb = _make()
        agent_id = orch.spawn_agent("x")
        _feed(
            controllers[0],
            _assistant("Looking around.\nSUMMARY: Fixed the login bug.\n"),
            _result(2500),
        )

        agent = orch.get_agent(agent_id)
        assert agent.status == "reporting"
        assert agent.duration_ms == 2500
        cb.on_status_change.assert_called_once_with(agent_id, "reporting")
        cb.on_complete.assert_called_once_with(agent_id, 2500)
        cb.on_start_speaking.assert_called_once_with(agent_id)
        cb.on_speak.assert_called_once_with(agent_id, "Fixed the login bug.")
        assert orch.get_currently_speaking() == agent_id

    async def test_result_without_duration(self, controllers: Controllers) -> None:
        orch, cb = _make()
        agent_id = orch.spawn_agent("x")
        _feed(controllers[0], _line({"type": "result"}))
        cb.on_complete.assert_called_once_with(agent_id, 0)

    async def test_unknown_and_malformed_lines_only_raw(
        self, controllers: Controllers
    ) -> None:
        orch, cb = _make()
        agent_id = orch.spawn_agent("x")
        _feed(
            controllers[0], b"garbage\n", _line({"type": "thinking"}), _assistant("ok")
        )

        raw = [c.args for c in cb.on_raw_output.call_args_list]
        assert raw[0] == (agent_id, "garbage")
        assert raw[1] == (agent_id, '{"type": "thinking"}')
        assert len(raw) == 3
        assert orch.get_agent(agent_id).output == "ok"

    async def test_stderr_reports_error_without_status_change(
        self, controllers: Controllers
    ) -> None:
        orch, cb = _make()
        agent_id = orch.spawn_agent("x")
        handle, listener = _current(controllers[0])
        listener.on_stderr(handle, b"rate limited\n")

        cb.on_error.assert_called_once_with(agent_id, "rate limited\n")
        assert orch.get_agent(agent_id).status == "working"
        cb.on_status_change.assert_not_called()

    async def test_stderr_multibyte_split_across_chunks(
        self, controllers: Controllers
    ) -> None:
        orch, cb = _make()
        agent_id = orch.spawn_agent("x")
        handle, listener = _current(controllers[0])
        data = "héllo ✓\n".encode()
        split = data.index("✓".encode()) + 1
        listener.on_stderr(handle, data[:split])
        listener.on_stderr(handle, data[split:])

        messages = [c.args for c in cb.on_error.call_args_list]
        assert all(a == agent_id for a, _ in messages)
        assert "".join(m for _, m in messages) == "héllo ✓\n"
        assert not any("\ufffd" in m for _, m in messages)

    async def test_stderr_truncated_tail_flushed_on_exit(
        self, controllers: Controllers
    ) -> None:
        orch, cb = _make()
        orch.spawn_agent("x")
        handle, listener = _current(controllers[0])
        listener.on_stderr(handle, b"bad \xe2\x9c")
        listener.on_exit(handle, 1)

        messages = [c.args[1] for c in cb.on_error.call_args_list]
        assert messages[0] == "bad "
        assert "\ufffd" in messages[1]

    async def test_agents_are_independent(self, controllers: Controllers) -> None:
        orch, _ = _make()
        first = orch.spawn_agent("a")
        second = orch.spawn_agent("b")
        controller = controllers[0]
        _feed(controller, _assistant("A1"), index=0)
        _feed(controller, _assistant("B1"), index=1)
        _feed(controller, _assistant("A2"), index=0)

        assert orch.get_agent(first).output == "A1A2"
        assert orch.get_agent(second).output == "B1"

    async def test_raising_callback_does_not_break_stream(
        self, controllers: Controllers, caplog: pytest.LogCaptureFixture
    ) -> None:
        orch, cb = _make()
        cb.on_caption.side_effect = RuntimeError("ui crashed")
        agent_id = orch.spawn_agent("x")

        with caplog.at_level(logging.ERROR, logger="codecall.orchestrator"):
            _feed(controllers[0], _assistant("one"), _assistant("two"), _result())

        assert orch.get_agent(agent_id).output == "onetwo"
        assert orch.get_agent(agent_id).status == "reporting"
        assert "on_caption callback raised" in caplog.text


# ------------------------------------------------------------------ #
# Process exit and spawn failures
# ------------------------------------------------------------------ #


class TestProcessExit:
    async def test_exit_without_output_is_misconfiguration(
        self, controllers: Controllers
    ) -> None:
        orch, cb = _make()
        agent_id = orch.spawn_agent("x")
        handle, listener = _current(controllers[0])
        listener.on_exit(handle, 1)

        cb.on_error.assert_called_once()
        assert cb.on_error.call_args.args[0] == agent_id
        assert "misconfigured" in cb.on_error.call_args.args[1]
        assert orch.get_agent(agent_id).status == "idle"

    async def test_clean_exit_after_result(self, controllers: Controllers) -> None:
        orch, cb = _make()
        agent_id = orch.spawn_agent("x")
        _feed(controllers[0], _assistant("done"), _result())
        handle, listener = _current(controllers[0])
        listener.on_exit(handle, 0)

        cb.on_error.assert_not_called()
        assert orch.get_agent(agent_id).status == "reporting"

    async def test_nonzero_exit_after_output(
        self, controllers: Controllers
    ) -> None:
        orch, cb = _make()
        agent_id = orch.spawn_agent("x")
        _feed(controllers[0], _assistant("partial"))
        handle, listener = _current(controllers[0])
        listener.on_exit(handle, 2)

        cb.on_error.assert_called_once_with(agent_id, "Agent exited with code 2")

    async def test_exit_after_interrupt_is_quiet(
        self, controllers: Controllers
    ) -> None:
        orch, cb = _make()
        agent_id = orch.spawn_agent("x")
        assert orch.interrupt_agent(agent_id)
        handle, listener = _current(controllers[0])
        listener.on_exit(handle, -2)

        cb.on_error.assert_not_called()
        assert orch.get_agent(agent_id).status == "listening"

    async def test_leftover_fragment_flushed_as_raw_output(
        self, controllers: Controllers
    ) -> None:
        orch, cb = _make()
        agent_id = orch.spawn_agent("x")
        _feed(controllers[0], _assistant("hi"), b"Error: trailing")
        handle, listener = _current(controllers[0])
        listener.on_exit(handle, 0)

        assert cb.on_raw_output.call_args_list[-1].args == (agent_id, "Error: trailing")

    async def test_initial_spawn_error_removes_agent(
        self, controllers: Controllers
    ) -> None:
        orch, cb = _make()
        agent_id = orch.spawn_agent("x")
        handle, listener = _current(controllers[0])
        listener.on_spawn_error(handle, FileNotFoundError(2, "No such file"))

        assert orch.get_agent(agent_id) is None
        cb.on_error.assert_called_once()
        assert cb.on_error.call_args.args[0] is None
        assert "not found" in cb.on_error.call_args.args[1]

    async def test_follow_up_spawn_error_keeps_agent(
        self, controllers: Controllers
    ) -> None:
        orch, cb = _make()
        agent_id = orch.spawn_agent("x")
        _feed(controllers[0], _assistant("first answer"), _result())
        assert orch.send_follow_up(agent_id, "more")
        handle, listener = _current(controllers[0])
        listener.on_spawn_error(handle, PermissionError(13, "denied"))

        agent = orch.get_agent(agent_id)
        assert agent is not None
        assert agent.status == "listening"
        assert cb.on_error.call_args.args[0] == agent_id
        assert "not executable" in cb.on_error.call_args.args[1]


# ------------------------------------------------------------------ #
# Control operations
# ------------------------------------------------------------------ #


class TestDismiss:
    async def test_unknown(self, controllers: Controllers) -> None:
        orch, _ = _make()
        assert orch.dismiss_agent("agent-0-nope") is False

    async def test_terminates_and_unregisters(
        self, controllers: Controllers
    ) -> None:
        orch, _ = _make()
        agent_id = orch.spawn_agent("x")
        handle, _ = _current(controllers[0])

        assert orch.dismiss_agent(agent_id) is True
        assert orch.get_agent(agent_id) is None
        assert controllers[0].terminated == [handle]
        assert orch.dismiss_agent(agent_id) is False

    async def test_late_events_dropped(self, controllers: Controllers) -> None:
        orch, cb = _make()
        agent_id = orch.spawn_agent("x")
        handle, listener = _current(controllers[0])
        orch.dismiss_agent(agent_id)

        listener.on_stdout(handle, _assistant("late") + _result())
        listener.on_stderr(handle, b"late error")
        listener.on_exit(handle, 1)

        cb.on_caption.assert_not_called()
        cb.on_complete.assert_not_called()
        cb.on_error.assert_not_called()
        cb.on_raw_output.assert_not_called()
        assert orch.get_speaking_queue() == []

    async def test_removed_from_queue(self, controllers: Controllers) -> None:
        orch, _ = _make()
        first = orch.spawn_agent("a")
        second = orch.spawn_agent("b")
        _feed(controllers[0], _result(), index=0)
        _feed(controllers[0], _result(), index=1)
        assert orch.get_speaking_queue() == [second]

        orch.dismiss_agent(second)
        assert orch.get_speaking_queue() == []
        assert orch.get_currently_speaking() == first

    async def test_dismissing_speaker_promotes_next(
        self, controllers: Controllers
    ) -> None:
        orch, cb = _make()
        first = orch.spawn_agent("a")
        second = orch.spawn_agent("b")
        _feed(controllers[0], _result(), index=0)
        _feed(controllers[0], _result(), index=1)

        orch.dismiss_agent(first)
        assert orch.get_currently_speaking() == second
        assert cb.on_start_speaking.call_args.args == (second,)

    async def test_dismiss_all(self, controllers: Controllers) -> None:
        orch, _ = _make()
        orch.spawn_agent("a")
        orch.spawn_agent("b")
        assert orch.dismiss_all() == 2
        assert orch.get_agent_count() == 0
        assert orch.dismiss_all() == 0


class TestInterrupt:
    async def test_working_agent(self, controllers: Controllers) -> None:
        orch, cb = _make()
        agent_id = orch.spawn_agent("x")
        assert orch.interrupt_agent(agent_id) is True
        assert orch.get_agent(agent_id).status == "listening"
        cb.on_status_change.assert_called_once_with(agent_id, "listening")

    async def test_not_working(self, controllers: Controllers) -> None:
        orch, _ = _make()
        agent_id = orch.spawn_agent("x")
        _feed(controllers[0], _result())
        assert orch.interrupt_agent(agent_id) is False
        assert orch.get_agent(agent_id).status == "reporting"

    async def test_signal_not_delivered(self, controllers: Controllers) -> None:
        orch, cb = _make()
        agent_id = orch.spawn_agent("x")
        controllers[0].interrupt_result = False
        assert orch.interrupt_agent(agent_id) is False
        assert orch.get_agent(agent_id).status == "working"
        cb.on_status_change.assert_not_called()

    async def test_unknown(self, controllers: Controllers) -> None:
        orch, _ = _make()
        assert orch.interrupt_agent("agent-0-nope") is False


class TestFollowUp:
    async def test_unknown(self, controllers: Controllers) -> None:
        orch, _ = _make()
        assert orch.send_follow_up("agent-0-nope", "hi") is False

    async def test_respawns_with_context(self, controllers: Controllers) -> None:
        orch, cb = _make(summary_instruction=False)
        agent_id = orch.spawn_agent("write tests")
        _feed(controllers[0], _assistant("Wrote 3 tests."), _result())
        old_handle, _ = _current(controllers[0])

        assert orch.send_follow_up(agent_id, "now run them") is True

        agent = orch.get_agent(agent_id)
        new_handle, _ = _current(controllers[0])
        assert new_handle is not old_handle
        assert agent.handle is new_handle
        assert old_handle in controllers[0].terminated
        assert new_handle.prompt == (
            "Previous context:\nWrote 3 tests.\n\nNew instruction: now run them"
        )
        assert agent.status == "working"
        assert agent.prompt == "now run them"
        assert agent.follow_ups == 1
        assert cb.on_status_change.call_args.args == (agent_id, "working")

    async def test_old_handle_output_ignored(
        self, controllers: Controllers
    ) -> None:
        orch, cb = _make()
        agent_id = orch.spawn_agent("x")
        _feed(controllers[0], _assistant("first. "))
        orch.send_follow_up(agent_id, "again")

        _feed(controllers[0], _assistant("stale"), index=0)
        _feed(controllers[0], _assistant("second."), index=1)

        assert orch.get_agent(agent_id).output == "first. second."

    async def test_summary_comes_from_latest_turn(
        self, controllers: Controllers
    ) -> None:
        orch, cb = _make()
        agent_id = orch.spawn_agent("x")
        _feed(controllers[0], _assistant("SUMMARY: First job.\n"), _result())
        orch.finish_speaking()
        orch.send_follow_up(agent_id, "again")
        _feed(controllers[0], _assistant("SUMMARY: Second job.\n"), _result())

        assert cb.on_speak.call_args.args == (agent_id, "Second job.")

    async def test_pending_summary_replaced_by_new_turn(
        self, controllers: Controllers
    ) -> None:
        orch, cb = _make()
        first = orch.spawn_agent("a")
        second = orch.spawn_agent("b")
        _feed(controllers[0], _result(), index=1)
        _feed(controllers[0], _assistant("SUMMARY: old A\n"), _result(), index=0)
        assert orch.get_currently_speaking() == second
        assert orch.get_speaking_queue() == [first]

        orch.send_follow_up(first, "again")
        assert orch.get_speaking_queue() == []
        assert orch.get_currently_speaking() == second

        _feed(controllers[0], _assistant("SUMMARY: new A\n"), _result())
        orch.finish_speaking()
        assert orch.get_currently_speaking() == first
        assert cb.on_speak.call_args.args == (first, "new A")


# ------------------------------------------------------------------ #
# Speaking
# ------------------------------------------------------------------ #


class TestSpeaking:
    async def test_one_speaker_at_a_time(self, controllers: Controllers) -> None:
        orch, cb = _make()
        first = orch.spawn_agent("a")
        second = orch.spawn_agent("b")
        _feed(controllers[0], _result(), index=0)
        _feed(controllers[0], _result(), index=1)

        assert orch.get_currently_speaking() == first
        assert orch.get_speaking_queue() == [second]

        assert orch.finish_speaking() == first
        assert orch.get_currently_speaking() == second
        assert orch.finish_speaking() == second
        assert orch.get_currently_speaking() is None
        assert orch.finish_speaking() is None
        assert [c.args for c in cb.on_start_speaking.call_args_list] == [
            (first,),
            (second,),
        ]

    async def test_allow_to_speak_jumps_queue(
        self, controllers: Controllers
    ) -> None:
        orch, _ = _make()
        ids = [orch.spawn_agent(p) for p in ("a", "b", "c")]
        for index in range(3):
            _feed(controllers[0], _result(), index=index)
        assert orch.get_speaking_queue() == [ids[1], ids[2]]

        assert orch.allow_to_speak(ids[2]) is True
        assert orch.get_speaking_queue() == [ids[2], ids[1]]
        orch.finish_speaking()
        assert orch.get_currently_speaking() == ids[2]

    async def test_allow_to_speak_unknown(self, controllers: Controllers) -> None:
        orch, _ = _make()
        assert orch.allow_to_speak("agent-0-nope") is False

    async def test_allow_to_speak_idle_agent_uses_summary(
        self, controllers: Controllers
    ) -> None:
        orch, cb = _make()
        agent_id = orch.spawn_agent("x")
        _feed(controllers[0], _assistant("SUMMARY: Fixed it.\n"), _result())
        orch.finish_speaking()

        assert orch.allow_to_speak(agent_id) is True
        assert cb.on_speak.call_args.args == (agent_id, "Fixed it.")

    async def test_allow_to_speak_without_output(
        self, controllers: Controllers
    ) -> None:
        orch, cb = _make()
        agent_id = orch.spawn_agent("x")
        assert orch.allow_to_speak(agent_id) is True
        cb.on_speak.assert_called_once_with(agent_id, "Task completed.")

    async def test_allow_to_speak_muted(self, controllers: Controllers) -> None:
        orch, cb = _make()
        agent_id = orch.spawn_agent("x")
        orch.set_muted(agent_id, True)
        assert orch.allow_to_speak(agent_id) is False
        assert orch.get_currently_speaking() is None
        cb.on_speak.assert_not_called()

    async def test_queue_to_speak_manual(self, controllers: Controllers) -> None:
        orch, cb = _make()
        agent_id = orch.spawn_agent("x")
        assert orch.queue_to_speak(agent_id, "custom text") is True
        cb.on_speak.assert_called_once_with(agent_id, "custom text")
        assert orch.queue_to_speak(agent_id) is False
        assert orch.queue_to_speak("agent-0-nope") is False

    async def test_muted_agent_not_queued(self, controllers: Controllers) -> None:
        orch, cb = _make()
        agent_id = orch.spawn_agent("x")
        assert orch.set_muted(agent_id, True) is True
        _feed(controllers[0], _result())

        cb.on_complete.assert_called_once()
        cb.on_start_speaking.assert_not_called()
        assert orch.get_currently_speaking() is None
        assert orch.set_muted("agent-0-nope", True) is False

    async def test_default_summary(self, controllers: Controllers) -> None:
        orch, cb = _make()
        agent_id = orch.spawn_agent("x")
        _feed(controllers[0], _result())
        cb.on_speak.assert_called_once_with(agent_id, "Task completed.")


# ------------------------------------------------------------------ #
# Watchdog
# ------------------------------------------------------------------ #


class TestWatchdog:
    async def test_fires_without_output(self, controllers: Controllers) -> None:
        orch, cb = _make(watchdog_timeout=0.01)
        agent_id = orch.spawn_agent("x")
        await asyncio.sleep(0.1)

        cb.on_error.assert_called_once()
        assert cb.on_error.call_args.args[0] == agent_id
        assert "dependency" in cb.on_error.call_args.args[1]

    async def test_quiet_after_output(self, controllers: Controllers) -> None:
        orch, cb = _make(watchdog_timeout=0.01)
        orch.spawn_agent("x")
        _feed(controllers[0], _line({"type": "system", "subtype": "init"}))
        await asyncio.sleep(0.1)
        cb.on_error.assert_not_called()

    async def test_quiet_after_dismiss(self, controllers: Controllers) -> None:
        orch, cb = _make(watchdog_timeout=0.01)
        agent_id = orch.spawn_agent("x")
        orch.dismiss_agent(agent_id)
        await asyncio.sleep(0.1)
        cb.on_error.assert_not_called()

    async def test_quiet_when_not_working(
        self, controllers: Controllers
    ) -> None:
        orch, cb = _make(watchdog_timeout=0.01)
        agent_id = orch.spawn_agent("x")
        orch.interrupt_agent(agent_id)
        await asyncio.sleep(0.1)
        cb.on_error.assert_not_called()

    async def test_rearmed_for_follow_up(self, controllers: Controllers) -> None:
        orch, cb = _make(watchdog_timeout=0.05)
        agent_id = orch.spawn_agent("x")
        _feed(controllers[0], _assistant("hi"), _result())
        orch.send_follow_up(agent_id, "again")
        await asyncio.sleep(0.2)

        assert [c.args[0] for c in cb.on_error.call_args_list] == [agent_id]


# ------------------------------------------------------------------ #
# Queries, callbacks and teardown
# ------------------------------------------------------------------ #


class TestQueries:
    async def test_snapshot(self, controllers: Controllers) -> None:
        orch, _ = _make()
        first = orch.spawn_agent("a")
        second = orch.spawn_agent("b")
        _feed(controllers[0], _tool("writeToolCall", "x.py"), _result(), index=0)
        _feed(controllers[0], _result(), index=1)

        rows = {row["id"]: row for row in orch.snapshot()}
        assert rows[first]["is_currently_speaking"] is True
        assert rows[first]["is_in_queue"] is False
        assert rows[first]["modified_files"] == ["x.py"]
        assert rows[second]["is_currently_speaking"] is False
        assert rows[second]["is_in_queue"] is True
        assert rows[second]["status"] == "reporting"

    async def test_unknown_ids(self, controllers: Controllers) -> None:
        orch, _ = _make()
        assert orch.get_agent("agent-0-nope") is None
        assert orch.get_modified_files("agent-0-nope") == []
        assert orch.get_read_files("agent-0-nope") == []

    async def test_get_agents(self, controllers: Controllers) -> None:
        orch, _ = _make()
        ids = [orch.spawn_agent("a"), orch.spawn_agent("b")]
        assert [a.id for a in orch.get_agents()] == ids


class TestSetCallbacks:
    async def test_merges(self, controllers: Controllers) -> None:
        orch = AgentOrchestrator(resolver=_resolver())
        captions: list[tuple[str, str]] = []
        errors: list[tuple[str | None, str]] = []
        orch.set_callbacks(on_caption=lambda i, t: captions.append((i, t)))
        orch.set_callbacks(on_error=lambda i, m: errors.append((i, m)))

        agent_id = orch.spawn_agent("x")
        handle, listener = _current(controllers[0])
        listener.on_stdout(handle, _assistant("hi"))
        listener.on_stderr(handle, b"oops")

        assert captions == [(agent_id, "hi")]
        assert errors == [(agent_id, "oops")]

    async def test_unknown_name(self) -> None:
        orch = AgentOrchestrator(resolver=_resolver())
        with pytest.raises(TypeError):
            orch.set_callbacks(on_everything=print)


class TestTeardown:
    async def test_dispose_terminates_and_clears(
        self, controllers: Controllers
    ) -> None:
        orch, _ = _make()
        orch.spawn_agent("a")
        orch.spawn_agent("b")
        _feed(controllers[0], _result(), index=0)

        orch.dispose()
        assert orch.get_agent_count() == 0
        assert orch.get_currently_speaking() is None
        assert len(controllers[0].terminated) == 2

        orch.dispose()
        assert len(controllers[0].terminated) == 2

    async def test_shutdown_stops_every_process(
        self, controllers: Controllers
    ) -> None:
        orch, _ = _make()
        orch.spawn_agent("a")
        orch.spawn_agent("b")
        await orch.shutdown()

        assert len(controllers[0].stopped) == 2
        assert orch.get_agent_count() == 0

    async def test_shutdown_with_no_agents(self) -> None:
        orch, _ = _make()
        await orch.shutdown()


# ------------------------------------------------------------------ #
# Session recording
# ------------------------------------------------------------------ #


class TestRecording:
    async def test_events_recorded(
        self, controllers: Controllers, tmp_path: Path
    ) -> None:
        recorder = SessionRecorder(sessions_dir=tmp_path)
        orch, _ = _make(recorder=recorder)
        agent_id = orch.spawn_agent("x")
        _feed(
            controllers[0],
            _assistant("SUMMARY: ok\n"),
            _tool("writeToolCall", "a.py"),
            _result(10),
        )
        orch.dismiss_agent(agent_id)
        recorder.end("complete")

        lines = recorder.session_file.read_text(encoding="utf-8").splitlines()
        types = [json.loads(line)["type"] for line in lines]
        assert types == [
            "session_start",
            "agent_spawned",
            "caption",
            "tool_activity",
            "status_change",
            "agent_complete",
            "speaking_start",
            "agent_dismissed",
            "session_end",
        ]
        assert json.loads(lines[-1])["agents_spawned"] == 1


# ------------------------------------------------------------------ #
# End to end with a scripted CLI
# ------------------------------------------------------------------ #


_SCRIPTED_AGENT = """\
import json, sys

def emit(obj):
    print(json.dumps(obj), flush=True)

emit({"type": "system", "subtype": "init", "model": "fake-model"})
emit({"type": "assistant", "message": {"content": [{"text": "Editing app.py\\n"}]}})
emit({"type": "tool_call", "subtype": "started",
      "tool_call": {"writeToolCall": {"args": {"path": "app.py"}}}})
emit({"type": "assistant",
      "message": {"content": [{"text": "SUMMARY: Renamed the handler."}]}})
emit({"type": "result", "subtype": "success", "duration_ms": 42})
"""


class TestEndToEnd:
    async def test_scripted_agent(self, tmp_path: Path) -> None:
        script = tmp_path / "cursor-agent"
        script.write_text(
            f"#!{sys.executable}\n" + textwrap.dedent(_SCRIPTED_AGENT), encoding="utf-8"
        )
        script.chmod(0o755)

        config = OrchestratorConfig(agent_path=str(script))
        orch = AgentOrchestrator.from_config(config)
        spoken: asyncio.Queue[tuple[str, str | None]] = asyncio.Queue()
        orch.set_callbacks(on_speak=lambda i, t: spoken.put_nowait((i, t)))

        agent_id = orch.spawn_agent("rename the handler")
        assert agent_id is not None
        speaker, text = await asyncio.wait_for(spoken.get(), timeout=10)

        agent = orch.get_agent(agent_id)
        assert speaker == agent_id
        assert text == "Renamed the handler."
        assert agent.model == "fake-model"
        assert agent.modified_files == ["app.py"]
        assert agent.duration_ms == 42
        await asyncio.wait_for(agent.handle.wait(), timeout=10)
        await orch.shutdown()
