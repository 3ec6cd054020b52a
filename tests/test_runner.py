"""Tests for the process runner, driven by real Python child processes."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from typing import Any

import pytest

from chatrelay.agent.backends import ClaudeBackend
from chatrelay.agent.runner import Invocation, LineBuffer, ProcessRunner
from chatrelay.session.models import ProgressEvent

# ------------------------------------------------------------------ #
# Helpers
# ------------------------------------------------------------------ #

_PARSER = ClaudeBackend(executable=sys.executable).parse_line

#: Generous upper bound so a wedged child fails the test instead of hanging.
_TIMEOUT = 15.0


def _tool(command: str) -> str:
    return json.dumps(
        {
            "type": "assistant",
            "message": {
                "content": [{"type": "tool_use", "name": "Bash", "input": {"command": command}}]
            },
        }
    )


def _result(text: str) -> str:
    return json.dumps({"type": "result", "result": text})


def _script(lines: list[str], *, sleep: float = 0.0, exit_code: int = 0, stderr: str = "") -> str:
    """Child program that prints *lines*, optionally sleeps, then exits."""
    return "\n".join(
        [
            "import sys, time",
            f"for line in {lines!r}:",
            "    print(line, flush=True)",
            f"time.sleep({sleep!r})",
            f"sys.stderr.write({stderr!r})",
            f"sys.exit({exit_code!r})",
        ]
    )


def _invocation(script: str, input_text: str = "") -> Invocation:
    return Invocation(
        executable=sys.executable,
        args=("-c", script),
        parse_line=_PARSER,
        input_text=input_text,
        label="Test CLI",
    )


def _collector(events: list[ProgressEvent]) -> Any:
    async def _on_event(event: ProgressEvent) -> None:
        events.append(event)

    return _on_event


async def _run(runner: ProcessRunner, invocation: Invocation) -> Any:
    return await asyncio.wait_for(runner.run(invocation), timeout=_TIMEOUT)


# ------------------------------------------------------------------ #
# Line buffering
# ------------------------------------------------------------------ #


class TestLineBuffer:
    def test_complete_lines(self) -> None:
        buf = LineBuffer()
        assert buf.feed(b"one\ntwo\n") == ["one", "two"]
        assert buf.pending_bytes == 0

    def test_partial_line_is_held(self) -> None:
        buf = LineBuffer()
        assert buf.feed(b'{"type": "ass') == []
        assert buf.pending_bytes == 13
        assert buf.feed(b'istant"}\nnext') == ['{"type": "assistant"}']
        assert buf.flush() == "next"
        assert buf.flush() is None

    def test_carriage_return_stripped(self) -> None:
        assert LineBuffer().feed(b"windows\r\n") == ["windows"]

    def test_oversize_line_dropped(self, caplog: pytest.LogCaptureFixture) -> None:
        buf = LineBuffer(max_line_bytes=8)
        with caplog.at_level(logging.WARNING, logger="chatrelay.agent.runner"):
            assert buf.feed(b"0123456789abc\nok\n") == ["ok"]
        assert "exceeds" in caplog.text

    def test_oversize_line_across_chunks(self) -> None:
        buf = LineBuffer(max_line_bytes=8)
        assert buf.feed(b"0123456789") == []
        assert buf.feed(b"still the same line\nafter\n") == ["after"]

    def test_oversize_tail_not_flushed(self) -> None:
        buf = LineBuffer(max_line_bytes=4)
        buf.feed(b"toolongtail")
        assert buf.flush() is None


# ------------------------------------------------------------------ #
# Normal runs
# ------------------------------------------------------------------ #


class TestSuccessfulRun:
    async def test_events_in_order_then_response(self) -> None:
        events: list[ProgressEvent] = []
        runner = ProcessRunner("test", on_event=_collector(events))
        lines = [_tool("ls"), _tool("pwd"), _tool("make"), _result("All done")]

        response = await _run(runner, _invocation(_script(lines)))

        assert response.succeeded
        assert response.text == "All done"
        assert [e.message for e in events] == ["Running: ls", "Running: pwd", "Running: make"]
        assert runner.event_count == 3

    async def test_result_record_is_not_an_event(self) -> None:
        events: list[ProgressEvent] = []
        runner = ProcessRunner("test", on_event=_collector(events))
        await _run(runner, _invocation(_script([_result("x")])))
        assert events == []

    async def test_stdin_is_delivered(self) -> None:
        script = "\n".join(
            [
                "import json, sys",
                "text = sys.stdin.read()",
                "print(json.dumps({'type': 'result', 'result': 'got ' + text}), flush=True)",
            ]
        )
        runner = ProcessRunner("test")
        response = await _run(runner, _invocation(script, input_text="hello there"))
        assert response.text == "got hello there"

    async def test_unterminated_last_line_is_parsed(self) -> None:
        script = "\n".join(
            [
                "import sys",
                f"sys.stdout.write({_result('tail')!r})",
            ]
        )
        response = await _run(ProcessRunner("test"), _invocation(script))
        assert response.text == "tail"

    async def test_line_split_across_writes(self) -> None:
        line = _tool("echo split")
        half = len(line) // 2
        script = "\n".join(
            [
                "import sys, time",
                f"sys.stdout.write({line[:half]!r}); sys.stdout.flush()",
                "time.sleep(0.2)",
                f"sys.stdout.write({line[half:]!r} + '\\n'); sys.stdout.flush()",
            ]
        )
        events: list[ProgressEvent] = []
        await _run(ProcessRunner("test", on_event=_collector(events)), _invocation(script))
        assert [e.message for e in events] == ["Running: echo split"]

    async def test_malformed_line_skipped(self) -> None:
        events: list[ProgressEvent] = []
        lines = ['{"type": "assistant", "mess', _tool("ls"), "plain noise"]
        runner = ProcessRunner("test", on_event=_collector(events))
        response = await _run(runner, _invocation(_script(lines)))
        assert response.succeeded
        assert len(events) == 1

    async def test_conversation_id_reported(self) -> None:
        lines = [json.dumps({"type": "system", "session_id": "abc-123"}), _result("ok")]
        runner = ProcessRunner("test")
        await _run(runner, _invocation(_script(lines)))
        assert runner.conversation_id == "abc-123"

    async def test_failing_callback_does_not_abort(self) -> None:
        async def _boom(event: ProgressEvent) -> None:
            raise RuntimeError("callback bug")

        runner = ProcessRunner("test", on_event=_boom)
        response = await _run(runner, _invocation(_script([_tool("ls"), _result("fine")])))
        assert response.succeeded
        assert response.text == "fine"

    async def test_runner_is_single_use(self) -> None:
        runner = ProcessRunner("test")
        await _run(runner, _invocation(_script([])))
        with pytest.raises(RuntimeError, match="already been used"):
            await runner.run(_invocation(_script([])))


# ------------------------------------------------------------------ #
# Failures
# ------------------------------------------------------------------ #


class TestFailedRun:
    async def test_nonzero_exit_uses_stderr(self) -> None:
        runner = ProcessRunner("test")
        response = await _run(runner, _invocation(_script([], exit_code=3, stderr="boom\n")))
        assert not response.succeeded
        assert response.error_kind == "exit"
        assert response.failure_detail == "boom"

    async def test_nonzero_exit_without_stderr(self) -> None:
        response = await _run(ProcessRunner("test"), _invocation(_script([], exit_code=2)))
        assert response.error_kind == "exit"
        assert response.failure_detail == "Process exited with status 2"

    async def test_partial_text_kept_on_failure(self) -> None:
        lines = [
            json.dumps(
                {"type": "assistant", "message": {"content": [{"type": "text", "text": "halfway"}]}}
            )
        ]
        response = await _run(ProcessRunner("test"), _invocation(_script(lines, exit_code=1)))
        assert not response.succeeded
        assert response.text == "halfway"

    async def test_missing_executable(self) -> None:
        invocation = Invocation(
            executable="/nonexistent/bin/claude",
            args=("-p",),
            parse_line=_PARSER,
            label="Claude CLI",
            install_hint="Install: npm install -g @anthropic-ai/claude-code",
        )
        runner = ProcessRunner("test")
        response = await _run(runner, invocation)
        assert response.error_kind == "spawn"
        assert "Claude CLI not found: /nonexistent/bin/claude" in response.failure_detail
        assert "npm install" in response.failure_detail
        assert runner.pid is None


# ------------------------------------------------------------------ #
# Staleness watchdog
# ------------------------------------------------------------------ #


class TestStillWorking:
    async def test_quiet_process_gets_still_working(self) -> None:
        events: list[ProgressEvent] = []
        runner = ProcessRunner("test", on_event=_collector(events), quiet_interval=0.2)
        await _run(runner, _invocation(_script([_tool("sleep 1")], sleep=1.0)))

        still = [e for e in events if e.kind == "still_working"]
        assert still
        assert all(e.message.startswith("Still working...") for e in still)
        assert any("Last: Running: sleep 1" in e.message for e in still)
        assert all(e.elapsed_s is not None for e in still)

    async def test_no_events_after_response(self) -> None:
        events: list[ProgressEvent] = []
        runner = ProcessRunner("test", on_event=_collector(events), quiet_interval=0.1)
        await _run(runner, _invocation(_script([], sleep=0.3)))
        count = len(events)
        await asyncio.sleep(0.4)
        assert len(events) == count

    async def test_chatty_process_gets_none(self) -> None:
        script = "\n".join(
            [
                "import time",
                "for i in range(6):",
                f"    print({_tool('step')!r}, flush=True)",
                "    time.sleep(0.1)",
            ]
        )
        events: list[ProgressEvent] = []
        runner = ProcessRunner("test", on_event=_collector(events), quiet_interval=2.0)
        await _run(runner, _invocation(script))
        assert [e.kind for e in events] == ["tool_use"] * 6


# ------------------------------------------------------------------ #
# Interrupt and terminate
# ------------------------------------------------------------------ #


class TestCancellation:
    async def test_terminate_mid_run(self) -> None:
        runner: ProcessRunner

        async def _on_event(event: ProgressEvent) -> None:
            runner.terminate()

        runner = ProcessRunner("test", on_event=_on_event)
        response = await _run(runner, _invocation(_script([_tool("long")], sleep=30)))

        assert not response.succeeded
        assert response.error_kind == "terminated"
        assert not runner.is_running
        assert runner.terminate() is False

    async def test_interrupt_mid_run(self) -> None:
        runner: ProcessRunner
        results: list[bool] = []

        async def _on_event(event: ProgressEvent) -> None:
            results.append(runner.interrupt())

        runner = ProcessRunner("test", on_event=_on_event)
        response = await _run(runner, _invocation(_script([_tool("long")], sleep=30)))

        assert results == [True]
        assert response.error_kind == "interrupted"
        assert runner.interrupt() is False

    async def test_interrupt_before_spawn_is_noop(self) -> None:
        assert ProcessRunner("test").interrupt() is False

    async def test_terminate_before_run(self) -> None:
        runner = ProcessRunner("test")
        assert runner.terminate() is True
        response = await _run(runner, _invocation(_script([])))
        assert response.error_kind == "terminated"
        assert runner.pid is None

    async def test_terminate_is_idempotent(self) -> None:
        runner: ProcessRunner
        outcomes: list[bool] = []

        async def _on_event(event: ProgressEvent) -> None:
            outcomes.append(runner.terminate())
            outcomes.append(runner.terminate())

        runner = ProcessRunner("test", on_event=_on_event)
        response = await _run(runner, _invocation(_script([_tool("x")], sleep=30)))
        assert outcomes == [True, True]
        assert response.error_kind == "terminated"

    async def test_cancelled_run_kills_process(self) -> None:
        started = asyncio.Event()

        async def _on_event(event: ProgressEvent) -> None:
            started.set()

        runner = ProcessRunner("test", on_event=_on_event)
        task = asyncio.create_task(runner.run(_invocation(_script([_tool("x")], sleep=30))))
        await asyncio.wait_for(started.wait(), timeout=_TIMEOUT)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert not runner.is_running
