import asyncio
import json
import sys
from pathlib import Path
from typing import Any

import pytest

from whs.concurrency import ConcurrencyTracker
from whs.config import RunnerConfig
from whs.runners import (
    AgentRunner,
    CLIAgentRunner,
    FailureKind,
    RateLimitGuard,
    RunOptions,
    RunResult,
    SDKAgentRunner,
    classify_failure,
    create_runner,
)
from whs.runners.base import RunnerError, RunnerProcessError
from whs.runners.cli import STREAM_LIMIT_BYTES
from whs.runners.sdk import to_stream_message
from whs.runners.transcript import TranscriptAccumulator


def _lines(*messages: dict[str, Any]) -> list[str]:
    return [json.dumps(message) for message in messages]


def _feed(lines: list[str], **finish: Any) -> RunResult:
    accumulator = TranscriptAccumulator()
    for line in lines:
        accumulator.feed_line(line)
    return accumulator.finish(**finish)


def test_auth_error_after_success_result_is_not_success() -> None:
    result = _feed(
        _lines(
            {"type": "system", "subtype": "init", "session_id": "sess-1"},
            {"type": "result", "subtype": "success", "total_cost_usd": 0.01, "num_turns": 1},
            {
                "type": "assistant",
                "error": "authentication_failed",
                "message": {"content": [{"type": "text", "text": "Invalid API key"}]},
            },
        )
    )

    assert result.success is False
    assert result.is_auth_error is True
    assert result.retriable is False
    assert result.session_id == "sess-1"
    assert classify_failure(result) is FailureKind.AUTHENTICATION


def test_successful_transcript_collects_text_and_cost() -> None:
    result = _feed(
        _lines(
            {"type": "system", "subtype": "init", "session_id": "sess-2"},
            {
                "type": "assistant",
                "message": {"content": [{"type": "text", "text": "Implemented the change."}]},
            },
            {
                "type": "assistant",
                "message": {"content": [{"type": "text", "text": "next_agent: DONE"}]},
            },
            {
                "type": "result",
                "subtype": "success",
                "total_cost_usd": 0.42,
                "num_turns": 7,
                "duration_ms": 1200,
            },
        )
    )

    assert result.success is True
    assert result.error is None
    assert result.cost_usd == pytest.approx(0.42)
    assert result.turns == 7
    assert result.output == "Implemented the change.\nnext_agent: DONE"
    assert classify_failure(result) is None


def test_non_json_lines_become_output() -> None:
    result = _feed(["plain text line", "", json.dumps({"type": "result", "subtype": "success"})])

    assert result.success is True
    assert result.output == "plain text line"


def test_error_result_carries_reported_errors() -> None:
    result = _feed(
        _lines(
            {
                "type": "result",
                "subtype": "error_during_execution",
                "is_error": True,
                "errors": ["tool crashed", "gave up"],
            }
        )
    )

    assert result.success is False
    assert result.error == "tool crashed; gave up"
    assert classify_failure(result) is FailureKind.TRANSIENT


def test_max_turns_result_is_not_retriable() -> None:
    result = _feed(_lines({"type": "result", "subtype": "error_max_turns", "num_turns": 50}))

    assert result.success is False
    assert result.retriable is False
    assert classify_failure(result) is FailureKind.FATAL


def test_rate_limit_is_detected_from_error_text() -> None:
    result = _feed(
        _lines({"type": "error", "error": {"message": "429 Too Many Requests"}}),
        exit_code=1,
    )

    assert result.success is False
    assert result.is_rate_limited is True
    assert classify_failure(result) is FailureKind.RATE_LIMITED


def test_nonzero_exit_without_messages_uses_stderr() -> None:
    result = _feed([], exit_code=2, stderr="boom")

    assert result.success is False
    assert result.error == "boom"


def test_auth_line_from_output_replaces_generic_error() -> None:
    result = _feed(["Please run /login to continue"], exit_code=1, stderr="")

    assert result.is_auth_error is True
    assert result.error == "Please run /login to continue"


def test_ask_user_question_is_captured() -> None:
    tool_uses: list[str] = []
    accumulator = TranscriptAccumulator(on_tool_use=lambda name, _input: tool_uses.append(name))
    for line in _lines(
        {"type": "assistant", "message": {"content": [{"type": "text", "text": "Need input."}]}},
        {
            "type": "assistant",
            "message": {
                "content": [
                    {
                        "type": "tool_use",
                        "name": "AskUserQuestion",
                        "input": {
                            "questions": [
                                {
                                    "question": "Which database?",
                                    "header": "DB",
                                    "options": [
                                        {"label": "Postgres", "description": "default"},
                                        {"label": "SQLite"},
                                    ],
                                    "multiSelect": False,
                                }
                            ]
                        },
                    }
                ]
            },
        },
    ):
        accumulator.feed_line(line)

    result = accumulator.finish(exit_code=1)

    assert tool_uses == ["AskUserQuestion"]
    assert result.pending_question is not None
    question = result.pending_question.questions[0]
    assert question.question == "Which database?"
    assert [option.label for option in question.options] == ["Postgres", "SQLite"]
    assert result.pending_question.context == "Need input."


def test_aborted_run_is_not_retriable() -> None:
    result = _feed([], exit_code=-15, aborted=True)

    assert result.success is False
    assert result.retriable is False
    assert "aborted" in (result.error or "")


def test_cli_build_command_includes_resume_and_limits() -> None:
    runner = CLIAgentRunner("claude-bin", default_max_turns=30)

    command = runner.build_command(
        RunOptions(resume="sess-9", system_prompt="be brief", allowed_tools=["Read", "Edit"])
    )

    assert command[:2] == ["claude-bin", "-p"]
    assert "stream-json" in command
    assert "--dangerously-skip-permissions" in command
    assert command[command.index("--resume") + 1] == "sess-9"
    assert command[command.index("--max-turns") + 1] == "30"
    assert command[command.index("--append-system-prompt") + 1] == "be brief"
    assert command[command.index("--allowed-tools") + 1] == "Read,Edit"
    assert "--model" not in command


class FakeStdin:
    def __init__(self) -> None:
        self.written = b""
        self.closed = False

    def write(self, data: bytes) -> None:
        self.written += data

    async def drain(self) -> None:
        return None

    def close(self) -> None:
        self.closed = True


class FakeStdout:
    def __init__(self, lines: list[bytes], error: Exception | None = None) -> None:
        self._lines = lines
        self._index = 0
        self._error = error

    async def readline(self) -> bytes:
        if self._index >= len(self._lines):
            if self._error is not None:
                raise self._error
            return b""
        line = self._lines[self._index]
        self._index += 1
        return line


class FakeStderr:
    def __init__(self, data: bytes = b"") -> None:
        self._data = data

    async def read(self) -> bytes:
        return self._data


class FakeProcess:
    def __init__(self, lines: list[str], exit_code: int = 0, stderr: bytes = b"") -> None:
        self.pid = 4242
        self.returncode: int | None = None
        self.stdin = FakeStdin()
        self.stdout = FakeStdout([f"{line}\n".encode() for line in lines])
        self.stderr = FakeStderr(stderr)
        self._exit_code = exit_code
        self.terminated = False

    async def wait(self) -> int:
        self.returncode = self._exit_code
        return self._exit_code

    def terminate(self) -> None:
        self.terminated = True


def test_cli_runner_pipes_prompt_and_parses_stream(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    captured: dict[str, Any] = {}
    process = FakeProcess(
        _lines(
            {"type": "system", "subtype": "init", "session_id": "sess-cli"},
            {"type": "assistant", "message": {"content": [{"type": "text", "text": "done"}]}},
            {"type": "result", "subtype": "success", "total_cost_usd": 0.05, "num_turns": 2},
        )
    )

    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> FakeProcess:
        captured["args"] = args
        captured["cwd"] = kwargs.get("cwd")
        return process

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)

    log_file = tmp_path / "logs" / "wf-1.1.log"
    runner = CLIAgentRunner()
    result = asyncio.run(
        runner.run("Fix the bug", tmp_path, RunOptions(max_turns=5, log_file=log_file))
    )

    assert result.success is True
    assert result.session_id == "sess-cli"
    assert result.cost_usd == pytest.approx(0.05)
    assert result.output == "done"
    assert process.stdin.written == b"Fix the bug"
    assert process.stdin.closed is True
    assert captured["cwd"] == str(tmp_path)
    assert "--max-turns" in captured["args"]
    assert "sess-cli" in log_file.read_text(encoding="utf-8")


def test_cli_runner_resume_passes_session(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    captured: dict[str, Any] = {}

    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> FakeProcess:
        _ = kwargs
        captured["args"] = list(args)
        return FakeProcess(_lines({"type": "result", "subtype": "success"}))

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)

    result = asyncio.run(CLIAgentRunner().resume_with_answer("sess-7", "Use Postgres", tmp_path))

    assert result.success is True
    assert result.session_id == "sess-7"
    args = captured["args"]
    assert args[args.index("--resume") + 1] == "sess-7"


def test_cli_runner_missing_binary_raises(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> FakeProcess:
        _ = args, kwargs
        raise FileNotFoundError("claude")

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)

    with pytest.raises(RunnerProcessError) as info:
        asyncio.run(CLIAgentRunner().run("prompt", tmp_path))
    assert info.value.retriable is False


@pytest.mark.skipif(sys.platform == "win32", reason="uses a POSIX shell script")
def test_cli_runner_reads_lines_longer_than_default_stream_limit(tmp_path: Path) -> None:
    fake_claude = tmp_path / "claude"
    fake_claude.write_text(
        "#!/bin/sh\n"
        "cat > /dev/null\n"
        "printf '%s' '{\"type\":\"assistant\",\"message\":{\"content\":"
        "[{\"type\":\"text\",\"text\":\"'\n"
        "head -c 200000 /dev/zero | tr '\\0' 'a'\n"
        "printf '%s\\n' '\"}]}}'\n"
        "printf '%s\\n' '{\"type\":\"result\",\"subtype\":\"success\","
        "\"session_id\":\"sess-big\",\"total_cost_usd\":0.01}'\n",
        encoding="utf-8",
    )
    fake_claude.chmod(0o755)

    result = asyncio.run(CLIAgentRunner(str(fake_claude)).run("prompt", tmp_path))

    assert result.success is True
    assert result.session_id == "sess-big"
    assert len(result.output) == 200000


def test_cli_runner_stream_overrun_becomes_runner_error(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    process = FakeProcess([])
    process.stdout = FakeStdout([], error=ValueError("Separator is not found"))
    captured: dict[str, Any] = {}

    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> FakeProcess:
        _ = args
        captured["limit"] = kwargs.get("limit")
        return process

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)

    with pytest.raises(RunnerError, match="Unreadable output"):
        asyncio.run(CLIAgentRunner().run("prompt", tmp_path))
    assert process.terminated is True
    assert captured["limit"] == STREAM_LIMIT_BYTES


class SystemMessage:
    def __init__(self) -> None:
        self.subtype = "init"
        self.data = {"session_id": "sess-sdk"}


class TextBlock:
    def __init__(self, text: str) -> None:
        self.text = text


class ToolUseBlock:
    def __init__(self, name: str, tool_input: dict[str, Any]) -> None:
        self.name = name
        self.input = tool_input


class AssistantMessage:
    def __init__(self, content: list[Any], error: str | None = None) -> None:
        self.content = content
        self.error = error


class ResultMessage:
    subtype = "success"
    is_error = False
    session_id = "sess-sdk"
    total_cost_usd = 0.03
    num_turns = 3
    duration_ms = 900
    result = "ok"


def test_sdk_messages_map_to_stream_shape() -> None:
    accumulator = TranscriptAccumulator()
    for message in [
        SystemMessage(),
        AssistantMessage([TextBlock("working"), ToolUseBlock("Read", {"path": "a.py"})]),
        ResultMessage(),
    ]:
        accumulator.feed(to_stream_message(message))

    result = accumulator.finish(exit_code=None)

    assert to_stream_message(SystemMessage())["session_id"] == "sess-sdk"
    assert result.success is True
    assert result.output == "working"
    assert result.cost_usd == pytest.approx(0.03)


def test_sdk_assistant_error_latches_failure() -> None:
    accumulator = TranscriptAccumulator()
    accumulator.feed(to_stream_message(ResultMessage()))
    accumulator.feed(to_stream_message(AssistantMessage([], error="authentication_failed")))

    result = accumulator.finish(exit_code=None)

    assert result.success is False
    assert result.is_auth_error is True


class FakeSdk:
    """Stands in for the claude_agent_sdk module: records options, replays messages."""

    def __init__(self) -> None:
        self.options: list[dict[str, Any]] = []
        self.messages: list[dict[str, Any]] = [
            {"type": "system", "subtype": "init", "session_id": "sess-sdk"},
            {"type": "assistant", "message": {"content": [{"type": "text", "text": "hi"}]}},
            {"type": "result", "subtype": "success", "session_id": "sess-sdk", "num_turns": 1},
        ]

    def ClaudeAgentOptions(self, **kwargs: Any) -> dict[str, Any]:  # noqa: N802
        self.options.append(kwargs)
        return kwargs

    async def query(self, *, prompt: str, options: dict[str, Any]) -> Any:
        _ = prompt, options
        for message in self.messages:
            await asyncio.sleep(0)
            yield message


@pytest.fixture
def fake_sdk(monkeypatch: pytest.MonkeyPatch) -> FakeSdk:
    sdk = FakeSdk()
    monkeypatch.setitem(sys.modules, "claude_agent_sdk", sdk)
    return sdk


def test_sdk_resume_keeps_log_file(fake_sdk: FakeSdk, tmp_path: Path) -> None:
    runner = SDKAgentRunner()
    log_file = tmp_path / "logs" / "bd-1.jsonl"

    result = asyncio.run(
        runner.resume_with_answer(
            "sess-sdk", "Use Postgres", tmp_path, RunOptions(log_file=log_file)
        )
    )

    assert result.success is True
    assert fake_sdk.options[0]["resume"] == "sess-sdk"
    logged = [json.loads(line) for line in log_file.read_text(encoding="utf-8").splitlines()]
    assert [entry["type"] for entry in logged] == ["system", "assistant", "result"]


def test_sdk_abort_only_stops_runs_in_flight(fake_sdk: FakeSdk, tmp_path: Path) -> None:
    runner = SDKAgentRunner()

    async def scenario() -> tuple[RunResult, RunResult]:
        in_flight = asyncio.create_task(runner.run("first", tmp_path))
        await asyncio.sleep(0)
        runner.abort()
        aborted = await in_flight
        later = await runner.run("second", tmp_path)
        return aborted, later

    aborted, later = asyncio.run(scenario())

    assert aborted.success is False
    assert aborted.error == "Agent aborted by dispatcher shutdown"
    assert later.success is True


def test_create_runner_picks_variant() -> None:
    assert isinstance(create_runner(RunnerConfig(type="cli")), CLIAgentRunner)
    sdk = create_runner(RunnerConfig(type="sdk", max_turns=12, model="sonnet"))
    assert isinstance(sdk, SDKAgentRunner)
    assert sdk.default_max_turns == 12
    assert sdk.model == "sonnet"


class ScriptedRunner(AgentRunner):
    name = "scripted"

    def __init__(self, result: RunResult) -> None:
        self.result = result
        self.aborted = False

    async def run(self, prompt: str, cwd: Path, options: RunOptions | None = None) -> RunResult:
        _ = prompt, cwd, options
        return self.result

    async def resume_with_answer(
        self, session_id: str, answer: str, cwd: Path, options: RunOptions | None = None
    ) -> RunResult:
        _ = session_id, answer, cwd, options
        return self.result

    def abort(self) -> None:
        self.aborted = True


def test_guard_pauses_tracker_on_rate_limit(tmp_path: Path) -> None:
    tracker = ConcurrencyTracker(2, 1)
    events: list[dict[str, Any]] = []
    inner = ScriptedRunner(RunResult(success=False, error="rate_limit_error: slow down"))
    guard = RateLimitGuard(inner, tracker, event_hook=events.append)

    result = asyncio.run(guard.run("prompt", tmp_path))

    assert result.is_rate_limited is True
    assert tracker.paused is True
    assert "rate limit" in (tracker.pause_reason or "")
    assert events[0]["event"] == "rate_limit_detected"
    assert guard.name == "scripted"

    guard.abort()
    assert inner.aborted is True


def test_guard_leaves_other_failures_alone(tmp_path: Path) -> None:
    tracker = ConcurrencyTracker(2, 1)
    guard = RateLimitGuard(ScriptedRunner(RunResult(success=False, error="boom")), tracker)

    result = asyncio.run(guard.resume_with_answer("sess", "answer", tmp_path))

    assert result.is_rate_limited is False
    assert tracker.paused is False
