from __future__ import annotations

import json
import time
from pathlib import Path
from typing import IO, Any

import structlog

from whs.runners.base import AgentRunner, RunnerError, RunnerProcessError, RunOptions, RunResult
from whs.runners.transcript import TranscriptAccumulator

logger = structlog.get_logger(__name__)


def _block_to_dict(block: Any) -> dict[str, Any]:
    if isinstance(block, dict):
        return block
    name = getattr(block, "name", None)
    if name is not None:
        return {"type": "tool_use", "name": name, "input": getattr(block, "input", None)}
    text = getattr(block, "text", None)
    if isinstance(text, str):
        return {"type": "text", "text": text}
    return {"type": type(block).__name__}


def to_stream_message(message: Any) -> dict[str, Any]:
    """Translate an SDK message object into the CLI stream-json shape."""
    if isinstance(message, dict):
        return message
    kind = type(message).__name__
    if kind == "SystemMessage":
        data = getattr(message, "data", None) or {}
        return {
            "type": "system",
            "subtype": getattr(message, "subtype", ""),
            "session_id": data.get("session_id") if isinstance(data, dict) else None,
        }
    if kind == "AssistantMessage":
        payload: dict[str, Any] = {
            "type": "assistant",
            "message": {
                "content": [_block_to_dict(block) for block in getattr(message, "content", [])]
            },
        }
        error = getattr(message, "error", None)
        if error:
            payload["error"] = error
        return payload
    if kind == "ResultMessage":
        return {
            "type": "result",
            "subtype": getattr(message, "subtype", ""),
            "is_error": bool(getattr(message, "is_error", False)),
            "session_id": getattr(message, "session_id", None),
            "total_cost_usd": getattr(message, "total_cost_usd", None),
            "num_turns": getattr(message, "num_turns", 0),
            "duration_ms": getattr(message, "duration_ms", 0),
            "result": getattr(message, "result", None),
        }
    return {"type": kind}


class SDKAgentRunner(AgentRunner):
    """Runs agents through the hosted Claude Agent SDK (pay-per-token)."""

    name = "sdk"

    def __init__(self, *, default_max_turns: int = 50, model: str | None = None) -> None:
        self.default_max_turns = default_max_turns
        self.model = model
        # Bumped by abort(); a run is aborted when the generation moves under it.
        self._abort_generation = 0

    def _build_options(self, cwd: Path, options: RunOptions) -> Any:
        try:
            from claude_agent_sdk import ClaudeAgentOptions
        except ImportError as exc:
            raise RunnerProcessError(
                "claude-agent-sdk is not installed; install the 'sdk' extra or use runner.type=cli",
                runner=self.name,
                retriable=False,
            ) from exc

        kwargs: dict[str, Any] = {
            "cwd": str(cwd),
            "max_turns": options.max_turns or self.default_max_turns,
            "permission_mode": "bypassPermissions",
            "setting_sources": ["user", "project"],
        }
        if options.resume:
            kwargs["resume"] = options.resume
        if options.allowed_tools:
            kwargs["allowed_tools"] = list(options.allowed_tools)
        if options.system_prompt:
            kwargs["system_prompt"] = {
                "type": "preset",
                "preset": "claude_code",
                "append": options.system_prompt,
            }
        model = options.model or self.model
        if model:
            kwargs["model"] = model
        return ClaudeAgentOptions(**kwargs)

    async def run(self, prompt: str, cwd: Path, options: RunOptions | None = None) -> RunResult:
        return await self._execute(prompt, cwd, options or RunOptions())

    async def resume_with_answer(
        self,
        session_id: str,
        answer: str,
        cwd: Path,
        options: RunOptions | None = None,
    ) -> RunResult:
        base = options or RunOptions()
        resumed = RunOptions(
            max_turns=base.max_turns,
            resume=session_id,
            system_prompt=base.system_prompt,
            allowed_tools=base.allowed_tools,
            model=base.model,
            log_file=base.log_file,
            on_output=base.on_output,
            on_tool_use=base.on_tool_use,
        )
        return await self._execute(answer, cwd, resumed)

    async def _execute(self, prompt: str, cwd: Path, options: RunOptions) -> RunResult:
        started = time.monotonic()
        sdk_options = self._build_options(cwd, options)
        from claude_agent_sdk import query

        accumulator = TranscriptAccumulator(
            session_id=options.resume or "",
            on_output=options.on_output,
            on_tool_use=options.on_tool_use,
        )
        generation = self._abort_generation
        aborted = False
        log_handle: IO[str] | None = None
        if options.log_file is not None:
            options.log_file.parent.mkdir(parents=True, exist_ok=True)
            log_handle = options.log_file.open("a", encoding="utf-8")
        try:
            async for message in query(prompt=prompt, options=sdk_options):
                if self._abort_generation != generation:
                    aborted = True
                    break
                payload = to_stream_message(message)
                if log_handle is not None:
                    log_handle.write(json.dumps(payload, default=str) + "\n")
                accumulator.feed(payload)
        except RunnerError:
            raise
        except Exception as exc:
            logger.warning("sdk_runner_query_failed", error=str(exc))
            accumulator.errors.append(str(exc))
        finally:
            if log_handle is not None:
                log_handle.close()

        return accumulator.finish(
            exit_code=None,
            aborted=aborted,
            duration_ms=accumulator.duration_ms or int((time.monotonic() - started) * 1000),
        )

    def abort(self) -> None:
        self._abort_generation += 1
        logger.info("sdk_runner_aborted")
