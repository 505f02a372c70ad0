"""Reduce an agent's stream-json transcript to a single RunResult.

Both runner variants feed their message stream through ``TranscriptAccumulator``
so the success/error classification is identical no matter how the agent was
launched. Error markers latch: once any message reports an error, a later
``result``/``success`` message cannot flip the outcome back to success.
"""

from __future__ import annotations

import json
from typing import Any

from whs.models import Question
from whs.runners.base import (
    OutputSink,
    QuestionRequest,
    RunResult,
    ToolUseSink,
    is_authentication_error,
    is_rate_limit_error,
)

ASK_USER_TOOL = "AskUserQuestion"
QUESTION_CONTEXT_CHARS = 500
NON_RETRIABLE_SUBTYPES = {"error_max_turns"}


class TranscriptAccumulator:
    def __init__(
        self,
        *,
        session_id: str = "",
        on_output: OutputSink | None = None,
        on_tool_use: ToolUseSink | None = None,
    ) -> None:
        self.session_id = session_id
        self.on_output = on_output
        self.on_tool_use = on_tool_use
        self.output_parts: list[str] = []
        self.errors: list[str] = []
        self.cost_usd = 0.0
        self.turns = 0
        self.duration_ms = 0
        self.result_subtype: str | None = None
        self.pending_question: QuestionRequest | None = None

    @property
    def output(self) -> str:
        return "\n".join(self.output_parts)

    def _emit_text(self, text: str) -> None:
        self.output_parts.append(text)
        if self.on_output is not None:
            self.on_output(text)

    def feed_line(self, raw_line: str) -> None:
        line = raw_line.strip()
        if not line:
            return
        try:
            message = json.loads(line)
        except json.JSONDecodeError:
            self._emit_text(line)
            return
        if isinstance(message, dict):
            self.feed(message)
        else:
            self._emit_text(line)

    def feed(self, message: dict[str, Any]) -> None:
        message_type = message.get("type")
        if message_type == "system":
            if message.get("subtype") == "init" and message.get("session_id"):
                self.session_id = str(message["session_id"])
            return
        if message_type == "assistant":
            self._feed_assistant(message)
            return
        if message_type == "result":
            self._feed_result(message)
            return
        if message_type == "error":
            detail = message.get("error") or message.get("message") or "unknown error"
            if isinstance(detail, dict):
                detail = detail.get("message") or json.dumps(detail)
            self.errors.append(str(detail))

    def _feed_assistant(self, message: dict[str, Any]) -> None:
        error = message.get("error")
        if error:
            self.errors.append(str(error))

        body = message.get("message")
        if not isinstance(body, dict):
            return
        content = body.get("content")
        if not isinstance(content, list):
            return
        for block in content:
            if not isinstance(block, dict):
                continue
            block_type = block.get("type")
            if block_type == "text" and block.get("text"):
                self._emit_text(str(block["text"]))
            elif block_type == "tool_use" and block.get("name"):
                tool_name = str(block["name"])
                tool_input = block.get("input")
                if self.on_tool_use is not None:
                    self.on_tool_use(tool_name, tool_input)
                if tool_name == ASK_USER_TOOL:
                    self._capture_question(tool_input)

    def _capture_question(self, tool_input: Any) -> None:
        if not isinstance(tool_input, dict):
            return
        raw_questions = tool_input.get("questions")
        if not raw_questions or tool_input.get("answers"):
            return
        questions = [
            Question.from_dict(item) for item in raw_questions if isinstance(item, dict)
        ]
        if questions:
            self.pending_question = QuestionRequest(
                questions=questions,
                context=self.output[-QUESTION_CONTEXT_CHARS:],
            )

    def _feed_result(self, message: dict[str, Any]) -> None:
        self.cost_usd = float(message.get("total_cost_usd") or 0.0)
        self.turns = int(message.get("num_turns") or 0)
        self.duration_ms = int(message.get("duration_ms") or 0)
        self.result_subtype = str(message.get("subtype") or "")
        if message.get("session_id") and not self.session_id:
            self.session_id = str(message["session_id"])
        if message.get("is_error") or self.result_subtype != "success":
            raw_errors = message.get("errors")
            if isinstance(raw_errors, list) and raw_errors:
                self.errors.append("; ".join(str(item) for item in raw_errors))
            elif message.get("result"):
                self.errors.append(str(message["result"]))
            else:
                self.errors.append(f"agent result: {self.result_subtype or 'error'}")

    def finish(
        self,
        *,
        exit_code: int | None = 0,
        stderr: str = "",
        aborted: bool = False,
        duration_ms: int | None = None,
    ) -> RunResult:
        output = self.output.strip()
        error: str | None = "; ".join(self.errors) if self.errors else None
        success = not self.errors
        retriable = True

        if aborted:
            success = False
            retriable = False
            error = "Agent aborted by dispatcher shutdown"
        elif exit_code not in (0, None) and self.pending_question is None:
            success = False
            error = error or stderr.strip() or f"Process exited with code {exit_code}"

        if self.result_subtype in NON_RETRIABLE_SUBTYPES:
            retriable = False

        is_auth_error = False
        is_rate_limited = False
        if not success:
            haystacks = [error or "", stderr, output]
            is_auth_error = any(is_authentication_error(text) for text in haystacks if text)
            is_rate_limited = not is_auth_error and any(
                is_rate_limit_error(text) for text in (error or "", stderr) if text
            )
            if is_auth_error:
                retriable = False
                if error and not is_authentication_error(error):
                    auth_line = next(
                        (
                            line.strip()
                            for line in output.splitlines()
                            if is_authentication_error(line)
                        ),
                        None,
                    )
                    if auth_line:
                        error = auth_line

        return RunResult(
            session_id=self.session_id,
            output=output,
            cost_usd=self.cost_usd,
            turns=self.turns,
            duration_ms=self.duration_ms if duration_ms is None else duration_ms,
            success=success,
            error=error,
            is_auth_error=is_auth_error,
            is_rate_limited=is_rate_limited,
            retriable=retriable,
            pending_question=self.pending_question,
            metadata={"result_subtype": self.result_subtype},
        )
