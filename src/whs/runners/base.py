from __future__ import annotations

import re
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from whs.models import Question

OutputSink = Callable[[str], None]
ToolUseSink = Callable[[str, Any], None]

AUTH_ERROR_PATTERNS = [
    re.compile(r"invalid api key", re.IGNORECASE),
    re.compile(r"authentication[_\s]?failed", re.IGNORECASE),
    re.compile(r"please run /login", re.IGNORECASE),
    re.compile(r"unauthorized", re.IGNORECASE),
    re.compile(r"api key.*invalid", re.IGNORECASE),
    re.compile(r"token.*expired", re.IGNORECASE),
    re.compile(r"oauth.*error", re.IGNORECASE),
]

RATE_LIMIT_PATTERNS = [
    re.compile(r"rate[_\s]?limit", re.IGNORECASE),
    re.compile(r"\b429\b"),
    re.compile(r"too many requests", re.IGNORECASE),
    re.compile(r"overloaded", re.IGNORECASE),
    re.compile(r"usage limit reached", re.IGNORECASE),
]


class RunnerError(RuntimeError):
    """Raised when an agent runner cannot execute an invocation."""

    def __init__(
        self,
        message: str,
        *,
        runner: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.runner = runner
        self.exit_code = exit_code
        self.retriable = retriable


class RunnerProcessError(RunnerError):
    """Raised when the agent process cannot be started at all."""


class FailureKind(str, Enum):
    AUTHENTICATION = "authentication"
    RATE_LIMITED = "rate_limited"
    TRANSIENT = "transient"
    FATAL = "fatal"


def is_authentication_error(text: str) -> bool:
    return any(pattern.search(text) for pattern in AUTH_ERROR_PATTERNS)


def is_rate_limit_error(text: str) -> bool:
    return any(pattern.search(text) for pattern in RATE_LIMIT_PATTERNS)


@dataclass(slots=True)
class QuestionRequest:
    questions: list[Question]
    context: str = ""


@dataclass(slots=True)
class RunOptions:
    max_turns: int | None = None
    resume: str | None = None
    system_prompt: str | None = None
    agent_file: str | None = None
    allowed_tools: list[str] | None = None
    model: str | None = None
    log_file: Path | None = None
    on_output: OutputSink | None = None
    on_tool_use: ToolUseSink | None = None


@dataclass(slots=True)
class RunResult:
    session_id: str = ""
    output: str = ""
    cost_usd: float = 0.0
    turns: int = 0
    duration_ms: int = 0
    success: bool = False
    error: str | None = None
    is_auth_error: bool = False
    is_rate_limited: bool = False
    retriable: bool = True
    pending_question: QuestionRequest | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


def classify_failure(result: RunResult) -> FailureKind | None:
    """Return the failure class of a result, or None when it succeeded."""
    if result.success:
        return None
    if result.is_auth_error:
        return FailureKind.AUTHENTICATION
    if result.is_rate_limited:
        return FailureKind.RATE_LIMITED
    if result.error and is_rate_limit_error(result.error):
        return FailureKind.RATE_LIMITED
    if result.retriable:
        return FailureKind.TRANSIENT
    return FailureKind.FATAL


class AgentRunner(ABC):
    """Executes one agent invocation inside a working directory."""

    name: str = "runner"

    @abstractmethod
    async def run(self, prompt: str, cwd: Path, options: RunOptions | None = None) -> RunResult:
        """Start a fresh agent session."""

    @abstractmethod
    async def resume_with_answer(
        self,
        session_id: str,
        answer: str,
        cwd: Path,
        options: RunOptions | None = None,
    ) -> RunResult:
        """Reattach to an existing session and deliver a human answer."""

    @abstractmethod
    def abort(self) -> None:
        """Terminate every in-flight invocation owned by this runner."""
