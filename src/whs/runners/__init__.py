from whs.config import RunnerConfig
from whs.runners.base import (
    AgentRunner,
    FailureKind,
    QuestionRequest,
    RunnerError,
    RunnerProcessError,
    RunOptions,
    RunResult,
    classify_failure,
)
from whs.runners.cli import CLIAgentRunner
from whs.runners.guard import RateLimitGuard
from whs.runners.sdk import SDKAgentRunner


def create_runner(config: RunnerConfig) -> AgentRunner:
    if config.type == "sdk":
        return SDKAgentRunner(default_max_turns=config.max_turns, model=config.model or None)
    return CLIAgentRunner(config.binary, default_max_turns=config.max_turns)


__all__ = [
    "AgentRunner",
    "CLIAgentRunner",
    "FailureKind",
    "QuestionRequest",
    "RateLimitGuard",
    "RunOptions",
    "RunResult",
    "RunnerError",
    "RunnerProcessError",
    "SDKAgentRunner",
    "classify_failure",
    "create_runner",
]
