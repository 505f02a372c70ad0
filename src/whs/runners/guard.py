from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import Any

import structlog

from whs.concurrency import ConcurrencyTracker
from whs.notifiers import Notifier
from whs.runners.base import AgentRunner, FailureKind, RunOptions, RunResult, classify_failure

logger = structlog.get_logger(__name__)

GuardEventHook = Callable[[dict[str, Any]], None]


class RateLimitGuard(AgentRunner):
    """Wraps a runner and pauses admission when the provider throttles.

    A throttled result is returned to the caller untouched apart from the
    ``is_rate_limited`` flag; steps already running elsewhere are not affected.
    """

    def __init__(
        self,
        inner: AgentRunner,
        tracker: ConcurrencyTracker,
        notifier: Notifier | None = None,
        event_hook: GuardEventHook | None = None,
    ) -> None:
        self.inner = inner
        self.tracker = tracker
        self.notifier = notifier
        self.event_hook = event_hook

    @property
    def name(self) -> str:  # type: ignore[override]
        return self.inner.name

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def _inspect(self, result: RunResult, call: str) -> RunResult:
        if classify_failure(result) is not FailureKind.RATE_LIMITED:
            return result
        result.is_rate_limited = True
        error = result.error or "rate limited"
        changed = self.tracker.pause(f"rate limit: {error}")
        logger.warning(
            "rate_limit_detected",
            runner=self.inner.name,
            call=call,
            session_id=result.session_id,
            error=error,
        )
        if changed and self.notifier is not None:
            self.notifier.notify_rate_limit(error)
        self._emit(
            {
                "event": "rate_limit_detected",
                "runner": self.inner.name,
                "call": call,
                "error": error,
                "paused": True,
            }
        )
        return result

    async def run(self, prompt: str, cwd: Path, options: RunOptions | None = None) -> RunResult:
        result = await self.inner.run(prompt, cwd, options)
        return self._inspect(result, "run")

    async def resume_with_answer(
        self,
        session_id: str,
        answer: str,
        cwd: Path,
        options: RunOptions | None = None,
    ) -> RunResult:
        result = await self.inner.resume_with_answer(session_id, answer, cwd, options)
        return self._inspect(result, "resume_with_answer")

    def abort(self) -> None:
        self.inner.abort()
