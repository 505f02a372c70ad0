from __future__ import annotations

from abc import ABC, abstractmethod

import click
import structlog

from whs.config import NotifierConfig
from whs.models import ActiveWork, PendingQuestion

logger = structlog.get_logger(__name__)


class Notifier(ABC):
    """Outbound channel for lifecycle events that a human may care about."""

    @abstractmethod
    def notify_question(self, question: PendingQuestion) -> None: ...

    @abstractmethod
    def notify_progress(self, work: ActiveWork, message: str) -> None: ...

    @abstractmethod
    def notify_complete(self, work: ActiveWork, status: str) -> None: ...

    @abstractmethod
    def notify_error(self, work: ActiveWork, error: str) -> None: ...

    @abstractmethod
    def notify_rate_limit(self, error: str) -> None: ...


class NullNotifier(Notifier):
    def notify_question(self, question: PendingQuestion) -> None:
        pass

    def notify_progress(self, work: ActiveWork, message: str) -> None:
        pass

    def notify_complete(self, work: ActiveWork, status: str) -> None:
        pass

    def notify_error(self, work: ActiveWork, error: str) -> None:
        pass

    def notify_rate_limit(self, error: str) -> None:
        pass


class ConsoleNotifier(Notifier):
    def notify_question(self, question: PendingQuestion) -> None:
        first = question.questions[0].question if question.questions else question.context
        click.secho(
            f"[{question.project}] {question.work_item_id} needs an answer ({question.id}): {first}",
            fg="yellow",
            err=True,
        )
        click.echo(f"  whs answer {question.id} \"<your answer>\"", err=True)

    def notify_progress(self, work: ActiveWork, message: str) -> None:
        click.echo(f"[{work.project}] {work.work_item.id} ({work.agent}): {message}", err=True)

    def notify_complete(self, work: ActiveWork, status: str) -> None:
        color = "green" if status == "done" else "red"
        click.secho(
            f"[{work.project}] {work.work_item.id} {status} (${work.cost_so_far:.2f})",
            fg=color,
            err=True,
        )

    def notify_error(self, work: ActiveWork, error: str) -> None:
        click.secho(f"[{work.project}] {work.work_item.id} error: {error}", fg="red", err=True)

    def notify_rate_limit(self, error: str) -> None:
        click.secho(
            f"Rate limit hit, dispatcher paused. Run `whs resume` when ready. ({error})",
            fg="magenta",
            err=True,
        )


class BestEffortNotifier(Notifier):
    """Forwards to another notifier, logging and dropping any failure."""

    def __init__(self, inner: Notifier) -> None:
        self.inner = inner

    def _call(self, method: str, *args: object) -> None:
        try:
            getattr(self.inner, method)(*args)
        except Exception as exc:
            logger.warning("notifier_failed", method=method, error=str(exc))

    def notify_question(self, question: PendingQuestion) -> None:
        self._call("notify_question", question)

    def notify_progress(self, work: ActiveWork, message: str) -> None:
        self._call("notify_progress", work, message)

    def notify_complete(self, work: ActiveWork, status: str) -> None:
        self._call("notify_complete", work, status)

    def notify_error(self, work: ActiveWork, error: str) -> None:
        self._call("notify_error", work, error)

    def notify_rate_limit(self, error: str) -> None:
        self._call("notify_rate_limit", error)


def create_notifier(config: NotifierConfig) -> Notifier:
    inner: Notifier = ConsoleNotifier() if config.type == "console" else NullNotifier()
    return BestEffortNotifier(inner)
