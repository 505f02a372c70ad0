from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

import structlog

from whs.concurrency import ConcurrencyTracker
from whs.config import WhsConfig
from whs.metrics import MetricsStore
from whs.models import ActiveWork, ResumeTicket, utcnow
from whs.notifiers import BestEffortNotifier, Notifier, NullNotifier, create_notifier
from whs.questions import QuestionManager, UnknownQuestionError
from whs.recovery import ReconcileReport, acquire_lock, reconcile_stale_work, release_lock
from whs.runners import AgentRunner, RateLimitGuard, create_runner
from whs.scheduler import AdmissionScheduler
from whs.state import StateError, StateStore
from whs.workflow import WorkflowEngine
from whs.workitems import BeadsWorkItemStore, WorkItemStore
from whs.worktree import WorktreeManager

logger = structlog.get_logger(__name__)

__all__ = ["Dispatcher", "DispatcherStatus", "UnknownQuestionError", "load_status"]


@dataclass(slots=True)
class DispatcherStatus:
    active: list[ActiveWork] = field(default_factory=list)
    pending_question_count: int = 0
    paused: bool = False
    started_at: datetime | None = None
    today_cost: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "active": [work.to_dict() for work in self.active],
            "pending_question_count": self.pending_question_count,
            "paused": self.paused,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "today_cost": self.today_cost,
        }


def _today_cost(metrics: Any | None) -> float:
    if metrics is None:
        return 0.0
    try:
        return float(metrics.get_today_cost())
    except Exception as exc:
        logger.warning("metrics_failed", method="get_today_cost", error=str(exc))
        return 0.0


class Dispatcher:
    """Facade tying the scheduler, workflows and slots to the outside world."""

    def __init__(
        self,
        config: WhsConfig,
        *,
        runner: AgentRunner,
        work_items: WorkItemStore,
        store: StateStore,
        notifier: Notifier | None = None,
        metrics: Any | None = None,
        worktrees: WorktreeManager | None = None,
        log_dir: Path | None = None,
    ) -> None:
        self.config = config
        self.store = store
        self.metrics = metrics
        self.notifier: Notifier = (
            notifier if isinstance(notifier, BestEffortNotifier)
            else BestEffortNotifier(notifier or NullNotifier())
        )
        self.tracker = ConcurrencyTracker(
            config.concurrency.max_total, config.concurrency.max_per_project
        )
        self.tracker.add_listener(self._on_slot_event)
        self.questions = QuestionManager(store)
        self.runner = RateLimitGuard(runner, self.tracker, self.notifier)
        self.engine = WorkflowEngine(
            config,
            self.runner,
            self.tracker,
            self.questions,
            notifier=self.notifier,
            metrics=metrics,
            work_items=work_items,
            worktrees=worktrees,
            on_park=self._on_park,
            log_dir=log_dir,
        )
        self.scheduler = AdmissionScheduler(config, self.tracker, self.engine, work_items)
        self.log_dir = log_dir
        self.started_at: datetime | None = None
        self._wake = asyncio.Event()
        self._stop_requested = False
        self._persist = True
        self._save_requested = False
        self._writer: asyncio.Task[None] | None = None
        self._locked = False

    @classmethod
    def from_config(
        cls,
        config: WhsConfig,
        *,
        runner: AgentRunner | None = None,
        work_items: WorkItemStore | None = None,
    ) -> Dispatcher:
        state_dir = Path(config.dispatcher.state_dir).expanduser()
        return cls(
            config,
            runner=runner or create_runner(config.runner),
            work_items=work_items or BeadsWorkItemStore(config.projects),
            store=StateStore(state_dir),
            notifier=create_notifier(config.notifier),
            metrics=MetricsStore(state_dir / "metrics.db"),
            worktrees=WorktreeManager(config.dispatcher.worktree_root),
            log_dir=state_dir / "logs",
        )

    @property
    def state_dir(self) -> Path:
        return self.store.state_dir

    # slot events

    def _save_state(self) -> None:
        try:
            self.store.save_dispatcher_state(
                self.tracker.snapshot(),
                paused=self.tracker.paused,
                started_at=self.started_at.isoformat() if self.started_at else None,
            )
        except StateError as exc:
            logger.warning("state_save_failed", error=str(exc))

    def _schedule_save(self) -> None:
        """Persist the slot map without blocking the event loop.

        Requests made while a write is in flight coalesce into one more write.
        Outside a running loop the state is written directly.
        """
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._save_state()
            return
        self._save_requested = True
        if self._writer is None or self._writer.done():
            self._writer = loop.create_task(self._write_state())

    async def _write_state(self) -> None:
        while self._save_requested:
            self._save_requested = False
            await asyncio.to_thread(self._save_state)

    async def flush_state(self) -> None:
        """Wait for scheduled state writes to land."""
        while self._writer is not None and not self._writer.done():
            await self._writer

    def _on_slot_event(self, event: str, _work: ActiveWork) -> None:
        if self._persist:
            self._schedule_save()
        if event == "released":
            self._wake.set()

    def _on_park(self, ticket: ResumeTicket) -> None:
        self.scheduler.enqueue_resume(ticket)

    # lifecycle

    def startup(self) -> ReconcileReport:
        acquire_lock(self.state_dir)
        self._locked = True
        report = reconcile_stale_work(self.store, metrics=self.metrics, log_dir=self.log_dir)
        self.questions.restore()
        if self.store.load_dispatcher_state().get("paused"):
            self.tracker.pause("paused before restart")
        self.started_at = utcnow()
        self._save_state()
        logger.info(
            "dispatcher_started",
            projects=len(self.config.projects),
            max_total=self.config.concurrency.max_total,
            max_per_project=self.config.concurrency.max_per_project,
            paused=self.tracker.paused,
        )
        return report

    def shutdown(self) -> None:
        if self._locked:
            release_lock(self.state_dir)
            self._locked = False
        if self.metrics is not None and hasattr(self.metrics, "close"):
            self.metrics.close()
        logger.info("dispatcher_stopped")

    def _take_control(self) -> dict[str, Any]:
        try:
            return self.store.take_control()
        except StateError as exc:
            logger.warning("control_sync_failed", error=str(exc))
            return {}

    def sync_control(self) -> None:
        """Apply pause/resume/answer requests written by other processes."""
        self._apply_control(self._take_control())

    def _apply_control(self, control: dict[str, Any]) -> None:
        if "paused" in control:
            if control["paused"]:
                self.pause()
            else:
                self.resume()
        for item in control.get("answers", []):
            try:
                self.answer_question(str(item.get("id")), str(item.get("answer", "")))
            except UnknownQuestionError as exc:
                logger.warning("control_answer_ignored", error=str(exc))

    async def tick(self) -> list[str]:
        self._apply_control(await asyncio.to_thread(self._take_control))
        return await self.scheduler.tick()

    async def start(self, *, once: bool = False) -> None:
        self.startup()
        try:
            if once:
                await self.tick()
                await self.scheduler.drain()
                return
            while not self._stop_requested:
                self._wake.clear()
                await self.tick()
                with contextlib.suppress(TimeoutError):
                    await asyncio.wait_for(
                        self._wake.wait(), timeout=self.config.dispatcher.poll_interval_seconds
                    )
            await self.scheduler.drain()
        finally:
            await self.flush_state()
            self.shutdown()

    async def stop(self, force: bool = False) -> None:
        self._stop_requested = True
        self._wake.set()
        if not force:
            logger.info("dispatcher_stopping", running=self.scheduler.running_tasks)
            await self.scheduler.drain()
            return

        logger.warning("dispatcher_force_stop", active=self.tracker.total_active)
        # Active work stays on disk for the next start to reconcile.
        self._persist = False
        await self.flush_state()
        await asyncio.to_thread(self._save_state)
        self.engine.stopping = True
        self.runner.abort()
        self.scheduler.cancel_all()
        self.tracker.release_all()
        await self.scheduler.drain()

    # control surface

    def pause(self) -> None:
        if self.tracker.pause("manual"):
            self._schedule_save()

    def resume(self) -> None:
        if self.tracker.resume():
            self._schedule_save()
            self._wake.set()

    def answer_question(self, question_id: str, answer: str) -> None:
        ticket = self.questions.answer(question_id, answer)
        self.scheduler.enqueue_resume(ticket)
        self._wake.set()

    def get_status(self) -> DispatcherStatus:
        return DispatcherStatus(
            active=self.tracker.snapshot(),
            pending_question_count=self.questions.pending_count,
            paused=self.tracker.paused,
            started_at=self.started_at,
            today_cost=_today_cost(self.metrics),
        )


def load_status(config: WhsConfig) -> DispatcherStatus:
    """Status as persisted by a dispatcher running in another process."""
    state_dir = Path(config.dispatcher.state_dir).expanduser()
    store = StateStore(state_dir)
    state = store.load_dispatcher_state()
    started_at = state.get("started_at")
    metrics_path = state_dir / "metrics.db"
    metrics = MetricsStore(metrics_path) if metrics_path.exists() else None
    try:
        return DispatcherStatus(
            active=store.load_active_work(),
            pending_question_count=len(store.list_questions()),
            paused=bool(state.get("paused")),
            started_at=datetime.fromisoformat(started_at) if started_at else None,
            today_cost=_today_cost(metrics),
        )
    finally:
        if metrics is not None:
            metrics.close()
