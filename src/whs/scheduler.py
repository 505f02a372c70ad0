"""Admission control: decides which workflow gets the next free slot.

Each ``tick`` first re-admits parked workflows (answered questions and
rate-limited steps, oldest first), then admits new work items ordered by
priority, dependency readiness and first-seen order, interleaving projects
round-robin among equals. A full global cap ends the tick; a full project only
skips that project's candidates.
"""

from __future__ import annotations

import asyncio
import itertools
from collections import deque
from collections.abc import Coroutine
from typing import Any

import structlog

from whs.concurrency import ConcurrencyTracker
from whs.config import WhsConfig
from whs.models import ResumeTicket, WorkItem, WorkflowState
from whs.workflow import WorkflowEngine
from whs.workitems import WorkItemStore

logger = structlog.get_logger(__name__)

UNBIND_STATES = {"done", "blocked", "interrupted"}


class AdmissionScheduler:
    def __init__(
        self,
        config: WhsConfig,
        tracker: ConcurrencyTracker,
        engine: WorkflowEngine,
        work_items: WorkItemStore,
    ) -> None:
        self.config = config
        self.tracker = tracker
        self.engine = engine
        self.work_items = work_items
        self._resume_queue: deque[ResumeTicket] = deque()
        self._bound: set[str] = set()
        self._first_seen: dict[tuple[str, str], int] = {}
        self._counter = itertools.count()
        self._project_order = [project.name for project in config.projects]
        self._rr_start = 0
        self._tasks: set[asyncio.Task[WorkflowState]] = set()
        self._tick_lock = asyncio.Lock()

    # resume queue

    def enqueue_resume(self, ticket: ResumeTicket) -> None:
        self._resume_queue.append(ticket)
        self._bound.add(ticket.workflow.source_work_item_id)
        logger.debug(
            "resume_queued",
            workflow_id=ticket.workflow.workflow_epic_id,
            reason=ticket.reason,
        )

    @property
    def resume_queue_length(self) -> int:
        return len(self._resume_queue)

    @property
    def bound_items(self) -> set[str]:
        return set(self._bound)

    def bind(self, item_id: str) -> None:
        self._bound.add(item_id)

    # task bookkeeping

    @property
    def running_tasks(self) -> int:
        return len(self._tasks)

    def _spawn(self, item_id: str, coro: Coroutine[Any, Any, WorkflowState]) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)

        def _done(finished: asyncio.Task[WorkflowState]) -> None:
            self._tasks.discard(finished)
            if finished.cancelled():
                self._bound.discard(item_id)
                return
            exc = finished.exception()
            if exc is not None:
                logger.error("workflow_task_failed", work_item=item_id, error=str(exc))
                self._bound.discard(item_id)
                return
            if finished.result() in UNBIND_STATES:
                self._bound.discard(item_id)

        task.add_done_callback(_done)

    async def drain(self) -> None:
        """Wait until no workflow task is running."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def cancel_all(self) -> None:
        for task in list(self._tasks):
            task.cancel()

    # candidate ordering

    def _projects_with_capacity(self) -> list[str]:
        return [
            name
            for name in self._project_order
            if self.tracker.active_for_project(name) < self.tracker.max_per_project
        ]

    async def _collect_candidates(self, projects: list[str]) -> list[WorkItem]:
        candidates: list[WorkItem] = []
        for project in projects:
            items = await asyncio.to_thread(self.work_items.list_ready, project)
            for item in items:
                self._first_seen.setdefault((item.project, item.id), next(self._counter))
                candidates.append(item)
        self._forget_unlisted(set(projects), candidates)
        return candidates

    def _forget_unlisted(self, polled: set[str], listed: list[WorkItem]) -> None:
        """Drop first-seen entries for items a polled project no longer lists."""
        keep = {(item.project, item.id) for item in listed}
        for key in list(self._first_seen):
            project, item_id = key
            if project in polled and key not in keep and item_id not in self._bound:
                del self._first_seen[key]

    @property
    def tracked_items(self) -> int:
        return len(self._first_seen)

    def order_candidates(self, items: list[WorkItem]) -> list[WorkItem]:
        """Filter out bound or blocked items and order the rest for admission."""
        pending_ids = {item.id for item in items} | self._bound
        eligible = [
            item
            for item in items
            if item.status == "ready"
            and item.id not in self._bound
            and not any(dep in pending_ids for dep in item.dependencies)
        ]
        for item in eligible:
            self._first_seen.setdefault((item.project, item.id), next(self._counter))

        def _key(item: WorkItem) -> tuple[int, int]:
            return (item.priority, 0 if not item.dependencies else 1)

        rotation = self._project_order[self._rr_start :] + self._project_order[: self._rr_start]
        rank = {name: index for index, name in enumerate(rotation)}

        ordered: list[WorkItem] = []
        eligible.sort(key=lambda item: (_key(item), self._first_seen[(item.project, item.id)]))
        for _, group in itertools.groupby(eligible, key=_key):
            by_project: dict[str, list[WorkItem]] = {}
            for item in group:
                by_project.setdefault(item.project, []).append(item)
            queues = [
                by_project[name]
                for name in sorted(by_project, key=lambda name: rank.get(name, len(rank)))
            ]
            for round_items in itertools.zip_longest(*queues):
                ordered.extend(item for item in round_items if item is not None)
        return ordered

    def _advance_round_robin(self, project: str) -> None:
        if project in self._project_order:
            self._rr_start = (self._project_order.index(project) + 1) % len(self._project_order)

    # admission

    def _global_full(self) -> bool:
        return self.tracker.total_active >= self.tracker.max_total

    def _admit_resumes(self) -> tuple[list[str], bool]:
        admitted: list[str] = []
        kept: deque[ResumeTicket] = deque()
        global_full = False
        while self._resume_queue:
            ticket = self._resume_queue.popleft()
            if self._global_full():
                kept.append(ticket)
                global_full = True
                continue
            workflow = ticket.workflow
            agent = ticket.agent or self.engine.entry_agent(workflow.source)
            step_id = self.engine.next_step_id(workflow)
            slot = self.tracker.try_acquire(self.engine.active_work_for(workflow, agent, step_id))
            if slot is None:
                kept.append(ticket)
                continue
            ticket.agent = agent
            self._spawn(workflow.source_work_item_id, self.engine.resume(ticket, slot))
            admitted.append(workflow.workflow_epic_id)
        self._resume_queue = kept
        return admitted, global_full

    async def tick(self) -> list[str]:
        """Admit as much work as capacity allows. Returns admitted workflow ids."""
        async with self._tick_lock:
            if self.tracker.paused:
                logger.debug("tick_skipped_paused")
                return []

            admitted, global_full = self._admit_resumes()
            if global_full or self._global_full():
                return admitted

            projects = self._projects_with_capacity()
            if not projects:
                return admitted
            candidates = await self._collect_candidates(projects)
            if self.tracker.paused:
                return admitted

            skipped_projects: set[str] = set()
            for item in self.order_candidates(candidates):
                if item.project in skipped_projects:
                    continue
                if self._global_full():
                    break
                workflow = self.engine.create_workflow(item)
                agent = self.engine.entry_agent(item)
                step_id = self.engine.next_step_id(workflow)
                slot = self.tracker.try_acquire(
                    self.engine.active_work_for(workflow, agent, step_id)
                )
                if slot is None:
                    if self._global_full():
                        break
                    skipped_projects.add(item.project)
                    continue
                try:
                    await asyncio.to_thread(self.work_items.mark_in_progress, item.project, item.id)
                except Exception:
                    self.tracker.release(slot.step_id)
                    raise
                self._bound.add(item.id)
                self._advance_round_robin(item.project)
                self._spawn(item.id, self.engine.start(workflow, agent, slot))
                admitted.append(workflow.workflow_epic_id)
                logger.info(
                    "workflow_admitted",
                    workflow_id=workflow.workflow_epic_id,
                    project=item.project,
                    work_item=item.id,
                    priority=item.priority,
                    agent=agent,
                )
            return admitted
