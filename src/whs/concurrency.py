"""Concurrency slots and the dispatcher-wide pause flag.

All mutable scheduling state shared between workflows lives in one
``ConcurrencyTracker`` guarded by a single lock. Listeners are invoked after
the lock is released so they may call back into the tracker.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass, replace

import structlog

from whs.models import ActiveWork

logger = structlog.get_logger(__name__)

SlotListener = Callable[[str, ActiveWork], None]


@dataclass(slots=True, frozen=True)
class Slot:
    step_id: str
    project: str


class ConcurrencyTracker:
    def __init__(self, max_total: int, max_per_project: int) -> None:
        if max_total < 1 or max_per_project < 1:
            raise ValueError("Concurrency caps must be at least 1.")
        self.max_total = max_total
        self.max_per_project = max_per_project
        self._lock = threading.Lock()
        self._active: dict[str, ActiveWork] = {}
        self._by_project: dict[str, int] = {}
        self._total = 0
        self._paused = False
        self._pause_reason: str | None = None
        self._listeners: list[SlotListener] = []

    def add_listener(self, listener: SlotListener) -> None:
        """Register ``listener(event, work)`` for acquire/update/release events."""
        self._listeners.append(listener)

    def _notify(self, event: str, work: ActiveWork) -> None:
        for listener in list(self._listeners):
            try:
                listener(event, work)
            except Exception as exc:
                logger.warning("slot_listener_failed", slot_event=event, error=str(exc))

    def _has_capacity(self, project: str) -> bool:
        return (
            self._total < self.max_total
            and self._by_project.get(project, 0) < self.max_per_project
        )

    def can_admit(self, project: str) -> bool:
        with self._lock:
            return self._has_capacity(project)

    def try_acquire(self, work: ActiveWork) -> Slot | None:
        """Occupy a slot for ``work`` if both caps allow it."""
        step_id = work.workflow_step_id
        project = work.project
        with self._lock:
            if step_id in self._active:
                raise ValueError(f"Step {step_id} already holds a slot.")
            if not self._has_capacity(project):
                return None
            self._active[step_id] = work
            self._by_project[project] = self._by_project.get(project, 0) + 1
            self._total += 1
        logger.debug("slot_acquired", step_id=step_id, project=project)
        self._notify("acquired", work)
        return Slot(step_id=step_id, project=project)

    def rekey(
        self,
        old_step_id: str,
        new_step_id: str,
        *,
        agent: str | None = None,
        session_id: str | None = None,
    ) -> Slot:
        """Move a held slot to the workflow's next step without releasing it."""
        with self._lock:
            work = self._active.pop(old_step_id, None)
            if work is None:
                raise KeyError(old_step_id)
            if new_step_id in self._active:
                self._active[old_step_id] = work
                raise ValueError(f"Step {new_step_id} already holds a slot.")
            work.workflow_step_id = new_step_id
            if agent is not None:
                work.agent = agent
            if session_id is not None:
                work.session_id = session_id
            self._active[new_step_id] = work
        self._notify("updated", work)
        return Slot(step_id=new_step_id, project=work.project)

    def update(
        self,
        step_id: str,
        *,
        session_id: str | None = None,
        cost_so_far: float | None = None,
        worktree_path: str | None = None,
    ) -> None:
        with self._lock:
            work = self._active.get(step_id)
            if work is None:
                return
            if session_id is not None:
                work.session_id = session_id
            if cost_so_far is not None:
                work.cost_so_far = cost_so_far
            if worktree_path is not None:
                work.worktree_path = worktree_path
        self._notify("updated", work)

    def release(self, step_id: str) -> ActiveWork | None:
        with self._lock:
            work = self._active.pop(step_id, None)
            if work is None:
                return None
            remaining = self._by_project[work.project] - 1
            if remaining:
                self._by_project[work.project] = remaining
            else:
                del self._by_project[work.project]
            self._total -= 1
        logger.debug("slot_released", step_id=step_id, project=work.project)
        self._notify("released", work)
        return work

    def release_all(self) -> list[ActiveWork]:
        with self._lock:
            released = list(self._active.values())
            self._active.clear()
            self._by_project.clear()
            self._total = 0
        for work in released:
            self._notify("released", work)
        return released

    def get(self, step_id: str) -> ActiveWork | None:
        with self._lock:
            work = self._active.get(step_id)
            return replace(work) if work is not None else None

    def snapshot(self) -> list[ActiveWork]:
        with self._lock:
            return [replace(work) for work in self._active.values()]

    @property
    def total_active(self) -> int:
        with self._lock:
            return self._total

    def active_for_project(self, project: str) -> int:
        with self._lock:
            return self._by_project.get(project, 0)

    @property
    def paused(self) -> bool:
        with self._lock:
            return self._paused

    @property
    def pause_reason(self) -> str | None:
        with self._lock:
            return self._pause_reason

    def pause(self, reason: str | None = None) -> bool:
        """Set the pause flag. Returns True when the flag changed."""
        with self._lock:
            changed = not self._paused
            self._paused = True
            if changed or reason:
                self._pause_reason = reason
        if changed:
            logger.info("dispatcher_paused", reason=reason)
        return changed

    def resume(self) -> bool:
        with self._lock:
            changed = self._paused
            self._paused = False
            self._pause_reason = None
        if changed:
            logger.info("dispatcher_resumed")
        return changed

    def invariant_violations(self) -> list[str]:
        with self._lock:
            violations: list[str] = []
            if self._total != len(self._active):
                violations.append(f"total {self._total} != map size {len(self._active)}")
            if self._total != sum(self._by_project.values()):
                violations.append("total does not match per-project counters")
            if self._total > self.max_total:
                violations.append(f"total {self._total} exceeds max {self.max_total}")
            counted: dict[str, int] = {}
            for work in self._active.values():
                counted[work.project] = counted.get(work.project, 0) + 1
            if counted != self._by_project:
                violations.append("per-project counters disagree with the active map")
            for project, count in self._by_project.items():
                if count > self.max_per_project:
                    violations.append(f"project {project} holds {count} slots")
            return violations
