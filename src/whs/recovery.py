"""Startup routines: the single-dispatcher lock and stale-work reconciliation.

A dispatcher that was killed (or force-stopped) leaves its active work in
``state.json``. Nothing is resumed automatically: ``reconcile_stale_work``
reports those entries, marks their workflows ``interrupted`` in the metrics
store and clears them, so the operator decides what to re-run. A state-store
lock left by a dead writer is removed first.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import structlog

from whs.models import ActiveWork, utcnow
from whs.state import StateError, StateStore

logger = structlog.get_logger(__name__)

LOCK_FILE = "dispatcher.lock"


@dataclass(slots=True)
class ReconcileReport:
    stale: list[ActiveWork] = field(default_factory=list)
    removed_logs: list[Path] = field(default_factory=list)
    removed_state_lock: bool = False

    @property
    def clean(self) -> bool:
        return not self.stale


def pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def read_lock(state_dir: Path) -> dict[str, Any] | None:
    path = state_dir / LOCK_FILE
    if not path.exists():
        return None
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError:
        return None
    return payload if isinstance(payload, dict) else None


def acquire_lock(state_dir: Path) -> None:
    """Claim the dispatcher lock, reclaiming it when its owner is gone."""
    state_dir.mkdir(parents=True, exist_ok=True)
    path = state_dir / LOCK_FILE
    holder = read_lock(state_dir)
    if holder is not None:
        pid = int(holder.get("pid") or 0)
        if pid != os.getpid() and pid_alive(pid):
            raise StateError(
                f"Another dispatcher is running (pid {pid}, started {holder.get('started_at')})."
            )
        logger.warning("stale_lock_reclaimed", pid=pid)
        path.unlink(missing_ok=True)
    try:
        fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
    except FileExistsError as exc:
        raise StateError("Another dispatcher claimed the lock first.") from exc
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        json.dump({"pid": os.getpid(), "started_at": utcnow().isoformat()}, handle)


def release_lock(state_dir: Path) -> None:
    holder = read_lock(state_dir)
    if holder is not None and int(holder.get("pid") or 0) != os.getpid():
        return
    (state_dir / LOCK_FILE).unlink(missing_ok=True)


def clear_stale_state_lock(store: StateStore) -> bool:
    """Remove a state-store lock whose writer no longer exists."""
    try:
        raw = store.lock_file.read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        return False
    pid = int(raw) if raw.isdigit() else 0
    if pid_alive(pid):
        return False
    store.lock_file.unlink(missing_ok=True)
    logger.warning("stale_state_lock_removed", pid=pid)
    return True


def reconcile_stale_work(
    store: StateStore,
    *,
    metrics: Any | None = None,
    log_dir: Path | None = None,
) -> ReconcileReport:
    removed_lock = clear_stale_state_lock(store)
    report = ReconcileReport(stale=store.load_active_work(), removed_state_lock=removed_lock)
    for work in report.stale:
        logger.warning(
            "stale_work_found",
            workflow_id=work.workflow_epic_id,
            step_id=work.workflow_step_id,
            work_item=work.work_item.id,
            session_id=work.session_id,
        )
        if metrics is not None:
            try:
                metrics.mark_interrupted(work.workflow_epic_id)
            except Exception as exc:
                logger.warning("metrics_failed", method="mark_interrupted", error=str(exc))
        if log_dir is not None:
            log_file = log_dir / f"{work.workflow_step_id}.log"
            if log_file.exists():
                log_file.unlink()
                report.removed_logs.append(log_file)
    if report.stale:
        store.clear_active_work()
    logger.info("stale_work_reconciled", count=len(report.stale))
    return report
