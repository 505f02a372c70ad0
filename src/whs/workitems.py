from __future__ import annotations

import json
import subprocess
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

import structlog

from whs.config import ProjectConfig
from whs.models import WorkItem

logger = structlog.get_logger(__name__)


class WorkItemStoreError(RuntimeError):
    """Raised when the external work-item tracker cannot be reached."""


class WorkItemStore(ABC):
    @abstractmethod
    def list_ready(self, project: str) -> list[WorkItem]:
        """Items with no unresolved dependency that nobody is working on."""

    @abstractmethod
    def mark_in_progress(self, project: str, item_id: str) -> None: ...

    @abstractmethod
    def mark_closed(self, project: str, item_id: str, outcome: str) -> None:
        """Reflect a terminal workflow outcome (``done`` or ``blocked``)."""


def _dependency_ids(raw: Any) -> list[str]:
    ids: list[str] = []
    for item in raw or []:
        if isinstance(item, str):
            ids.append(item)
        elif isinstance(item, dict):
            dep = item.get("depends_on_id") or item.get("id")
            if dep:
                ids.append(str(dep))
    return ids


def normalize_bead(raw: dict[str, Any], project: str) -> WorkItem:
    status = str(raw.get("status") or "open")
    return WorkItem(
        id=str(raw["id"]),
        project=project,
        title=str(raw.get("title") or ""),
        description=str(raw.get("description") or ""),
        priority=int(raw.get("priority", 2)),
        type=str(raw.get("issue_type") or raw.get("type") or "task"),
        status="ready" if status == "open" else status,  # type: ignore[arg-type]
        labels=[str(label) for label in raw.get("labels") or []],
        dependencies=_dependency_ids(raw.get("dependencies")),
    )


class BeadsWorkItemStore(WorkItemStore):
    """Work items backed by the ``bd`` issue tracker inside each project repo."""

    def __init__(self, projects: list[ProjectConfig], *, binary: str = "bd") -> None:
        self.projects = {project.name: project for project in projects}
        self.binary = binary

    def _repo(self, project: str) -> Path:
        config = self.projects.get(project)
        if config is None:
            raise WorkItemStoreError(f"Unknown project: {project}")
        return config.resolved_repo_path

    def _run_bd(self, project: str, args: list[str]) -> Any:
        command = [self.binary, *args, "--json"]
        try:
            proc = subprocess.run(
                command,
                cwd=self._repo(project),
                text=True,
                capture_output=True,
            )
        except (FileNotFoundError, NotADirectoryError) as exc:
            raise WorkItemStoreError(f"Cannot run {self.binary} for {project}: {exc}") from exc
        if proc.returncode != 0:
            raise WorkItemStoreError(
                f"{self.binary} {' '.join(args)} failed: "
                f"{proc.stderr.strip() or proc.stdout.strip()}"
            )
        output = proc.stdout.strip()
        if not output:
            return None
        try:
            return json.loads(output)
        except json.JSONDecodeError as exc:
            raise WorkItemStoreError(f"{self.binary} returned invalid JSON: {exc}") from exc

    def list_ready(self, project: str) -> list[WorkItem]:
        raw = self._run_bd(project, ["ready"])
        if not isinstance(raw, list):
            return []
        items = [normalize_bead(item, project) for item in raw if isinstance(item, dict)]
        return [item for item in items if item.status == "ready"]

    def mark_in_progress(self, project: str, item_id: str) -> None:
        self._run_bd(project, ["update", item_id, "--status", "in_progress"])
        logger.debug("work_item_in_progress", project=project, item_id=item_id)

    def mark_closed(self, project: str, item_id: str, outcome: str) -> None:
        if outcome == "done":
            self._run_bd(project, ["close", item_id, "--reason", "Completed by whs workflow"])
        else:
            self._run_bd(project, ["update", item_id, "--status", "blocked"])
        logger.debug("work_item_closed", project=project, item_id=item_id, outcome=outcome)
