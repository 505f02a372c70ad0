from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

WorkItemStatus = Literal["open", "ready", "in_progress", "blocked", "closed"]
WorkflowOutcome = Literal["done", "blocked"]
CIStatus = Literal["pending", "passed", "failed"]
WorkflowState = Literal[
    "running", "awaiting_answer", "rate_limited", "done", "blocked", "interrupted"
]

DONE = "DONE"
BLOCKED = "BLOCKED"
TERMINAL_AGENTS = frozenset({DONE, BLOCKED})


def utcnow() -> datetime:
    return datetime.now(UTC).replace(microsecond=0)


def _parse_time(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str) and value:
        return datetime.fromisoformat(value)
    return utcnow()


@dataclass(slots=True)
class WorkItem:
    id: str
    project: str
    title: str
    description: str = ""
    priority: int = 2
    type: str = "task"
    status: WorkItemStatus = "ready"
    labels: list[str] = field(default_factory=list)
    dependencies: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "project": self.project,
            "title": self.title,
            "description": self.description,
            "priority": self.priority,
            "type": self.type,
            "status": self.status,
            "labels": list(self.labels),
            "dependencies": list(self.dependencies),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkItem:
        return cls(
            id=str(data["id"]),
            project=str(data.get("project", "")),
            title=str(data.get("title", "")),
            description=str(data.get("description") or ""),
            priority=int(data.get("priority", 2)),
            type=str(data.get("type", "task")),
            status=data.get("status", "ready"),
            labels=[str(label) for label in data.get("labels") or []],
            dependencies=[str(dep) for dep in data.get("dependencies") or []],
        )


@dataclass(slots=True)
class Handoff:
    next_agent: str
    context: str
    pr_number: int | None = None
    ci_status: CIStatus | None = None

    @property
    def is_terminal(self) -> bool:
        return self.next_agent in TERMINAL_AGENTS


@dataclass(slots=True)
class QuestionOption:
    label: str
    description: str = ""


@dataclass(slots=True)
class Question:
    question: str
    header: str = ""
    options: list[QuestionOption] = field(default_factory=list)
    multi_select: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "question": self.question,
            "header": self.header,
            "options": [
                {"label": option.label, "description": option.description}
                for option in self.options
            ],
            "multiSelect": self.multi_select,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Question:
        options: list[QuestionOption] = []
        for raw in data.get("options") or []:
            if isinstance(raw, dict):
                options.append(
                    QuestionOption(
                        label=str(raw.get("label", "")),
                        description=str(raw.get("description") or ""),
                    )
                )
            elif isinstance(raw, str):
                options.append(QuestionOption(label=raw))
        return cls(
            question=str(data.get("question", "")),
            header=str(data.get("header") or ""),
            options=options,
            multi_select=bool(data.get("multiSelect", data.get("multi_select", False))),
        )


@dataclass(slots=True)
class PendingQuestion:
    id: str
    project: str
    work_item_id: str
    step_id: str
    epic_id: str
    session_id: str
    worktree: str
    context: str
    questions: list[Question] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    agent: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "project": self.project,
            "work_item_id": self.work_item_id,
            "step_id": self.step_id,
            "epic_id": self.epic_id,
            "session_id": self.session_id,
            "worktree": self.worktree,
            "context": self.context,
            "questions": [question.to_dict() for question in self.questions],
            "created_at": self.created_at.isoformat(),
            "agent": self.agent,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PendingQuestion:
        return cls(
            id=str(data["id"]),
            project=str(data.get("project", "")),
            work_item_id=str(data.get("work_item_id", "")),
            step_id=str(data.get("step_id", "")),
            epic_id=str(data.get("epic_id", "")),
            session_id=str(data.get("session_id", "")),
            worktree=str(data.get("worktree", "")),
            context=str(data.get("context") or ""),
            questions=[
                Question.from_dict(item)
                for item in data.get("questions") or []
                if isinstance(item, dict)
            ],
            created_at=_parse_time(data.get("created_at")),
            agent=str(data.get("agent") or ""),
        )


@dataclass(slots=True)
class ActiveWork:
    """One occupied concurrency slot, as shown on the status surface."""

    work_item: WorkItem
    workflow_epic_id: str
    workflow_step_id: str
    session_id: str
    worktree_path: str
    agent: str
    started_at: datetime = field(default_factory=utcnow)
    cost_so_far: float = 0.0

    @property
    def project(self) -> str:
        return self.work_item.project

    def to_dict(self) -> dict[str, Any]:
        return {
            "work_item": self.work_item.to_dict(),
            "workflow_epic_id": self.workflow_epic_id,
            "workflow_step_id": self.workflow_step_id,
            "session_id": self.session_id,
            "worktree_path": self.worktree_path,
            "agent": self.agent,
            "started_at": self.started_at.isoformat(),
            "cost_so_far": self.cost_so_far,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ActiveWork:
        return cls(
            work_item=WorkItem.from_dict(data["work_item"]),
            workflow_epic_id=str(data.get("workflow_epic_id", "")),
            workflow_step_id=str(data.get("workflow_step_id", "")),
            session_id=str(data.get("session_id") or ""),
            worktree_path=str(data.get("worktree_path") or ""),
            agent=str(data.get("agent", "")),
            started_at=_parse_time(data.get("started_at")),
            cost_so_far=float(data.get("cost_so_far") or 0.0),
        )


@dataclass(slots=True)
class Step:
    step_id: str
    agent_name: str
    session_id: str = ""
    started_at: datetime = field(default_factory=utcnow)
    completed_at: datetime | None = None
    cost_usd: float = 0.0
    turns: int = 0
    outcome: str | None = None
    attempt: int = 1

    @property
    def completed(self) -> bool:
        return self.completed_at is not None


@dataclass(slots=True)
class Workflow:
    workflow_epic_id: str
    source: WorkItem
    project: str
    worktree_path: str = ""
    created_at: datetime = field(default_factory=utcnow)
    steps: list[Step] = field(default_factory=list)
    state: WorkflowState = "running"
    outcome: WorkflowOutcome | None = None
    last_handoff: Handoff | None = None
    # Steps run by an earlier process; numbering continues after them.
    step_offset: int = 0

    @property
    def source_work_item_id(self) -> str:
        return self.source.id

    @property
    def current_step(self) -> Step | None:
        return self.steps[-1] if self.steps else None

    @property
    def total_cost(self) -> float:
        return sum(step.cost_usd for step in self.steps)


@dataclass(slots=True)
class ResumeTicket:
    """A suspended workflow waiting to be re-admitted ahead of new work."""

    workflow: Workflow
    agent: str
    session_id: str = ""
    answer: str | None = None
    reason: Literal["answer", "rate_limit"] = "answer"
    queued_at: datetime = field(default_factory=utcnow)

    @property
    def project(self) -> str:
        return self.workflow.project
