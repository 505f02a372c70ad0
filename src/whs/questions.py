from __future__ import annotations

import uuid
from datetime import datetime

import structlog

from whs.models import (
    PendingQuestion,
    ResumeTicket,
    Step,
    WorkItem,
    Workflow,
    utcnow,
)
from whs.runners.base import QuestionRequest
from whs.state import StateStore

logger = structlog.get_logger(__name__)

CONTEXT_PREVIEW_LINES = 5


class UnknownQuestionError(KeyError):
    """Raised when an answer names a question that is not pending."""

    def __str__(self) -> str:
        return f"Unknown question: {self.args[0]}"


class QuestionManager:
    """Holds suspended workflows until a human answers their question.

    Suspended workflows occupy no concurrency slot. Answering a question turns
    it into a ``ResumeTicket`` the scheduler admits ahead of new work.
    """

    def __init__(self, store: StateStore | None = None) -> None:
        self.store = store
        self._pending: dict[str, PendingQuestion] = {}
        self._workflows: dict[str, Workflow] = {}

    def suspend(
        self,
        workflow: Workflow,
        step: Step,
        request: QuestionRequest,
    ) -> PendingQuestion:
        question = PendingQuestion(
            id=f"q-{uuid.uuid4().hex[:8]}",
            project=workflow.project,
            work_item_id=workflow.source_work_item_id,
            step_id=step.step_id,
            epic_id=workflow.workflow_epic_id,
            session_id=step.session_id,
            worktree=workflow.worktree_path,
            context=request.context,
            questions=list(request.questions),
            agent=step.agent_name,
        )
        workflow.state = "awaiting_answer"
        self._pending[question.id] = question
        self._workflows[question.id] = workflow
        if self.store is not None:
            self.store.add_question(question)
        logger.info(
            "question_asked",
            question_id=question.id,
            workflow_id=workflow.workflow_epic_id,
            step_id=step.step_id,
        )
        return question

    def restore(self) -> list[PendingQuestion]:
        """Reload questions persisted by an earlier dispatcher process."""
        if self.store is None:
            return []
        restored: list[PendingQuestion] = []
        for question in self.store.list_questions():
            if question.id in self._pending:
                continue
            self._pending[question.id] = question
            restored.append(question)
        if restored:
            logger.info("questions_restored", count=len(restored))
        return restored

    def get(self, question_id: str) -> PendingQuestion | None:
        return self._pending.get(question_id)

    def pending(self) -> list[PendingQuestion]:
        return sorted(self._pending.values(), key=lambda question: question.created_at)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def answer(self, question_id: str, answer: str) -> ResumeTicket:
        question = self._pending.pop(question_id, None)
        if question is None:
            raise UnknownQuestionError(question_id)
        workflow = self._workflows.pop(question_id, None) or self._rebuild_workflow(question)
        if self.store is not None:
            self.store.remove_question(question_id)
        logger.info(
            "question_answered",
            question_id=question_id,
            workflow_id=workflow.workflow_epic_id,
        )
        return ResumeTicket(
            workflow=workflow,
            agent=question.agent or (workflow.steps[-1].agent_name if workflow.steps else ""),
            session_id=question.session_id,
            answer=answer,
            reason="answer",
        )

    @staticmethod
    def _rebuild_workflow(question: PendingQuestion) -> Workflow:
        # The suspending process is gone; carry over what the question recorded.
        _, _, number = question.step_id.rpartition(".")
        return Workflow(
            workflow_epic_id=question.epic_id,
            source=WorkItem(
                id=question.work_item_id,
                project=question.project,
                title=question.work_item_id,
            ),
            project=question.project,
            worktree_path=question.worktree,
            state="awaiting_answer",
            step_offset=int(number) if number.isdigit() else 0,
        )


def format_time_ago(moment: datetime, now: datetime | None = None) -> str:
    seconds = int(((now or utcnow()) - moment).total_seconds())
    if seconds < 60:
        return "just now"
    if seconds < 3600:
        minutes = seconds // 60
        return f"{minutes} minute{'' if minutes == 1 else 's'} ago"
    if seconds < 86400:
        hours = seconds // 3600
        return f"{hours} hour{'' if hours == 1 else 's'} ago"
    days = seconds // 86400
    return f"{days} day{'' if days == 1 else 's'} ago"


def format_question_for_display(question: PendingQuestion, now: datetime | None = None) -> str:
    lines = [
        f"Question from {question.project} ({question.id})",
        f"   Work item: {question.work_item_id}",
        f"   Step: {question.step_id.split('.')[-1]}",
        f"   Asked: {format_time_ago(question.created_at, now)}",
        "",
    ]
    if question.context:
        context_lines = question.context.split("\n")
        lines.append("   Context:")
        lines.extend(f"   {line}" for line in context_lines[:CONTEXT_PREVIEW_LINES])
        if len(context_lines) > CONTEXT_PREVIEW_LINES:
            lines.append("   ...")
        lines.append("")
    for item in question.questions:
        lines.append(f"   Q: {item.question}")
        for index, option in enumerate(item.options, start=1):
            description = f" ({option.description})" if option.description else ""
            lines.append(f"      {index}. {option.label}{description}")
    return "\n".join(lines)
