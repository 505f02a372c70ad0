"""Per-workflow state machine.

A workflow runs one step at a time inside its worktree. After each step the
runner's result decides what happens next:

* a valid handoff to another agent starts the next step, keeping the slot;
* ``DONE`` / ``BLOCKED`` end the workflow and release the slot;
* a pending question suspends the workflow and releases the slot;
* a rate limit parks the workflow for re-admission after ``resume()``;
* an authentication failure blocks immediately;
* other failures are retried ``max_step_retries`` times, then block.

Steps are only ever appended. A retry is a new step for the same agent.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import structlog

from whs.concurrency import ConcurrencyTracker, Slot
from whs.config import WhsConfig
from whs.handoff import (
    HandoffProtocolError,
    format_agent_prompt,
    format_step_context,
    get_handoff,
)
from whs.models import (
    BLOCKED,
    DONE,
    ActiveWork,
    ResumeTicket,
    Step,
    WorkItem,
    Workflow,
    WorkflowState,
    utcnow,
)
from whs.notifiers import Notifier
from whs.questions import QuestionManager
from whs.runners.base import (
    AgentRunner,
    FailureKind,
    QuestionRequest,
    RunnerError,
    RunOptions,
    RunResult,
    classify_failure,
)
from whs.workitems import WorkItemStore, WorkItemStoreError
from whs.worktree import WorktreeError, WorktreeManager

logger = structlog.get_logger(__name__)

RETRY_PROMPT = (
    "Your previous run stopped because of an error. "
    "Continue the task from where you left off."
)
RATE_LIMIT_RESUME_PROMPT = (
    "You were paused by a provider rate limit. Continue the task from where you left off."
)

ParkHook = Callable[[ResumeTicket], None]


@dataclass(slots=True)
class Continuation:
    session_id: str
    message: str
    is_answer: bool = False


class WorkflowEngine:
    def __init__(
        self,
        config: WhsConfig,
        runner: AgentRunner,
        tracker: ConcurrencyTracker,
        questions: QuestionManager,
        *,
        notifier: Notifier | None = None,
        metrics: Any | None = None,
        work_items: WorkItemStore | None = None,
        worktrees: WorktreeManager | None = None,
        on_park: ParkHook | None = None,
        log_dir: Path | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.config = config
        self.runner = runner
        self.tracker = tracker
        self.questions = questions
        self.notifier = notifier
        self.metrics = metrics
        self.work_items = work_items
        self.worktrees = worktrees
        self.on_park = on_park
        self.log_dir = log_dir
        self._sleep = sleep
        self.stopping = False

    # admission helpers

    def entry_agent(self, item: WorkItem) -> str:
        if "planning" in item.labels or item.type == "epic":
            return self.config.agents.planning_entry
        project = self.config.project(item.project)
        if project is not None and project.entry_agent:
            return project.entry_agent
        return self.config.agents.default_entry

    @staticmethod
    def create_workflow(item: WorkItem) -> Workflow:
        return Workflow(
            workflow_epic_id=f"wf-{uuid.uuid4().hex[:8]}",
            source=item,
            project=item.project,
        )

    @staticmethod
    def next_step_id(workflow: Workflow) -> str:
        number = workflow.step_offset + len(workflow.steps) + 1
        return f"{workflow.workflow_epic_id}.{number}"

    @staticmethod
    def active_work_for(workflow: Workflow, agent: str, step_id: str) -> ActiveWork:
        return ActiveWork(
            work_item=workflow.source,
            workflow_epic_id=workflow.workflow_epic_id,
            workflow_step_id=step_id,
            session_id="",
            worktree_path=workflow.worktree_path,
            agent=agent,
            cost_so_far=workflow.total_cost,
        )

    def _record_metric(self, method: str, *args: Any, **kwargs: Any) -> None:
        if self.metrics is None:
            return
        try:
            getattr(self.metrics, method)(*args, **kwargs)
        except Exception as exc:
            logger.warning("metrics_failed", method=method, error=str(exc))

    # entry points

    async def start(self, workflow: Workflow, agent: str, slot: Slot) -> WorkflowState:
        self._record_metric(
            "record_workflow_start",
            workflow.workflow_epic_id,
            workflow.project,
            workflow.source_work_item_id,
        )
        logger.info(
            "workflow_started",
            workflow_id=workflow.workflow_epic_id,
            project=workflow.project,
            work_item=workflow.source_work_item_id,
            agent=agent,
        )
        return await self.drive(workflow, agent, slot.step_id)

    async def resume(self, ticket: ResumeTicket, slot: Slot) -> WorkflowState:
        workflow = ticket.workflow
        workflow.state = "running"
        agent = ticket.agent or self.entry_agent(workflow.source)
        continuation: Continuation | None = None
        if ticket.answer is not None and ticket.session_id:
            continuation = Continuation(ticket.session_id, ticket.answer, is_answer=True)
        elif ticket.answer is not None:
            continuation = Continuation("", f"Human answer: {ticket.answer}", is_answer=True)
        elif ticket.session_id:
            continuation = Continuation(ticket.session_id, RATE_LIMIT_RESUME_PROMPT)
        logger.info(
            "workflow_resumed",
            workflow_id=workflow.workflow_epic_id,
            reason=ticket.reason,
            agent=agent,
        )
        return await self.drive(workflow, agent, slot.step_id, continuation=continuation)

    # the state machine

    async def drive(
        self,
        workflow: Workflow,
        agent: str,
        step_id: str,
        *,
        continuation: Continuation | None = None,
    ) -> WorkflowState:
        """Run steps until the workflow ends, suspends, or is parked."""
        try:
            return await self._drive(workflow, agent, step_id, continuation)
        except asyncio.CancelledError:
            workflow.state = "interrupted"
            logger.warning("workflow_interrupted", workflow_id=workflow.workflow_epic_id)
            raise
        except Exception as exc:
            logger.exception("workflow_crashed", workflow_id=workflow.workflow_epic_id)
            current = workflow.current_step
            slot_id = current.step_id if current is not None else step_id
            if current is not None and not current.completed:
                self._complete_step(current, f"failed: {exc}")
            return await self._finish(workflow, "blocked", f"Dispatcher error: {exc}", slot_id)

    async def _drive(
        self,
        workflow: Workflow,
        agent: str,
        step_id: str,
        continuation: Continuation | None,
    ) -> WorkflowState:
        workflow.state = "running"
        if not workflow.worktree_path:
            try:
                workflow.worktree_path = str(await self._ensure_worktree(workflow))
            except WorktreeError as exc:
                return await self._finish(
                    workflow, "blocked", f"Worktree setup failed: {exc}", step_id, error=True
                )
            self.tracker.update(step_id, worktree_path=workflow.worktree_path)

        attempt = 1
        while True:
            step = Step(step_id=step_id, agent_name=agent, attempt=attempt)
            workflow.steps.append(step)
            self._record_metric("record_step_start", step.step_id, workflow.workflow_epic_id, agent)
            logger.info(
                "step_started",
                workflow_id=workflow.workflow_epic_id,
                step_id=step.step_id,
                agent=agent,
                attempt=attempt,
                resumed=bool(continuation and continuation.session_id),
            )

            result = await self._invoke(workflow, step, continuation)
            step.session_id = result.session_id or (continuation.session_id if continuation else "")
            step.cost_usd += result.cost_usd
            step.turns = result.turns
            self.tracker.update(
                step_id, session_id=step.session_id, cost_so_far=workflow.total_cost
            )

            if self.stopping and not result.success:
                return self._interrupt(workflow, step)

            kind = classify_failure(result)
            halted = await self._halt_on_provider_failure(workflow, step, result, continuation)
            if halted is not None:
                return halted
            if result.pending_question is not None:
                self._complete_step(step, "question")
                return self._suspend(workflow, step, result.pending_question)

            if kind is None:
                try:
                    resolution = await get_handoff(
                        result.output,
                        session_id=step.session_id,
                        cwd=Path(workflow.worktree_path),
                        runner=self.runner,
                        known_agents=self.config.agents.known,
                        force=self.config.dispatcher.force_handoff,
                    )
                except HandoffProtocolError as exc:
                    if exc.forced_result is not None:
                        step.cost_usd += exc.forced_result.cost_usd
                        # The answer, if any, was already consumed by this step.
                        halted = await self._halt_on_provider_failure(
                            workflow, step, exc.forced_result, None
                        )
                        if halted is not None:
                            return halted
                    self._complete_step(step, "protocol_violation")
                    return await self._finish(
                        workflow, "blocked", f"Protocol violation: {exc}", step_id, error=True
                    )
                except RunnerError as exc:
                    self._complete_step(step, "protocol_violation")
                    return await self._finish(
                        workflow, "blocked", f"Handoff request failed: {exc}", step_id, error=True
                    )
                if resolution.forced_result is not None:
                    step.cost_usd += resolution.forced_result.cost_usd
                handoff = resolution.handoff
                workflow.last_handoff = handoff
                self._complete_step(step, f"handoff:{handoff.next_agent}")
                if handoff.next_agent == DONE:
                    return await self._finish(workflow, "done", handoff.context, step_id)
                if handoff.next_agent == BLOCKED:
                    return await self._finish(workflow, "blocked", handoff.context, step_id)

                next_id = self.next_step_id(workflow)
                self.tracker.rekey(step_id, next_id, agent=handoff.next_agent, session_id="")
                if self.notifier is not None:
                    work = self.tracker.get(next_id)
                    if work is not None:
                        self.notifier.notify_progress(work, f"handed off to {handoff.next_agent}")
                step_id, agent, attempt, continuation = next_id, handoff.next_agent, 1, None
                continue

            error = result.error or "unknown error"
            if kind is FailureKind.TRANSIENT and attempt <= self.config.dispatcher.max_step_retries:
                self._complete_step(step, f"retry: {error}")
                delay = self.config.dispatcher.retry_backoff_seconds * (2 ** (attempt - 1))
                logger.warning(
                    "step_retry_scheduled",
                    workflow_id=workflow.workflow_epic_id,
                    step_id=step.step_id,
                    agent=agent,
                    delay_seconds=delay,
                    error=error,
                )
                await self._sleep(delay)
                next_id = self.next_step_id(workflow)
                self.tracker.rekey(step_id, next_id)
                if step.session_id:
                    continuation = Continuation(step.session_id, RETRY_PROMPT)
                elif continuation is not None and continuation.is_answer:
                    continuation = Continuation("", f"Human answer: {continuation.message}", True)
                else:
                    continuation = None
                step_id, attempt = next_id, attempt + 1
                continue

            self._complete_step(step, f"failed: {error}")
            return await self._finish(workflow, "blocked", error, step_id, error=True)

    # step execution

    async def _ensure_worktree(self, workflow: Workflow) -> Path:
        project = self.config.project(workflow.project)
        if project is None:
            raise WorktreeError(f"Unknown project: {workflow.project}")
        if self.worktrees is None:
            return project.resolved_repo_path
        return await asyncio.to_thread(self.worktrees.ensure, project, workflow.source.id)

    def _agent_role(self, workflow: Workflow, agent: str) -> str:
        project = self.config.project(workflow.project)
        if project is not None and workflow.worktree_path:
            role_file = Path(workflow.worktree_path) / project.agents_path / f"{agent}.md"
            if role_file.is_file():
                return role_file.read_text(encoding="utf-8").strip()
        return f"You are the {agent} agent working on project {workflow.project}."

    def build_prompt(self, workflow: Workflow, agent: str, note: str | None = None) -> str:
        context = format_step_context(workflow.last_handoff) if workflow.last_handoff else None
        if note:
            context = f"{context}\n\n{note}" if context else note
        return format_agent_prompt(
            task_title=workflow.source.title,
            task_description=workflow.source.description,
            agent_role=self._agent_role(workflow, agent),
            workflow_context=context,
            known_agents=self.config.agents.known,
        )

    def _run_options(self, step: Step) -> RunOptions:
        def _on_tool_use(name: str, _tool_input: Any) -> None:
            logger.debug("agent_tool_use", step_id=step.step_id, tool=name)

        return RunOptions(
            max_turns=self.config.runner.max_turns,
            model=self.config.runner.model or None,
            log_file=self.log_dir / f"{step.step_id}.log" if self.log_dir else None,
            on_tool_use=_on_tool_use,
        )

    async def _invoke(
        self,
        workflow: Workflow,
        step: Step,
        continuation: Continuation | None,
    ) -> RunResult:
        cwd = Path(workflow.worktree_path)
        options = self._run_options(step)
        try:
            if continuation is not None and continuation.session_id:
                return await self.runner.resume_with_answer(
                    continuation.session_id, continuation.message, cwd, options
                )
            note = continuation.message if continuation is not None else None
            prompt = self.build_prompt(workflow, step.agent_name, note)
            return await self.runner.run(prompt, cwd, options)
        except RunnerError as exc:
            logger.error("runner_failed", step_id=step.step_id, error=str(exc))
            return RunResult(
                session_id=continuation.session_id if continuation else "",
                success=False,
                error=str(exc),
                retriable=exc.retriable,
            )

    # transitions

    def _complete_step(self, step: Step, outcome: str) -> None:
        step.completed_at = utcnow()
        step.outcome = outcome
        self._record_metric(
            "record_step_complete",
            step.step_id,
            step.cost_usd,
            outcome,
            step.turns,
            self.config.runner.max_turns,
        )
        logger.info(
            "step_completed",
            step_id=step.step_id,
            agent=step.agent_name,
            outcome=outcome,
            cost_usd=step.cost_usd,
            turns=step.turns,
        )

    async def _halt_on_provider_failure(
        self,
        workflow: Workflow,
        step: Step,
        result: RunResult,
        continuation: Continuation | None,
    ) -> WorkflowState | None:
        kind = classify_failure(result)
        if kind is FailureKind.RATE_LIMITED:
            self._complete_step(step, "rate_limited")
            return self._park(workflow, step, continuation)
        if kind is FailureKind.AUTHENTICATION:
            self._complete_step(step, "auth_error")
            return await self._finish(
                workflow,
                "blocked",
                f"Authentication failed: {result.error}",
                step.step_id,
                error=True,
            )
        return None

    def _suspend(self, workflow: Workflow, step: Step, request: QuestionRequest) -> WorkflowState:
        self.tracker.release(step.step_id)
        question = self.questions.suspend(workflow, step, request)
        if self.notifier is not None:
            self.notifier.notify_question(question)
        return workflow.state

    def _park(
        self, workflow: Workflow, step: Step, continuation: Continuation | None
    ) -> WorkflowState:
        self.tracker.release(step.step_id)
        workflow.state = "rate_limited"
        answer = continuation.message if continuation and continuation.is_answer else None
        ticket = ResumeTicket(
            workflow=workflow,
            agent=step.agent_name,
            session_id=step.session_id,
            answer=answer,
            reason="rate_limit",
        )
        logger.warning(
            "workflow_parked",
            workflow_id=workflow.workflow_epic_id,
            step_id=step.step_id,
            agent=step.agent_name,
        )
        if self.on_park is not None:
            self.on_park(ticket)
        return workflow.state

    def _interrupt(self, workflow: Workflow, step: Step) -> WorkflowState:
        # The slot stays held: forced stop releases every slot itself.
        workflow.state = "interrupted"
        logger.warning(
            "workflow_interrupted",
            workflow_id=workflow.workflow_epic_id,
            step_id=step.step_id,
        )
        return workflow.state

    async def _finish(
        self,
        workflow: Workflow,
        outcome: str,
        reason: str,
        slot_id: str,
        *,
        error: bool = False,
    ) -> WorkflowState:
        workflow.state = "done" if outcome == "done" else "blocked"
        workflow.outcome = workflow.state
        work = self.tracker.release(slot_id)
        if work is None:
            agent = workflow.current_step.agent_name if workflow.current_step else ""
            work = self.active_work_for(workflow, agent, slot_id)
        work.cost_so_far = workflow.total_cost

        self._record_metric("record_workflow_complete", workflow.workflow_epic_id, outcome)
        if self.work_items is not None:
            try:
                await asyncio.to_thread(
                    self.work_items.mark_closed, workflow.project, workflow.source.id, outcome
                )
            except WorkItemStoreError as exc:
                logger.error(
                    "work_item_update_failed",
                    work_item=workflow.source.id,
                    outcome=outcome,
                    error=str(exc),
                )
        if self.notifier is not None:
            if error:
                self.notifier.notify_error(work, reason)
            self.notifier.notify_complete(work, outcome)
        logger.info(
            "workflow_completed" if outcome == "done" else "workflow_blocked",
            workflow_id=workflow.workflow_epic_id,
            project=workflow.project,
            work_item=workflow.source.id,
            steps=len(workflow.steps),
            cost_usd=workflow.total_cost,
            reason=reason,
        )
        return workflow.state
