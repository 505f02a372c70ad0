import asyncio
import os
import signal
import sys
from pathlib import Path
from typing import Any

import pytest

from whs.cli import _run_dispatcher
from whs.config import ProjectConfig, WhsConfig
from whs.dispatcher import Dispatcher, UnknownQuestionError, load_status
from whs.metrics import MetricsStore
from whs.models import Question, WorkItem
from whs.recovery import LOCK_FILE
from whs.runners.base import AgentRunner, QuestionRequest, RunOptions, RunResult
from whs.state import StateError, StateStore
from whs.workflow import RATE_LIMIT_RESUME_PROMPT
from whs.workitems import WorkItemStore

DONE_OUTPUT = "```yaml\nnext_agent: DONE\ncontext: finished\n```"


def _done(session_id: str = "sess", cost: float = 0.1) -> RunResult:
    return RunResult(session_id=session_id, output=DONE_OUTPUT, cost_usd=cost, success=True)


class ScriptedRunner(AgentRunner):
    name = "scripted"

    def __init__(self, results: list[RunResult]) -> None:
        self.results = list(results)
        self.calls: list[tuple[str, str, str]] = []
        self.aborted = False

    async def run(self, prompt: str, cwd: Path, options: RunOptions | None = None) -> RunResult:
        self.calls.append(("run", "", prompt))
        return self.results.pop(0)

    async def resume_with_answer(
        self, session_id: str, answer: str, cwd: Path, options: RunOptions | None = None
    ) -> RunResult:
        self.calls.append(("resume", session_id, answer))
        return self.results.pop(0)

    def abort(self) -> None:
        self.aborted = True


class HangingRunner(ScriptedRunner):
    def __init__(self) -> None:
        super().__init__([])

    async def run(self, prompt: str, cwd: Path, options: RunOptions | None = None) -> RunResult:
        self.calls.append(("run", "", prompt))
        await asyncio.Event().wait()
        raise AssertionError("unreachable")


class FakeBacklog(WorkItemStore):
    def __init__(self, items: list[WorkItem]) -> None:
        self.items = {item.id: item for item in items}
        self.closed: list[tuple[str, str]] = []

    def list_ready(self, project: str) -> list[WorkItem]:
        return [
            item
            for item in self.items.values()
            if item.project == project and item.status == "ready"
        ]

    def mark_in_progress(self, project: str, item_id: str) -> None:
        self.items[item_id].status = "in_progress"

    def mark_closed(self, project: str, item_id: str, outcome: str) -> None:
        self.items[item_id].status = "closed"
        self.closed.append((item_id, outcome))


def _config(tmp_path: Path) -> WhsConfig:
    repo = tmp_path / "repo"
    repo.mkdir(exist_ok=True)
    config = WhsConfig(projects=[ProjectConfig(name="api", repo_path=str(repo))])
    config.dispatcher.state_dir = str(tmp_path / "state")
    config.dispatcher.retry_backoff_seconds = 0.0
    config.dispatcher.poll_interval_seconds = 0.01
    return config


def _dispatcher(
    tmp_path: Path, runner: AgentRunner, items: list[WorkItem] | None = None
) -> tuple[Dispatcher, FakeBacklog]:
    config = _config(tmp_path)
    state_dir = Path(config.dispatcher.state_dir)
    backlog = FakeBacklog(items if items is not None else [_item()])
    dispatcher = Dispatcher(
        config,
        runner=runner,
        work_items=backlog,
        store=StateStore(state_dir),
        metrics=MetricsStore(state_dir / "metrics.db"),
        log_dir=state_dir / "logs",
    )
    return dispatcher, backlog


def _item(item_id: str = "bd-1") -> WorkItem:
    return WorkItem(id=item_id, project="api", title="Add login")


async def _cycle(dispatcher: Dispatcher) -> list[str]:
    admitted = await dispatcher.tick()
    await dispatcher.scheduler.drain()
    await dispatcher.flush_state()
    return admitted


def test_run_once_completes_ready_work(tmp_path: Path) -> None:
    runner = ScriptedRunner([_done(cost=0.25)])
    dispatcher, backlog = _dispatcher(tmp_path, runner)

    asyncio.run(dispatcher.start(once=True))

    assert backlog.closed == [("bd-1", "done")]
    assert not (dispatcher.state_dir / LOCK_FILE).exists()
    assert dispatcher.store.load_active_work() == []
    metrics = MetricsStore(dispatcher.state_dir / "metrics.db")
    assert metrics.get_total_cost() == pytest.approx(0.25)
    assert metrics.get_recent_workflows()[0]["status"] == "done"
    metrics.close()


def test_status_reflects_active_work(tmp_path: Path) -> None:
    dispatcher, _backlog = _dispatcher(tmp_path, HangingRunner())
    dispatcher.startup()

    async def scenario() -> None:
        await dispatcher.tick()
        await asyncio.sleep(0.05)
        await dispatcher.flush_state()
        status = dispatcher.get_status()
        assert len(status.active) == 1
        assert status.active[0].work_item.id == "bd-1"
        assert status.active[0].agent == "implementation"
        assert status.paused is False
        assert status.started_at is not None

        persisted = load_status(dispatcher.config)
        assert [work.workflow_step_id for work in persisted.active] == [
            status.active[0].workflow_step_id
        ]
        payload: dict[str, Any] = status.to_dict()
        assert payload["active"][0]["work_item"]["id"] == "bd-1"
        await dispatcher.stop(force=True)

    asyncio.run(scenario())
    dispatcher.shutdown()


def test_unknown_answer_raises(tmp_path: Path) -> None:
    dispatcher, _backlog = _dispatcher(tmp_path, ScriptedRunner([]))

    with pytest.raises(UnknownQuestionError):
        dispatcher.answer_question("q-missing", "yes")


def test_rate_limit_pauses_until_resumed(tmp_path: Path) -> None:
    throttled = RunResult(session_id="sess-r", success=False, error="rate_limit_error: slow down")
    runner = ScriptedRunner([throttled, _done(session_id="sess-r")])
    dispatcher, backlog = _dispatcher(tmp_path, runner)
    dispatcher.startup()

    async def scenario() -> None:
        admitted = await _cycle(dispatcher)
        assert len(admitted) == 1
        assert dispatcher.get_status().active == []
        assert dispatcher.get_status().paused is True
        assert dispatcher.store.load_dispatcher_state()["paused"] is True
        assert await _cycle(dispatcher) == []

        dispatcher.resume()
        assert dispatcher.get_status().paused is False
        await _cycle(dispatcher)

    asyncio.run(scenario())
    dispatcher.shutdown()

    resumes = [call for call in runner.calls if call[0] == "resume"]
    assert resumes == [("resume", "sess-r", RATE_LIMIT_RESUME_PROMPT)]
    assert backlog.closed == [("bd-1", "done")]


def test_rate_limit_leaves_running_steps_alone(tmp_path: Path) -> None:
    throttled = RunResult(session_id="sess-r", success=False, error="429 Too Many Requests")
    runner = ScriptedRunner([throttled, _done(session_id="sess-ok")])
    dispatcher, backlog = _dispatcher(tmp_path, runner, [_item("bd-1"), _item("bd-2")])
    dispatcher.startup()

    async def scenario() -> None:
        admitted = await _cycle(dispatcher)
        assert len(admitted) == 2

    asyncio.run(scenario())
    dispatcher.shutdown()

    assert dispatcher.tracker.paused is True
    assert backlog.closed == [("bd-2", "done")]
    assert dispatcher.scheduler.resume_queue_length == 1


def test_pause_survives_restart(tmp_path: Path) -> None:
    dispatcher, _backlog = _dispatcher(tmp_path, ScriptedRunner([]))
    dispatcher.startup()
    dispatcher.pause()
    dispatcher.shutdown()

    restarted, backlog = _dispatcher(tmp_path, ScriptedRunner([]))
    restarted.startup()
    assert restarted.get_status().paused is True
    assert asyncio.run(restarted.tick()) == []
    assert backlog.items["bd-1"].status == "ready"
    restarted.shutdown()


def test_answer_via_control_channel_resumes_workflow(tmp_path: Path) -> None:
    asked = RunResult(
        session_id="sess-q",
        output="Need a decision.",
        success=True,
        pending_question=QuestionRequest(questions=[Question(question="Which database?")]),
    )
    runner = ScriptedRunner([asked, _done(session_id="sess-q")])
    dispatcher, backlog = _dispatcher(tmp_path, runner)
    dispatcher.startup()

    async def scenario() -> None:
        await _cycle(dispatcher)
        questions = dispatcher.store.list_questions()
        assert len(questions) == 1
        assert dispatcher.get_status().pending_question_count == 1
        assert dispatcher.get_status().active == []

        dispatcher.store.queue_answer("q-unknown", "ignored")
        dispatcher.store.queue_answer(questions[0].id, "Postgres")
        await _cycle(dispatcher)

    asyncio.run(scenario())
    dispatcher.shutdown()

    assert runner.calls[-1] == ("resume", "sess-q", "Postgres")
    assert backlog.closed == [("bd-1", "done")]
    assert dispatcher.store.list_questions() == []


def test_pause_request_via_control_channel(tmp_path: Path) -> None:
    dispatcher, _backlog = _dispatcher(tmp_path, ScriptedRunner([]))
    dispatcher.store.request_pause(True)

    dispatcher.sync_control()
    assert dispatcher.tracker.paused is True

    dispatcher.store.request_pause(False)
    dispatcher.sync_control()
    assert dispatcher.tracker.paused is False


def test_forced_stop_leaves_work_for_reconciliation(tmp_path: Path) -> None:
    runner = HangingRunner()
    dispatcher, _backlog = _dispatcher(tmp_path, runner)
    dispatcher.startup()

    async def scenario() -> str:
        admitted = await dispatcher.tick()
        await asyncio.sleep(0.05)
        await dispatcher.stop(force=True)
        return admitted[0]

    workflow_id = asyncio.run(scenario())
    dispatcher.shutdown()

    assert runner.aborted is True
    assert dispatcher.tracker.total_active == 0
    stale = dispatcher.store.load_active_work()
    assert [work.workflow_epic_id for work in stale] == [workflow_id]

    restarted, _ = _dispatcher(tmp_path, ScriptedRunner([]), items=[])
    report = restarted.startup()
    assert [work.workflow_epic_id for work in report.stale] == [workflow_id]
    assert restarted.store.load_active_work() == []
    assert restarted.metrics.get_workflow(workflow_id)["status"] == "interrupted"
    restarted.shutdown()


def test_loop_stops_gracefully(tmp_path: Path) -> None:
    runner = ScriptedRunner([_done()])
    dispatcher, backlog = _dispatcher(tmp_path, runner)

    async def scenario() -> None:
        loop_task = asyncio.create_task(dispatcher.start())
        await asyncio.sleep(0.1)
        await dispatcher.stop()
        await loop_task

    asyncio.run(scenario())

    assert backlog.closed == [("bd-1", "done")]
    assert not (dispatcher.state_dir / LOCK_FILE).exists()


def test_second_dispatcher_is_refused(tmp_path: Path) -> None:
    dispatcher, _backlog = _dispatcher(tmp_path, ScriptedRunner([]))
    (Path(dispatcher.config.dispatcher.state_dir) / LOCK_FILE).write_text(
        '{"pid": 1}', encoding="utf-8"
    )

    with pytest.raises(StateError, match="Another dispatcher"):
        dispatcher.startup()


def test_from_config_wires_default_collaborators(tmp_path: Path) -> None:
    config = _config(tmp_path)
    dispatcher = Dispatcher.from_config(config, runner=ScriptedRunner([]))

    assert dispatcher.runner.name == "scripted"
    assert dispatcher.log_dir == Path(config.dispatcher.state_dir) / "logs"
    assert isinstance(dispatcher.metrics, MetricsStore)
    dispatcher.shutdown()


@pytest.mark.skipif(sys.platform == "win32", reason="needs POSIX signal handlers")
def test_first_signal_waits_and_second_forces(tmp_path: Path) -> None:
    runner = HangingRunner()
    dispatcher, _backlog = _dispatcher(tmp_path, runner)

    async def scenario() -> None:
        loop_task = asyncio.create_task(_run_dispatcher(dispatcher, False))
        await asyncio.sleep(0.1)
        os.kill(os.getpid(), signal.SIGTERM)
        await asyncio.sleep(0.1)
        assert not loop_task.done()
        assert runner.aborted is False

        os.kill(os.getpid(), signal.SIGTERM)
        await asyncio.wait_for(loop_task, timeout=5)

    asyncio.run(scenario())

    assert runner.aborted is True
    assert len(dispatcher.store.load_active_work()) == 1
    assert not (dispatcher.state_dir / LOCK_FILE).exists()


def test_held_state_lock_does_not_stall_workflows(tmp_path: Path) -> None:
    dispatcher, backlog = _dispatcher(tmp_path, ScriptedRunner([_done()]))
    dispatcher.startup()

    async def scenario() -> float:
        loop = asyncio.get_running_loop()
        dispatcher.store.lock_file.write_text(str(os.getpid()), encoding="utf-8")
        started = loop.time()
        await dispatcher.scheduler.tick()
        await dispatcher.scheduler.drain()
        elapsed = loop.time() - started
        dispatcher.store.lock_file.unlink()
        await dispatcher.flush_state()
        return elapsed

    elapsed = asyncio.run(scenario())
    dispatcher.shutdown()

    assert elapsed < 1.0
    assert backlog.closed == [("bd-1", "done")]
    assert dispatcher.store.load_active_work() == []
