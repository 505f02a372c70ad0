from __future__ import annotations

import asyncio
import json
import os
import signal
import time
from pathlib import Path

import click

from whs.config import ConfigError, ProjectConfig, WhsConfig, load_config, save_config
from whs.dispatcher import Dispatcher, DispatcherStatus, load_status
from whs.log import configure_logging
from whs.metrics import MetricsStore
from whs.questions import format_question_for_display, format_time_ago
from whs.recovery import pid_alive, read_lock
from whs.state import StateError, StateStore
from whs.workitems import WorkItemStoreError

config_option = click.option(
    "--config", "config_value", default="whs.toml", show_default=True
)

FORCE_STOP_SIGNAL = "SIGUSR1"


def _resolve_config_path(config_value: str) -> Path:
    return Path(config_value).expanduser().resolve()


def _load(config_value: str) -> WhsConfig:
    config_path = _resolve_config_path(config_value)
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    state_dir = Path(config.dispatcher.state_dir).expanduser()
    if not state_dir.is_absolute():
        config.dispatcher.state_dir = str((config_path.parent / state_dir).resolve())
    return config


def _store(config: WhsConfig) -> StateStore:
    return StateStore(Path(config.dispatcher.state_dir))


def _print_status(status: DispatcherStatus) -> None:
    state = "paused" if status.paused else "running"
    started = format_time_ago(status.started_at) if status.started_at else "never"
    click.echo(f"Dispatcher: {state} (started {started})")
    click.echo(f"Pending questions: {status.pending_question_count}")
    click.echo(f"Today's cost: ${status.today_cost:.2f}")
    if not status.active:
        click.echo("No active work.")
        return
    click.echo(f"Active work ({len(status.active)}):")
    for work in status.active:
        click.echo(
            f"  {work.project}/{work.work_item.id} [{work.agent}] "
            f"{work.workflow_step_id} ${work.cost_so_far:.2f} "
            f"since {format_time_ago(work.started_at)}"
        )


async def _run_dispatcher(dispatcher: Dispatcher, once: bool) -> None:
    """Run the dispatcher loop with stop signals wired to it.

    SIGTERM and SIGINT stop gracefully, waiting for running agents; a second
    one forces the stop. SIGUSR1 forces it straight away.
    """
    loop = asyncio.get_running_loop()
    stop_tasks: set[asyncio.Task[None]] = set()
    signals_seen = 0

    def _request_stop(force: bool) -> None:
        task = loop.create_task(dispatcher.stop(force=force))
        stop_tasks.add(task)
        task.add_done_callback(stop_tasks.discard)

    def _on_stop_signal() -> None:
        nonlocal signals_seen
        signals_seen += 1
        _request_stop(force=signals_seen > 1)

    handlers = [(signal.SIGTERM, _on_stop_signal), (signal.SIGINT, _on_stop_signal)]
    force_signal = getattr(signal, FORCE_STOP_SIGNAL, None)
    if force_signal is not None:
        handlers.append((force_signal, lambda: _request_stop(True)))
    for signum, handler in handlers:
        try:
            loop.add_signal_handler(signum, handler)
        except (NotImplementedError, RuntimeError):
            pass
    await dispatcher.start(once=once)


@click.group()
def cli() -> None:
    """While Humans Sleep: dispatch coding agents against your backlog."""


@cli.command("init")
@click.option("--project", "project_name", default=None, help="Register a project.")
@click.option("--repo-path", default=None, help="Repository path for --project.")
@click.option("--runner", type=click.Choice(["cli", "sdk"]), default=None)
@config_option
def init_command(
    project_name: str | None, repo_path: str | None, runner: str | None, config_value: str
) -> None:
    config_path = _resolve_config_path(config_value)
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    if runner:
        config.runner.type = runner  # type: ignore[assignment]
    if project_name:
        if config.project(project_name) is not None:
            raise click.ClickException(f"Project already configured: {project_name}")
        config.projects.append(
            ProjectConfig(name=project_name, repo_path=repo_path or str(Path.cwd()))
        )
    save_config(config_path, config)

    state_dir = Path(config.dispatcher.state_dir).expanduser()
    if not state_dir.is_absolute():
        state_dir = config_path.parent / state_dir
    StateStore(state_dir)

    click.echo(f"Config: {config_path}")
    click.echo(f"State: {state_dir}")
    click.echo(f"Runner: {config.runner.type}")
    click.echo(f"Projects: {len(config.projects)}")


@cli.command("start")
@click.option("--once", is_flag=True, default=False, help="Run one tick and wait for it.")
@click.option("--log-level", default="INFO", show_default=True)
@click.option("--json-logs", is_flag=True, default=False)
@config_option
def start_command(once: bool, log_level: str, json_logs: bool, config_value: str) -> None:
    configure_logging(log_level, json_output=json_logs)
    config = _load(config_value)
    if not config.projects:
        raise click.ClickException("No projects configured. Use `whs init --project`.")
    dispatcher = Dispatcher.from_config(config)
    try:
        asyncio.run(_run_dispatcher(dispatcher, once))
    except KeyboardInterrupt:
        click.echo("Interrupted; active work will be reconciled on next start.")
    except (StateError, WorkItemStoreError) as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo("Dispatcher stopped.")


@cli.command("status")
@click.option("--json", "as_json", is_flag=True, default=False)
@config_option
def status_command(as_json: bool, config_value: str) -> None:
    status = load_status(_load(config_value))
    if as_json:
        click.echo(json.dumps(status.to_dict(), ensure_ascii=False, indent=2))
        return
    _print_status(status)


@cli.command("pause")
@config_option
def pause_command(config_value: str) -> None:
    _store(_load(config_value)).request_pause(True)
    click.echo("Pause requested; no new work will be admitted.")


@cli.command("resume")
@config_option
def resume_command(config_value: str) -> None:
    _store(_load(config_value)).request_pause(False)
    click.echo("Resume requested.")


@cli.command("stop")
@click.option("--force", is_flag=True, default=False, help="Abort running agents immediately.")
@click.option("--timeout", default=120.0, show_default=True, help="Seconds to wait for exit.")
@config_option
def stop_command(force: bool, timeout: float, config_value: str) -> None:
    config = _load(config_value)
    holder = read_lock(Path(config.dispatcher.state_dir))
    pid = int(holder.get("pid") or 0) if holder else 0
    if pid <= 0:
        click.echo("No dispatcher is running.")
        return

    signum = getattr(signal, FORCE_STOP_SIGNAL) if force else signal.SIGTERM
    click.echo(f"Stopping dispatcher (pid {pid})...")
    if force:
        click.echo("  Forcing stop; interrupted work is reconciled on next start.")
    else:
        click.echo("  Waiting for running agents to finish.")
    try:
        os.kill(pid, signum)
    except ProcessLookupError:
        click.echo("  Process already exited (stale lock file).")
        return

    deadline = time.monotonic() + timeout
    while pid_alive(pid):
        if time.monotonic() >= deadline:
            raise click.ClickException("Timed out waiting for the dispatcher. Use --force.")
        time.sleep(0.5)
    click.echo("Dispatcher stopped.")


@cli.command("questions")
@config_option
def questions_command(config_value: str) -> None:
    questions = _store(_load(config_value)).list_questions()
    if not questions:
        click.echo("No pending questions.")
        return
    for question in sorted(questions, key=lambda item: item.created_at):
        click.echo(format_question_for_display(question))
        click.echo("")


@cli.command("answer")
@click.argument("question_id")
@click.argument("answer")
@config_option
def answer_command(question_id: str, answer: str, config_value: str) -> None:
    store = _store(_load(config_value))
    if store.get_question(question_id) is None:
        raise click.ClickException(f"Unknown question: {question_id}")
    store.queue_answer(question_id, answer)
    click.echo(f"Answer queued for {question_id}; the workflow resumes on the next tick.")


@cli.command("metrics")
@click.option("--recent", default=10, show_default=True, help="Recent workflows to list.")
@config_option
def metrics_command(recent: int, config_value: str) -> None:
    config = _load(config_value)
    metrics = MetricsStore(Path(config.dispatcher.state_dir) / "metrics.db")
    try:
        click.echo(f"Total cost: ${metrics.get_total_cost():.2f}")
        click.echo(f"Today: ${metrics.get_today_cost():.2f}")
        click.echo(f"This week: ${metrics.get_week_cost():.2f}")
        projects = metrics.get_project_metrics()
        if projects:
            click.echo("By project:")
            for row in projects:
                click.echo(
                    f"  {row['project']}: {row['workflow_count']} workflows, "
                    f"{row['step_count']} steps, ${row['total_cost']:.2f}"
                )
        agents = metrics.get_agent_metrics()
        if agents:
            click.echo("By agent:")
            for row in agents:
                click.echo(
                    f"  {row['agent']}: {row['step_count']} steps, "
                    f"${row['total_cost']:.2f} (avg ${row['avg_cost_per_step']:.2f})"
                )
        workflows = metrics.get_recent_workflows(recent)
        if workflows:
            click.echo("Recent workflows:")
            for row in workflows:
                click.echo(
                    f"  {row['id']} {row['project']}/{row['source_bead']} "
                    f"{row['status']:<11} ${row['total_cost']:.2f}"
                )
    finally:
        metrics.close()

