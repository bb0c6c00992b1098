from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from consortium import __version__
from consortium.backends import AgentBackend, ClaudeCodeBackend, ResilientBackend, RetryPolicy
from consortium.config import DEFAULT_CONFIG_FILE, ConsortiumConfig, load_config, save_config
from consortium.dispatcher import AgentDispatcher
from consortium.interaction import ConsoleInteraction
from consortium.machine import MachineOutcome, PhaseMachine
from consortium.state.store import ConsortiumStateError, StateStore
from consortium.vcs import GitHubDriver, VcsDriver

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: ConsortiumConfig
    store: StateStore
    machine: PhaseMachine


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _echo_event(event: dict[str, Any]) -> None:
    name = event.get("event")
    if name == "unit_started":
        focus = f" ({event['focus']})" if event.get("focus") else ""
        click.echo(f"  [{event['unit']}]{focus} started")
    elif name == "unit_done":
        click.echo(f"  [{event['unit']}] done in {event.get('elapsed_seconds', 0.0):.1f}s")
    elif name == "unit_failed":
        click.secho(f"  [{event['unit']}] failed: {event.get('error')}", fg="red")
    elif name == "backend_retry":
        click.echo(
            f"  retrying {event.get('role')} agent in {event.get('delay_seconds', 0.0):.1f}s"
        )


def _build_backend(config: ConsortiumConfig, repo_root: Path) -> AgentBackend:
    policy = RetryPolicy(
        max_retries=max(0, int(config.backend.max_retries)),
        backoff_seconds=max(0.0, float(config.backend.retry_backoff_seconds)),
        timeout_seconds=max(5.0, float(config.backend.timeout_seconds)),
    )
    return ResilientBackend(
        ClaudeCodeBackend(binary=config.backend.binary, working_directory=repo_root),
        policy,
        name="claude",
        event_hook=_echo_event,
    )


def _build_vcs(repo_root: Path) -> VcsDriver:
    return GitHubDriver(repo_root)


def _load_runtime(
    directory: str,
    config_value: str,
    *,
    auto_approve: bool = False,
    skip_critics: bool = False,
) -> Runtime:
    repo_root = Path(directory).resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    config = load_config(config_path)
    if skip_critics:
        config.workflow.skip_critics = True
    store = StateStore(repo_root, config.state.directory)
    dispatcher = AgentDispatcher(
        _build_backend(config, repo_root),
        max_parallel=config.workflow.max_parallel_units,
        event_hook=_echo_event,
    )
    machine = PhaseMachine(
        store=store,
        dispatcher=dispatcher,
        vcs=_build_vcs(repo_root),
        interaction=ConsoleInteraction(auto_approve=auto_approve),
        config=config,
    )
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        store=store,
        machine=machine,
    )


def _report(outcome: MachineOutcome) -> None:
    if outcome.status == "failed":
        raise click.ClickException(f"Run failed: {outcome.message}")
    if outcome.status == "paused":
        click.secho(f"Paused at {outcome.phase}: {outcome.message}", fg="yellow")
        return
    click.secho(outcome.message or "Run complete.", fg="green")


def _directory_option(function):
    return click.option(
        "-d",
        "--directory",
        default=".",
        show_default=True,
        type=click.Path(file_okay=False),
        help="Working directory of the run.",
    )(function)


def _config_option(function):
    return click.option(
        "--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True
    )(function)


@click.group()
@click.version_option(__version__, prog_name="robot-consortium")
@click.option("-v", "--verbose", is_flag=True, default=False, help="Enable debug logging.")
def cli(verbose: bool) -> None:
    """Robot Consortium: multi-agent explore, plan, build, verify and ship."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command("init")
@_directory_option
@_config_option
def init_command(directory: str, config_value: str) -> None:
    repo_root = Path(directory).resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    config = load_config(config_path)
    save_config(config_path, config)
    click.echo(f"Config: {config_path}")
    click.echo(f"State directory: {repo_root / config.state.directory}")


@cli.command("start")
@click.argument("description")
@_directory_option
@_config_option
@click.option("-y", "--yes", "auto_approve", is_flag=True, default=False)
@click.option("--skip-critics", is_flag=True, default=False)
def start_command(
    description: str,
    directory: str,
    config_value: str,
    auto_approve: bool,
    skip_critics: bool,
) -> None:
    runtime = _load_runtime(
        directory, config_value, auto_approve=auto_approve, skip_critics=skip_critics
    )
    try:
        outcome = asyncio.run(runtime.machine.start(description))
    except ConsortiumStateError as exc:
        raise click.ClickException(str(exc)) from exc
    _report(outcome)


@cli.command("resume")
@_directory_option
@_config_option
@click.option("-y", "--yes", "auto_approve", is_flag=True, default=False)
@click.option("--skip-critics", is_flag=True, default=False)
def resume_command(
    directory: str,
    config_value: str,
    auto_approve: bool,
    skip_critics: bool,
) -> None:
    runtime = _load_runtime(
        directory, config_value, auto_approve=auto_approve, skip_critics=skip_critics
    )
    try:
        outcome = asyncio.run(runtime.machine.resume())
    except ConsortiumStateError as exc:
        raise click.ClickException(str(exc)) from exc
    _report(outcome)


@cli.command("status")
@_directory_option
@_config_option
def status_command(directory: str, config_value: str) -> None:
    runtime = _load_runtime(directory, config_value)
    run = runtime.store.load()
    if run is None:
        click.echo("No active run.")
        return

    click.echo(f"Run: {run.id}")
    click.echo(f"Task: {run.description}")
    phase = run.phase
    if run.awaiting_approval:
        phase += " (awaiting approval)"
    click.echo(f"Phase: {phase}")
    click.echo(f"Created: {run.created_at}")
    click.echo(f"Updated: {run.updated_at}")
    click.echo(
        f"Artifacts: {len(run.findings)} findings, {len(run.plans)} plans, "
        f"{len(run.critiques)} critiques, {len(run.reviews)} reviews"
    )
    if run.final_plan:
        click.echo(f"Final plan: {runtime.store.state_dir / run.final_plan}")
    if run.tasks:
        done = sum(1 for task in run.tasks if task.status == "completed")
        click.echo(f"Tasks: {done}/{len(run.tasks)} completed")
        for task in run.tasks:
            click.echo(f"  {task.id} [{task.status}] {task.description}")
    if run.pr_url:
        click.echo(f"PR: {run.pr_url}")
        click.echo(f"CI fix attempts: {run.ci_attempts}/{runtime.config.workflow.ci_max_attempts}")
    if run.ci_needs_manual:
        click.echo("CI needs manual intervention.")
    if run.failure_reason:
        click.echo(f"Failure: {run.failure_reason}")
    click.echo(f"Total cost: ${run.total_cost():.4f}")
    if run.pending_questions:
        click.echo("Pending questions:")
        for question in run.pending_questions:
            click.echo(f"  {question.id} [{question.origin}] {question.text}")


@cli.command("answer")
@click.argument("question_id")
@click.argument("answer")
@_directory_option
@_config_option
def answer_command(question_id: str, answer: str, directory: str, config_value: str) -> None:
    runtime = _load_runtime(directory, config_value)
    try:
        question = runtime.store.answer_question(question_id, answer)
    except ConsortiumStateError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Answered {question.id}: {question.text}")


@cli.command("abort")
@_directory_option
@_config_option
def abort_command(directory: str, config_value: str) -> None:
    runtime = _load_runtime(directory, config_value)
    if not runtime.store.state_dir.exists():
        click.echo("No run to abort.")
        return
    runtime.store.destroy()
    click.echo(f"Removed {runtime.store.state_dir}")
