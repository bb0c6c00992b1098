from __future__ import annotations

import logging

from consortium.parsing import Fallback, PlannedTask, extract_tasks
from consortium.phases.base import PhaseContext, PhaseResult
from consortium.prompts import decomposition_prompt, implementer_prompt
from consortium.scheduler import DependencyScheduler
from consortium.state.models import Run, Task

logger = logging.getLogger(__name__)


def to_run_tasks(planned: list[PlannedTask], *, offset: int, build_pass: int) -> list[Task]:
    """Give extracted tasks run-wide ids, rewriting dependencies that point inside the batch."""
    id_map = {item.id: f"task-{offset + position}" for position, item in enumerate(planned, 1)}
    tasks: list[Task] = []
    for position, item in enumerate(planned, start=1):
        tasks.append(
            Task(
                id=f"task-{offset + position}",
                description=item.description,
                blocked_by=[id_map.get(dependency, dependency) for dependency in item.dependencies],
                build_pass=build_pass,
            )
        )
    return tasks


async def _decompose(ctx: PhaseContext, run: Run, plan: str) -> list[Task]:
    result = await ctx.coordinate(
        "BUILD", decomposition_prompt(run.description, plan), "decomposition", "decomposition"
    )
    parsed = extract_tasks(result.output if result.success else "")
    if isinstance(parsed, Fallback):
        logger.warning("Task extraction fell back to a single task: %s", parsed.reason)
        ctx.interaction.notify(
            "  No implementation tasks extracted, treating the plan as one task."
        )
    tasks = to_run_tasks(parsed.value, offset=len(run.tasks), build_pass=max(run.build_pass, 1))
    ctx.store.append_tasks(tasks)
    return tasks


async def run_build(ctx: PhaseContext) -> PhaseResult:
    run = ctx.store.require()
    plan = ctx.store.read_final_plan()
    if plan is None:
        return PhaseResult.failed("No final plan found. Run the PLAN phase first.")

    tasks = run.tasks_for_pass(max(run.build_pass, 1))
    if not tasks:
        tasks = await _decompose(ctx, run, plan)
    ctx.interaction.notify(f"  Build pass {max(run.build_pass, 1)}: {len(tasks)} task(s).")

    feedback = run.rework_feedback
    scheduler = DependencyScheduler(
        ctx.dispatcher, ctx.store, models=ctx.config.agents.as_mapping()
    )
    outcome = await scheduler.run(
        tasks,
        lambda task: ctx.invocation(
            implementer_prompt(run.description, plan, task.description, feedback),
            "implementer",
            "implementer",
        ),
    )

    if outcome.blocked:
        ctx.interaction.notify(
            f"  {len(outcome.blocked)} task(s) blocked: {', '.join(outcome.blocked)}"
        )
    if not outcome.succeeded:
        return PhaseResult.failed(
            f"{len(outcome.failed)} task(s) failed: {', '.join(outcome.failed)}",
        )
    ctx.store.set_rework_feedback(None)
    return PhaseResult.ok(f"{len(outcome.completed)} task(s) completed.")
