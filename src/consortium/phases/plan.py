from __future__ import annotations

import logging
from collections.abc import Callable

from consortium.dispatcher import merge_result
from consortium.parsing import (
    Fallback,
    ParseResult,
    focus_name,
    parse_critic_focuses,
    parse_planner_perspectives,
)
from consortium.phases.base import PhaseContext, PhaseResult
from consortium.prompts import (
    critic_prompt,
    critic_sizing_prompt,
    planner_prompt,
    planner_sizing_prompt,
    synthesis_prompt,
)

logger = logging.getLogger(__name__)


async def _sized(
    ctx: PhaseContext,
    prompt: str,
    parser: Callable[[str], ParseResult[list[str]]],
    label: str,
) -> list[str]:
    sizing = await ctx.coordinate("PLAN", prompt, "sizing", "sizing")
    if not sizing.success:
        logger.warning("%s sizing failed, using defaults: %s", label, sizing.error)
        ctx.interaction.notify(f"  {label} sizing failed, using defaults.")
        return parser("").value
    parsed = parser(sizing.output)
    if isinstance(parsed, Fallback):
        logger.warning("%s sizing unusable (%s), using defaults", label, parsed.reason)
        ctx.interaction.notify(f"  Could not parse {label.lower()} sizing, using defaults.")
    return parsed.value


async def _critique(ctx: PhaseContext, description: str, findings: str, plans: str) -> str:
    run = ctx.store.require()
    focuses = run.critic_focuses or await _sized(
        ctx, critic_sizing_prompt(description, plans), parse_critic_focuses, "Critic"
    )
    ctx.store.set_sizing(critic_focuses=focuses)
    ctx.interaction.notify(f"  Deploying {len(focuses)} critic(s).")

    units = [ctx.unit("critic", index, focus) for index, focus in enumerate(focuses, start=1)]
    invocations = [
        ctx.invocation(
            critic_prompt(description, findings, plans, unit.focus or ""), "critic", "critic"
        )
        for unit in units
    ]
    results = await ctx.dispatcher.run_many(units, invocations)

    sections: list[str] = []
    failed: list[str] = []
    for unit, result in zip(units, results, strict=True):
        merge_result(ctx.store, "PLAN", unit, result, collect_questions=False)
        name = focus_name(unit.focus or "")
        if result.success:
            ctx.store.append_artifact("critiques", f"{unit.id}-{name}.md", result.output)
            sections.append(f"## {unit.id} ({name})\n\n{result.output}\n\n---\n\n")
        else:
            failed.append(unit.id)
    if failed:
        logger.warning("Critics failed (%s), synthesising without them", ", ".join(failed))
        ctx.interaction.notify(
            f"  {len(failed)} critic(s) failed, proceeding with available critiques."
        )
    return "".join(sections)


async def run_plan(ctx: PhaseContext) -> PhaseResult:
    run = ctx.store.require()
    findings = ctx.combined_artifacts("findings", "# Exploration Findings")

    perspectives = run.planner_perspectives or await _sized(
        ctx,
        planner_sizing_prompt(run.description, findings),
        parse_planner_perspectives,
        "Planner",
    )
    ctx.store.set_sizing(planner_perspectives=perspectives)
    ctx.interaction.notify(f"  Deploying {len(perspectives)} planner(s).")

    units = [
        ctx.unit("planner", index, perspective)
        for index, perspective in enumerate(perspectives, start=1)
    ]
    invocations = [
        ctx.invocation(
            planner_prompt(run.description, findings, unit.focus or ""), "planner", "planner"
        )
        for unit in units
    ]
    results = await ctx.dispatcher.run_many(units, invocations)

    failed: list[str] = []
    for unit, result in zip(units, results, strict=True):
        merge_result(ctx.store, "PLAN", unit, result)
        if result.success:
            ctx.store.append_artifact(
                "plans", f"{unit.id}-{focus_name(unit.focus or '')}.md", result.output
            )
        else:
            failed.append(unit.id)
    plans_dir = ctx.store.state_dir / "plans"
    if failed:
        return PhaseResult.failed(
            f"{len(failed)} planner(s) failed: {', '.join(failed)}. "
            f"Plans so far are in {plans_dir}",
        )

    plans = ctx.combined_artifacts("plans")
    critiques = ""
    if ctx.config.workflow.skip_critics:
        ctx.interaction.notify("  Skipping critique stage.")
    else:
        critiques = await _critique(ctx, run.description, findings, plans)

    synthesis = await ctx.coordinate(
        "PLAN",
        synthesis_prompt(run.description, plans, len(perspectives), critiques),
        "synthesis",
        "synthesis",
    )
    if not synthesis.success:
        return PhaseResult.failed(f"Plan synthesis failed: {synthesis.error}")
    ctx.store.set_final_artifact(synthesis.output)
    return PhaseResult.ok(f"Final plan written to {ctx.store.state_dir / 'final-plan.md'}")
