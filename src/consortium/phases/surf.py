from __future__ import annotations

import logging

from consortium.dispatcher import merge_result
from consortium.parsing import Fallback, focus_name, parse_explorer_focuses
from consortium.phases.base import PhaseContext, PhaseResult
from consortium.prompts import explorer_prompt, explorer_sizing_prompt

logger = logging.getLogger(__name__)


async def _explorer_focuses(ctx: PhaseContext, description: str) -> list[str]:
    sizing = await ctx.coordinate("SURF", explorer_sizing_prompt(description), "sizing", "sizing")
    if not sizing.success:
        logger.warning("Explorer sizing failed, using default focuses: %s", sizing.error)
        ctx.interaction.notify("  Sizing failed, using default exploration focuses.")
        return parse_explorer_focuses("").value
    parsed = parse_explorer_focuses(sizing.output)
    if isinstance(parsed, Fallback):
        logger.warning("Explorer sizing unusable (%s), using defaults", parsed.reason)
        ctx.interaction.notify("  Could not parse exploration focuses, using defaults.")
    return parsed.value


async def run_surf(ctx: PhaseContext) -> PhaseResult:
    run = ctx.store.require()
    focuses = run.explorer_focuses or await _explorer_focuses(ctx, run.description)
    ctx.store.set_sizing(explorer_focuses=focuses)
    ctx.interaction.notify(f"  Deploying {len(focuses)} explorer(s).")

    units = [ctx.unit("explorer", index, focus) for index, focus in enumerate(focuses, start=1)]
    invocations = [
        ctx.invocation(explorer_prompt(run.description, unit.focus or ""), "explorer", "explorer")
        for unit in units
    ]
    results = await ctx.dispatcher.run_many(units, invocations)

    failed: list[str] = []
    for unit, result in zip(units, results, strict=True):
        merge_result(ctx.store, "SURF", unit, result)
        if result.success:
            ctx.store.append_artifact(
                "findings", f"{unit.id}-{focus_name(unit.focus or '')}.md", result.output
            )
        else:
            failed.append(unit.id)

    findings_dir = ctx.store.state_dir / "findings"
    if failed:
        return PhaseResult.failed(
            f"{len(failed)} explorer(s) failed: {', '.join(failed)}. "
            f"Partial findings are in {findings_dir}",
        )
    return PhaseResult.ok(f"Findings written to {findings_dir}")
