from __future__ import annotations

import logging

from consortium.dispatcher import merge_result
from consortium.parsing import Fallback, parse_verdict
from consortium.phases.base import PhaseContext, PhaseResult
from consortium.prompts import VERIFIER_CHECKS, lint_prompt, verifier_prompt

logger = logging.getLogger(__name__)

_CHECK_TOOLS = {"tests": "tests", "code-review": "review", "spec-compliance": "review"}


def compile_feedback(verdicts: list[tuple[str, bool, str]]) -> str:
    """Join the reports of failing verifiers only."""
    return "\n\n---\n\n".join(
        f"## {unit_id}\n\n{output}" for unit_id, passed, output in verdicts if not passed
    )


async def _lint(ctx: PhaseContext, description: str, plan: str) -> None:
    unit = ctx.unit("verifier", 0, "lint")
    result = await ctx.dispatcher.run_one(
        unit, ctx.invocation(lint_prompt(description, plan), "lint", "verifier")
    )
    merge_result(ctx.store, "OINK", unit, result, collect_questions=False)
    if not result.success:
        ctx.interaction.notify(f"  Lint verifier failed: {result.error}")
        return
    ctx.store.append_artifact("reviews", f"{unit.id}-lint.md", result.output)
    if parse_verdict(result.output).value:
        ctx.interaction.notify("  Lint checks passed.")
    else:
        ctx.interaction.notify("  Lint verifier found issues that need manual review.")


async def run_oink(ctx: PhaseContext) -> PhaseResult:
    run = ctx.store.require()
    plan = ctx.store.read_final_plan()
    if plan is None:
        return PhaseResult.failed("No final plan found. Run the PLAN phase first.")

    await _lint(ctx, run.description, plan)

    units = [
        ctx.unit("verifier", index, check) for index, check in enumerate(VERIFIER_CHECKS, start=1)
    ]
    invocations = [
        ctx.invocation(
            verifier_prompt(run.description, plan, unit.focus or ""),
            _CHECK_TOOLS[unit.focus or ""],
            "verifier",
        )
        for unit in units
    ]
    results = await ctx.dispatcher.run_many(units, invocations)

    errors: list[str] = []
    verdicts: list[tuple[str, bool, str]] = []
    for unit, result in zip(units, results, strict=True):
        merge_result(ctx.store, "OINK", unit, result, collect_questions=False)
        if not result.success:
            errors.append(unit.id)
            continue
        ctx.store.append_artifact("reviews", f"{unit.id}-{unit.focus}.md", result.output)
        verdict = parse_verdict(result.output)
        if isinstance(verdict, Fallback):
            logger.info("%s gave no explicit verdict, counting it as a pass", unit.id)
        verdicts.append((unit.id, verdict.value, result.output))
        label = "PASS" if verdict.value else "FAIL"
        ctx.interaction.notify(f"  {unit.id} ({unit.focus}): {label}")

    reviews_dir = ctx.store.state_dir / "reviews"
    if errors:
        return PhaseResult.paused(
            f"{len(errors)} verifier(s) could not run: {', '.join(errors)}. "
            f"Reviews so far are in {reviews_dir}",
        )
    if all(passed for _, passed, _ in verdicts):
        return PhaseResult.ok(f"All verification checks passed. Reviews in {reviews_dir}")

    failing = [unit_id for unit_id, passed, _ in verdicts if not passed]
    return PhaseResult.ok(
        f"{len(failing)} verification check(s) failed: {', '.join(failing)}",
        passed=False,
        feedback=compile_feedback(verdicts),
    )
