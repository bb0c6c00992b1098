from __future__ import annotations

import logging

from consortium.phases.base import PhaseContext, PhaseResult
from consortium.prompts import ci_fix_prompt
from consortium.vcs import CheckStatus, VcsError

logger = logging.getLogger(__name__)


def fix_commit_message(attempt: int) -> str:
    return f"fix: CI fixes (attempt {attempt})"


async def _poll(ctx: PhaseContext, pr_number: int) -> CheckStatus:
    workflow = ctx.config.workflow
    ctx.interaction.notify(f"  Waiting {workflow.ci_wait_seconds / 60:.0f} minute(s) for CI.")
    await ctx.sleep(workflow.ci_wait_seconds)
    status = ctx.vcs.check_status(pr_number)
    if status.state != "pending":
        return status
    ctx.interaction.notify(
        f"  CI still running ({status.details}), "
        f"checking again in {workflow.ci_recheck_seconds / 60:.0f} minute(s)."
    )
    await ctx.sleep(workflow.ci_recheck_seconds)
    return ctx.vcs.check_status(pr_number)


async def run_ci_check(ctx: PhaseContext) -> PhaseResult:
    run = ctx.store.require()
    if run.pr_number is None:
        return PhaseResult.failed("No PR number recorded. Run the PR phase first.")

    max_attempts = ctx.config.workflow.ci_max_attempts
    attempts = run.ci_attempts
    if attempts >= max_attempts:
        return PhaseResult.ok(
            f"Max CI fix attempts ({max_attempts}) reached; manual intervention may be needed.",
            passed=False,
            ci="exhausted",
        )
    ctx.interaction.notify(f"  CI check attempt {attempts + 1}/{max_attempts}.")

    status = await _poll(ctx, run.pr_number)
    if status.state == "pending":
        return PhaseResult.paused(
            f"CI still running after both waits ({status.details}). Resume to check again.",
            ci="pending",
        )
    if status.state == "success":
        return PhaseResult.ok("CI passed.", ci="green")

    ctx.interaction.notify(f"  CI failed: {status.details}")
    logs = ctx.vcs.failure_logs(run.pr_number)
    result = await ctx.coordinate(
        "CI_CHECK", ci_fix_prompt(status.details, logs, attempts + 1), "ci_fix", "ci-fix"
    )
    if not result.success:
        return PhaseResult.failed(f"Coordinator failed to analyse CI failures: {result.error}")

    try:
        committed = ctx.vcs.commit_if_dirty(fix_commit_message(attempts + 1))
        if committed:
            ctx.vcs.push()
    except VcsError as exc:
        return PhaseResult.failed(f"Failed to commit CI fixes: {exc}")

    if committed:
        ctx.interaction.notify("  CI fixes committed and pushed.")
    else:
        logger.info("CI fix attempt %d produced no changes", attempts + 1)
        ctx.interaction.notify("  No changes were made by the fix attempt.")
    ctx.store.set_ci_attempts(attempts + 1)
    return PhaseResult.ok(f"CI fix attempt {attempts + 1} applied.", passed=False, ci="fixed")
