from __future__ import annotations

import logging

from consortium.parsing import Fallback, parse_pr_content
from consortium.phases.base import PhaseContext, PhaseResult
from consortium.prompts import pr_prompt
from consortium.state.store import PR_BODY_FILE
from consortium.vcs import VcsError

logger = logging.getLogger(__name__)

FINAL_COMMIT_MESSAGE = "chore: robot-consortium final changes"


async def run_pr(ctx: PhaseContext) -> PhaseResult:
    run = ctx.store.require()
    vcs = ctx.vcs
    base = ctx.config.workflow.base_branch

    try:
        if vcs.commit_if_dirty(FINAL_COMMIT_MESSAGE):
            ctx.interaction.notify("  Uncommitted changes committed.")
    except VcsError as exc:
        logger.warning("Final commit failed, continuing: %s", exc)

    try:
        branch = vcs.current_branch()
        ctx.interaction.notify(f"  Pushing branch {branch}.")
        vcs.push(branch)
    except VcsError as exc:
        return PhaseResult.failed(f"Failed to push branch: {exc}")
    ctx.store.set_branch(branch)

    try:
        diff_summary = vcs.diff_summary(base)
    except VcsError:
        diff_summary = "Unable to get diff summary"
    try:
        commits = vcs.commit_log(base)
    except VcsError:
        commits = "Unable to get commit log"

    plan = ctx.store.read_final_plan() or ""
    result = await ctx.coordinate(
        "PR", pr_prompt(run.description, plan, diff_summary, commits), "pr", "pr-generation"
    )
    if not result.success:
        return PhaseResult.failed(f"PR description generation failed: {result.error}")

    parsed = parse_pr_content(result.output)
    if isinstance(parsed, Fallback):
        logger.info("PR content unstructured (%s), using first line as title", parsed.reason)
    title, body = parsed.value
    body_file = ctx.store.write_file(PR_BODY_FILE, body)

    try:
        url, number = vcs.create_pr(title, body_file)
    except VcsError as exc:
        return PhaseResult.failed(f"Failed to create PR: {exc}")

    ctx.store.set_pull_request(url, number)
    ctx.store.set_ci_attempts(0)
    return PhaseResult.ok(f"PR created: {url}")
