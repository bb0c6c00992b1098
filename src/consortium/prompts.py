from __future__ import annotations

SYSTEM_PROMPTS: dict[str, str] = {
    "coordinator": """
You are the coordinator of a team of software agents.
You size the work, merge proposals into one plan and repair CI failures.
Follow the requested output format exactly.
""".strip(),
    "explorer": """
You are an explorer agent. Survey the codebase for one focus area.
Report facts with file paths and line numbers; do not modify files.
""".strip(),
    "planner": """
You are a planner agent. Propose a concrete implementation approach
from one perspective, grounded in the exploration findings.
""".strip(),
    "critic": """
You are a critic agent. Attack the proposed plans from one angle.
Back every critique with evidence from the codebase.
""".strip(),
    "implementer": """
You are an implementer agent. Make the code changes for one task.
Match repository conventions and stay inside the task's scope.
""".strip(),
    "verifier": """
You are a verifier agent. Check the implementation for one concern
and start your report with a PASS or FAIL verdict.
""".strip(),
}

ALLOWED_TOOLS: dict[str, list[str]] = {
    "sizing": ["Read"],
    "explorer": ["Read", "Glob", "Grep", "Bash(git log*)", "Bash(git show*)"],
    "planner": ["Read", "Glob", "Grep"],
    "critic": ["Read", "Glob", "Grep"],
    "synthesis": ["Read"],
    "decomposition": [],
    "implementer": ["Read", "Write", "Edit", "Glob", "Grep", "Bash"],
    "lint": ["Read", "Glob", "Grep", "Edit", "Bash", "Bash(git add*)", "Bash(git status*)"],
    "tests": ["Read", "Glob", "Grep", "Bash"],
    "review": ["Read", "Glob", "Grep", "Bash(git diff*)"],
    "pr": [],
    "ci_fix": ["Read", "Glob", "Grep", "Edit", "Write", "Bash"],
}

VERIFIER_CHECKS = ("tests", "code-review", "spec-compliance")

_CHECK_INSTRUCTIONS = {
    "tests": """
- Run the test suite
- Check for test failures
- Verify new tests were added where the plan requires them
""".strip(),
    "code-review": """
- Review the code changes
- Check for bugs, security issues and code smells
- Verify the changes follow the codebase's patterns
""".strip(),
    "spec-compliance": """
- Verify the implementation matches the task and the plan
- Check every requirement is addressed
- Ensure nothing was missed
""".strip(),
}

QUESTION_HINT = (
    "If something is genuinely ambiguous, add a line starting with `QUESTION:` "
    "and continue with your best assumption."
)


def explorer_sizing_prompt(description: str) -> str:
    return f"""Decide which areas of the codebase need exploring for this task.

TASK DESCRIPTION:
{description}

Pick 2-5 distinct exploration focuses relevant to THIS task: 2 for a small fix,
3 for a new feature or refactor, 4-5 for cross-cutting or architectural work.

OUTPUT FORMAT (exactly):
SURFER_FOCUSES:
1. <kebab-case-name>: <one-line description of what to explore>
2. <kebab-case-name>: <one-line description>
END_FOCUSES
"""


def explorer_prompt(description: str, focus: str) -> str:
    return f"""Explore the codebase for the task below.

TASK DESCRIPTION:
{description}

YOUR FOCUS AREA: {focus}

Write a markdown report with what you found, relevant file paths with line
numbers, code patterns observed and recommendations. Stay within your focus.
{QUESTION_HINT}
"""


def planner_sizing_prompt(description: str, findings: str) -> str:
    return f"""Decide which planning perspectives this task needs.

TASK DESCRIPTION:
{description}

EXPLORATION FINDINGS:
{findings}

Choose 1-5 perspectives that will produce meaningfully different plans:
1-2 for a single-file change, 2-3 for a clear multi-file change, 3-5 for
cross-cutting work.

OUTPUT FORMAT (exactly):
PLANNER_PERSPECTIVES:
1. <kebab-case-name>: <one-line description of what this planner focuses on>
END_PERSPECTIVES
"""


def planner_prompt(description: str, findings: str, perspective: str) -> str:
    return f"""Propose an implementation approach.

TASK DESCRIPTION:
{description}

EXPLORATION FINDINGS:
{findings}

YOUR PERSPECTIVE: {perspective}

Write a markdown plan with: summary of approach, step-by-step implementation
tasks, files to modify (with specific changes), files to create, testing
strategy, risks and mitigations.
{QUESTION_HINT}
"""


def critic_sizing_prompt(description: str, plans: str) -> str:
    return f"""Decide which critique angles would best stress-test these plans.

TASK DESCRIPTION:
{description}

PROPOSED PLANS:
{plans}

Common angles: technical-flaws, overengineering, missing-requirements,
data-integrity, performance. Pick 2-3 that target different weaknesses.

OUTPUT FORMAT (exactly):
RAT_FOCUSES:
1. <kebab-case-name>: <one-line description of what to attack>
2. <kebab-case-name>: <one-line description>
END_RAT_FOCUSES
"""


def critic_prompt(description: str, findings: str, plans: str, focus: str) -> str:
    return f"""Find weaknesses in the proposed implementation plans.

TASK DESCRIPTION:
{description}

EXPLORATION FINDINGS:
{findings}

PROPOSED PLANS:
{plans}

YOUR CRITIQUE FOCUS: {focus}

Cite file paths and concrete scenarios. Separate critical flaws from minor
concerns and say which plan each issue affects.
"""


def synthesis_prompt(description: str, plans: str, planner_count: int, critiques: str) -> str:
    critique_section = ""
    critique_headings = ""
    if critiques:
        critique_section = f"""
CRITIQUES:
Address the valid critiques below and note which ones you dismissed, with reasoning.

{critiques}
"""
        critique_headings = """
## Critiques Addressed
## Critiques Dismissed
"""
    return f"""{planner_count} planner(s) proposed approaches for this task.

TASK: {description}

PROPOSED PLANS:
{plans}
{critique_section}
Synthesize them into ONE final implementation plan, taking the best ideas
from each. Use these sections:

# Final Implementation Plan
## Summary
## Tasks
## Files to Modify
## Files to Create
## Testing Requirements
{critique_headings}## Notes

Be specific; implementation agents will work from this plan.
"""


def decomposition_prompt(description: str, plan: str) -> str:
    return f"""Extract implementation tasks from this plan.

TASK: {description}

PLAN:
{plan}

Return a JSON array of tasks, each with:
- id: string (e.g. "task-1")
- description: string (what to implement)
- dependencies: string[] (ids of tasks that must complete first)

Tasks that can run in parallel have empty dependencies.
RESPOND WITH ONLY THE JSON ARRAY.

Example:
[
  {{"id": "task-1", "description": "Create the new module", "dependencies": []}},
  {{"id": "task-2", "description": "Add the API endpoint", "dependencies": []}},
  {{"id": "task-3", "description": "Wire module to the API", "dependencies": ["task-1", "task-2"]}}
]
"""


def implementer_prompt(
    description: str,
    plan: str,
    task_description: str,
    feedback: str | None = None,
) -> str:
    feedback_section = ""
    if feedback:
        feedback_section = f"""
VERIFICATION FEEDBACK FROM THE PREVIOUS PASS (fix these issues):
{feedback}
"""
    return f"""Implement one task of an approved plan.

OVERALL TASK:
{description}

APPROVED PLAN:
{plan}

YOUR SPECIFIC TASK:
{task_description}
{feedback_section}
Follow existing code patterns, keep the code maintainable and add tests where
the plan asks for them. Do the implementation now.
{QUESTION_HINT}
"""


def lint_prompt(description: str, plan: str) -> str:
    return f"""Run the project's linters and formatters and fix what they report.

ORIGINAL TASK:
{description}

APPROVED PLAN:
{plan}

Run lint, fix the issues (formatter, autofix, or by editing files), then run
lint again. Report a PASS or FAIL verdict, the issues fixed and anything left.
"""


def verifier_prompt(description: str, plan: str, check: str) -> str:
    instructions = _CHECK_INSTRUCTIONS.get(check, _CHECK_INSTRUCTIONS["spec-compliance"])
    return f"""Verify the implementation.

ORIGINAL TASK:
{description}

APPROVED PLAN:
{plan}

YOUR CHECK TYPE: {check}

{instructions}

Start the report with `VERDICT: PASS` or `VERDICT: FAIL`, then give detailed
findings, specific issues and recommendations.
"""


def pr_prompt(description: str, plan: str, diff_summary: str, commits: str) -> str:
    return f"""Write a pull request title and description for the completed work.

ORIGINAL TASK:
{description}

IMPLEMENTATION PLAN:
{plan}

DIFF SUMMARY:
{diff_summary}

COMMITS:
{commits}

The title is at most 72 characters, in conventional commit form (feat/fix/chore).

OUTPUT FORMAT (exactly):
PR_TITLE: <title>

PR_BODY:
## Summary
<1-3 bullet points>

## Changes
<notable changes with file references>

## Test plan
<how to verify>
PR_END
"""


def ci_fix_prompt(failed_checks: str, failure_logs: str, attempt: int) -> str:
    return f"""CI failed on the pull request (fix attempt {attempt}). Fix it.

FAILED CHECKS:
{failed_checks}

FAILURE LOGS:
{failure_logs}

Find the root cause and edit the files to fix it. For lint failures run the
project's fix command; for test failures fix the code or the test. Make the
minimal change that turns CI green.
"""
