"""Tolerant parsers for coordinator and verifier output.

Every parser returns either ``Parsed`` (the output had the expected shape) or
``Fallback`` (a conservative default plus the reason it was used), so call
sites can log the degradation without failing the phase.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

T = TypeVar("T")

NUMBERED_LINE_PATTERN = re.compile(r"^\s*\d+\.\s*(.+)$")
QUESTION_PATTERN = re.compile(r"(?:QUESTION:|Need clarification:)\s*(.+?)(?:\n|$)", re.IGNORECASE)
JSON_ARRAY_PATTERN = re.compile(r"\[[\s\S]*\]")
PR_TITLE_PATTERN = re.compile(r"PR_TITLE:\s*(.+?)(?:\n|$)")
PR_BODY_PATTERN = re.compile(r"PR_BODY:\s*([\s\S]+?)(?:PR_END|$)")

DEFAULT_EXPLORER_FOCUSES = [
    "existing patterns and conventions in the codebase",
    "similar features or implementations that already exist",
    "test patterns and testing infrastructure",
]
DEFAULT_PLANNER_PERSPECTIVES = [
    "conservative - minimize risk, prefer incremental changes, prioritize stability",
    "ambitious - aim for the best solution, accept more complexity if justified",
    "minimal - do the least amount of work that solves the problem correctly",
]
DEFAULT_CRITIC_FOCUSES = [
    "technical-flaws: Find edge cases, race conditions, breaking changes, "
    "and backwards compatibility issues",
    "overengineering: Identify unnecessary complexity, scope creep, and premature abstractions",
    "missing-requirements: Find gaps in coverage, untested paths, and security holes",
]
DEFAULT_PR_TITLE = "Robot Consortium: Implementation"
FALLBACK_TASK_DESCRIPTION = "Implement the full plan"


@dataclass(slots=True)
class Parsed(Generic[T]):
    value: T


@dataclass(slots=True)
class Fallback(Generic[T]):
    value: T
    reason: str


ParseResult = Parsed[T] | Fallback[T]


@dataclass(slots=True)
class PlannedTask:
    id: str
    description: str
    dependencies: list[str] = field(default_factory=list)


def parse_numbered_block(output: str, start_marker: str, end_marker: str) -> list[str] | None:
    """Return the ``N. item`` lines between two markers, or None when the block is absent."""
    match = re.search(
        rf"{re.escape(start_marker)}\s*([\s\S]*?){re.escape(end_marker)}",
        output,
    )
    if match is None:
        return None
    items: list[str] = []
    for line in match.group(1).splitlines():
        line_match = NUMBERED_LINE_PATTERN.match(line)
        if line_match:
            item = line_match.group(1).strip()
            if item:
                items.append(item)
    return items


def _clamped_block(
    output: str,
    start_marker: str,
    end_marker: str,
    *,
    minimum: int,
    maximum: int,
    defaults: list[str],
) -> ParseResult[list[str]]:
    items = parse_numbered_block(output, start_marker, end_marker)
    if items is None:
        return Fallback(list(defaults), f"no {start_marker} block found")
    if len(items) < minimum:
        return Fallback(list(defaults), f"expected at least {minimum} items, found {len(items)}")
    return Parsed(items[:maximum])


def parse_explorer_focuses(output: str) -> ParseResult[list[str]]:
    return _clamped_block(
        output,
        "SURFER_FOCUSES:",
        "END_FOCUSES",
        minimum=2,
        maximum=5,
        defaults=DEFAULT_EXPLORER_FOCUSES,
    )


def parse_planner_perspectives(output: str) -> ParseResult[list[str]]:
    return _clamped_block(
        output,
        "PLANNER_PERSPECTIVES:",
        "END_PERSPECTIVES",
        minimum=1,
        maximum=5,
        defaults=DEFAULT_PLANNER_PERSPECTIVES,
    )


def parse_critic_focuses(output: str) -> ParseResult[list[str]]:
    return _clamped_block(
        output,
        "RAT_FOCUSES:",
        "END_RAT_FOCUSES",
        minimum=2,
        maximum=3,
        defaults=DEFAULT_CRITIC_FOCUSES,
    )


def parse_verdict(output: str) -> ParseResult[bool]:
    upper = output.upper()
    if "VERDICT: PASS" in upper or "# PASS" in upper:
        return Parsed(True)
    if "VERDICT: FAIL" in upper or "# FAIL" in upper:
        return Parsed(False)

    head = "\n".join(output.splitlines()[:10]).upper()
    if "PASS" in head and "FAIL" not in head:
        return Parsed(True)
    if "FAIL" in head:
        return Parsed(False)
    return Fallback(True, "no verdict found, assuming pass")


def _planned_task(item: Any, position: int) -> PlannedTask | None:
    if not isinstance(item, dict):
        return None
    description = item.get("description")
    if not isinstance(description, str) or not description.strip():
        return None
    raw_id = item.get("id")
    task_id = str(raw_id) if raw_id not in (None, "") else f"task-{position}"
    raw_dependencies = item.get("dependencies") or []
    if not isinstance(raw_dependencies, list):
        raw_dependencies = [raw_dependencies]
    return PlannedTask(
        id=task_id,
        description=description.strip(),
        dependencies=[str(dependency) for dependency in raw_dependencies],
    )


def extract_tasks(output: str) -> ParseResult[list[PlannedTask]]:
    fallback = [PlannedTask(id="task-1", description=FALLBACK_TASK_DESCRIPTION)]
    match = JSON_ARRAY_PATTERN.search(output)
    if match is None:
        return Fallback(fallback, "no JSON array in output")
    try:
        payload = json.loads(match.group(0))
    except json.JSONDecodeError as exc:
        return Fallback(fallback, f"invalid task JSON: {exc.msg}")
    if not isinstance(payload, list):
        return Fallback(fallback, "task JSON is not a list")

    tasks: list[PlannedTask] = []
    for position, item in enumerate(payload, start=1):
        task = _planned_task(item, position)
        if task is not None:
            tasks.append(task)
    if not tasks:
        return Fallback(fallback, "no tasks extracted")
    return Parsed(tasks)


def find_question(output: str) -> str | None:
    match = QUESTION_PATTERN.search(output)
    if match is None:
        return None
    question = match.group(1).strip()
    return question or None


def parse_pr_content(output: str) -> ParseResult[tuple[str, str]]:
    title_match = PR_TITLE_PATTERN.search(output)
    body_match = PR_BODY_PATTERN.search(output)
    if title_match and body_match:
        return Parsed((title_match.group(1).strip(), body_match.group(1).strip()))

    lines = [line for line in output.splitlines() if line.strip()]
    title = lines[0].strip() if lines else DEFAULT_PR_TITLE
    body = "\n".join(lines[1:]) or output
    return Fallback((title, body), "PR_TITLE/PR_BODY markers missing")


def focus_name(focus: str) -> str:
    """Short label for a focus line such as ``api-design: Focus on ...``."""
    name = focus.split(":", 1)[0].strip()
    name = re.sub(r"\s+", "-", name).lower()
    return name[:30].strip("-") or "focus"
