from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, get_args

Phase = Literal["INIT", "SURF", "PLAN", "BUILD", "OINK", "PR", "CI_CHECK", "DONE", "FAILED"]
TaskStatus = Literal["pending", "in_progress", "completed", "failed", "blocked"]
ArtifactCategory = Literal["findings", "plans", "critiques", "reviews"]

PHASE_ORDER: tuple[Phase, ...] = (
    "INIT",
    "SURF",
    "PLAN",
    "BUILD",
    "OINK",
    "PR",
    "CI_CHECK",
    "DONE",
)
TERMINAL_PHASES: frozenset[str] = frozenset({"DONE", "FAILED"})
ARTIFACT_CATEGORIES: tuple[ArtifactCategory, ...] = ("findings", "plans", "critiques", "reviews")


def _literal(value: Any, allowed: Any, label: str) -> Any:
    if value not in get_args(allowed):
        raise ValueError(f"Unknown {label}: {value!r}")
    return value


def next_phase(phase: Phase) -> Phase:
    if phase in TERMINAL_PHASES:
        return phase
    index = PHASE_ORDER.index(phase)
    return PHASE_ORDER[min(index + 1, len(PHASE_ORDER) - 1)]


@dataclass(slots=True)
class Task:
    id: str
    description: str
    status: TaskStatus = "pending"
    assigned_to: str | None = None
    blocked_by: list[str] = field(default_factory=list)
    output: str | None = None
    error: str | None = None
    build_pass: int = 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "description": self.description,
            "status": self.status,
            "assigned_to": self.assigned_to,
            "blocked_by": list(self.blocked_by),
            "output": self.output,
            "error": self.error,
            "build_pass": self.build_pass,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Task:
        return cls(
            id=str(data["id"]),
            description=str(data["description"]),
            status=_literal(data.get("status", "pending"), TaskStatus, "task status"),
            assigned_to=data.get("assigned_to"),
            blocked_by=[str(item) for item in data.get("blocked_by", [])],
            output=data.get("output"),
            error=data.get("error"),
            build_pass=int(data.get("build_pass", 1)),
        )


@dataclass(slots=True)
class Question:
    id: str
    origin: str
    phase: Phase
    text: str
    options: list[str] = field(default_factory=list)
    answer: str | None = None
    answered_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "origin": self.origin,
            "phase": self.phase,
            "text": self.text,
            "options": list(self.options),
            "answer": self.answer,
            "answered_at": self.answered_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Question:
        return cls(
            id=str(data["id"]),
            origin=str(data["origin"]),
            phase=_literal(data["phase"], Phase, "phase"),
            text=str(data["text"]),
            options=[str(item) for item in data.get("options", [])],
            answer=data.get("answer"),
            answered_at=data.get("answered_at"),
        )


@dataclass(slots=True)
class CostEntry:
    phase: Phase
    agent: str
    tokens: int
    cost_usd: float
    timestamp: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase,
            "agent": self.agent,
            "tokens": self.tokens,
            "cost_usd": self.cost_usd,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CostEntry:
        return cls(
            phase=_literal(data["phase"], Phase, "phase"),
            agent=str(data["agent"]),
            tokens=int(data.get("tokens", 0)),
            cost_usd=float(data.get("cost_usd", 0.0)),
            timestamp=str(data.get("timestamp", "")),
        )


@dataclass(slots=True)
class Run:
    id: str
    description: str
    phase: Phase
    created_at: str
    updated_at: str
    working_directory: str
    tasks: list[Task] = field(default_factory=list)
    pending_questions: list[Question] = field(default_factory=list)
    answered_questions: list[Question] = field(default_factory=list)
    costs: list[CostEntry] = field(default_factory=list)
    findings: list[str] = field(default_factory=list)
    plans: list[str] = field(default_factory=list)
    critiques: list[str] = field(default_factory=list)
    reviews: list[str] = field(default_factory=list)
    final_plan: str | None = None
    pr_url: str | None = None
    pr_number: int | None = None
    branch_name: str | None = None
    ci_attempts: int = 0
    explorer_focuses: list[str] = field(default_factory=list)
    planner_perspectives: list[str] = field(default_factory=list)
    critic_focuses: list[str] = field(default_factory=list)
    awaiting_approval: bool = False
    rework_feedback: str | None = None
    rework_cycles: int = 0
    build_pass: int = 0
    ci_needs_manual: bool = False
    failure_reason: str | None = None

    def artifacts(self, category: ArtifactCategory) -> list[str]:
        return getattr(self, category)

    def task(self, task_id: str) -> Task | None:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    def tasks_for_pass(self, build_pass: int) -> list[Task]:
        return [task for task in self.tasks if task.build_pass == build_pass]

    def total_cost(self) -> float:
        return sum(entry.cost_usd for entry in self.costs)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "description": self.description,
            "phase": self.phase,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "working_directory": self.working_directory,
            "tasks": [task.to_dict() for task in self.tasks],
            "questions": {
                "pending": [question.to_dict() for question in self.pending_questions],
                "answered": [question.to_dict() for question in self.answered_questions],
            },
            "costs": [entry.to_dict() for entry in self.costs],
            "findings": list(self.findings),
            "plans": list(self.plans),
            "critiques": list(self.critiques),
            "reviews": list(self.reviews),
            "final_plan": self.final_plan,
            "pr_url": self.pr_url,
            "pr_number": self.pr_number,
            "branch_name": self.branch_name,
            "ci_attempts": self.ci_attempts,
            "explorer_focuses": list(self.explorer_focuses),
            "planner_perspectives": list(self.planner_perspectives),
            "critic_focuses": list(self.critic_focuses),
            "awaiting_approval": self.awaiting_approval,
            "rework_feedback": self.rework_feedback,
            "rework_cycles": self.rework_cycles,
            "build_pass": self.build_pass,
            "ci_needs_manual": self.ci_needs_manual,
            "failure_reason": self.failure_reason,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Run:
        questions = data.get("questions") or {}
        return cls(
            id=str(data["id"]),
            description=str(data["description"]),
            phase=_literal(data["phase"], Phase, "phase"),
            created_at=str(data["created_at"]),
            updated_at=str(data["updated_at"]),
            working_directory=str(data["working_directory"]),
            tasks=[Task.from_dict(item) for item in data.get("tasks", [])],
            pending_questions=[Question.from_dict(item) for item in questions.get("pending", [])],
            answered_questions=[
                Question.from_dict(item) for item in questions.get("answered", [])
            ],
            costs=[CostEntry.from_dict(item) for item in data.get("costs", [])],
            findings=list(data.get("findings", [])),
            plans=list(data.get("plans", [])),
            critiques=list(data.get("critiques", [])),
            reviews=list(data.get("reviews", [])),
            final_plan=data.get("final_plan"),
            pr_url=data.get("pr_url"),
            pr_number=data.get("pr_number"),
            branch_name=data.get("branch_name"),
            ci_attempts=int(data.get("ci_attempts", 0)),
            explorer_focuses=list(data.get("explorer_focuses", [])),
            planner_perspectives=list(data.get("planner_perspectives", [])),
            critic_focuses=list(data.get("critic_focuses", [])),
            awaiting_approval=bool(data.get("awaiting_approval", False)),
            rework_feedback=data.get("rework_feedback"),
            rework_cycles=int(data.get("rework_cycles", 0)),
            build_pass=int(data.get("build_pass", 0)),
            ci_needs_manual=bool(data.get("ci_needs_manual", False)),
            failure_reason=data.get("failure_reason"),
        )
