from __future__ import annotations

import json
import logging
import os
import secrets
import shutil
import string
import tempfile
import time
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from consortium.state.models import (
    ARTIFACT_CATEGORIES,
    ArtifactCategory,
    CostEntry,
    Phase,
    Question,
    Run,
    Task,
)

logger = logging.getLogger(__name__)

STATE_FILE = "state.json"
FINAL_PLAN_FILE = "final-plan.md"
PR_BODY_FILE = "pr-body.md"

_BASE36 = string.digits + string.ascii_lowercase


class ConsortiumStateError(RuntimeError):
    """Raised when a run is required but missing, or state cannot be written."""


def _base36(value: int) -> str:
    if value == 0:
        return "0"
    digits: list[str] = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(_BASE36[remainder])
    return "".join(reversed(digits))


def generate_run_id() -> str:
    suffix = "".join(secrets.choice(_BASE36) for _ in range(6))
    return f"rc-{_base36(int(time.time() * 1000))}-{suffix}"


class StateStore:
    SCHEMA_VERSION = 1

    def __init__(self, working_directory: Path, state_dir_name: str = ".robot-consortium") -> None:
        self.working_directory = working_directory.resolve()
        self.state_dir = self.working_directory / state_dir_name
        self.state_file = self.state_dir / STATE_FILE
        self._revision = 0

    @staticmethod
    def _utcnow_iso() -> str:
        return datetime.now(UTC).replace(microsecond=0).isoformat()

    def _ensure_layout(self) -> None:
        self.state_dir.mkdir(parents=True, exist_ok=True)
        for category in ARTIFACT_CATEGORIES:
            (self.state_dir / category).mkdir(exist_ok=True)

    def _write_atomic(self, path: Path, content: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(
            mode="w",
            encoding="utf-8",
            dir=path.parent,
            prefix=f".{path.name}.",
            suffix=".tmp",
            delete=False,
        ) as temp_file:
            temp_file.write(content)
            temp_path = Path(temp_file.name)
        try:
            os.replace(temp_path, path)
        except OSError as exc:
            temp_path.unlink(missing_ok=True)
            raise ConsortiumStateError(f"Could not write {path}: {exc}") from exc

    def create(self, description: str, branch_name: str | None = None) -> Run:
        now = self._utcnow_iso()
        run = Run(
            id=generate_run_id(),
            description=description,
            phase="INIT",
            created_at=now,
            updated_at=now,
            working_directory=str(self.working_directory),
            branch_name=branch_name,
        )
        self._ensure_layout()
        self._revision = 0
        self.save(run)
        logger.info("Created run %s in %s", run.id, self.state_dir)
        return run

    def load(self) -> Run | None:
        if not self.state_file.exists():
            return None
        try:
            raw = json.loads(self.state_file.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Ignoring unreadable state file %s: %s", self.state_file, exc)
            return None
        if not isinstance(raw, dict) or not isinstance(raw.get("data"), dict):
            logger.warning("Ignoring state file %s with unexpected shape", self.state_file)
            return None
        try:
            run = Run.from_dict(raw["data"])
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("Ignoring corrupt run in %s: %s", self.state_file, exc)
            return None
        self._revision = int(raw.get("revision") or 0)
        return run

    def require(self) -> Run:
        run = self.load()
        if run is None:
            raise ConsortiumStateError(
                f"No active run found in {self.state_dir}. Start one with `robot-consortium start`."
            )
        return run

    def save(self, run: Run) -> None:
        run.updated_at = self._utcnow_iso()
        envelope: dict[str, Any] = {
            "schema_version": self.SCHEMA_VERSION,
            "revision": self._revision + 1,
            "updated_at": run.updated_at,
            "data": run.to_dict(),
        }
        self._write_atomic(
            self.state_file, json.dumps(envelope, ensure_ascii=False, indent=2) + "\n"
        )
        self._revision += 1

    def update(self, mutator: Callable[[Run], None]) -> Run:
        run = self.require()
        mutator(run)
        self.save(run)
        return run

    def destroy(self) -> None:
        if self.state_dir.exists():
            shutil.rmtree(self.state_dir)
        self._revision = 0

    def set_phase(self, phase: Phase, failure_reason: str | None = None) -> Run:
        def _mutate(run: Run) -> None:
            run.phase = phase
            run.awaiting_approval = False
            if phase == "FAILED":
                run.failure_reason = failure_reason

        logger.debug("Phase -> %s", phase)
        return self.update(_mutate)

    def set_checkpoint(self, awaiting: bool) -> Run:
        def _mutate(run: Run) -> None:
            run.awaiting_approval = awaiting

        return self.update(_mutate)

    def append_task(self, task: Task) -> Run:
        return self.append_tasks([task])

    def append_tasks(self, tasks: list[Task]) -> Run:
        def _mutate(run: Run) -> None:
            known = {existing.id for existing in run.tasks}
            for task in tasks:
                if task.id in known:
                    raise ConsortiumStateError(f"Duplicate task id: {task.id}")
                known.add(task.id)
                run.tasks.append(task)

        return self.update(_mutate)

    def update_task(self, task_id: str, **changes: Any) -> Task:
        updated: list[Task] = []

        def _mutate(run: Run) -> None:
            task = run.task(task_id)
            if task is None:
                raise ConsortiumStateError(f"Unknown task: {task_id}")
            for key, value in changes.items():
                setattr(task, key, value)
            updated.append(task)

        self.update(_mutate)
        return updated[0]

    def _artifact_dir(self, category: ArtifactCategory) -> Path:
        if category not in ARTIFACT_CATEGORIES:
            raise ConsortiumStateError(f"Unsupported artifact category: {category}")
        return self.state_dir / category

    def _unique_name(self, directory: Path, filename: str, taken: list[str]) -> str:
        candidate = filename
        stem, dot, suffix = filename.rpartition(".")
        if not dot:
            stem, suffix = filename, ""
        counter = 2
        while candidate in taken or (directory / candidate).exists():
            candidate = f"{stem}-{counter}{dot}{suffix}"
            counter += 1
        return candidate

    def append_artifact(self, category: ArtifactCategory, filename: str, content: str) -> str:
        directory = self._artifact_dir(category)
        run = self.require()
        stored_name = self._unique_name(directory, filename, run.artifacts(category))
        self._write_atomic(directory / stored_name, content)
        run.artifacts(category).append(stored_name)
        self.save(run)
        return stored_name

    def read_artifact(self, category: ArtifactCategory, filename: str) -> str:
        return (self._artifact_dir(category) / filename).read_text(encoding="utf-8")

    def read_artifacts(self, category: ArtifactCategory) -> list[tuple[str, str]]:
        run = self.require()
        contents: list[tuple[str, str]] = []
        for filename in run.artifacts(category):
            try:
                contents.append((filename, self.read_artifact(category, filename)))
            except FileNotFoundError:
                logger.warning("Artifact %s/%s is missing", category, filename)
        return contents

    def write_file(self, filename: str, content: str) -> Path:
        path = self.state_dir / filename
        self._write_atomic(path, content)
        return path

    def read_file(self, filename: str) -> str | None:
        path = self.state_dir / filename
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def set_final_artifact(self, content: str) -> Run:
        self.write_file(FINAL_PLAN_FILE, content)

        def _mutate(run: Run) -> None:
            run.final_plan = FINAL_PLAN_FILE

        return self.update(_mutate)

    def read_final_plan(self) -> str | None:
        return self.read_file(FINAL_PLAN_FILE)

    def append_question(
        self,
        origin: str,
        phase: Phase,
        text: str,
        options: list[str] | None = None,
    ) -> Question:
        created: list[Question] = []

        def _mutate(run: Run) -> None:
            number = len(run.pending_questions) + len(run.answered_questions) + 1
            question = Question(
                id=f"q-{number}",
                origin=origin,
                phase=phase,
                text=text,
                options=list(options or []),
            )
            run.pending_questions.append(question)
            created.append(question)

        self.update(_mutate)
        return created[0]

    def answer_question(self, question_id: str, answer: str) -> Question:
        answered: list[Question] = []

        def _mutate(run: Run) -> None:
            for index, question in enumerate(run.pending_questions):
                if question.id == question_id:
                    question.answer = answer
                    question.answered_at = self._utcnow_iso()
                    run.answered_questions.append(run.pending_questions.pop(index))
                    answered.append(question)
                    return
            raise ConsortiumStateError(f"No pending question with id {question_id}")

        self.update(_mutate)
        return answered[0]

    def append_cost(self, phase: Phase, agent: str, tokens: int, cost_usd: float) -> Run:
        entry = CostEntry(
            phase=phase,
            agent=agent,
            tokens=tokens,
            cost_usd=cost_usd,
            timestamp=self._utcnow_iso(),
        )

        def _mutate(run: Run) -> None:
            run.costs.append(entry)

        return self.update(_mutate)

    def set_branch(self, branch_name: str) -> Run:
        def _mutate(run: Run) -> None:
            run.branch_name = branch_name

        return self.update(_mutate)

    def set_pull_request(self, url: str, number: int | None) -> Run:
        def _mutate(run: Run) -> None:
            run.pr_url = url
            run.pr_number = number

        return self.update(_mutate)

    def set_ci_attempts(self, attempts: int) -> Run:
        def _mutate(run: Run) -> None:
            run.ci_attempts = attempts

        return self.update(_mutate)

    def set_sizing(
        self,
        *,
        explorer_focuses: list[str] | None = None,
        planner_perspectives: list[str] | None = None,
        critic_focuses: list[str] | None = None,
    ) -> Run:
        def _mutate(run: Run) -> None:
            if explorer_focuses is not None:
                run.explorer_focuses = list(explorer_focuses)
            if planner_perspectives is not None:
                run.planner_perspectives = list(planner_perspectives)
            if critic_focuses is not None:
                run.critic_focuses = list(critic_focuses)

        return self.update(_mutate)

    def set_rework_feedback(self, feedback: str | None) -> Run:
        def _mutate(run: Run) -> None:
            run.rework_feedback = feedback

        return self.update(_mutate)

    def total_cost(self) -> float:
        run = self.load()
        return run.total_cost() if run else 0.0
