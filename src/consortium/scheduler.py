from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field

from consortium.config import ModelTier
from consortium.dispatcher import (
    AgentDispatcher,
    AgentInvocation,
    AgentResult,
    AgentUnit,
    create_unit,
    merge_result,
)
from consortium.state.models import Phase, Question, Task
from consortium.state.store import StateStore

logger = logging.getLogger(__name__)

InvocationFactory = Callable[[Task], AgentInvocation]


@dataclass(slots=True)
class ScheduleOutcome:
    completed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    blocked: list[str] = field(default_factory=list)
    questions: list[Question] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return not self.failed


class DependencyScheduler:
    """Two-tier task runner: unblocked tasks in parallel, then blocked ones in order.

    Blockers are expected to live in the first tier. A dependent task whose
    blockers are not all completed is marked ``blocked`` and not retried within
    the same pass.
    """

    def __init__(
        self,
        dispatcher: AgentDispatcher,
        store: StateStore,
        *,
        models: Mapping[str, ModelTier] | None = None,
        phase: Phase = "BUILD",
    ) -> None:
        self.dispatcher = dispatcher
        self.store = store
        self.models = models
        self.phase = phase

    def _finish(
        self,
        task: Task,
        unit: AgentUnit,
        result: AgentResult,
        outcome: ScheduleOutcome,
    ) -> None:
        if result.success:
            self.store.update_task(task.id, status="completed", output=result.output, error=None)
            outcome.completed.append(task.id)
        else:
            self.store.update_task(task.id, status="failed", error=result.error)
            outcome.failed.append(task.id)
            logger.warning("Task %s failed: %s", task.id, result.error)
        question = merge_result(self.store, self.phase, unit, result)
        if question is not None:
            outcome.questions.append(question)

    async def run(self, tasks: list[Task], make_invocation: InvocationFactory) -> ScheduleOutcome:
        outcome = ScheduleOutcome()
        runnable: list[Task] = []
        for task in tasks:
            if task.status == "completed":
                outcome.completed.append(task.id)
                continue
            if task.status != "pending":
                # Leftovers of an interrupted pass get a fresh attempt.
                task = self.store.update_task(task.id, status="pending", error=None)
            runnable.append(task)

        independent = [task for task in runnable if not task.blocked_by]
        dependent = [task for task in runnable if task.blocked_by]
        logger.info(
            "Scheduling %d independent and %d dependent task(s)", len(independent), len(dependent)
        )

        next_index = 1
        if independent:
            units: list[AgentUnit] = []
            invocations: list[AgentInvocation] = []
            for task in independent:
                unit = create_unit("implementer", next_index, task.description, self.models)
                next_index += 1
                self.store.update_task(task.id, status="in_progress", assigned_to=unit.id)
                units.append(unit)
                invocations.append(make_invocation(task))
            results = await self.dispatcher.run_many(units, invocations)
            for task, unit, result in zip(independent, units, results, strict=True):
                self._finish(task, unit, result, outcome)

        for task in dependent:
            run = self.store.require()
            unmet = [
                blocker
                for blocker in task.blocked_by
                if (current := run.task(blocker)) is None or current.status != "completed"
            ]
            if unmet:
                self.store.update_task(
                    task.id,
                    status="blocked",
                    error=f"Blocked by: {', '.join(unmet)}",
                )
                outcome.blocked.append(task.id)
                logger.info("Task %s blocked by %s", task.id, ", ".join(unmet))
                continue

            unit = create_unit("implementer", next_index, task.description, self.models)
            next_index += 1
            self.store.update_task(task.id, status="in_progress", assigned_to=unit.id)
            result = await self.dispatcher.run_one(unit, make_invocation(task))
            self._finish(task, unit, result, outcome)

        return outcome
