from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Literal

from consortium.config import ConsortiumConfig
from consortium.dispatcher import AgentDispatcher
from consortium.interaction import InteractionContext
from consortium.phases import (
    PhaseContext,
    PhaseResult,
    run_build,
    run_ci_check,
    run_oink,
    run_plan,
    run_pr,
    run_surf,
)
from consortium.phases.base import Sleep
from consortium.state.models import TERMINAL_PHASES, Phase, Run, next_phase
from consortium.state.store import ConsortiumStateError, StateStore
from consortium.vcs import VcsDriver

logger = logging.getLogger(__name__)

ActionKind = Literal["advance", "execute", "approve", "finished"]
OutcomeStatus = Literal["done", "paused", "failed"]

PHASE_RUNNERS: dict[str, Callable[[PhaseContext], Awaitable[PhaseResult]]] = {
    "SURF": run_surf,
    "PLAN": run_plan,
    "BUILD": run_build,
    "OINK": run_oink,
    "PR": run_pr,
    "CI_CHECK": run_ci_check,
}
CHECKPOINTS: frozenset[str] = frozenset({"SURF", "PLAN"})


@dataclass(slots=True, frozen=True)
class NextAction:
    kind: ActionKind
    phase: Phase


@dataclass(slots=True)
class MachineOutcome:
    status: OutcomeStatus
    phase: Phase
    message: str = ""


def next_action(run: Run) -> NextAction:
    """What the machine would do next for a persisted run. Pure."""
    if run.phase in TERMINAL_PHASES:
        return NextAction("finished", run.phase)
    if run.phase == "INIT":
        return NextAction("advance", next_phase(run.phase))
    if run.awaiting_approval and run.phase in CHECKPOINTS:
        return NextAction("approve", run.phase)
    return NextAction("execute", run.phase)


class PhaseMachine:
    def __init__(
        self,
        store: StateStore,
        dispatcher: AgentDispatcher,
        vcs: VcsDriver,
        interaction: InteractionContext,
        config: ConsortiumConfig,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.store = store
        self.interaction = interaction
        self.config = config
        self.context = PhaseContext(
            store=store,
            dispatcher=dispatcher,
            vcs=vcs,
            interaction=interaction,
            config=config,
            sleep=sleep,
        )

    async def start(self, description: str, branch_name: str | None = None) -> MachineOutcome:
        existing = self.store.load()
        if existing is not None and existing.phase not in TERMINAL_PHASES:
            raise ConsortiumStateError(
                f"Run {existing.id} is still active (phase {existing.phase}). "
                "Resume it or abort it first."
            )
        self.store.destroy()
        run = self.store.create(description, branch_name=branch_name)
        self.interaction.notify(f"Started run {run.id}")
        return await self.run()

    async def resume(self) -> MachineOutcome:
        run = self.store.require()
        if run.phase == "DONE":
            return MachineOutcome("done", "DONE", "Run is already complete.")
        if run.phase == "FAILED":
            raise ConsortiumStateError(
                f"Run {run.id} failed ({run.failure_reason or 'no reason recorded'}). "
                "Abort it and start again."
            )
        self.interaction.notify(f"Resuming run {run.id} at {run.phase}")
        return await self.run()

    async def run(self) -> MachineOutcome:
        while True:
            run = self.store.require()
            action = next_action(run)
            logger.debug("Next action for %s: %s %s", run.id, action.kind, action.phase)
            if action.kind == "finished":
                return self._finished(run)
            if action.kind == "advance":
                self.store.set_phase(action.phase)
                continue
            if action.kind == "approve":
                outcome = self._approve(run)
            else:
                outcome = await self._execute(run)
            if outcome is not None:
                return outcome

    def _surface_questions(self) -> None:
        run = self.store.require()
        if not run.pending_questions:
            return
        answers = self.interaction.acknowledge(list(run.pending_questions))
        for question_id, answer in answers.items():
            self.store.answer_question(question_id, answer)

    def _enter_build(self, *, rework: bool) -> None:
        def _mutate(run: Run) -> None:
            run.phase = "BUILD"
            run.awaiting_approval = False
            run.build_pass += 1
            if rework:
                run.rework_cycles += 1

        self.store.update(_mutate)

    def _approve(self, run: Run) -> MachineOutcome | None:
        self._surface_questions()
        target = next_phase(run.phase)
        if not self.interaction.confirm(f"{run.phase} complete. Proceed to {target}?"):
            return MachineOutcome(
                "paused",
                run.phase,
                f"Paused after {run.phase}. Run `robot-consortium resume` to continue.",
            )
        if target == "BUILD":
            self._enter_build(rework=False)
        else:
            self.store.set_phase(target)
        return None

    def _rework(self, result: PhaseResult) -> MachineOutcome | None:
        run = self.store.set_rework_feedback(result.feedback)
        limit = self.config.workflow.max_rework_cycles
        if limit and run.rework_cycles >= limit:
            return MachineOutcome(
                "paused",
                "OINK",
                f"{result.message}. Rework limit ({limit}) reached; fix manually and resume.",
            )
        if not self.interaction.confirm(
            f"{result.message}. Return to BUILD with the verifier feedback?"
        ):
            return MachineOutcome(
                "paused",
                "OINK",
                f"{result.message}. Reviews are in {self.store.state_dir / 'reviews'}.",
            )
        self._enter_build(rework=True)
        return None

    def _finish_ci(self, result: PhaseResult) -> None:
        if result.ci == "exhausted":

            def _mutate(run: Run) -> None:
                run.phase = "DONE"
                run.ci_needs_manual = True

            self.store.update(_mutate)
        elif result.ci == "green":
            self.store.set_phase("DONE")

    async def _execute(self, run: Run) -> MachineOutcome | None:
        phase = run.phase
        self.interaction.notify(f"\n== {phase} ==")
        result = await PHASE_RUNNERS[phase](self.context)
        logger.info("Phase %s finished: %s %s", phase, result.status, result.message)

        if result.status == "failed":
            self.store.set_phase("FAILED", failure_reason=f"{phase}: {result.message}")
            self.interaction.notify(f"  {phase} failed: {result.message}")
            return MachineOutcome("failed", "FAILED", result.message)
        if result.status == "paused":
            self.interaction.notify(f"  {result.message}")
            return MachineOutcome("paused", phase, result.message)

        if result.message:
            self.interaction.notify(f"  {result.message}")
        if phase in CHECKPOINTS:
            self.store.set_checkpoint(True)
        elif phase == "BUILD":
            self._surface_questions()
            self.store.set_phase(next_phase(phase))
        elif phase == "OINK" and not result.passed:
            return self._rework(result)
        elif phase == "CI_CHECK":
            self._finish_ci(result)
        else:
            self.store.set_phase(next_phase(phase))
        return None

    def _finished(self, run: Run) -> MachineOutcome:
        if run.phase == "FAILED":
            return MachineOutcome("failed", "FAILED", run.failure_reason or "Run failed.")
        message = f"Run complete. Total cost: ${run.total_cost():.4f}"
        if run.pr_url:
            message += f". PR: {run.pr_url}"
        if run.ci_needs_manual:
            message += ". CI still failing; manual intervention needed."
        self.interaction.notify(message)
        return MachineOutcome("done", "DONE", message)
