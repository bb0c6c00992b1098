import asyncio
from pathlib import Path
from typing import Any

import pytest

from consortium.backends.base import AgentBackend, BackendExecutionError
from consortium.config import ConsortiumConfig
from consortium.dispatcher import AgentDispatcher
from consortium.interaction import InteractionContext
from consortium.machine import NextAction, PhaseMachine, next_action
from consortium.state.models import Question, Run
from consortium.state.store import ConsortiumStateError, StateStore
from consortium.vcs import CheckStatus, VcsDriver, VcsError

FINAL_PLAN = "# Final Implementation Plan\n## Summary\nAdd a dark mode toggle."
TASKS_JSON = """[
  {"id": "task-1", "description": "Create the model", "dependencies": []},
  {"id": "task-2", "description": "Add the endpoint", "dependencies": []},
  {"id": "task-3", "description": "Wire the toggle", "dependencies": ["task-1", "task-2"]}
]"""
PR_OUTPUT = "PR_TITLE: feat: add dark mode\n\nPR_BODY:\n## Summary\n- dark mode toggle\nPR_END"


class ScriptedBackend(AgentBackend):
    """Answers each agent by recognising the prompt it was given."""

    def __init__(
        self,
        *,
        verdicts: dict[str, list[str]] | None = None,
        fail_on: tuple[str, ...] = (),
    ) -> None:
        self.prompts: list[tuple[str, str]] = []
        self.verdicts = {check: list(outputs) for check, outputs in (verdicts or {}).items()}
        self.fail_on = fail_on

    def prompts_starting(self, prefix: str) -> list[str]:
        return [prompt for _, prompt in self.prompts if prompt.startswith(prefix)]

    def _reply(self, prompt: str) -> str:
        if prompt.startswith("Decide which areas"):
            return (
                "SURFER_FOCUSES:\n1. api-layer: handlers\n2. storage: repositories\n"
                "3. tests: fixtures\nEND_FOCUSES"
            )
        if prompt.startswith("Explore the codebase"):
            return "Handlers live in app/api.py"
        if prompt.startswith("Decide which planning perspectives"):
            return (
                "PLANNER_PERSPECTIVES:\n1. minimal: smallest change\n2. robust: full\n"
                "END_PERSPECTIVES"
            )
        if prompt.startswith("Propose an implementation approach"):
            return "# Plan\n1. Add model\n2. Add endpoint"
        if prompt.startswith("Decide which critique angles"):
            return (
                "RAT_FOCUSES:\n1. technical-flaws: edges\n2. overengineering: scope\n"
                "END_RAT_FOCUSES"
            )
        if prompt.startswith("Find weaknesses"):
            return "The minimal plan skips validation."
        if prompt.startswith("Extract implementation tasks"):
            return TASKS_JSON
        if prompt.startswith("Implement one task"):
            if "YOUR SPECIFIC TASK:\nCreate the model" in prompt:
                return "Model created.\nQUESTION: Use UUID primary keys?"
            return "Done."
        if prompt.startswith("Run the project's linters"):
            return "VERDICT: PASS\nNo lint issues."
        if prompt.startswith("Verify the implementation"):
            check = prompt.split("YOUR CHECK TYPE: ", 1)[1].splitlines()[0]
            queue = self.verdicts.get(check)
            if queue:
                return queue.pop(0)
            return f"VERDICT: PASS\n{check} looks good."
        if prompt.startswith("Write a pull request"):
            return PR_OUTPUT
        if prompt.startswith("CI failed on the pull request"):
            return "Fixed the failing test."
        if "proposed approaches for this task" in prompt:
            return FINAL_PLAN
        raise AssertionError(f"unexpected prompt: {prompt[:60]}")

    async def invoke(
        self,
        role: str,
        model: str,
        prompt: str,
        allowed_tools: list[str],
        system_prompt: str | None = None,
    ) -> dict[str, Any]:
        _ = model, allowed_tools, system_prompt
        self.prompts.append((role, prompt))
        await asyncio.sleep(0)
        if any(prompt.startswith(prefix) for prefix in self.fail_on):
            raise BackendExecutionError("agent crashed", backend="fake")
        return {"content": self._reply(prompt), "cost_usd": 0.01, "tokens": 100}


class FakeVcs(VcsDriver):
    """Scripted VCS. ``failures`` maps a method name to the call number that raises."""

    def __init__(
        self,
        check_states: list[str] | None = None,
        *,
        failures: dict[str, int] | None = None,
    ) -> None:
        self.failures = dict(failures or {})
        self.calls: dict[str, int] = {}
        self.check_states = list(check_states or ["success"])
        self.status_checks = 0
        self.commits: list[str] = []
        self.pushes: list[str | None] = []
        self.prs: list[tuple[str, str]] = []

    def _record(self, name: str) -> None:
        self.calls[name] = self.calls.get(name, 0) + 1
        if self.failures.get(name) == self.calls[name]:
            raise VcsError(f"{name} rejected by remote")

    def commit_if_dirty(self, message: str) -> bool:
        self._record("commit_if_dirty")
        self.commits.append(message)
        return True

    def current_branch(self) -> str:
        return "feature/dark-mode"

    def push(self, branch: str | None = None) -> None:
        self._record("push")
        self.pushes.append(branch)

    def create_pr(self, title: str, body_file: Path) -> tuple[str, int | None]:
        self._record("create_pr")
        self.prs.append((title, body_file.read_text(encoding="utf-8")))
        return "https://github.com/acme/app/pull/42", 42

    def check_status(self, pr_number: int) -> CheckStatus:
        _ = pr_number
        self.status_checks += 1
        state = self.check_states.pop(0) if len(self.check_states) > 1 else self.check_states[0]
        if state == "failure":
            return CheckStatus(state="failure", details="tests", failed_checks=["tests"])
        if state == "pending":
            return CheckStatus(state="pending", details="tests")
        return CheckStatus(state="success", details="All checks passed")

    def failure_logs(self, pr_number: int) -> str:
        _ = pr_number
        return "FAILED tests/test_api.py::test_toggle"

    def diff_summary(self, base: str) -> str:
        raise VcsError(f"unknown revision {base}")

    def commit_log(self, base: str) -> str:
        _ = base
        return "abc123 feat: toggle"


class ScriptedInteraction(InteractionContext):
    def __init__(
        self,
        confirms: list[bool] | None = None,
        *,
        default: bool = True,
        answer: str | None = None,
    ) -> None:
        self.confirms = list(confirms or [])
        self.default = default
        self.answer = answer
        self.prompts: list[str] = []
        self.acknowledged: list[str] = []
        self.messages: list[str] = []

    def confirm(self, message: str, default: bool = True) -> bool:
        _ = default
        self.prompts.append(message)
        return self.confirms.pop(0) if self.confirms else self.default

    def acknowledge(self, questions: list[Question]) -> dict[str, str]:
        self.acknowledged.extend(question.id for question in questions)
        if self.answer is None:
            return {}
        return {question.id: self.answer for question in questions}

    def notify(self, message: str) -> None:
        self.messages.append(message)


class RecordingSleep:
    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


def _machine(
    tmp_path: Path,
    backend: ScriptedBackend,
    *,
    vcs: FakeVcs | None = None,
    interaction: ScriptedInteraction | None = None,
    config: ConsortiumConfig | None = None,
    sleep: RecordingSleep | None = None,
) -> PhaseMachine:
    config = config or ConsortiumConfig.default()
    store = StateStore(tmp_path, config.state.directory)
    return PhaseMachine(
        store=store,
        dispatcher=AgentDispatcher(backend, max_parallel=config.workflow.max_parallel_units),
        vcs=vcs or FakeVcs(),
        interaction=interaction or ScriptedInteraction(),
        config=config,
        sleep=sleep or RecordingSleep(),
    )


def test_surf_pauses_at_checkpoint_with_findings(tmp_path: Path) -> None:
    backend = ScriptedBackend()
    interaction = ScriptedInteraction(default=False)
    machine = _machine(tmp_path, backend, interaction=interaction)

    outcome = asyncio.run(machine.start("Add dark mode"))

    assert outcome.status == "paused"
    assert outcome.phase == "SURF"
    run = machine.store.require()
    assert run.phase == "SURF"
    assert run.awaiting_approval is True
    assert run.findings == [
        "explorer-1-api-layer.md",
        "explorer-2-storage.md",
        "explorer-3-tests.md",
    ]
    assert (machine.store.state_dir / "findings" / "explorer-2-storage.md").read_text(
        encoding="utf-8"
    ) == "Handlers live in app/api.py"
    assert run.explorer_focuses[0] == "api-layer: handlers"
    assert interaction.prompts == ["SURF complete. Proceed to PLAN?"]
    assert next_action(run) == NextAction("approve", "SURF")


def test_full_run_reaches_done(tmp_path: Path) -> None:
    backend = ScriptedBackend()
    vcs = FakeVcs()
    interaction = ScriptedInteraction(answer="yes")
    sleep = RecordingSleep()
    machine = _machine(tmp_path, backend, vcs=vcs, interaction=interaction, sleep=sleep)

    outcome = asyncio.run(machine.start("Add dark mode"))

    assert outcome.status == "done"
    run = machine.store.require()
    assert run.phase == "DONE"
    assert len(run.findings) == 3
    assert len(run.plans) == 2
    assert len(run.critiques) == 2
    assert len(run.reviews) == 4
    assert machine.store.read_final_plan() == FINAL_PLAN
    assert [task.status for task in run.tasks] == ["completed"] * 3
    assert run.task("task-3").blocked_by == ["task-1", "task-2"]

    assert run.answered_questions[0].text == "Use UUID primary keys?"
    assert run.answered_questions[0].answer == "yes"
    assert interaction.acknowledged == ["q-1"]

    assert run.branch_name == "feature/dark-mode"
    assert run.pr_url == "https://github.com/acme/app/pull/42"
    assert run.pr_number == 42
    assert vcs.prs == [("feat: add dark mode", "## Summary\n- dark mode toggle")]
    assert vcs.commits == ["chore: robot-consortium final changes"]
    assert vcs.pushes == ["feature/dark-mode"]
    assert "Unable to get diff summary" in backend.prompts_starting("Write a pull request")[0]
    assert sleep.calls == [900.0]
    assert vcs.status_checks == 1

    assert run.total_cost() == pytest.approx(0.01 * len(backend.prompts))
    assert "https://github.com/acme/app/pull/42" in outcome.message


def test_failed_verification_returns_to_build_with_feedback(tmp_path: Path) -> None:
    backend = ScriptedBackend(
        verdicts={"tests": ["VERDICT: FAIL\nthree tests fail in test_api.py"]}
    )
    interaction = ScriptedInteraction()
    machine = _machine(tmp_path, backend, interaction=interaction)

    outcome = asyncio.run(machine.start("Add dark mode"))

    assert outcome.status == "done"
    run = machine.store.require()
    assert run.build_pass == 2
    assert run.rework_cycles == 1
    assert run.rework_feedback is None
    assert [task.id for task in run.tasks] == [f"task-{index}" for index in range(1, 7)]
    assert run.task("task-6").blocked_by == ["task-4", "task-5"]
    assert len(run.reviews) == 8
    assert "verifier-0-lint-2.md" in run.reviews

    implementer_prompts = backend.prompts_starting("Implement one task")
    assert len(implementer_prompts) == 6
    assert all("VERIFICATION FEEDBACK" not in prompt for prompt in implementer_prompts[:3])
    for prompt in implementer_prompts[3:]:
        assert "VERIFICATION FEEDBACK" in prompt
        assert "three tests fail in test_api.py" in prompt
        assert "code-review looks good" not in prompt
    assert any("Return to BUILD" in prompt for prompt in interaction.prompts)


def test_declined_rework_pauses_at_oink(tmp_path: Path) -> None:
    backend = ScriptedBackend(verdicts={"code-review": ["VERDICT: FAIL\nmissing docs"]})
    interaction = ScriptedInteraction([True, True, False])
    machine = _machine(tmp_path, backend, interaction=interaction)

    outcome = asyncio.run(machine.start("Add dark mode"))

    assert outcome.status == "paused"
    assert outcome.phase == "OINK"
    run = machine.store.require()
    assert run.phase == "OINK"
    assert run.rework_feedback == "## verifier-2\n\nVERDICT: FAIL\nmissing docs"
    assert run.build_pass == 1


def test_rework_limit_pauses_at_oink(tmp_path: Path) -> None:
    backend = ScriptedBackend(verdicts={"tests": ["VERDICT: FAIL\nbroken"] * 5})
    config = ConsortiumConfig.default()
    config.workflow.max_rework_cycles = 1
    machine = _machine(tmp_path, backend, config=config)

    outcome = asyncio.run(machine.start("Add dark mode"))

    assert outcome.status == "paused"
    assert outcome.phase == "OINK"
    assert "Rework limit (1) reached" in outcome.message
    run = machine.store.require()
    assert run.rework_cycles == 1
    assert run.build_pass == 2


def test_ci_failures_stop_after_three_fix_attempts(tmp_path: Path) -> None:
    backend = ScriptedBackend()
    vcs = FakeVcs(["failure"])
    sleep = RecordingSleep()
    machine = _machine(tmp_path, backend, vcs=vcs, sleep=sleep)

    outcome = asyncio.run(machine.start("Add dark mode"))

    assert outcome.status == "done"
    assert "manual intervention" in outcome.message
    run = machine.store.require()
    assert run.phase == "DONE"
    assert run.ci_needs_manual is True
    assert run.ci_attempts == 3
    assert vcs.status_checks == 3
    assert sleep.calls == [900.0, 900.0, 900.0]
    assert vcs.commits == [
        "chore: robot-consortium final changes",
        "fix: CI fixes (attempt 1)",
        "fix: CI fixes (attempt 2)",
        "fix: CI fixes (attempt 3)",
    ]
    assert vcs.pushes == ["feature/dark-mode", None, None, None]
    fix_prompts = backend.prompts_starting("CI failed on the pull request")
    assert len(fix_prompts) == 3
    assert "FAILED tests/test_api.py::test_toggle" in fix_prompts[0]
    assert "(fix attempt 3)" in fix_prompts[2]


def test_pending_ci_pauses_then_resumes(tmp_path: Path) -> None:
    backend = ScriptedBackend()
    vcs = FakeVcs(["pending", "pending", "success"])
    sleep = RecordingSleep()
    machine = _machine(tmp_path, backend, vcs=vcs, sleep=sleep)

    outcome = asyncio.run(machine.start("Add dark mode"))

    assert outcome.status == "paused"
    assert outcome.phase == "CI_CHECK"
    assert sleep.calls == [900.0, 300.0]
    run = machine.store.require()
    assert run.phase == "CI_CHECK"
    assert run.ci_attempts == 0

    resumed = asyncio.run(machine.resume())

    assert resumed.status == "done"
    assert machine.store.require().ci_needs_manual is False
    assert sleep.calls == [900.0, 300.0, 900.0]
    assert vcs.status_checks == 3


def test_resume_reasks_checkpoint_without_rerunning_surf(tmp_path: Path) -> None:
    backend = ScriptedBackend()
    interaction = ScriptedInteraction([False])
    machine = _machine(tmp_path, backend, interaction=interaction)

    first = asyncio.run(machine.start("Add dark mode"))
    second = asyncio.run(machine.resume())

    assert first.status == "paused"
    assert second.status == "done"
    assert interaction.prompts[:2] == [
        "SURF complete. Proceed to PLAN?",
        "SURF complete. Proceed to PLAN?",
    ]
    assert len(backend.prompts_starting("Decide which areas")) == 1
    assert len(backend.prompts_starting("Explore the codebase")) == 3


def test_skip_critics_goes_straight_to_synthesis(tmp_path: Path) -> None:
    backend = ScriptedBackend()
    config = ConsortiumConfig.default()
    config.workflow.skip_critics = True
    machine = _machine(tmp_path, backend, config=config, interaction=ScriptedInteraction())

    asyncio.run(machine.start("Add dark mode"))

    run = machine.store.require()
    assert run.critiques == []
    assert backend.prompts_starting("Find weaknesses") == []
    assert backend.prompts_starting("Decide which critique angles") == []
    synthesis = [prompt for _, prompt in backend.prompts if "proposed approaches" in prompt]
    assert "CRITIQUES:" not in synthesis[0]


def test_explorer_failure_fails_the_run(tmp_path: Path) -> None:
    backend = ScriptedBackend(fail_on=("Explore the codebase",))
    machine = _machine(tmp_path, backend)

    outcome = asyncio.run(machine.start("Add dark mode"))

    assert outcome.status == "failed"
    run = machine.store.require()
    assert run.phase == "FAILED"
    assert run.failure_reason.startswith("SURF: 3 explorer(s) failed")
    with pytest.raises(ConsortiumStateError):
        asyncio.run(machine.resume())


def test_failed_tasks_fail_the_build(tmp_path: Path) -> None:
    backend = ScriptedBackend(fail_on=("Implement one task",))
    machine = _machine(tmp_path, backend)

    outcome = asyncio.run(machine.start("Add dark mode"))

    assert outcome.status == "failed"
    run = machine.store.require()
    assert run.failure_reason.startswith("BUILD: 2 task(s) failed")
    assert run.task("task-3").status == "blocked"


def test_verifier_errors_pause_oink(tmp_path: Path) -> None:
    backend = ScriptedBackend(fail_on=("Verify the implementation",))
    machine = _machine(tmp_path, backend)

    outcome = asyncio.run(machine.start("Add dark mode"))

    assert outcome.status == "paused"
    assert outcome.phase == "OINK"
    assert machine.store.require().phase == "OINK"


def test_planner_failure_fails_the_run(tmp_path: Path) -> None:
    backend = ScriptedBackend(fail_on=("Propose an implementation approach",))
    machine = _machine(tmp_path, backend)

    outcome = asyncio.run(machine.start("Add dark mode"))

    assert outcome.status == "failed"
    run = machine.store.require()
    assert run.phase == "FAILED"
    assert run.failure_reason.startswith("PLAN: 2 planner(s) failed: planner-1, planner-2")
    assert run.plans == []
    assert backend.prompts_starting("Find weaknesses") == []
    assert machine.store.read_final_plan() is None


def test_synthesis_failure_fails_the_run(tmp_path: Path) -> None:
    backend = ScriptedBackend(fail_on=("2 planner(s) proposed",))
    machine = _machine(tmp_path, backend)

    outcome = asyncio.run(machine.start("Add dark mode"))

    assert outcome.status == "failed"
    run = machine.store.require()
    assert run.failure_reason.startswith("PLAN: Plan synthesis failed")
    assert len(run.plans) == 2
    assert len(run.critiques) == 2
    assert run.final_plan is None
    assert backend.prompts_starting("Extract implementation tasks") == []


def test_critic_failures_do_not_stop_synthesis(tmp_path: Path) -> None:
    backend = ScriptedBackend(fail_on=("Find weaknesses",))
    interaction = ScriptedInteraction()
    machine = _machine(tmp_path, backend, interaction=interaction)

    outcome = asyncio.run(machine.start("Add dark mode"))

    assert outcome.status == "done"
    run = machine.store.require()
    assert run.critiques == []
    assert len(backend.prompts_starting("Find weaknesses")) == 2
    assert machine.store.read_final_plan() == FINAL_PLAN
    synthesis = backend.prompts_starting("2 planner(s) proposed")
    assert len(synthesis) == 1
    assert "CRITIQUES:" not in synthesis[0]
    assert "  2 critic(s) failed, proceeding with available critiques." in interaction.messages


def test_push_failure_fails_the_pr_phase(tmp_path: Path) -> None:
    vcs = FakeVcs(failures={"push": 1})
    machine = _machine(tmp_path, ScriptedBackend(), vcs=vcs)

    outcome = asyncio.run(machine.start("Add dark mode"))

    assert outcome.status == "failed"
    run = machine.store.require()
    assert run.phase == "FAILED"
    assert run.failure_reason == "PR: Failed to push branch: push rejected by remote"
    assert run.branch_name is None
    assert vcs.prs == []


def test_create_pr_failure_fails_the_pr_phase(tmp_path: Path) -> None:
    vcs = FakeVcs(failures={"create_pr": 1})
    machine = _machine(tmp_path, ScriptedBackend(), vcs=vcs)

    outcome = asyncio.run(machine.start("Add dark mode"))

    assert outcome.status == "failed"
    run = machine.store.require()
    assert run.failure_reason == "PR: Failed to create PR: create_pr rejected by remote"
    assert run.branch_name == "feature/dark-mode"
    assert run.pr_url is None
    assert vcs.status_checks == 0


def test_ci_coordinator_failure_fails_the_run(tmp_path: Path) -> None:
    backend = ScriptedBackend(fail_on=("CI failed on the pull request",))
    vcs = FakeVcs(["failure"])
    machine = _machine(tmp_path, backend, vcs=vcs)

    outcome = asyncio.run(machine.start("Add dark mode"))

    assert outcome.status == "failed"
    run = machine.store.require()
    assert run.failure_reason.startswith(
        "CI_CHECK: Coordinator failed to analyse CI failures"
    )
    assert run.ci_attempts == 0
    assert vcs.commits == ["chore: robot-consortium final changes"]


def test_ci_fix_push_failure_fails_the_run(tmp_path: Path) -> None:
    vcs = FakeVcs(["failure"], failures={"push": 2})
    machine = _machine(tmp_path, ScriptedBackend(), vcs=vcs)

    outcome = asyncio.run(machine.start("Add dark mode"))

    assert outcome.status == "failed"
    run = machine.store.require()
    assert run.failure_reason == (
        "CI_CHECK: Failed to commit CI fixes: push rejected by remote"
    )
    assert run.ci_attempts == 0
    assert vcs.commits[-1] == "fix: CI fixes (attempt 1)"
    assert vcs.pushes == ["feature/dark-mode"]

def test_start_refuses_while_a_run_is_active(tmp_path: Path) -> None:
    machine = _machine(tmp_path, ScriptedBackend(), interaction=ScriptedInteraction(default=False))
    asyncio.run(machine.start("Add dark mode"))
    run_id = machine.store.require().id

    with pytest.raises(ConsortiumStateError):
        asyncio.run(machine.start("Something else"))

    assert machine.store.require().id == run_id


def test_start_replaces_a_finished_run(tmp_path: Path) -> None:
    machine = _machine(tmp_path, ScriptedBackend(fail_on=("Explore the codebase",)))
    asyncio.run(machine.start("Add dark mode"))
    failed_id = machine.store.require().id

    asyncio.run(machine.start("Try again"))

    run = machine.store.require()
    assert run.id != failed_id
    assert run.description == "Try again"


def test_resume_completed_run_is_a_no_op(tmp_path: Path) -> None:
    backend = ScriptedBackend()
    machine = _machine(tmp_path, backend)
    asyncio.run(machine.start("Add dark mode"))
    calls = len(backend.prompts)

    outcome = asyncio.run(machine.resume())

    assert outcome.status == "done"
    assert outcome.message == "Run is already complete."
    assert len(backend.prompts) == calls


def test_next_action_is_pure_and_idempotent() -> None:
    run = Run(
        id="rc-1",
        description="x",
        phase="INIT",
        created_at="2026-01-01T00:00:00+00:00",
        updated_at="2026-01-01T00:00:00+00:00",
        working_directory="/repo",
    )
    before = run.to_dict()

    assert next_action(run) == next_action(run) == NextAction("advance", "SURF")
    assert run.to_dict() == before

    run.phase = "PLAN"
    run.awaiting_approval = True
    assert next_action(run) == NextAction("approve", "PLAN")
    run.phase = "BUILD"
    assert next_action(run) == NextAction("execute", "BUILD")
    run.phase = "DONE"
    assert next_action(run) == NextAction("finished", "DONE")
    run.phase = "FAILED"
    assert next_action(run) == NextAction("finished", "FAILED")
