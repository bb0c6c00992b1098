from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Literal

from consortium.config import AgentRole, ConsortiumConfig
from consortium.dispatcher import (
    AgentDispatcher,
    AgentInvocation,
    AgentResult,
    AgentUnit,
    create_unit,
    merge_result,
)
from consortium.interaction import InteractionContext
from consortium.prompts import ALLOWED_TOOLS, SYSTEM_PROMPTS
from consortium.state.models import ArtifactCategory, Phase
from consortium.state.store import StateStore
from consortium.vcs import VcsDriver

logger = logging.getLogger(__name__)

PhaseStatus = Literal["ok", "failed", "paused"]
CiOutcome = Literal["green", "fixed", "exhausted", "pending"]
Sleep = Callable[[float], Awaitable[None]]


@dataclass(slots=True)
class PhaseContext:
    store: StateStore
    dispatcher: AgentDispatcher
    vcs: VcsDriver
    interaction: InteractionContext
    config: ConsortiumConfig
    sleep: Sleep = asyncio.sleep

    def unit(self, role: AgentRole, index: int, focus: str | None = None) -> AgentUnit:
        return create_unit(role, index, focus, self.config.agents.as_mapping())

    def invocation(self, prompt: str, tools: str, role: AgentRole) -> AgentInvocation:
        return AgentInvocation(
            prompt=prompt,
            allowed_tools=list(ALLOWED_TOOLS[tools]),
            system_prompt=SYSTEM_PROMPTS.get(role),
        )

    async def coordinate(
        self,
        phase: Phase,
        prompt: str,
        tools: str,
        focus: str | None = None,
    ) -> AgentResult:
        """Run one coordinator unit and record its usage."""
        unit = self.unit("coordinator", 0, focus)
        result = await self.dispatcher.run_one(unit, self.invocation(prompt, tools, "coordinator"))
        merge_result(self.store, phase, unit, result, collect_questions=False)
        return result

    def combined_artifacts(self, category: ArtifactCategory, heading: str = "") -> str:
        sections = [f"{heading}\n\n"] if heading else []
        for filename, content in self.store.read_artifacts(category):
            sections.append(f"## {filename}\n\n{content}\n\n---\n\n")
        return "".join(sections)


@dataclass(slots=True)
class PhaseResult:
    status: PhaseStatus
    message: str = ""
    passed: bool = True
    feedback: str | None = None
    ci: CiOutcome | None = None

    @classmethod
    def ok(cls, message: str = "", **kwargs) -> PhaseResult:
        return cls(status="ok", message=message, **kwargs)

    @classmethod
    def failed(cls, message: str, **kwargs) -> PhaseResult:
        return cls(status="failed", message=message, **kwargs)

    @classmethod
    def paused(cls, message: str, **kwargs) -> PhaseResult:
        return cls(status="paused", message=message, **kwargs)
