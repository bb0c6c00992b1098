from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from consortium.backends.base import AgentBackend, BackendExecutionError
from consortium.config import AgentRole, AgentsConfig, ModelTier
from consortium.parsing import find_question
from consortium.state.models import Phase, Question
from consortium.state.store import StateStore

logger = logging.getLogger(__name__)

DispatchEventHook = Callable[[dict[str, Any]], None]

DEFAULT_MODELS: dict[str, ModelTier] = AgentsConfig().as_mapping()


@dataclass(slots=True)
class AgentUnit:
    role: AgentRole
    model: ModelTier
    index: int
    focus: str | None = None

    @property
    def id(self) -> str:
        return f"{self.role}-{self.index}"


@dataclass(slots=True)
class AgentInvocation:
    prompt: str
    allowed_tools: list[str] = field(default_factory=list)
    system_prompt: str | None = None


@dataclass(slots=True)
class AgentResult:
    success: bool
    output: str = ""
    error: str | None = None
    cost_usd: float = 0.0
    tokens: int = 0


def create_unit(
    role: AgentRole,
    index: int,
    focus: str | None = None,
    models: Mapping[str, ModelTier] | None = None,
) -> AgentUnit:
    tiers = models or DEFAULT_MODELS
    model = tiers.get(role, DEFAULT_MODELS[role])
    return AgentUnit(role=role, model=model, index=index, focus=focus)


class AgentDispatcher:
    """Runs agent units through a backend, one at a time or as a joined batch."""

    def __init__(
        self,
        backend: AgentBackend,
        *,
        max_parallel: int = 5,
        event_hook: DispatchEventHook | None = None,
    ) -> None:
        self.backend = backend
        self.max_parallel = max(1, max_parallel)
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    async def _invoke(self, unit: AgentUnit, invocation: AgentInvocation) -> AgentResult:
        self._emit({"event": "unit_started", "unit": unit.id, "focus": unit.focus})
        started = time.monotonic()
        try:
            payload = await self.backend.invoke(
                unit.role,
                unit.model,
                invocation.prompt,
                list(invocation.allowed_tools),
                invocation.system_prompt,
            )
        except (BackendExecutionError, OSError) as exc:
            logger.warning("Agent %s failed: %s", unit.id, exc)
            self._emit({"event": "unit_failed", "unit": unit.id, "error": str(exc)})
            return AgentResult(success=False, error=str(exc))
        except Exception as exc:
            logger.exception("Agent %s raised unexpectedly", unit.id)
            error = f"{type(exc).__name__}: {exc}"
            self._emit({"event": "unit_failed", "unit": unit.id, "error": error})
            return AgentResult(success=False, error=error)

        elapsed = time.monotonic() - started
        result = AgentResult(
            success=True,
            output=str(payload.get("content", "")),
            cost_usd=float(payload.get("cost_usd") or 0.0),
            tokens=int(payload.get("tokens") or 0),
        )
        logger.debug("Agent %s finished in %.1fs", unit.id, elapsed)
        self._emit(
            {
                "event": "unit_done",
                "unit": unit.id,
                "elapsed_seconds": elapsed,
                "cost_usd": result.cost_usd,
            }
        )
        return result

    async def run_one(self, unit: AgentUnit, invocation: AgentInvocation) -> AgentResult:
        return await self._invoke(unit, invocation)

    async def run_many(
        self,
        units: list[AgentUnit],
        invocations: list[AgentInvocation],
    ) -> list[AgentResult]:
        if len(units) != len(invocations):
            raise ValueError(
                f"run_many got {len(units)} units but {len(invocations)} invocations"
            )
        if not units:
            return []
        semaphore = asyncio.Semaphore(self.max_parallel)

        async def _bounded(unit: AgentUnit, invocation: AgentInvocation) -> AgentResult:
            async with semaphore:
                return await self._invoke(unit, invocation)

        return list(
            await asyncio.gather(
                *(
                    _bounded(unit, invocation)
                    for unit, invocation in zip(units, invocations, strict=True)
                )
            )
        )


def merge_result(
    store: StateStore,
    phase: Phase,
    unit: AgentUnit,
    result: AgentResult,
    *,
    collect_questions: bool = True,
) -> Question | None:
    """Record a finished unit's usage and any question it raised."""
    if result.cost_usd or result.tokens:
        store.append_cost(phase, unit.id, result.tokens, result.cost_usd)
    if not result.success or not collect_questions:
        return None
    question = find_question(result.output)
    if question is None:
        return None
    return store.append_question(unit.id, phase, question)
