from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any


class BackendExecutionError(RuntimeError):
    """Raised when an agent invocation fails."""

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.exit_code = exit_code
        self.retriable = retriable


class BackendTimeoutError(BackendExecutionError):
    """Raised when an invocation exceeds the configured timeout."""


class BackendProcessError(BackendExecutionError):
    """Raised when the agent process cannot be started."""


class AgentBackend(ABC):
    @abstractmethod
    async def invoke(
        self,
        role: str,
        model: str,
        prompt: str,
        allowed_tools: list[str],
        system_prompt: str | None = None,
    ) -> dict[str, Any]:
        """Run one agent to completion.

        Returns a payload with ``content`` (the agent's text output) and, when the
        executor reports it, ``cost_usd`` and ``tokens``.
        """
