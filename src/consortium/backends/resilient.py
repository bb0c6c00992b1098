from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from consortium.backends.base import AgentBackend, BackendExecutionError, BackendTimeoutError

logger = logging.getLogger(__name__)

BackendEventHook = Callable[[dict[str, Any]], None]


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int = 0
    backoff_seconds: float = 2.0
    timeout_seconds: float = 3600.0


class ResilientBackend(AgentBackend):
    """Wraps a backend with a per-invocation timeout and bounded retries."""

    def __init__(
        self,
        backend: AgentBackend,
        retry_policy: RetryPolicy,
        *,
        name: str = "claude",
        event_hook: BackendEventHook | None = None,
    ) -> None:
        self.backend = backend
        self.retry_policy = retry_policy
        self.name = name
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    async def invoke(
        self,
        role: str,
        model: str,
        prompt: str,
        allowed_tools: list[str],
        system_prompt: str | None = None,
    ) -> dict[str, Any]:
        errors: list[str] = []
        for attempt in range(self.retry_policy.max_retries + 1):
            if attempt > 0:
                delay = self.retry_policy.backoff_seconds * (2 ** (attempt - 1))
                self._emit(
                    {
                        "event": "backend_retry",
                        "backend": self.name,
                        "role": role,
                        "attempt": attempt,
                        "delay_seconds": delay,
                    }
                )
                await asyncio.sleep(delay)
            try:
                payload = await asyncio.wait_for(
                    self.backend.invoke(role, model, prompt, allowed_tools, system_prompt),
                    timeout=self.retry_policy.timeout_seconds,
                )
            except TimeoutError:
                error = BackendTimeoutError(
                    f"Backend request timed out after {self.retry_policy.timeout_seconds:.1f}s",
                    backend=self.name,
                    retriable=True,
                )
                errors.append(f"{self.name}[{attempt}]: {error}")
                self._emit(
                    {
                        "event": "backend_attempt_failed",
                        "backend": self.name,
                        "role": role,
                        "attempt": attempt,
                        "error": str(error),
                        "retriable": True,
                    }
                )
                continue
            except BackendExecutionError as exc:
                errors.append(f"{self.name}[{attempt}]: {exc}")
                self._emit(
                    {
                        "event": "backend_attempt_failed",
                        "backend": self.name,
                        "role": role,
                        "attempt": attempt,
                        "error": str(exc),
                        "retriable": exc.retriable,
                    }
                )
                if not exc.retriable:
                    raise
                continue
            except Exception as exc:
                errors.append(f"{self.name}[{attempt}]: {exc}")
                self._emit(
                    {
                        "event": "backend_attempt_failed",
                        "backend": self.name,
                        "role": role,
                        "attempt": attempt,
                        "error": str(exc),
                        "retriable": True,
                    }
                )
                continue

            if not isinstance(payload, dict):
                payload = {"content": str(payload)}
            payload.setdefault("backend", self.name)
            return payload

        summary = "; ".join(errors[-6:])
        logger.warning("Giving up on %s agent after %d attempt(s)", role, len(errors))
        raise BackendExecutionError(
            f"All backend attempts failed for {role}. {summary}",
            backend=self.name,
            retriable=False,
        )
