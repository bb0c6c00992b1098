from consortium.state.models import (
    PHASE_ORDER,
    TERMINAL_PHASES,
    CostEntry,
    Phase,
    Question,
    Run,
    Task,
    TaskStatus,
    next_phase,
)
from consortium.state.store import ConsortiumStateError, StateStore

__all__ = [
    "PHASE_ORDER",
    "TERMINAL_PHASES",
    "ConsortiumStateError",
    "CostEntry",
    "Phase",
    "Question",
    "Run",
    "StateStore",
    "Task",
    "TaskStatus",
    "next_phase",
]
