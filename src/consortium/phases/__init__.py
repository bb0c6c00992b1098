from consortium.phases.base import PhaseContext, PhaseResult
from consortium.phases.build import run_build
from consortium.phases.ci_check import run_ci_check
from consortium.phases.oink import run_oink
from consortium.phases.plan import run_plan
from consortium.phases.pr import run_pr
from consortium.phases.surf import run_surf

__all__ = [
    "PhaseContext",
    "PhaseResult",
    "run_build",
    "run_ci_check",
    "run_oink",
    "run_plan",
    "run_pr",
    "run_surf",
]
