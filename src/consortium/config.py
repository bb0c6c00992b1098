from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

ModelTier = Literal["opus", "sonnet", "haiku"]
AgentRole = Literal["coordinator", "explorer", "planner", "critic", "implementer", "verifier"]

AGENT_ROLES: tuple[AgentRole, ...] = (
    "coordinator",
    "explorer",
    "planner",
    "critic",
    "implementer",
    "verifier",
)

DEFAULT_CONFIG_FILE = "consortium.toml"


@dataclass(slots=True)
class BackendConfig:
    binary: str = "claude"
    timeout_seconds: float = 3600.0
    max_retries: int = 0
    retry_backoff_seconds: float = 2.0


@dataclass(slots=True)
class AgentsConfig:
    coordinator: ModelTier = "opus"
    explorer: ModelTier = "sonnet"
    planner: ModelTier = "opus"
    critic: ModelTier = "sonnet"
    implementer: ModelTier = "opus"
    verifier: ModelTier = "sonnet"

    def model_for(self, role: str) -> ModelTier:
        return getattr(self, role, "sonnet")

    def as_mapping(self) -> dict[str, ModelTier]:
        return {role: self.model_for(role) for role in AGENT_ROLES}


@dataclass(slots=True)
class WorkflowConfig:
    max_parallel_units: int = 5
    skip_critics: bool = False
    # 0 keeps OINK -> BUILD unbounded; the user confirms every loop.
    max_rework_cycles: int = 0
    ci_max_attempts: int = 3
    ci_wait_seconds: float = 900.0
    ci_recheck_seconds: float = 300.0
    base_branch: str = "main"


@dataclass(slots=True)
class StateConfig:
    directory: str = ".robot-consortium"


@dataclass(slots=True)
class ConsortiumConfig:
    backend: BackendConfig = field(default_factory=BackendConfig)
    agents: AgentsConfig = field(default_factory=AgentsConfig)
    workflow: WorkflowConfig = field(default_factory=WorkflowConfig)
    state: StateConfig = field(default_factory=StateConfig)

    @classmethod
    def default(cls) -> ConsortiumConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> ConsortiumConfig:
        return cls(
            backend=BackendConfig(**data.get("backend", {})),
            agents=AgentsConfig(**data.get("agents", {})),
            workflow=WorkflowConfig(**data.get("workflow", {})),
            state=StateConfig(**data.get("state", {})),
        )

    def to_dict(self) -> dict:
        return {
            "backend": {
                "binary": self.backend.binary,
                "timeout_seconds": self.backend.timeout_seconds,
                "max_retries": self.backend.max_retries,
                "retry_backoff_seconds": self.backend.retry_backoff_seconds,
            },
            "agents": self.agents.as_mapping(),
            "workflow": {
                "max_parallel_units": self.workflow.max_parallel_units,
                "skip_critics": self.workflow.skip_critics,
                "max_rework_cycles": self.workflow.max_rework_cycles,
                "ci_max_attempts": self.workflow.ci_max_attempts,
                "ci_wait_seconds": self.workflow.ci_wait_seconds,
                "ci_recheck_seconds": self.workflow.ci_recheck_seconds,
                "base_branch": self.workflow.base_branch,
            },
            "state": {
                "directory": self.state.directory,
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        if not rendered:
            return "0.0"
        return rendered if "." in rendered else f"{rendered}.0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: ConsortiumConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in ("backend", "agents", "workflow", "state"):
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> ConsortiumConfig:
    if not path.exists():
        return ConsortiumConfig.default()
    return ConsortiumConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: ConsortiumConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
