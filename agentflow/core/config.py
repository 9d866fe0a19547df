"""Engine configuration loaded from ``.agentflow/config.yaml``."""

from pathlib import Path

import yaml
from pydantic import BaseModel, Field

from agentflow.core.agents import SubprocessAgentClient
from agentflow.core.routing import AgentProfile, AgentRouter

CONFIG_DIR = ".agentflow"
CONFIG_FILE = "config.yaml"

DEFAULT_CONFIG = """# agentflow engine configuration

# SQLite file, relative to this directory
database: state.db

# Maximum agent calls running at once per process
max_parallel: 4

# Seconds between polls while waiting on retries or approvals
poll_interval: 1.0

# Agents available to AGENT nodes. Each command receives a JSON task
# ({"agent", "instructions", "input", "attempt_id"}) on stdin and prints
# its result on stdout.
agents:
  echo:
    command: ["python", "-c", "import sys, json; print(json.dumps(json.load(sys.stdin)['input']))"]
    skills: [testing]
    success_rate: 1.0
"""


class AgentSpec(BaseModel):
    command: list[str] = Field(min_length=1)
    skills: list[str] = Field(default_factory=list)
    success_rate: float = Field(default=0.8, ge=0, le=1)


class EngineConfig(BaseModel):
    database: str = "state.db"
    max_parallel: int = Field(default=4, ge=1)
    poll_interval: float = Field(default=1.0, gt=0)
    agents: dict[str, AgentSpec] = Field(default_factory=dict)
    agent_env: dict[str, str] = Field(default_factory=dict)  # Extra environment for agent commands

    @classmethod
    def load(cls, config_dir: Path) -> "EngineConfig":
        """Read ``config.yaml`` from ``config_dir``; defaults when it is missing."""
        path = config_dir / CONFIG_FILE
        if not path.exists():
            return cls()
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"{path}: expected a mapping, got {type(data).__name__}")
        return cls(**data)

    def database_path(self, config_dir: Path) -> Path:
        path = Path(self.database)
        return path if path.is_absolute() else config_dir / path

    def build_client(self) -> SubprocessAgentClient:
        return SubprocessAgentClient(
            commands={name: spec.command for name, spec in self.agents.items()},
            env=dict(self.agent_env),
        )

    def build_router(self) -> AgentRouter:
        return AgentRouter(
            [
                AgentProfile(name=name, skills=list(spec.skills), success_rate=spec.success_rate)
                for name, spec in self.agents.items()
            ]
        )
