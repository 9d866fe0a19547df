"""Tests for engine configuration loading."""

from __future__ import annotations

import pydantic
import pytest
import yaml

from agentflow.core.agents import SubprocessAgentClient
from agentflow.core.config import CONFIG_FILE, DEFAULT_CONFIG, EngineConfig


class TestEngineConfig:
    """Tests for EngineConfig."""

    def test_missing_file_gives_defaults(self, tmp_path):
        config = EngineConfig.load(tmp_path)
        assert config.max_parallel == 4
        assert config.agents == {}
        assert config.database_path(tmp_path) == tmp_path / "state.db"

    def test_default_config_parses(self, tmp_path):
        (tmp_path / CONFIG_FILE).write_text(DEFAULT_CONFIG)
        config = EngineConfig.load(tmp_path)
        assert "echo" in config.agents
        assert config.poll_interval == 1.0

    def test_agents_build_client_and_router(self, tmp_path):
        (tmp_path / CONFIG_FILE).write_text(
            yaml.safe_dump(
                {
                    "database": "/var/tmp/flows.db",
                    "agents": {
                        "coder": {"command": ["coder-cli"], "skills": ["python"]},
                        "writer": {"command": ["writer-cli", "--fast"], "success_rate": 0.5},
                    },
                    "agent_env": {"TOKEN": "abc"},
                }
            )
        )
        config = EngineConfig.load(tmp_path)

        client = config.build_client()
        assert isinstance(client, SubprocessAgentClient)
        assert client.commands["writer"] == ["writer-cli", "--fast"]
        assert client.env == {"TOKEN": "abc"}

        router = config.build_router()
        assert router.agents == ["coder", "writer"]
        assert router.get_profile("coder").skills == ["python"]
        assert str(config.database_path(tmp_path)) == "/var/tmp/flows.db"

    def test_non_mapping_rejected(self, tmp_path):
        (tmp_path / CONFIG_FILE).write_text("- just\n- a list\n")
        with pytest.raises(ValueError, match="expected a mapping"):
            EngineConfig.load(tmp_path)

    def test_agent_command_required(self, tmp_path):
        (tmp_path / CONFIG_FILE).write_text("agents:\n  empty:\n    command: []\n")
        with pytest.raises(pydantic.ValidationError):
            EngineConfig.load(tmp_path)
