"""Tests for layered configuration loading."""

from pathlib import Path

import pytest

from agentchat.config import ServerConfig, env_var_name, load_server_config


class TestServerConfig:
    """Tests for ServerConfig defaults and validation."""

    def test_defaults(self, tmp_path):
        config = ServerConfig(workspace_dir=str(tmp_path))
        assert config.log_ring_size == 2000
        assert config.queue_poll_interval == 0.1
        assert config.permission_mode == "bypassPermissions"
        assert config.model is None
        assert config.port == 8080

    @pytest.mark.parametrize("kwargs", [
        {"log_ring_size": 0},
        {"queue_poll_interval": 0},
        {"port": 70000},
    ])
    def test_validation(self, tmp_path, kwargs):
        with pytest.raises(ValueError):
            ServerConfig(workspace_dir=str(tmp_path), **kwargs)

    def test_relative_log_dir_resolves_against_workspace(self, tmp_path):
        config = ServerConfig(workspace_dir=str(tmp_path), log_dir="logs")
        assert config.resolved_log_dir == tmp_path / "logs"

    def test_absolute_log_dir_kept(self, tmp_path):
        config = ServerConfig(workspace_dir="/elsewhere", log_dir=str(tmp_path))
        assert config.resolved_log_dir == Path(tmp_path)


class TestLoadServerConfig:
    """Tests for load_server_config precedence."""

    def test_env_var_names(self):
        assert env_var_name("workspace_dir") == "AGENTCHAT_WORKSPACE"
        assert env_var_name("log_ring_size") == "AGENTCHAT_LOG_RING_SIZE"

    def test_environment_values_are_typed(self, tmp_path):
        config = load_server_config(env_file=None, environ={
            "AGENTCHAT_WORKSPACE": str(tmp_path),
            "AGENTCHAT_LOG_RING_SIZE": "50",
            "AGENTCHAT_QUEUE_POLL_INTERVAL": "0.5",
            "AGENTCHAT_DEBUG": "yes",
            "AGENTCHAT_MODEL": "claude-opus",
        })
        assert config.workspace_dir == str(tmp_path)
        assert config.log_ring_size == 50
        assert config.queue_poll_interval == 0.5
        assert config.debug is True
        assert config.model == "claude-opus"

    def test_empty_optional_becomes_none(self, tmp_path):
        config = load_server_config(env_file=None, environ={
            "AGENTCHAT_WORKSPACE": str(tmp_path), "AGENTCHAT_MODEL": "",
        })
        assert config.model is None

    def test_invalid_value_is_skipped(self, tmp_path):
        config = load_server_config(env_file=None, environ={
            "AGENTCHAT_WORKSPACE": str(tmp_path), "AGENTCHAT_PORT": "not-a-port",
        })
        assert config.port == 8080

    def test_precedence(self, tmp_path):
        env_file = tmp_path / ".env"
        env_file.write_text(
            "AGENTCHAT_PORT=9000\nAGENTCHAT_HOST=0.0.0.0\nAGENTCHAT_LOG_DIR=from-file\n"
        )
        config = load_server_config(
            env_file=str(env_file),
            environ={"AGENTCHAT_WORKSPACE": str(tmp_path), "AGENTCHAT_PORT": "9100"},
            port=9200,
            host=None,
        )
        assert config.log_dir == "from-file"
        assert config.host == "0.0.0.0"
        assert config.port == 9200

    def test_missing_env_file_is_ignored(self, tmp_path):
        config = load_server_config(
            env_file=str(tmp_path / "missing.env"),
            environ={"AGENTCHAT_WORKSPACE": str(tmp_path)},
        )
        assert config.workspace_dir == str(tmp_path)

    def test_unknown_override_raises(self, tmp_path):
        with pytest.raises(TypeError):
            load_server_config(env_file=None, environ={}, colour="blue")
