"""Tests for AgentConfig loading."""

import os

import pytest
from pydantic import ValidationError

from build_agent.config import DEFAULT_INSTALL_COMMAND, AgentConfig


class TestFromSources:
    def test_defaults(self):
        config = AgentConfig.from_sources(environ={})
        assert config.master_host == "http://localhost:3000"
        assert config.install_command == DEFAULT_INSTALL_COMMAND
        assert config.subprocess_timeout is None
        assert config.status_port is None

    def test_environment_values(self):
        config = AgentConfig.from_sources(environ={
            "BUILD_AGENT_MASTER_HOST": "https://ci.example.com",
            "BUILD_AGENT_TOKEN": "abc",
            "BUILD_AGENT_SUBPROCESS_TIMEOUT": "90",
            "BUILD_AGENT_STATUS_PORT": "8700",
        })
        assert config.master_host == "https://ci.example.com"
        assert config.token == "abc"
        assert config.subprocess_timeout == 90.0
        assert config.status_port == 8700

    def test_overrides_win(self):
        config = AgentConfig.from_sources(
            {"token": "from-cli", "socket_path": None},
            environ={"BUILD_AGENT_TOKEN": "from-env", "BUILD_AGENT_SOCKET_PATH": "/ws"},
        )
        assert config.token == "from-cli"
        assert config.socket_path == "/ws"

    def test_unknown_overrides_ignored(self):
        config = AgentConfig.from_sources({"version": None}, environ={})
        assert config.token == ""

    def test_empty_timeout_is_none(self):
        config = AgentConfig.from_sources(environ={"BUILD_AGENT_SUBPROCESS_TIMEOUT": ""})
        assert config.subprocess_timeout is None

    def test_workspace_root_expanded(self):
        config = AgentConfig(workspace_root="~/builds")
        assert config.workspace_root == os.path.join(os.path.expanduser("~"), "builds")

    def test_bad_log_format(self):
        with pytest.raises(ValidationError):
            AgentConfig(log_format="xml")


class TestMasterUrl:
    def test_trailing_slash_stripped(self):
        config = AgentConfig(master_host="http://localhost:3000/")
        assert config.master_url == "http://localhost:3000"

    def test_default_socketio_path(self):
        assert AgentConfig().socketio_path == "socket.io"

    def test_custom_socketio_path(self):
        config = AgentConfig(socket_path="/socket/")
        assert config.socketio_path == "socket"
