"""Agent configuration from CLI flags and BUILD_AGENT_* environment variables."""

import os
from collections.abc import Mapping
from typing import Any, Literal

from pydantic import BaseModel, field_validator

ENV_PREFIX = "BUILD_AGENT_"
DEFAULT_INSTALL_COMMAND = "yarn || npm install"
DEFAULT_SOCKETIO_PATH = "socket.io"


class AgentConfig(BaseModel):
    master_host: str = "http://localhost:3000"
    socket_path: str = ""
    socket_namespace: str = "/agents"
    token: str = ""
    workspace_root: str = os.path.join(os.path.expanduser("~"), ".build-agent", "workspaces")
    install_command: str = DEFAULT_INSTALL_COMMAND
    subprocess_timeout: float | None = None
    kill_grace_period: float = 5.0
    reconnect_delay: float = 1.0
    reconnect_delay_max: float = 30.0
    status_host: str = "127.0.0.1"
    status_port: int | None = None
    log_level: str = "INFO"
    log_format: Literal["text", "json"] = "text"

    @field_validator("subprocess_timeout", "status_port", mode="before")
    @classmethod
    def _empty_is_none(cls, value: Any) -> Any:
        if value in ("", "0", 0):
            return None
        return value

    @field_validator("workspace_root")
    @classmethod
    def _expand_root(cls, value: str) -> str:
        return os.path.abspath(os.path.expanduser(value))

    @classmethod
    def from_sources(
        cls,
        overrides: Mapping[str, Any] | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> "AgentConfig":
        """Build a config where explicit overrides win over environment values."""
        environ = os.environ if environ is None else environ
        values: dict[str, Any] = {}
        for name in cls.model_fields:
            env_value = environ.get(ENV_PREFIX + name.upper())
            if env_value is not None:
                values[name] = env_value
        for name, value in (overrides or {}).items():
            if value is not None:
                values[name] = value
        return cls(**values)

    @property
    def master_url(self) -> str:
        """Base URL of the master's Socket.IO server."""
        return self.master_host.rstrip("/")

    @property
    def socketio_path(self) -> str:
        return self.socket_path.strip("/") or DEFAULT_SOCKETIO_PATH
