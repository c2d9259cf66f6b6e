"""Wire message types exchanged with the master and the build script."""

from enum import Enum
from typing import Any

from pydantic import BaseModel, ValidationError

from build_agent.errors import ProtocolError


class WireEvent(str, Enum):
    """Transport-level event names."""
    create_tunnel = "create-tunnel"
    tunnel_ack = "tunnel-ack"
    send_command = "send-command"
    agent_message = "agent-message"


class CommandType(str, Enum):
    """Commands the master sends to a session."""
    set_environment = "set-environment"
    prepare_directory = "prepare-directory"
    clone = "clone"
    checkout = "checkout"
    install_dependencies = "install-dependencies"
    run_script = "run-script"
    done = "done"
    cancel = "cancel"


class AgentMessageType(str, Enum):
    """Messages the agent sends to the master for a session."""
    env_set_complete = "env-set-complete"
    prepare_complete = "prepare-complete"
    clone_complete = "clone-complete"
    checkout_complete = "checkout-complete"
    install_complete = "install-complete"
    run_script_complete = "run-script-complete"
    log = "log"
    error = "error"
    save_build = "save-build"


class ScriptMessageType(str, Enum):
    """Side-channel messages reported by the build script."""
    stages = "stages"
    stage_start = "stage-start"
    stage_success = "stage-success"
    stage_failed = "stage-failed"


COMPLETION_EVENTS: dict[CommandType, AgentMessageType] = {
    CommandType.set_environment: AgentMessageType.env_set_complete,
    CommandType.prepare_directory: AgentMessageType.prepare_complete,
    CommandType.clone: AgentMessageType.clone_complete,
    CommandType.checkout: AgentMessageType.checkout_complete,
    CommandType.install_dependencies: AgentMessageType.install_complete,
    CommandType.run_script: AgentMessageType.run_script_complete,
}


class Command(BaseModel):
    type: CommandType
    data: Any = None

    @classmethod
    def parse(cls, message: Any) -> "Command":
        """Validate a raw inbound message, raising ProtocolError if malformed."""
        if isinstance(message, Command):
            return message
        if not isinstance(message, dict):
            raise ProtocolError(f"Expected a message object, got {type(message).__name__}")
        try:
            return cls.model_validate(message)
        except ValidationError as e:
            raise ProtocolError(f"Invalid command {message.get('type')!r}: {e}") from e


class AgentMessage(BaseModel):
    type: AgentMessageType
    data: Any = None

    def to_wire(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"type": self.type.value}
        if self.data is not None:
            payload["data"] = self.data
        return payload
