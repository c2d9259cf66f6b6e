"""Error types raised by pipeline operations."""


class AgentError(Exception):
    """Base class for failures reported upstream as error events."""


class SetupError(AgentError):
    """Workspace could not be prepared or the build script is missing."""


class VcsError(AgentError):
    """A clone or checkout failed."""


class ProtocolError(AgentError):
    """An inbound message is malformed or unexpected for the session."""


class SubprocessFailed(AgentError):
    """A subprocess exited with a nonzero code."""

    def __init__(self, code: int | None, message: str | None = None) -> None:
        self.code = code
        super().__init__(message or f"Job exited with code: {code}")


class SubprocessTimeout(SubprocessFailed):
    """A subprocess ran past the configured timeout and was killed."""

    def __init__(self, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(None, f"Job timed out after {timeout:g} seconds")
