"""Per-session state machine driving the build pipeline."""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

from pydantic import ValidationError

from build_agent.errors import AgentError, ProtocolError, SetupError
from build_agent.models.messages import COMPLETION_EVENTS, Command, CommandType
from build_agent.models.session import TERMINAL_STATES, BuildSession, Job, SessionState
from build_agent.services.events import EventChannel
from build_agent.services.pipeline import PipelineOperations
from build_agent.services.script_runner import ScriptRunner

Handler = Callable[[Any], Awaitable[SessionState]]


def _job_from(data: Any) -> Job:
    if not isinstance(data, Mapping) or not isinstance(data.get("job"), Mapping):
        raise ProtocolError("Command data must carry a job object")
    try:
        return Job.model_validate(data["job"])
    except ValidationError as e:
        raise ProtocolError(f"Invalid job: {e}") from e


class SessionController:
    """Owns one session's environment, workspace and stages.

    Commands are queued and executed by a single worker task, so a command
    never starts before the previous one has published its completion or
    error event.
    """

    def __init__(
        self,
        session_id: str,
        channel: EventChannel,
        operations: PipelineOperations,
        script_runner: ScriptRunner,
        on_close: Callable[[str], None] | None = None,
    ) -> None:
        self.session = BuildSession(id=session_id)
        self._out = channel.for_session(session_id)
        self._ops = operations
        self._runner = script_runner
        self._on_close = on_close
        self._env: dict[str, Any] | None = None
        self._queue: asyncio.Queue[Command] = asyncio.Queue()
        self._worker: asyncio.Task | None = None
        self._log = logging.getLogger(f"build_agent.session.{session_id}")
        self._handlers: dict[CommandType, Handler] = {
            CommandType.set_environment: self._set_environment,
            CommandType.prepare_directory: self._prepare_directory,
            CommandType.clone: self._clone,
            CommandType.checkout: self._checkout,
            CommandType.install_dependencies: self._install_dependencies,
            CommandType.run_script: self._run_script,
        }

    @property
    def session_id(self) -> str:
        return self.session.id

    @property
    def env(self) -> dict[str, Any] | None:
        return None if self._env is None else dict(self._env)

    @property
    def closed(self) -> bool:
        return self.session.state in TERMINAL_STATES

    def start(self) -> None:
        if self._worker is None:
            self._worker = asyncio.create_task(
                self._work(), name=f"session-{self.session_id}"
            )

    def submit(self, command: Command) -> None:
        """Queue a command; it runs after every command submitted before it."""
        if self.closed:
            self._log.debug("Session closed, dropping %s", command.type.value)
            return
        self._queue.put_nowait(command)
        self.start()

    async def join(self) -> None:
        """Wait until every queued command has been handled."""
        await self._queue.join()

    async def cancel(self) -> None:
        """Abort the in-flight command, killing its subprocess, and close."""
        if self._worker is not None and not self._worker.done():
            self._worker.cancel()
            await asyncio.gather(self._worker, return_exceptions=True)
        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()
        if not self.closed:
            self.session.state = SessionState.cancelled
        self._ops.release_workspace(self.session_id)

    async def _work(self) -> None:
        while True:
            command = await self._queue.get()
            try:
                if command.type is CommandType.done:
                    self._finish()
                    return
                await self.handle(command)
            finally:
                self._queue.task_done()

    def _finish(self) -> None:
        self.session.state = SessionState.done
        self._ops.release_workspace(self.session_id)
        self._log.info("Session done")
        if self._on_close is not None:
            self._on_close(self.session_id)

    async def handle(self, command: Command) -> None:
        """Run one command and publish exactly one terminal event for it."""
        self._log.debug("Receive: %s", command.type.value)
        handler = self._handlers.get(command.type)
        if handler is None:
            self._out.error(ProtocolError(f"Unsupported command {command.type.value}"))
            return

        try:
            next_state = await handler(command.data)
        except asyncio.CancelledError:
            self._out.error(AgentError("Build cancelled"))
            raise
        except AgentError as e:
            self._log.warning("%s failed: %s", command.type.value, e)
            self.session.state = SessionState.error
            self._out.error(e)
        except Exception as e:
            self._log.exception("%s raised unexpectedly", command.type.value)
            self.session.state = SessionState.error
            self._out.error(e)
        else:
            self.session.state = next_state
            self._out.send(COMPLETION_EVENTS[command.type])

    def _require_workspace(self) -> str:
        if not self.session.workspace:
            raise SetupError("Workspace is not prepared, send prepare-directory first")
        return self.session.workspace

    async def _set_environment(self, data: Any) -> SessionState:
        if self._env is not None:
            raise ProtocolError("Environment is already set for this session")
        if data is None:
            data = {}
        if not isinstance(data, Mapping):
            raise ProtocolError("Environment must be a mapping")
        self._env = dict(data)
        return SessionState.env_set

    async def _prepare_directory(self, data: Any) -> SessionState:
        job = _job_from(data)
        path = self.session.workspace
        if path is None:
            build = data.get("build")
            build_key = build.get("number") if isinstance(build, Mapping) else None
            path = self._ops.claim_workspace(self.session_id, job, build_key)
        await self._ops.prepare_workspace(path)
        self.session.workspace = path
        return SessionState.dir_prepared

    async def _clone(self, data: Any) -> SessionState:
        job = _job_from(data)
        await self._ops.clone(job, self._require_workspace(), self._out)
        return SessionState.cloned

    async def _checkout(self, data: Any) -> SessionState:
        job = _job_from(data)
        await self._ops.checkout(job, self._require_workspace(), self._out)
        return SessionState.checked_out

    async def _install_dependencies(self, data: Any) -> SessionState:
        job = _job_from(data)
        await self._ops.install_dependencies(job, self._require_workspace(), self._out)
        return SessionState.dependencies_installed

    async def _run_script(self, data: Any) -> SessionState:
        job = _job_from(data)
        self._require_workspace()
        build = data.get("build")
        if not isinstance(build, dict):
            raise ProtocolError("run-script requires a build record")
        self.session.state = SessionState.running_script
        await self._runner.run(self.session, build, job, self._env, self._out)
        return SessionState.running_script
