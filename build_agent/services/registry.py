"""Table of active sessions, routing inbound commands to their controllers."""

import asyncio
import logging
from typing import Any

from build_agent.config import AgentConfig
from build_agent.errors import ProtocolError
from build_agent.models.messages import Command, CommandType
from build_agent.models.session import BuildSession
from build_agent.services.controller import SessionController
from build_agent.services.events import EventChannel
from build_agent.services.pipeline import PipelineOperations
from build_agent.services.script_runner import ScriptRunner

logger = logging.getLogger(__name__)


class SessionRegistry:
    """Owns every SessionController for one agent process."""

    def __init__(
        self,
        config: AgentConfig,
        channel: EventChannel,
        operations: PipelineOperations | None = None,
        script_runner: ScriptRunner | None = None,
    ) -> None:
        self._channel = channel
        self._ops = operations or PipelineOperations(config)
        self._runner = script_runner or ScriptRunner(config)
        self._controllers: dict[str, SessionController] = {}
        self._cancelling: set[asyncio.Task] = set()

    def __len__(self) -> int:
        return len(self._controllers)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._controllers

    def get(self, session_id: str) -> SessionController | None:
        return self._controllers.get(session_id)

    def snapshot(self) -> list[BuildSession]:
        return [c.session.model_copy(deep=True) for c in self._controllers.values()]

    def open_tunnel(self, session_id: str) -> SessionController | None:
        """Create the controller for session_id; duplicates are logged and ignored."""
        if session_id in self._controllers:
            logger.warning("Tunnel for session %s already open", session_id)
            return None
        controller = SessionController(
            session_id, self._channel, self._ops, self._runner, on_close=self.close
        )
        self._controllers[session_id] = controller
        logger.info("Opened tunnel for session %s (%d active)", session_id, len(self))
        return controller

    def dispatch(self, session_id: str, message: Any) -> None:
        """Route an inbound command; unknown sessions and bad messages are dropped."""
        controller = self._controllers.get(session_id)
        if controller is None:
            logger.debug("Dropping message for unknown session %s", session_id)
            return
        try:
            command = Command.parse(message)
        except ProtocolError as e:
            logger.warning("Session %s: %s", session_id, e)
            return

        if command.type is CommandType.cancel:
            task = asyncio.create_task(self.cancel(session_id))
            self._cancelling.add(task)
            task.add_done_callback(self._cancelling.discard)
            return
        controller.submit(command)

    def close(self, session_id: str) -> None:
        if self._controllers.pop(session_id, None) is not None:
            logger.info("Closed session %s (%d active)", session_id, len(self))

    async def cancel(self, session_id: str) -> None:
        controller = self._controllers.pop(session_id, None)
        if controller is None:
            return
        logger.info("Cancelling session %s", session_id)
        await controller.cancel()

    async def shutdown(self) -> None:
        """Cancel every session, terminating their subprocesses."""
        controllers = list(self._controllers.values())
        self._controllers.clear()
        await asyncio.gather(*(c.cancel() for c in controllers), return_exceptions=True)
        if self._cancelling:
            await asyncio.gather(*self._cancelling, return_exceptions=True)
