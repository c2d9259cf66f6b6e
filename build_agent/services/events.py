"""Outbound message channel between session controllers and the transport."""

import asyncio
import copy
import logging
import traceback
from typing import Any

from build_agent.errors import SubprocessFailed
from build_agent.models.messages import AgentMessage, AgentMessageType

Envelope = tuple[str, AgentMessage]


class EventChannel:
    """FIFO of (session_id, message) pairs waiting to be sent to the master.

    Controllers publish without awaiting; the transport drains in order, so
    messages of one session leave the agent in the order they were produced.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[Envelope] = asyncio.Queue()

    def publish(self, session_id: str, message: AgentMessage) -> None:
        self._queue.put_nowait((session_id, message))

    async def receive(self) -> Envelope:
        return await self._queue.get()

    def pending(self) -> int:
        return self._queue.qsize()

    def drain(self) -> list[Envelope]:
        """Pop everything queued right now without waiting."""
        items: list[Envelope] = []
        while not self._queue.empty():
            items.append(self._queue.get_nowait())
        return items

    def for_session(self, session_id: str) -> "SessionChannel":
        return SessionChannel(self, session_id)


class SessionChannel:
    """EventChannel view bound to one session id."""

    def __init__(self, channel: EventChannel, session_id: str) -> None:
        self._channel = channel
        self.session_id = session_id
        self._log = logging.getLogger(f"build_agent.session.{session_id}")

    def send(self, type: AgentMessageType, data: Any = None) -> None:
        self._log.debug("Sending: %s", type.value)
        self._channel.publish(self.session_id, AgentMessage(type=type, data=data))

    def log(self, message: str, level: str = "info", label: str | None = None) -> None:
        data: dict[str, Any] = {"message": message, "level": level}
        if label:
            data["options"] = {"label": label}
        self._channel.publish(
            self.session_id, AgentMessage(type=AgentMessageType.log, data=data)
        )

    async def log_line(self, line: str, level: str) -> None:
        """Async adapter so subprocess readers can stream into the channel."""
        self.log(line, level)

    def save_build(self, build: dict[str, Any]) -> None:
        # Snapshot now; the runner keeps mutating the same record.
        self.send(AgentMessageType.save_build, {"build": copy.deepcopy(build)})

    def error(self, exc: BaseException) -> None:
        error: dict[str, Any] = {
            "message": str(exc) or type(exc).__name__,
            "stack": "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
        }
        if isinstance(exc, SubprocessFailed) and exc.code is not None:
            error["code"] = exc.code
        self.send(AgentMessageType.error, {"error": error})
