"""Socket.IO connection to the master, bridging its events to the registry."""

import asyncio
import logging
from typing import Any
from urllib.parse import urlencode

import socketio
from socketio import exceptions

from build_agent.config import AgentConfig
from build_agent.models.messages import WireEvent
from build_agent.services.events import EventChannel
from build_agent.services.registry import SessionRegistry

logger = logging.getLogger(__name__)


class MasterConnection:
    """Single Socket.IO connection shared by every session.

    ``create-tunnel`` and ``send-command`` events go to the registry; messages
    published on the event channel are emitted back as ``agent-message`` in
    publication order. After a drop the client reconnects by itself and
    messages produced meanwhile wait in the channel, so running builds are
    not disturbed.
    """

    def __init__(
        self,
        config: AgentConfig,
        registry: SessionRegistry,
        channel: EventChannel,
        client: socketio.AsyncClient | None = None,
    ) -> None:
        self._config = config
        self._registry = registry
        self._channel = channel
        self._namespace = config.socket_namespace
        self._connected = asyncio.Event()
        self.sio = client or socketio.AsyncClient(
            reconnection=True,
            reconnection_attempts=0,
            reconnection_delay=config.reconnect_delay,
            reconnection_delay_max=config.reconnect_delay_max,
        )
        for event, handler in (
            ("connect", self.on_connect),
            ("disconnect", self.on_disconnect),
            ("connect_error", self.on_connect_error),
            ("error", self.on_error),
            ("ERROR", self.on_error),
            (WireEvent.create_tunnel.value, self.on_create_tunnel),
            (WireEvent.send_command.value, self.on_send_command),
        ):
            self.sio.on(event, handler, namespace=self._namespace)

    @property
    def url(self) -> str:
        url = self._config.master_url
        if self._config.token:
            url += "?" + urlencode({"token": self._config.token})
        return url

    @property
    def connected(self) -> bool:
        return self._connected.is_set()

    async def run(self) -> None:
        """Connect, then serve until cancelled or stop() is called."""
        await self._connect()
        forwarder = asyncio.create_task(self._forward_outbound())
        try:
            await self.sio.wait()
        finally:
            forwarder.cancel()
            await asyncio.gather(forwarder, return_exceptions=True)
            await self.sio.disconnect()
        logger.info("Connection to master closed")

    async def stop(self) -> None:
        await self.sio.disconnect()

    async def _connect(self) -> None:
        # The client only reconnects on its own once a first connect succeeded.
        delay = self._config.reconnect_delay
        logger.info("Connecting to %s%s", self._config.master_url, self._namespace)
        while True:
            try:
                await self.sio.connect(
                    self.url,
                    namespaces=[self._namespace],
                    socketio_path=self._config.socketio_path,
                )
                return
            except exceptions.ConnectionError as e:
                logger.warning("Cannot reach master (%s), retrying in %.1fs", e, delay)
                await asyncio.sleep(delay)
                delay = min(delay * 2, self._config.reconnect_delay_max)

    async def on_connect(self) -> None:
        logger.info("Connected!")
        self._connected.set()

    async def on_disconnect(self, *args: Any) -> None:
        self._connected.clear()
        logger.warning("Disconnected!")

    async def on_connect_error(self, data: Any = None) -> None:
        logger.warning("Master refused connection: %s", data)

    async def on_error(self, *args: Any) -> None:
        logger.error("Master reported error: %s", args)

    async def on_create_tunnel(self, session_id: Any = None) -> None:
        if session_id is None:
            logger.warning("create-tunnel without a session id")
            return
        session_id = str(session_id)
        self._registry.open_tunnel(session_id)
        await self.sio.emit(WireEvent.tunnel_ack.value, session_id, namespace=self._namespace)

    async def on_send_command(self, session_id: Any = None, message: Any = None) -> None:
        if session_id is None:
            logger.warning("send-command without a session id")
            return
        self._registry.dispatch(str(session_id), message)

    async def _forward_outbound(self) -> None:
        while True:
            session_id, message = await self._channel.receive()
            await self._emit_when_connected(
                WireEvent.agent_message.value, (session_id, message.to_wire())
            )

    async def _emit_when_connected(self, event: str, data: Any) -> None:
        while True:
            await self._connected.wait()
            try:
                await self.sio.emit(event, data, namespace=self._namespace)
                return
            except exceptions.BadNamespaceError:
                # Dropped between the wait and the emit; hold until reconnected.
                self._connected.clear()
