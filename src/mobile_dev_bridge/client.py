"""Embedded client: connects an AppBridge to the controller."""

from __future__ import annotations

import logging
from typing import Any

from websockets.asyncio.client import connect
from websockets.exceptions import ConnectionClosed

from .app import SDK_VERSION, AppBridge
from .config import BridgeConfig
from .correlator import Correlator
from .errors import SessionClosed
from .protocol import (
    Command,
    Event,
    Handshake,
    HandshakeAck,
    Response,
    encode_frame,
    parse_frame,
)
from .reconnect import ConnectionState, ReconnectionFSM
from .router import CommandRouter
from .tasks import TaskSet

logger = logging.getLogger(__name__)


class BridgeClient:
    """Keeps an application session open and answers controller commands.

    Example:
        app = AppBridge("Shop", "1.2.0")
        app.expose_state("cart", lambda: cart)
        client = BridgeClient(app, BridgeConfig.from_env())
        await client.start()
    """

    def __init__(self, app: AppBridge, config: BridgeConfig | None = None) -> None:
        self.app = app
        self.config = config or BridgeConfig.from_env(platform=app.platform)
        self.router = CommandRouter(app)
        self.session_id: str | None = None
        self.tasks = TaskSet(f"{app.app_name} commands")
        self.correlator = Correlator(
            self._send,
            default_timeout=self.config.request_timeout,
            max_pending=self.config.max_pending,
        )
        self.fsm = ReconnectionFSM(
            self._connect,
            self._on_open,
            self._serve,
            base_delay=self.config.reconnect_delay,
            backoff_cap=self.config.backoff_cap,
            max_attempts=self.config.max_reconnect_attempts,
            name=app.app_name,
        )
        self.fsm.add_listener(self._on_state_change)

    @property
    def state(self) -> ConnectionState:
        return self.fsm.state

    @property
    def is_connected(self) -> bool:
        return self.fsm.state is ConnectionState.CONNECTED

    async def start(self) -> None:
        await self.fsm.initialize()

    async def stop(self) -> None:
        await self.fsm.disconnect()

    async def reconnect(self) -> None:
        await self.fsm.reconnect()

    async def wait_connected(self, timeout: float | None = None) -> bool:
        return await self.fsm.wait_connected(timeout)

    async def request(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> Any:
        """Send a command to the controller and wait for its result."""
        return await self.correlator.request(method, params, timeout)

    async def emit(self, event: str, data: Any = None) -> None:
        """Push an unsolicited event to the controller; dropped when offline."""
        if not self.is_connected:
            logger.debug(f"Not connected, dropping event {event}")
            return
        await self._send(encode_frame(Event(event=event, data=data)))

    def handshake(self) -> Handshake:
        return Handshake(
            platform=self.app.platform,
            device_id=self.app.device_id,
            app_name=self.app.app_name,
            app_version=self.app.app_version,
            capabilities=list(self.app.capabilities),
            extra={"sdkVersion": SDK_VERSION},
        )

    # -------------------------------------------------------------------------
    # Transport callbacks
    # -------------------------------------------------------------------------

    async def _connect(self) -> Any:
        logger.info(f"Connecting to {self.config.server_url}")
        return await connect(self.config.server_url)

    async def _on_open(self, transport: Any) -> None:
        await transport.send(encode_frame(self.handshake()))

    async def _serve(self, transport: Any) -> None:
        try:
            async for raw in transport:
                await self.handle_frame(transport, raw)
        except ConnectionClosed as e:
            logger.warning(f"Connection closed: {e}")

    async def handle_frame(self, transport: Any, raw: str | bytes) -> None:
        frame = parse_frame(raw)
        if isinstance(frame, Command):
            # Handlers may await requests of their own; answers arrive on this loop.
            self.tasks.spawn(self._answer(transport, frame), frame.method)
        elif isinstance(frame, Response):
            self.correlator.on_response(frame)
        elif isinstance(frame, HandshakeAck):
            self.session_id = frame.session_id
            logger.info(f"Handshake acknowledged, session {frame.session_id}")
        elif frame is not None:
            logger.debug(f"Ignoring {type(frame).__name__} frame")

    async def _answer(self, transport: Any, command: Command) -> None:
        response = await self.router.handle(command)
        try:
            await transport.send(encode_frame(response))
        except ConnectionClosed:
            logger.warning(f"Connection closed before answering {command.method} ({command.id})")

    async def _send(self, text: str) -> None:
        transport = self.fsm.transport
        if transport is None or not self.is_connected:
            raise SessionClosed("Not connected to the controller")
        await transport.send(text)

    def _on_state_change(self, old: ConnectionState, new: ConnectionState) -> None:
        if old is ConnectionState.CONNECTED and new is not ConnectionState.CONNECTED:
            self.session_id = None
            self.correlator.reject_all(SessionClosed("Connection to the controller lost"))
            self.tasks.cancel_all()
