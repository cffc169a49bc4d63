"""Controller side of the bridge: accepts application connections.

Applications connect over a websocket, send a handshake, and are admitted
into the session registry. Commands are then issued through the registry and
their responses matched by each session's correlator.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable
from typing import Any

from websockets.asyncio.server import Server as WebSocketServer
from websockets.asyncio.server import serve
from websockets.exceptions import ConnectionClosed

from .config import BridgeConfig
from .errors import BridgeError, InvalidParams, UnknownMethod
from .protocol import (
    PROTOCOL_VERSION,
    Command,
    Event,
    Handshake,
    HandshakeAck,
    Response,
    encode_frame,
    parse_frame,
)
from .registry import TARGET_FIRST, DispatchResult, Session, SessionRegistry
from .tasks import TaskSet

logger = logging.getLogger(__name__)

CLOSE_HANDSHAKE_TIMEOUT = 4000
CLOSE_EXPECTED_HANDSHAKE = 4001
CLOSE_INVALID_HANDSHAKE = 4002

EventHandler = Callable[[Session, Any], Any]
ControllerHandler = Callable[[Session, dict[str, Any]], Any]


class ControllerBridge:
    """Owns the websocket server, the session registry and event handlers."""

    def __init__(self, config: BridgeConfig | None = None) -> None:
        self.config = config or BridgeConfig()
        self.registry = SessionRegistry(
            request_timeout=self.config.request_timeout,
            max_pending=self.config.max_pending,
        )
        self._server: WebSocketServer | None = None
        self._event_handlers: dict[str, list[EventHandler]] = {}
        self.event_tasks = TaskSet("events")
        self._handlers: dict[str, ControllerHandler] = {
            "ping": lambda session, params: {"pong": True},
        }

    @property
    def running(self) -> bool:
        return self._server is not None

    async def start(self, host: str | None = None, port: int | None = None) -> None:
        """Start listening for application connections."""
        if self._server is not None:
            return
        host = host or self.config.host
        port = self.config.port if port is None else port
        self._server = await serve(self.handle_connection, host, port)
        logger.info(f"WebSocket listening on ws://{host}:{self.bound_port or port}")

    @property
    def bound_port(self) -> int | None:
        if self._server is None:
            return None
        for sock in self._server.sockets:
            return sock.getsockname()[1]
        return None

    async def stop(self) -> None:
        self.event_tasks.cancel_all()
        await self.registry.close()
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
            logger.info("WebSocket server stopped")

    # -------------------------------------------------------------------------
    # Commands & events
    # -------------------------------------------------------------------------

    async def send_command(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        target: str | None = TARGET_FIRST,
        timeout: float | None = None,
    ) -> list[DispatchResult]:
        return await self.registry.dispatch(method, params, target, timeout)

    def on_event(self, event: str, handler: EventHandler) -> Callable[[], None]:
        """Subscribe to events pushed by applications. Returns an unsubscribe callable."""
        self._event_handlers.setdefault(event, []).append(handler)

        def remove() -> None:
            handlers = self._event_handlers.get(event, [])
            if handler in handlers:
                handlers.remove(handler)

        return remove

    def register_handler(self, method: str, handler: ControllerHandler) -> None:
        """Answer commands that applications send to the controller."""
        self._handlers[method] = handler

    # -------------------------------------------------------------------------
    # Connection handling
    # -------------------------------------------------------------------------

    async def handle_connection(self, connection: Any) -> None:
        remote = getattr(connection, "remote_address", None)
        logger.info(f"New connection from {remote}")
        try:
            raw = await asyncio.wait_for(
                connection.recv(), self.config.handshake_timeout
            )
        except asyncio.TimeoutError:
            logger.error("Handshake timeout, closing connection")
            await connection.close(CLOSE_HANDSHAKE_TIMEOUT, "Handshake timeout")
            return
        except ConnectionClosed:
            logger.info(f"Connection from {remote} closed before handshake")
            return

        frame = parse_frame(raw)
        if not isinstance(frame, Handshake):
            logger.error(f"Expected handshake, got {type(frame).__name__}")
            await connection.close(CLOSE_EXPECTED_HANDSHAKE, "Expected handshake")
            return

        try:
            session = await self._admit(frame, connection)
        except InvalidParams as e:
            logger.error(f"Invalid handshake: {e.message}")
            await connection.close(CLOSE_INVALID_HANDSHAKE, "Invalid handshake")
            return

        try:
            await connection.send(encode_frame(self._ack(session)))
            async for message in connection:
                if self.registry.get(session.session_id) is not session:
                    break
                await self.handle_frame(session, message)
        except ConnectionClosed as e:
            logger.warning(f"Connection for {session.session_id} lost: {e}")
        finally:
            if self.registry.get(session.session_id) is session:
                self.registry.evict(session.session_id, "connection closed")

    async def handle_frame(self, session: Session, raw: str | bytes) -> None:
        """Route one frame received from an admitted session."""
        frame = parse_frame(raw)
        if frame is None:
            return
        self.registry.touch(session)

        if isinstance(frame, Response):
            session.correlator.on_response(frame)
        elif isinstance(frame, Event):
            self.event_tasks.spawn(self._emit(session, frame), frame.event)
        elif isinstance(frame, Handshake):
            if frame.device_id != session.device_id:
                logger.warning(
                    f"Ignoring handshake for {frame.device_id} on {session.session_id}"
                )
                return
            try:
                admitted = await self._admit(frame, session.transport)
            except InvalidParams as e:
                logger.warning(f"Ignoring invalid re-handshake: {e.message}")
                return
            await session.transport.send(encode_frame(self._ack(admitted)))
        elif isinstance(frame, Command):
            session.tasks.spawn(self._reply(session, frame), frame.method)
        else:
            logger.debug(f"Ignoring {type(frame).__name__} from {session.session_id}")

    async def _admit(self, handshake: Handshake, transport: Any) -> Session:
        previous = self.registry.get(self.registry.session_id_for(handshake.device_id))
        session = self.registry.admit(handshake, transport)
        if previous is not None and previous is not session:
            logger.info(f"Closing replaced connection for {session.session_id}")
            try:
                await previous.transport.close()
            except Exception as e:
                logger.debug(f"Error closing replaced connection: {e!r}")
        return session

    def _ack(self, session: Session) -> HandshakeAck:
        return HandshakeAck(
            session_id=session.session_id,
            device_id=session.device_id,
            server_version=PROTOCOL_VERSION,
        )

    async def _emit(self, session: Session, event: Event) -> None:
        for handler in list(self._event_handlers.get(event.event, [])):
            try:
                result = handler(session, event.data)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(f"Event handler for {event.event} failed")

    async def _reply(self, session: Session, command: Command) -> None:
        response = await self._answer(session, command)
        try:
            await session.transport.send(encode_frame(response))
        except ConnectionClosed:
            logger.warning(f"{session.session_id} closed before {command.method} was answered")

    async def _answer(self, session: Session, command: Command) -> Response:
        handler = self._handlers.get(command.method)
        try:
            if handler is None:
                raise UnknownMethod(command.method)
            result = handler(session, command.params)
            if inspect.isawaitable(result):
                result = await result
        except BridgeError as e:
            return Response(id=command.id, error=e.message)
        except Exception as e:
            logger.exception(f"Controller handler for {command.method} raised")
            return Response(id=command.id, error=str(e) or type(e).__name__)
        return Response(id=command.id, result=result)
