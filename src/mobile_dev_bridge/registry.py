"""Controller-side registry of connected application sessions."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Protocol

from .config import DEFAULT_MAX_PENDING, DEFAULT_REQUEST_TIMEOUT
from .correlator import Correlator
from .errors import BridgeError, InvalidParams, NoDeviceConnected, SessionClosed
from .protocol import Handshake
from .reconnect import ConnectionState
from .router import BUILTINS, validate_params
from .tasks import TaskSet

logger = logging.getLogger(__name__)

TARGET_ALL = "all"
TARGET_FIRST = "first-connected"


class Transport(Protocol):
    async def send(self, message: str) -> None: ...

    async def close(self) -> None: ...


@dataclass
class Session:
    session_id: str
    device_id: str
    platform: str
    app_name: str
    app_version: str
    capabilities: set[str]
    transport: Transport = field(repr=False)
    correlator: Correlator = field(repr=False)
    state: ConnectionState = ConnectionState.CONNECTING
    connected_at: float = field(default_factory=time.time)
    last_activity: float = field(default_factory=time.time)
    extra: dict[str, Any] = field(default_factory=dict)
    tasks: TaskSet = field(default_factory=lambda: TaskSet("session"), repr=False)

    def supports(self, method: str) -> bool:
        """Whether the declared capabilities cover a built-in method.

        Sessions that declare no capabilities at all are assumed to support
        everything; unknown methods are left to the application to reject.
        """
        command = BUILTINS.get(method)
        if command is None or command.capability is None or not self.capabilities:
            return True
        return command.capability in self.capabilities

    def to_dict(self) -> dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "deviceId": self.device_id,
            "platform": self.platform,
            "appName": self.app_name,
            "appVersion": self.app_version,
            "capabilities": sorted(self.capabilities),
            "state": self.state.value,
            "connectedAt": self.connected_at,
            "lastActivity": self.last_activity,
            "pendingRequests": self.correlator.pending_count,
        }


@dataclass
class DispatchResult:
    """Outcome of one command on one session."""

    session_id: str
    success: bool
    data: Any = None
    error: str | None = None
    code: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"sessionId": self.session_id, "success": self.success}
        if self.success:
            data["result"] = self.data
        else:
            data["error"] = self.error
            data["code"] = self.code
        return data


class SessionRegistry:
    def __init__(
        self,
        *,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        max_pending: int = DEFAULT_MAX_PENDING,
    ) -> None:
        self.request_timeout = request_timeout
        self.max_pending = max_pending
        self._sessions: dict[str, Session] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    @staticmethod
    def session_id_for(device_id: str) -> str:
        return f"sess_{device_id}"

    def admit(self, handshake: Handshake, transport: Transport) -> Session:
        """Register a session for a handshake received on ``transport``."""
        if not handshake.platform:
            raise InvalidParams("Handshake is missing platform")
        if not handshake.device_id:
            raise InvalidParams("Handshake is missing deviceId")

        session_id = self.session_id_for(handshake.device_id)
        existing = self._sessions.get(session_id)
        if existing is not None and existing.transport is transport:
            # Re-handshake on the same connection: refresh declared fields.
            existing.platform = handshake.platform
            existing.app_name = handshake.app_name
            existing.app_version = handshake.app_version
            existing.capabilities = set(handshake.capabilities)
            existing.extra = dict(handshake.extra)
            existing.state = ConnectionState.CONNECTED
            self.touch(existing)
            logger.info(f"Session {session_id} refreshed its handshake")
            return existing

        if existing is not None:
            # Same device on a new connection; the old one is gone.
            self.evict(session_id, "replaced by a new connection")

        correlator = Correlator(
            transport.send,
            default_timeout=self.request_timeout,
            max_pending=self.max_pending,
            prefix=f"{handshake.device_id}:",
        )
        session = Session(
            session_id=session_id,
            device_id=handshake.device_id,
            platform=handshake.platform,
            app_name=handshake.app_name,
            app_version=handshake.app_version,
            capabilities=set(handshake.capabilities),
            transport=transport,
            correlator=correlator,
            extra=dict(handshake.extra),
            tasks=TaskSet(session_id),
        )
        session.state = ConnectionState.CONNECTED
        self._sessions[session_id] = session
        logger.info(
            f"Device connected: {session.platform} - {session.app_name} ({session_id})"
        )
        return session

    def get(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def find_by_transport(self, transport: Transport) -> Session | None:
        for session in list(self._sessions.values()):
            if session.transport is transport:
                return session
        return None

    def list_sessions(
        self, platform: str | None = None, capability: str | None = None
    ) -> list[Session]:
        """Snapshot of sessions, oldest connection first."""
        sessions = sorted(self._sessions.values(), key=lambda s: s.connected_at)
        if platform is not None:
            sessions = [s for s in sessions if s.platform == platform]
        if capability is not None:
            sessions = [
                s for s in sessions if not s.capabilities or capability in s.capabilities
            ]
        return sessions

    def touch(self, session: Session) -> None:
        session.last_activity = time.time()

    def evict(self, session_id: str, reason: str = "disconnected") -> Session | None:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return None
        session.state = ConnectionState.DISCONNECTED
        session.correlator.reject_all(
            SessionClosed(f"Session {session_id} closed: {reason}")
        )
        session.tasks.cancel_all()
        logger.info(f"Device disconnected: {session_id} ({reason})")
        return session

    def select(self, method: str, target: str | None = TARGET_FIRST) -> list[Session]:
        target = target or TARGET_FIRST
        connected = [
            s for s in self.list_sessions() if s.state is ConnectionState.CONNECTED
        ]
        if target == TARGET_ALL:
            selected = [s for s in connected if s.supports(method)]
        elif target == TARGET_FIRST:
            selected = [s for s in connected if s.supports(method)][:1]
        else:
            session = self._sessions.get(target) or self._sessions.get(
                self.session_id_for(target)
            )
            selected = [session] if session is not None else []

        if not selected:
            if not connected:
                raise NoDeviceConnected()
            raise NoDeviceConnected(f"No connected session matches target {target!r} for {method}")
        return selected

    async def dispatch(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        target: str | None = TARGET_FIRST,
        timeout: float | None = None,
    ) -> list[DispatchResult]:
        """Send a command to the targeted session(s) and collect the outcomes.

        Raises:
            NoDeviceConnected: No session matches ``target``.
            InvalidParams: ``params`` do not fit a built-in method's schema.
        """
        command = BUILTINS.get(method)
        if command is not None:
            validate_params(command, params)

        sessions = self.select(method, target)
        return list(
            await asyncio.gather(
                *(self._send(s, method, params, timeout) for s in sessions)
            )
        )

    async def _send(
        self,
        session: Session,
        method: str,
        params: dict[str, Any] | None,
        timeout: float | None,
    ) -> DispatchResult:
        if not session.supports(method):
            return DispatchResult(
                session_id=session.session_id,
                success=False,
                error=f"Session does not declare the capability needed for {method}",
                code=InvalidParams.code,
            )
        try:
            result = await session.correlator.request(method, params, timeout)
        except BridgeError as e:
            return DispatchResult(
                session_id=session.session_id,
                success=False,
                error=e.message,
                code=e.code,
            )
        self.touch(session)
        return DispatchResult(session_id=session.session_id, success=True, data=result)

    async def close(self) -> None:
        for session_id in list(self._sessions):
            session = self.evict(session_id, "controller shutting down")
            if session is None:
                continue
            try:
                await session.transport.close()
            except Exception as e:
                logger.debug(f"Error closing {session_id}: {e!r}")
