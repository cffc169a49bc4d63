"""Connection lifecycle and retry scheduling for the embedded client."""

from __future__ import annotations

import asyncio
import enum
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from .capture import CaptureBuffer, LogEntry
from .config import (
    DEFAULT_BACKOFF_CAP,
    DEFAULT_MAX_RECONNECT_ATTEMPTS,
    DEFAULT_RECONNECT_DELAY,
)

logger = logging.getLogger(__name__)

ACTIVITY_CAPACITY = 100


class ConnectionState(str, enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


Connect = Callable[[], Awaitable[Any]]
TransportCallback = Callable[[Any], Awaitable[None]]
StateListener = Callable[[ConnectionState, ConnectionState], None]


class ReconnectionFSM:
    """Owns the transport and decides when to (re)open it.

    States move ``DISCONNECTED -> CONNECTING -> CONNECTED``; any transport
    failure moves to ``RECONNECTING`` and schedules a retry after
    ``base_delay * min(attempt, backoff_cap)`` seconds. Only ``disconnect()``
    leaves the machine in ``DISCONNECTED`` without a retry. Errors raised by
    ``connect``, ``on_open`` or ``serve`` never propagate to the caller.

    Args:
        connect: Opens and returns a transport.
        on_open: Called with a fresh transport before entering CONNECTED
            (sends the handshake).
        serve: Reads from the transport until it closes.
        base_delay: Retry delay unit in seconds.
        backoff_cap: Largest multiplier applied to ``base_delay``.
        max_attempts: Consecutive failures before giving up; 0 retries forever.
    """

    def __init__(
        self,
        connect: Connect,
        on_open: TransportCallback,
        serve: TransportCallback,
        *,
        base_delay: float = DEFAULT_RECONNECT_DELAY,
        backoff_cap: int = DEFAULT_BACKOFF_CAP,
        max_attempts: int = DEFAULT_MAX_RECONNECT_ATTEMPTS,
        name: str = "bridge",
    ) -> None:
        self._connect = connect
        self._on_open = on_open
        self._serve = serve
        self.base_delay = base_delay
        self.backoff_cap = max(1, backoff_cap)
        self.max_attempts = max_attempts
        self.name = name

        self._state = ConnectionState.DISCONNECTED
        self._attempts = 0
        self._transport: Any = None
        self._connecting_epoch: int | None = None
        self._epoch = 0
        self._retry_handle: asyncio.TimerHandle | None = None
        self._retry_task: asyncio.Task[None] | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._listeners: list[StateListener] = []
        self._connected_event = asyncio.Event()
        self.activity: CaptureBuffer[LogEntry] = CaptureBuffer(
            ACTIVITY_CAPACITY, name="activity"
        )

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def attempts(self) -> int:
        return self._attempts

    @property
    def transport(self) -> Any:
        return self._transport

    @property
    def retry_scheduled(self) -> bool:
        return self._retry_handle is not None or (
            self._retry_task is not None and not self._retry_task.done()
        )

    def retry_delay(self, attempt: int) -> float:
        return self.base_delay * min(max(attempt, 1), self.backoff_cap)

    def add_listener(self, listener: StateListener) -> Callable[[], None]:
        """Observe ``(old, new)`` transitions. Returns an unsubscribe callable."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    async def wait_connected(self, timeout: float | None = None) -> bool:
        try:
            await asyncio.wait_for(self._connected_event.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    # -------------------------------------------------------------------------
    # Public transitions
    # -------------------------------------------------------------------------

    @property
    def connecting(self) -> bool:
        """True while a connect attempt of the current epoch is in flight."""
        return self._connecting_epoch == self._epoch

    async def initialize(self) -> None:
        if self._state is not ConnectionState.DISCONNECTED or self.connecting:
            logger.debug(f"[{self.name}] initialize() ignored in state {self._state.value}")
            return
        self._attempts = 0
        await self._attempt_connect()

    async def disconnect(self) -> None:
        self._epoch += 1
        retry = self._cancel_retry()
        reader = self._reader_task
        self._reader_task = None
        transport = self._transport
        self._transport = None
        self._transition(ConnectionState.DISCONNECTED, "disconnect requested")

        await self._cancel_and_wait(retry, "retry")
        await self._cancel_and_wait(reader, "reader")
        if transport is not None:
            await self._close_transport(transport)

    async def reconnect(self) -> None:
        await self.disconnect()
        await self.initialize()

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    async def _attempt_connect(self) -> None:
        if self.connecting:
            return
        epoch = self._epoch
        self._connecting_epoch = epoch
        try:
            self._transition(ConnectionState.CONNECTING, f"attempt {self._attempts + 1}")
            try:
                transport = await self._connect()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if epoch == self._epoch:
                    self._on_failure(f"connect failed: {e}")
                return

            if epoch != self._epoch:
                # disconnect() ran while we were connecting
                await self._close_transport(transport)
                return

            self._transport = transport
            try:
                await self._on_open(transport)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._transport = None
                await self._close_transport(transport)
                if epoch == self._epoch:
                    self._on_failure(f"handshake failed: {e}")
                return

            self._attempts = 0
            self._transition(ConnectionState.CONNECTED, "transport open")
            self._reader_task = asyncio.create_task(
                self._read_until_closed(transport, epoch)
            )
        finally:
            # a stale attempt must not clear the flag of a newer one
            if self._connecting_epoch == epoch:
                self._connecting_epoch = None

    async def _read_until_closed(self, transport: Any, epoch: int) -> None:
        reason = "transport closed"
        try:
            await self._serve(transport)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            reason = f"transport error: {e}"
        if epoch != self._epoch or transport is not self._transport:
            return
        self._transport = None
        self._reader_task = None
        await self._close_transport(transport)
        self._on_failure(reason)

    def _on_failure(self, reason: str) -> None:
        self._attempts += 1
        self._transition(ConnectionState.RECONNECTING, reason)
        if self.max_attempts and self._attempts > self.max_attempts:
            logger.error(
                f"[{self.name}] Max reconnect attempts ({self.max_attempts}) reached"
            )
            self._transition(ConnectionState.DISCONNECTED, "gave up")
            return
        delay = self.retry_delay(self._attempts)
        logger.info(
            f"[{self.name}] Reconnecting in {delay:.2f}s (attempt {self._attempts})"
        )
        loop = asyncio.get_running_loop()
        self._retry_handle = loop.call_later(delay, self._fire_retry)

    def _fire_retry(self) -> None:
        self._retry_handle = None
        if self._state is not ConnectionState.RECONNECTING:
            return
        self._retry_task = asyncio.create_task(self._attempt_connect())

    def _cancel_retry(self) -> asyncio.Task[None] | None:
        """Drop the pending timer and hand back any running retry task."""
        if self._retry_handle is not None:
            self._retry_handle.cancel()
            self._retry_handle = None
        task, self._retry_task = self._retry_task, None
        return task

    async def _cancel_and_wait(self, task: asyncio.Task[None] | None, what: str) -> None:
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.debug(f"[{self.name}] {what} ended with {e!r}")

    async def _close_transport(self, transport: Any) -> None:
        try:
            await transport.close()
        except Exception as e:
            logger.debug(f"[{self.name}] error closing transport: {e!r}")

    def _transition(self, new_state: ConnectionState, reason: str) -> None:
        old_state = self._state
        if old_state is new_state:
            return
        self._state = new_state
        if new_state is ConnectionState.CONNECTED:
            self._connected_event.set()
        else:
            self._connected_event.clear()

        level = "warn" if new_state is ConnectionState.RECONNECTING else "info"
        message = f"{old_state.value} -> {new_state.value}: {reason}"
        self.activity.push(LogEntry(level=level, message=message, logger=self.name))
        if level == "warn":
            logger.warning(f"[{self.name}] {message}")
        else:
            logger.info(f"[{self.name}] {message}")

        for listener in list(self._listeners):
            try:
                listener(old_state, new_state)
            except Exception:
                logger.exception(f"[{self.name}] state listener failed")
