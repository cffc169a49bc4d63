"""Request/response correlation for one bridge endpoint."""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from .config import DEFAULT_MAX_PENDING, DEFAULT_REQUEST_TIMEOUT
from .errors import (
    BridgeError,
    HandlerFailure,
    RequestTimeout,
    SessionClosed,
    TooManyPendingRequests,
)
from .protocol import Command, Response, encode_frame

logger = logging.getLogger(__name__)

SendText = Callable[[str], Awaitable[None]]


@dataclass
class PendingRequest:
    id: str
    method: str
    future: asyncio.Future[Any] = field(repr=False)
    issued_at: float = field(default_factory=time.monotonic)
    timeout_handle: asyncio.TimerHandle | None = field(default=None, repr=False)


class Correlator:
    """Tracks in-flight commands and matches responses to them by id.

    Each pending request is completed exactly once: by its response, its
    timeout, caller cancellation or ``reject_all``. Whichever comes first
    removes it from the map; later outcomes find nothing and are discarded.
    """

    def __init__(
        self,
        send_text: SendText,
        *,
        default_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        max_pending: int = DEFAULT_MAX_PENDING,
        prefix: str = "req_",
    ) -> None:
        self._send_text = send_text
        self.default_timeout = default_timeout
        self.max_pending = max_pending
        self._prefix = prefix
        self._ids = itertools.count(1)
        self._pending: dict[str, PendingRequest] = {}

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def pending_ids(self) -> list[str]:
        return list(self._pending)

    def next_id(self) -> str:
        return f"{self._prefix}{next(self._ids)}"

    async def request(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> Any:
        """Send a command and wait for its result.

        Raises:
            RequestTimeout: No response arrived within ``timeout`` seconds.
            HandlerFailure: The remote side answered with an error.
            SessionClosed: The transport failed or the session was evicted.
            TooManyPendingRequests: ``max_pending`` requests are already in flight.
        """
        if self.max_pending and len(self._pending) >= self.max_pending:
            raise TooManyPendingRequests(
                f"{len(self._pending)} requests already in flight (limit {self.max_pending})"
            )

        timeout = self.default_timeout if timeout is None else timeout
        loop = asyncio.get_running_loop()
        request_id = self.next_id()
        pending = PendingRequest(
            id=request_id, method=method, future=loop.create_future()
        )
        self._pending[request_id] = pending
        pending.timeout_handle = loop.call_later(
            timeout, self._expire, request_id, timeout
        )

        command = Command(id=request_id, method=method, params=params or {})
        try:
            await self._send_text(encode_frame(command))
        except asyncio.CancelledError:
            self._discard(request_id)
            raise
        except Exception as e:
            self._discard(request_id)
            raise SessionClosed(f"Failed to send {method}: {e}") from e

        try:
            return await pending.future
        except asyncio.CancelledError:
            # Caller gave up; the remote side is not notified.
            self._discard(request_id)
            raise

    def on_response(self, response: Response) -> bool:
        """Complete the matching pending request.

        Returns False when the id is unknown (late, duplicate or never sent).
        """
        pending = self._pending.pop(response.id, None)
        if pending is None:
            logger.debug(f"Discarding response for unknown request {response.id}")
            return False
        if pending.timeout_handle is not None:
            pending.timeout_handle.cancel()
        if pending.future.done():
            return False
        if response.error is not None:
            pending.future.set_exception(HandlerFailure(response.error))
        else:
            pending.future.set_result(response.result)
        return True

    def reject_all(self, error: BridgeError) -> int:
        """Fail every outstanding request with ``error``."""
        pending_requests = list(self._pending.values())
        self._pending.clear()
        rejected = 0
        for pending in pending_requests:
            if pending.timeout_handle is not None:
                pending.timeout_handle.cancel()
            if not pending.future.done():
                pending.future.set_exception(error)
                rejected += 1
        if rejected:
            logger.info(f"Rejected {rejected} pending request(s): {error.message}")
        return rejected

    def _expire(self, request_id: str, timeout: float) -> None:
        pending = self._pending.pop(request_id, None)
        if pending is None:
            return
        logger.warning(f"Request {request_id} ({pending.method}) timed out after {timeout}s")
        if not pending.future.done():
            pending.future.set_exception(RequestTimeout(pending.method, timeout))

    def _discard(self, request_id: str) -> None:
        pending = self._pending.pop(request_id, None)
        if pending is None:
            return
        if pending.timeout_handle is not None:
            pending.timeout_handle.cancel()
        if not pending.future.done():
            pending.future.cancel()
