"""httpx transport that records traffic and serves mock responses."""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
import time
from collections.abc import Iterator
from typing import Any

import httpx

from .capture import CaptureBuffer, NetworkEntry
from .mocks import MockMatcher, MockRule

logger = logging.getLogger(__name__)

MAX_BODY_CHARS = 10_000


def _decode_body(content: bytes, content_type: str | None) -> Any:
    if not content:
        return None
    text = content.decode("utf-8", errors="replace")
    if content_type and "json" in content_type:
        try:
            return json.loads(text)
        except ValueError:
            pass
    if len(text) > MAX_BODY_CHARS:
        return f"{text[:MAX_BODY_CHARS]}... [{len(text)} chars total]"
    return text


def _request_body(request: httpx.Request) -> Any:
    try:
        content = request.content
    except httpx.RequestNotRead:
        return "<streaming body>"
    return _decode_body(content, request.headers.get("content-type"))


def mock_response(rule: MockRule, request: httpx.Request) -> httpx.Response:
    """Build the synthetic response for a matched rule."""
    headers = dict(rule.headers)
    if isinstance(rule.body, bytes):
        content = rule.body
    elif isinstance(rule.body, str):
        content = rule.body.encode()
        headers.setdefault("content-type", "text/plain")
    else:
        content = json.dumps(rule.body).encode()
        headers.setdefault("content-type", "application/json")
    return httpx.Response(
        rule.status_code, headers=headers, content=content, request=request
    )


class CapturingTransport(httpx.AsyncBaseTransport):
    """Wrap a real transport: mock matched URLs, record every request.

    Mocked requests never reach the wrapped transport. Both mocked and real
    requests land in the network buffer with the same entry shape.
    """

    def __init__(
        self,
        buffer: CaptureBuffer[NetworkEntry],
        matcher: MockMatcher,
        transport: httpx.AsyncBaseTransport | None = None,
        *,
        ids: Iterator[int] | None = None,
        owns_transport: bool = True,
    ) -> None:
        self.buffer = buffer
        self.matcher = matcher
        self._transport = transport or httpx.AsyncHTTPTransport()
        self._owns_transport = owns_transport or transport is None
        self._ids = ids if ids is not None else itertools.count(1)

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        started = time.perf_counter()
        entry = NetworkEntry(
            id=f"req_{next(self._ids)}",
            url=str(request.url),
            method=request.method,
            request_headers=dict(request.headers),
            request_body=_request_body(request),
        )

        rule = self.matcher.match(entry.url)
        if rule is not None:
            if rule.delay_ms:
                await asyncio.sleep(rule.delay_ms / 1000)
            response = mock_response(rule, request)
            entry.mocked = True
            entry.mock_id = rule.id
            self._record(entry, started, response, response.content)
            logger.debug(f"Mocked {request.method} {entry.url} with {rule.id}")
            return response

        try:
            response = await self._transport.handle_async_request(request)
        except httpx.HTTPError as e:
            entry.status_code = 0
            entry.error = str(e) or type(e).__name__
            entry.duration_ms = (time.perf_counter() - started) * 1000
            self.buffer.push(entry)
            raise

        content = await response.aread()
        self._record(entry, started, response, content)
        return response

    def _record(
        self,
        entry: NetworkEntry,
        started: float,
        response: httpx.Response,
        content: bytes,
    ) -> None:
        entry.status_code = response.status_code
        entry.response_headers = dict(response.headers)
        entry.response_body = _decode_body(content, response.headers.get("content-type"))
        entry.duration_ms = (time.perf_counter() - started) * 1000
        self.buffer.push(entry)

    async def aclose(self) -> None:
        if self._owns_transport:
            await self._transport.aclose()
