"""Tests for the reconnection state machine."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest  # type: ignore[import-not-found]

from fakes import wait_for_condition
from mobile_dev_bridge.reconnect import ConnectionState, ReconnectionFSM

S = ConnectionState


class ClientTransport:
    """Client-side transport whose reader blocks until ``drop`` is called."""

    def __init__(self) -> None:
        self.sent: list[str] = []
        self.closed = False
        self._dropped = asyncio.Event()

    async def send(self, message: str) -> None:
        self.sent.append(message)

    async def close(self) -> None:
        self.closed = True
        self._dropped.set()

    def drop(self) -> None:
        self._dropped.set()

    async def wait_dropped(self) -> None:
        await self._dropped.wait()


class Harness:
    """Scripted connect outcomes plus a record of transitions."""

    def __init__(self, outcomes: list[Any] | None = None) -> None:
        self.outcomes = list(outcomes or [])
        self.connects = 0
        self.opened: list[ClientTransport] = []
        self.transitions: list[ConnectionState] = []

    async def connect(self) -> ClientTransport:
        self.connects += 1
        outcome = self.outcomes.pop(0) if self.outcomes else ClientTransport()
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def on_open(self, transport: ClientTransport) -> None:
        await transport.send("handshake")
        self.opened.append(transport)

    async def serve(self, transport: ClientTransport) -> None:
        await transport.wait_dropped()

    def fsm(self, **kwargs: Any) -> ReconnectionFSM:
        kwargs.setdefault("base_delay", 0.01)
        fsm = ReconnectionFSM(self.connect, self.on_open, self.serve, **kwargs)
        fsm.add_listener(lambda old, new: self.transitions.append(new))
        return fsm


class TestRetryDelay:
    def test_linear_backoff_capped(self) -> None:
        harness = Harness()
        fsm = harness.fsm(base_delay=3.0, backoff_cap=5)
        assert [fsm.retry_delay(n) for n in range(1, 8)] == [3, 6, 9, 12, 15, 15, 15]


class TestReconnectionFSM:
    @pytest.mark.asyncio
    async def test_initialize_connects_and_sends_handshake(self) -> None:
        harness = Harness()
        fsm = harness.fsm()
        await fsm.initialize()
        assert fsm.state is S.CONNECTED
        assert fsm.attempts == 0
        assert harness.opened[0].sent == ["handshake"]
        assert harness.transitions == [S.CONNECTING, S.CONNECTED]
        await fsm.disconnect()

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self) -> None:
        harness = Harness([OSError("refused")] * 4)
        fsm = harness.fsm(max_attempts=3)
        await fsm.initialize()
        await wait_for_condition(
            lambda: fsm.state is S.DISCONNECTED and harness.connects == 4
        )
        assert harness.transitions == [
            S.CONNECTING,
            S.RECONNECTING,
            S.CONNECTING,
            S.RECONNECTING,
            S.CONNECTING,
            S.RECONNECTING,
            S.CONNECTING,
            S.RECONNECTING,
            S.DISCONNECTED,
        ]
        assert not fsm.retry_scheduled

    @pytest.mark.asyncio
    async def test_recovers_and_resets_attempts(self) -> None:
        harness = Harness([OSError("refused"), OSError("refused")])
        fsm = harness.fsm()
        await fsm.initialize()
        await wait_for_condition(lambda: fsm.state is S.CONNECTED)
        assert harness.connects == 3
        assert fsm.attempts == 0
        await fsm.disconnect()

    @pytest.mark.asyncio
    async def test_dropped_transport_schedules_retry(self) -> None:
        harness = Harness()
        fsm = harness.fsm()
        await fsm.initialize()
        first = harness.opened[0]
        first.drop()
        await wait_for_condition(lambda: len(harness.opened) == 2)
        assert fsm.state is S.CONNECTED
        assert first.closed
        assert S.RECONNECTING in harness.transitions
        await fsm.disconnect()

    @pytest.mark.asyncio
    async def test_disconnect_while_reconnecting_cancels_retry(self) -> None:
        harness = Harness([OSError("refused")])
        fsm = harness.fsm(base_delay=10.0)
        await fsm.initialize()
        assert fsm.state is S.RECONNECTING
        assert fsm.retry_scheduled

        await fsm.disconnect()
        assert fsm.state is S.DISCONNECTED
        assert not fsm.retry_scheduled
        await asyncio.sleep(0.05)
        assert harness.connects == 1

    @pytest.mark.asyncio
    async def test_disconnect_does_not_auto_retry(self) -> None:
        harness = Harness()
        fsm = harness.fsm()
        await fsm.initialize()
        await fsm.disconnect()
        await asyncio.sleep(0.05)
        assert fsm.state is S.DISCONNECTED
        assert harness.connects == 1
        assert harness.opened[0].closed

    @pytest.mark.asyncio
    async def test_connect_completing_after_disconnect_is_discarded(self) -> None:
        release = asyncio.Event()
        transport = ClientTransport()

        async def slow_connect() -> ClientTransport:
            await release.wait()
            return transport

        harness = Harness()
        fsm = ReconnectionFSM(slow_connect, harness.on_open, harness.serve, base_delay=0.01)
        pending = asyncio.create_task(fsm.initialize())
        await asyncio.sleep(0)
        assert fsm.state is S.CONNECTING

        await fsm.disconnect()
        release.set()
        await pending
        assert fsm.state is S.DISCONNECTED
        assert transport.closed
        assert harness.opened == []

    @pytest.mark.asyncio
    async def test_initialize_is_single_flight(self) -> None:
        harness = Harness()
        fsm = harness.fsm()
        await asyncio.gather(fsm.initialize(), fsm.initialize())
        assert harness.connects == 1
        await fsm.disconnect()

    @pytest.mark.asyncio
    async def test_reconnect_opens_a_fresh_transport(self) -> None:
        harness = Harness()
        fsm = harness.fsm()
        await fsm.initialize()
        await fsm.reconnect()
        assert fsm.state is S.CONNECTED
        assert len(harness.opened) == 2
        assert harness.opened[0].closed
        await fsm.disconnect()

    @pytest.mark.asyncio
    async def test_transitions_recorded_in_activity(self) -> None:
        harness = Harness([OSError("refused")])
        fsm = harness.fsm(base_delay=10.0)
        await fsm.initialize()
        messages = [e.message for e in fsm.activity.snapshot()]
        assert messages[0].startswith("disconnected -> connecting")
        assert "connect failed: refused" in messages[1]
        assert fsm.activity.snapshot()[1].level == "warn"
        await fsm.disconnect()

    @pytest.mark.asyncio
    async def test_wait_connected(self) -> None:
        harness = Harness()
        fsm = harness.fsm()
        assert await fsm.wait_connected(0.01) is False
        await fsm.initialize()
        assert await fsm.wait_connected(0.01) is True
        await fsm.disconnect()

    @pytest.mark.asyncio
    async def test_repeated_transport_failures_then_disconnect(self) -> None:
        harness = Harness()
        fsm = harness.fsm()
        await fsm.initialize()
        for expected in (2, 3):
            harness.opened[-1].drop()
            await wait_for_condition(lambda: len(harness.opened) == expected)

        fsm.base_delay = 10.0
        harness.opened[-1].drop()
        await wait_for_condition(lambda: fsm.state is S.RECONNECTING)
        assert fsm.retry_scheduled
        await fsm.disconnect()
        await asyncio.sleep(0.05)

        assert harness.transitions == [
            S.CONNECTING,
            S.CONNECTED,
            S.RECONNECTING,
            S.CONNECTING,
            S.CONNECTED,
            S.RECONNECTING,
            S.CONNECTING,
            S.CONNECTED,
            S.RECONNECTING,
            S.DISCONNECTED,
        ]
        assert harness.connects == 3

    @pytest.mark.asyncio
    async def test_reconnect_while_retry_is_connecting(self) -> None:
        release = asyncio.Event()
        calls = 0

        async def connect() -> ClientTransport:
            nonlocal calls
            calls += 1
            if calls == 1:
                raise OSError("refused")
            if calls == 2:
                await release.wait()
            return ClientTransport()

        harness = Harness()
        fsm = ReconnectionFSM(connect, harness.on_open, harness.serve, base_delay=0.01)
        await fsm.initialize()
        await wait_for_condition(lambda: calls == 2)
        assert fsm.state is S.CONNECTING

        await fsm.reconnect()
        assert fsm.state is S.CONNECTED
        assert calls == 3
        assert not fsm.retry_scheduled
        await fsm.disconnect()

    @pytest.mark.asyncio
    async def test_reconnect_while_initialize_is_connecting(self) -> None:
        release = asyncio.Event()
        stale = ClientTransport()
        calls = 0

        async def connect() -> ClientTransport:
            nonlocal calls
            calls += 1
            if calls == 1:
                await release.wait()
                return stale
            return ClientTransport()

        harness = Harness()
        fsm = ReconnectionFSM(connect, harness.on_open, harness.serve, base_delay=0.01)
        first = asyncio.create_task(fsm.initialize())
        await wait_for_condition(lambda: calls == 1)

        await fsm.reconnect()
        assert fsm.state is S.CONNECTED
        release.set()
        await first
        assert fsm.state is S.CONNECTED
        assert stale.closed
        assert fsm.transport is not stale
        await fsm.disconnect()
