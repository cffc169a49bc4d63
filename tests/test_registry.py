"""Tests for the controller-side session registry."""

from __future__ import annotations

import asyncio

import pytest  # type: ignore[import-not-found]

from fakes import FakeTransport, RouterTransport, settle
from mobile_dev_bridge.app import AppBridge
from mobile_dev_bridge.errors import InvalidParams, NoDeviceConnected, SessionClosed
from mobile_dev_bridge.protocol import Handshake
from mobile_dev_bridge.reconnect import ConnectionState
from mobile_dev_bridge.registry import TARGET_ALL, SessionRegistry


def _handshake(
    device_id: str = "iphone-15",
    platform: str = "ios",
    capabilities: list[str] | None = None,
) -> Handshake:
    return Handshake(
        platform=platform,
        device_id=device_id,
        app_name="Shop",
        app_version="1.2.0",
        capabilities=capabilities if capabilities is not None else [],
    )


def _admit_app(registry: SessionRegistry, app: AppBridge) -> RouterTransport:
    transport = RouterTransport(app)
    session = registry.admit(
        _handshake(app.device_id, app.platform, app.capabilities), transport
    )
    transport.on_response = session.correlator.on_response
    return transport


# =============================================================================
# Admission
# =============================================================================


class TestAdmit:
    def test_admit_creates_connected_session(self) -> None:
        registry = SessionRegistry()
        session = registry.admit(_handshake(capabilities=["state"]), FakeTransport())
        assert session.session_id == "sess_iphone-15"
        assert session.state is ConnectionState.CONNECTED
        assert session.capabilities == {"state"}
        assert registry.get("sess_iphone-15") is session

    def test_missing_device_id_rejected(self) -> None:
        registry = SessionRegistry()
        with pytest.raises(InvalidParams):
            registry.admit(_handshake(device_id=""), FakeTransport())
        assert len(registry) == 0

    def test_missing_platform_rejected(self) -> None:
        registry = SessionRegistry()
        with pytest.raises(InvalidParams):
            registry.admit(_handshake(platform=""), FakeTransport())

    def test_rehandshake_on_same_transport_updates_in_place(self) -> None:
        registry = SessionRegistry()
        transport = FakeTransport()
        session = registry.admit(_handshake(capabilities=["state"]), transport)
        again = registry.admit(_handshake(capabilities=["state", "logs"]), transport)
        assert again is session
        assert session.capabilities == {"state", "logs"}

    @pytest.mark.asyncio
    async def test_new_transport_evicts_old_session(self) -> None:
        registry = SessionRegistry()
        old_transport = FakeTransport()
        old = registry.admit(_handshake(), old_transport)
        pending = asyncio.create_task(old.correlator.request("get_app_state"))
        await settle()

        new = registry.admit(_handshake(), FakeTransport())
        assert new is not old
        assert old.state is ConnectionState.DISCONNECTED
        with pytest.raises(SessionClosed):
            await pending
        assert registry.get(new.session_id) is new

    def test_list_sessions_is_a_filtered_copy(self) -> None:
        registry = SessionRegistry()
        registry.admit(_handshake("a", "ios", ["state"]), FakeTransport())
        registry.admit(_handshake("b", "android", ["logs"]), FakeTransport())
        assert [s.device_id for s in registry.list_sessions()] == ["a", "b"]
        assert [s.device_id for s in registry.list_sessions(platform="android")] == ["b"]
        assert [s.device_id for s in registry.list_sessions(capability="state")] == ["a"]
        registry.list_sessions().clear()
        assert len(registry) == 2


# =============================================================================
# Eviction
# =============================================================================


class TestEvict:
    @pytest.mark.asyncio
    async def test_evict_rejects_pending_with_session_closed(self) -> None:
        registry = SessionRegistry()
        session = registry.admit(_handshake(), FakeTransport())
        tasks = [
            asyncio.create_task(session.correlator.request("get_logs")),
            asyncio.create_task(session.correlator.request("get_traces")),
        ]
        await settle()
        assert session.correlator.pending_count == 2

        registry.evict(session.session_id, "socket closed")
        for task in tasks:
            with pytest.raises(SessionClosed):
                await task
        assert session.session_id not in registry
        assert session.state is ConnectionState.DISCONNECTED

    def test_evict_unknown_is_noop(self) -> None:
        assert SessionRegistry().evict("sess_nobody") is None

    @pytest.mark.asyncio
    async def test_close_closes_transports(self) -> None:
        registry = SessionRegistry()
        transport = FakeTransport()
        registry.admit(_handshake(), transport)
        await registry.close()
        assert transport.closed
        assert len(registry) == 0


# =============================================================================
# Dispatch
# =============================================================================


class TestDispatch:
    @pytest.mark.asyncio
    async def test_no_session_raises(self) -> None:
        with pytest.raises(NoDeviceConnected):
            await SessionRegistry().dispatch("get_app_state")

    @pytest.mark.asyncio
    async def test_first_connected_receives_command(self, cart_app: AppBridge) -> None:
        registry = SessionRegistry()
        transport = _admit_app(registry, cart_app)
        results = await registry.dispatch("get_app_state", {"path": "cart.items"})
        assert len(results) == 1
        assert results[0].success
        assert results[0].data == []
        assert transport.commands()[0]["method"] == "get_app_state"

    @pytest.mark.asyncio
    async def test_invalid_params_rejected_before_sending(self, cart_app: AppBridge) -> None:
        registry = SessionRegistry()
        transport = _admit_app(registry, cart_app)
        with pytest.raises(InvalidParams):
            await registry.dispatch("toggle_feature_flag", {"value": True})
        assert transport.sent == []

    @pytest.mark.asyncio
    async def test_handler_error_reported_per_session(self, cart_app: AppBridge) -> None:
        registry = SessionRegistry()
        _admit_app(registry, cart_app)
        results = await registry.dispatch("toggle_feature_flag", {"key": "missing"})
        assert not results[0].success
        assert results[0].code == "HandlerFailure"
        assert "missing" in (results[0].error or "")

    @pytest.mark.asyncio
    async def test_target_all(self, cart_app: AppBridge) -> None:
        registry = SessionRegistry()
        other = AppBridge("Shop", "1.2.0", platform="android", device_id="pixel")
        _admit_app(registry, cart_app)
        _admit_app(registry, other)
        results = await registry.dispatch("get_app_info", target=TARGET_ALL)
        assert [r.session_id for r in results] == ["sess_iphone-15", "sess_pixel"]
        assert all(r.success for r in results)

    @pytest.mark.asyncio
    async def test_target_by_device_id(self, cart_app: AppBridge) -> None:
        registry = SessionRegistry()
        other = AppBridge("Other", platform="android", device_id="pixel")
        _admit_app(registry, cart_app)
        _admit_app(registry, other)
        results = await registry.dispatch("get_app_info", target="pixel")
        assert results[0].data["appName"] == "Other"

    @pytest.mark.asyncio
    async def test_unknown_target_raises(self, cart_app: AppBridge) -> None:
        registry = SessionRegistry()
        _admit_app(registry, cart_app)
        with pytest.raises(NoDeviceConnected):
            await registry.dispatch("get_app_info", target="sess_ghost")

    @pytest.mark.asyncio
    async def test_first_connected_skips_sessions_lacking_capability(self) -> None:
        registry = SessionRegistry()
        registry.admit(_handshake("state-only", capabilities=["state"]), FakeTransport())
        with pytest.raises(NoDeviceConnected):
            await registry.dispatch("get_logs")

    @pytest.mark.asyncio
    async def test_explicit_target_without_capability_fails_result(self) -> None:
        registry = SessionRegistry()
        transport = FakeTransport()
        registry.admit(_handshake("state-only", capabilities=["state"]), transport)
        results = await registry.dispatch("get_logs", target="state-only")
        assert not results[0].success
        assert results[0].code == "InvalidParams"
        assert transport.sent == []

    @pytest.mark.asyncio
    async def test_timeout_reported_in_result(self) -> None:
        registry = SessionRegistry(request_timeout=0.01)
        registry.admit(_handshake(), FakeTransport())
        results = await registry.dispatch("get_app_state")
        assert not results[0].success
        assert results[0].code == "Timeout"


# =============================================================================
# End to end through the router
# =============================================================================


class TestStateOnlySession:
    @pytest.mark.asyncio
    async def test_cart_state_queries(self) -> None:
        app = AppBridge("Shop", platform="ios", device_id="state-only")
        app.expose_state("cart", lambda: {"items": []})
        registry = SessionRegistry()
        transport = RouterTransport(app)
        session = registry.admit(_handshake("state-only", capabilities=["state"]), transport)
        transport.on_response = session.correlator.on_response

        full = await registry.dispatch("get_app_state")
        assert full[0].data == {"cart": {"items": []}}
        items = await registry.dispatch("get_app_state", {"path": "cart.items"})
        assert items[0].data == []
        missing = await registry.dispatch("get_app_state", {"path": "missing.x"})
        assert missing[0].success
        assert missing[0].data == {"found": False, "path": "missing.x"}

    @pytest.mark.asyncio
    async def test_toggle_flag_scenario(self) -> None:
        app = AppBridge("Shop", platform="ios", device_id="flags")
        app.register_feature_flags({"dark": False})
        registry = SessionRegistry()
        _admit_app(registry, app)

        flipped = await registry.dispatch("toggle_feature_flag", {"key": "dark"})
        assert flipped[0].data == {"key": "dark", "value": True}
        missing = await registry.dispatch("toggle_feature_flag", {"key": "missing"})
        assert not missing[0].success
        assert "Feature flag not registered: missing" in (missing[0].error or "")
