"""Pytest fixtures shared by the bridge tests."""

from __future__ import annotations

from typing import Any

import pytest  # type: ignore[import-not-found]

from mobile_dev_bridge.app import AppBridge


@pytest.fixture
def cart_app() -> AppBridge:
    """An app exposing a cart, a theme flag and a checkout action."""
    app = AppBridge("Shop", "1.2.0", platform="ios", device_id="iphone-15")
    cart: dict[str, Any] = {"items": [], "total": 0}
    app.expose_state("cart", lambda: cart)
    app.expose_state("user", lambda: {"profile": {"name": "Ada"}})
    app.register_feature_flags({"dark": False, "beta": True})

    def checkout(params: dict[str, Any]) -> dict[str, Any]:
        return {"ordered": len(cart["items"]), "coupon": params.get("coupon")}

    app.register_action("checkout", checkout)
    return app
