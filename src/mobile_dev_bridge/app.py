"""Application-side registry of everything the controller can inspect."""

from __future__ import annotations

import inspect
import itertools
import logging
import os
import platform as platform_module
import sys
import uuid
from collections.abc import Callable, Mapping, MutableMapping
from dataclasses import dataclass, field
from typing import Any

import httpx

from .capture import (
    DEFAULT_LOG_CAPACITY,
    DEFAULT_NETWORK_CAPACITY,
    DEFAULT_TRACE_CAPACITY,
    CaptureBuffer,
    CapturedEntry,
    LogEntry,
    NetworkEntry,
)
from .logs import CaptureHandler
from .mocks import MockMatcher
from .network import CapturingTransport
from .tracing import Tracer

logger = logging.getLogger(__name__)

NAVIGATION_HISTORY_CAPACITY = 50
SDK_VERSION = "0.1.0"

StateGetter = Callable[[], Any]
ActionHandler = Callable[[dict[str, Any]], Any]
Navigator = Callable[[str, dict[str, Any]], Any]
Unregister = Callable[[], None]


async def maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


@dataclass
class Bounds:
    x: float
    y: float
    width: float
    height: float

    def contains(self, x: float, y: float) -> bool:
        return self.x <= x <= self.x + self.width and self.y <= y <= self.y + self.height

    def to_dict(self) -> dict[str, float]:
        return {"x": self.x, "y": self.y, "width": self.width, "height": self.height}


@dataclass
class Component:
    """A UI element the application chooses to expose."""

    test_id: str
    type: str
    bounds: Bounds | None = None
    on_tap: Callable[[], Any] | None = None
    on_change_text: Callable[[str], Any] | None = None
    get_text: Callable[[], str | None] | None = None
    props: dict[str, Any] = field(default_factory=dict)
    visible: bool = True

    def text(self) -> str | None:
        if self.get_text is None:
            return None
        try:
            return self.get_text()
        except Exception as e:
            logger.warning(f"Text getter for {self.test_id} failed: {e}")
            return None

    @property
    def interactive(self) -> bool:
        return self.on_tap is not None or self.on_change_text is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "testId": self.test_id,
            "type": self.type,
            "props": self.props,
            "text": self.text(),
            "visible": self.visible,
            "hasTapHandler": self.on_tap is not None,
            "hasTextInput": self.on_change_text is not None,
            "hasTextGetter": self.get_text is not None,
            "bounds": self.bounds.to_dict() if self.bounds else None,
        }


@dataclass
class NavigationEntry(CapturedEntry):
    route: str
    params: dict[str, Any] = field(default_factory=dict)


class AppBridge:
    """Everything one application exposes to the controller.

    Handlers are held by strong reference. Each ``register_*``/``expose_*``
    call returns a callable that removes the registration again; owners call
    it on teardown.
    """

    def __init__(
        self,
        app_name: str = "Python App",
        app_version: str = "0.0.0",
        *,
        platform: str = "python",
        device_id: str | None = None,
        storage: MutableMapping[str, Any] | None = None,
        log_capacity: int = DEFAULT_LOG_CAPACITY,
        network_capacity: int = DEFAULT_NETWORK_CAPACITY,
        trace_capacity: int = DEFAULT_TRACE_CAPACITY,
        http_transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.app_name = app_name
        self.app_version = app_version
        self.platform = platform
        self.device_id = device_id or f"{platform}_{uuid.uuid4().hex[:12]}"

        self.state_getters: dict[str, StateGetter] = {}
        self.actions: dict[str, ActionHandler] = {}
        self.components: dict[str, Component] = {}
        self.feature_flags: dict[str, bool] = {}
        self.storage: MutableMapping[str, Any] = storage if storage is not None else {}

        self.logs: CaptureBuffer[LogEntry] = CaptureBuffer(log_capacity, name="logs")
        self.network: CaptureBuffer[NetworkEntry] = CaptureBuffer(
            network_capacity, name="network"
        )
        self.mocks = MockMatcher()
        self.http_transport = http_transport
        self._request_ids = itertools.count(1)
        self.tracer = Tracer(trace_capacity)

        self.current_route = "/"
        self.route_params: dict[str, Any] = {}
        self.navigation_history: CaptureBuffer[NavigationEntry] = CaptureBuffer(
            NAVIGATION_HISTORY_CAPACITY, name="navigation"
        )
        self._navigator: Navigator | None = None
        self._log_handlers: list[tuple[logging.Logger, CaptureHandler]] = []

    @property
    def capabilities(self) -> list[str]:
        return ["state", "actions", "ui", "network", "logs", "tracing", "navigation"]

    # -------------------------------------------------------------------------
    # State & actions
    # -------------------------------------------------------------------------

    def expose_state(self, key: str, getter: StateGetter) -> Unregister:
        self.state_getters[key] = getter
        logger.debug(f"Exposed state: {key}")
        return lambda: self._remove_if_same(self.state_getters, key, getter)

    def remove_state(self, key: str) -> None:
        self.state_getters.pop(key, None)

    def register_action(self, name: str, handler: ActionHandler) -> Unregister:
        self.actions[name] = handler
        logger.debug(f"Registered action: {name}")
        return lambda: self._remove_if_same(self.actions, name, handler)

    def remove_action(self, name: str) -> None:
        self.actions.pop(name, None)

    async def execute_action(self, name: str, params: dict[str, Any]) -> Any:
        handler = self.actions[name]
        return await maybe_await(handler(params))

    # -------------------------------------------------------------------------
    # Components
    # -------------------------------------------------------------------------

    def register_component(
        self,
        test_id: str,
        type: str,
        *,
        bounds: Bounds | tuple[float, float, float, float] | None = None,
        on_tap: Callable[[], Any] | None = None,
        on_change_text: Callable[[str], Any] | None = None,
        get_text: Callable[[], str | None] | None = None,
        props: dict[str, Any] | None = None,
    ) -> Unregister:
        if isinstance(bounds, tuple):
            bounds = Bounds(*bounds)
        component = Component(
            test_id=test_id,
            type=type,
            bounds=bounds,
            on_tap=on_tap,
            on_change_text=on_change_text,
            get_text=get_text,
            props=dict(props or {}),
        )
        self.components[test_id] = component
        return lambda: self._remove_if_same(self.components, test_id, component)

    def unregister_component(self, test_id: str) -> None:
        self.components.pop(test_id, None)

    def component_at(self, x: float, y: float) -> Component | None:
        """First registered component whose bounds contain the point."""
        for component in list(self.components.values()):
            if component.bounds is not None and component.bounds.contains(x, y):
                return component
        return None

    # -------------------------------------------------------------------------
    # Feature flags
    # -------------------------------------------------------------------------

    def register_feature_flags(self, flags: Mapping[str, bool]) -> None:
        for key, value in flags.items():
            self.feature_flags[key] = bool(value)

    def get_feature_flag(self, key: str) -> bool:
        return self.feature_flags.get(key, False)

    # -------------------------------------------------------------------------
    # Navigation
    # -------------------------------------------------------------------------

    def set_navigator(self, navigator: Navigator | None) -> None:
        """Install the callback ``navigate_to`` uses to change routes."""
        self._navigator = navigator

    @property
    def navigator(self) -> Navigator | None:
        return self._navigator

    def set_navigation_state(self, route: str, params: dict[str, Any] | None = None) -> None:
        self.current_route = route
        self.route_params = dict(params or {})
        self.navigation_history.push(NavigationEntry(route=route, params=self.route_params))
        logger.debug(f"Navigation: {route}")

    # -------------------------------------------------------------------------
    # Capture
    # -------------------------------------------------------------------------

    def capture_logs(
        self, target: logging.Logger | None = None, level: int = logging.DEBUG
    ) -> CaptureHandler:
        """Record records emitted on ``target`` (the root logger by default)."""
        target = target or logging.getLogger()
        handler = CaptureHandler(self.logs, level)
        target.addHandler(handler)
        self._log_handlers.append((target, handler))
        return handler

    def release_logs(self) -> None:
        for target, handler in self._log_handlers:
            target.removeHandler(handler)
        self._log_handlers.clear()

    def http_client(self, **kwargs: Any) -> httpx.AsyncClient:
        """An httpx client whose traffic is recorded and subject to mock rules.

        Without an explicit ``transport`` the client sends through
        ``http_transport``, which stays open when the client closes.
        """
        inner = kwargs.pop("transport", None)
        transport = CapturingTransport(
            self.network,
            self.mocks,
            inner or self.http_transport,
            ids=self._request_ids,
            owns_transport=inner is not None,
        )
        return httpx.AsyncClient(transport=transport, **kwargs)

    # -------------------------------------------------------------------------
    # Descriptions
    # -------------------------------------------------------------------------

    def device_info(self) -> dict[str, Any]:
        return {
            "platform": self.platform,
            "deviceId": self.device_id,
            "os": platform_module.system(),
            "osVersion": platform_module.release(),
            "machine": platform_module.machine(),
            "hostname": platform_module.node(),
            "pythonVersion": platform_module.python_version(),
            "implementation": platform_module.python_implementation(),
            "pid": os.getpid(),
        }

    def app_info(self) -> dict[str, Any]:
        return {
            "appName": self.app_name,
            "appVersion": self.app_version,
            "platform": self.platform,
            "deviceId": self.device_id,
            "sdkVersion": SDK_VERSION,
            "executable": sys.executable,
            "capabilities": self.capabilities,
            "registered": {
                "state": sorted(self.state_getters),
                "actions": sorted(self.actions),
                "components": len(self.components),
                "featureFlags": len(self.feature_flags),
            },
        }

    @staticmethod
    def _remove_if_same(registry: dict[str, Any], key: str, value: Any) -> None:
        # A newer registration under the same key stays in place.
        if registry.get(key) is value:
            del registry[key]
