"""Command dispatch for the application side.

A method name resolves to one of:

1. a built-in command from the fixed ``BUILTINS`` table, whose params are
   validated once here against a pydantic model;
2. a dynamically registered action with exactly that name;
3. otherwise ``UnknownMethod``.

``CommandRouter.handle`` turns every outcome, including handler exceptions,
into a response frame.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Union

import httpx
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from .app import AppBridge, Component, maybe_await
from .capture import LOG_LEVELS, LogEntry, NetworkEntry
from .errors import BridgeError, HandlerFailure, InvalidParams, UnknownMethod
from .protocol import Command, Response

logger = logging.getLogger(__name__)


# =============================================================================
# Parameter schemas
# =============================================================================


class Params(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class NoParams(Params):
    pass


class AppStateParams(Params):
    path: str | None = Field(
        default=None,
        description='Dot notation path into the state (e.g. "user.profile"). Omit for the full state.',
    )
    key: str | None = Field(default=None, description="Exact state key to return.")
    keys: list[str] | None = Field(default=None, description="Subset of state keys to return.")


class ToggleFlagParams(Params):
    key: str = Field(description="Feature flag name.")
    value: bool | None = Field(
        default=None, description="Value to set. Omit to flip the current value."
    )


class LogsParams(Params):
    level: str | None = Field(
        default=None, description="Minimum level: debug, info, warn or error."
    )
    filter: str | None = Field(default=None, description="Regex applied to messages.")
    since: str | float | None = Field(
        default=None, description="ISO timestamp or epoch milliseconds."
    )
    limit: int = Field(default=100, ge=1)


class RecentErrorsParams(Params):
    limit: int = Field(default=20, ge=1)


class NetworkRequestsParams(Params):
    limit: int = Field(default=50, ge=1)
    url: str | None = Field(default=None, description="Regex applied to request URLs.")
    method: str | None = None
    status_code: int | None = Field(default=None, alias="statusCode")


class MockRequestParams(Params):
    url_pattern: str = Field(alias="urlPattern", description="Regex matched against request URLs.")
    status_code: int = Field(default=200, alias="statusCode")
    body: Any = None
    headers: dict[str, str] = Field(default_factory=dict)
    delay: float = Field(default=0, ge=0, description="Artificial delay in milliseconds.")


class ReplayModifications(Params):
    headers: dict[str, str] | None = None
    body: Any = None


class ReplayParams(Params):
    request_id: str = Field(alias="requestId")
    modifications: ReplayModifications = Field(default_factory=ReplayModifications)


class ClearMocksParams(Params):
    mock_id: str | None = Field(
        default=None, alias="mockId", description="Mock to remove. Omit to clear all."
    )


class TracesParams(Params):
    limit: int = Field(default=100, ge=1)
    name: str | None = Field(default=None, description="Function name, wildcards allowed.")
    min_duration: float | None = Field(default=None, alias="minDuration")
    since: float | None = Field(default=None, description="Epoch milliseconds.")
    in_progress: bool = Field(default=False, alias="inProgress")


class InjectTraceParams(Params):
    pattern: str = Field(description='Function name pattern, e.g. "CartService.*".')
    log_args: bool = Field(default=True, alias="logArgs")
    log_return: bool = Field(default=True, alias="logReturn")


class RemoveTraceParams(Params):
    id: str


class ExecuteActionParams(Params):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    action: str = Field(description="Registered action name.")
    params: dict[str, Any] | None = None

    def action_params(self) -> dict[str, Any]:
        if self.params is not None:
            return self.params
        return dict(self.model_extra or {})


class FindElementParams(Params):
    test_id: str | None = Field(default=None, alias="testId")
    type: str | None = None
    text: str | None = None


class ElementParams(Params):
    test_id: str = Field(alias="testId")


class PointParams(Params):
    x: float
    y: float


class InteractionTarget(Params):
    test_id: str | None = Field(default=None, alias="testId")
    x: float | None = None
    y: float | None = None


class InteractionParams(Params):
    test_id: str | None = Field(default=None, alias="testId")
    target: InteractionTarget | None = Field(
        default=None, description="testId or x/y coordinates of the element."
    )
    action: str = Field(
        default="tap",
        validation_alias=AliasChoices("action", "type"),
        description="tap, press, input or type.",
    )
    value: str | None = Field(default=None, description="Text for input interactions.")


class NavigateParams(Params):
    route: str
    params: dict[str, Any] = Field(default_factory=dict)


class StorageParams(Params):
    key: str | None = None
    pattern: str | None = Field(default=None, description="Regex applied to keys.")


# =============================================================================
# Command table
# =============================================================================

Handler = Callable[[AppBridge, Any], Any]


@dataclass(frozen=True)
class BuiltinCommand:
    name: str
    params_model: type[Params]
    handler: Handler
    capability: str | None
    description: str


@dataclass(frozen=True)
class DynamicAction:
    name: str


ResolvedCommand = Union[BuiltinCommand, DynamicAction]

BUILTINS: dict[str, BuiltinCommand] = {}


def builtin(
    name: str,
    params_model: type[Params] = NoParams,
    capability: str | None = None,
    description: str = "",
) -> Callable[[Handler], Handler]:
    def register(handler: Handler) -> Handler:
        BUILTINS[name] = BuiltinCommand(
            name=name,
            params_model=params_model,
            handler=handler,
            capability=capability,
            description=description or (handler.__doc__ or "").strip(),
        )
        return handler

    return register


def validate_params(command: BuiltinCommand, params: Mapping[str, Any] | None) -> Params:
    try:
        return command.params_model.model_validate(dict(params or {}))
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'params'}: {err['msg']}"
            for err in e.errors()
        )
        raise InvalidParams(f"Invalid params for {command.name}: {problems}") from e


NOT_FOUND = object()


def resolve_path(value: Any, parts: list[str]) -> Any:
    """Walk nested mappings; NOT_FOUND when a step is missing or not a mapping."""
    for part in parts:
        if not isinstance(value, Mapping) or part not in value:
            return NOT_FOUND
        value = value[part]
    return value


def _parse_since(since: str | float | None) -> float | None:
    if since is None:
        return None
    if isinstance(since, (int, float)):
        return float(since)
    try:
        return datetime.fromisoformat(since.replace("Z", "+00:00")).timestamp() * 1000
    except ValueError as e:
        raise InvalidParams(f"Invalid since timestamp: {since!r}") from e


def _compile(pattern: str | None, flags: int = 0) -> re.Pattern[str] | None:
    if not pattern:
        return None
    try:
        return re.compile(pattern, flags)
    except re.error as e:
        raise InvalidParams(f"Invalid pattern {pattern!r}: {e}") from e


def _read_state(key: str, getter: Callable[[], Any]) -> Any:
    try:
        return getter()
    except Exception as e:
        logger.warning(f"State getter {key} failed: {e}")
        return None


# -----------------------------------------------------------------------------
# State & flags
# -----------------------------------------------------------------------------


@builtin(
    "get_app_state",
    AppStateParams,
    "state",
    "Retrieve the application state: full snapshot, one key, or a dotted path.",
)
def _get_app_state(app: AppBridge, params: AppStateParams) -> Any:
    path = params.path or params.key
    if path:
        parts = path.split(".") if params.path else [path]
        getter = app.state_getters.get(parts[0])
        if getter is None:
            return {"found": False, "path": path}
        try:
            root = getter()
        except Exception as e:
            raise HandlerFailure(f"State getter {parts[0]} failed: {e}") from e
        value = resolve_path(root, parts[1:])
        if value is NOT_FOUND:
            return {"found": False, "path": path}
        return value

    keys = params.keys if params.keys is not None else list(app.state_getters)
    return {
        key: _read_state(key, app.state_getters[key])
        for key in keys
        if key in app.state_getters
    }


@builtin("list_feature_flags", capability="state", description="List feature flags and their values.")
def _list_feature_flags(app: AppBridge, params: NoParams) -> dict[str, bool]:
    return dict(app.feature_flags)


@builtin(
    "toggle_feature_flag",
    ToggleFlagParams,
    "state",
    "Set a registered feature flag, or flip it when no value is given.",
)
def _toggle_feature_flag(app: AppBridge, params: ToggleFlagParams) -> dict[str, Any]:
    if params.key not in app.feature_flags:
        raise InvalidParams(f"Feature flag not registered: {params.key}")
    if params.value is None:
        new_value = not app.feature_flags[params.key]
    else:
        new_value = params.value
    app.feature_flags[params.key] = new_value
    return {"key": params.key, "value": new_value}


@builtin(
    "query_storage",
    StorageParams,
    "state",
    "Read the application's key/value storage.",
)
def _query_storage(app: AppBridge, params: StorageParams) -> dict[str, Any]:
    if params.key is not None:
        exists = params.key in app.storage
        return {
            "key": params.key,
            "value": app.storage.get(params.key) if exists else None,
            "exists": exists,
        }
    pattern = _compile(params.pattern)
    items = {
        k: v for k, v in app.storage.items() if pattern is None or pattern.search(k)
    }
    return {"storage": items, "count": len(items)}


# -----------------------------------------------------------------------------
# Device & app
# -----------------------------------------------------------------------------


@builtin("get_device_info", description="Describe the device/host the app runs on.")
def _get_device_info(app: AppBridge, params: NoParams) -> dict[str, Any]:
    return app.device_info()


@builtin("get_app_info", description="Describe the app, its version and registrations.")
def _get_app_info(app: AppBridge, params: NoParams) -> dict[str, Any]:
    return app.app_info()


# -----------------------------------------------------------------------------
# Logs
# -----------------------------------------------------------------------------


@builtin("get_logs", LogsParams, "logs", "Recent captured logs, newest first.")
def _get_logs(app: AppBridge, params: LogsParams) -> dict[str, Any]:
    min_level = 0
    if params.level:
        if params.level not in LOG_LEVELS:
            raise InvalidParams(
                f"Unknown level {params.level!r}, expected one of {', '.join(LOG_LEVELS)}"
            )
        min_level = LOG_LEVELS.index(params.level)
    pattern = _compile(params.filter, re.IGNORECASE)
    since = _parse_since(params.since)

    def keep(entry: LogEntry) -> bool:
        if entry.severity < min_level:
            return False
        if pattern is not None and not pattern.search(entry.message):
            return False
        if since is not None and entry.timestamp < since:
            return False
        return True

    logs = app.logs.query(keep, params.limit)
    return {
        "logs": [entry.to_dict() for entry in logs],
        "count": len(logs),
        "total": len(app.logs),
    }


@builtin("get_recent_errors", RecentErrorsParams, "logs", "Recent error-level logs, newest first.")
def _get_recent_errors(app: AppBridge, params: RecentErrorsParams) -> dict[str, Any]:
    errors = app.logs.query(lambda e: e.level == "error", params.limit)
    return {
        "errors": [entry.to_dict() for entry in errors],
        "count": len(errors),
        "total": app.logs.count(lambda e: e.level == "error"),
    }


# -----------------------------------------------------------------------------
# Network
# -----------------------------------------------------------------------------


@builtin(
    "list_network_requests",
    NetworkRequestsParams,
    "network",
    "Captured network requests (real and mocked), newest first.",
)
def _list_network_requests(app: AppBridge, params: NetworkRequestsParams) -> dict[str, Any]:
    url_pattern = _compile(params.url)
    method = params.method.upper() if params.method else None

    def keep(entry: NetworkEntry) -> bool:
        if url_pattern is not None and not url_pattern.search(entry.url):
            return False
        if method is not None and entry.method.upper() != method:
            return False
        if params.status_code is not None and entry.status_code != params.status_code:
            return False
        return True

    requests = app.network.query(keep, params.limit)
    return {
        "requests": [entry.to_dict() for entry in requests],
        "count": len(requests),
        "total": len(app.network),
    }


@builtin(
    "mock_network_request",
    MockRequestParams,
    "network",
    "Serve a canned response for requests whose URL matches a pattern.",
)
def _mock_network_request(app: AppBridge, params: MockRequestParams) -> dict[str, Any]:
    rule = app.mocks.register(
        params.url_pattern,
        status_code=params.status_code,
        body=params.body,
        headers=params.headers,
        delay_ms=params.delay,
    )
    return {"success": True, "mockId": rule.id, "urlPattern": rule.url_pattern}


@builtin(
    "clear_network_mocks",
    ClearMocksParams,
    "network",
    "Remove one mock by id, or all mocks.",
)
def _clear_network_mocks(app: AppBridge, params: ClearMocksParams) -> dict[str, Any]:
    cleared = app.mocks.clear(params.mock_id)
    return {"success": True, "clearedCount": cleared, "remainingMocks": len(app.mocks)}


@builtin("list_network_mocks", capability="network", description="List active mocks in match order.")
def _list_network_mocks(app: AppBridge, params: NoParams) -> dict[str, Any]:
    rules = app.mocks.rules()
    return {"mocks": [rule.to_dict() for rule in rules], "count": len(rules)}


# Headers httpx derives from the new request.
_REPLAY_SKIP_HEADERS = frozenset({"host", "content-length", "transfer-encoding"})


@builtin(
    "replay_network_request",
    ReplayParams,
    "network",
    "Send a captured request again, optionally with other headers or body.",
)
async def _replay_network_request(app: AppBridge, params: ReplayParams) -> dict[str, Any]:
    found = app.network.query(lambda e: e.id == params.request_id, 1)
    if not found:
        return {"success": False, "error": "Request not found", "requestId": params.request_id}
    original = found[0]

    changes = params.modifications
    if changes.headers is not None:
        headers = dict(changes.headers)
    else:
        headers = {
            k: v for k, v in original.request_headers.items()
            if k.lower() not in _REPLAY_SKIP_HEADERS
        }
    body = original.request_body if changes.body is None else changes.body
    content: dict[str, Any] = {}
    if isinstance(body, (str, bytes)):
        content["content"] = body
    elif body is not None:
        content["json"] = body

    try:
        async with app.http_client() as client:
            response = await client.request(
                original.method, original.url, headers=headers, **content
            )
    except httpx.HTTPError as e:
        return {
            "success": False,
            "error": str(e) or type(e).__name__,
            "requestId": params.request_id,
        }

    try:
        response_body = response.json()
    except ValueError:
        response_body = response.text
    return {
        "success": True,
        "requestId": params.request_id,
        "status": response.status_code,
        "body": response_body,
    }


# -----------------------------------------------------------------------------
# Tracing
# -----------------------------------------------------------------------------


@builtin("get_traces", TracesParams, "tracing", "Completed function traces, newest first.")
def _get_traces(app: AppBridge, params: TracesParams) -> dict[str, Any]:
    traces = app.tracer.query(
        limit=params.limit,
        name=params.name,
        min_duration=params.min_duration,
        since=params.since,
        in_progress=params.in_progress,
    )
    return {"traces": [t.to_dict() for t in traces], "count": len(traces)}


@builtin("get_active_traces", capability="tracing", description="Traces still running.")
def _get_active_traces(app: AppBridge, params: NoParams) -> dict[str, Any]:
    traces = app.tracer.active()
    return {"traces": [t.to_dict() for t in traces], "count": len(traces)}


@builtin("clear_traces", capability="tracing", description="Drop trace history and active traces.")
def _clear_traces(app: AppBridge, params: NoParams) -> dict[str, Any]:
    return {"success": True, "clearedCount": app.tracer.clear()}


@builtin(
    "inject_trace",
    InjectTraceParams,
    "tracing",
    "Only record traced functions matching a wildcard pattern.",
)
def _inject_trace(app: AppBridge, params: InjectTraceParams) -> dict[str, Any]:
    injected = app.tracer.inject(params.pattern, params.log_args, params.log_return)
    return {"success": True, "id": injected.id, "pattern": injected.pattern}


@builtin("remove_trace", RemoveTraceParams, "tracing", "Remove an injected trace by id.")
def _remove_trace(app: AppBridge, params: RemoveTraceParams) -> dict[str, Any]:
    return {"success": app.tracer.remove_injected(params.id)}


@builtin("list_injected_traces", capability="tracing", description="List injected trace patterns.")
def _list_injected_traces(app: AppBridge, params: NoParams) -> dict[str, Any]:
    injected = app.tracer.injected()
    return {"traces": [t.to_dict() for t in injected], "count": len(injected)}


@builtin("clear_injected_traces", capability="tracing", description="Remove all injected traces.")
def _clear_injected_traces(app: AppBridge, params: NoParams) -> dict[str, Any]:
    return {"success": True, "clearedCount": app.tracer.clear_injected()}


# -----------------------------------------------------------------------------
# Actions
# -----------------------------------------------------------------------------


@builtin("list_actions", capability="actions", description="Names of registered actions.")
def _list_actions(app: AppBridge, params: NoParams) -> dict[str, Any]:
    return {"actions": sorted(app.actions)}


@builtin(
    "execute_action",
    ExecuteActionParams,
    "actions",
    "Run a registered action with params.",
)
async def _execute_action(app: AppBridge, params: ExecuteActionParams) -> dict[str, Any]:
    if params.action not in app.actions:
        raise InvalidParams(f"Action not registered: {params.action}")
    result = await app.execute_action(params.action, params.action_params())
    return {"success": True, "action": params.action, "result": result}


# -----------------------------------------------------------------------------
# UI
# -----------------------------------------------------------------------------


@builtin("get_component_tree", capability="ui", description="Registered UI components.")
def _get_component_tree(app: AppBridge, params: NoParams) -> dict[str, Any]:
    components = [c.to_dict() for c in app.components.values()]
    return {"components": components, "count": len(components)}


@builtin("get_layout_tree", capability="ui", description="Components with bounds, in reading order.")
def _get_layout_tree(app: AppBridge, params: NoParams) -> dict[str, Any]:
    laid_out = [c for c in app.components.values() if c.bounds is not None]
    laid_out.sort(key=lambda c: (c.bounds.y, c.bounds.x))  # type: ignore[union-attr]
    elements = [
        {"testId": c.test_id, "type": c.type, "bounds": c.bounds.to_dict(), "visible": c.visible}  # type: ignore[union-attr]
        for c in laid_out
    ]
    return {"elements": elements, "count": len(elements)}


@builtin(
    "find_element",
    FindElementParams,
    "ui",
    "Find components by testId, type (substring) or text (substring).",
)
def _find_element(app: AppBridge, params: FindElementParams) -> dict[str, Any]:
    if params.test_id is not None:
        component = app.components.get(params.test_id)
        elements = [component.to_dict()] if component else []
    else:
        elements = [c.to_dict() for c in app.components.values()]
        if params.type:
            wanted = params.type.lower()
            elements = [e for e in elements if wanted in e["type"].lower()]
        if params.text:
            wanted = params.text.lower()
            elements = [e for e in elements if wanted in (e["text"] or "").lower()]
    return {"elements": elements, "count": len(elements)}


@builtin("get_element_text", ElementParams, "ui", "Text of a registered component.")
def _get_element_text(app: AppBridge, params: ElementParams) -> dict[str, Any]:
    component = app.components.get(params.test_id)
    if component is None:
        return {"testId": params.test_id, "text": None, "found": False}
    return {"testId": params.test_id, "text": component.text(), "found": True}


@builtin(
    "inspect_element",
    PointParams,
    "ui",
    "The component whose bounds contain a screen point.",
)
def _inspect_element(app: AppBridge, params: PointParams) -> dict[str, Any]:
    component = app.component_at(params.x, params.y)
    if component is None:
        return {"found": False, "x": params.x, "y": params.y}
    return {"found": True, **component.to_dict(), "interactive": component.interactive}


def _interaction_target(app: AppBridge, params: InteractionParams) -> Component | None:
    target = params.target or InteractionTarget()
    test_id = params.test_id or target.test_id
    if test_id:
        component = app.components.get(test_id)
        if component is None:
            raise InvalidParams(f"Component not registered: {test_id}")
        return component
    if target.x is not None and target.y is not None:
        return app.component_at(target.x, target.y)
    raise InvalidParams("simulate_interaction needs a testId or x/y coordinates")


@builtin(
    "simulate_interaction",
    InteractionParams,
    "ui",
    "Tap a component or type text into it, by testId or by coordinates.",
)
async def _simulate_interaction(app: AppBridge, params: InteractionParams) -> dict[str, Any]:
    component = _interaction_target(app, params)
    if component is None:
        target = params.target or InteractionTarget()
        return {
            "success": False,
            "error": "Element not found",
            "target": target.model_dump(by_alias=True, exclude_none=True),
        }

    action = params.action.lower()
    if action in ("tap", "click", "press"):
        if component.on_tap is None:
            return {
                "success": False,
                "testId": component.test_id,
                "action": action,
                "error": "Element is not pressable",
            }
        await maybe_await(component.on_tap())
        return {"success": True, "testId": component.test_id, "action": "tap"}

    if action in ("input", "type"):
        if component.on_change_text is None or params.value is None:
            return {
                "success": False,
                "testId": component.test_id,
                "action": action,
                "error": "Element does not accept text input",
            }
        await maybe_await(component.on_change_text(params.value))
        return {
            "success": True,
            "testId": component.test_id,
            "action": "input",
            "value": params.value,
        }

    return {
        "success": False,
        "testId": component.test_id,
        "error": f"Unknown interaction type: {action}",
    }


# -----------------------------------------------------------------------------
# Navigation
# -----------------------------------------------------------------------------


@builtin("navigate_to", NavigateParams, "navigation", "Navigate the app to a route.")
async def _navigate_to(app: AppBridge, params: NavigateParams) -> dict[str, Any]:
    if app.navigator is not None:
        await maybe_await(app.navigator(params.route, params.params))
    elif "navigate" in app.actions:
        await app.execute_action("navigate", {"route": params.route, **params.params})
    else:
        raise InvalidParams("No navigator registered")
    app.set_navigation_state(params.route, params.params)
    return {"success": True, "route": params.route}


@builtin("get_navigation_state", capability="navigation", description="Current route and history.")
def _get_navigation_state(app: AppBridge, params: NoParams) -> dict[str, Any]:
    return {
        "currentRoute": app.current_route,
        "params": app.route_params,
        "history": [
            {"route": e.route, "params": e.params, "timestamp": e.to_dict()["time"]}
            for e in app.navigation_history.snapshot()
        ],
    }


# =============================================================================
# Router
# =============================================================================


class CommandRouter:
    """Resolves and runs commands against one AppBridge."""

    def __init__(self, app: AppBridge) -> None:
        self.app = app

    def resolve(self, method: str) -> ResolvedCommand:
        command = BUILTINS.get(method)
        if command is not None:
            return command
        if method in self.app.actions:
            return DynamicAction(method)
        raise UnknownMethod(method)

    async def dispatch(self, method: str, params: Mapping[str, Any] | None = None) -> Any:
        resolved = self.resolve(method)
        if isinstance(resolved, DynamicAction):
            return await self.app.execute_action(resolved.name, dict(params or {}))
        validated = validate_params(resolved, params)
        return await maybe_await(resolved.handler(self.app, validated))

    async def handle(self, command: Command) -> Response:
        try:
            result = await self.dispatch(command.method, command.params)
        except BridgeError as e:
            logger.info(f"Command {command.method} ({command.id}) failed: {e.message}")
            return Response(id=command.id, error=e.message)
        except Exception as e:
            logger.exception(f"Handler for {command.method} raised")
            failure = HandlerFailure(str(e) or type(e).__name__)
            return Response(id=command.id, error=failure.message)
        return Response(id=command.id, result=result)
