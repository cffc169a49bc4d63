"""Mobile dev bridge - lets AI assistants inspect and control running apps."""

from .app import AppBridge, Bounds, Component
from .bridge import ControllerBridge
from .client import BridgeClient
from .config import BridgeConfig
from .errors import (
    BridgeError,
    HandlerFailure,
    InvalidParams,
    NoDeviceConnected,
    RequestTimeout,
    SessionClosed,
    TooManyPendingRequests,
    UnknownMethod,
)
from .reconnect import ConnectionState

__version__ = "0.1.0"

__all__ = [
    "AppBridge",
    "Bounds",
    "BridgeClient",
    "BridgeConfig",
    "BridgeError",
    "Component",
    "ConnectionState",
    "ControllerBridge",
    "HandlerFailure",
    "InvalidParams",
    "NoDeviceConnected",
    "RequestTimeout",
    "SessionClosed",
    "TooManyPendingRequests",
    "UnknownMethod",
]
