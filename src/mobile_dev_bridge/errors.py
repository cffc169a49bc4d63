"""Error taxonomy shared by both sides of the bridge."""

from __future__ import annotations


class BridgeError(Exception):
    """Base class for every error that crosses the Router/Correlator boundary.

    The ``code`` is stable and may be relied on by callers; the message is the
    human readable payload that ends up in a response's ``error`` field.
    """

    code = "BridgeError"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.code)
        self.message = message or self.code

    def to_dict(self) -> dict[str, str]:
        return {"code": self.code, "message": self.message}


class UnknownMethod(BridgeError):
    code = "UnknownMethod"

    def __init__(self, method: str) -> None:
        super().__init__(f"Unknown method: {method}")
        self.method = method


class InvalidParams(BridgeError):
    code = "InvalidParams"


class NoDeviceConnected(BridgeError):
    code = "NoDeviceConnected"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(
            message
            or "No device connected. Please ensure your app is running with the bridge SDK."
        )


class SessionClosed(BridgeError):
    code = "SessionClosed"


class RequestTimeout(BridgeError):
    code = "Timeout"

    def __init__(self, method: str, timeout: float) -> None:
        super().__init__(f"Request timed out after {timeout}s ({method})")
        self.method = method
        self.timeout = timeout


class HandlerFailure(BridgeError):
    code = "HandlerFailure"


class TooManyPendingRequests(BridgeError):
    code = "TooManyPendingRequests"
