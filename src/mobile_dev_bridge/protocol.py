"""Wire format for bridge frames.

Every frame is a JSON object sent as one websocket text message:

- handshake (session -> controller):
  ``{"type": "handshake", "platform", "appName", "appVersion", "deviceId", "capabilities"}``
- handshake_ack (controller -> session):
  ``{"type": "handshake_ack", "sessionId", "deviceId", "serverVersion"}``
- command (either direction): ``{"id", "method", "params"?}``. The ``type``
  field is optional; the presence of ``method`` identifies a command.
- response: ``{"type": "response", "id", "result"?, "error"?}``
- event (session -> controller, unsolicited): ``{"type": "event", "event", "data"}``

Malformed frames are logged and dropped; decoding never raises.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Union

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "0.1.0"

_HANDSHAKE_KEYS = {
    "type",
    "platform",
    "appName",
    "appVersion",
    "deviceId",
    "capabilities",
}


@dataclass
class Handshake:
    platform: str
    device_id: str
    app_name: str = "Unknown"
    app_version: str = "0.0.0"
    capabilities: list[str] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = dict(self.extra)
        data.update(
            {
                "type": "handshake",
                "platform": self.platform,
                "appName": self.app_name,
                "appVersion": self.app_version,
                "deviceId": self.device_id,
                "capabilities": list(self.capabilities),
            }
        )
        return data


@dataclass
class HandshakeAck:
    session_id: str
    device_id: str
    server_version: str = PROTOCOL_VERSION

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": "handshake_ack",
            "sessionId": self.session_id,
            "deviceId": self.device_id,
            "serverVersion": self.server_version,
        }


@dataclass
class Command:
    id: str
    method: str
    params: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"id": self.id, "method": self.method}
        if self.params:
            data["params"] = self.params
        return data


@dataclass
class Response:
    id: str
    result: Any = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"type": "response", "id": self.id}
        if self.error is not None:
            data["error"] = self.error
        else:
            data["result"] = self.result
        return data


@dataclass
class Event:
    event: str
    data: Any = None

    def to_dict(self) -> dict[str, Any]:
        return {"type": "event", "event": self.event, "data": self.data}


Frame = Union[Handshake, HandshakeAck, Command, Response, Event]


def _normalize_error(error: Any) -> str | None:
    """Reduce an error payload to a message string.

    Older SDKs send JSON-RPC style ``{"code": ..., "message": ...}`` objects.
    """
    if error is None:
        return None
    if isinstance(error, dict):
        message = error.get("message")
        if message:
            return str(message)
        return json.dumps(error, default=str)
    return str(error)


def _frame_id(raw_id: Any) -> str | None:
    if raw_id is None or isinstance(raw_id, bool):
        return None
    if isinstance(raw_id, (str, int)):
        return str(raw_id)
    return None


def decode_frame(data: dict[str, Any]) -> Frame | None:
    """Convert a decoded JSON object into a frame, or None if malformed."""
    frame_type = data.get("type")

    if frame_type == "handshake":
        platform = data.get("platform")
        device_id = data.get("deviceId")
        capabilities = data.get("capabilities") or []
        if not isinstance(capabilities, list):
            capabilities = []
        return Handshake(
            platform=str(platform) if platform else "",
            device_id=str(device_id) if device_id else "",
            app_name=str(data.get("appName") or "Unknown"),
            app_version=str(data.get("appVersion") or "0.0.0"),
            capabilities=[str(c) for c in capabilities],
            extra={k: v for k, v in data.items() if k not in _HANDSHAKE_KEYS},
        )

    if frame_type == "handshake_ack":
        return HandshakeAck(
            session_id=str(data.get("sessionId", "")),
            device_id=str(data.get("deviceId", "")),
            server_version=str(data.get("serverVersion", PROTOCOL_VERSION)),
        )

    if frame_type == "event":
        name = data.get("event")
        if not name:
            logger.warning("Dropping event frame without a name")
            return None
        return Event(event=str(name), data=data.get("data"))

    if "method" in data and frame_type in (None, "command", "request"):
        frame_id = _frame_id(data.get("id"))
        method = data.get("method")
        if frame_id is None or not isinstance(method, str) or not method:
            logger.warning(f"Dropping command frame without id/method: {data!r:.200}")
            return None
        params = data.get("params") or {}
        if not isinstance(params, dict):
            logger.warning(f"Dropping command {method} with non-object params")
            return None
        return Command(id=frame_id, method=method, params=params)

    if frame_type in (None, "response"):
        frame_id = _frame_id(data.get("id"))
        if frame_id is None:
            logger.warning(f"Dropping response frame without id: {data!r:.200}")
            return None
        return Response(
            id=frame_id,
            result=data.get("result"),
            error=_normalize_error(data.get("error")),
        )

    logger.warning(f"Dropping frame of unknown type {frame_type!r}")
    return None


def parse_frame(raw: str | bytes) -> Frame | None:
    """Parse a raw websocket message into a frame.

    Returns None for anything that is not a well-formed frame.
    """
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as e:
        logger.warning(f"Dropping unparseable frame: {e}")
        return None
    if not isinstance(data, dict):
        logger.warning(f"Dropping non-object frame of type {type(data).__name__}")
        return None
    return decode_frame(data)


def encode_frame(frame: Frame) -> str:
    """Serialize a frame; values JSON cannot represent are stringified."""
    return json.dumps(frame.to_dict(), default=str)
