"""Feed stdlib logging records into a capture buffer."""

from __future__ import annotations

import logging

from .capture import CaptureBuffer, LogEntry


def level_name(levelno: int) -> str:
    if levelno >= logging.ERROR:
        return "error"
    if levelno >= logging.WARNING:
        return "warn"
    if levelno >= logging.INFO:
        return "info"
    return "debug"


class CaptureHandler(logging.Handler):
    """Logging handler that records every emitted record as a LogEntry."""

    def __init__(self, buffer: CaptureBuffer[LogEntry], level: int = logging.DEBUG) -> None:
        super().__init__(level)
        self.buffer = buffer

    def emit(self, record: logging.LogRecord) -> None:
        try:
            message = record.getMessage()
            if record.exc_info and record.exc_info[1] is not None:
                message = f"{message}: {record.exc_info[1]!r}"
            self.buffer.push(
                LogEntry(
                    level=level_name(record.levelno),
                    message=message,
                    logger=record.name,
                    timestamp=record.created * 1000,
                )
            )
        except Exception:
            self.handleError(record)
