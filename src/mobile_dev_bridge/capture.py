"""Bounded capture buffers for logs, network traffic and traces."""

from __future__ import annotations

import threading
import time
from collections import deque
from collections.abc import Callable, Iterator
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Generic, TypeVar

DEFAULT_LOG_CAPACITY = 1000
DEFAULT_NETWORK_CAPACITY = 200
DEFAULT_TRACE_CAPACITY = 1000

LOG_LEVELS = ("debug", "info", "warn", "error")


def now_ms() -> float:
    """Wall clock in epoch milliseconds."""
    return time.time() * 1000


def iso_timestamp(ms: float) -> str:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).isoformat()


@dataclass
class CapturedEntry:
    """Common fields of every captured entry.

    ``seq`` is assigned by the buffer on insertion.
    """

    timestamp: float = field(default_factory=now_ms, kw_only=True)
    seq: int = field(default=0, kw_only=True)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["time"] = iso_timestamp(self.timestamp)
        return data


@dataclass
class LogEntry(CapturedEntry):
    level: str
    message: str
    logger: str = ""

    @property
    def severity(self) -> int:
        try:
            return LOG_LEVELS.index(self.level)
        except ValueError:
            return 0


@dataclass
class NetworkEntry(CapturedEntry):
    id: str
    url: str
    method: str = "GET"
    request_headers: dict[str, str] = field(default_factory=dict)
    request_body: Any = None
    status_code: int | None = None
    response_headers: dict[str, str] = field(default_factory=dict)
    response_body: Any = None
    duration_ms: float | None = None
    error: str | None = None
    mocked: bool = False
    mock_id: str | None = None


@dataclass
class TraceEntry(CapturedEntry):
    id: str
    name: str
    args: Any = None
    file: str | None = None
    started_at: float = field(default_factory=now_ms)
    completed: bool = False
    duration_ms: float | None = None
    return_value: Any = None
    error: str | None = None


T = TypeVar("T", bound=CapturedEntry)


class CaptureBuffer(Generic[T]):
    """FIFO ring buffer with a fixed capacity.

    Pushing past capacity evicts the oldest entry. Reads never reorder or
    remove entries. A lock keeps eviction and insertion atomic, since the
    embedding application may push from worker threads.
    """

    def __init__(self, capacity: int, name: str = "buffer") -> None:
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self.name = name
        self._capacity = capacity
        self._entries: deque[T] = deque()
        self._lock = threading.Lock()
        self._next_seq = 0
        self._dropped = 0

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def total_pushed(self) -> int:
        return self._next_seq

    @property
    def dropped(self) -> int:
        return self._dropped

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[T]:
        return iter(self.snapshot())

    def push(self, entry: T) -> T:
        with self._lock:
            self._next_seq += 1
            entry.seq = self._next_seq
            self._entries.append(entry)
            if len(self._entries) > self._capacity:
                self._entries.popleft()
                self._dropped += 1
        return entry

    def snapshot(self) -> list[T]:
        """Copy of the entries, oldest first."""
        with self._lock:
            return list(self._entries)

    def query(
        self,
        predicate: Callable[[T], bool] | None = None,
        limit: int | None = None,
    ) -> list[T]:
        """Return at most ``limit`` matching entries, newest first."""
        if limit is not None and limit <= 0:
            return []
        matches: list[T] = []
        for entry in reversed(self.snapshot()):
            if predicate is not None and not predicate(entry):
                continue
            matches.append(entry)
            if limit is not None and len(matches) >= limit:
                break
        return matches

    def count(self, predicate: Callable[[T], bool] | None = None) -> int:
        if predicate is None:
            return len(self)
        return sum(1 for entry in self.snapshot() if predicate(entry))

    def clear(self) -> int:
        with self._lock:
            removed = len(self._entries)
            self._entries.clear()
        return removed
