"""Function execution tracing.

Traced calls are recorded as active entries while running and move into a
bounded history once they return or raise. The controller can narrow what
gets recorded at runtime by injecting wildcard patterns.
"""

from __future__ import annotations

import functools
import inspect
import itertools
import json
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from fnmatch import fnmatchcase
from typing import Any, TypeVar

from .capture import DEFAULT_TRACE_CAPACITY, CaptureBuffer, TraceEntry, now_ms

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])

MAX_SNAPSHOT_CHARS = 2000


def snapshot_value(value: Any, max_chars: int = MAX_SNAPSHOT_CHARS) -> Any:
    """Return a JSON-safe copy of ``value``, stringified when too large."""
    try:
        encoded = json.dumps(value, default=repr)
    except (TypeError, ValueError):
        return repr(value)[:max_chars]
    if len(encoded) > max_chars:
        return f"{encoded[:max_chars]}... [{len(encoded)} chars total]"
    return json.loads(encoded)


@dataclass
class InjectedTrace:
    id: str
    pattern: str
    log_args: bool = True
    log_return: bool = True
    created_at: float = field(default_factory=now_ms)

    def matches(self, name: str) -> bool:
        return fnmatchcase(name, self.pattern)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "pattern": self.pattern,
            "logArgs": self.log_args,
            "logReturn": self.log_return,
            "createdAt": self.created_at,
        }


class Tracer:
    def __init__(self, capacity: int = DEFAULT_TRACE_CAPACITY) -> None:
        self.history: CaptureBuffer[TraceEntry] = CaptureBuffer(capacity, name="traces")
        self._active: dict[str, TraceEntry] = {}
        self._injected: dict[str, InjectedTrace] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    # -------------------------------------------------------------------------
    # Recording
    # -------------------------------------------------------------------------

    def start(self, name: str, args: Any = None, file: str | None = None) -> str:
        trace_id = f"trace_{next(self._ids)}"
        entry = TraceEntry(id=trace_id, name=name, args=args, file=file)
        with self._lock:
            self._active[trace_id] = entry
        return trace_id

    def finish(
        self, trace_id: str, return_value: Any = None, error: str | None = None
    ) -> TraceEntry | None:
        with self._lock:
            entry = self._active.pop(trace_id, None)
        if entry is None:
            return None
        entry.completed = True
        entry.duration_ms = now_ms() - entry.started_at
        entry.return_value = return_value
        entry.error = error
        return self.history.push(entry)

    def active(self) -> list[TraceEntry]:
        """Running traces, newest first."""
        with self._lock:
            entries = list(self._active.values())
        return sorted(entries, key=lambda e: e.started_at, reverse=True)

    def query(
        self,
        limit: int = 100,
        name: str | None = None,
        min_duration: float | None = None,
        since: float | None = None,
        in_progress: bool = False,
    ) -> list[TraceEntry]:
        """Filter completed traces, or running ones when ``in_progress``.

        A running trace is measured by how long it has been running so far.
        """
        current = now_ms()

        def keep(entry: TraceEntry) -> bool:
            if name and not fnmatchcase(entry.name, name):
                return False
            if min_duration is not None:
                duration = entry.duration_ms
                if duration is None:
                    duration = current - entry.started_at
                if duration < min_duration:
                    return False
            if since is not None and entry.started_at < since:
                return False
            return True

        if in_progress:
            return [entry for entry in self.active() if keep(entry)][:limit]
        return self.history.query(keep, limit)

    def clear(self) -> int:
        with self._lock:
            active = len(self._active)
            self._active.clear()
        return self.history.clear() + active

    # -------------------------------------------------------------------------
    # Injection
    # -------------------------------------------------------------------------

    def inject(
        self, pattern: str, log_args: bool = True, log_return: bool = True
    ) -> InjectedTrace:
        injected = InjectedTrace(
            id=f"inject_{next(self._ids)}",
            pattern=pattern,
            log_args=log_args,
            log_return=log_return,
        )
        with self._lock:
            self._injected[injected.id] = injected
        logger.info(f"Injected trace {injected.id} for {pattern}")
        return injected

    def remove_injected(self, injected_id: str) -> bool:
        with self._lock:
            return self._injected.pop(injected_id, None) is not None

    def injected(self) -> list[InjectedTrace]:
        with self._lock:
            return list(self._injected.values())

    def clear_injected(self) -> int:
        with self._lock:
            count = len(self._injected)
            self._injected.clear()
        return count

    def _selection(self, name: str) -> tuple[bool, bool, bool]:
        """Decide (record, log_args, log_return) for a traced call."""
        injected = self.injected()
        if not injected:
            return True, True, True
        for rule in injected:
            if rule.matches(name):
                return True, rule.log_args, rule.log_return
        return False, False, False

    # -------------------------------------------------------------------------
    # Decorator
    # -------------------------------------------------------------------------

    def traced(self, name: str | None = None) -> Callable[[F], F]:
        """Record calls of the decorated function (sync or async)."""

        def decorator(func: F) -> F:
            trace_name = name or func.__qualname__
            try:
                source = inspect.getsourcefile(func)
            except TypeError:
                source = None

            def begin(args: tuple[Any, ...], kwargs: dict[str, Any]) -> tuple[str | None, bool]:
                record, log_args, log_return = self._selection(trace_name)
                if not record:
                    return None, False
                snapshot = None
                if log_args:
                    snapshot = snapshot_value({"args": list(args), "kwargs": kwargs})
                return self.start(trace_name, snapshot, source), log_return

            if inspect.iscoroutinefunction(func):

                @functools.wraps(func)
                async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
                    trace_id, log_return = begin(args, kwargs)
                    try:
                        result = await func(*args, **kwargs)
                    except Exception as e:
                        if trace_id:
                            self.finish(trace_id, error=str(e) or type(e).__name__)
                        raise
                    if trace_id:
                        self.finish(
                            trace_id, snapshot_value(result) if log_return else None
                        )
                    return result

                return async_wrapper  # type: ignore[return-value]

            @functools.wraps(func)
            def wrapper(*args: Any, **kwargs: Any) -> Any:
                trace_id, log_return = begin(args, kwargs)
                try:
                    result = func(*args, **kwargs)
                except Exception as e:
                    if trace_id:
                        self.finish(trace_id, error=str(e) or type(e).__name__)
                    raise
                if trace_id:
                    self.finish(trace_id, snapshot_value(result) if log_return else None)
                return result

            return wrapper  # type: ignore[return-value]

        return decorator
