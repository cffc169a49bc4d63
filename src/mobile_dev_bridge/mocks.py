"""Registration-ordered mock rules for outgoing requests."""

from __future__ import annotations

import itertools
import re
import threading
from dataclasses import dataclass, field
from typing import Any

from .capture import now_ms
from .errors import InvalidParams


@dataclass
class MockRule:
    id: str
    url_pattern: str
    pattern: re.Pattern[str] = field(repr=False)
    status_code: int = 200
    headers: dict[str, str] = field(default_factory=dict)
    body: Any = None
    delay_ms: float = 0
    created_at: float = field(default_factory=now_ms)
    hits: int = 0

    def matches(self, url: str) -> bool:
        return self.pattern.search(url) is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "urlPattern": self.url_pattern,
            "statusCode": self.status_code,
            "headers": dict(self.headers),
            "body": self.body,
            "delay": self.delay_ms,
            "hits": self.hits,
        }


class MockMatcher:
    """Ordered list of mock rules; the first rule whose pattern matches wins."""

    def __init__(self) -> None:
        self._rules: list[MockRule] = []
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._rules)

    def register(
        self,
        url_pattern: str,
        status_code: int = 200,
        body: Any = None,
        headers: dict[str, str] | None = None,
        delay_ms: float = 0,
    ) -> MockRule:
        try:
            compiled = re.compile(url_pattern)
        except re.error as e:
            raise InvalidParams(f"Invalid urlPattern {url_pattern!r}: {e}") from e
        rule = MockRule(
            id=f"mock_{next(self._ids)}",
            url_pattern=url_pattern,
            pattern=compiled,
            status_code=status_code,
            headers=dict(headers or {}),
            body=body,
            delay_ms=max(0, delay_ms),
        )
        with self._lock:
            self._rules.append(rule)
        return rule

    def match(self, url: str) -> MockRule | None:
        with self._lock:
            rules = list(self._rules)
        for rule in rules:
            if rule.matches(url):
                rule.hits += 1
                return rule
        return None

    def clear(self, rule_id: str | None = None) -> int:
        """Remove one rule by id, or every rule when no id is given."""
        with self._lock:
            if rule_id is None:
                removed = len(self._rules)
                self._rules.clear()
                return removed
            before = len(self._rules)
            self._rules = [r for r in self._rules if r.id != rule_id]
            return before - len(self._rules)

    def rules(self) -> list[MockRule]:
        with self._lock:
            return list(self._rules)
