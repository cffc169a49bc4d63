"""Tests for capture buffers, mock rules and log capture."""

from __future__ import annotations

import logging

import pytest  # type: ignore[import-not-found]

from mobile_dev_bridge.app import AppBridge
from mobile_dev_bridge.capture import CaptureBuffer, LogEntry
from mobile_dev_bridge.errors import InvalidParams
from mobile_dev_bridge.logs import level_name
from mobile_dev_bridge.mocks import MockMatcher


def _log(message: str, level: str = "info") -> LogEntry:
    return LogEntry(level=level, message=message)


# =============================================================================
# CaptureBuffer
# =============================================================================


class TestCaptureBuffer:
    def test_rejects_zero_capacity(self) -> None:
        with pytest.raises(ValueError):
            CaptureBuffer(0)

    def test_evicts_oldest_past_capacity(self) -> None:
        buffer: CaptureBuffer[LogEntry] = CaptureBuffer(3)
        for i in range(4):
            buffer.push(_log(f"m{i}"))
        assert len(buffer) == 3
        assert [e.message for e in buffer.snapshot()] == ["m1", "m2", "m3"]
        assert buffer.dropped == 1
        assert buffer.total_pushed == 4

    def test_query_newest_first_with_limit(self) -> None:
        buffer: CaptureBuffer[LogEntry] = CaptureBuffer(10)
        for i in range(5):
            buffer.push(_log(f"m{i}"))
        assert [e.message for e in buffer.query(limit=2)] == ["m4", "m3"]

    def test_query_applies_predicate_before_limit(self) -> None:
        buffer: CaptureBuffer[LogEntry] = CaptureBuffer(10)
        for i in range(6):
            buffer.push(_log(f"m{i}", "error" if i % 2 else "info"))
        errors = buffer.query(lambda e: e.level == "error", limit=2)
        assert [e.message for e in errors] == ["m5", "m3"]

    def test_query_does_not_mutate(self) -> None:
        buffer: CaptureBuffer[LogEntry] = CaptureBuffer(10)
        buffer.push(_log("a"))
        buffer.query()
        buffer.query(limit=1)
        assert len(buffer) == 1

    def test_non_positive_limit_returns_nothing(self) -> None:
        buffer: CaptureBuffer[LogEntry] = CaptureBuffer(10)
        buffer.push(_log("a"))
        assert buffer.query(limit=0) == []

    def test_seq_is_never_reused(self) -> None:
        buffer: CaptureBuffer[LogEntry] = CaptureBuffer(2)
        first = buffer.push(_log("a"))
        buffer.clear()
        second = buffer.push(_log("b"))
        assert second.seq > first.seq

    def test_clear_returns_removed_count(self) -> None:
        buffer: CaptureBuffer[LogEntry] = CaptureBuffer(5)
        buffer.push(_log("a"))
        buffer.push(_log("b"))
        assert buffer.clear() == 2
        assert len(buffer) == 0

    def test_entry_dict_has_iso_time(self) -> None:
        entry = _log("a")
        entry.timestamp = 0
        data = entry.to_dict()
        assert data["time"].startswith("1970-01-01T00:00:00")
        assert data["message"] == "a"


# =============================================================================
# MockMatcher
# =============================================================================


class TestMockMatcher:
    def test_first_registered_match_wins(self) -> None:
        matcher = MockMatcher()
        a = matcher.register(r"/api/users", status_code=200)
        b = matcher.register(r"/api/.*", status_code=500)
        rule = matcher.match("https://example.test/api/users/1")
        assert rule is a
        assert rule.hits == 1
        assert matcher.match("https://example.test/api/orders") is b

    def test_clearing_first_rule_exposes_second(self) -> None:
        matcher = MockMatcher()
        a = matcher.register(r"/api/users")
        b = matcher.register(r"/api/.*")
        assert matcher.clear(a.id) == 1
        assert matcher.match("https://example.test/api/users/1") is b

    def test_clear_unknown_id_removes_nothing(self) -> None:
        matcher = MockMatcher()
        matcher.register("x")
        assert matcher.clear("mock_999") == 0
        assert len(matcher) == 1

    def test_clear_all(self) -> None:
        matcher = MockMatcher()
        matcher.register("x")
        matcher.register("y")
        assert matcher.clear() == 2
        assert matcher.match("xy") is None

    def test_ids_are_sequential(self) -> None:
        matcher = MockMatcher()
        assert matcher.register("x").id == "mock_1"
        assert matcher.register("y").id == "mock_2"

    def test_invalid_pattern_rejected(self) -> None:
        matcher = MockMatcher()
        with pytest.raises(InvalidParams):
            matcher.register("(unclosed")
        assert len(matcher) == 0


# =============================================================================
# Log capture
# =============================================================================


class TestLogCapture:
    def test_level_names(self) -> None:
        assert level_name(logging.DEBUG) == "debug"
        assert level_name(logging.INFO) == "info"
        assert level_name(logging.WARNING) == "warn"
        assert level_name(logging.CRITICAL) == "error"

    def test_records_land_in_log_buffer(self) -> None:
        app = AppBridge()
        target = logging.getLogger("tests.capture.app")
        target.setLevel(logging.DEBUG)
        app.capture_logs(target)
        try:
            target.info("cart loaded")
            target.error("payment failed: %s", "declined")
        finally:
            app.release_logs()

        entries = app.logs.query()
        assert [e.message for e in entries] == ["payment failed: declined", "cart loaded"]
        assert entries[0].level == "error"
        assert entries[0].logger == "tests.capture.app"

    def test_release_stops_capture(self) -> None:
        app = AppBridge()
        target = logging.getLogger("tests.capture.released")
        target.setLevel(logging.DEBUG)
        app.capture_logs(target)
        app.release_logs()
        target.warning("not captured")
        assert len(app.logs) == 0
