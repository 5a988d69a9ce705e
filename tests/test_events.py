"""
Unit tests for figma_sentinel.events module.
"""

import logging
import pytest
from unittest.mock import MagicMock

from figma_sentinel.errors import NotFoundError, RateLimitHeaders
from figma_sentinel.events import (
    CompletedEvent,
    ErrorEvent,
    EventChannel,
    EventContext,
    RateLimitedEvent,
    RetryEvent,
    log_events,
)


@pytest.fixture
def channel():
    """A fresh event channel."""
    return EventChannel()


class TestEventChannel:
    """Tests for EventChannel dispatch."""

    def test_error_listener_receives_event(self, channel):
        """Test that on_error listeners get ErrorEvents with context."""
        listener = MagicMock()
        channel.on_error(listener)
        error = NotFoundError("gone")

        count = channel.emit_error(error, file_key="abc", node_id="1:2")

        assert count == 1
        event = listener.call_args[0][0]
        assert isinstance(event, ErrorEvent)
        assert event.error is error
        assert event.context == EventContext("abc", "1:2")
        assert event.timestamp.tzinfo is not None

    def test_error_without_context(self, channel):
        """Test that context is None when nothing is known."""
        listener = MagicMock()
        channel.on_error(listener)

        channel.emit_error(NotFoundError("gone"))

        assert listener.call_args[0][0].context is None

    def test_dispatch_by_type(self, channel):
        """Test that listeners only see their own event type."""
        on_retry = MagicMock()
        on_completed = MagicMock()
        channel.on_retry(on_retry)
        channel.on_completed(on_completed)

        channel.emit_retry(attempt=1, max_retries=3, delay_ms=500, url="https://api.figma.com")

        on_retry.assert_called_once()
        on_completed.assert_not_called()
        assert isinstance(on_retry.call_args[0][0], RetryEvent)

    def test_rate_limited_event(self, channel):
        """Test the rate limited payload."""
        listener = MagicMock()
        channel.on_rate_limited(listener)

        channel.emit_rate_limited(30, RateLimitHeaders(retry_after_sec=30, plan_tier="pro"))

        event = listener.call_args[0][0]
        assert isinstance(event, RateLimitedEvent)
        assert event.headers.plan_tier == "pro"

    def test_completed_event(self, channel):
        """Test the completed payload."""
        listener = MagicMock()
        channel.subscribe(CompletedEvent, listener)

        channel.emit_completed(success_count=3, failure_count=1, duration_ms=20)

        event = listener.call_args[0][0]
        assert (event.success_count, event.failure_count, event.duration_ms) == (3, 1, 20)
        assert event.context is None

    def test_completed_event_context(self, channel):
        """Test that a completed event can carry a context."""
        listener = MagicMock()
        channel.on_completed(listener)

        channel.emit_completed(1, 0, 5, context=EventContext(file_key="abc"))

        assert listener.call_args[0][0].context == EventContext(file_key="abc")

    def test_no_listeners(self, channel):
        """Test that emitting without listeners is fine."""
        assert channel.emit_completed(0, 0, 0) == 0

    def test_unknown_event_type_rejected(self, channel):
        """Test that only the four event types are accepted."""
        with pytest.raises(TypeError):
            channel.subscribe(dict, MagicMock())
        with pytest.raises(TypeError):
            channel.emit("not an event")

    def test_listener_errors_propagate(self, channel):
        """Test that a failing listener is not silenced."""
        channel.on_completed(MagicMock(side_effect=RuntimeError("listener broke")))

        with pytest.raises(RuntimeError):
            channel.emit_completed(1, 0, 1)

    def test_events_are_frozen(self):
        """Test that events are immutable."""
        event = CompletedEvent(1, 0, 1)

        with pytest.raises(Exception):
            event.success_count = 2


class TestLogEvents:
    """Tests for the logging sink."""

    def test_logs_every_type(self, channel, caplog):
        """Test that each event type produces a log record."""
        log_events(channel, logging.getLogger("sentinel-test"))

        with caplog.at_level(logging.INFO, logger="sentinel-test"):
            channel.emit_error(NotFoundError("gone"), file_key="abc", node_id="1:2")
            channel.emit_retry(1, 3, 250)
            channel.emit_rate_limited(60)
            channel.emit_completed(2, 1, 10)

        messages = [r.getMessage() for r in caplog.records]
        assert any("not found" in m and "[abc / 1:2]" in m for m in messages)
        assert any("attempt 1/3" in m for m in messages)
        assert any("waiting 60s" in m for m in messages)
        assert any("2 succeeded, 1 failed" in m for m in messages)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
