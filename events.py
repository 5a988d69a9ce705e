"""
Typed event channel for pipeline observability.

The driver owns an EventChannel and emits error, retry, rate-limited and
completed events on it. Listeners subscribe per event type.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Type, TypeVar, Union

from .errors import FigmaSentinelError, RateLimitHeaders, generate_error_message


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class EventContext:
    """Which file/node an event relates to."""
    file_key: Optional[str] = None
    node_id: Optional[str] = None


@dataclass(frozen=True)
class ErrorEvent:
    error: FigmaSentinelError
    context: Optional[EventContext] = None
    timestamp: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class RetryEvent:
    attempt: int
    max_retries: int
    delay_ms: int
    url: Optional[str] = None
    context: Optional[EventContext] = None
    timestamp: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class RateLimitedEvent:
    retry_after_sec: int
    headers: RateLimitHeaders = field(default_factory=RateLimitHeaders)
    context: Optional[EventContext] = None
    timestamp: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class CompletedEvent:
    success_count: int
    failure_count: int
    duration_ms: int
    context: Optional[EventContext] = None
    timestamp: datetime = field(default_factory=_utcnow)


Event = Union[ErrorEvent, RetryEvent, RateLimitedEvent, CompletedEvent]
E = TypeVar("E", ErrorEvent, RetryEvent, RateLimitedEvent, CompletedEvent)


class EventChannel:
    """
    Dispatches events to listeners registered for their exact type.

    Listener exceptions propagate to the emitter.
    """

    def __init__(self):
        self._listeners: Dict[type, List[Callable]] = {
            ErrorEvent: [],
            RetryEvent: [],
            RateLimitedEvent: [],
            CompletedEvent: [],
        }

    def subscribe(self, event_type: Type[E], listener: Callable[[E], None]) -> None:
        if event_type not in self._listeners:
            raise TypeError(f"Unsupported event type: {event_type!r}")
        self._listeners[event_type].append(listener)

    def on_error(self, listener: Callable[[ErrorEvent], None]) -> None:
        self.subscribe(ErrorEvent, listener)

    def on_retry(self, listener: Callable[[RetryEvent], None]) -> None:
        self.subscribe(RetryEvent, listener)

    def on_rate_limited(self, listener: Callable[[RateLimitedEvent], None]) -> None:
        self.subscribe(RateLimitedEvent, listener)

    def on_completed(self, listener: Callable[[CompletedEvent], None]) -> None:
        self.subscribe(CompletedEvent, listener)

    def emit(self, event: Event) -> int:
        """Deliver an event. Returns the number of listeners called."""
        listeners = self._listeners.get(type(event))
        if listeners is None:
            raise TypeError(f"Unsupported event type: {type(event)!r}")
        for listener in list(listeners):
            listener(event)
        return len(listeners)

    def emit_error(
        self,
        error: FigmaSentinelError,
        file_key: Optional[str] = None,
        node_id: Optional[str] = None,
    ) -> int:
        context = None
        if file_key or node_id:
            context = EventContext(file_key=file_key, node_id=node_id)
        return self.emit(ErrorEvent(error=error, context=context))

    def emit_retry(
        self,
        attempt: int,
        max_retries: int,
        delay_ms: int,
        url: Optional[str] = None,
        context: Optional[EventContext] = None,
    ) -> int:
        return self.emit(RetryEvent(
            attempt=attempt, max_retries=max_retries, delay_ms=delay_ms, url=url, context=context
        ))

    def emit_rate_limited(
        self,
        retry_after_sec: int,
        headers: Optional[RateLimitHeaders] = None,
        context: Optional[EventContext] = None,
    ) -> int:
        return self.emit(RateLimitedEvent(
            retry_after_sec=retry_after_sec,
            headers=headers or RateLimitHeaders(),
            context=context,
        ))

    def emit_completed(
        self,
        success_count: int,
        failure_count: int,
        duration_ms: int,
        context: Optional[EventContext] = None,
    ) -> int:
        return self.emit(CompletedEvent(
            success_count=success_count, failure_count=failure_count, duration_ms=duration_ms, context=context
        ))


def log_events(channel: EventChannel, log: Optional[logging.Logger] = None) -> None:
    """Subscribe a logging sink to every event type on ``channel``."""
    log = log or logging.getLogger(__name__)

    def _where(context: Optional[EventContext]) -> str:
        if context is None:
            return ""
        parts = [p for p in (context.file_key, context.node_id) if p]
        return f" [{' / '.join(parts)}]" if parts else ""

    def _on_error(event: ErrorEvent) -> None:
        log.error(f"{generate_error_message(event.error)}{_where(event.context)}")

    def _on_retry(event: RetryEvent) -> None:
        log.warning(
            f"Retrying in {event.delay_ms}ms (attempt {event.attempt}/{event.max_retries})"
            f"{_where(event.context)}"
        )

    def _on_rate_limited(event: RateLimitedEvent) -> None:
        log.warning(f"Rate limited, waiting {event.retry_after_sec}s{_where(event.context)}")

    def _on_completed(event: CompletedEvent) -> None:
        log.info(
            f"Completed: {event.success_count} succeeded, {event.failure_count} failed "
            f"in {event.duration_ms}ms{_where(event.context)}"
        )

    channel.on_error(_on_error)
    channel.on_retry(_on_retry)
    channel.on_rate_limited(_on_rate_limited)
    channel.on_completed(_on_completed)
