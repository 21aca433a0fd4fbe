"""
Dispatch lifecycle events and an in-process event bus.

The dispatcher, send job, dead-letter service and webhook reconciler publish
events here; side effects such as metrics or audit hooks subscribe to them
without touching persistence code.
"""
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable

from app.core.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class MessageQueued:
    message_id: str
    channel: str
    scheduled: bool = False


@dataclass(frozen=True)
class MessageDuplicateSkipped:
    existing_message_id: str
    idempotency_key: str
    channel: str
    status: str


@dataclass(frozen=True)
class MessageCreateConflict:
    existing_message_id: str
    idempotency_key: str
    channel: str


@dataclass(frozen=True)
class MessageRetryScheduled:
    message_id: str
    channel: str
    attempt: int
    delay_seconds: int


@dataclass(frozen=True)
class MessageSending:
    message_id: str
    channel: str
    attempt: int


@dataclass(frozen=True)
class MessageFinalized:
    message_id: str
    channel: str
    status: str
    provider_message_id: str | None = None
    error_code: str | None = None


@dataclass(frozen=True)
class MessageDeadLettered:
    message_id: str
    channel: str
    attempts: int
    error_code: str | None = None
    error_message: str | None = None


@dataclass(frozen=True)
class WebhookReceived:
    provider: str
    event_type: str
    message_id: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)


Handler = Callable[[Any], None]


class EventBus:
    """Synchronous in-process publish/subscribe keyed by event class"""

    def __init__(self) -> None:
        self._handlers: dict[type, list[Handler]] = defaultdict(list)

    def subscribe(self, event_type: type, handler: Handler) -> None:
        self._handlers[event_type].append(handler)

    def unsubscribe(self, event_type: type, handler: Handler) -> None:
        if handler in self._handlers[event_type]:
            self._handlers[event_type].remove(handler)

    def publish(self, event: Any) -> None:
        """Deliver to every handler; a failing handler is logged and skipped"""
        for handler in list(self._handlers[type(event)]):
            try:
                handler(event)
            except Exception as e:
                logger.error(
                    "Event handler failed",
                    extra_data={
                        "event": type(event).__name__,
                        "handler": getattr(handler, "__qualname__", repr(handler)),
                        "error": str(e),
                    },
                    exc_info=True,
                )


class MetricsCollector:
    """Counts dispatch events as structured log lines"""

    METRICS = {
        MessageQueued: "dispatch.queued",
        MessageDuplicateSkipped: "dispatch.duplicate_skipped",
        MessageCreateConflict: "dispatch.create_conflict",
        MessageRetryScheduled: "dispatch.retry_scheduled",
        MessageSending: "dispatch.sending",
        MessageFinalized: "dispatch.finalized",
        MessageDeadLettered: "dispatch.dead_lettered",
        WebhookReceived: "webhook.received",
    }

    def __init__(self) -> None:
        self.counters: dict[tuple[str, tuple[tuple[str, str], ...]], int] = defaultdict(int)

    def attach(self, bus: EventBus) -> "MetricsCollector":
        for event_type in self.METRICS:
            bus.subscribe(event_type, self.handle)
        return self

    def increment(self, metric: str, by: int = 1, tags: dict[str, str] | None = None) -> None:
        tags = tags or {}
        self.counters[(metric, tuple(sorted(tags.items())))] += by
        logger.info(
            "metrics.increment",
            extra_data={"metric": metric, "by": by, "tags": tags},
        )

    def handle(self, event: Any) -> None:
        metric = self.METRICS[type(event)]
        tags = {"channel": event.channel} if hasattr(event, "channel") else {}
        if isinstance(event, MessageFinalized):
            tags["status"] = event.status
        elif isinstance(event, WebhookReceived):
            tags = {"provider": event.provider, "event": event.event_type}
        self.increment(metric, tags=tags)

    def count(self, metric: str, **tags: str) -> int:
        return self.counters.get((metric, tuple(sorted(tags.items()))), 0)


def build_event_bus() -> EventBus:
    """Event bus with the metrics collector subscribed"""
    bus = EventBus()
    MetricsCollector().attach(bus)
    return bus
