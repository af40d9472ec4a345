"""
Subscription notification events.

The reconciler emits these as lifecycle changes happen; delivery (e-mail,
WhatsApp, push) belongs to subscribers outside this service.
"""
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional


logger = logging.getLogger("entitlements.events")

SUBSCRIPTION_EXPIRING = "SubscriptionExpiring"
SUBSCRIPTION_RENEWED = "SubscriptionRenewed"
RENEWAL_FAILED = "RenewalFailed"
SUBSCRIPTION_SUSPENDED = "SubscriptionSuspended"
SUBSCRIPTION_DOWNGRADED = "SubscriptionDowngraded"
SUBSCRIPTION_REACTIVATED = "SubscriptionReactivated"

EVENT_TYPES = frozenset({
    SUBSCRIPTION_EXPIRING,
    SUBSCRIPTION_RENEWED,
    RENEWAL_FAILED,
    SUBSCRIPTION_SUSPENDED,
    SUBSCRIPTION_DOWNGRADED,
    SUBSCRIPTION_REACTIVATED,
})


@dataclass(frozen=True)
class SubscriptionEvent:
    event_type: str
    subscription_id: int
    user_id: str
    plan_id: str
    occurred_at: datetime
    detail: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": self.event_type,
            "subscription_id": self.subscription_id,
            "user_id": self.user_id,
            "plan_id": self.plan_id,
            "occurred_at": self.occurred_at.isoformat(),
            "detail": dict(self.detail),
        }


Subscriber = Callable[[SubscriptionEvent], None]


class EventBus:
    """In-process fan-out of SubscriptionEvent to registered callbacks."""

    def __init__(self):
        self._subscribers: List[Subscriber] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a callback; returns a function that unregisters it."""
        with self._lock:
            self._subscribers.append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return _unsubscribe

    def emit(self, event: SubscriptionEvent) -> int:
        """Deliver to every subscriber; returns how many accepted it."""
        if event.event_type not in EVENT_TYPES:
            raise ValueError(f"Unknown event type: {event.event_type}")
        with self._lock:
            subscribers = list(self._subscribers)

        delivered = 0
        for callback in subscribers:
            try:
                callback(event)
                delivered += 1
            except Exception:
                logger.exception(
                    "[events] subscriber failed",
                    extra={"event_type": event.event_type, "subscription_id": event.subscription_id},
                )
        logger.info(
            "[events] emitted",
            extra={
                "event_type": event.event_type,
                "subscription_id": event.subscription_id,
                "user_id": event.user_id,
                "delivered": delivered,
            },
        )
        return delivered


class RecordingSubscriber:
    """Keeps emitted events in memory (admin views, tests)."""

    def __init__(self, limit: Optional[int] = 500):
        self.limit = limit
        self.events: List[SubscriptionEvent] = []
        self._lock = threading.Lock()

    def __call__(self, event: SubscriptionEvent) -> None:
        with self._lock:
            self.events.append(event)
            if self.limit is not None and len(self.events) > self.limit:
                del self.events[: len(self.events) - self.limit]

    def of_type(self, event_type: str) -> List[SubscriptionEvent]:
        with self._lock:
            return [e for e in self.events if e.event_type == event_type]
