# services/events.py
"""
Typed in-process event bus.

Subscribers are called synchronously in registration order. A subscriber
that raises is logged and skipped; it never affects the publisher or the
other subscribers.
"""

import threading
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Type

from gateway.core.logger import get_logger

logger = get_logger("events")


@dataclass(frozen=True)
class WebhookReceived:
    """A verified, non-duplicate webhook, normalized by its provider."""
    provider: str
    event: Dict[str, Any]
    request_id: Optional[str] = None


@dataclass(frozen=True)
class JobCompleted:
    job_id: str
    job_type: str
    result: Any
    session_id: Optional[str] = None
    retry_count: int = 0


@dataclass(frozen=True)
class JobFailed:
    job_id: str
    job_type: str
    error_message: str
    session_id: Optional[str] = None
    retry_count: int = 0


Subscriber = Callable[[Any], None]


@dataclass
class EventBus:
    _subscribers: Dict[Type, List[Subscriber]] = field(default_factory=lambda: defaultdict(list))
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def subscribe(self, event_type: Type, subscriber: Subscriber) -> None:
        with self._lock:
            self._subscribers[event_type].append(subscriber)

    def unsubscribe(self, event_type: Type, subscriber: Subscriber) -> None:
        with self._lock:
            if subscriber in self._subscribers.get(event_type, []):
                self._subscribers[event_type].remove(subscriber)

    def publish(self, event: Any) -> int:
        """Deliver ``event``; returns how many subscribers handled it."""
        with self._lock:
            subscribers = list(self._subscribers.get(type(event), []))

        delivered = 0
        for subscriber in subscribers:
            try:
                subscriber(event)
                delivered += 1
            except Exception:
                logger.exception(
                    f"Event subscriber {getattr(subscriber, '__name__', subscriber)!r} "
                    f"failed for {type(event).__name__}"
                )
        return delivered
