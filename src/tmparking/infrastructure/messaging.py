# File: src/tmparking/infrastructure/messaging.py
"""
Messaging Infrastructure for the Parking Occupancy & Billing Engine

This module implements event-driven communication for committed transitions:
1. Event Bus - intra-process publish/subscribe keyed by event type
2. Event Handlers - audit trail and redis forwarding

Events are published only after a snapshot has been swapped in and
persisted, so a handler failure can never undo or corrupt a transition.
Handler errors are logged and isolated from the publisher.
"""

from abc import ABC, abstractmethod
from typing import Optional, Dict, List, Any
import logging
import json
import threading

import redis

from ..domain.models import DomainEvent


ALL_EVENTS = "*"


# ============================================================================
# EVENT HANDLERS
# ============================================================================

class EventHandler(ABC):
    """Abstract base class for event handlers"""

    @abstractmethod
    def handle(self, event: DomainEvent) -> None:
        """Handle a domain event"""
        pass

    def can_handle(self, event: DomainEvent) -> bool:
        """Check if this handler can handle the event"""
        return True


# ============================================================================
# EVENT BUS (In-memory)
# ============================================================================

class EventBus:
    """
    In-memory event bus for intra-process event publishing

    Handlers subscribe to an event type string (``VehicleEnteredEvent.event_type``)
    or to ``ALL_EVENTS``.
    """

    def __init__(self):
        self._subscribers: Dict[str, List[EventHandler]] = {}
        self._lock = threading.Lock()
        self._logger = logging.getLogger(self.__class__.__name__)

    def subscribe(self, event_type: str, handler: EventHandler) -> None:
        """Subscribe to events of a specific type"""
        with self._lock:
            handlers = self._subscribers.setdefault(event_type, [])
            if handler not in handlers:
                handlers.append(handler)
                self._logger.debug(f"Subscribed {handler.__class__.__name__} to {event_type}")

    def unsubscribe(self, event_type: str, handler: EventHandler) -> None:
        """Unsubscribe handler from events"""
        with self._lock:
            handlers = self._subscribers.get(event_type, [])
            if handler in handlers:
                handlers.remove(handler)
                self._logger.debug(f"Unsubscribed {handler.__class__.__name__} from {event_type}")

    def publish(self, event: DomainEvent) -> None:
        """Publish an event to all subscribers"""
        self._logger.debug(f"Publishing event: {event.event_type} (ID: {event.event_id})")

        with self._lock:
            handlers = list(self._subscribers.get(event.event_type, []))
            handlers += [h for h in self._subscribers.get(ALL_EVENTS, []) if h not in handlers]

        for handler in handlers:
            if not handler.can_handle(event):
                continue
            try:
                handler.handle(event)
                self._logger.debug(f"Event handled by {handler.__class__.__name__}")
            except Exception as e:
                self._logger.error(
                    f"Error handling event {event.event_type} with {handler.__class__.__name__}: {e}",
                    exc_info=True
                )

    def clear_subscribers(self) -> None:
        """Clear all subscribers (for testing)"""
        with self._lock:
            self._subscribers.clear()


# ============================================================================
# CONCRETE HANDLERS
# ============================================================================

class AuditTrailHandler(EventHandler):
    """
    Keeps the serialized form of every event it receives, most recent last
    """

    def __init__(self, max_entries: Optional[int] = None):
        self.max_entries = max_entries
        self.entries: List[Dict[str, Any]] = []
        self._logger = logging.getLogger(self.__class__.__name__)

    def handle(self, event: DomainEvent) -> None:
        self.entries.append(event.to_dict())
        if self.max_entries is not None and len(self.entries) > self.max_entries:
            del self.entries[:len(self.entries) - self.max_entries]

    def events_of_type(self, event_type: str) -> List[Dict[str, Any]]:
        return [entry for entry in self.entries if entry["event_type"] == event_type]


class RedisEventForwarder(EventHandler):
    """
    Forward events as JSON to a redis pub/sub channel so other processes
    (dashboards, printers) can follow the lot in real time
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        channel: str = "tmparking.events",
        client: Optional[redis.Redis] = None,
        **kwargs
    ):
        self.redis_url = redis_url
        self.channel = channel
        self._logger = logging.getLogger(self.__class__.__name__)
        self.redis_client = client or redis.Redis.from_url(redis_url, **kwargs)

    def handle(self, event: DomainEvent) -> None:
        try:
            message_json = json.dumps(event.to_dict())
            receivers = self.redis_client.publish(self.channel, message_json)
            self._logger.debug(f"Published {event.event_type} to {self.channel} ({receivers} receivers)")
        except redis.RedisError as e:
            self._logger.error(f"Error publishing to Redis: {e}")

    def close(self):
        self.redis_client.close()
        self._logger.info("Redis event forwarder closed")
