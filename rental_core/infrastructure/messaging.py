# File: rental_core/infrastructure/messaging.py
"""
Messaging Infrastructure for the Vehicle Rental Core

This module implements messaging patterns for event-driven communication:
1. Event Bus - For intra-process event publishing/subscription
2. Message Queue - For inter-process messaging (Redis Pub/Sub)
3. Message Bus - Routes domain events to the event bus and the queue
4. Event Handlers - Operator alerts for failed vehicle status syncs

Key Patterns:
- Publish/Subscribe
- Retry with backoff when forwarding to the broker

Supported Brokers:
- Redis Pub/Sub
- In-memory (for testing)
"""

from abc import ABC, abstractmethod
from typing import Optional, Dict, List, Any, Callable
from datetime import datetime
import logging
import json
from dataclasses import dataclass, asdict, field
from enum import Enum
from uuid import UUID, uuid4
import time
import threading

import redis


# ============================================================================
# MESSAGE TYPES AND ENUMS
# ============================================================================

class MessageType(str, Enum):
    """Types of messages in the system"""
    DOMAIN_EVENT = "domain_event"


class EventType(str, Enum):
    """Domain event types"""
    # Booking events
    BOOKING_CREATED = "booking_created"
    BOOKING_COMPLETED = "booking_completed"
    BOOKING_CANCELLED = "booking_cancelled"

    # Vehicle events
    VEHICLE_STATUS_CHANGED = "vehicle_status_changed"
    VEHICLE_STATUS_SYNC_FAILED = "vehicle_status_sync_failed"

    # Customer events
    CUSTOMER_BLACKLIST_EXPIRED = "customer_blacklist_expired"

    # Configuration events
    SETTINGS_UPDATED = "settings_updated"


# ============================================================================
# MESSAGE BASE CLASSES
# ============================================================================

@dataclass
class Message:
    """Base message class"""
    message_id: UUID = field(default_factory=uuid4)
    message_type: MessageType = MessageType.DOMAIN_EVENT
    timestamp: datetime = field(default_factory=datetime.now)
    correlation_id: Optional[UUID] = None
    source: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert message to dictionary"""
        data = asdict(self)
        data['message_id'] = str(self.message_id)
        data['timestamp'] = self.timestamp.isoformat()
        if self.correlation_id:
            data['correlation_id'] = str(self.correlation_id)
        return data

    def to_json(self) -> str:
        """Convert message to JSON string"""
        return json.dumps(self.to_dict(), default=str)


@dataclass
class DomainEvent(Message):
    """Domain event message"""
    event_type: EventType = EventType.BOOKING_CREATED
    aggregate_id: Optional[str] = None
    aggregate_type: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    version: int = 1

    def __post_init__(self):
        self.message_type = MessageType.DOMAIN_EVENT
        self.event_type = EventType(self.event_type)


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

    Handlers run synchronously in the publishing thread. A failing handler
    is logged and does not prevent the remaining handlers from running.
    """

    def __init__(self):
        self._subscribers: Dict[EventType, List[EventHandler]] = {}
        self._logger = logging.getLogger(self.__class__.__name__)

    def subscribe(self, event_type: EventType, handler: EventHandler) -> None:
        """Subscribe to events of a specific type"""
        handlers = self._subscribers.setdefault(event_type, [])

        if handler not in handlers:
            handlers.append(handler)
            self._logger.debug(f"Subscribed {handler.__class__.__name__} to {event_type.value}")

    def publish(self, event: DomainEvent) -> None:
        """Publish an event to all subscribers"""
        self._logger.info(f"Publishing event: {event.event_type.value} (ID: {event.message_id})")

        for handler in list(self._subscribers.get(event.event_type, [])):
            if handler.can_handle(event):
                try:
                    handler.handle(event)
                    self._logger.debug(f"Event handled by {handler.__class__.__name__}")
                except Exception as e:
                    self._logger.error(
                        f"Error handling event {event.event_type.value} with {handler.__class__.__name__}: {e}",
                        exc_info=True
                    )


# ============================================================================
# MESSAGE QUEUE ABSTRACTIONS
# ============================================================================

class MessageQueue(ABC):
    """Abstract base class for message queues"""

    @abstractmethod
    def publish(self, topic: str, message: Message) -> bool:
        """Publish a message to a topic"""
        pass

    def close(self) -> None:
        pass


# ============================================================================
# REDIS MESSAGE QUEUE
# ============================================================================

class RedisMessageQueue(MessageQueue):
    """
    Forwards messages to Redis Pub/Sub channels

    Downstream consumers (dashboards, notification workers) subscribe to the
    channels themselves; this process only publishes.
    """

    def __init__(self, redis_url: str = "redis://localhost:6379", **kwargs):
        self.redis_url = redis_url
        self._logger = logging.getLogger(self.__class__.__name__)
        self.redis_client = redis.Redis.from_url(redis_url, **kwargs)

    def publish(self, topic: str, message: Message) -> bool:
        """
        Publish a message to a Redis channel
        Connection errors propagate so that the caller can retry
        """
        receivers = self.redis_client.publish(topic, message.to_json())
        self._logger.debug(f"Published message to {topic}: {message.message_id} ({receivers} receivers)")
        return True

    def close(self):
        """Close the Redis connection"""
        self.redis_client.close()
        self._logger.info("Redis message queue closed")


# ============================================================================
# IN-MEMORY MESSAGE QUEUE (For Testing)
# ============================================================================

class InMemoryMessageQueue(MessageQueue):
    """In-memory message queue that records what was published"""

    def __init__(self):
        self._messages: Dict[str, List[Message]] = {}
        self._lock = threading.Lock()
        self._logger = logging.getLogger(self.__class__.__name__)

    def publish(self, topic: str, message: Message) -> bool:
        with self._lock:
            self._messages.setdefault(topic, []).append(message)
        self._logger.debug(f"Published to {topic}: {message.message_id}")
        return True

    def get_messages(self, topic: str) -> List[Message]:
        """Get all messages for a topic (for testing)"""
        with self._lock:
            return list(self._messages.get(topic, []))


# ============================================================================
# MESSAGE BUS (Orchestrator)
# ============================================================================

class MessageBus:
    """
    Routes domain events to the in-process event bus and, when configured,
    forwards them to the message queue with retry

    Publishing never raises: a broker outage must not undo a committed
    booking write.
    """

    EVENTS_TOPIC = 'rental.events'

    def __init__(
        self,
        event_bus: Optional[EventBus] = None,
        message_queue: Optional[MessageQueue] = None,
        max_retries: int = 3,
        retry_delay: float = 0.5,
        sleep: Callable[[float], None] = time.sleep
    ):
        self.event_bus = event_bus or EventBus()
        self.message_queue = message_queue
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._sleep = sleep
        self._logger = logging.getLogger(self.__class__.__name__)

    def publish_event(self, event: DomainEvent) -> None:
        """Publish a domain event through all channels"""
        self._logger.info(f"Publishing event {event.event_type.value} (ID: {event.message_id})")

        try:
            self.event_bus.publish(event)
        except Exception as e:
            self._logger.error(f"Failed to publish to event bus: {e}", exc_info=True)

        if self.message_queue and not self._publish_with_retry(self.EVENTS_TOPIC, event):
            self._logger.error(f"Failed to forward event {event.message_id} after {self.max_retries} attempts")

    def _publish_with_retry(self, topic: str, message: Message) -> bool:
        """Publish message with retry logic"""
        for attempt in range(self.max_retries):
            try:
                return self.message_queue.publish(topic, message)
            except Exception as e:
                self._logger.warning(f"Attempt {attempt + 1} failed for message {message.message_id}: {e}")
                if attempt < self.max_retries - 1:
                    self._sleep(self.retry_delay * (2 ** attempt))  # Exponential backoff

        return False

    def subscribe_to_events(self, event_type: EventType, handler: EventHandler) -> None:
        """Subscribe to events on the event bus"""
        self.event_bus.subscribe(event_type, handler)

    def close(self):
        if self.message_queue:
            self.message_queue.close()


# ============================================================================
# EVENT HANDLERS IMPLEMENTATIONS
# ============================================================================

class OperatorAlertHandler(EventHandler):
    """
    Collects vehicle status sync failures for operators

    A failed sync leaves the booking committed but the vehicle registry
    stale, so every failure is kept until an operator acknowledges it.
    """

    def __init__(self):
        self._logger = logging.getLogger(self.__class__.__name__)
        self._alerts: List[Dict[str, Any]] = []
        self._lock = threading.Lock()

    def can_handle(self, event: DomainEvent) -> bool:
        return event.event_type == EventType.VEHICLE_STATUS_SYNC_FAILED

    def handle(self, event: DomainEvent) -> None:
        alert = {
            "vehicle_id": event.aggregate_id,
            "raised_at": event.timestamp,
            **event.data,
        }
        with self._lock:
            self._alerts.append(alert)

        self._logger.warning(
            f"Vehicle {event.aggregate_id} requires manual status correction "
            f"(target: {event.data.get('target_status')}, error: {event.data.get('error')})"
        )

    @property
    def pending_alerts(self) -> List[Dict[str, Any]]:
        with self._lock:
            return list(self._alerts)

    def acknowledge_all(self) -> int:
        """Clear pending alerts and return how many there were"""
        with self._lock:
            count = len(self._alerts)
            self._alerts.clear()
        return count
