"""Change events published on the dispatch change feed."""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from .database import utcnow


class EventType(str, Enum):
    """Event types emitted by the marketplace tables."""

    # Order events
    ORDER_STATUS_CHANGED = "order.status_changed"

    # Notification events
    NOTIFICATION_CREATED = "notification.created"
    NOTIFICATION_RESOLVED = "notification.resolved"

    # Delivery events
    DELIVERY_STATUS_CHANGED = "delivery.status_changed"


class BaseEvent(BaseModel):
    """Base event model with common fields."""

    event_id: UUID = Field(default_factory=uuid4)
    event_type: EventType
    aggregate_id: UUID  # ID of the row the event describes
    timestamp: datetime = Field(default_factory=utcnow)
    version: int = Field(default=1)
    correlation_id: UUID = Field(default_factory=uuid4)
    causation_id: Optional[UUID] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    class Config:
        json_encoders = {
            datetime: lambda v: v.isoformat(),
            UUID: lambda v: str(v)
        }

    def routing_key(self) -> str:
        """Routing key on the topic exchange."""
        return self.event_type.value


# Order Events
class OrderStatusChangedEvent(BaseEvent):
    """Event emitted whenever an order changes status."""
    event_type: EventType = EventType.ORDER_STATUS_CHANGED
    order_id: UUID
    seller_id: UUID
    old_status: Optional[str] = None
    new_status: str

    def routing_key(self) -> str:
        return f"{self.event_type.value}.{self.new_status}"


# Notification Events
class NotificationCreatedEvent(BaseEvent):
    """Event carrying a freshly inserted notification row."""
    event_type: EventType = EventType.NOTIFICATION_CREATED
    notification_id: UUID
    user_id: UUID
    title: str
    message: str
    notification_type: str
    related_entity_id: Optional[UUID] = None
    status: str
    is_read: bool = False
    created_at: datetime

    def routing_key(self) -> str:
        # Per-recipient key so a courier session binds to its own rows only
        return f"{self.event_type.value}.{self.user_id}"


class NotificationResolvedEvent(BaseEvent):
    """Event emitted when an offer is accepted, declined or expired."""
    event_type: EventType = EventType.NOTIFICATION_RESOLVED
    notification_id: UUID
    user_id: UUID
    status: str

    def routing_key(self) -> str:
        return f"{self.event_type.value}.{self.user_id}"


# Delivery Events
class DeliveryStatusChangedEvent(BaseEvent):
    """Event emitted when a delivery is created or advances."""
    event_type: EventType = EventType.DELIVERY_STATUS_CHANGED
    delivery_id: UUID
    order_id: UUID
    captain_id: UUID
    status: str


# Event Registry for deserialization
EVENT_REGISTRY: Dict[EventType, type[BaseEvent]] = {
    EventType.ORDER_STATUS_CHANGED: OrderStatusChangedEvent,
    EventType.NOTIFICATION_CREATED: NotificationCreatedEvent,
    EventType.NOTIFICATION_RESOLVED: NotificationResolvedEvent,
    EventType.DELIVERY_STATUS_CHANGED: DeliveryStatusChangedEvent,
}


def deserialize_event(event_data: Dict[str, Any]) -> BaseEvent:
    """Deserialize event from dictionary."""
    event_type = EventType(event_data["event_type"])
    event_class = EVENT_REGISTRY.get(event_type, BaseEvent)
    return event_class(**event_data)
