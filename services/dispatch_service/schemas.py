"""Value objects passed between the dispatch components."""
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from .models import NotificationStatus, NotificationType


class NewNotification(BaseModel):
    """Notification to be inserted."""
    user_id: UUID
    title: str
    message: str
    type: NotificationType
    related_entity_id: Optional[UUID] = None


class NotificationView(BaseModel):
    """Notification row as seen by sessions and API clients."""
    id: UUID
    user_id: UUID
    title: str
    message: str
    type: str
    related_entity_id: Optional[UUID] = None
    status: str = NotificationStatus.PENDING.value
    is_read: bool = False
    created_at: datetime

    class Config:
        from_attributes = True

    @property
    def is_offer(self) -> bool:
        return self.type == NotificationType.DELIVERY.value


class OrderDetails(BaseModel):
    """Order, seller and address snapshot presented alongside an offer."""
    order_id: UUID
    status: str
    total: float
    delivery_fee: float
    created_at: datetime
    seller_id: UUID
    seller_user_id: Optional[UUID] = None
    seller_name: str
    address: Dict[str, Any] = Field(default_factory=dict)

    @property
    def locality(self) -> Optional[str]:
        return self.address.get("area") or self.address.get("city")


class DeliveryView(BaseModel):
    """Delivery row."""
    id: UUID
    order_id: UUID
    captain_id: UUID
    status: str
    delivery_fee: float
    pickup_time: Optional[datetime] = None
    delivery_time: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True


class SignalKind(str, Enum):
    """Operator-facing session messages."""
    OFFER_PRESENTED = "offer_presented"
    NEW_OFFER_AVAILABLE = "new_offer_available"
    OFFER_ACCEPTED = "offer_accepted"
    OFFER_DECLINED = "offer_declined"
    OFFER_EXPIRED = "offer_expired"
    ERROR = "error"


class SessionSignal(BaseModel):
    """Message surfaced to the courier (toast, dialog, vibration cue)."""
    kind: SignalKind
    title: str
    description: Optional[str] = None
    notification_id: Optional[UUID] = None
    alert: bool = False  # vibrate / play sound


class SessionSnapshot(BaseModel):
    """Current state of a courier session."""
    user_id: UUID
    notifications: List[NotificationView]
    current: Optional[NotificationView] = None
    order_details: Optional[OrderDetails] = None


class DailyEarnings(BaseModel):
    day: date
    amount: float
    deliveries: int


class EarningsSummary(BaseModel):
    """Captain earnings over a date range."""
    total_earnings: float
    delivery_count: int
    earnings_by_day: List[DailyEarnings]
