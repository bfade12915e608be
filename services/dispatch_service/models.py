"""Database models for Dispatch Service."""
from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
)

from shared.database import Base, utcnow


class OrderStatus(str, Enum):
    """Order lifecycle."""
    PENDING = "pending"
    PREPARING = "preparing"
    READY = "ready"
    ACCEPTED_BY_CAPTAIN = "accepted_by_captain"
    PICKED_UP = "picked_up"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class DeliveryStatus(str, Enum):
    """Delivery lifecycle, mirrors the captain-owned part of the order lifecycle."""
    ACCEPTED = "accepted"
    PICKED_UP = "picked_up"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class NotificationType(str, Enum):
    """Notification categories."""
    ORDER = "order"
    PAYMENT = "payment"
    SYSTEM = "system"
    PROMO = "promo"
    DELIVERY = "delivery"


class NotificationStatus(str, Enum):
    """Resolution of a notification; only delivery offers leave PENDING."""
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    EXPIRED = "expired"


class SellerProfile(Base):
    """Seller (kitchen) owning orders."""

    __tablename__ = "seller_profiles"

    id = Column(Uuid, primary_key=True, default=uuid4)
    user_id = Column(Uuid, nullable=False, unique=True, index=True)
    business_name = Column(String(200), nullable=False)
    business_description = Column(Text, nullable=True)
    kitchen_open = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class Address(Base):
    """Delivery address."""

    __tablename__ = "addresses"

    id = Column(Uuid, primary_key=True, default=uuid4)
    user_id = Column(Uuid, nullable=False, index=True)
    street = Column(String(300), nullable=True)
    area = Column(String(120), nullable=True)  # locality shown to captains
    city = Column(String(120), nullable=True)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)


class Order(Base):
    """Customer order placed with a seller."""

    __tablename__ = "orders"

    id = Column(Uuid, primary_key=True, default=uuid4)
    customer_id = Column(Uuid, nullable=False, index=True)
    seller_id = Column(Uuid, ForeignKey("seller_profiles.id"), nullable=False, index=True)
    address_id = Column(Uuid, ForeignKey("addresses.id"), nullable=True)
    status = Column(String(50), default=OrderStatus.PENDING.value, nullable=False, index=True)

    total = Column(Float, nullable=False, default=0.0)
    delivery_fee = Column(Float, nullable=False, default=0.0)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_orders_status_created", "status", "created_at"),
    )


class CaptainProfile(Base):
    """Delivery captain identity and availability."""

    __tablename__ = "captain_profiles"

    id = Column(Uuid, primary_key=True, default=uuid4)
    user_id = Column(Uuid, nullable=False, unique=True, index=True)
    vehicle_type = Column(String(50), nullable=True)
    vehicle_registration = Column(String(50), nullable=True)
    service_areas = Column(JSON, nullable=False, default=list)

    is_active = Column(Boolean, default=False, nullable=False)
    is_available = Column(Boolean, default=False, nullable=False)
    verification_status = Column(String(20), default="pending", nullable=False)

    average_rating = Column(Float, default=0.0, nullable=False)
    total_deliveries = Column(Integer, default=0, nullable=False)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_captain_profiles_eligible", "is_active", "is_available"),
    )


class Delivery(Base):
    """Assignment of one order to one captain."""

    __tablename__ = "deliveries"

    id = Column(Uuid, primary_key=True, default=uuid4)
    # Unique: the claim insert is what makes an order exclusive to one captain
    order_id = Column(Uuid, ForeignKey("orders.id"), nullable=False, unique=True, index=True)
    captain_id = Column(Uuid, ForeignKey("captain_profiles.id"), nullable=False, index=True)

    status = Column(String(30), default=DeliveryStatus.ACCEPTED.value, nullable=False, index=True)
    delivery_fee = Column(Float, nullable=False, default=0.0)
    delivery_notes = Column(Text, nullable=True)

    pickup_time = Column(DateTime, nullable=True)
    delivery_time = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_deliveries_captain_status", "captain_id", "status"),
    )


class Notification(Base):
    """Message to one user; delivery-typed rows addressed to captains are offers."""

    __tablename__ = "notifications"

    id = Column(Uuid, primary_key=True, default=uuid4)
    user_id = Column(Uuid, nullable=False, index=True)
    title = Column(String(200), nullable=False)
    message = Column(Text, nullable=False)
    type = Column(String(20), nullable=False)
    related_entity_id = Column(Uuid, nullable=True, index=True)

    status = Column(String(20), default=NotificationStatus.PENDING.value, nullable=False)
    is_read = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    resolved_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_notifications_user_type_status", "user_id", "type", "status", "created_at"),
    )
