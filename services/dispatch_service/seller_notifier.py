"""Seller-facing notifications emitted by the delivery pipeline."""
import logging
from enum import Enum
from typing import Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from .models import Notification, NotificationType, Order, SellerProfile
from .notification_store import add_notifications
from .order_details import order_ref
from .schemas import NewNotification

logger = logging.getLogger(__name__)


class SellerNotice(str, Enum):
    """Delivery milestones reported to the seller."""
    CAPTAIN_ASSIGNED = "captain_assigned"
    ORDER_PICKED_UP = "order_picked_up"
    ORDER_OUT_FOR_DELIVERY = "order_out_for_delivery"
    ORDER_DELIVERED = "order_delivered"


def render_notice(notice: SellerNotice, order_id: UUID, captain_id: UUID) -> tuple[str, str]:
    """Title and message for a notice."""
    ref = order_ref(order_id)
    if notice == SellerNotice.CAPTAIN_ASSIGNED:
        return (
            "Captain Assigned",
            f"Order #{ref} has been accepted by a delivery captain with ID {str(captain_id)[:8]}",
        )
    if notice == SellerNotice.ORDER_PICKED_UP:
        return (
            "Order Picked Up",
            f"Your order #{ref} has been picked up by the captain and is on the way",
        )
    if notice == SellerNotice.ORDER_OUT_FOR_DELIVERY:
        return "Out For Delivery", f"Your order #{ref} is now out for delivery"
    return "Order Delivered", f"Your order #{ref} has been successfully delivered"


async def notify_seller(
    session: AsyncSession,
    order: Order,
    captain_id: UUID,
    notice: SellerNotice,
) -> Optional[Notification]:
    """
    Stage one seller notification on the caller's transaction.

    A missing seller profile is logged and skipped; it never blocks the
    delivery transition that triggered it.
    """
    seller = await session.get(SellerProfile, order.seller_id)
    if seller is None:
        logger.error(f"Seller profile {order.seller_id} not found, skipping {notice.value} notice")
        return None

    title, message = render_notice(notice, order.id, captain_id)
    rows = await add_notifications(
        session,
        [
            NewNotification(
                user_id=seller.user_id,
                title=title,
                message=message,
                type=NotificationType.ORDER,
                related_entity_id=order.id,
            )
        ],
    )

    logger.info(f"Staged seller notification {notice.value} for order {order.id}")
    return rows[0]
