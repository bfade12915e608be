"""Customer-facing order status notifications."""
import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from .models import Notification, NotificationType, Order, OrderStatus
from .notification_store import add_notifications
from .order_details import order_ref
from .schemas import NewNotification

logger = logging.getLogger(__name__)

# Statuses the customer hears about; claim and pickup are reported to the seller only
CUSTOMER_NOTICES = {
    OrderStatus.PREPARING: ("Order Being Prepared", "Your order #{ref} is now being prepared."),
    OrderStatus.READY: ("Order Ready", "Your order #{ref} is now ready for delivery."),
    OrderStatus.OUT_FOR_DELIVERY: ("Order Out for Delivery", "Your order #{ref} is now out for delivery."),
    OrderStatus.DELIVERED: ("Order Completed", "Your order #{ref} has been delivered."),
    OrderStatus.COMPLETED: ("Order Completed", "Your order #{ref} has been delivered."),
    OrderStatus.CANCELLED: ("Order Cancelled", "Your order #{ref} has been cancelled."),
}


def render_status_notice(order_id, status: OrderStatus) -> Optional[tuple[str, str]]:
    template = CUSTOMER_NOTICES.get(OrderStatus(status))
    if template is None:
        return None
    title, message = template
    return title, message.format(ref=order_ref(order_id))


async def notify_customer(session: AsyncSession, order: Order, status: OrderStatus) -> Optional[Notification]:
    """Stage the customer's notice for ``status`` on the caller's transaction."""
    rendered = render_status_notice(order.id, status)
    if rendered is None:
        return None

    title, message = rendered
    [row] = await add_notifications(
        session,
        [
            NewNotification(
                user_id=order.customer_id,
                title=title,
                message=message,
                type=NotificationType.ORDER,
                related_entity_id=order.id,
            )
        ],
    )

    logger.info(f"Staged customer notification '{title}' for order {order.id}")
    return row
