"""Seller-driven order transitions."""
import logging
from uuid import UUID

from sqlalchemy import update

from shared.database import utcnow
from shared.events import OrderStatusChangedEvent
from shared.outbox import save_event_to_outbox

from .customer_notifier import notify_customer
from .models import Order, OrderStatus

logger = logging.getLogger(__name__)


class OrderError(Exception):
    """Seller order failure with a message fit for the seller dashboard."""

    user_message = "Failed to update order status"


class SellerOrderNotFound(OrderError):
    user_message = "Order not found"


class IllegalOrderTransition(OrderError):
    user_message = "This order can no longer be moved to that status"


# Target status -> statuses the seller may move from
SELLER_TRANSITIONS = {
    OrderStatus.PREPARING: (OrderStatus.PENDING,),
    OrderStatus.READY: (OrderStatus.PREPARING,),
    OrderStatus.CANCELLED: (OrderStatus.PENDING, OrderStatus.PREPARING, OrderStatus.READY),
}


class SellerOrderService:
    """Moves orders through the kitchen-side part of their lifecycle."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def update_status(self, order_id: UUID, new_status: OrderStatus) -> OrderStatus:
        """
        Move an order to ``new_status`` and announce the change.

        A move into ready is what offers the order to captains, through the
        order.status_changed feed. Once a captain has claimed the order the
        seller can no longer change it.
        """
        new_status = OrderStatus(new_status)
        allowed_from = SELLER_TRANSITIONS.get(new_status)
        if allowed_from is None:
            raise IllegalOrderTransition(f"Sellers cannot move orders to {new_status.value}")

        async with self.session_factory() as session:
            order = await session.get(Order, order_id)
            if order is None:
                raise SellerOrderNotFound(f"Order {order_id} not found")

            old_status = OrderStatus(order.status)
            if old_status not in allowed_from:
                raise IllegalOrderTransition(
                    f"Order {order_id} cannot move from {old_status.value} to {new_status.value}"
                )

            result = await session.execute(
                update(Order)
                .where(Order.id == order_id, Order.status == old_status.value)
                .values(status=new_status.value, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await session.rollback()
                raise IllegalOrderTransition(f"Order {order_id} changed concurrently")

            await save_event_to_outbox(
                session,
                OrderStatusChangedEvent(
                    aggregate_id=order_id,
                    order_id=order_id,
                    seller_id=order.seller_id,
                    old_status=old_status.value,
                    new_status=new_status.value,
                ),
            )
            await notify_customer(session, order, new_status)
            await session.commit()

        logger.info(f"Order {order_id} moved {old_status.value} -> {new_status.value}")
        return new_status
