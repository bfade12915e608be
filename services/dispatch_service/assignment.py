"""
Delivery assignment and status pipeline.

Each operation is one database transaction covering the order row, the
delivery row, the seller notification and the change events describing them.
Every row update is conditional on the expected current status, so two
actors racing on the same order cannot both succeed: the first commit wins and
the other sees zero affected rows (or the unique order_id on deliveries) and
rolls back as a whole.
"""
import logging
from typing import Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from shared.database import utcnow
from shared.events import DeliveryStatusChangedEvent, OrderStatusChangedEvent
from shared.outbox import save_event_to_outbox

from .customer_notifier import notify_customer
from .models import (
    CaptainProfile,
    Delivery,
    DeliveryStatus,
    NotificationStatus,
    Order,
    OrderStatus,
)
from .notification_store import resolve_notification
from .schemas import DeliveryView
from .seller_notifier import SellerNotice, notify_seller

logger = logging.getLogger(__name__)


class AssignmentError(Exception):
    """Base for pipeline failures. ``user_message`` is safe to show to a courier."""

    user_message = "Failed to update delivery status"


class CaptainProfileNotFound(AssignmentError):
    user_message = "Captain profile not found"


class OrderNotFound(AssignmentError):
    user_message = "Order details not available"


class OrderNotClaimable(AssignmentError):
    user_message = "This order is no longer available"


class DeliveryNotFound(AssignmentError):
    user_message = "Delivery not found"


class InvalidTransition(AssignmentError):
    user_message = "This status change is not allowed"


# The single legal next step for each delivery status
NEXT_DELIVERY_STATUS = {
    DeliveryStatus.ACCEPTED: DeliveryStatus.PICKED_UP,
    DeliveryStatus.PICKED_UP: DeliveryStatus.OUT_FOR_DELIVERY,
    DeliveryStatus.OUT_FOR_DELIVERY: DeliveryStatus.DELIVERED,
}

ORDER_STATUS_FOR_DELIVERY = {
    DeliveryStatus.ACCEPTED: OrderStatus.ACCEPTED_BY_CAPTAIN,
    DeliveryStatus.PICKED_UP: OrderStatus.PICKED_UP,
    DeliveryStatus.OUT_FOR_DELIVERY: OrderStatus.OUT_FOR_DELIVERY,
    DeliveryStatus.DELIVERED: OrderStatus.DELIVERED,
}

SELLER_NOTICE_FOR_DELIVERY = {
    DeliveryStatus.PICKED_UP: SellerNotice.ORDER_PICKED_UP,
    DeliveryStatus.OUT_FOR_DELIVERY: SellerNotice.ORDER_OUT_FOR_DELIVERY,
    DeliveryStatus.DELIVERED: SellerNotice.ORDER_DELIVERED,
}


def next_delivery_status(status: DeliveryStatus) -> Optional[DeliveryStatus]:
    """Next status a captain may move to, or None when the delivery is finished."""
    return NEXT_DELIVERY_STATUS.get(DeliveryStatus(status))


class DeliveryPipeline:
    """Claim and status transitions for captain deliveries."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def accept(
        self,
        user_id: UUID,
        order_id: UUID,
        offer_id: Optional[UUID] = None,
    ) -> DeliveryView:
        """
        Claim a ready order for the captain behind ``user_id``.

        Moves the order to accepted_by_captain, creates the delivery, notifies
        the seller and marks the originating offer accepted, all or nothing.
        """
        async with self.session_factory() as session:
            captain_id = (await self._captain_for_user(session, user_id)).id

            order = await session.get(Order, order_id)
            if order is None:
                raise OrderNotFound(f"Order {order_id} not found")

            now = utcnow()
            result = await session.execute(
                update(Order)
                .where(Order.id == order_id, Order.status == OrderStatus.READY.value)
                .values(status=OrderStatus.ACCEPTED_BY_CAPTAIN.value, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await session.rollback()
                logger.info(f"Order {order_id} is no longer ready, claim by captain {captain_id} rejected")
                raise OrderNotClaimable(f"Order {order_id} is not ready")

            delivery = Delivery(
                order_id=order_id,
                captain_id=captain_id,
                status=DeliveryStatus.ACCEPTED.value,
                delivery_fee=order.delivery_fee or 0.0,
                pickup_time=None,
                delivery_time=None,
                created_at=now,
                updated_at=now,
            )
            session.add(delivery)
            try:
                await session.flush()
            except IntegrityError:
                await session.rollback()
                logger.warning(f"Order {order_id} already has a delivery, claim rolled back")
                raise OrderNotClaimable(f"Order {order_id} already claimed")

            await save_event_to_outbox(
                session,
                OrderStatusChangedEvent(
                    aggregate_id=order_id,
                    order_id=order_id,
                    seller_id=order.seller_id,
                    old_status=OrderStatus.READY.value,
                    new_status=OrderStatus.ACCEPTED_BY_CAPTAIN.value,
                ),
            )
            await save_event_to_outbox(session, self._delivery_event(delivery))

            await notify_seller(session, order, captain_id, SellerNotice.CAPTAIN_ASSIGNED)

            if offer_id is not None:
                # The claim is authoritative even if a timer resolved the offer meanwhile
                await resolve_notification(session, offer_id, NotificationStatus.ACCEPTED, only_pending=False)

            await session.commit()

            logger.info(f"Captain {captain_id} accepted order {order_id} (delivery {delivery.id})")
            return DeliveryView.model_validate(delivery)

    async def mark_picked_up(self, delivery_id: UUID, user_id: UUID) -> DeliveryView:
        return await self._advance(delivery_id, user_id, DeliveryStatus.PICKED_UP)

    async def mark_out_for_delivery(self, delivery_id: UUID, user_id: UUID) -> DeliveryView:
        return await self._advance(delivery_id, user_id, DeliveryStatus.OUT_FOR_DELIVERY)

    async def mark_delivered(self, delivery_id: UUID, user_id: UUID) -> DeliveryView:
        return await self._advance(delivery_id, user_id, DeliveryStatus.DELIVERED)

    async def advance_to(self, delivery_id: UUID, user_id: UUID, target: DeliveryStatus) -> DeliveryView:
        """Dispatch to the transition named by ``target``."""
        target = DeliveryStatus(target)
        if target not in SELLER_NOTICE_FOR_DELIVERY:
            raise InvalidTransition(f"Captains cannot move a delivery to {target.value}")
        return await self._advance(delivery_id, user_id, target)

    async def _advance(self, delivery_id: UUID, user_id: UUID, target: DeliveryStatus) -> DeliveryView:
        async with self.session_factory() as session:
            captain_id = (await self._captain_for_user(session, user_id)).id

            result = await session.execute(
                select(Delivery).where(Delivery.id == delivery_id, Delivery.captain_id == captain_id)
            )
            delivery = result.scalar_one_or_none()
            if delivery is None:
                raise DeliveryNotFound(f"Delivery {delivery_id} not found for captain {captain_id}")

            current = DeliveryStatus(delivery.status)
            if next_delivery_status(current) != target:
                raise InvalidTransition(f"Cannot move delivery from {current.value} to {target.value}")

            now = utcnow()
            values = {"status": target.value, "updated_at": now}
            if target == DeliveryStatus.PICKED_UP:
                values["pickup_time"] = now
            elif target == DeliveryStatus.DELIVERED:
                values["delivery_time"] = now

            delivery_result = await session.execute(
                update(Delivery)
                .where(Delivery.id == delivery_id, Delivery.status == current.value)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            order_from = ORDER_STATUS_FOR_DELIVERY[current]
            order_to = ORDER_STATUS_FOR_DELIVERY[target]
            order_result = await session.execute(
                update(Order)
                .where(Order.id == delivery.order_id, Order.status == order_from.value)
                .values(status=order_to.value, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if delivery_result.rowcount != 1 or order_result.rowcount != 1:
                await session.rollback()
                raise InvalidTransition(
                    f"Delivery {delivery_id} or its order changed concurrently, {target.value} not applied"
                )

            if target == DeliveryStatus.DELIVERED:
                await session.execute(
                    update(CaptainProfile)
                    .where(CaptainProfile.id == captain_id)
                    .values(total_deliveries=CaptainProfile.total_deliveries + 1)
                    .execution_options(synchronize_session=False)
                )

            order = await session.get(Order, delivery.order_id)
            await notify_seller(session, order, captain_id, SELLER_NOTICE_FOR_DELIVERY[target])
            await notify_customer(session, order, order_to)

            await session.refresh(delivery)
            await save_event_to_outbox(
                session,
                OrderStatusChangedEvent(
                    aggregate_id=order.id,
                    order_id=order.id,
                    seller_id=order.seller_id,
                    old_status=order_from.value,
                    new_status=order_to.value,
                ),
            )
            await save_event_to_outbox(session, self._delivery_event(delivery))

            await session.commit()

            logger.info(f"Delivery {delivery_id} moved {current.value} -> {target.value}")
            return DeliveryView.model_validate(delivery)

    async def _captain_for_user(self, session: AsyncSession, user_id: UUID) -> CaptainProfile:
        result = await session.execute(
            select(CaptainProfile).where(CaptainProfile.user_id == user_id)
        )
        captain = result.scalar_one_or_none()
        if captain is None:
            logger.error(f"No captain profile for user {user_id}")
            raise CaptainProfileNotFound(f"No captain profile for user {user_id}")
        return captain

    @staticmethod
    def _delivery_event(delivery: Delivery) -> DeliveryStatusChangedEvent:
        return DeliveryStatusChangedEvent(
            aggregate_id=delivery.id,
            delivery_id=delivery.id,
            order_id=delivery.order_id,
            captain_id=delivery.captain_id,
            status=delivery.status,
        )
