"""Fan-out of delivery offers when an order becomes ready."""
import logging
from enum import Enum
from typing import Awaitable, Callable, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field
from sqlalchemy import select

from shared.events import OrderStatusChangedEvent

from .models import CaptainProfile, NotificationType, OrderStatus
from .notification_store import NotificationStore
from .order_details import load_order_details, order_ref
from .schemas import NewNotification, OrderDetails

logger = logging.getLogger(__name__)


class FanOutOutcome(str, Enum):
    NOTIFIED = "notified"
    NO_CAPTAINS = "no_captains"
    ORDER_NOT_FOUND = "order_not_found"
    ORDER_NOT_READY = "order_not_ready"


class FanOutResult(BaseModel):
    """What a readiness event produced, reported back to the seller."""
    order_id: UUID
    outcome: FanOutOutcome
    notified_user_ids: List[UUID] = Field(default_factory=list)

    @property
    def captains_notified(self) -> int:
        return len(self.notified_user_ids)


SellerSignal = Callable[[UUID, str, str], Awaitable[None]]


def offer_message(details: OrderDetails) -> str:
    message = f"Order #{order_ref(details.order_id)} from {details.seller_name}"
    if details.locality:
        message += f" in {details.locality}"
    return message + " is ready for pickup."


class ReadinessPublisher:
    """Creates one delivery offer per eligible captain for a ready order."""

    def __init__(
        self,
        session_factory,
        store: NotificationStore,
        seller_signal: Optional[SellerSignal] = None,
    ):
        self.session_factory = session_factory
        self.store = store
        self.seller_signal = seller_signal

    async def publish_order_ready(self, order_id: UUID) -> FanOutResult:
        """
        Offer the order to every captain that is active and available right now.

        Nothing is sent unless the order is still ready when this runs.
        Captains who become available afterwards never receive this offer.
        Repeated calls for the same order create repeated offers.
        """
        async with self.session_factory() as session:
            details = await load_order_details(session, order_id)
            if details is None:
                logger.error(f"Order {order_id} not found for notifying captains")
                return FanOutResult(order_id=order_id, outcome=FanOutOutcome.ORDER_NOT_FOUND)

            # The seller may have cancelled, or a captain claimed it, before the event arrived
            if details.status != OrderStatus.READY.value:
                logger.info(f"Order {order_id} is {details.status}, not offering it to captains")
                return FanOutResult(order_id=order_id, outcome=FanOutOutcome.ORDER_NOT_READY)

            # Broadcast to all eligible captains; service areas are not filtered
            result = await session.execute(
                select(CaptainProfile.user_id).where(
                    CaptainProfile.is_active.is_(True),
                    CaptainProfile.is_available.is_(True),
                )
            )
            captain_user_ids = list(result.scalars().all())

        if not captain_user_ids:
            logger.info(f"No available captains for order {order_id}")
            await self._signal_seller(
                details,
                "No Available Captains",
                "There are currently no available captains to notify about this delivery.",
            )
            return FanOutResult(order_id=order_id, outcome=FanOutOutcome.NO_CAPTAINS)

        message = offer_message(details)
        await self.store.insert_many([
            NewNotification(
                user_id=user_id,
                title="New Delivery Available",
                message=message,
                type=NotificationType.DELIVERY,
                related_entity_id=order_id,
            )
            for user_id in captain_user_ids
        ])

        logger.info(f"Notified {len(captain_user_ids)} captains about order {order_id}")
        await self._signal_seller(
            details,
            "Captains Notified",
            f"{len(captain_user_ids)} captains have been notified about the ready order.",
        )

        return FanOutResult(
            order_id=order_id,
            outcome=FanOutOutcome.NOTIFIED,
            notified_user_ids=captain_user_ids,
        )

    async def handle_order_status_changed(self, event: OrderStatusChangedEvent):
        """Change-feed entry point: only transitions into ready fan out."""
        if event.new_status != OrderStatus.READY.value:
            return
        logger.info(f"Order {event.order_id} is now ready, notifying captains...")
        await self.publish_order_ready(event.order_id)

    async def _signal_seller(self, details: OrderDetails, title: str, description: str):
        if self.seller_signal is None or details.seller_user_id is None:
            return
        try:
            await self.seller_signal(details.seller_user_id, title, description)
        except Exception as e:
            logger.warning(f"Could not deliver seller signal for order {details.order_id}: {str(e)}")
