"""Captain-facing queries: availability, delivery history, open orders and earnings."""
import logging
from collections import OrderedDict
from datetime import date, datetime, time, timedelta
from typing import List, Optional
from uuid import UUID

from sqlalchemy import select, update

from shared.database import utcnow

from .assignment import CaptainProfileNotFound
from .models import CaptainProfile, Delivery, DeliveryStatus, Order, OrderStatus
from .order_details import load_order_details
from .schemas import DailyEarnings, DeliveryView, EarningsSummary, OrderDetails

logger = logging.getLogger(__name__)

ACTIVE_DELIVERY_STATUSES = (
    DeliveryStatus.ACCEPTED.value,
    DeliveryStatus.PICKED_UP.value,
    DeliveryStatus.OUT_FOR_DELIVERY.value,
)


class CaptainService:
    """Read models and availability toggle for captains."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def set_availability(self, user_id: UUID, is_available: bool) -> bool:
        """Toggle whether the captain receives new offers. Returns the stored value."""
        async with self.session_factory() as session:
            result = await session.execute(
                update(CaptainProfile)
                .where(CaptainProfile.user_id == user_id)
                .values(is_available=is_available, updated_at=utcnow())
            )
            if result.rowcount != 1:
                await session.rollback()
                raise CaptainProfileNotFound(f"No captain profile for user {user_id}")
            await session.commit()

        logger.info(f"Captain user {user_id} is now {'available' if is_available else 'unavailable'}")
        return is_available

    async def list_deliveries(
        self,
        user_id: UUID,
        status: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> List[DeliveryView]:
        """
        Deliveries of one captain, newest first.

        ``status`` is a delivery status, or "active" for everything not yet
        delivered or cancelled. None lists all deliveries.
        """
        async with self.session_factory() as session:
            captain_id = await self._captain_id(session, user_id)

            query = select(Delivery).where(Delivery.captain_id == captain_id)
            if status == "active":
                query = query.where(Delivery.status.in_(ACTIVE_DELIVERY_STATUSES))
            elif status:
                query = query.where(Delivery.status == DeliveryStatus(status).value)

            result = await session.execute(
                query.order_by(Delivery.created_at.desc()).limit(limit).offset(offset)
            )
            return [DeliveryView.model_validate(row) for row in result.scalars().all()]

    async def list_available_orders(self, limit: int = 20, offset: int = 0) -> List[OrderDetails]:
        """Ready orders nobody has claimed yet, oldest first."""
        async with self.session_factory() as session:
            claimed = select(Delivery.order_id)
            result = await session.execute(
                select(Order.id)
                .where(Order.status == OrderStatus.READY.value, Order.id.not_in(claimed))
                .order_by(Order.created_at.asc())
                .limit(limit)
                .offset(offset)
            )
            order_ids = list(result.scalars().all())

            details = []
            for order_id in order_ids:
                item = await load_order_details(session, order_id)
                if item is not None:
                    details.append(item)
            return details

    async def earnings(self, user_id: UUID, start: date, end: date) -> EarningsSummary:
        """Delivery fees of delivered deliveries between ``start`` and ``end`` inclusive."""
        if end < start:
            raise ValueError("end date must not be before start date")

        range_start = datetime.combine(start, time.min)
        range_end = datetime.combine(end + timedelta(days=1), time.min)

        async with self.session_factory() as session:
            captain_id = await self._captain_id(session, user_id)
            result = await session.execute(
                select(Delivery.delivery_time, Delivery.delivery_fee)
                .where(
                    Delivery.captain_id == captain_id,
                    Delivery.status == DeliveryStatus.DELIVERED.value,
                    Delivery.delivery_time >= range_start,
                    Delivery.delivery_time < range_end,
                )
                .order_by(Delivery.delivery_time.asc())
            )
            rows = result.all()

        by_day: "OrderedDict[date, DailyEarnings]" = OrderedDict()
        for delivered_at, fee in rows:
            day = delivered_at.date()
            bucket = by_day.setdefault(day, DailyEarnings(day=day, amount=0.0, deliveries=0))
            bucket.amount += fee or 0.0
            bucket.deliveries += 1

        return EarningsSummary(
            total_earnings=sum(bucket.amount for bucket in by_day.values()),
            delivery_count=len(rows),
            earnings_by_day=list(by_day.values()),
        )

    @staticmethod
    async def _captain_id(session, user_id: UUID) -> UUID:
        result = await session.execute(
            select(CaptainProfile.id).where(CaptainProfile.user_id == user_id)
        )
        captain_id = result.scalar_one_or_none()
        if captain_id is None:
            raise CaptainProfileNotFound(f"No captain profile for user {user_id}")
        return captain_id
