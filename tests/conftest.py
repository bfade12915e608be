"""Shared fixtures: a throwaway SQLite database, the in-process broker and seed helpers."""
import asyncio
from datetime import timedelta
from typing import List
from uuid import uuid4

import pytest
from sqlalchemy import func, select

from shared.database import Database, utcnow
from shared.local_broker import LocalBroker
from shared.outbox import OutboxPublisher

from services.dispatch_service.assignment import DeliveryPipeline
from services.dispatch_service.captain_session import CaptainNotificationSession
from services.dispatch_service.models import (
    Address,
    CaptainProfile,
    Delivery,
    DeliveryStatus,
    Notification,
    NotificationStatus,
    NotificationType,
    Order,
    OrderStatus,
    SellerProfile,
)
from services.dispatch_service.notification_store import NotificationStore
from services.dispatch_service.order_details import OrderDetailsLoader
from services.dispatch_service.schemas import NotificationView, SessionSignal


class FakeClock:
    """Settable clock for sessions and schedulers."""

    def __init__(self, now=None):
        self.now = now or utcnow()

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class Seeder:
    """Writes fixture rows straight to the database."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def _add(self, row):
        async with self.session_factory() as session:
            session.add(row)
            await session.commit()
        return row

    async def seller(self, business_name="Mama Nadia's Kitchen", user_id=None):
        return await self._add(SellerProfile(user_id=user_id or uuid4(), business_name=business_name))

    async def address(self, area="Zamalek", city="Cairo"):
        return await self._add(Address(user_id=uuid4(), street="26th of July St", area=area, city=city))

    async def order(
        self,
        seller,
        address=None,
        status=OrderStatus.READY,
        total=120.0,
        delivery_fee=15.0,
        created_at=None,
    ):
        return await self._add(Order(
            customer_id=uuid4(),
            seller_id=seller.id if seller is not None else uuid4(),
            address_id=address.id if address is not None else None,
            status=status.value,
            total=total,
            delivery_fee=delivery_fee,
            created_at=created_at or utcnow(),
        ))

    async def captain(self, is_active=True, is_available=True, user_id=None):
        return await self._add(CaptainProfile(
            user_id=user_id or uuid4(),
            vehicle_type="motorcycle",
            service_areas=["Zamalek"],
            is_active=is_active,
            is_available=is_available,
            verification_status="verified",
        ))

    async def offer(self, user_id, order_id, created_at=None, status=NotificationStatus.PENDING) -> NotificationView:
        row = await self._add(Notification(
            user_id=user_id,
            title="New Delivery Available",
            message=f"Order #{str(order_id)[:8]} is ready for pickup.",
            type=NotificationType.DELIVERY.value,
            related_entity_id=order_id,
            status=status.value,
            is_read=status != NotificationStatus.PENDING,
            created_at=created_at or utcnow(),
        ))
        return NotificationView.model_validate(row)

    async def delivery(self, captain, order, status=DeliveryStatus.DELIVERED, delivery_fee=15.0, delivery_time=None):
        return await self._add(Delivery(
            order_id=order.id,
            captain_id=captain.id,
            status=status.value,
            delivery_fee=delivery_fee,
            delivery_time=delivery_time,
        ))

    async def get(self, model, row_id):
        async with self.session_factory() as session:
            return await session.get(model, row_id)

    async def count(self, model, *criteria) -> int:
        async with self.session_factory() as session:
            result = await session.execute(select(func.count()).select_from(model).where(*criteria))
            return result.scalar_one()

    async def notifications_for(self, user_id) -> List[Notification]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Notification)
                .where(Notification.user_id == user_id)
                .order_by(Notification.created_at)
            )
            return list(result.scalars().all())


@pytest.fixture
async def database(tmp_path):
    db = Database(f"sqlite+aiosqlite:///{tmp_path / 'dispatch.db'}")
    await db.create_tables()
    yield db
    await db.close()


@pytest.fixture
async def broker():
    local = LocalBroker()
    await local.connect()
    yield local
    await local.disconnect()


@pytest.fixture
def relay(database, broker):
    """Drains the outbox into the broker until nothing is left, including follow-up events."""
    publisher = OutboxPublisher(database.session_factory, broker)

    async def drain() -> int:
        total = 0
        while True:
            published = await publisher.publish_pending()
            if published == 0:
                return total
            total += published

    return drain


@pytest.fixture
def seed(database):
    return Seeder(database.session_factory)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(database, broker):
    return NotificationStore(database.session_factory, broker)


@pytest.fixture
def pipeline(database):
    return DeliveryPipeline(database.session_factory)


@pytest.fixture
async def make_session(database, store, pipeline):
    """Builds courier sessions and closes whatever a test left open."""
    opened: List[CaptainNotificationSession] = []

    def factory(user_id, clock=None, next_offer_delay=0.0, signal_buffer=100) -> CaptainNotificationSession:
        session = CaptainNotificationSession(
            user_id,
            store,
            pipeline,
            OrderDetailsLoader(database.session_factory),
            sweep_interval=3600,
            next_offer_delay=next_offer_delay,
            clock=clock or utcnow,
            signal_buffer=signal_buffer,
        )
        opened.append(session)
        return session

    yield factory

    for session in opened:
        await session.close()


@pytest.fixture
def eventually():
    """Polls ``predicate`` until it holds or the timeout runs out."""

    async def wait(predicate, timeout: float = 2.0):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not reached in time")
            await asyncio.sleep(0.01)

    return wait


def drain_signals(session: CaptainNotificationSession) -> List[SessionSignal]:
    signals = []
    while not session.signals.empty():
        signals.append(session.signals.get_nowait())
    return signals


@pytest.fixture
def signals():
    return drain_signals


@pytest.fixture
def ready_order(seed):
    """Seller, address and a ready order in one call."""

    async def create(business_name="Mama Nadia's Kitchen", area="Zamalek", status=OrderStatus.READY, created_at=None):
        seller = await seed.seller(business_name)
        address = await seed.address(area=area)
        order = await seed.order(seller, address, status=status, created_at=created_at)
        return seller, order

    return create
