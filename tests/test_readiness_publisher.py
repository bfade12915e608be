"""Offer fan-out when an order becomes ready."""
from uuid import uuid4

import pytest

from shared.events import EventType, OrderStatusChangedEvent

from services.dispatch_service.captain_service import CaptainService
from services.dispatch_service.models import Notification, NotificationType, OrderStatus
from services.dispatch_service.readiness_publisher import FanOutOutcome, ReadinessPublisher
from services.dispatch_service.seller_orders import SellerOrderService


@pytest.fixture
def seller_signals():
    return []


@pytest.fixture
def publisher(database, store, seller_signals):
    async def seller_signal(seller_user_id, title, description):
        seller_signals.append((seller_user_id, title, description))

    return ReadinessPublisher(database.session_factory, store, seller_signal=seller_signal)


async def test_offers_go_to_active_available_captains_only(publisher, seed, ready_order):
    seller, order = await ready_order(business_name="Koshary Abou Tarek", area="Downtown")
    eligible = await seed.captain()
    await seed.captain(is_available=False)
    await seed.captain(is_active=False)

    result = await publisher.publish_order_ready(order.id)

    assert result.outcome == FanOutOutcome.NOTIFIED
    assert result.notified_user_ids == [eligible.user_id]
    assert result.captains_notified == 1

    [offer] = await seed.notifications_for(eligible.user_id)
    assert offer.type == NotificationType.DELIVERY.value
    assert offer.related_entity_id == order.id
    assert offer.title == "New Delivery Available"
    assert offer.message == f"Order #{str(order.id)[:8]} from Koshary Abou Tarek in Downtown is ready for pickup."
    assert await seed.count(Notification) == 1


async def test_every_eligible_captain_gets_one_offer(publisher, seed, ready_order, seller_signals):
    seller, order = await ready_order()
    captains = [await seed.captain() for _ in range(3)]

    result = await publisher.publish_order_ready(order.id)

    assert sorted(result.notified_user_ids) == sorted(c.user_id for c in captains)
    for captain in captains:
        assert len(await seed.notifications_for(captain.user_id)) == 1
    assert seller_signals == [(seller.user_id, "Captains Notified", "3 captains have been notified about the ready order.")]


async def test_no_captains_signals_seller_and_creates_nothing(publisher, seed, ready_order, seller_signals):
    seller, order = await ready_order()
    await seed.captain(is_available=False)

    result = await publisher.publish_order_ready(order.id)

    assert result.outcome == FanOutOutcome.NO_CAPTAINS
    assert result.captains_notified == 0
    assert await seed.count(Notification) == 0
    assert seller_signals[0][:2] == (seller.user_id, "No Available Captains")


async def test_missing_order(publisher, seed):
    await seed.captain()

    result = await publisher.publish_order_ready(uuid4())

    assert result.outcome == FanOutOutcome.ORDER_NOT_FOUND
    assert await seed.count(Notification) == 0


async def test_missing_seller_falls_back_to_unknown_name(publisher, seed):
    address = await seed.address(area="Maadi")
    order = await seed.order(None, address)
    captain = await seed.captain()

    await publisher.publish_order_ready(order.id)

    [offer] = await seed.notifications_for(captain.user_id)
    assert "from Unknown Restaurant in Maadi" in offer.message


async def test_captains_available_later_are_not_backfilled(publisher, seed, ready_order, database):
    seller, order = await ready_order()
    early = await seed.captain()
    late = await seed.captain(is_available=False)

    await publisher.publish_order_ready(order.id)

    await CaptainService(database.session_factory).set_availability(late.user_id, True)

    assert len(await seed.notifications_for(early.user_id)) == 1
    assert await seed.notifications_for(late.user_id) == []


async def test_repeated_ready_events_repeat_the_fan_out(publisher, seed, ready_order):
    seller, order = await ready_order()
    captain = await seed.captain()

    await publisher.publish_order_ready(order.id)
    await publisher.publish_order_ready(order.id)

    assert len(await seed.notifications_for(captain.user_id)) == 2


async def test_only_transitions_into_ready_fan_out(publisher, seed, ready_order):
    seller, order = await ready_order(status=OrderStatus.PREPARING)
    captain = await seed.captain()

    await publisher.handle_order_status_changed(OrderStatusChangedEvent(
        aggregate_id=order.id,
        order_id=order.id,
        seller_id=seller.id,
        old_status=OrderStatus.PENDING.value,
        new_status=OrderStatus.PREPARING.value,
    ))

    assert await seed.notifications_for(captain.user_id) == []


async def test_seller_marking_ready_reaches_captains_through_the_feed(
    publisher, database, broker, relay, seed, ready_order
):
    await broker.subscribe_to_event(
        EventType.ORDER_STATUS_CHANGED,
        "dispatch_service_order_status",
        publisher.handle_order_status_changed,
    )
    seller, order = await ready_order(status=OrderStatus.PREPARING)
    captain = await seed.captain()

    await SellerOrderService(database.session_factory).update_status(order.id, OrderStatus.READY)
    assert await seed.notifications_for(captain.user_id) == []

    await relay()

    [offer] = await seed.notifications_for(captain.user_id)
    assert offer.related_entity_id == order.id


@pytest.mark.parametrize("status", [OrderStatus.CANCELLED, OrderStatus.ACCEPTED_BY_CAPTAIN])
async def test_order_no_longer_ready_is_not_offered(publisher, seed, ready_order, seller_signals, status):
    seller, order = await ready_order(status=status)
    captain = await seed.captain()

    result = await publisher.publish_order_ready(order.id)

    assert result.outcome == FanOutOutcome.ORDER_NOT_READY
    assert await seed.notifications_for(captain.user_id) == []
    assert seller_signals == []


async def test_cancel_before_relay_suppresses_offers(publisher, database, broker, relay, seed, ready_order):
    await broker.subscribe_to_event(
        EventType.ORDER_STATUS_CHANGED,
        "dispatch_service_order_status",
        publisher.handle_order_status_changed,
    )
    seller, order = await ready_order(status=OrderStatus.PREPARING)
    captain = await seed.captain()
    orders = SellerOrderService(database.session_factory)

    await orders.update_status(order.id, OrderStatus.READY)
    await orders.update_status(order.id, OrderStatus.CANCELLED)
    await relay()

    assert await seed.notifications_for(captain.user_id) == []
