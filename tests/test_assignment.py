"""Claiming orders and advancing deliveries."""
import asyncio
from uuid import uuid4

import pytest

from services.dispatch_service.assignment import (
    CaptainProfileNotFound,
    DeliveryNotFound,
    InvalidTransition,
    OrderNotClaimable,
    OrderNotFound,
    next_delivery_status,
)
from services.dispatch_service.models import (
    CaptainProfile,
    Delivery,
    DeliveryStatus,
    Notification,
    NotificationStatus,
    NotificationType,
    Order,
    OrderStatus,
)


async def test_accept_claims_order_in_one_unit(pipeline, seed, ready_order):
    seller, order = await ready_order()
    captain = await seed.captain()
    offer = await seed.offer(captain.user_id, order.id)

    delivery = await pipeline.accept(captain.user_id, order.id, offer.id)

    assert delivery.order_id == order.id
    assert delivery.captain_id == captain.id
    assert delivery.status == DeliveryStatus.ACCEPTED.value
    assert delivery.delivery_fee == order.delivery_fee
    assert delivery.pickup_time is None and delivery.delivery_time is None

    assert (await seed.get(Order, order.id)).status == OrderStatus.ACCEPTED_BY_CAPTAIN.value
    assert (await seed.get(Notification, offer.id)).status == NotificationStatus.ACCEPTED.value

    [notice] = await seed.notifications_for(seller.user_id)
    assert notice.title == "Captain Assigned"
    assert notice.type == NotificationType.ORDER.value
    assert str(order.id)[:8] in notice.message
    assert str(captain.id)[:8] in notice.message


async def test_accept_without_profile_changes_nothing(pipeline, seed, ready_order):
    seller, order = await ready_order()

    with pytest.raises(CaptainProfileNotFound):
        await pipeline.accept(uuid4(), order.id)

    assert (await seed.get(Order, order.id)).status == OrderStatus.READY.value
    assert await seed.count(Delivery) == 0
    assert await seed.notifications_for(seller.user_id) == []


async def test_accept_unknown_order(pipeline, seed):
    captain = await seed.captain()

    with pytest.raises(OrderNotFound):
        await pipeline.accept(captain.user_id, uuid4())


@pytest.mark.parametrize("status", [OrderStatus.PREPARING, OrderStatus.CANCELLED, OrderStatus.ACCEPTED_BY_CAPTAIN])
async def test_accept_requires_ready_order(pipeline, seed, ready_order, status):
    seller, order = await ready_order(status=status)
    captain = await seed.captain()
    offer = await seed.offer(captain.user_id, order.id)

    with pytest.raises(OrderNotClaimable):
        await pipeline.accept(captain.user_id, order.id, offer.id)

    assert (await seed.get(Order, order.id)).status == status.value
    assert await seed.count(Delivery) == 0
    # The failed claim rolls back the offer resolution too
    assert (await seed.get(Notification, offer.id)).status == NotificationStatus.PENDING.value


async def test_second_claim_is_rejected(pipeline, seed, ready_order):
    seller, order = await ready_order()
    first, second = await seed.captain(), await seed.captain()

    await pipeline.accept(first.user_id, order.id)
    with pytest.raises(OrderNotClaimable) as exc_info:
        await pipeline.accept(second.user_id, order.id)

    assert exc_info.value.user_message == "This order is no longer available"
    assert await seed.count(Delivery) == 1
    assert len(await seed.notifications_for(seller.user_id)) == 1


async def test_concurrent_claims_produce_one_delivery(pipeline, seed, ready_order):
    seller, order = await ready_order()
    captains = [await seed.captain() for _ in range(4)]

    results = await asyncio.gather(
        *(pipeline.accept(captain.user_id, order.id) for captain in captains),
        return_exceptions=True,
    )

    winners = [r for r in results if not isinstance(r, BaseException)]
    assert len(winners) == 1
    assert await seed.count(Delivery, Delivery.order_id == order.id) == 1
    assert (await seed.get(Order, order.id)).status == OrderStatus.ACCEPTED_BY_CAPTAIN.value
    assert len(await seed.notifications_for(seller.user_id)) == 1


async def test_full_delivery_lifecycle(pipeline, seed, ready_order):
    seller, order = await ready_order()
    captain = await seed.captain()
    delivery = await pipeline.accept(captain.user_id, order.id)

    picked = await pipeline.mark_picked_up(delivery.id, captain.user_id)
    assert picked.status == DeliveryStatus.PICKED_UP.value
    assert picked.pickup_time is not None
    assert (await seed.get(Order, order.id)).status == OrderStatus.PICKED_UP.value

    out = await pipeline.mark_out_for_delivery(delivery.id, captain.user_id)
    assert out.status == DeliveryStatus.OUT_FOR_DELIVERY.value
    assert (await seed.get(Order, order.id)).status == OrderStatus.OUT_FOR_DELIVERY.value

    done = await pipeline.mark_delivered(delivery.id, captain.user_id)
    assert done.status == DeliveryStatus.DELIVERED.value
    assert done.delivery_time is not None
    assert (await seed.get(Order, order.id)).status == OrderStatus.DELIVERED.value
    assert (await seed.get(CaptainProfile, captain.id)).total_deliveries == 1

    titles = [n.title for n in await seed.notifications_for(seller.user_id)]
    assert titles == ["Captain Assigned", "Order Picked Up", "Out For Delivery", "Order Delivered"]

    customer_notices = await seed.notifications_for(order.customer_id)
    assert [n.title for n in customer_notices] == ["Order Out for Delivery", "Order Completed"]
    assert all(n.type == "order" and n.related_entity_id == order.id for n in customer_notices)


async def test_delivery_count_increments_once(pipeline, seed, ready_order):
    seller, order = await ready_order()
    captain = await seed.captain()
    delivery = await pipeline.accept(captain.user_id, order.id)
    for target in (DeliveryStatus.PICKED_UP, DeliveryStatus.OUT_FOR_DELIVERY, DeliveryStatus.DELIVERED):
        await pipeline.advance_to(delivery.id, captain.user_id, target)

    with pytest.raises(InvalidTransition):
        await pipeline.mark_delivered(delivery.id, captain.user_id)

    assert (await seed.get(CaptainProfile, captain.id)).total_deliveries == 1
    assert len(await seed.notifications_for(seller.user_id)) == 4


async def test_skipping_ahead_is_rejected(pipeline, seed, ready_order):
    seller, order = await ready_order()
    captain = await seed.captain()
    delivery = await pipeline.accept(captain.user_id, order.id)

    with pytest.raises(InvalidTransition):
        await pipeline.mark_delivered(delivery.id, captain.user_id)
    with pytest.raises(InvalidTransition):
        await pipeline.mark_out_for_delivery(delivery.id, captain.user_id)

    assert (await seed.get(Delivery, delivery.id)).status == DeliveryStatus.ACCEPTED.value
    assert (await seed.get(Order, order.id)).status == OrderStatus.ACCEPTED_BY_CAPTAIN.value


async def test_only_assigned_captain_can_advance(pipeline, seed, ready_order):
    seller, order = await ready_order()
    owner, stranger = await seed.captain(), await seed.captain()
    delivery = await pipeline.accept(owner.user_id, order.id)

    with pytest.raises(DeliveryNotFound):
        await pipeline.mark_picked_up(delivery.id, stranger.user_id)

    assert (await seed.get(Delivery, delivery.id)).status == DeliveryStatus.ACCEPTED.value


async def test_advance_to_rejects_non_captain_targets(pipeline, seed, ready_order):
    seller, order = await ready_order()
    captain = await seed.captain()
    delivery = await pipeline.accept(captain.user_id, order.id)

    for target in (DeliveryStatus.ACCEPTED, DeliveryStatus.CANCELLED):
        with pytest.raises(InvalidTransition):
            await pipeline.advance_to(delivery.id, captain.user_id, target)


async def test_order_cancelled_underneath_blocks_pickup(pipeline, seed, ready_order, database):
    seller, order = await ready_order()
    captain = await seed.captain()
    delivery = await pipeline.accept(captain.user_id, order.id)

    async with database.session_factory() as session:
        row = await session.get(Order, order.id)
        row.status = OrderStatus.CANCELLED.value
        await session.commit()

    with pytest.raises(InvalidTransition):
        await pipeline.mark_picked_up(delivery.id, captain.user_id)

    assert (await seed.get(Delivery, delivery.id)).status == DeliveryStatus.ACCEPTED.value


def test_next_delivery_status():
    assert next_delivery_status(DeliveryStatus.ACCEPTED) == DeliveryStatus.PICKED_UP
    assert next_delivery_status(DeliveryStatus.PICKED_UP) == DeliveryStatus.OUT_FOR_DELIVERY
    assert next_delivery_status(DeliveryStatus.OUT_FOR_DELIVERY) == DeliveryStatus.DELIVERED
    assert next_delivery_status(DeliveryStatus.DELIVERED) is None
    assert next_delivery_status("cancelled") is None
