"""Notification persistence, resolution and the per-user live feed."""
from datetime import timedelta
from uuid import uuid4

import pytest

from shared.database import utcnow
from shared.outbox import OutboxMessage

from services.dispatch_service.models import Notification, NotificationStatus, NotificationType
from services.dispatch_service.notification_store import PendingOfferNotReadable
from services.dispatch_service.schemas import NewNotification


def new_offer(user_id, order_id=None):
    return NewNotification(
        user_id=user_id,
        title="New Delivery Available",
        message="Order #12345678 from Kitchen is ready for pickup.",
        type=NotificationType.DELIVERY,
        related_entity_id=order_id or uuid4(),
    )


async def test_insert_many_writes_rows_and_one_event_each(store, seed):
    users = [uuid4() for _ in range(3)]
    views = await store.insert_many([new_offer(user_id) for user_id in users])

    assert [view.user_id for view in views] == users
    assert all(view.status == NotificationStatus.PENDING.value for view in views)
    assert all(not view.is_read for view in views)
    assert await seed.count(Notification) == 3
    assert await seed.count(OutboxMessage, OutboxMessage.event_type == "notification.created") == 3


async def test_insert_many_with_nothing_is_a_noop(store, seed):
    assert await store.insert_many([]) == []
    assert await seed.count(Notification) == 0


async def test_list_pending_is_newest_first_and_unresolved_only(store, seed):
    user_id = uuid4()
    order_id = uuid4()
    now = utcnow()
    older = await seed.offer(user_id, order_id, created_at=now - timedelta(seconds=30))
    newer = await seed.offer(user_id, order_id, created_at=now - timedelta(seconds=5))
    await seed.offer(user_id, order_id, status=NotificationStatus.DECLINED)
    await seed.offer(uuid4(), order_id)
    await store.insert_many([
        NewNotification(user_id=user_id, title="Promo", message="Free delivery", type=NotificationType.PROMO)
    ])

    pending = await store.list_pending(user_id)

    assert [view.id for view in pending] == [newer.id, older.id]


async def test_resolve_moves_only_pending_rows(store, seed):
    offer = await seed.offer(uuid4(), uuid4())

    assert await store.resolve(offer.id, NotificationStatus.ACCEPTED) is True
    assert await store.resolve(offer.id, NotificationStatus.EXPIRED) is False

    row = await seed.get(Notification, offer.id)
    assert row.status == NotificationStatus.ACCEPTED.value
    assert row.is_read is True
    assert row.resolved_at is not None
    assert await seed.count(OutboxMessage, OutboxMessage.event_type == "notification.resolved") == 1


async def test_resolve_unknown_notification(store):
    assert await store.resolve(uuid4(), NotificationStatus.DECLINED) is False


async def test_mark_read_and_bell_listing(store):
    user_id = uuid4()
    [message] = await store.insert_many([
        NewNotification(user_id=user_id, title="Order Delivered", message="Done", type=NotificationType.ORDER)
    ])

    assert [view.id for view in await store.list_for_user(user_id, unread_only=True)] == [message.id]
    assert await store.mark_read(message.id) is True
    assert await store.list_for_user(user_id, unread_only=True) == []
    assert len(await store.list_for_user(user_id)) == 1
    assert await store.mark_read(uuid4()) is False


async def test_pending_offer_cannot_be_marked_read(store, seed):
    user_id = uuid4()
    [offer] = await store.insert_many([new_offer(user_id)])

    with pytest.raises(PendingOfferNotReadable):
        await store.mark_read(offer.id)

    row = await seed.get(Notification, offer.id)
    assert row.is_read is False
    assert row.status == NotificationStatus.PENDING.value
    assert [view.id for view in await store.list_pending(user_id)] == [offer.id]


async def test_resolved_offer_can_be_marked_read(store, seed):
    [offer] = await store.insert_many([new_offer(uuid4())])
    await store.resolve(offer.id, NotificationStatus.DECLINED)

    assert await store.mark_read(offer.id) is True
    assert (await seed.get(Notification, offer.id)).status == NotificationStatus.DECLINED.value


async def test_subscription_delivers_own_rows_only(store, relay):
    user_id, other_id = uuid4(), uuid4()
    received = []

    async def handler(view):
        received.append(view)

    subscription = await store.subscribe(user_id, handler)
    await store.insert_many([new_offer(user_id), new_offer(other_id)])
    await relay()

    assert [view.user_id for view in received] == [user_id]
    assert received[0].is_offer
    assert received[0].status == NotificationStatus.PENDING.value

    await subscription.close()
    await store.insert_many([new_offer(user_id)])
    await relay()

    assert len(received) == 1
