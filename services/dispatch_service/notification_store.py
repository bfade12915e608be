"""Notification persistence and the per-user live feed."""
import logging
from typing import Awaitable, Callable, List, Sequence
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from shared.database import utcnow
from shared.events import EventType, NotificationCreatedEvent, NotificationResolvedEvent
from shared.outbox import save_event_to_outbox

from .models import Notification, NotificationStatus, NotificationType
from .schemas import NewNotification, NotificationView

logger = logging.getLogger(__name__)

NotificationHandler = Callable[[NotificationView], Awaitable[None]]


class PendingOfferNotReadable(Exception):
    """A pending delivery offer can only leave the inbox by being resolved."""

    user_message = "Accept or decline this delivery request instead"


def created_event(notification: Notification) -> NotificationCreatedEvent:
    """Change event carrying the full new row."""
    return NotificationCreatedEvent(
        aggregate_id=notification.id,
        notification_id=notification.id,
        user_id=notification.user_id,
        title=notification.title,
        message=notification.message,
        notification_type=notification.type,
        related_entity_id=notification.related_entity_id,
        status=notification.status,
        is_read=notification.is_read,
        created_at=notification.created_at,
    )


def view_from_event(event: NotificationCreatedEvent) -> NotificationView:
    return NotificationView(
        id=event.notification_id,
        user_id=event.user_id,
        title=event.title,
        message=event.message,
        type=event.notification_type,
        related_entity_id=event.related_entity_id,
        status=event.status,
        is_read=event.is_read,
        created_at=event.created_at,
    )


async def add_notifications(session: AsyncSession, notifications: Sequence[NewNotification]) -> List[Notification]:
    """
    Stage notification rows and their change events on an open session.

    The caller owns the transaction, so a pipeline step can create its seller
    notification in the same commit as the status change it reports.
    """
    now = utcnow()
    rows = [
        Notification(
            user_id=item.user_id,
            title=item.title,
            message=item.message,
            type=item.type.value,
            related_entity_id=item.related_entity_id,
            status=NotificationStatus.PENDING.value,
            is_read=False,
            created_at=now,
        )
        for item in notifications
    ]
    session.add_all(rows)
    await session.flush()

    for row in rows:
        await save_event_to_outbox(session, created_event(row))

    return rows


async def resolve_notification(
    session: AsyncSession,
    notification_id: UUID,
    status: NotificationStatus,
    only_pending: bool = True,
) -> bool:
    """
    Stage the resolution of an offer. Returns False when no row changed.

    With ``only_pending`` the first resolution wins and later ones are no-ops.
    """
    query = (
        update(Notification)
        .where(Notification.id == notification_id)
        .values(status=status.value, is_read=True, resolved_at=utcnow())
    )
    if only_pending:
        query = query.where(Notification.status == NotificationStatus.PENDING.value)

    result = await session.execute(query)
    if result.rowcount != 1:
        return False

    user_id = (
        await session.execute(select(Notification.user_id).where(Notification.id == notification_id))
    ).scalar_one()

    await save_event_to_outbox(
        session,
        NotificationResolvedEvent(
            aggregate_id=notification_id,
            notification_id=notification_id,
            user_id=user_id,
            status=status.value,
        ),
    )
    return True


class NotificationStore:
    """Queries and mutations over the notifications table, plus live subscriptions."""

    def __init__(self, session_factory, message_broker):
        self.session_factory = session_factory
        self.message_broker = message_broker

    async def insert_many(self, notifications: Sequence[NewNotification]) -> List[NotificationView]:
        """Insert all rows in a single transaction."""
        if not notifications:
            return []

        async with self.session_factory() as session:
            rows = await add_notifications(session, notifications)
            await session.commit()

        logger.info(f"Inserted {len(rows)} notification(s)")
        return [NotificationView.model_validate(row) for row in rows]

    async def list_pending(
        self,
        user_id: UUID,
        notification_type: NotificationType = NotificationType.DELIVERY,
    ) -> List[NotificationView]:
        """Unresolved notifications of one type for a user, newest first."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(Notification)
                .where(
                    Notification.user_id == user_id,
                    Notification.type == notification_type.value,
                    Notification.status == NotificationStatus.PENDING.value,
                    Notification.is_read.is_(False),
                )
                .order_by(Notification.created_at.desc())
            )
            return [NotificationView.model_validate(row) for row in result.scalars().all()]

    async def list_for_user(self, user_id: UUID, unread_only: bool = False, limit: int = 50) -> List[NotificationView]:
        """Notification bell listing, newest first."""
        query = select(Notification).where(Notification.user_id == user_id)
        if unread_only:
            query = query.where(Notification.is_read.is_(False))

        async with self.session_factory() as session:
            result = await session.execute(
                query.order_by(Notification.created_at.desc()).limit(limit)
            )
            return [NotificationView.model_validate(row) for row in result.scalars().all()]

    async def resolve(self, notification_id: UUID, status: NotificationStatus) -> bool:
        """Resolve a pending offer. Returns False if it was already resolved."""
        async with self.session_factory() as session:
            changed = await resolve_notification(session, notification_id, status)
            await session.commit()

        if changed:
            logger.info(f"Notification {notification_id} resolved as {status.value}")
        return changed

    async def mark_read(self, notification_id: UUID) -> bool:
        """
        Mark a notification as seen. Returns False when it does not exist.

        Pending delivery offers are refused with ``PendingOfferNotReadable``:
        read and resolved move together for offers, through ``resolve``.
        """
        async with self.session_factory() as session:
            notification = await session.get(Notification, notification_id)
            if notification is None:
                return False
            if (
                notification.type == NotificationType.DELIVERY.value
                and notification.status == NotificationStatus.PENDING.value
            ):
                raise PendingOfferNotReadable(f"Notification {notification_id} is a pending offer")

            notification.is_read = True
            await session.commit()
            return True

    async def subscribe(self, user_id: UUID, handler: NotificationHandler):
        """
        Deliver every notification inserted for ``user_id`` to ``handler``.

        Returns the subscription handle; the caller closes it.
        """
        async def on_event(event: NotificationCreatedEvent):
            await handler(view_from_event(event))

        return await self.message_broker.open_subscription(
            f"{EventType.NOTIFICATION_CREATED.value}.{user_id}",
            on_event,
        )
