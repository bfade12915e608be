"""
Courier notification session.

One session per connected captain. It keeps the captain's active delivery
offers (newest first), presents one of them at a time together with its order
snapshot, and runs the Load / Receive / Accept / Decline / Expire transitions.
Operator-facing feedback (dialogs, toasts, vibration cues) is pushed onto
``signals`` for the connection layer to forward.
"""
import asyncio
import logging
from typing import Awaitable, Callable, List, Optional
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError

from shared.database import utcnow

from .assignment import AssignmentError, DeliveryPipeline
from .expiry import Clock, ExpiryScheduler, is_expired, is_offer_active
from .models import NotificationStatus
from .notification_store import NotificationStore
from .schemas import (
    NotificationView,
    OrderDetails,
    SessionSignal,
    SessionSnapshot,
    SignalKind,
)

logger = logging.getLogger(__name__)

DetailsLoader = Callable[[UUID], Awaitable[Optional[OrderDetails]]]


class CaptainNotificationSession:
    """Per-captain state machine over active delivery offers."""

    def __init__(
        self,
        user_id: UUID,
        store: NotificationStore,
        pipeline: DeliveryPipeline,
        load_details: DetailsLoader,
        sweep_interval: float = 30.0,
        next_offer_delay: float = 0.5,
        clock: Clock = utcnow,
        signal_buffer: int = 100,
    ):
        self.user_id = user_id
        self.store = store
        self.pipeline = pipeline
        self.load_details = load_details
        self.next_offer_delay = next_offer_delay
        self.clock = clock

        self.notifications: List[NotificationView] = []
        self.current: Optional[NotificationView] = None
        self.order_details: Optional[OrderDetails] = None
        # Bounded; when nobody drains it the oldest signals are dropped
        self.signals: asyncio.Queue[SessionSignal] = asyncio.Queue(maxsize=signal_buffer)

        self.scheduler = ExpiryScheduler(self.expire, sweep_interval=sweep_interval, clock=clock)
        self._subscription = None
        self._advance_task: Optional[asyncio.Task] = None
        self._started = False
        self._closed = False

    # Lifecycle

    async def start(self):
        """Subscribe to the live feed, start the sweep and load pending offers."""
        if self._started:
            return
        self._started = True

        self._subscription = await self.store.subscribe(self.user_id, self.receive)
        self.scheduler.start_sweep(self._tracked_offers)
        await self.load()

        logger.info(f"Captain session started for user {self.user_id}")

    async def close(self):
        """Release the subscription, timers and any pending auto-advance."""
        if self._closed:
            return
        self._closed = True

        if self._subscription is not None:
            await self._subscription.close()
            self._subscription = None

        await self.scheduler.stop()

        if self._advance_task and not self._advance_task.done():
            self._advance_task.cancel()

        logger.info(f"Captain session closed for user {self.user_id}")

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    @property
    def closed(self) -> bool:
        return self._closed

    # Views

    def active_offers(self) -> List[NotificationView]:
        """Tracked offers still inside their TTL, newest first."""
        now = self.clock()
        return [n for n in self.notifications if is_offer_active(n, now)]

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            user_id=self.user_id,
            notifications=self.active_offers(),
            current=self.current,
            order_details=self.order_details,
        )

    def _tracked_offers(self):
        return [(n.id, n.created_at) for n in self.notifications]

    # Transitions

    async def load(self) -> List[NotificationView]:
        """Fetch unresolved offers, drop the expired ones and arm timers for the rest."""
        try:
            pending = await self.store.list_pending(self.user_id)
        except SQLAlchemyError as e:
            logger.error(f"Error loading captain notifications: {str(e)}", exc_info=True)
            await self._emit(SignalKind.ERROR, "Failed to load delivery requests")
            return []

        now = self.clock()
        valid = []
        for notification in pending:
            if is_expired(notification.created_at, now):
                await self._resolve_quietly(notification.id, NotificationStatus.EXPIRED)
            else:
                valid.append(notification)

        known = {n.id for n in self.notifications}
        for notification in valid:
            self.scheduler.arm(notification.id, notification.created_at)
        self.notifications = self._ordered(
            [n for n in self.notifications if n.id not in {v.id for v in valid}] + valid
        )

        logger.info(
            f"Loaded {len(valid)} active offer(s) for user {self.user_id} "
            f"({len(pending) - len(valid)} expired, {len(known)} already tracked)"
        )

        if self.current is None and valid:
            await self.present(self.notifications[0])

        return valid

    async def receive(self, notification: NotificationView):
        """Handle a notification pushed by the live feed."""
        if self._closed or not notification.is_offer:
            return
        if any(n.id == notification.id for n in self.notifications):
            return

        if notification.status != NotificationStatus.PENDING.value:
            return

        if is_expired(notification.created_at, self.clock()):
            # Arrived late; never shown
            logger.info(f"Discarding offer {notification.id}, already expired on arrival")
            await self._resolve_quietly(notification.id, NotificationStatus.EXPIRED)
            return

        self.scheduler.arm(notification.id, notification.created_at)
        self.notifications = self._ordered([notification] + self.notifications)

        if self.current is None:
            await self.present(notification, alert=True)
            await self._emit(
                SignalKind.NEW_OFFER_AVAILABLE,
                "New delivery available!",
                "Check the notification to accept this delivery",
                notification.id,
            )
        else:
            await self._emit(
                SignalKind.NEW_OFFER_AVAILABLE,
                "New delivery available",
                "You have a new delivery request waiting",
                notification.id,
            )

    async def present(self, notification: NotificationView, alert: bool = False):
        """Put an offer on screen with its order snapshot."""
        self.current = notification
        self.order_details = None

        try:
            details = await self.load_details(notification.related_entity_id)
        except SQLAlchemyError as e:
            logger.error(f"Error fetching order details: {str(e)}", exc_info=True)
            details = None

        # Another transition may have replaced or cleared the offer meanwhile
        if self.current is None or self.current.id != notification.id:
            return

        self.order_details = details
        if details is None:
            await self._emit(SignalKind.ERROR, "Failed to load order details", None, notification.id)

        await self._emit(
            SignalKind.OFFER_PRESENTED,
            notification.title,
            notification.message,
            notification.id,
            alert=alert,
        )

    async def accept(self) -> bool:
        """Claim the order behind the presented offer."""
        offer = self.current
        if offer is None:
            await self._emit(SignalKind.ERROR, "Missing notification data")
            return False

        if not is_offer_active(offer, self.clock()):
            await self.expire(offer.id)
            return False

        if self.order_details is None or offer.related_entity_id is None:
            await self._emit(SignalKind.ERROR, "Order details not available", None, offer.id)
            return False

        try:
            delivery = await self.pipeline.accept(self.user_id, offer.related_entity_id, offer.id)
        except AssignmentError as e:
            logger.warning(f"Accept of offer {offer.id} failed: {str(e)}")
            await self._emit(SignalKind.ERROR, e.user_message, None, offer.id)
            return False
        except SQLAlchemyError as e:
            logger.error(f"Error accepting order: {str(e)}", exc_info=True)
            await self._emit(SignalKind.ERROR, "Failed to accept delivery", None, offer.id)
            return False

        self._finish(offer.id)
        await self._emit(
            SignalKind.OFFER_ACCEPTED,
            "Order accepted for delivery",
            "You can start this delivery now",
            offer.id,
        )
        logger.info(f"User {self.user_id} accepted offer {offer.id} (delivery {delivery.id})")
        self._schedule_next_offer()
        return True

    async def decline(self) -> bool:
        """Turn down the presented offer. The order itself is untouched."""
        offer = self.current
        if offer is None:
            return False

        try:
            await self.store.resolve(offer.id, NotificationStatus.DECLINED)
        except SQLAlchemyError as e:
            logger.error(f"Error declining order: {str(e)}", exc_info=True)
            await self._emit(SignalKind.ERROR, "Failed to decline delivery", None, offer.id)
            return False

        self._finish(offer.id)
        await self._emit(SignalKind.OFFER_DECLINED, "Order declined", None, offer.id)
        self._schedule_next_offer()
        return True

    async def expire(self, offer_id: UUID):
        """Withdraw an offer whose TTL ran out. Safe to call repeatedly."""
        offer = next((n for n in self.notifications if n.id == offer_id), None)
        if offer is None:
            return

        self.notifications = [n for n in self.notifications if n.id != offer_id]
        self.scheduler.cancel(offer_id)
        was_current = self.current is not None and self.current.id == offer_id
        if was_current:
            self.current = None
            self.order_details = None

        await self._resolve_quietly(offer_id, NotificationStatus.EXPIRED)

        if was_current:
            await self._emit(
                SignalKind.OFFER_EXPIRED,
                "Order notification expired",
                "This order is no longer available",
                offer_id,
            )
        logger.info(f"Offer {offer_id} expired for user {self.user_id}")

    async def sweep(self) -> List[UUID]:
        """Run one sweep pass now."""
        return await self.scheduler.sweep(self._tracked_offers())

    # Helpers

    def _finish(self, offer_id: UUID):
        self.notifications = [n for n in self.notifications if n.id != offer_id]
        self.scheduler.cancel(offer_id)
        if self.current is not None and self.current.id == offer_id:
            self.current = None
            self.order_details = None

    def _schedule_next_offer(self):
        if self._closed:
            return
        if self._advance_task and not self._advance_task.done():
            self._advance_task.cancel()
        self._advance_task = asyncio.create_task(self._present_next_after_delay())

    async def _present_next_after_delay(self):
        await asyncio.sleep(self.next_offer_delay)
        if self._closed or self.current is not None:
            return
        remaining = self.active_offers()
        if remaining:
            await self.present(remaining[0])

    async def _resolve_quietly(self, offer_id: UUID, status: NotificationStatus):
        # Local state already treats the offer as gone; the row catches up on the next resolve
        try:
            await self.store.resolve(offer_id, status)
        except SQLAlchemyError as e:
            logger.error(f"Error marking notification {offer_id} as {status.value}: {str(e)}", exc_info=True)

    async def _emit(
        self,
        kind: SignalKind,
        title: str,
        description: Optional[str] = None,
        notification_id: Optional[UUID] = None,
        alert: bool = False,
    ):
        signal = SessionSignal(
            kind=kind,
            title=title,
            description=description,
            notification_id=notification_id,
            alert=alert,
        )
        if self.signals.full():
            dropped = self.signals.get_nowait()
            logger.debug(f"Signal buffer full for user {self.user_id}, dropped {dropped.kind.value}")
        self.signals.put_nowait(signal)

    @staticmethod
    def _ordered(notifications: List[NotificationView]) -> List[NotificationView]:
        return sorted(notifications, key=lambda n: n.created_at, reverse=True)
