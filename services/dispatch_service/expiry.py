"""Offer expiry: time-to-live arithmetic, per-offer deadline timers and the periodic sweep."""
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Tuple
from uuid import UUID

from shared.database import utcnow

from .models import NotificationStatus

logger = logging.getLogger(__name__)

# Fixed, measured from creation, never renewed
OFFER_TTL = timedelta(minutes=2)

Clock = Callable[[], datetime]


def expires_at(created_at: datetime) -> datetime:
    return created_at + OFFER_TTL


def is_expired(created_at: Optional[datetime], now: datetime) -> bool:
    """An offer without a creation time is treated as expired."""
    if created_at is None:
        return True
    return now - created_at >= OFFER_TTL


def seconds_remaining(created_at: Optional[datetime], now: datetime) -> float:
    if created_at is None:
        return 0.0
    return max(0.0, (expires_at(created_at) - now).total_seconds())


def is_offer_active(notification, now: datetime) -> bool:
    """Pending and inside its TTL. Works on ORM rows and views alike."""
    return (
        notification.status == NotificationStatus.PENDING.value
        and not is_expired(notification.created_at, now)
    )


class ExpiryScheduler:
    """
    Drives the Expire transition of a session.

    Two mechanisms run side by side: a one-shot loop timer per offer, armed at
    its deadline, and a sweep task that re-derives expiry for every tracked
    offer at a fixed interval. The sweep catches deadlines whose timers were
    lost while the host was suspended. Both call ``on_expire`` with the offer
    id; the callback must tolerate being called more than once.
    """

    def __init__(
        self,
        on_expire: Callable[[UUID], Awaitable[None]],
        sweep_interval: float = 30.0,
        clock: Clock = utcnow,
    ):
        self._on_expire = on_expire
        self.sweep_interval = sweep_interval
        self.clock = clock
        self._handles: Dict[UUID, asyncio.TimerHandle] = {}
        self._fired: set[asyncio.Task] = set()
        self._sweep_task: Optional[asyncio.Task] = None

    def arm(self, offer_id: UUID, created_at: datetime):
        """Schedule the deadline timer, replacing any timer already armed for this offer."""
        self.cancel(offer_id)

        delay = seconds_remaining(created_at, self.clock())
        loop = asyncio.get_running_loop()
        self._handles[offer_id] = loop.call_later(delay, self._fire, offer_id)

        logger.debug(f"Offer {offer_id} expires in {delay:.1f}s")

    def cancel(self, offer_id: UUID):
        handle = self._handles.pop(offer_id, None)
        if handle:
            handle.cancel()

    def is_armed(self, offer_id: UUID) -> bool:
        return offer_id in self._handles

    def _fire(self, offer_id: UUID):
        self._handles.pop(offer_id, None)
        logger.info(f"Offer {offer_id} deadline reached")

        task = asyncio.create_task(self._on_expire(offer_id))
        self._fired.add(task)
        task.add_done_callback(self._fired.discard)

    def start_sweep(self, tracked: Callable[[], Iterable[Tuple[UUID, datetime]]]):
        """Start the periodic sweep over ``tracked()``, a snapshot of (offer id, created_at)."""
        if self._sweep_task:
            return
        self._sweep_task = asyncio.create_task(self._sweep_loop(tracked))

    async def _sweep_loop(self, tracked):
        while True:
            await asyncio.sleep(self.sweep_interval)
            try:
                await self.sweep(tracked())
            except Exception as e:
                logger.error(f"Expiry sweep failed: {str(e)}", exc_info=True)

    async def sweep(self, offers: Iterable[Tuple[UUID, datetime]]) -> List[UUID]:
        """Expire every offer in ``offers`` whose TTL has run out. Returns the expired ids."""
        now = self.clock()
        expired = [offer_id for offer_id, created_at in list(offers) if is_expired(created_at, now)]

        for offer_id in expired:
            self.cancel(offer_id)
            await self._on_expire(offer_id)

        if expired:
            logger.info(f"Sweep expired {len(expired)} offer(s) missed by their timers")

        return expired

    async def stop(self):
        """Drop all timers and stop the sweep."""
        for handle in self._handles.values():
            handle.cancel()
        self._handles.clear()

        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
