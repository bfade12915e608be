"""Dispatch Service FastAPI application."""
import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import date
from typing import List, Optional
from uuid import UUID

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from pydantic import BaseModel

from shared.config import Settings
from shared.database import Database
from shared.events import EventType
from shared.local_broker import LocalBroker
from shared.message_broker import MessageBroker
from shared.outbox import OutboxPublisher

from .assignment import (
    AssignmentError,
    CaptainProfileNotFound,
    DeliveryNotFound,
    DeliveryPipeline,
    OrderNotFound,
)
from .captain_service import CaptainService
from .captain_session import CaptainNotificationSession
from .models import DeliveryStatus, OrderStatus
from .notification_store import NotificationStore, PendingOfferNotReadable
from .order_details import OrderDetailsLoader
from .readiness_publisher import ReadinessPublisher
from .schemas import (
    DeliveryView,
    EarningsSummary,
    NotificationView,
    OrderDetails,
    SessionSnapshot,
)
from .seller_orders import OrderError, SellerOrderNotFound, SellerOrderService
from .session_registry import SessionRegistry

# Settings
settings = Settings(service_name="dispatch-service")

# Configure logging
logging.basicConfig(
    level=settings.log_level.upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Database and message broker
database = Database(settings.database_url)
if settings.broker_backend == "local":
    message_broker = LocalBroker()
else:
    message_broker = MessageBroker(settings.rabbitmq_url)
outbox_publisher: OutboxPublisher = None

# Dispatch components
store = NotificationStore(database.session_factory, message_broker)
pipeline = DeliveryPipeline(database.session_factory)
captain_service = CaptainService(database.session_factory)
seller_orders = SellerOrderService(database.session_factory)
details_loader = OrderDetailsLoader(database.session_factory)


async def notify_seller_dashboard(seller_user_id: UUID, title: str, description: str):
    """
    Seller-facing toast for fan-out results.

    In a real system, this would be pushed to the seller dashboard.
    """
    logger.info(f"[SELLER {seller_user_id}] {title}: {description}")


readiness_publisher = ReadinessPublisher(
    database.session_factory,
    store,
    seller_signal=notify_seller_dashboard,
)


def open_captain_session(user_id: UUID) -> CaptainNotificationSession:
    return CaptainNotificationSession(
        user_id,
        store,
        pipeline,
        details_loader,
        sweep_interval=settings.expiry_sweep_interval_seconds,
        next_offer_delay=settings.next_offer_delay_seconds,
        signal_buffer=settings.session_signal_buffer,
    )


sessions = SessionRegistry(open_captain_session)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifecycle manager for the application."""
    global outbox_publisher

    # Startup
    logger.info("Starting Dispatch Service...")

    # Models register themselves with the shared Base on import
    from . import models  # noqa: F401

    await database.create_tables()

    await message_broker.connect()

    outbox_publisher = OutboxPublisher(
        session_factory=database.session_factory,
        message_broker=message_broker,
        poll_interval=settings.outbox_poll_interval_seconds,
        batch_size=100,
    )
    await outbox_publisher.start()

    await subscribe_to_events()

    logger.info("Dispatch Service started successfully")

    yield

    # Shutdown
    logger.info("Shutting down Dispatch Service...")
    await sessions.close_all()
    if outbox_publisher:
        await outbox_publisher.stop()
    await message_broker.disconnect()
    await database.close()


app = FastAPI(title="Dispatch Service", lifespan=lifespan)


# Request/Response models
class OrderStatusRequest(BaseModel):
    """Seller order transition."""
    status: OrderStatus


class OrderStatusResponse(BaseModel):
    order_id: UUID
    status: OrderStatus


class DeliveryStatusRequest(BaseModel):
    """Captain delivery transition."""
    status: DeliveryStatus


class AvailabilityRequest(BaseModel):
    is_available: bool


class SessionActionResponse(BaseModel):
    """Outcome of a session accept/decline; details arrive as session signals."""
    success: bool
    snapshot: SessionSnapshot


def raise_for_domain_error(error: Exception):
    """Translate a domain failure into the HTTP error the UI shows."""
    if isinstance(error, (CaptainProfileNotFound, OrderNotFound, DeliveryNotFound, SellerOrderNotFound)):
        raise HTTPException(status_code=404, detail=error.user_message)
    if isinstance(error, (AssignmentError, OrderError)):
        raise HTTPException(status_code=409, detail=error.user_message)
    raise error


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "service": settings.service_name,
        "open_sessions": len(sessions),
    }


# Seller endpoints
@app.put("/orders/{order_id}/status", response_model=OrderStatusResponse)
async def update_order_status(order_id: UUID, request: OrderStatusRequest):
    """Seller moves an order. Moving to ready offers it to available captains."""
    try:
        status = await seller_orders.update_status(order_id, request.status)
    except OrderError as e:
        raise_for_domain_error(e)

    return OrderStatusResponse(order_id=order_id, status=status)


@app.get("/orders/available", response_model=List[OrderDetails])
async def list_available_orders(limit: int = 20, offset: int = 0):
    """Ready orders that no captain has claimed."""
    return await captain_service.list_available_orders(limit=limit, offset=offset)


# Captain session endpoints
@app.post("/captains/{user_id}/session", response_model=SessionSnapshot)
async def open_session(user_id: UUID):
    """Open (or return) the captain's notification session."""
    session = await sessions.open(user_id)
    return session.snapshot()


@app.get("/captains/{user_id}/session", response_model=SessionSnapshot)
async def get_session_state(user_id: UUID):
    session = sessions.get(user_id)
    if not session:
        raise HTTPException(status_code=404, detail="No open session")
    return session.snapshot()


@app.delete("/captains/{user_id}/session", status_code=204)
async def close_session(user_id: UUID):
    if not await sessions.close(user_id):
        raise HTTPException(status_code=404, detail="No open session")


@app.post("/captains/{user_id}/session/accept", response_model=SessionActionResponse)
async def accept_current_offer(user_id: UUID):
    """Accept the offer currently presented in the captain's session."""
    session = sessions.get(user_id)
    if not session:
        raise HTTPException(status_code=404, detail="No open session")

    success = await session.accept()
    return SessionActionResponse(success=success, snapshot=session.snapshot())


@app.post("/captains/{user_id}/session/decline", response_model=SessionActionResponse)
async def decline_current_offer(user_id: UUID):
    """Decline the offer currently presented in the captain's session."""
    session = sessions.get(user_id)
    if not session:
        raise HTTPException(status_code=404, detail="No open session")

    success = await session.decline()
    return SessionActionResponse(success=success, snapshot=session.snapshot())


@app.websocket("/captains/{user_id}/session/ws")
async def session_stream(websocket: WebSocket, user_id: UUID):
    """
    Live courier session.

    Streams session signals to the client and accepts {"action": "accept"} or
    {"action": "decline"} messages. The session closes with the socket. A
    captain gets one socket at a time; a second one is refused.
    """
    if not sessions.attach_stream(user_id):
        logger.warning(f"Refusing second session stream for user {user_id}")
        await websocket.close(code=1008)
        return

    forwarder = None
    try:
        session = await sessions.open(user_id)
        await websocket.accept()

        async def forward_signals():
            while True:
                signal = await session.signals.get()
                await websocket.send_json(signal.model_dump(mode="json"))

        forwarder = asyncio.create_task(forward_signals())
        while True:
            message = await websocket.receive_json()
            action = message.get("action")
            if action == "accept":
                await session.accept()
            elif action == "decline":
                await session.decline()
            else:
                logger.warning(f"Unknown session action from user {user_id}: {action}")
    except WebSocketDisconnect:
        logger.info(f"Captain {user_id} disconnected")
    finally:
        if forwarder is not None:
            forwarder.cancel()
            try:
                await forwarder
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.warning(f"Signal forwarding for user {user_id} stopped: {str(e)}")
        sessions.detach_stream(user_id)
        await sessions.close(user_id)


# Captain delivery endpoints
@app.post("/captains/{user_id}/orders/{order_id}/accept", response_model=DeliveryView, status_code=201)
async def accept_order(user_id: UUID, order_id: UUID):
    """Claim a ready order from the available orders list."""
    try:
        return await pipeline.accept(user_id, order_id)
    except AssignmentError as e:
        raise_for_domain_error(e)


@app.post("/captains/{user_id}/deliveries/{delivery_id}/status", response_model=DeliveryView)
async def advance_delivery(user_id: UUID, delivery_id: UUID, request: DeliveryStatusRequest):
    """Move a delivery to its next status."""
    try:
        return await pipeline.advance_to(delivery_id, user_id, request.status)
    except AssignmentError as e:
        raise_for_domain_error(e)


@app.put("/captains/{user_id}/availability")
async def set_availability(user_id: UUID, request: AvailabilityRequest):
    try:
        is_available = await captain_service.set_availability(user_id, request.is_available)
    except AssignmentError as e:
        raise_for_domain_error(e)

    return {"user_id": str(user_id), "is_available": is_available}


@app.get("/captains/{user_id}/deliveries", response_model=List[DeliveryView])
async def list_deliveries(
    user_id: UUID,
    status: Optional[str] = None,
    limit: int = 20,
    offset: int = 0,
):
    """Captain delivery history; status may be a delivery status or "active"."""
    if status and status != "active" and status not in {s.value for s in DeliveryStatus}:
        raise HTTPException(status_code=400, detail=f"Unknown delivery status: {status}")

    try:
        return await captain_service.list_deliveries(user_id, status=status, limit=limit, offset=offset)
    except AssignmentError as e:
        raise_for_domain_error(e)


@app.get("/captains/{user_id}/earnings", response_model=EarningsSummary)
async def get_earnings(user_id: UUID, start: date, end: date):
    try:
        return await captain_service.earnings(user_id, start, end)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except AssignmentError as e:
        raise_for_domain_error(e)


# Notification endpoints
@app.get("/users/{user_id}/notifications", response_model=List[NotificationView])
async def list_notifications(user_id: UUID, unread_only: bool = False, limit: int = 50):
    """Notification bell listing."""
    return await store.list_for_user(user_id, unread_only=unread_only, limit=limit)


@app.post("/notifications/{notification_id}/read", status_code=204)
async def mark_notification_read(notification_id: UUID):
    try:
        found = await store.mark_read(notification_id)
    except PendingOfferNotReadable as e:
        raise HTTPException(status_code=409, detail=e.user_message)
    if not found:
        raise HTTPException(status_code=404, detail="Notification not found")


# Event Handlers
async def subscribe_to_events():
    """Subscribe to relevant events."""
    await message_broker.subscribe_to_event(
        EventType.ORDER_STATUS_CHANGED,
        "dispatch_service_order_status",
        readiness_publisher.handle_order_status_changed,
    )

    logger.info("Subscribed to order status events")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.service_port)
