"""Denormalized order snapshot shown with an offer."""
import logging
from typing import Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from .models import Address, Order, SellerProfile
from .schemas import OrderDetails

logger = logging.getLogger(__name__)

UNKNOWN_SELLER_NAME = "Unknown Restaurant"


def order_ref(order_id: UUID) -> str:
    """Short order reference used in human-readable messages."""
    return str(order_id)[:8]


def address_to_dict(address: Optional[Address]) -> dict:
    if address is None:
        return {}
    return {
        "id": str(address.id),
        "street": address.street,
        "area": address.area,
        "city": address.city,
        "latitude": address.latitude,
        "longitude": address.longitude,
    }


async def load_order_details(session: AsyncSession, order_id: UUID) -> Optional[OrderDetails]:
    """Order with its seller and address, or None when the order does not exist."""
    order = await session.get(Order, order_id)
    if order is None:
        logger.warning(f"No order found with ID: {order_id}")
        return None

    seller = await session.get(SellerProfile, order.seller_id)
    if seller is None:
        logger.warning(f"Seller profile {order.seller_id} missing for order {order_id}")

    address = await session.get(Address, order.address_id) if order.address_id else None

    return OrderDetails(
        order_id=order.id,
        status=order.status,
        total=order.total,
        delivery_fee=order.delivery_fee,
        created_at=order.created_at,
        seller_id=order.seller_id,
        seller_user_id=seller.user_id if seller else None,
        seller_name=seller.business_name if seller else UNKNOWN_SELLER_NAME,
        address=address_to_dict(address),
    )


class OrderDetailsLoader:
    """Session-factory bound wrapper used by courier sessions."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def __call__(self, order_id: UUID) -> Optional[OrderDetails]:
        async with self.session_factory() as session:
            return await load_order_details(session, order_id)
