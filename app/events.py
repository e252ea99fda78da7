"""
Fire-and-forget booking events over Redis pub/sub.

Downstream relays (socket notifications, email) subscribe to the channels.
Publishing never affects the outcome of the request that emitted the event.
"""

import json
from datetime import datetime, timezone
from typing import Any

from loguru import logger

from app.cache import get_redis

BOOKING_CREATED = "booking:created"
BOOKING_STATUS_CHANGED = "booking:statusChanged"
HOLD_CREATED = "hold:created"
HOLD_RELEASED = "hold:released"


def _envelope(event_type: str, payload: dict[str, Any]) -> str:
    return json.dumps(
        {
            "type": event_type,
            "time": datetime.now(tz=timezone.utc).isoformat(),
            "data": payload,
        },
        default=str,
    )


async def publish(event_type: str, payload: dict[str, Any]) -> None:
    try:
        await get_redis().publish(event_type, _envelope(event_type, payload))
    except Exception:
        logger.warning("Event publish failed (type={})", event_type, exc_info=True)


async def booking_created(booking) -> None:
    await publish(
        BOOKING_CREATED,
        {
            "booking_id": booking.id,
            "booking_number": booking.booking_number,
            "customer_id": booking.customer_id,
            "provider_id": booking.provider_id,
            "product_id": booking.product_id,
            "location_id": booking.location_id,
            "quantity": booking.quantity,
            "start_date": booking.start_date,
            "end_date": booking.end_date,
            "total_amount": booking.total_amount,
            "currency": booking.currency,
            "hold_expires_at": booking.hold_expires_at,
        },
    )


async def booking_status_changed(booking, old_status: str, reason: str | None) -> None:
    await publish(
        BOOKING_STATUS_CHANGED,
        {
            "booking_id": booking.id,
            "booking_number": booking.booking_number,
            "customer_id": booking.customer_id,
            "provider_id": booking.provider_id,
            "from": old_status,
            "to": booking.status,
            "reason": reason,
        },
    )


async def hold_created(hold) -> None:
    await publish(
        HOLD_CREATED,
        {
            "hold_id": hold.id,
            "user_id": hold.user_id,
            "product_id": hold.product_id,
            "location_id": hold.location_id,
            "quantity": hold.quantity,
            "start_date": hold.start_date,
            "end_date": hold.end_date,
            "expires_at": hold.expires_at,
        },
    )


async def hold_released(hold, reason: str) -> None:
    await publish(
        HOLD_RELEASED,
        {
            "hold_id": hold.id,
            "user_id": hold.user_id,
            "product_id": hold.product_id,
            "location_id": hold.location_id,
            "quantity": hold.quantity,
            "reason": reason,
        },
    )
