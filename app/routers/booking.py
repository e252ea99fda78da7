from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from loguru import logger

from app.crud import booking_crud
from app.deps import (
    CurrentUser,
    PaymentsClient,
    can_admin_bookings,
    can_read_or_manage_booking,
    can_transition_booking,
    can_write_booking,
    get_payments_client,
)
from app.errors import PaymentFailed
from app.models import BookingStatus, PaymentMethod, PaymentStatus
from app.schemas import (
    BookingCreate,
    BookingFilters,
    BookingResponse,
    BookingStatusChangeResponse,
    BookingStatusUpdate,
    ExpiredHoldsResponse,
)
from app.scopes import BookingScope

router = APIRouter(prefix="/bookings", tags=["bookings"])


# ---------------------------------------------------------------------------
# Visibility helpers
# ---------------------------------------------------------------------------


def _scope_filter(current_user: CurrentUser) -> dict[str, UUID]:
    """
    Which bookings the caller may see:
      admin            → all
      provider only    → bookings of their products
      anyone else      → their own bookings
    """
    if current_user.can_read_all:
        return {}
    is_manager = BookingScope.MANAGE in current_user.scopes
    is_reader = BookingScope.READ in current_user.scopes
    if is_manager and not is_reader:
        return {"provider_id": current_user.id}
    return {"customer_id": current_user.id}


async def _get_visible_booking(booking_id: UUID, current_user: CurrentUser):
    booking = await booking_crud.get_booking(booking_id, **_scope_filter(current_user))
    if not booking:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Booking not found"
        )
    return booking


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.get("/", response_model=list[BookingResponse])
async def list_bookings(
    filters: BookingFilters = Depends(),
    current_user: CurrentUser = Depends(can_read_or_manage_booking),
) -> list[BookingResponse]:
    bookings = await booking_crud.list_bookings(
        filters=filters, **_scope_filter(current_user)
    )
    return [BookingResponse.model_validate(b) for b in bookings]


@router.post("/", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
async def create_booking(
    payload: BookingCreate,
    current_user: CurrentUser = Depends(can_write_booking),
    payments_client: PaymentsClient = Depends(get_payments_client),
) -> BookingResponse:
    # 1. Reserve stock and create the pending booking atomically
    booking = await booking_crud.admit_booking(
        customer_id=current_user.id, payload=payload
    )

    # 2. Offline payments keep the hold until the provider acts or it expires
    if not PaymentMethod(booking.payment_method).is_online:
        return BookingResponse.model_validate(booking)

    # 3. Online payments are captured now; a failed capture gives the stock back
    outcome = await payments_client.capture(
        booking.id,
        amount=booking.total_amount,
        currency=booking.currency,
        method=booking.payment_method,
        caller=current_user,
    )
    settled = await booking_crud.settle_payment(booking.id, outcome)
    if settled.status == BookingStatus.CANCELLED:
        logger.info("Payment failed for booking {}", settled.booking_number)
        # Captured after the hold ran out: the money goes back
        if settled.payment_status == PaymentStatus.CAPTURED:
            if await payments_client.refund_booking(settled.id, current_user):
                await booking_crud.mark_refunded(settled.id)
        raise PaymentFailed(
            f"Payment for booking {settled.booking_number} failed; the reservation was released"
        )
    return BookingResponse.model_validate(settled)


@router.post(
    "/holds/expire",
    response_model=ExpiredHoldsResponse,
    dependencies=[Depends(can_admin_bookings)],
)
async def expire_holds() -> ExpiredHoldsResponse:
    """Release every pending booking whose hold ran out. Safe to call periodically."""
    released = await booking_crud.expire_holds()
    return ExpiredHoldsResponse(released=released)


@router.get("/{booking_id}", response_model=BookingResponse)
async def get_booking(
    booking_id: UUID,
    current_user: CurrentUser = Depends(can_read_or_manage_booking),
) -> BookingResponse:
    booking = await _get_visible_booking(booking_id, current_user)
    return BookingResponse.model_validate(booking)


@router.get("/{booking_id}/history", response_model=list[BookingStatusChangeResponse])
async def get_booking_history(
    booking_id: UUID,
    current_user: CurrentUser = Depends(can_read_or_manage_booking),
) -> list[BookingStatusChangeResponse]:
    await _get_visible_booking(booking_id, current_user)
    changes = await booking_crud.history(booking_id)
    return [BookingStatusChangeResponse.model_validate(c) for c in changes]


@router.patch("/{booking_id}/status", response_model=BookingResponse)
async def update_booking_status(
    booking_id: UUID,
    payload: BookingStatusUpdate,
    current_user: CurrentUser = Depends(can_transition_booking),
    payments_client: PaymentsClient = Depends(get_payments_client),
) -> BookingResponse:
    # Role and ownership are checked against the transition table inside the CRUD
    booking, _ = await booking_crud.transition(
        booking_id, payload.status, current_user, reason=payload.reason
    )

    # Cancelling a paid booking refunds it. Refund failure does not block
    # the cancellation response.
    if (
        payload.status == BookingStatus.CANCELLED
        and booking.payment_status == PaymentStatus.CAPTURED
    ):
        if await payments_client.refund_booking(booking_id, current_user):
            await booking_crud.mark_refunded(booking_id)
            booking.payment_status = PaymentStatus.REFUNDED

    return BookingResponse.model_validate(booking)
