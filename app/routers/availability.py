from datetime import date
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.crud import booking_crud
from app.deps import CurrentUser, can_write_booking, get_current_user
from app.models import CartHoldStatus
from app.schemas import (
    AvailabilityResponse,
    CalendarDay,
    CartHoldCreate,
    CartHoldExtend,
    CartHoldResponse,
    Pricing,
    QuoteRequest,
    QuoteResponse,
)

router = APIRouter(prefix="/availability", tags=["availability"])

MAX_CALENDAR_DAYS = 366


@router.get("/", response_model=AvailabilityResponse)
async def check_availability(
    product_id: UUID,
    location_id: UUID,
    start_date: date,
    end_date: date,
    quantity: int = Query(default=1),
    _: CurrentUser = Depends(get_current_user),
) -> AvailabilityResponse:
    """
    Whether `quantity` units can be rented over [start_date, end_date].
    A shortfall is reported in the body; malformed ranges are 422.
    """
    result = await booking_crud.check_availability(
        product_id, location_id, start_date, end_date, quantity
    )
    return AvailabilityResponse(
        product_id=product_id,
        location_id=location_id,
        start_date=start_date,
        end_date=end_date,
        available=result.available,
        available_quantity=result.available_quantity,
        total_stock=result.total_stock,
        reserved_quantity=result.reserved_quantity,
        requested_quantity=result.requested_quantity,
        reason=result.reason,
    )


@router.get("/calendar", response_model=list[CalendarDay])
async def get_calendar(
    product_id: UUID,
    location_id: UUID,
    start_date: date,
    end_date: date,
    _: CurrentUser = Depends(get_current_user),
) -> list[CalendarDay]:
    """Held and free units per day. Contains no booking or customer identity."""
    if (end_date - start_date).days + 1 > MAX_CALENDAR_DAYS:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Calendar range is limited to {MAX_CALENDAR_DAYS} days",
        )
    days = await booking_crud.calendar(product_id, location_id, start_date, end_date)
    return [CalendarDay(**d) for d in days]


@router.post("/quote", response_model=QuoteResponse)
async def quote(
    payload: QuoteRequest,
    _: CurrentUser = Depends(get_current_user),
) -> QuoteResponse:
    price, result = await booking_crud.quote(
        payload.product_id,
        payload.location_id,
        payload.start_date,
        payload.end_date,
        payload.quantity,
    )
    return QuoteResponse(
        product_id=payload.product_id,
        location_id=payload.location_id,
        quantity=payload.quantity,
        start_date=payload.start_date,
        end_date=payload.end_date,
        pricing=Pricing(
            daily_rate=price.daily_rate,
            rental_days=price.rental_days,
            base_amount=price.base_amount,
            deposit_amount=price.deposit_amount,
            tax_amount=price.tax_amount,
            total_amount=price.total_amount,
            currency=price.currency,
        ),
        available=result.available,
    )


# ---------------------------------------------------------------------------
# Cart holds
# ---------------------------------------------------------------------------


@router.post("/holds", response_model=CartHoldResponse, status_code=status.HTTP_201_CREATED)
async def create_cart_hold(
    payload: CartHoldCreate,
    current_user: CurrentUser = Depends(can_write_booking),
) -> CartHoldResponse:
    """Hold units for a few minutes while the customer checks out."""
    hold = await booking_crud.create_cart_hold(current_user.id, payload)
    return CartHoldResponse.model_validate(hold)


@router.get("/holds", response_model=list[CartHoldResponse])
async def list_cart_holds(
    hold_status: CartHoldStatus | None = Query(default=CartHoldStatus.ACTIVE, alias="status"),
    current_user: CurrentUser = Depends(get_current_user),
) -> list[CartHoldResponse]:
    holds = await booking_crud.list_cart_holds(current_user.id, status=hold_status)
    return [CartHoldResponse.model_validate(h) for h in holds]


@router.delete("/holds/{hold_id}", response_model=CartHoldResponse)
async def release_cart_hold(
    hold_id: UUID,
    current_user: CurrentUser = Depends(get_current_user),
) -> CartHoldResponse:
    hold = await booking_crud.release_cart_hold(hold_id, current_user)
    return CartHoldResponse.model_validate(hold)


@router.put("/holds/{hold_id}/extend", response_model=CartHoldResponse)
async def extend_cart_hold(
    hold_id: UUID,
    payload: CartHoldExtend,
    current_user: CurrentUser = Depends(get_current_user),
) -> CartHoldResponse:
    hold = await booking_crud.extend_cart_hold(hold_id, current_user, payload.minutes)
    return CartHoldResponse.model_validate(hold)
