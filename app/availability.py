"""
Availability rules over the day-bucketed reservation ledger.

Reservations are tracked per inventory entry per calendar day. A request for
`quantity` units over the inclusive range [start, end] fits when, on every
day of the range, the units already held plus `quantity` stay within the
entry's stock. Bookings on disjoint ranges never contend.

Everything here is pure; `app.crud` loads the buckets and applies the result.
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone

from app.errors import InsufficientStock, InvalidDateRange, InvalidQuantity


def utc_today() -> date:
    return datetime.now(timezone.utc).date()


def iter_days(start: date, end: date) -> Iterator[date]:
    """Every calendar day in [start, end], both ends included."""
    day = start
    while day <= end:
        yield day
        day += timedelta(days=1)


def validate_date_range(start: date, end: date, today: date | None = None) -> None:
    if start >= end:
        raise InvalidDateRange("end_date must be after start_date")
    if start < (today or utc_today()):
        raise InvalidDateRange("start_date cannot be in the past")


def validate_quantity(
    quantity: int, min_quantity: int = 1, max_quantity: int | None = None
) -> None:
    if quantity < 1:
        raise InvalidQuantity("quantity must be at least 1")
    if quantity < min_quantity:
        raise InvalidQuantity(f"quantity must be at least {min_quantity} for this product")
    if max_quantity is not None and quantity > max_quantity:
        raise InvalidQuantity(f"quantity cannot exceed {max_quantity} for this product")


def peak_reserved(buckets: Mapping[date, int], start: date, end: date) -> int:
    """Highest number of units held on any single day of [start, end]."""
    return max((buckets.get(d, 0) for d in iter_days(start, end)), default=0)


@dataclass(frozen=True)
class AvailabilityResult:
    available: bool
    available_quantity: int  # units still free on the busiest day of the range
    total_stock: int
    reserved_quantity: int  # units held on the busiest day of the range
    requested_quantity: int
    reason: str | None = None


def evaluate(
    stock: int,
    buckets: Mapping[date, int],
    start: date,
    end: date,
    quantity: int,
    min_quantity: int = 1,
    max_quantity: int | None = None,
    today: date | None = None,
) -> AvailabilityResult:
    """
    Validate the request shape and report how much of the range is free.

    Raises InvalidDateRange / InvalidQuantity for malformed requests; a
    capacity shortfall is reported in the result, not raised.
    """
    validate_date_range(start, end, today)
    validate_quantity(quantity, min_quantity, max_quantity)

    held = peak_reserved(buckets, start, end)
    free = max(0, stock - held)
    fits = quantity <= free
    return AvailabilityResult(
        available=fits,
        available_quantity=free,
        total_stock=stock,
        reserved_quantity=held,
        requested_quantity=quantity,
        reason=None if fits else f"Only {free} items available for the selected dates",
    )


def require_capacity(result: AvailabilityResult) -> None:
    if not result.available:
        raise InsufficientStock(
            result.reason or "Insufficient stock", available=result.available_quantity
        )


def calendar(
    stock: int, buckets: Mapping[date, int], start: date, end: date
) -> list[dict]:
    """Per-day held/free units for [start, end]."""
    if start > end:
        raise InvalidDateRange("end_date must not be before start_date")
    return [
        {
            "day": d.isoformat(),
            "reserved": buckets.get(d, 0),
            "available": max(0, stock - buckets.get(d, 0)),
        }
        for d in iter_days(start, end)
    ]
