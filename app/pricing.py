from __future__ import annotations

from dataclasses import dataclass
from datetime import date

from app import settings
from app.errors import InvalidDateRange, InvalidQuantity

_BPS = 10_000


@dataclass(frozen=True)
class PriceBreakdown:
    """All amounts are integer minor units (paise / cents)."""

    daily_rate: int
    quantity: int
    rental_days: int
    base_amount: int
    deposit_amount: int
    tax_amount: int
    total_amount: int
    currency: str


def rental_days(start_date: date, end_date: date) -> int:
    """Inclusive day count: a booking from the 1st to the 3rd is three days."""
    if end_date < start_date:
        raise InvalidDateRange("end_date must not be before start_date")
    return (end_date - start_date).days + 1


def apply_rate(amount: int, rate_bps: int) -> int:
    """`amount * rate` rounded half-up to a whole minor unit."""
    return (amount * rate_bps + _BPS // 2) // _BPS


def calculate_price(
    daily_rate: int,
    quantity: int,
    start_date: date,
    end_date: date,
    deposit_amount: int = 0,
    deposit_required: bool = False,
    tax_rate_bps: int | None = None,
    currency: str | None = None,
) -> PriceBreakdown:
    """
    Price a rental at the day rate.

      base    = daily_rate * quantity * days
      deposit = deposit_amount * quantity  (only when the product requires one)
      taxes   = base * tax rate
      total   = base + deposit + taxes

    Weekly and monthly rates are never applied.
    """
    if quantity < 1:
        raise InvalidQuantity("quantity must be at least 1")
    if daily_rate < 0 or deposit_amount < 0:
        raise ValueError("rates and deposits must be non-negative minor units")

    if tax_rate_bps is None:
        tax_rate_bps = settings.TAX_RATE_BPS

    days = rental_days(start_date, end_date)
    base = daily_rate * quantity * days
    deposit = deposit_amount * quantity if deposit_required else 0
    taxes = apply_rate(base, tax_rate_bps)

    return PriceBreakdown(
        daily_rate=daily_rate,
        quantity=quantity,
        rental_days=days,
        base_amount=base,
        deposit_amount=deposit,
        tax_amount=taxes,
        total_amount=base + deposit + taxes,
        currency=currency or settings.DEFAULT_CURRENCY,
    )
