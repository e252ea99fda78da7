"""
Domain errors raised by the ledger, admission and lifecycle layers.

Every error is request-scoped. `app.main` renders any `BookingError` as
`{"detail": ...}` with the class's status code, the same body shape FastAPI
uses for `HTTPException`.
"""

from __future__ import annotations

from fastapi import status


class BookingError(Exception):
    status_code: int = status.HTTP_400_BAD_REQUEST

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class ValidationError(BookingError):
    """Malformed input. Never retried automatically."""

    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY

    def __init__(self, detail: str, field: str | None = None):
        super().__init__(detail)
        self.field = field


class InvalidQuantity(ValidationError):
    def __init__(self, detail: str):
        super().__init__(detail, field="quantity")


class InvalidDateRange(ValidationError):
    def __init__(self, detail: str):
        super().__init__(detail, field="start_date")


class InsufficientStock(BookingError):
    """Capacity exhausted, or a reservation race lost after bounded retries."""

    status_code = status.HTTP_409_CONFLICT

    def __init__(self, detail: str, available: int = 0):
        super().__init__(detail)
        self.available = available


class InvalidStateTransition(BookingError):
    status_code = status.HTTP_409_CONFLICT


class DuplicateCartHold(BookingError):
    """The customer already holds this product for an overlapping range."""

    status_code = status.HTTP_409_CONFLICT


class PermissionDenied(BookingError):
    status_code = status.HTTP_403_FORBIDDEN


class NotFound(BookingError):
    status_code = status.HTTP_404_NOT_FOUND


class PaymentFailed(BookingError):
    status_code = status.HTTP_402_PAYMENT_REQUIRED


class ReservationConflict(Exception):
    """Optimistic version check lost to a concurrent writer; retried internally."""
