from dataclasses import dataclass, field
from enum import StrEnum
from functools import lru_cache
from urllib.parse import quote, unquote
from uuid import UUID

import httpx
from fastapi import Depends, Header, HTTPException, status
from loguru import logger

from app import settings
from app.scopes import BookingScope


@dataclass
class CurrentUser:
    id: UUID | None
    username: str
    scopes: list[str] = field(default_factory=list)
    is_system: bool = False

    @property
    def is_admin(self) -> bool:
        return (
            "admin:scopes" in self.scopes
            or BookingScope.ADMIN in self.scopes
            or BookingScope.ADMIN_WRITE in self.scopes
        )

    @property
    def can_read_all(self) -> bool:
        return self.is_admin or BookingScope.ADMIN_READ in self.scopes


# Principal for payment callbacks and hold expiry.
SYSTEM_USER = CurrentUser(id=None, username="system", is_system=True)


def get_current_user(
    x_user_id: str = Header(...),
    x_username: str = Header(...),
    x_user_scopes: str = Header(default=""),
) -> CurrentUser:
    """
    Reads the headers injected by the gateway after forwardAuth validation.
    The JWT has already been verified; these headers are trusted as-is.
    """
    try:
        user_id = UUID(x_user_id)
    except (ValueError, TypeError):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="X-User-Id is not a valid user id",
        ) from None

    scopes = x_user_scopes.split(" ") if x_user_scopes else []

    return CurrentUser(id=user_id, username=unquote(x_username), scopes=scopes)


def require_scopes(*required: str):
    """
    Dependency factory: the caller must hold every scope in `required`.

        @router.post("/products", dependencies=[Depends(require_scopes("catalog:manage"))])
    """

    async def _dep(
        current_user: CurrentUser = Depends(get_current_user),
    ) -> CurrentUser:
        missing = [s for s in required if s not in current_user.scopes]
        if missing:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Missing required scopes: {', '.join(missing)}",
            )
        return current_user

    return _dep


def require_any_scope(*accepted: str):
    """Like require_scopes, but one of `accepted` is enough."""

    async def _dep(
        current_user: CurrentUser = Depends(get_current_user),
    ) -> CurrentUser:
        if not any(s in current_user.scopes for s in accepted):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Requires one of scopes: {', '.join(accepted)}",
            )
        return current_user

    return _dep


# ---------------------------------------------------------------------------
# Pre-built scope dependencies
# ---------------------------------------------------------------------------

can_write_booking = require_scopes(BookingScope.WRITE)
can_manage_catalog = require_any_scope(BookingScope.CATALOG, BookingScope.ADMIN_CATALOG)
can_admin_catalog = require_scopes(BookingScope.ADMIN_CATALOG)
can_admin_bookings = require_any_scope(BookingScope.ADMIN, BookingScope.ADMIN_WRITE)
can_transition_booking = require_any_scope(
    BookingScope.CANCEL,
    BookingScope.MANAGE,
    BookingScope.ADMIN,
    BookingScope.ADMIN_WRITE,
)


async def can_read_or_manage_booking(
    current_user: CurrentUser = Depends(get_current_user),
) -> CurrentUser:
    """
    Passes if the user can read bookings (customer/admin) OR manage bookings (provider).
    - bookings:read   → customer sees own bookings
    - bookings:manage → provider sees bookings for their products
    - admin:bookings* → admin sees all
    """
    has_read = BookingScope.READ in current_user.scopes
    has_manage = BookingScope.MANAGE in current_user.scopes
    if not (has_read or has_manage or current_user.can_read_all):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=(
                f"Requires '{BookingScope.READ}' (customers), "
                f"'{BookingScope.MANAGE}' (providers), "
                f"or '{BookingScope.ADMIN_READ}' (admin)."
            ),
        )
    return current_user


# ---------------------------------------------------------------------------
# Payments: capture and refund through payments-ms
# ---------------------------------------------------------------------------


class PaymentOutcome(StrEnum):
    CAPTURED = "captured"
    FAILED = "failed"


@lru_cache(maxsize=1)
def _get_payments_http_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(
        base_url=settings.payments_ms_url,
        timeout=httpx.Timeout(5.0),
        follow_redirects=True,
    )


class PaymentsClient:
    """
    Client for the payments-ms capture and refund endpoints, authenticated
    with the caller's gateway headers. Capture has two outcomes; anything
    short of an explicit "captured" answer is a failure.
    """

    @property
    def _client(self) -> httpx.AsyncClient:
        return _get_payments_http_client()

    def _headers(self, user: CurrentUser) -> dict[str, str]:
        return {
            "X-User-Id": str(user.id) if user.id else "",
            "X-Username": quote(user.username),
            "X-User-Scopes": " ".join(user.scopes),
        }

    async def capture(
        self,
        booking_id: UUID,
        amount: int,
        currency: str,
        method: str,
        caller: CurrentUser,
    ) -> PaymentOutcome:
        try:
            resp = await self._client.post(
                "/payments/capture",
                json={
                    "booking_id": str(booking_id),
                    "amount": amount,
                    "currency": currency,
                    "method": method,
                },
                headers=self._headers(caller),
            )
        except httpx.RequestError:
            logger.warning("payments-ms unreachable, treating capture as failed", exc_info=True)
            return PaymentOutcome.FAILED

        if resp.status_code >= 400:
            return PaymentOutcome.FAILED
        try:
            captured = resp.json().get("status") == PaymentOutcome.CAPTURED
        except ValueError:
            return PaymentOutcome.FAILED
        return PaymentOutcome.CAPTURED if captured else PaymentOutcome.FAILED

    async def refund_booking(self, booking_id: UUID, caller: CurrentUser) -> bool:
        """
        Ask payments-ms to refund a captured booking. False on any error;
        the caller decides whether that matters.
        """
        try:
            resp = await self._client.post(
                f"/payments/booking/{booking_id}/refund",
                headers=self._headers(caller),
            )
            return resp.status_code < 400
        except httpx.RequestError:
            logger.warning("Refund request failed for booking {}", booking_id, exc_info=True)
            return False


_payments_client = PaymentsClient()


def get_payments_client() -> PaymentsClient:
    return _payments_client
