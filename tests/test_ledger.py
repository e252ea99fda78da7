"""
Database-backed tests for app/crud.py: admission, release and hold expiry
against a fresh in-memory SQLite per test (see the `db` fixture).
"""

from __future__ import annotations

import asyncio
import re
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, patch
from uuid import uuid4

import pytest

from app import crud
from app.catalog_crud import catalog_crud
from app.crud import BookingCRUD
from app.deps import SYSTEM_USER, PaymentOutcome
from app.errors import (
    DuplicateCartHold,
    InsufficientStock,
    InvalidDateRange,
    InvalidQuantity,
    InvalidStateTransition,
    NotFound,
    PermissionDenied,
    ReservationConflict,
    ValidationError,
)
from app.models import (
    Booking,
    BookingNumberSequence,
    BookingStatus,
    BookingStatusChange,
    CartHold,
    CartHoldStatus,
    InventoryEntry,
    Location,
    PaymentStatus,
    Product,
    ProductStatus,
    ReservationDay,
)
from app.schemas import BookingCreate, CartHoldCreate, InventoryEntryUpdate
from app.scopes import BookingScope

from .factories import (
    CUSTOMER_ID,
    OTHER_USER_ID,
    PROVIDER_ID,
    address_dict,
    booking_create_payload,
    make_admin,
    make_customer,
    make_provider,
)

pytestmark = [pytest.mark.asyncio, pytest.mark.usefixtures("db")]

TODAY = datetime.now(UTC).date()
D0 = TODAY + timedelta(days=7)


def day(n: int):
    return D0 + timedelta(days=n)


async def _stock(quantity: int = 5, **entry_fields):
    location = await Location.create(name="Central Warehouse", address=address_dict())
    product = await Product.create(
        provider_id=PROVIDER_ID,
        name="DSLR Camera",
        daily_rate=500,
        deposit_amount=5000,
        deposit_required=True,
    )
    entry = await InventoryEntry.create(
        product=product, location=location, quantity=quantity, **entry_fields
    )
    return product, location, entry


def _request(
    product, location, start, end, quantity=1, method="cash", hold_id=None
) -> BookingCreate:
    return BookingCreate(
        **booking_create_payload(
            product_id=str(product.id),
            location_id=str(location.id),
            quantity=quantity,
            start_date=start.isoformat(),
            end_date=end.isoformat(),
            payment_method=method,
            hold_id=str(hold_id) if hold_id else None,
        )
    )


def _hold_request(product, location, start, end, quantity=1) -> CartHoldCreate:
    return CartHoldCreate(
        product_id=product.id,
        location_id=location.id,
        quantity=quantity,
        start_date=start,
        end_date=end,
    )


def _later(days: int = 2):
    return patch("app.crud._utcnow", return_value=datetime.now(UTC) + timedelta(days=days))


async def _reserved(entry) -> int:
    await entry.refresh_from_db()
    return entry.reserved


# ---------------------------------------------------------------------------
# Admission
# ---------------------------------------------------------------------------


class TestAdmission:
    async def test_admission_holds_units_on_every_day(self):
        product, location, entry = await _stock(5)
        booking = await crud.booking_crud.admit_booking(
            CUSTOMER_ID, _request(product, location, day(0), day(2), quantity=3)
        )

        assert booking.status == BookingStatus.PENDING
        assert booking.provider_id == PROVIDER_ID
        assert booking.stock_released is False
        assert await _reserved(entry) == 3
        days = await ReservationDay.filter(entry_id=entry.id).order_by("day")
        assert [(d.day, d.reserved) for d in days] == [(day(0), 3), (day(1), 3), (day(2), 3)]

    async def test_pricing_snapshot(self):
        product, location, _ = await _stock(5)
        booking = await crud.booking_crud.admit_booking(
            CUSTOMER_ID, _request(product, location, day(0), day(2))
        )
        assert booking.rental_days == 3
        assert booking.base_amount == 1500
        assert booking.tax_amount == 270
        assert booking.deposit_amount == 5000
        assert booking.total_amount == 6770

    async def test_full_stock_then_sold_out_then_released(self):
        product, location, entry = await _stock(5)
        first = await crud.booking_crud.admit_booking(
            CUSTOMER_ID, _request(product, location, day(0), day(2), quantity=5)
        )
        assert await _reserved(entry) == 5

        with pytest.raises(InsufficientStock):
            await crud.booking_crud.admit_booking(
                CUSTOMER_ID, _request(product, location, day(1), day(3), quantity=1)
            )

        await crud.booking_crud.transition(first.id, BookingStatus.CANCELLED, make_customer())
        assert await _reserved(entry) == 0

        second = await crud.booking_crud.admit_booking(
            CUSTOMER_ID, _request(product, location, day(1), day(3), quantity=1)
        )
        assert second.status == BookingStatus.PENDING
        assert await _reserved(entry) == 1

    async def test_disjoint_ranges_share_the_same_unit(self):
        product, location, entry = await _stock(1)
        await crud.booking_crud.admit_booking(
            CUSTOMER_ID, _request(product, location, day(0), day(2))
        )
        await crud.booking_crud.admit_booking(
            OTHER_USER_ID, _request(product, location, day(3), day(5))
        )
        assert await Booking.filter(entry_id=entry.id).count() == 2
        assert await _reserved(entry) == 1

    async def test_past_start_rejected_regardless_of_stock(self):
        product, location, _ = await _stock(100)
        with pytest.raises(InvalidDateRange):
            await crud.booking_crud.admit_booking(
                CUSTOMER_ID,
                _request(product, location, TODAY - timedelta(days=1), day(0)),
            )
        assert await Booking.all().count() == 0

    async def test_quantity_limits_of_entry(self):
        product, location, _ = await _stock(10, max_quantity=3)
        with pytest.raises(InvalidQuantity):
            await crud.booking_crud.admit_booking(
                CUSTOMER_ID, _request(product, location, day(0), day(1), quantity=4)
            )

    async def test_inactive_product_rejected(self):
        product, location, _ = await _stock(5)
        product.status = ProductStatus.INACTIVE
        await product.save()
        with pytest.raises(ValidationError):
            await crud.booking_crud.admit_booking(
                CUSTOMER_ID, _request(product, location, day(0), day(1))
            )

    async def test_booking_numbers_are_sequential(self):
        product, location, _ = await _stock(5)
        a = await crud.booking_crud.admit_booking(
            CUSTOMER_ID, _request(product, location, day(0), day(1))
        )
        b = await crud.booking_crud.admit_booking(
            CUSTOMER_ID, _request(product, location, day(0), day(1))
        )
        assert re.fullmatch(r"BK\d{6}\d{4}", a.booking_number)
        assert a.booking_number[:8] == b.booking_number[:8]
        assert int(b.booking_number[-4:]) == int(a.booking_number[-4:]) + 1

    async def test_booking_number_counter_is_kept_per_day(self):
        product, location, _ = await _stock(5)
        for _ in range(3):
            booking = await crud.booking_crud.admit_booking(
                CUSTOMER_ID, _request(product, location, day(0), day(1))
            )
        seq = await BookingNumberSequence.get(prefix=booking.booking_number[:8])
        assert seq.counter == 3
        assert booking.booking_number.endswith("0003")

    async def test_pickup_address_defaults_to_location(self):
        product, location, _ = await _stock(5)
        booking = await crud.booking_crud.admit_booking(
            CUSTOMER_ID, _request(product, location, day(0), day(1))
        )
        assert booking.delivery["pickup_address"]["city"] == "Bengaluru"

    async def test_admission_is_audited(self):
        product, location, _ = await _stock(5)
        booking = await crud.booking_crud.admit_booking(
            CUSTOMER_ID, _request(product, location, day(0), day(1))
        )
        rows = await BookingStatusChange.filter(booking_id=booking.id)
        assert len(rows) == 1
        assert rows[0].from_status is None
        assert rows[0].to_status == BookingStatus.PENDING
        assert rows[0].changed_by == CUSTOMER_ID


class TestConcurrency:
    async def test_last_unit_goes_to_exactly_one_request(self):
        product, location, entry = await _stock(1)
        results = await asyncio.gather(
            crud.booking_crud.admit_booking(
                CUSTOMER_ID, _request(product, location, day(0), day(2))
            ),
            crud.booking_crud.admit_booking(
                OTHER_USER_ID, _request(product, location, day(1), day(3))
            ),
            return_exceptions=True,
        )
        admitted = [r for r in results if isinstance(r, Booking)]
        refused = [r for r in results if isinstance(r, InsufficientStock)]
        assert len(admitted) == 1
        assert len(refused) == 1
        assert await _reserved(entry) == 1

    async def test_lost_version_check_is_retried(self):
        product, location, entry = await _stock(2)
        real_sync = crud._sync_reserved
        calls = []

        async def flaky_sync(e):
            calls.append(e.id)
            if len(calls) == 1:
                raise ReservationConflict("lost the race")
            await real_sync(e)

        with patch("app.crud._sync_reserved", side_effect=flaky_sync):
            booking = await crud.booking_crud.admit_booking(
                CUSTOMER_ID, _request(product, location, day(0), day(1))
            )
        assert len(calls) == 2
        assert booking.status == BookingStatus.PENDING
        # the rolled-back first attempt left no trace in the day buckets
        assert await _reserved(entry) == 1
        assert await ReservationDay.filter(entry_id=entry.id, reserved=1).count() == 2

    async def test_retries_exhausted_surfaces_insufficient_stock(self):
        product, location, entry = await _stock(2)
        with patch(
            "app.crud._sync_reserved",
            AsyncMock(side_effect=ReservationConflict("lost the race")),
        ):
            with pytest.raises(InsufficientStock):
                await BookingCRUD(max_retries=2).admit_booking(
                    CUSTOMER_ID, _request(product, location, day(0), day(1))
                )
        assert await Booking.all().count() == 0
        assert await ReservationDay.filter(entry_id=entry.id).count() == 0


# ---------------------------------------------------------------------------
# Lifecycle and release
# ---------------------------------------------------------------------------


class TestLifecycle:
    async def test_cancel_is_terminal_and_releases_once(self):
        product, location, entry = await _stock(3)
        booking = await crud.booking_crud.admit_booking(
            CUSTOMER_ID, _request(product, location, day(0), day(2), quantity=2)
        )
        cancelled, old = await crud.booking_crud.transition(
            booking.id, BookingStatus.CANCELLED, make_customer(), reason="changed plans"
        )
        assert old == BookingStatus.PENDING
        assert cancelled.stock_released is True
        assert cancelled.hold_expires_at is None
        assert await _reserved(entry) == 0
        assert await ReservationDay.filter(entry_id=entry.id).count() == 0

        with pytest.raises(InvalidStateTransition):
            await crud.booking_crud.transition(
                booking.id, BookingStatus.CANCELLED, make_customer()
            )
        assert await _reserved(entry) == 0

    async def test_full_lifecycle_releases_on_completion(self):
        product, location, entry = await _stock(2)
        booking = await crud.booking_crud.admit_booking(
            CUSTOMER_ID, _request(product, location, day(0), day(1), method="stripe")
        )
        await crud.booking_crud.settle_payment(booking.id, PaymentOutcome.CAPTURED)
        for status in (
            BookingStatus.APPROVED,
            BookingStatus.PICKED_UP,
            BookingStatus.IN_USE,
            BookingStatus.RETURNED,
        ):
            await crud.booking_crud.transition(booking.id, status, make_provider())
            assert await _reserved(entry) == 1

        done, _ = await crud.booking_crud.transition(
            booking.id, BookingStatus.COMPLETED, SYSTEM_USER
        )
        assert done.status == BookingStatus.COMPLETED
        assert await _reserved(entry) == 0

        history = await crud.booking_crud.history(booking.id)
        assert [h.to_status for h in history] == [
            BookingStatus.PENDING,
            BookingStatus.CONFIRMED,
            BookingStatus.APPROVED,
            BookingStatus.PICKED_UP,
            BookingStatus.IN_USE,
            BookingStatus.RETURNED,
            BookingStatus.COMPLETED,
        ]

    async def test_provider_rejects_pending(self):
        product, location, entry = await _stock(2)
        booking = await crud.booking_crud.admit_booking(
            CUSTOMER_ID, _request(product, location, day(0), day(1))
        )
        rejected, _ = await crud.booking_crud.transition(
            booking.id, BookingStatus.REJECTED, make_provider(), reason="under repair"
        )
        assert rejected.status == BookingStatus.REJECTED
        assert await _reserved(entry) == 0

    async def test_customer_cannot_approve(self):
        product, location, _ = await _stock(2)
        booking = await crud.booking_crud.admit_booking(
            CUSTOMER_ID, _request(product, location, day(0), day(1))
        )
        with pytest.raises(PermissionDenied):
            await crud.booking_crud.transition(
                booking.id, BookingStatus.APPROVED, make_customer()
            )

    async def test_stranger_cannot_touch_booking(self):
        product, location, _ = await _stock(2)
        booking = await crud.booking_crud.admit_booking(
            CUSTOMER_ID, _request(product, location, day(0), day(1))
        )
        with pytest.raises(PermissionDenied):
            await crud.booking_crud.transition(
                booking.id, BookingStatus.CANCELLED, make_customer(user_id=uuid4())
            )
        with pytest.raises(PermissionDenied):
            await crud.booking_crud.transition(
                booking.id, BookingStatus.APPROVED, make_provider(user_id=uuid4())
            )

    async def test_cancel_needs_cancel_scope(self):
        product, location, _ = await _stock(2)
        booking = await crud.booking_crud.admit_booking(
            CUSTOMER_ID, _request(product, location, day(0), day(1))
        )
        with pytest.raises(PermissionDenied):
            await crud.booking_crud.transition(
                booking.id,
                BookingStatus.CANCELLED,
                make_customer(scopes=[BookingScope.READ, BookingScope.WRITE]),
            )

    async def test_admin_approves_any_booking(self):
        product, location, _ = await _stock(2)
        booking = await crud.booking_crud.admit_booking(
            CUSTOMER_ID, _request(product, location, day(0), day(1))
        )
        approved, _ = await crud.booking_crud.transition(
            booking.id, BookingStatus.APPROVED, make_admin()
        )
        assert approved.status == BookingStatus.APPROVED
        assert approved.hold_expires_at is None


class TestPaymentSettlement:
    async def test_failed_capture_cancels_and_releases(self):
        product, location, entry = await _stock(1)
        booking = await crud.booking_crud.admit_booking(
            CUSTOMER_ID, _request(product, location, day(0), day(1), method="razorpay")
        )
        settled = await crud.booking_crud.settle_payment(booking.id, PaymentOutcome.FAILED)
        assert settled.status == BookingStatus.CANCELLED
        assert settled.payment_status == PaymentStatus.FAILED
        assert await _reserved(entry) == 0

    async def test_capture_confirms_and_keeps_stock(self):
        product, location, entry = await _stock(1)
        booking = await crud.booking_crud.admit_booking(
            CUSTOMER_ID, _request(product, location, day(0), day(1), method="stripe")
        )
        settled = await crud.booking_crud.settle_payment(booking.id, PaymentOutcome.CAPTURED)
        assert settled.status == BookingStatus.CONFIRMED
        assert settled.payment_status == PaymentStatus.CAPTURED
        assert settled.hold_expires_at is None
        assert await _reserved(entry) == 1

    async def test_mark_refunded(self):
        product, location, _ = await _stock(1)
        booking = await crud.booking_crud.admit_booking(
            CUSTOMER_ID, _request(product, location, day(0), day(1), method="stripe")
        )
        await crud.booking_crud.mark_refunded(booking.id)
        await booking.refresh_from_db()
        assert booking.payment_status == PaymentStatus.REFUNDED


# ---------------------------------------------------------------------------
# Hold expiry
# ---------------------------------------------------------------------------


class TestHoldExpiry:
    async def test_sweep_releases_expired_holds(self):
        product, location, entry = await _stock(1)
        booking = await crud.booking_crud.admit_booking(
            CUSTOMER_ID, _request(product, location, day(0), day(1))
        )
        later = datetime.now(UTC) + timedelta(days=2)

        assert await crud.booking_crud.expire_holds(now=later) == 1
        await booking.refresh_from_db()
        assert booking.status == BookingStatus.CANCELLED
        assert booking.stock_released is True
        assert await _reserved(entry) == 0

        assert await crud.booking_crud.expire_holds(now=later) == 0

    async def test_unexpired_hold_is_kept(self):
        product, location, entry = await _stock(1)
        await crud.booking_crud.admit_booking(
            CUSTOMER_ID, _request(product, location, day(0), day(1))
        )
        earlier = datetime.now(UTC) - timedelta(days=2)
        assert await crud.booking_crud.expire_holds(now=earlier) == 0
        assert await _reserved(entry) == 1

    async def test_confirmed_bookings_never_expire(self):
        product, location, entry = await _stock(1)
        booking = await crud.booking_crud.admit_booking(
            CUSTOMER_ID, _request(product, location, day(0), day(1), method="stripe")
        )
        await crud.booking_crud.settle_payment(booking.id, PaymentOutcome.CAPTURED)
        later = datetime.now(UTC) + timedelta(days=30)
        assert await crud.booking_crud.expire_holds(now=later) == 0
        assert await _reserved(entry) == 1

    async def test_admission_sweeps_expired_holds_first(self):
        product, location, entry = await _stock(1)
        stale = await crud.booking_crud.admit_booking(
            CUSTOMER_ID, _request(product, location, day(0), day(1))
        )
        fresh = await crud.booking_crud.admit_booking(
            OTHER_USER_ID,
            _request(product, location, day(0), day(1)),
            now=datetime.now(UTC) + timedelta(days=2),
        )
        await stale.refresh_from_db()
        assert stale.status == BookingStatus.CANCELLED
        assert fresh.status == BookingStatus.PENDING
        assert await _reserved(entry) == 1

    async def test_expired_hold_cannot_be_approved(self):
        product, location, entry = await _stock(1)
        booking = await crud.booking_crud.admit_booking(
            CUSTOMER_ID, _request(product, location, day(0), day(1))
        )
        with _later():
            with pytest.raises(InvalidStateTransition):
                await crud.booking_crud.transition(
                    booking.id, BookingStatus.APPROVED, make_provider()
                )
        await booking.refresh_from_db()
        assert booking.status == BookingStatus.CANCELLED
        assert booking.stock_released is True
        assert await _reserved(entry) == 0
        history = await crud.booking_crud.history(booking.id)
        assert history[-1].reason == "hold_expired"

    async def test_expired_hold_cannot_be_rejected_or_cancelled(self):
        product, location, entry = await _stock(1)
        booking = await crud.booking_crud.admit_booking(
            CUSTOMER_ID, _request(product, location, day(0), day(1))
        )
        with _later():
            with pytest.raises(InvalidStateTransition):
                await crud.booking_crud.transition(
                    booking.id, BookingStatus.REJECTED, make_provider()
                )
            with pytest.raises(InvalidStateTransition):
                await crud.booking_crud.transition(
                    booking.id, BookingStatus.CANCELLED, make_customer()
                )
        assert await _reserved(entry) == 0

    async def test_capture_after_expiry_stays_cancelled(self):
        product, location, entry = await _stock(1)
        booking = await crud.booking_crud.admit_booking(
            CUSTOMER_ID, _request(product, location, day(0), day(1), method="stripe")
        )
        with _later():
            settled = await crud.booking_crud.settle_payment(
                booking.id, PaymentOutcome.CAPTURED
            )
        assert settled.status == BookingStatus.CANCELLED
        assert settled.payment_status == PaymentStatus.CAPTURED
        assert await _reserved(entry) == 0


# ---------------------------------------------------------------------------
# Read side
# ---------------------------------------------------------------------------


class TestReads:
    async def test_check_availability_reflects_holds(self):
        product, location, _ = await _stock(5)
        await crud.booking_crud.admit_booking(
            CUSTOMER_ID, _request(product, location, day(1), day(2), quantity=4)
        )
        result = await crud.booking_crud.check_availability(
            product.id, location.id, day(0), day(3), 2
        )
        assert not result.available
        assert result.available_quantity == 1
        assert result.reserved_quantity == 4

    async def test_calendar_per_day(self):
        product, location, _ = await _stock(5)
        await crud.booking_crud.admit_booking(
            CUSTOMER_ID, _request(product, location, day(1), day(2), quantity=2)
        )
        rows = await crud.booking_crud.calendar(product.id, location.id, day(0), day(3))
        assert [r["reserved"] for r in rows] == [0, 2, 2, 0]
        assert [r["available"] for r in rows] == [5, 3, 3, 5]

    async def test_calendar_served_from_cache(self, fake_redis):
        product, location, _ = await _stock(5)
        fake_redis.get = AsyncMock(return_value='[{"day": "2030-01-01", "reserved": 9, "available": 0}]')
        rows = await crud.booking_crud.calendar(product.id, location.id, day(0), day(3))
        assert rows == [{"day": "2030-01-01", "reserved": 9, "available": 0}]

    async def test_calendar_expires_holds_before_reading_cache(self, fake_redis):
        product, location, entry = await _stock(5)
        booking = await crud.booking_crud.admit_booking(
            CUSTOMER_ID, _request(product, location, day(0), day(1), quantity=2)
        )
        fake_redis.get = AsyncMock(return_value='[{"day": "2030-01-01", "reserved": 2, "available": 3}]')
        with _later():
            await crud.booking_crud.calendar(product.id, location.id, day(0), day(1))
        await booking.refresh_from_db()
        assert booking.status == BookingStatus.CANCELLED
        assert await _reserved(entry) == 0

    async def test_quote(self):
        product, location, _ = await _stock(5)
        price, result = await crud.booking_crud.quote(
            product.id, location.id, day(0), day(2), 1
        )
        assert price.total_amount == 6770
        assert result.available

    async def test_visibility_filters(self):
        product, location, _ = await _stock(5)
        booking = await crud.booking_crud.admit_booking(
            CUSTOMER_ID, _request(product, location, day(0), day(1))
        )
        assert await crud.booking_crud.get_booking(booking.id, customer_id=CUSTOMER_ID)
        assert await crud.booking_crud.get_booking(booking.id, customer_id=OTHER_USER_ID) is None
        assert await crud.booking_crud.get_booking(booking.id, provider_id=PROVIDER_ID)


class TestStockAdjustment:
    async def test_cannot_drop_below_reserved(self):
        product, location, entry = await _stock(5)
        await crud.booking_crud.admit_booking(
            CUSTOMER_ID, _request(product, location, day(0), day(1), quantity=3)
        )
        with pytest.raises(ValidationError):
            await catalog_crud.update_inventory(
                product.id, location.id, InventoryEntryUpdate(quantity=2)
            )
        updated = await catalog_crud.update_inventory(
            product.id, location.id, InventoryEntryUpdate(quantity=3)
        )
        assert updated.quantity == 3
        assert updated.available == 0

    async def test_restock_bumps_version(self):
        product, location, entry = await _stock(5)
        before = entry.version
        updated = await catalog_crud.update_inventory(
            product.id, location.id, InventoryEntryUpdate(quantity=8)
        )
        assert updated.version == before + 1


# ---------------------------------------------------------------------------
# Cart holds
# ---------------------------------------------------------------------------


class TestCartHolds:
    async def test_hold_takes_units_off_the_ledger(self):
        product, location, entry = await _stock(2)
        hold = await crud.booking_crud.create_cart_hold(
            OTHER_USER_ID, _hold_request(product, location, day(0), day(1), quantity=2)
        )
        assert hold.status == CartHoldStatus.ACTIVE
        assert hold.entry_id == entry.id
        assert await _reserved(entry) == 2

        with pytest.raises(InsufficientStock):
            await crud.booking_crud.admit_booking(
                CUSTOMER_ID, _request(product, location, day(1), day(2))
            )
        result = await crud.booking_crud.check_availability(
            product.id, location.id, day(0), day(1), 1
        )
        assert result.available_quantity == 0

    async def test_hold_beyond_stock_is_refused(self):
        product, location, entry = await _stock(1)
        with pytest.raises(InsufficientStock):
            await crud.booking_crud.create_cart_hold(
                CUSTOMER_ID, _hold_request(product, location, day(0), day(1), quantity=2)
            )
        assert await CartHold.all().count() == 0
        assert await _reserved(entry) == 0

    async def test_one_active_hold_per_user_and_range(self):
        product, location, entry = await _stock(5)
        await crud.booking_crud.create_cart_hold(
            CUSTOMER_ID, _hold_request(product, location, day(0), day(2))
        )
        with pytest.raises(DuplicateCartHold):
            await crud.booking_crud.create_cart_hold(
                CUSTOMER_ID, _hold_request(product, location, day(2), day(4))
            )
        await crud.booking_crud.create_cart_hold(
            OTHER_USER_ID, _hold_request(product, location, day(2), day(4))
        )
        assert await _reserved(entry) == 2

    async def test_booking_converts_hold_without_reserving_twice(self):
        product, location, entry = await _stock(2)
        hold = await crud.booking_crud.create_cart_hold(
            CUSTOMER_ID, _hold_request(product, location, day(0), day(1), quantity=2)
        )
        booking = await crud.booking_crud.admit_booking(
            CUSTOMER_ID,
            _request(product, location, day(0), day(1), quantity=2, hold_id=hold.id),
        )
        assert booking.status == BookingStatus.PENDING
        assert await _reserved(entry) == 2
        days = await ReservationDay.filter(entry_id=entry.id).order_by("day")
        assert [d.reserved for d in days] == [2, 2]

        await hold.refresh_from_db()
        assert hold.status == CartHoldStatus.CONVERTED
        assert hold.converted_booking_id == booking.id

        # the units now belong to the booking
        await crud.booking_crud.transition(booking.id, BookingStatus.CANCELLED, make_customer())
        assert await _reserved(entry) == 0

    async def test_converted_hold_cannot_be_used_again(self):
        product, location, _ = await _stock(3)
        hold = await crud.booking_crud.create_cart_hold(
            CUSTOMER_ID, _hold_request(product, location, day(0), day(1))
        )
        await crud.booking_crud.admit_booking(
            CUSTOMER_ID, _request(product, location, day(0), day(1), hold_id=hold.id)
        )
        with pytest.raises(InvalidStateTransition):
            await crud.booking_crud.admit_booking(
                CUSTOMER_ID, _request(product, location, day(0), day(1), hold_id=hold.id)
            )

    async def test_booking_must_match_its_hold(self):
        product, location, entry = await _stock(3)
        hold = await crud.booking_crud.create_cart_hold(
            CUSTOMER_ID, _hold_request(product, location, day(0), day(1))
        )
        with pytest.raises(ValidationError):
            await crud.booking_crud.admit_booking(
                CUSTOMER_ID, _request(product, location, day(0), day(2), hold_id=hold.id)
            )
        await hold.refresh_from_db()
        assert hold.status == CartHoldStatus.ACTIVE
        assert await Booking.all().count() == 0
        assert await _reserved(entry) == 1

    async def test_someone_elses_hold_is_not_found(self):
        product, location, _ = await _stock(3)
        hold = await crud.booking_crud.create_cart_hold(
            OTHER_USER_ID, _hold_request(product, location, day(0), day(1))
        )
        with pytest.raises(NotFound):
            await crud.booking_crud.admit_booking(
                CUSTOMER_ID, _request(product, location, day(0), day(1), hold_id=hold.id)
            )

    async def test_release_gives_units_back_once(self):
        product, location, entry = await _stock(2)
        hold = await crud.booking_crud.create_cart_hold(
            CUSTOMER_ID, _hold_request(product, location, day(0), day(1))
        )
        released = await crud.booking_crud.release_cart_hold(hold.id, make_customer())
        assert released.status == CartHoldStatus.CANCELLED
        assert released.cancelled_by == CUSTOMER_ID
        assert await _reserved(entry) == 0
        assert await ReservationDay.filter(entry_id=entry.id).count() == 0

        with pytest.raises(InvalidStateTransition):
            await crud.booking_crud.release_cart_hold(hold.id, make_customer())
        assert await _reserved(entry) == 0

    async def test_only_owner_or_admin_releases(self):
        product, location, entry = await _stock(2)
        hold = await crud.booking_crud.create_cart_hold(
            CUSTOMER_ID, _hold_request(product, location, day(0), day(1))
        )
        with pytest.raises(PermissionDenied):
            await crud.booking_crud.release_cart_hold(hold.id, make_customer(user_id=OTHER_USER_ID))
        released = await crud.booking_crud.release_cart_hold(hold.id, make_admin())
        assert released.status == CartHoldStatus.CANCELLED
        assert await _reserved(entry) == 0

    async def test_extend_up_to_the_lifetime_cap(self):
        product, location, _ = await _stock(2)
        hold = await crud.booking_crud.create_cart_hold(
            CUSTOMER_ID, _hold_request(product, location, day(0), day(1))
        )
        first_expiry = hold.expires_at
        extended = await crud.booking_crud.extend_cart_hold(hold.id, make_customer(), 20)
        assert extended.expires_at - first_expiry == timedelta(minutes=20)

        with pytest.raises(ValidationError):
            await crud.booking_crud.extend_cart_hold(hold.id, make_customer(), 1)

    async def test_only_owner_extends(self):
        product, location, _ = await _stock(2)
        hold = await crud.booking_crud.create_cart_hold(
            CUSTOMER_ID, _hold_request(product, location, day(0), day(1))
        )
        with pytest.raises(PermissionDenied):
            await crud.booking_crud.extend_cart_hold(hold.id, make_admin(), 5)

    async def test_sweep_expires_cart_holds(self):
        product, location, entry = await _stock(1)
        hold = await crud.booking_crud.create_cart_hold(
            CUSTOMER_ID, _hold_request(product, location, day(0), day(1))
        )
        later = datetime.now(UTC) + timedelta(days=1)
        assert await crud.booking_crud.expire_holds(now=later) == 1
        await hold.refresh_from_db()
        assert hold.status == CartHoldStatus.EXPIRED
        assert await _reserved(entry) == 0

        with pytest.raises(InvalidStateTransition):
            await crud.booking_crud.extend_cart_hold(hold.id, make_customer(), 5)

    async def test_admission_sweeps_expired_cart_holds(self):
        product, location, entry = await _stock(1)
        await crud.booking_crud.create_cart_hold(
            OTHER_USER_ID, _hold_request(product, location, day(0), day(1))
        )
        booking = await crud.booking_crud.admit_booking(
            CUSTOMER_ID,
            _request(product, location, day(0), day(1)),
            now=datetime.now(UTC) + timedelta(days=1),
        )
        assert booking.status == BookingStatus.PENDING
        assert await _reserved(entry) == 1
        assert await CartHold.filter(status=CartHoldStatus.EXPIRED).count() == 1

    async def test_list_shows_own_holds_by_status(self):
        product, location, _ = await _stock(3)
        mine = await crud.booking_crud.create_cart_hold(
            CUSTOMER_ID, _hold_request(product, location, day(0), day(1))
        )
        await crud.booking_crud.create_cart_hold(
            OTHER_USER_ID, _hold_request(product, location, day(0), day(1))
        )
        active = await crud.booking_crud.list_cart_holds(CUSTOMER_ID)
        assert [h.id for h in active] == [mine.id]
        assert await crud.booking_crud.list_cart_holds(
            CUSTOMER_ID, status=CartHoldStatus.CANCELLED
        ) == []

    async def test_list_expires_stale_holds_first(self):
        product, location, entry = await _stock(3)
        hold = await crud.booking_crud.create_cart_hold(
            CUSTOMER_ID, _hold_request(product, location, day(0), day(1))
        )
        with _later(days=1):
            assert await crud.booking_crud.list_cart_holds(CUSTOMER_ID) == []
            expired = await crud.booking_crud.list_cart_holds(
                CUSTOMER_ID, status=CartHoldStatus.EXPIRED
            )
        assert [h.id for h in expired] == [hold.id]
        assert await _reserved(entry) == 0
