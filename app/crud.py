from __future__ import annotations

from collections.abc import Awaitable, Callable
from datetime import date, datetime, timedelta, timezone
from functools import partial
from typing import TypeVar
from uuid import UUID

from loguru import logger
from tortoise.exceptions import IntegrityError
from tortoise.expressions import F
from tortoise.transactions import in_transaction

from app import availability, events, lifecycle, settings
from app.availability import AvailabilityResult
from app.cache import get_calendar_cache, invalidate_calendar_cache, set_calendar_cache
from app.deps import SYSTEM_USER, CurrentUser, PaymentOutcome
from app.errors import (
    DuplicateCartHold,
    InsufficientStock,
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
    DeliveryType,
    InventoryEntry,
    PaymentStatus,
    Product,
    ProductStatus,
    ReservationDay,
)
from app.pricing import PriceBreakdown, calculate_price
from app.schemas import BookingCreate, BookingFilters, CartHoldCreate
from app.scopes import BookingScope, Role

T = TypeVar("T")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Ledger primitives: callers must hold the inventory entry row lock
# ---------------------------------------------------------------------------


async def _lock_entry(entry_id: UUID) -> InventoryEntry:
    entry = await InventoryEntry.filter(id=entry_id).select_for_update().first()
    if entry is None:
        raise NotFound("Inventory entry not found")
    return entry


async def _load_buckets(entry_id: UUID, start: date, end: date) -> dict[date, int]:
    rows = await ReservationDay.filter(
        entry_id=entry_id, day__gte=start, day__lte=end
    ).values_list("day", "reserved")
    return dict(rows)


async def _hold_days(entry: InventoryEntry, start: date, end: date, quantity: int) -> None:
    """Add `quantity` to every day bucket of [start, end], creating missing buckets."""
    existing = set(
        await ReservationDay.filter(
            entry_id=entry.id, day__gte=start, day__lte=end
        ).values_list("day", flat=True)
    )
    if existing:
        await ReservationDay.filter(entry_id=entry.id, day__in=list(existing)).update(
            reserved=F("reserved") + quantity
        )
    missing = [d for d in availability.iter_days(start, end) if d not in existing]
    if missing:
        await ReservationDay.bulk_create(
            [ReservationDay(entry_id=entry.id, day=d, reserved=quantity) for d in missing]
        )


async def _free_days(entry: InventoryEntry, start: date, end: date, quantity: int) -> None:
    await ReservationDay.filter(entry_id=entry.id, day__gte=start, day__lte=end).update(
        reserved=F("reserved") - quantity
    )
    await ReservationDay.filter(entry_id=entry.id, reserved__lte=0).delete()


async def peak_reserved(entry_id: UUID) -> int:
    busiest = await ReservationDay.filter(entry_id=entry_id).order_by("-reserved").first()
    return busiest.reserved if busiest else 0


async def _sync_reserved(entry: InventoryEntry) -> None:
    """
    Store the busiest day's hold on the entry, guarded by its version stamp.

    Raises ReservationConflict when another writer bumped the version since
    `entry` was read.
    """
    peak = await peak_reserved(entry.id)
    if not 0 <= peak <= entry.quantity:
        raise InsufficientStock(
            f"Reservation would exceed stock ({peak} > {entry.quantity})",
            available=max(0, entry.quantity - entry.reserved),
        )
    updated = await InventoryEntry.filter(id=entry.id, version=entry.version).update(
        reserved=peak, version=entry.version + 1
    )
    if not updated:
        raise ReservationConflict(f"inventory entry {entry.id} changed concurrently")
    entry.reserved = peak
    entry.version += 1


async def _reserve(
    entry: InventoryEntry, start: date, end: date, quantity: int, today: date
) -> None:
    """Check capacity on the locked entry, then hold `quantity` on every day."""
    buckets = await _load_buckets(entry.id, start, end)
    result = availability.evaluate(
        stock=entry.quantity,
        buckets=buckets,
        start=start,
        end=end,
        quantity=quantity,
        min_quantity=entry.min_quantity,
        max_quantity=entry.max_quantity,
        today=today,
    )
    availability.require_capacity(result)
    await _hold_days(entry, start, end, quantity)
    await _sync_reserved(entry)


async def _release(booking: Booking, entry: InventoryEntry) -> None:
    """Give a booking's units back to the ledger, at most once."""
    if booking.stock_released:
        return
    await _free_days(entry, booking.start_date, booking.end_date, booking.quantity)
    await _sync_reserved(entry)
    booking.stock_released = True
    logger.info(
        "Released {} unit(s) of entry {} held by booking {}",
        booking.quantity,
        entry.id,
        booking.booking_number,
    )


async def _drop_cart_hold(
    hold: CartHold, entry: InventoryEntry, new_status: CartHoldStatus
) -> None:
    """Give an active cart hold's units back and close it with `new_status`."""
    await _free_days(entry, hold.start_date, hold.end_date, hold.quantity)
    await _sync_reserved(entry)
    hold.status = new_status
    await hold.save(update_fields=["status", "updated_at"])


async def _next_booking_number(today: date) -> str:
    """BK + YYMMDD + per-day sequence, e.g. BK2606010007."""
    prefix = f"BK{today:%y%m%d}"
    bumped = await BookingNumberSequence.filter(prefix=prefix).update(counter=F("counter") + 1)
    if not bumped:
        await BookingNumberSequence.create(prefix=prefix, counter=1)
    seq = await BookingNumberSequence.get(prefix=prefix)
    return f"{prefix}{seq.counter:04d}"


def _role_for(booking: Booking, actor: CurrentUser) -> Role:
    """Resolve which lifecycle role `actor` plays on this particular booking."""
    if actor.is_system:
        return Role.SYSTEM
    if actor.is_admin:
        return Role.ADMIN
    if BookingScope.MANAGE in actor.scopes and actor.id == booking.provider_id:
        return Role.PROVIDER
    if actor.id == booking.customer_id:
        return Role.CUSTOMER
    raise PermissionDenied("You can only act on your own bookings or bookings of your products")


async def _claim_cart_hold(
    hold_id: UUID, entry: InventoryEntry, customer_id: UUID, payload: BookingCreate
) -> CartHold:
    """Lock the customer's active cart hold that the booking will take over."""
    hold = await CartHold.filter(id=hold_id).select_for_update().first()
    if hold is None or hold.user_id != customer_id:
        raise NotFound("Cart hold not found")
    if (
        hold.entry_id != entry.id
        or hold.start_date != payload.start_date
        or hold.end_date != payload.end_date
        or hold.quantity != payload.quantity
    ):
        raise ValidationError(
            "Booking must match the held product, location, dates and quantity",
            field="hold_id",
        )
    if hold.status != CartHoldStatus.ACTIVE:
        raise InvalidStateTransition(f"Cart hold is {hold.status}, not active")
    return hold


class BookingCRUD:
    def __init__(self, max_retries: int = settings.ADMISSION_MAX_RETRIES):
        self.max_retries = max_retries

    async def _retrying(self, label: str, attempt_once: Callable[[], Awaitable[T]]) -> T:
        """Run one ledger write, retrying lost version checks up to `max_retries` times."""
        for attempt in range(1, self.max_retries + 1):
            try:
                return await attempt_once()
            except ReservationConflict as exc:
                logger.warning(
                    "{} attempt {}/{} lost a race: {}", label, attempt, self.max_retries, exc
                )
        raise InsufficientStock(
            "Stock changed while booking; please check availability and retry"
        )

    # -- lookups ------------------------------------------------------------

    async def _product_and_entry(
        self, product_id: UUID, location_id: UUID
    ) -> tuple[Product, InventoryEntry]:
        product = await Product.get_or_none(id=product_id)
        if product is None:
            raise NotFound("Product not found")
        entry = await InventoryEntry.get_or_none(product_id=product_id, location_id=location_id)
        if entry is None:
            raise NotFound("Product is not stocked at this location")
        return product, entry

    async def _bookable(
        self, product_id: UUID, location_id: UUID
    ) -> tuple[Product, InventoryEntry]:
        product, entry = await self._product_and_entry(product_id, location_id)
        if product.status != ProductStatus.ACTIVE:
            raise ValidationError("Product is not available for booking", field="product_id")
        await entry.fetch_related("location")
        if not entry.location.is_active:
            raise ValidationError("Location is not accepting bookings", field="location_id")
        return product, entry

    # -- availability -------------------------------------------------------

    async def check_availability(
        self,
        product_id: UUID,
        location_id: UUID,
        start_date: date,
        end_date: date,
        quantity: int,
        today: date | None = None,
    ) -> AvailabilityResult:
        _, entry = await self._product_and_entry(product_id, location_id)
        await self.expire_holds(entry_id=entry.id)
        buckets = await _load_buckets(entry.id, start_date, end_date)
        return availability.evaluate(
            stock=entry.quantity,
            buckets=buckets,
            start=start_date,
            end=end_date,
            quantity=quantity,
            min_quantity=entry.min_quantity,
            max_quantity=entry.max_quantity,
            today=today,
        )

    async def calendar(
        self, product_id: UUID, location_id: UUID, start_date: date, end_date: date
    ) -> list[dict]:
        _, entry = await self._product_and_entry(product_id, location_id)
        # Expiry drops the entry's cached ranges when it releases anything.
        await self.expire_holds(entry_id=entry.id)

        cached = await get_calendar_cache(entry.id, start_date, end_date)
        if cached is not None:
            logger.debug("Cache hit for calendar: entry_id={}", entry.id)
            return cached

        logger.debug("Cache miss for calendar: entry_id={}", entry.id)
        buckets = await _load_buckets(entry.id, start_date, end_date)
        days = availability.calendar(entry.quantity, buckets, start_date, end_date)
        await set_calendar_cache(entry.id, start_date, end_date, days)
        return days

    async def quote(
        self,
        product_id: UUID,
        location_id: UUID,
        start_date: date,
        end_date: date,
        quantity: int,
        today: date | None = None,
    ) -> tuple[PriceBreakdown, AvailabilityResult]:
        result = await self.check_availability(
            product_id, location_id, start_date, end_date, quantity, today=today
        )
        product = await Product.get(id=product_id)
        price = calculate_price(
            daily_rate=product.daily_rate,
            quantity=quantity,
            start_date=start_date,
            end_date=end_date,
            deposit_amount=product.deposit_amount,
            deposit_required=product.deposit_required,
            currency=product.currency,
        )
        return price, result

    # -- admission ----------------------------------------------------------

    async def admit_booking(
        self,
        customer_id: UUID,
        payload: BookingCreate,
        today: date | None = None,
        now: datetime | None = None,
    ) -> Booking:
        """
        Reserve stock and create a pending booking in one transaction.

        The entry row is locked for the whole check-then-reserve sequence and
        the entry counter is written with a version check; a lost version
        check rolls everything back and retries up to `max_retries` times.
        With `payload.hold_id` the booking takes over the units of that cart
        hold instead of reserving again.
        """
        now = now or _utcnow()
        today = today or now.date()

        product, entry = await self._bookable(payload.product_id, payload.location_id)
        availability.validate_date_range(payload.start_date, payload.end_date, today)
        availability.validate_quantity(payload.quantity, entry.min_quantity, entry.max_quantity)

        price = calculate_price(
            daily_rate=product.daily_rate,
            quantity=payload.quantity,
            start_date=payload.start_date,
            end_date=payload.end_date,
            deposit_amount=product.deposit_amount,
            deposit_required=product.deposit_required,
            currency=product.currency,
        )

        delivery = payload.delivery.model_dump(mode="json")
        if payload.delivery.type == DeliveryType.PICKUP and not delivery.get("pickup_address"):
            delivery["pickup_address"] = entry.location.address

        ttl = (
            settings.ONLINE_HOLD_TTL_MINUTES
            if payload.payment_method.is_online
            else settings.HOLD_TTL_MINUTES
        )

        booking, expired, expired_holds = await self._retrying(
            "Admission",
            partial(
                self._admit_once,
                entry_id=entry.id,
                product=product,
                customer_id=customer_id,
                payload=payload,
                price=price,
                delivery=delivery,
                hold_expires_at=now + timedelta(minutes=ttl),
                today=today,
                now=now,
            ),
        )

        logger.info(
            "Booking admitted: number={} product={} location={} qty={} {}..{}",
            booking.booking_number,
            product.id,
            payload.location_id,
            payload.quantity,
            payload.start_date,
            payload.end_date,
        )

        await invalidate_calendar_cache(entry.id)
        await self._publish_expired(expired, expired_holds)
        await events.booking_created(booking)
        return booking

    async def _admit_once(
        self,
        entry_id: UUID,
        product: Product,
        customer_id: UUID,
        payload: BookingCreate,
        price: PriceBreakdown,
        delivery: dict,
        hold_expires_at: datetime,
        today: date,
        now: datetime,
    ) -> tuple[Booking, list[Booking], list[CartHold]]:
        try:
            async with in_transaction():
                entry = await _lock_entry(entry_id)
                expired, expired_holds = await self._expire_locked(entry, now)

                cart_hold = None
                if payload.hold_id is not None:
                    cart_hold = await _claim_cart_hold(
                        payload.hold_id, entry, customer_id, payload
                    )
                else:
                    await _reserve(
                        entry, payload.start_date, payload.end_date, payload.quantity, today
                    )

                booking = await Booking.create(
                    booking_number=await _next_booking_number(today),
                    customer_id=customer_id,
                    provider_id=product.provider_id,
                    product_id=product.id,
                    location_id=payload.location_id,
                    entry_id=entry.id,
                    quantity=payload.quantity,
                    start_date=payload.start_date,
                    end_date=payload.end_date,
                    status=BookingStatus.PENDING,
                    daily_rate=price.daily_rate,
                    rental_days=price.rental_days,
                    base_amount=price.base_amount,
                    deposit_amount=price.deposit_amount,
                    tax_amount=price.tax_amount,
                    total_amount=price.total_amount,
                    currency=price.currency,
                    payment_method=payload.payment_method,
                    delivery=delivery,
                    notes=payload.notes,
                    hold_expires_at=hold_expires_at,
                )
                await BookingStatusChange.create(
                    booking=booking,
                    from_status=None,
                    to_status=BookingStatus.PENDING,
                    changed_by=customer_id,
                    role=Role.CUSTOMER,
                    reason="admitted" if cart_hold is None else "admitted_from_cart_hold",
                )

                if cart_hold is not None:
                    cart_hold.status = CartHoldStatus.CONVERTED
                    cart_hold.converted_booking_id = booking.id
                    cart_hold.converted_at = now
                    await cart_hold.save(
                        update_fields=[
                            "status",
                            "converted_booking_id",
                            "converted_at",
                            "updated_at",
                        ]
                    )
        except IntegrityError as exc:
            # Concurrent bucket or booking-number insert
            raise ReservationConflict(str(exc)) from exc
        return booking, expired, expired_holds

    # -- lifecycle ----------------------------------------------------------

    async def _apply(
        self,
        booking: Booking,
        entry: InventoryEntry,
        new_status: BookingStatus,
        role: Role,
        actor_id: UUID | None,
        reason: str | None,
        payment_status: PaymentStatus | None = None,
    ) -> None:
        """Move a locked booking along one lifecycle edge. Caller holds the entry lock."""
        old_status = booking.status
        lifecycle.assert_transition(old_status, new_status, role)

        update_fields = ["status", "updated_at"]
        booking.status = new_status
        if new_status != BookingStatus.PENDING and booking.hold_expires_at is not None:
            booking.hold_expires_at = None
            update_fields.append("hold_expires_at")
        if payment_status is not None:
            booking.payment_status = payment_status
            update_fields.append("payment_status")
        if new_status in lifecycle.RELEASING_STATUSES and not booking.stock_released:
            await _release(booking, entry)
            update_fields.append("stock_released")

        await booking.save(update_fields=update_fields)
        await BookingStatusChange.create(
            booking=booking,
            from_status=old_status,
            to_status=new_status,
            changed_by=actor_id,
            role=role,
            reason=reason,
        )

    async def transition(
        self,
        booking_id: UUID,
        new_status: BookingStatus,
        actor: CurrentUser,
        reason: str | None = None,
        payment_status: PaymentStatus | None = None,
    ) -> tuple[Booking, BookingStatus]:
        """
        Apply one lifecycle transition on behalf of `actor`.
        Returns the updated booking and the status it left.

        A pending booking whose hold ran out is expired first, so it can
        no longer move anywhere.
        """
        snapshot = await Booking.get_or_none(id=booking_id)
        if snapshot is None:
            raise NotFound("Booking not found")

        now = _utcnow()
        if (
            snapshot.status == BookingStatus.PENDING
            and snapshot.hold_expires_at is not None
            and snapshot.hold_expires_at < now
        ):
            await self.expire_holds(entry_id=snapshot.entry_id, now=now)

        # Lock order is always entry, then booking.
        async with in_transaction():
            entry = await _lock_entry(snapshot.entry_id)
            booking = await Booking.filter(id=booking_id).select_for_update().first()
            if booking is None:
                raise NotFound("Booking not found")

            role = _role_for(booking, actor)
            if (
                role == Role.CUSTOMER
                and new_status == BookingStatus.CANCELLED
                and BookingScope.CANCEL not in actor.scopes
            ):
                raise PermissionDenied(f"Cancelling requires the '{BookingScope.CANCEL}' scope")

            old_status = booking.status
            await self._apply(booking, entry, new_status, role, actor.id, reason, payment_status)

        logger.info(
            "Booking {} moved {} -> {} by {} ({})",
            booking.booking_number,
            old_status,
            new_status,
            actor.username,
            role,
        )
        if booking.stock_released and new_status in lifecycle.RELEASING_STATUSES:
            await invalidate_calendar_cache(entry.id)
        await events.booking_status_changed(booking, old_status, reason)
        return booking, old_status

    async def settle_payment(self, booking_id: UUID, outcome: PaymentOutcome) -> Booking:
        """
        Record the payment provider's answer: confirm on capture, release on failure.

        A capture that lands after the hold expired leaves the booking
        cancelled with payment_status=captured, so the caller can refund it.
        """
        if outcome != PaymentOutcome.CAPTURED:
            booking, _ = await self.transition(
                booking_id,
                BookingStatus.CANCELLED,
                SYSTEM_USER,
                reason="payment_failed",
                payment_status=PaymentStatus.FAILED,
            )
            return booking

        try:
            booking, _ = await self.transition(
                booking_id,
                BookingStatus.CONFIRMED,
                SYSTEM_USER,
                reason="payment_captured",
                payment_status=PaymentStatus.CAPTURED,
            )
        except InvalidStateTransition:
            booking = await Booking.get(id=booking_id)
            if booking.status != BookingStatus.CANCELLED:
                raise
            logger.warning(
                "Payment captured after booking {} was cancelled", booking.booking_number
            )
            booking.payment_status = PaymentStatus.CAPTURED
            await booking.save(update_fields=["payment_status", "updated_at"])
        return booking

    async def mark_refunded(self, booking_id: UUID) -> None:
        await Booking.filter(id=booking_id).update(payment_status=PaymentStatus.REFUNDED)

    # -- hold expiry --------------------------------------------------------

    async def _expire_locked(
        self, entry: InventoryEntry, now: datetime
    ) -> tuple[list[Booking], list[CartHold]]:
        expired = await Booking.filter(
            entry_id=entry.id,
            status=BookingStatus.PENDING,
            hold_expires_at__lt=now,
        ).select_for_update()
        for booking in expired:
            await self._apply(
                booking, entry, BookingStatus.CANCELLED, Role.SYSTEM, None, "hold_expired"
            )
            logger.info("Hold expired for booking {}", booking.booking_number)

        expired_holds = await CartHold.filter(
            entry_id=entry.id,
            status=CartHoldStatus.ACTIVE,
            expires_at__lt=now,
        ).select_for_update()
        for hold in expired_holds:
            await _drop_cart_hold(hold, entry, CartHoldStatus.EXPIRED)
            logger.info("Cart hold {} expired", hold.id)

        return list(expired), list(expired_holds)

    async def _publish_expired(
        self, bookings: list[Booking], holds: list[CartHold]
    ) -> None:
        for booking in bookings:
            await events.booking_status_changed(booking, BookingStatus.PENDING, "hold_expired")
        for hold in holds:
            await events.hold_released(hold, "expired")

    async def expire_holds(
        self, entry_id: UUID | None = None, now: datetime | None = None
    ) -> int:
        """
        Cancel pending bookings and expire cart holds whose time ran out,
        releasing their stock. Returns how many were released.
        """
        now = now or _utcnow()
        bookings_qs = Booking.filter(status=BookingStatus.PENDING, hold_expires_at__lt=now)
        holds_qs = CartHold.filter(status=CartHoldStatus.ACTIVE, expires_at__lt=now)
        if entry_id is not None:
            bookings_qs = bookings_qs.filter(entry_id=entry_id)
            holds_qs = holds_qs.filter(entry_id=entry_id)
        entry_ids = set(await bookings_qs.values_list("entry_id", flat=True))
        entry_ids |= set(await holds_qs.values_list("entry_id", flat=True))

        released: list[Booking] = []
        released_holds: list[CartHold] = []
        for eid in entry_ids:
            async with in_transaction():
                entry = await _lock_entry(eid)
                bookings, holds = await self._expire_locked(entry, now)
            released.extend(bookings)
            released_holds.extend(holds)
            await invalidate_calendar_cache(eid)

        await self._publish_expired(released, released_holds)
        return len(released) + len(released_holds)

    # -- cart holds ---------------------------------------------------------

    async def create_cart_hold(
        self,
        user_id: UUID,
        payload: CartHoldCreate,
        today: date | None = None,
        now: datetime | None = None,
    ) -> CartHold:
        """Hold units for a short while before checkout, under the same ledger rules."""
        now = now or _utcnow()
        today = today or now.date()

        _, entry = await self._bookable(payload.product_id, payload.location_id)
        availability.validate_date_range(payload.start_date, payload.end_date, today)
        availability.validate_quantity(payload.quantity, entry.min_quantity, entry.max_quantity)

        hold, expired, expired_holds = await self._retrying(
            "Cart hold",
            partial(
                self._hold_once,
                entry_id=entry.id,
                user_id=user_id,
                payload=payload,
                expires_at=now + timedelta(minutes=settings.CART_HOLD_TTL_MINUTES),
                today=today,
                now=now,
            ),
        )

        logger.info(
            "Cart hold {} created for user {}: entry={} qty={} {}..{}",
            hold.id,
            user_id,
            entry.id,
            hold.quantity,
            hold.start_date,
            hold.end_date,
        )
        await invalidate_calendar_cache(entry.id)
        await self._publish_expired(expired, expired_holds)
        await events.hold_created(hold)
        return hold

    async def _hold_once(
        self,
        entry_id: UUID,
        user_id: UUID,
        payload: CartHoldCreate,
        expires_at: datetime,
        today: date,
        now: datetime,
    ) -> tuple[CartHold, list[Booking], list[CartHold]]:
        try:
            async with in_transaction():
                entry = await _lock_entry(entry_id)
                expired, expired_holds = await self._expire_locked(entry, now)

                overlapping = await CartHold.filter(
                    user_id=user_id,
                    entry_id=entry.id,
                    status=CartHoldStatus.ACTIVE,
                    start_date__lte=payload.end_date,
                    end_date__gte=payload.start_date,
                ).exists()
                if overlapping:
                    raise DuplicateCartHold(
                        "You already have an active hold for this product and date range"
                    )

                await _reserve(
                    entry, payload.start_date, payload.end_date, payload.quantity, today
                )
                hold = await CartHold.create(
                    user_id=user_id,
                    product_id=payload.product_id,
                    location_id=payload.location_id,
                    entry_id=entry.id,
                    quantity=payload.quantity,
                    start_date=payload.start_date,
                    end_date=payload.end_date,
                    expires_at=expires_at,
                    session_id=payload.session_id,
                )
        except IntegrityError as exc:
            raise ReservationConflict(str(exc)) from exc
        return hold, expired, expired_holds

    async def list_cart_holds(
        self,
        user_id: UUID,
        status: CartHoldStatus | None = CartHoldStatus.ACTIVE,
        limit: int = 50,
    ) -> list[CartHold]:
        now = _utcnow()
        stale = await CartHold.filter(
            user_id=user_id, status=CartHoldStatus.ACTIVE, expires_at__lt=now
        ).values_list("entry_id", flat=True)
        for entry_id in set(stale):
            await self.expire_holds(entry_id=entry_id, now=now)

        qs = CartHold.filter(user_id=user_id)
        if status is not None:
            qs = qs.filter(status=status)
        return await qs.limit(limit)

    async def release_cart_hold(
        self, hold_id: UUID, actor: CurrentUser, reason: str | None = None
    ) -> CartHold:
        """Cancel an active cart hold and give its units back. Owner or admin only."""
        snapshot = await CartHold.get_or_none(id=hold_id)
        if snapshot is None:
            raise NotFound("Cart hold not found")
        if snapshot.user_id != actor.id and not actor.is_admin:
            raise PermissionDenied("You can only release your own cart holds")

        async with in_transaction():
            entry = await _lock_entry(snapshot.entry_id)
            hold = await CartHold.filter(id=hold_id).select_for_update().first()
            if hold is None:
                raise NotFound("Cart hold not found")
            if hold.status != CartHoldStatus.ACTIVE:
                raise InvalidStateTransition(f"Cart hold is {hold.status}, not active")

            await _drop_cart_hold(hold, entry, CartHoldStatus.CANCELLED)
            hold.cancelled_at = _utcnow()
            hold.cancelled_by = actor.id
            hold.cancellation_reason = reason or "Cancelled by user"
            await hold.save(
                update_fields=["cancelled_at", "cancelled_by", "cancellation_reason", "updated_at"]
            )

        logger.info("Cart hold {} released by {}", hold.id, actor.username)
        await invalidate_calendar_cache(entry.id)
        await events.hold_released(hold, "cancelled")
        return hold

    async def extend_cart_hold(
        self, hold_id: UUID, actor: CurrentUser, minutes: int
    ) -> CartHold:
        """
        Push an active hold's expiry back by `minutes`. A hold never lasts
        longer than MAX_CART_HOLD_MINUTES from its creation.
        """
        snapshot = await CartHold.get_or_none(id=hold_id)
        if snapshot is None:
            raise NotFound("Cart hold not found")
        if snapshot.user_id != actor.id:
            raise PermissionDenied("You can only extend your own cart holds")

        now = _utcnow()
        if snapshot.status == CartHoldStatus.ACTIVE and snapshot.expires_at < now:
            await self.expire_holds(entry_id=snapshot.entry_id, now=now)

        async with in_transaction():
            await _lock_entry(snapshot.entry_id)
            hold = await CartHold.filter(id=hold_id).select_for_update().first()
            if hold is None:
                raise NotFound("Cart hold not found")
            if hold.status != CartHoldStatus.ACTIVE:
                raise InvalidStateTransition(f"Cart hold is {hold.status}, not active")

            lifetime = hold.expires_at - hold.created_at + timedelta(minutes=minutes)
            if lifetime > timedelta(minutes=settings.MAX_CART_HOLD_MINUTES):
                raise ValidationError(
                    f"Hold cannot be extended beyond {settings.MAX_CART_HOLD_MINUTES} minutes",
                    field="minutes",
                )
            hold.expires_at = hold.expires_at + timedelta(minutes=minutes)
            await hold.save(update_fields=["expires_at", "updated_at"])

        logger.info("Cart hold {} extended by {} minute(s)", hold.id, minutes)
        return hold

    # -- reads --------------------------------------------------------------

    async def get_booking(
        self,
        booking_id: UUID,
        customer_id: UUID | None = None,
        provider_id: UUID | None = None,
    ) -> Booking | None:
        if customer_id is not None:
            return await Booking.get_or_none(id=booking_id, customer_id=customer_id)
        if provider_id is not None:
            return await Booking.get_or_none(id=booking_id, provider_id=provider_id)
        return await Booking.get_or_none(id=booking_id)

    async def list_bookings(
        self,
        filters: BookingFilters,
        customer_id: UUID | None = None,
        provider_id: UUID | None = None,
    ) -> list[Booking]:
        qs = Booking.all()

        if customer_id is not None:
            qs = qs.filter(customer_id=customer_id)
        if provider_id is not None:
            qs = qs.filter(provider_id=provider_id)
        if filters.product_id is not None:
            qs = qs.filter(product_id=filters.product_id)
        if filters.location_id is not None:
            qs = qs.filter(location_id=filters.location_id)
        if filters.status is not None:
            qs = qs.filter(status=filters.status)

        offset = (filters.page - 1) * filters.page_size
        return await qs.offset(offset).limit(filters.page_size)

    async def history(self, booking_id: UUID) -> list[BookingStatusChange]:
        return await BookingStatusChange.filter(booking_id=booking_id)


booking_crud = BookingCRUD()
