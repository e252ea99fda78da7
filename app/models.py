import math
from datetime import datetime, timezone
from enum import StrEnum

from tortoise import fields
from tortoise.models import Model


class LocationType(StrEnum):
    WAREHOUSE = "warehouse"
    STORE = "store"


class ProductStatus(StrEnum):
    DRAFT = "draft"
    ACTIVE = "active"
    INACTIVE = "inactive"


class ProductCategory(StrEnum):
    ELECTRONICS = "electronics"
    FURNITURE = "furniture"
    APPLIANCES = "appliances"
    TOOLS = "tools"
    SPORTS = "sports"
    AUTOMOTIVE = "automotive"
    CLOTHING = "clothing"
    BOOKS = "books"
    TOYS = "toys"
    OTHER = "other"


class BookingStatus(StrEnum):
    PENDING = "pending"  # admitted, stock held, awaiting payment
    CONFIRMED = "confirmed"  # payment captured
    APPROVED = "approved"  # provider accepted
    REJECTED = "rejected"  # provider refused
    PICKED_UP = "picked_up"  # handed over to the customer
    IN_USE = "in_use"
    RETURNED = "returned"  # back with the provider, awaiting inspection
    COMPLETED = "completed"
    CANCELLED = "cancelled"  # by the customer, failed payment or expired hold


class PaymentMethod(StrEnum):
    STRIPE = "stripe"
    RAZORPAY = "razorpay"
    CASH = "cash"
    BANK_TRANSFER = "bank_transfer"

    @property
    def is_online(self) -> bool:
        return self in (PaymentMethod.STRIPE, PaymentMethod.RAZORPAY)


class PaymentStatus(StrEnum):
    PENDING = "pending"
    CAPTURED = "captured"
    FAILED = "failed"
    REFUNDED = "refunded"


class CartHoldStatus(StrEnum):
    ACTIVE = "active"  # units held on the ledger
    EXPIRED = "expired"
    CONVERTED = "converted"  # units handed over to a booking
    CANCELLED = "cancelled"


class DeliveryType(StrEnum):
    PICKUP = "pickup"
    DELIVERY = "delivery"


class TimestampedModel(Model):
    created_at = fields.DatetimeField(auto_now_add=True)
    updated_at = fields.DatetimeField(auto_now=True)

    class Meta:  # type: ignore
        abstract = True


class Location(TimestampedModel):
    id = fields.UUIDField(primary_key=True)
    name = fields.CharField(max_length=200)
    type = fields.CharEnumField(LocationType, default=LocationType.WAREHOUSE)
    address = fields.JSONField(default=dict)  # street/city/state/country/postal_code
    operating_hours = fields.JSONField(default=dict)  # {"mon": {"open": "09:00", "close": "18:00"}}
    is_active = fields.BooleanField(default=True)

    class Meta:  # type: ignore
        table = "locations"
        ordering = ["name"]


class Product(TimestampedModel):
    id = fields.UUIDField(primary_key=True)
    provider_id = fields.UUIDField(db_index=True)  # user id of the listing provider

    name = fields.CharField(max_length=200)
    category = fields.CharEnumField(ProductCategory, default=ProductCategory.OTHER)
    tags = fields.JSONField(default=list)
    status = fields.CharEnumField(ProductStatus, default=ProductStatus.ACTIVE)

    # Minor units (paise / cents)
    daily_rate = fields.BigIntField()
    weekly_rate = fields.BigIntField(null=True)
    monthly_rate = fields.BigIntField(null=True)
    currency = fields.CharField(max_length=3, default="INR")
    deposit_amount = fields.BigIntField(default=0)
    deposit_required = fields.BooleanField(default=False)

    inventory: fields.ReverseRelation["InventoryEntry"]

    class Meta:  # type: ignore
        table = "products"
        ordering = ["-created_at"]


class InventoryEntry(TimestampedModel):
    """Stock of one product at one location."""

    id = fields.UUIDField(primary_key=True)
    product: fields.ForeignKeyRelation[Product] = fields.ForeignKeyField(
        "models.Product", related_name="inventory", on_delete=fields.CASCADE
    )
    location: fields.ForeignKeyRelation[Location] = fields.ForeignKeyField(
        "models.Location", related_name="inventory", on_delete=fields.RESTRICT
    )

    quantity = fields.IntField()  # total units
    reserved = fields.IntField(default=0)  # peak units held on any day
    min_quantity = fields.IntField(default=1)  # per booking
    max_quantity = fields.IntField(null=True)  # per booking, None = no cap
    version = fields.IntField(default=0)  # bumped on every reserved change

    days: fields.ReverseRelation["ReservationDay"]

    class Meta:  # type: ignore
        table = "inventory_entries"
        unique_together = (("product", "location"),)

    @property
    def available(self) -> int:
        return self.quantity - self.reserved


class ReservationDay(Model):
    """Units of an inventory entry held by active bookings on one calendar day."""

    id = fields.IntField(primary_key=True)
    entry: fields.ForeignKeyRelation[InventoryEntry] = fields.ForeignKeyField(
        "models.InventoryEntry", related_name="days", on_delete=fields.CASCADE
    )
    day = fields.DateField()
    reserved = fields.IntField(default=0)

    class Meta:  # type: ignore
        table = "reservation_days"
        unique_together = (("entry", "day"),)


class BookingNumberSequence(Model):
    prefix = fields.CharField(max_length=8, primary_key=True)  # "BK" + YYMMDD
    counter = fields.IntField(default=0)

    class Meta:  # type: ignore
        table = "booking_number_sequences"


class CartHold(TimestampedModel):
    """Short pre-booking hold on stock while the customer fills in checkout."""

    id = fields.UUIDField(primary_key=True)
    user_id = fields.UUIDField(db_index=True)

    product: fields.ForeignKeyRelation[Product] = fields.ForeignKeyField(
        "models.Product", related_name="cart_holds", on_delete=fields.CASCADE
    )
    location: fields.ForeignKeyRelation[Location] = fields.ForeignKeyField(
        "models.Location", related_name="cart_holds", on_delete=fields.RESTRICT
    )
    entry: fields.ForeignKeyRelation[InventoryEntry] = fields.ForeignKeyField(
        "models.InventoryEntry", related_name="cart_holds", on_delete=fields.CASCADE
    )
    quantity = fields.IntField()
    start_date = fields.DateField()
    end_date = fields.DateField()  # inclusive

    status = fields.CharEnumField(CartHoldStatus, default=CartHoldStatus.ACTIVE)
    expires_at = fields.DatetimeField()
    session_id = fields.CharField(max_length=128, null=True)

    converted_booking_id = fields.UUIDField(null=True)
    converted_at = fields.DatetimeField(null=True)
    cancelled_at = fields.DatetimeField(null=True)
    cancelled_by = fields.UUIDField(null=True)
    cancellation_reason = fields.CharField(max_length=200, null=True)

    class Meta:  # type: ignore
        table = "cart_holds"
        ordering = ["-created_at"]

    @property
    def remaining_minutes(self) -> int:
        if self.status != CartHoldStatus.ACTIVE:
            return 0
        left = (self.expires_at - datetime.now(timezone.utc)).total_seconds()
        return max(0, math.ceil(left / 60))


class Booking(TimestampedModel):
    id = fields.UUIDField(primary_key=True)
    booking_number = fields.CharField(max_length=20, unique=True)

    customer_id = fields.UUIDField(db_index=True)
    provider_id = fields.UUIDField(db_index=True)  # snapshot of product.provider_id

    product: fields.ForeignKeyRelation[Product] = fields.ForeignKeyField(
        "models.Product", related_name="bookings", on_delete=fields.RESTRICT
    )
    location: fields.ForeignKeyRelation[Location] = fields.ForeignKeyField(
        "models.Location", related_name="bookings", on_delete=fields.RESTRICT
    )
    entry: fields.ForeignKeyRelation[InventoryEntry] = fields.ForeignKeyField(
        "models.InventoryEntry", related_name="bookings", on_delete=fields.RESTRICT
    )
    quantity = fields.IntField()

    start_date = fields.DateField()
    end_date = fields.DateField()  # inclusive

    status = fields.CharEnumField(BookingStatus, default=BookingStatus.PENDING)

    # Pricing snapshot at admission time, minor units
    daily_rate = fields.BigIntField()
    rental_days = fields.IntField()
    base_amount = fields.BigIntField()
    deposit_amount = fields.BigIntField(default=0)
    tax_amount = fields.BigIntField(default=0)
    total_amount = fields.BigIntField()
    currency = fields.CharField(max_length=3, default="INR")

    payment_method = fields.CharEnumField(PaymentMethod)
    payment_status = fields.CharEnumField(PaymentStatus, default=PaymentStatus.PENDING)

    delivery = fields.JSONField(default=dict)
    notes = fields.TextField(null=True)

    hold_expires_at = fields.DatetimeField(null=True)
    stock_released = fields.BooleanField(default=False)

    history: fields.ReverseRelation["BookingStatusChange"]

    class Meta:  # type: ignore
        table = "bookings"
        ordering = ["-created_at"]


class BookingStatusChange(Model):
    id = fields.IntField(primary_key=True)
    booking: fields.ForeignKeyRelation[Booking] = fields.ForeignKeyField(
        "models.Booking", related_name="history", on_delete=fields.CASCADE
    )
    from_status = fields.CharEnumField(BookingStatus, null=True)
    to_status = fields.CharEnumField(BookingStatus)
    changed_by = fields.UUIDField(null=True)  # None for the system principal
    role = fields.CharField(max_length=16)
    reason = fields.TextField(null=True)
    changed_at = fields.DatetimeField(auto_now_add=True)

    class Meta:  # type: ignore
        table = "booking_status_changes"
        ordering = ["changed_at", "id"]
