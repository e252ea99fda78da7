from __future__ import annotations

from datetime import date, datetime
from typing import Any
from uuid import UUID

from pydantic import (
    BaseModel,
    ConfigDict,
    EmailStr,
    Field,
    field_validator,
    model_validator,
)

from app.models import (
    BookingStatus,
    CartHoldStatus,
    DeliveryType,
    LocationType,
    PaymentMethod,
    PaymentStatus,
    ProductCategory,
    ProductStatus,
)

# ---------------------------------------------------------------------------
# Shared value objects
# ---------------------------------------------------------------------------


class Address(BaseModel):
    street: str | None = None
    city: str | None = None
    state: str | None = None
    country: str | None = None
    postal_code: str | None = None

    def missing_fields(self) -> list[str]:
        required = ("street", "city", "state", "postal_code")
        return [f for f in required if not (getattr(self, f) or "").strip()]


class ContactPerson(BaseModel):
    name: str = Field(max_length=200)
    phone: str = Field(max_length=32)
    email: EmailStr

    @field_validator("name")
    @classmethod
    def name_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("contact name is required")
        return v

    @field_validator("phone")
    @classmethod
    def phone_has_ten_digits(cls, v: str) -> str:
        if sum(ch.isdigit() for ch in v) < 10:
            raise ValueError("phone number must contain at least 10 digits")
        return v.strip()


class Delivery(BaseModel):
    type: DeliveryType = DeliveryType.PICKUP
    address: Address | None = None
    pickup_address: Address | None = None
    contact_person: ContactPerson
    instructions: str | None = Field(default=None, max_length=1000)

    @model_validator(mode="after")
    def delivery_needs_address(self) -> Delivery:
        if self.type == DeliveryType.DELIVERY:
            if self.address is None:
                raise ValueError("delivery address is required for home delivery")
            missing = self.address.missing_fields()
            if missing:
                raise ValueError(f"delivery address is incomplete: missing {', '.join(missing)}")
        return self


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------


class LocationCreate(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    type: LocationType = LocationType.WAREHOUSE
    address: Address = Field(default_factory=Address)
    operating_hours: dict[str, dict[str, str]] = Field(default_factory=dict)


class LocationResponse(BaseModel):
    id: UUID
    name: str
    type: LocationType
    address: dict
    operating_hours: dict
    is_active: bool

    model_config = ConfigDict(from_attributes=True)


class ProductCreate(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    category: ProductCategory = ProductCategory.OTHER
    tags: list[str] = Field(default_factory=list)
    status: ProductStatus = ProductStatus.ACTIVE
    daily_rate: int = Field(ge=0, description="Minor units per unit per day")
    weekly_rate: int | None = Field(default=None, ge=0)
    monthly_rate: int | None = Field(default=None, ge=0)
    currency: str = Field(default="INR", min_length=3, max_length=3)
    deposit_amount: int = Field(default=0, ge=0)
    deposit_required: bool = False


class ProductResponse(BaseModel):
    id: UUID
    provider_id: UUID
    name: str
    category: ProductCategory
    tags: list[str]
    status: ProductStatus
    daily_rate: int
    weekly_rate: int | None
    monthly_rate: int | None
    currency: str
    deposit_amount: int
    deposit_required: bool

    model_config = ConfigDict(from_attributes=True)


class InventoryEntryCreate(BaseModel):
    location_id: UUID
    quantity: int = Field(ge=0)
    min_quantity: int = Field(default=1, ge=1)
    max_quantity: int | None = Field(default=None, ge=1)

    @model_validator(mode="after")
    def min_not_above_max(self) -> InventoryEntryCreate:
        if self.max_quantity is not None and self.min_quantity > self.max_quantity:
            raise ValueError("min_quantity cannot exceed max_quantity")
        return self


class InventoryEntryUpdate(BaseModel):
    quantity: int | None = Field(default=None, ge=0)
    min_quantity: int | None = Field(default=None, ge=1)
    max_quantity: int | None = Field(default=None, ge=1)


class InventoryEntryResponse(BaseModel):
    id: UUID
    product_id: UUID
    location_id: UUID
    quantity: int
    reserved: int
    available: int
    min_quantity: int
    max_quantity: int | None

    model_config = ConfigDict(from_attributes=True)


# ---------------------------------------------------------------------------
# Availability
# ---------------------------------------------------------------------------


class AvailabilityResponse(BaseModel):
    product_id: UUID
    location_id: UUID
    start_date: date
    end_date: date
    available: bool
    available_quantity: int
    total_stock: int
    reserved_quantity: int
    requested_quantity: int
    reason: str | None = None


class CalendarDay(BaseModel):
    day: date
    reserved: int
    available: int


class QuoteRequest(BaseModel):
    product_id: UUID
    location_id: UUID
    quantity: int
    start_date: date
    end_date: date


class Pricing(BaseModel):
    """Amounts are integer minor units."""

    daily_rate: int
    rental_days: int
    base_amount: int
    deposit_amount: int
    tax_amount: int
    total_amount: int
    currency: str


class QuoteResponse(BaseModel):
    product_id: UUID
    location_id: UUID
    quantity: int
    start_date: date
    end_date: date
    pricing: Pricing
    available: bool


class CartHoldCreate(BaseModel):
    product_id: UUID
    location_id: UUID
    quantity: int = 1
    start_date: date
    end_date: date  # inclusive
    session_id: str | None = Field(default=None, max_length=128)


class CartHoldExtend(BaseModel):
    minutes: int = Field(default=10, ge=1, le=30)


class CartHoldResponse(BaseModel):
    id: UUID
    user_id: UUID
    product_id: UUID
    location_id: UUID
    quantity: int
    start_date: date
    end_date: date
    status: CartHoldStatus
    expires_at: datetime
    remaining_minutes: int
    converted_booking_id: UUID | None = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


# ---------------------------------------------------------------------------
# Bookings
# ---------------------------------------------------------------------------


class BookingCreate(BaseModel):
    product_id: UUID
    location_id: UUID
    quantity: int = 1
    start_date: date
    end_date: date  # inclusive
    payment_method: PaymentMethod
    delivery: Delivery
    notes: str | None = Field(default=None, max_length=1000)
    hold_id: UUID | None = None  # cart hold to convert into this booking


class BookingStatusUpdate(BaseModel):
    status: BookingStatus
    reason: str | None = Field(default=None, max_length=500)


class BookingResponse(BaseModel):
    id: UUID
    booking_number: str
    customer_id: UUID
    provider_id: UUID
    product_id: UUID
    location_id: UUID
    quantity: int
    start_date: date
    end_date: date
    status: BookingStatus
    pricing: Pricing
    payment_method: PaymentMethod
    payment_status: PaymentStatus
    delivery: dict
    notes: str | None
    hold_expires_at: datetime | None
    created_at: datetime
    updated_at: datetime

    @model_validator(mode="before")
    @classmethod
    def nest_pricing(cls, data: Any) -> Any:
        """Accept a Booking ORM instance, whose pricing columns are flat."""
        if isinstance(data, dict):
            return data
        out = {name: getattr(data, name, None) for name in cls.model_fields}
        out["pricing"] = {name: getattr(data, name) for name in Pricing.model_fields}
        return out


class BookingStatusChangeResponse(BaseModel):
    from_status: BookingStatus | None
    to_status: BookingStatus
    changed_by: UUID | None
    role: str
    reason: str | None
    changed_at: datetime

    model_config = ConfigDict(from_attributes=True)


class BookingFilters(BaseModel):
    """Bind to a FastAPI route via Depends(BookingFilters)."""

    product_id: UUID | None = None
    location_id: UUID | None = None
    status: BookingStatus | None = None

    # Pagination
    page: int = Field(default=1, ge=1)
    page_size: int = Field(default=20, ge=1, le=100)


class ExpiredHoldsResponse(BaseModel):
    released: int
