from enum import StrEnum


class BookingScope(StrEnum):
    # Customer scopes
    READ = "bookings:read"  # view own bookings
    WRITE = "bookings:write"  # place a booking
    CANCEL = "bookings:cancel"  # cancel own pending or confirmed booking

    # Provider scopes
    MANAGE = "bookings:manage"  # approve / reject / hand over / take back own products' bookings
    CATALOG = "catalog:manage"  # list products and stock them at locations

    # Admin scopes
    ADMIN = "admin:bookings"
    ADMIN_READ = "admin:bookings:read"
    ADMIN_WRITE = "admin:bookings:write"
    ADMIN_CATALOG = "admin:catalog"


class Role(StrEnum):
    CUSTOMER = "customer"
    PROVIDER = "provider"
    ADMIN = "admin"
    SYSTEM = "system"  # payment callbacks, hold expiry
