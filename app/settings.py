import os

db_url = os.environ.get("DB_URL", "sqlite://:memory:")
payments_ms_url = os.environ.get("PAYMENTS_MS_URL", "http://localhost:8003")
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379/0")

generate_schemas = os.environ.get(
    "GENERATE_SCHEMAS", "true" if db_url.startswith("sqlite") else "false"
).lower() in {"1", "true", "yes", "on"}

TAX_RATE_BPS = int(os.environ.get("TAX_RATE_BPS", "1800"))  # 18% GST
DEFAULT_CURRENCY = os.environ.get("DEFAULT_CURRENCY", "INR")

# Pending bookings paid offline hold stock for a day, online ones only while
# the payment call is in flight.
HOLD_TTL_MINUTES = int(os.environ.get("HOLD_TTL_MINUTES", "1440"))
ONLINE_HOLD_TTL_MINUTES = int(os.environ.get("ONLINE_HOLD_TTL_MINUTES", "10"))

ADMISSION_MAX_RETRIES = int(os.environ.get("ADMISSION_MAX_RETRIES", "3"))

# Cart holds taken before checkout: default lifetime and the longest a hold
# may last counting extensions.
CART_HOLD_TTL_MINUTES = int(os.environ.get("CART_HOLD_TTL_MINUTES", "10"))
MAX_CART_HOLD_MINUTES = int(os.environ.get("MAX_CART_HOLD_MINUTES", "30"))
