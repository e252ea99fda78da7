"""
Shared pytest fixtures available to every test file automatically.
No imports needed in test files; pytest discovers this by convention.
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import pytest_asyncio
from fastapi import FastAPI
from fastapi.testclient import TestClient
from tortoise import Tortoise, connections

from app.deps import (
    can_admin_bookings,
    can_admin_catalog,
    can_manage_catalog,
    can_read_or_manage_booking,
    can_transition_booking,
    can_write_booking,
    get_current_user,
    get_payments_client,
)
from app.errors import BookingError
from app.main import TORTOISE_MODULES, booking_error_handler
from app.routers import availability, booking, catalog

from .factories import make_admin, make_customer, make_provider

# ---------------------------------------------------------------------------
# Default no-op mocks: prevent real HTTP / Redis calls in tests
# ---------------------------------------------------------------------------


def _noop_payments_client():
    mock = MagicMock()
    mock.capture = AsyncMock(return_value="captured")
    mock.refund_booking = AsyncMock(return_value=True)
    return mock


def make_fake_redis():
    """Stand-in for redis.asyncio.Redis: empty cache, publishes go nowhere."""

    async def _scan_iter(match=None):
        for key in ():
            yield key

    redis = MagicMock()
    redis.get = AsyncMock(return_value=None)
    redis.setex = AsyncMock()
    redis.delete = AsyncMock()
    redis.publish = AsyncMock(return_value=0)
    redis.scan_iter = _scan_iter
    return redis


@pytest.fixture(autouse=True)
def fake_redis():
    redis = make_fake_redis()
    with (
        patch("app.cache.get_redis", return_value=redis),
        patch("app.events.get_redis", return_value=redis),
    ):
        yield redis


# ---------------------------------------------------------------------------
# App builder: used by all client fixtures
# ---------------------------------------------------------------------------


def build_app(current_user, payments_client=None) -> FastAPI:
    """
    Fresh FastAPI app with auth/scope dependencies overridden to return
    `current_user` unconditionally.

    Pass `payments_client` to inject a custom mock; defaults to one that
    captures and refunds successfully.
    """
    app = FastAPI()
    app.add_exception_handler(BookingError, booking_error_handler)
    app.include_router(catalog.router)
    app.include_router(availability.router)
    app.include_router(booking.router)

    async def _user():
        return current_user

    for dep in (
        can_read_or_manage_booking,
        can_write_booking,
        can_transition_booking,
        can_admin_bookings,
        can_manage_catalog,
        can_admin_catalog,
        get_current_user,
    ):
        app.dependency_overrides[dep] = _user

    pc = payments_client if payments_client is not None else _noop_payments_client()
    app.dependency_overrides[get_payments_client] = lambda: pc

    return app


# ---------------------------------------------------------------------------
# Reusable client fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def customer_client():
    return TestClient(build_app(make_customer()), raise_server_exceptions=True)


@pytest.fixture()
def provider_client():
    return TestClient(build_app(make_provider()), raise_server_exceptions=True)


@pytest.fixture()
def admin_client():
    return TestClient(build_app(make_admin()), raise_server_exceptions=True)


@pytest.fixture()
def anon_app():
    """
    Bare app with NO dependency overrides.
    Use this when you want real scope/auth deps to run so you can assert 401/403/422.
    """
    app = FastAPI()
    app.add_exception_handler(BookingError, booking_error_handler)
    app.include_router(catalog.router)
    app.include_router(availability.router)
    app.include_router(booking.router)
    return app


@pytest.fixture()
def client_factory():
    def _make(current_user, payments_client=None) -> TestClient:
        return TestClient(
            build_app(current_user, payments_client=payments_client),
            raise_server_exceptions=True,
        )

    return _make


# ---------------------------------------------------------------------------
# Database: fresh in-memory SQLite per test
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture()
async def db():
    await Tortoise.init(db_url="sqlite://:memory:", modules=TORTOISE_MODULES, use_tz=True)
    await Tortoise.generate_schemas()
    yield
    await connections.close_all()
