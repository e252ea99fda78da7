from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from loguru import logger
from tortoise.contrib.fastapi import RegisterTortoise

from app import settings
from app.errors import BookingError
from app.routers import availability, booking, catalog

TORTOISE_MODULES = {"models": ["app.models"]}


@asynccontextmanager
async def lifespan(app: FastAPI):
    async with RegisterTortoise(
        app,
        db_url=settings.db_url,
        modules=TORTOISE_MODULES,
        generate_schemas=settings.generate_schemas,
        use_tz=True,
    ):
        logger.info("Rental bookings service started")
        yield


async def booking_error_handler(request: Request, exc: BookingError) -> JSONResponse:
    logger.debug(
        "{} {} rejected with {}: {}", request.method, request.url.path, exc.status_code, exc.detail
    )
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


def create_app() -> FastAPI:
    app = FastAPI(
        title="Rental Bookings Service",
        description="Rental availability, booking admission and booking lifecycle.",
        lifespan=lifespan,
    )
    app.add_exception_handler(BookingError, booking_error_handler)
    app.include_router(catalog.router)
    app.include_router(availability.router)
    app.include_router(booking.router)

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app


app = create_app()
