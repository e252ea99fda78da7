from __future__ import annotations

from uuid import UUID

from loguru import logger
from tortoise.transactions import in_transaction

from app.cache import invalidate_calendar_cache
from app.errors import NotFound, ValidationError
from app.models import InventoryEntry, Location, Product, ProductCategory, ProductStatus
from app.schemas import (
    InventoryEntryCreate,
    InventoryEntryUpdate,
    LocationCreate,
    ProductCreate,
)


class CatalogCRUD:
    """Locations, products and their per-location stock."""

    async def create_location(self, payload: LocationCreate) -> Location:
        return await Location.create(
            name=payload.name,
            type=payload.type,
            address=payload.address.model_dump(),
            operating_hours=payload.operating_hours,
        )

    async def list_locations(self) -> list[Location]:
        return await Location.filter(is_active=True)

    async def get_location(self, location_id: UUID) -> Location | None:
        return await Location.get_or_none(id=location_id)

    async def create_product(self, provider_id: UUID, payload: ProductCreate) -> Product:
        product = await Product.create(provider_id=provider_id, **payload.model_dump())
        logger.info("Product listed: id={} provider={}", product.id, provider_id)
        return product

    async def list_products(
        self,
        provider_id: UUID | None = None,
        category: ProductCategory | None = None,
        tag: str | None = None,
        include_inactive: bool = False,
        page: int = 1,
        page_size: int = 20,
    ) -> list[Product]:
        qs = Product.all()
        if provider_id is not None:
            qs = qs.filter(provider_id=provider_id)
        if category is not None:
            qs = qs.filter(category=category)
        if not include_inactive:
            qs = qs.filter(status=ProductStatus.ACTIVE)

        offset = (page - 1) * page_size
        if tag is None:
            return await qs.offset(offset).limit(page_size)

        # tags is a JSON list; filtered in Python to stay portable across backends
        tagged = [p for p in await qs if tag in (p.tags or [])]
        return tagged[offset : offset + page_size]

    async def get_product(self, product_id: UUID) -> Product | None:
        return await Product.get_or_none(id=product_id)

    async def list_inventory(self, product_id: UUID) -> list[InventoryEntry]:
        return await InventoryEntry.filter(product_id=product_id)

    async def add_inventory(
        self, product: Product, payload: InventoryEntryCreate
    ) -> InventoryEntry:
        location = await Location.get_or_none(id=payload.location_id)
        if location is None:
            raise NotFound("Location not found")
        if await InventoryEntry.exists(product_id=product.id, location_id=location.id):
            raise ValidationError(
                "Product is already stocked at this location", field="location_id"
            )
        entry = await InventoryEntry.create(
            product=product,
            location=location,
            quantity=payload.quantity,
            min_quantity=payload.min_quantity,
            max_quantity=payload.max_quantity,
        )
        logger.info(
            "Stocked product {} at location {}: quantity={}",
            product.id,
            location.id,
            payload.quantity,
        )
        return entry

    async def update_inventory(
        self, product_id: UUID, location_id: UUID, payload: InventoryEntryUpdate
    ) -> InventoryEntry:
        """
        Adjust stock or per-booking limits. Stock can never drop below the
        units already held on its busiest day.
        """
        async with in_transaction():
            entry = await InventoryEntry.filter(
                product_id=product_id, location_id=location_id
            ).select_for_update().first()
            if entry is None:
                raise NotFound("Product is not stocked at this location")

            min_q = payload.min_quantity or entry.min_quantity
            max_q = (
                payload.max_quantity
                if "max_quantity" in payload.model_fields_set
                else entry.max_quantity
            )
            if max_q is not None and min_q > max_q:
                raise ValidationError("min_quantity cannot exceed max_quantity", field="min_quantity")

            if payload.quantity is not None:
                if payload.quantity < entry.reserved:
                    raise ValidationError(
                        f"quantity cannot drop below the {entry.reserved} "
                        "unit(s) currently reserved",
                        field="quantity",
                    )
                entry.quantity = payload.quantity

            entry.min_quantity = min_q
            entry.max_quantity = max_q
            entry.version += 1
            await entry.save(
                update_fields=["quantity", "min_quantity", "max_quantity", "version", "updated_at"]
            )

        await invalidate_calendar_cache(entry.id)
        return entry


catalog_crud = CatalogCRUD()
