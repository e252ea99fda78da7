from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status

from app.catalog_crud import catalog_crud
from app.deps import CurrentUser, can_admin_catalog, can_manage_catalog, get_current_user
from app.models import ProductCategory
from app.schemas import (
    InventoryEntryCreate,
    InventoryEntryResponse,
    InventoryEntryUpdate,
    LocationCreate,
    LocationResponse,
    ProductCreate,
    ProductResponse,
)
from app.scopes import BookingScope

router = APIRouter(tags=["catalog"])


def _is_catalog_admin(user: CurrentUser) -> bool:
    return BookingScope.ADMIN_CATALOG in user.scopes


async def _get_owned_product(product_id: UUID, current_user: CurrentUser):
    product = await catalog_crud.get_product(product_id)
    if not product:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Product not found"
        )
    if not _is_catalog_admin(current_user) and product.provider_id != current_user.id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only the product's provider can manage its stock",
        )
    return product


# ---------------------------------------------------------------------------
# Locations
# ---------------------------------------------------------------------------


@router.get("/locations", response_model=list[LocationResponse])
async def list_locations(
    _: CurrentUser = Depends(get_current_user),
) -> list[LocationResponse]:
    locations = await catalog_crud.list_locations()
    return [LocationResponse.model_validate(loc) for loc in locations]


@router.post(
    "/locations",
    response_model=LocationResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(can_admin_catalog)],
)
async def create_location(payload: LocationCreate) -> LocationResponse:
    location = await catalog_crud.create_location(payload)
    return LocationResponse.model_validate(location)


@router.get("/locations/{location_id}", response_model=LocationResponse)
async def get_location(
    location_id: UUID,
    _: CurrentUser = Depends(get_current_user),
) -> LocationResponse:
    location = await catalog_crud.get_location(location_id)
    if not location:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Location not found"
        )
    return LocationResponse.model_validate(location)


# ---------------------------------------------------------------------------
# Products
# ---------------------------------------------------------------------------


@router.get("/products", response_model=list[ProductResponse])
async def list_products(
    provider_id: UUID | None = None,
    category: ProductCategory | None = None,
    tag: str | None = None,
    page: int = 1,
    page_size: int = 20,
    _: CurrentUser = Depends(get_current_user),
) -> list[ProductResponse]:
    products = await catalog_crud.list_products(
        provider_id=provider_id,
        category=category,
        tag=tag,
        page=max(1, page),
        page_size=min(max(1, page_size), 100),
    )
    return [ProductResponse.model_validate(p) for p in products]


@router.post(
    "/products", response_model=ProductResponse, status_code=status.HTTP_201_CREATED
)
async def create_product(
    payload: ProductCreate,
    current_user: CurrentUser = Depends(can_manage_catalog),
) -> ProductResponse:
    product = await catalog_crud.create_product(current_user.id, payload)
    return ProductResponse.model_validate(product)


@router.get("/products/{product_id}", response_model=ProductResponse)
async def get_product(
    product_id: UUID,
    _: CurrentUser = Depends(get_current_user),
) -> ProductResponse:
    product = await catalog_crud.get_product(product_id)
    if not product:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Product not found"
        )
    return ProductResponse.model_validate(product)


@router.get(
    "/products/{product_id}/inventory", response_model=list[InventoryEntryResponse]
)
async def list_inventory(
    product_id: UUID,
    _: CurrentUser = Depends(get_current_user),
) -> list[InventoryEntryResponse]:
    entries = await catalog_crud.list_inventory(product_id)
    return [InventoryEntryResponse.model_validate(e) for e in entries]


@router.post(
    "/products/{product_id}/inventory",
    response_model=InventoryEntryResponse,
    status_code=status.HTTP_201_CREATED,
)
async def add_inventory(
    product_id: UUID,
    payload: InventoryEntryCreate,
    current_user: CurrentUser = Depends(can_manage_catalog),
) -> InventoryEntryResponse:
    product = await _get_owned_product(product_id, current_user)
    entry = await catalog_crud.add_inventory(product, payload)
    return InventoryEntryResponse.model_validate(entry)


@router.patch(
    "/products/{product_id}/inventory/{location_id}",
    response_model=InventoryEntryResponse,
)
async def update_inventory(
    product_id: UUID,
    location_id: UUID,
    payload: InventoryEntryUpdate,
    current_user: CurrentUser = Depends(can_manage_catalog),
) -> InventoryEntryResponse:
    await _get_owned_product(product_id, current_user)
    entry = await catalog_crud.update_inventory(product_id, location_id, payload)
    return InventoryEntryResponse.model_validate(entry)
