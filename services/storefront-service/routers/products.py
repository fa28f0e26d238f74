"""Products API router."""
from typing import Optional
from fastapi import APIRouter, Depends, Query, Request, Response
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool
from opentelemetry import trace

from auth import CurrentUser, require_admin
from database import get_db
from dependencies import get_catalog_service
from errors import NotFound
from schemas import ProductCreate, ProductUpdate
from services.catalog_service import CatalogService, product_to_dict

router = APIRouter(prefix="/products", tags=["products"])


@router.get("")
def get_products(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    search: Optional[str] = Query(None, max_length=100),
    db: Session = Depends(get_db),
    catalog: CatalogService = Depends(get_catalog_service)
):
    """Get a page of products, optionally filtered by name or type."""
    result = catalog.list_products(db, page, limit, search)

    span = trace.get_current_span()
    span.set_attribute("product.count", len(result["products"]))
    if search:
        span.set_attribute("product.search", search)

    return {"success": True, "data": result}


@router.get("/{product_id}")
def get_product(
    product_id: int,
    db: Session = Depends(get_db),
    catalog: CatalogService = Depends(get_catalog_service)
):
    product = catalog.get_product(db, product_id)
    if product is None:
        raise NotFound("Product not found")

    trace.get_current_span().set_attribute("product.id", product_id)
    return {"success": True, "data": product_to_dict(product)}


@router.get("/{product_id}/image")
def get_product_image(
    product_id: int,
    db: Session = Depends(get_db),
    catalog: CatalogService = Depends(get_catalog_service)
):
    """Serve the stored product image bytes."""
    product = catalog.get_product(db, product_id)
    if product is None or product.image is None:
        raise NotFound("Image not found")
    return Response(content=product.image, media_type="application/octet-stream")


@router.post("", status_code=201)
def create_product(
    request: ProductCreate,
    db: Session = Depends(get_db),
    admin: CurrentUser = Depends(require_admin),
    catalog: CatalogService = Depends(get_catalog_service)
):
    product = catalog.create_product(db, request)
    return {"success": True, "message": "Product created", "data": product}


@router.put("/{product_id}")
def update_product(
    product_id: int,
    request: ProductUpdate,
    db: Session = Depends(get_db),
    admin: CurrentUser = Depends(require_admin),
    catalog: CatalogService = Depends(get_catalog_service)
):
    """Partially update a product (admin)."""
    product = catalog.update_product(db, product_id, request)
    return {"success": True, "message": "Product updated", "data": product}


@router.put("/{product_id}/image")
async def upload_product_image(
    product_id: int,
    request: Request,
    db: Session = Depends(get_db),
    admin: CurrentUser = Depends(require_admin),
    catalog: CatalogService = Depends(get_catalog_service)
):
    """Replace the product image with the raw request body."""
    image = await request.body()
    await run_in_threadpool(catalog.set_image, db, product_id, image)
    return {"success": True, "message": "Product image updated"}


@router.delete("/{product_id}")
def delete_product(
    product_id: int,
    db: Session = Depends(get_db),
    admin: CurrentUser = Depends(require_admin),
    catalog: CatalogService = Depends(get_catalog_service)
):
    catalog.delete_product(db, product_id)
    return {"success": True, "message": "Product deleted"}
