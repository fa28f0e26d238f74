"""Product catalog and stock mutation service."""
import logging
from typing import Any, Dict, Iterable, List, Optional
from sqlalchemy import or_
from sqlalchemy.orm import Session
from opentelemetry import trace

from database import transaction
from errors import InsufficientStock, NotFound
from models import Product
from schemas import ProductCreate, ProductUpdate

logger = logging.getLogger(__name__)


def product_to_dict(product: Product) -> Dict[str, Any]:
    return {
        "product_id": product.id,
        "name": product.name,
        "subtitle": product.subtitle,
        "description": product.description,
        "type": product.type,
        "price": product.price,
        "stock": product.stock,
        "sold": product.sold,
        "has_image": product.image is not None,
        "created_at": product.created_at.isoformat() if product.created_at else None,
    }


class CatalogService:
    """
    Service for reading products and mutating their stock.

    Stock mutators take an exclusive row lock on the product and must run
    inside a transaction; the lock is held until that transaction ends.
    """

    def __init__(self):
        self.tracer = trace.get_tracer(__name__)

    def _active(self, db: Session):
        return db.query(Product).filter(Product.is_deleted.is_(False))

    def get_product(self, db: Session, product_id: int) -> Optional[Product]:
        """Get a product, or None if it doesn't exist or was deleted."""
        return self._active(db).filter(Product.id == product_id).first()

    def lock_product(self, db: Session, product_id: int) -> Optional[Product]:
        """
        Get a product holding its row lock (SELECT ... FOR UPDATE).

        Args:
            db: Database session with an open transaction
            product_id: Product identifier

        Returns:
            Locked product, or None if missing or deleted
        """
        db.flush()
        with self.tracer.start_as_current_span("db.query.lock_product") as db_span:
            db_span.set_attribute("db.operation", "SELECT FOR UPDATE")
            db_span.set_attribute("product.id", product_id)

            return (
                self._active(db)
                .filter(Product.id == product_id)
                .populate_existing()
                .with_for_update()
                .first()
            )

    def lock_products(
        self,
        db: Session,
        product_ids: Iterable[int],
        include_deleted: bool = False
    ) -> Dict[int, Product]:
        """
        Lock several product rows in ascending id order.

        Acquiring locks in a fixed order keeps concurrent checkouts that
        share products from deadlocking each other.

        Returns:
            Mapping of product id to locked product; missing or deleted
            products are absent from the mapping, deleted ones unless
            include_deleted is set
        """
        ids = sorted(set(product_ids))
        if not ids:
            return {}

        db.flush()
        with self.tracer.start_as_current_span("db.query.lock_products") as db_span:
            db_span.set_attribute("db.operation", "SELECT FOR UPDATE")
            db_span.set_attribute("db.rows_requested", len(ids))

            query = db.query(Product) if include_deleted else self._active(db)
            products = (
                query
                .filter(Product.id.in_(ids))
                .order_by(Product.id)
                .populate_existing()
                .with_for_update()
                .all()
            )
            db_span.set_attribute("db.rows_returned", len(products))

        return {product.id: product for product in products}

    def _lock_any(self, db: Session, product_id: int) -> Product:
        # Compensating updates must reach soft-deleted products as well
        db.flush()
        product = (
            db.query(Product)
            .filter(Product.id == product_id)
            .populate_existing()
            .with_for_update()
            .first()
        )
        if product is None:
            raise NotFound(f"Product {product_id} not found")
        return product

    def decrement_stock(self, db: Session, product_id: int, quantity: int) -> Product:
        """
        Take quantity units out of stock.

        Raises:
            NotFound: If the product doesn't exist
            InsufficientStock: If stock would go negative
        """
        product = self._lock_any(db, product_id)
        if product.stock < quantity:
            raise InsufficientStock(product.name, product.stock, quantity)
        product.stock -= quantity
        return product

    def increment_stock(self, db: Session, product_id: int, quantity: int) -> Product:
        """Return quantity units to stock."""
        product = self._lock_any(db, product_id)
        product.stock += quantity
        return product

    def increment_sold(self, db: Session, product_id: int, quantity: int) -> Product:
        """
        Adjust the sold counter; a negative quantity reverses a sale.

        A reversal larger than the counter violates the sold >= 0 check
        constraint at flush.
        """
        product = self._lock_any(db, product_id)
        product.sold += quantity
        return product

    # Admin catalog management

    def list_products(
        self,
        db: Session,
        page: int = 1,
        limit: int = 10,
        search: Optional[str] = None
    ) -> Dict[str, Any]:
        """Get a page of active products, newest first."""
        q = self._active(db)
        if search:
            pattern = f"%{search}%"
            q = q.filter(or_(Product.name.ilike(pattern), Product.type.ilike(pattern)))

        total = q.count()
        products: List[Product] = (
            q.order_by(Product.created_at.desc(), Product.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )

        return {
            "products": [product_to_dict(p) for p in products],
            "pagination": {
                "total": total,
                "page": page,
                "limit": limit,
                "pages": (total + limit - 1) // limit,
            },
        }

    def create_product(self, db: Session, data: ProductCreate) -> Dict[str, Any]:
        with transaction(db):
            product = Product(**data.model_dump(), sold=0)
            db.add(product)
            db.flush()
            result = product_to_dict(product)

        logger.info("Product created", extra={"product_id": result["product_id"], "product_name": data.name})
        return result

    def update_product(self, db: Session, product_id: int, data: ProductUpdate) -> Dict[str, Any]:
        """Apply a partial update; stock edits wait on the same row lock as checkout."""
        with transaction(db):
            product = self.lock_product(db, product_id)
            if product is None:
                raise NotFound("Product not found")

            for field, value in data.model_dump(exclude_unset=True, exclude_none=True).items():
                setattr(product, field, value)
            db.flush()
            result = product_to_dict(product)

        logger.info("Product updated", extra={"product_id": product_id})
        return result

    def set_image(self, db: Session, product_id: int, image: bytes) -> None:
        with transaction(db):
            product = self.lock_product(db, product_id)
            if product is None:
                raise NotFound("Product not found")
            product.image = image

    def delete_product(self, db: Session, product_id: int) -> None:
        """Soft delete: the row stays for cart lines and order history."""
        with transaction(db):
            product = self.lock_product(db, product_id)
            if product is None:
                raise NotFound("Product not found")
            product.is_deleted = True

        logger.info("Product deleted", extra={"product_id": product_id})
