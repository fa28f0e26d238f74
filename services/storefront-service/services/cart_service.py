"""Cart management service."""
import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Iterable, List, Optional, Tuple
from sqlalchemy.orm import Session
import redis
from opentelemetry import trace

from config import CART_COUNT_CACHE_TTL, TAX_RATE
from database import transaction
from errors import EmptyCart, InsufficientStock, NotFound, ValidationFailed
from models import CartItem, Product
from monitoring import (
    cart_additions_counter,
    cart_count_cache_counter,
    cart_validation_issues_counter
)
from services.catalog_service import CatalogService

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")


def summarize(priced_lines: Iterable[Tuple[Decimal, int]]) -> Dict[str, Any]:
    """
    Compute the cart summary.

    Args:
        priced_lines: (unit price, quantity) per cart line

    Returns:
        subtotal, tax, total, itemCount (lines) and totalQuantity (units)
    """
    priced_lines = list(priced_lines)
    subtotal = sum((Decimal(price) * qty for price, qty in priced_lines), Decimal("0")).quantize(CENTS)
    tax = (subtotal * TAX_RATE).quantize(CENTS, rounding=ROUND_HALF_UP)
    return {
        "subtotal": subtotal,
        "tax": tax,
        "total": subtotal + tax,
        "itemCount": len(priced_lines),
        "totalQuantity": sum(qty for _, qty in priced_lines),
    }


class CartService:
    """Service for managing shopping carts."""

    def __init__(self, redis_client: redis.Redis, catalog: CatalogService):
        """
        Initialize cart service.

        Args:
            redis_client: Redis client for the cart badge count cache
            catalog: Catalog service for product and stock lookups
        """
        self.redis_client = redis_client
        self.catalog = catalog
        self.tracer = trace.get_tracer(__name__)

    # Queries

    def cart_lines(self, db: Session, user_id: int, lock: bool = False) -> List[Tuple[CartItem, Product]]:
        """
        Get the user's cart lines with their products, in cart order.

        Args:
            db: Database session
            user_id: User identifier
            lock: Take row locks on the cart lines

        Returns:
            List of (cart line, product) pairs, most recently added first
        """
        with self.tracer.start_as_current_span("db.query.get_cart_items") as db_span:
            db_span.set_attribute("db.operation", "SELECT")
            db_span.set_attribute("db.table", "cart_items")
            db_span.set_attribute("user.id", user_id)

            q = (
                db.query(CartItem, Product)
                .join(Product, CartItem.product_id == Product.id)
                .filter(CartItem.user_id == user_id)
                .order_by(CartItem.added_at.desc(), CartItem.id.desc())
            )
            if lock:
                q = q.with_for_update(of=CartItem)
            rows = q.all()

            db_span.set_attribute("db.rows_returned", len(rows))
            return rows

    def get_cart(self, db: Session, user_id: int) -> Dict[str, Any]:
        """
        Get user's cart contents.

        Lines show live product data for display, while the summary uses
        the price stored on each line. Checkout validation compares the two.

        Args:
            db: Database session
            user_id: User identifier

        Returns:
            Cart items and summary
        """
        items = []
        for line, product in self.cart_lines(db, user_id):
            items.append({
                "cart_item_id": line.id,
                "product_id": product.id,
                "name": product.name,
                "subtitle": product.subtitle,
                "has_image": product.image is not None,
                "stock": product.stock,
                "available": not product.is_deleted,
                "price": line.price,
                "current_price": product.price,
                "quantity": line.quantity,
                "total": (line.price * line.quantity).quantize(CENTS),
                "added_at": line.added_at.isoformat() if line.added_at else None,
            })

        return {
            "items": items,
            "summary": summarize((item["price"], item["quantity"]) for item in items),
        }

    def get_item_count(self, db: Session, user_id: int) -> int:
        """
        Get the number of lines in the user's cart.

        Served from Redis when cached. Cart mutations write the fresh count
        through after commit; a read miss only fills an absent key, so a
        count computed before a concurrent mutation never replaces the
        mutation's value.
        """
        cache_key = self._count_key(user_id)
        try:
            cached = self.redis_client.get(cache_key)
            if cached is not None:
                cart_count_cache_counter.add(1, {"result": "hit"})
                return int(cached)
            cart_count_cache_counter.add(1, {"result": "miss"})
        except redis.RedisError as e:
            cart_count_cache_counter.add(1, {"result": "error"})
            logger.warning("Cart count cache read failed", extra={"user_id": user_id, "error": str(e)})
            return self._count_lines(db, user_id)

        count = self._count_lines(db, user_id)
        try:
            self.redis_client.set(cache_key, count, ex=CART_COUNT_CACHE_TTL, nx=True)
        except redis.RedisError as e:
            logger.warning("Cart count cache write failed", extra={"user_id": user_id, "error": str(e)})
        return count

    # Commands

    def add_item(self, db: Session, user_id: int, product_id: int, quantity: int) -> Dict[str, Any]:
        """
        Add a product to the user's cart.

        Adding a product already in the cart increases the existing line.
        Stock is checked against the combined quantity but not reserved.

        Args:
            db: Database session
            user_id: User identifier
            product_id: Product identifier
            quantity: Quantity to add (> 0)

        Returns:
            The created or updated cart line

        Raises:
            NotFound: If product not found
            InsufficientStock: If stock can't cover the combined quantity
        """
        span = trace.get_current_span()
        span.set_attribute("product.id", product_id)
        span.set_attribute("quantity", quantity)

        with transaction(db):
            product = self.catalog.get_product(db, product_id)
            if product is None:
                raise NotFound("Product not found")

            line = (
                db.query(CartItem)
                .filter(CartItem.user_id == user_id, CartItem.product_id == product_id)
                .with_for_update()
                .first()
            )
            existing_quantity = line.quantity if line else 0
            if product.stock < existing_quantity + quantity:
                raise InsufficientStock(product.name, product.stock, existing_quantity + quantity)

            if line:
                line.quantity = existing_quantity + quantity
                line.price = product.price
            else:
                line = CartItem(
                    user_id=user_id,
                    product_id=product_id,
                    quantity=quantity,
                    price=product.price
                )
                db.add(line)
            db.flush()
            result = self._line_to_dict(line)
            product_name = product.name
            line_count = self._count_lines(db, user_id)

        self.cache_count(user_id, line_count)
        cart_additions_counter.add(1, {"product_id": str(product_id)})

        logger.info("Added product to cart", extra={
            "user_id": user_id,
            "product_id": product_id,
            "product_name": product_name,
            "quantity": quantity,
            "line_quantity": result["quantity"]
        })

        return result

    def update_item(self, db: Session, user_id: int, line_id: int, quantity: int) -> Optional[Dict[str, Any]]:
        """
        Set the quantity of one of the user's cart lines.

        A quantity of 0 removes the line. Stock is checked against the
        requested quantity, and the stored price is refreshed.

        Returns:
            The updated line, or None if it was removed

        Raises:
            NotFound: If the line doesn't belong to the user or the product is gone
            InsufficientStock: If stock can't cover the requested quantity
        """
        if quantity == 0:
            self.remove_item(db, user_id, line_id)
            return None

        with transaction(db):
            line = self._owned_line(db, user_id, line_id)

            product = self.catalog.get_product(db, line.product_id)
            if product is None:
                raise NotFound("Product not found")
            if product.stock < quantity:
                raise InsufficientStock(product.name, product.stock, quantity)

            line.quantity = quantity
            line.price = product.price
            db.flush()
            result = self._line_to_dict(line)

        logger.info("Updated cart line", extra={
            "user_id": user_id,
            "cart_item_id": line_id,
            "quantity": quantity
        })
        return result

    def remove_item(self, db: Session, user_id: int, line_id: int) -> Dict[str, Any]:
        """
        Remove one of the user's cart lines.

        Raises:
            NotFound: If no such line belongs to the user
        """
        with transaction(db):
            line = self._owned_line(db, user_id, line_id)
            result = self._line_to_dict(line)
            db.delete(line)
            db.flush()
            line_count = self._count_lines(db, user_id)

        self.cache_count(user_id, line_count)
        logger.info("Removed cart line", extra={"user_id": user_id, "cart_item_id": line_id})
        return result

    def clear(self, db: Session, user_id: int) -> int:
        """
        Remove every line from the user's cart.

        Returns:
            Number of lines removed
        """
        with transaction(db):
            deleted_count = self.delete_lines(db, user_id)

        self.cache_count(user_id, 0)
        logger.info("Cleared cart", extra={"user_id": user_id, "lines_removed": deleted_count})
        return deleted_count

    def delete_lines(self, db: Session, user_id: int) -> int:
        """Delete the user's cart lines inside the caller's transaction."""
        with self.tracer.start_as_current_span("db.query.delete_cart_items") as db_span:
            db_span.set_attribute("db.operation", "DELETE")
            db_span.set_attribute("db.table", "cart_items")
            db_span.set_attribute("user.id", user_id)

            deleted_count = (
                db.query(CartItem)
                .filter(CartItem.user_id == user_id)
                .delete(synchronize_session="fetch")
            )
            db_span.set_attribute("db.rows_affected", deleted_count)
            return deleted_count

    # Checkout validation

    def validate_for_checkout(self, db: Session, user_id: int) -> Dict[str, Any]:
        """
        Validate the user's cart against live catalog state.

        Every product row is locked while it is checked so the snapshot is
        consistent. All issues across all lines are collected before failing.

        Returns:
            Cart items priced at live prices and the recomputed summary

        Raises:
            EmptyCart: If the cart has no lines
            ValidationFailed: With every per-line issue found
        """
        with transaction(db):
            rows = self.cart_lines(db, user_id)
            if not rows:
                raise EmptyCart()

            items, invalid_items = self.check_lines(db, rows)
            if invalid_items:
                logger.info("Cart failed checkout validation", extra={
                    "user_id": user_id,
                    "issues": [item["issue"] for item in invalid_items]
                })
                raise ValidationFailed(invalid_items)

            result = {
                "items": items,
                "summary": summarize((item["price"], item["quantity"]) for item in items),
            }

        return result

    def check_lines(
        self,
        db: Session,
        rows: List[Tuple[CartItem, Product]]
    ) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]]]:
        """
        Lock the products of the given cart lines and check each line.

        Returns:
            (items priced at live prices, invalid item issues)
        """
        locked = self.catalog.lock_products(db, [line.product_id for line, _ in rows])

        items = []
        invalid_items = []
        for line, snapshot in rows:
            name = snapshot.name
            product = locked.get(line.product_id)

            if product is None:
                invalid_items.append({
                    "cartItemId": line.id,
                    "productId": line.product_id,
                    "name": name,
                    "issue": "no_longer_available",
                    "message": f"Product \"{name}\" is no longer available",
                })
                continue

            if product.stock < line.quantity:
                invalid_items.append({
                    "cartItemId": line.id,
                    "productId": line.product_id,
                    "name": name,
                    "issue": "insufficient_stock",
                    "available": product.stock,
                    "requested": line.quantity,
                    "message": (
                        f"Not enough stock for \"{name}\". "
                        f"Available: {product.stock}, Requested: {line.quantity}"
                    ),
                })

            if product.price != line.price:
                invalid_items.append({
                    "cartItemId": line.id,
                    "productId": line.product_id,
                    "name": name,
                    "issue": "price_changed",
                    "oldPrice": line.price,
                    "newPrice": product.price,
                    "message": f"Price for \"{name}\" has changed from {line.price} to {product.price}",
                })

            items.append({
                "cart_item_id": line.id,
                "product_id": product.id,
                "name": product.name,
                "subtitle": product.subtitle,
                "price": product.price,
                "quantity": line.quantity,
                "total": (product.price * line.quantity).quantize(CENTS),
            })

        for item in invalid_items:
            cart_validation_issues_counter.add(1, {"issue": item["issue"]})

        return items, invalid_items

    # Helpers

    def cache_count(self, user_id: int, count: int) -> None:
        """Store a committed cart badge count for a user."""
        try:
            self.redis_client.set(self._count_key(user_id), count, ex=CART_COUNT_CACHE_TTL)
        except redis.RedisError as e:
            logger.warning("Cart count cache write failed", extra={"user_id": user_id, "error": str(e)})

    def _owned_line(self, db: Session, user_id: int, line_id: int) -> CartItem:
        line = (
            db.query(CartItem)
            .filter(CartItem.id == line_id, CartItem.user_id == user_id)
            .with_for_update()
            .first()
        )
        if line is None:
            raise NotFound("Cart item not found or does not belong to user")
        return line

    def _count_lines(self, db: Session, user_id: int) -> int:
        return db.query(CartItem).filter(CartItem.user_id == user_id).count()

    @staticmethod
    def _count_key(user_id: int) -> str:
        return f"cart:count:{user_id}"

    @staticmethod
    def _line_to_dict(line: CartItem) -> Dict[str, Any]:
        return {
            "cart_item_id": line.id,
            "user_id": line.user_id,
            "product_id": line.product_id,
            "quantity": line.quantity,
            "price": line.price,
            "added_at": line.added_at.isoformat() if line.added_at else None,
        }
