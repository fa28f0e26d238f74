"""Checkout orchestration: validate, pay, record orders."""
import logging
from typing import Any, Dict, List
from sqlalchemy.orm import Session
from opentelemetry import trace
from starlette.concurrency import run_in_threadpool
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from config import LOCK_RETRY_ATTEMPTS
from database import transaction
from errors import EmptyCart, InventoryChanged, LockTimeout, PaymentFailed, ValidationFailed
from models import Order, Transaction
from monitoring import checkout_counter, checkout_amount_histogram
from schemas import CheckoutRequest
from services.cart_service import CENTS, CartService
from services.catalog_service import CatalogService
from services.order_service import order_to_dict
from services.payment_service import PaymentService

logger = logging.getLogger(__name__)


class CheckoutService:
    """Service for turning a user's cart into paid orders."""

    def __init__(
        self,
        cart_service: CartService,
        catalog: CatalogService,
        payment_service: PaymentService
    ):
        """
        Initialize checkout service.

        Args:
            cart_service: Cart service instance
            catalog: Catalog service for locking and stock moves
            payment_service: Payment processor
        """
        self.cart_service = cart_service
        self.catalog = catalog
        self.payment_service = payment_service
        self.tracer = trace.get_tracer(__name__)

    def validate(self, db: Session, user_id: int) -> Dict[str, Any]:
        """Pre-checkout validation of the user's cart against the catalog."""
        return self.cart_service.validate_for_checkout(db, user_id)

    async def process_checkout(
        self,
        db: Session,
        user_id: int,
        request: CheckoutRequest
    ) -> Dict[str, Any]:
        """
        Process checkout for user's cart.

        The cart is validated, the payment is charged, and then every order
        row, transaction row, stock move and the cart clear are committed as
        one unit. A failure at any step leaves the cart and the catalog as
        they were; a failure after the charge voids the payment.

        Args:
            db: Database session
            user_id: User identifier
            request: Validated shipping and payment input

        Returns:
            Created orders, payment descriptor and order summary

        Raises:
            EmptyCart: If cart is empty
            ValidationFailed: If any cart line fails validation
            PaymentFailed: If the payment is declined
            InventoryChanged: If the cart or catalog moved after validation
            LockTimeout: If row locks stayed contended through every retry
        """
        payment_method = request.payment_method.value

        span = trace.get_current_span()
        span.set_attribute("payment.method", payment_method)
        span.set_attribute("user.id", user_id)

        # Step 1: Re-validate the cart against live stock and prices
        try:
            validated = await run_in_threadpool(self.cart_service.validate_for_checkout, db, user_id)
        except (EmptyCart, ValidationFailed) as e:
            checkout_counter.add(1, {"payment_method": payment_method, "status": e.code})
            raise

        summary = validated["summary"]

        # Step 2: Charge the payment (no locks or transaction held)
        payment = await self.payment_service.process_payment(
            method=payment_method,
            details=request.payment_details.model_dump(),
            amount=summary["total"]
        )
        if not payment["success"]:
            checkout_counter.add(1, {"payment_method": payment_method, "status": "payment_failed"})
            raise PaymentFailed(payment["reason"])

        # Step 3: Record orders, move stock and clear the cart atomically.
        # Runs in a worker thread so lock waits and retry backoff stay off the event loop.
        try:
            orders = await run_in_threadpool(self._materialize_orders, db, user_id, request, validated, payment)
        except Exception as e:
            checkout_counter.add(1, {
                "payment_method": payment_method,
                "status": getattr(e, "code", "error")
            })
            logger.error("Failed to create orders after payment", extra={
                "user_id": user_id,
                "payment_id": payment["id"],
                "amount": float(summary["total"]),
                "error": str(e)
            })
            await self.payment_service.void_payment(payment)
            raise

        self.cart_service.cache_count(user_id, 0)

        # Record metrics
        checkout_counter.add(1, {"payment_method": payment_method, "status": "completed"})
        checkout_amount_histogram.record(float(summary["total"]), {"payment_method": payment_method})

        logger.info("Checkout completed", extra={
            "user_id": user_id,
            "order_ids": [order["order_id"] for order in orders],
            "amount": float(summary["total"]),
            "payment_method": payment_method,
            "payment_id": payment["id"],
            "item_count": summary["itemCount"]
        })

        return {
            "orders": orders,
            "payment": {
                "method": payment_method,
                "id": payment["id"],
                "total": summary["total"],
                "date": payment["date"],
            },
            "orderSummary": summary,
        }

    @retry(
        reraise=True,
        stop=stop_after_attempt(LOCK_RETRY_ATTEMPTS),
        wait=wait_exponential(multiplier=0.1, min=0.1, max=1),
        retry=retry_if_exception_type(LockTimeout),
    )
    def _materialize_orders(
        self,
        db: Session,
        user_id: int,
        request: CheckoutRequest,
        validated: Dict[str, Any],
        payment: Dict[str, Any]
    ) -> List[Dict[str, Any]]:
        """
        Create one order and one transaction row per validated cart line.

        Cart lines and product rows are locked again and compared with the
        validated snapshot; any difference aborts with InventoryChanged.
        """
        expected = {item["cart_item_id"]: item for item in validated["items"]}
        shipping = request.shipping_info

        with self.tracer.start_as_current_span("db.transaction.create_orders") as db_span:
            db_span.set_attribute("db.operation", "INSERT")
            db_span.set_attribute("db.table", "orders")
            db_span.set_attribute("user.id", user_id)
            db_span.set_attribute("payment.id", payment["id"])

            with transaction(db):
                rows = self.cart_service.cart_lines(db, user_id, lock=True)
                if {line.id for line, _ in rows} != set(expected):
                    raise InventoryChanged("Your cart changed during checkout, please review it and try again")

                locked = self.catalog.lock_products(db, [line.product_id for line, _ in rows])
                for line, snapshot in rows:
                    item = expected[line.id]
                    product = locked.get(line.product_id)
                    if (
                        product is None
                        or line.product_id != item["product_id"]
                        or line.quantity != item["quantity"]
                        or product.price != item["price"]
                        or product.stock < line.quantity
                    ):
                        logger.warning("Inventory changed during checkout", extra={
                            "user_id": user_id,
                            "product_id": line.product_id,
                            "payment_id": payment["id"]
                        })
                        raise InventoryChanged(
                            f"Inventory for \"{snapshot.name}\" changed during checkout, "
                            "please review your cart and try again"
                        )

                orders = []
                for line, _ in rows:
                    product = locked[line.product_id]
                    order = Order(
                        user_id=user_id,
                        name=shipping["name"],
                        email=shipping["email"],
                        phone_number=shipping["phone"],
                        address=shipping["address"],
                        product_id=product.id,
                        product=product.name,
                        quantity=line.quantity,
                        price=(product.price * line.quantity).quantize(CENTS),
                        status="pending"
                    )
                    db.add(order)
                    db.flush()

                    db.add(Transaction(
                        user_id=user_id,
                        product_id=product.id,
                        order_id=order.id,
                        payment_method=payment["method"],
                        payment_id=payment["id"]
                    ))

                    self.catalog.decrement_stock(db, product.id, line.quantity)
                    self.catalog.increment_sold(db, product.id, line.quantity)
                    orders.append(order)

                self.cart_service.delete_lines(db, user_id)
                db.flush()
                result = [order_to_dict(order) for order in orders]

            db_span.set_attribute("db.rows_affected", len(result))

        return result
