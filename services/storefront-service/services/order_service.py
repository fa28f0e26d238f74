"""Order management service."""
import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional
from sqlalchemy import func
from sqlalchemy.orm import Session
from opentelemetry import trace

from auth import CurrentUser
from database import transaction
from errors import Forbidden, InvalidStatus, InvalidTransition, NotFound
from models import Order, OrderStatus, Product, Transaction, TERMINAL_STATUSES
from monitoring import order_status_transitions_counter, stock_restocked_counter
from schemas import BulkOrderAction
from services.catalog_service import CatalogService

logger = logging.getLogger(__name__)

VALID_STATUSES = [status.value for status in OrderStatus]

BULK_ACTION_STATUS = {
    BulkOrderAction.APPROVE: OrderStatus.PROCESSING.value,
    BulkOrderAction.SHIP: OrderStatus.SHIPPED.value,
    BulkOrderAction.DELIVER: OrderStatus.DELIVERED.value,
    BulkOrderAction.CANCEL: OrderStatus.CANCELLED.value,
}


def order_to_dict(order: Order, product: Optional[Product] = None) -> Dict[str, Any]:
    data = {
        "order_id": order.id,
        "user_id": order.user_id,
        "name": order.name,
        "email": order.email,
        "phone_number": order.phone_number,
        "address": order.address,
        "product_id": order.product_id,
        "product": order.product,
        "quantity": order.quantity,
        "price": order.price,
        "status": order.status,
        "notes": order.notes,
        "tracking_number": order.tracking_number,
        "created_at": order.created_at.isoformat() if order.created_at else None,
        "updated_at": order.updated_at.isoformat() if order.updated_at else None,
    }
    if product is not None:
        data["product_name"] = product.name
        data["subtitle"] = product.subtitle
        data["has_image"] = product.image is not None
    return data


def transaction_to_dict(tx: Transaction) -> Dict[str, Any]:
    return {
        "transaction_id": tx.id,
        "user_id": tx.user_id,
        "product_id": tx.product_id,
        "order_id": tx.order_id,
        "admin_id": tx.admin_id,
        "payment_method": tx.payment_method,
        "payment_id": tx.payment_id,
        "date": tx.created_at.isoformat() if tx.created_at else None,
    }


class OrderService:
    """
    Service for reading orders and driving their status lifecycle.

    delivered and cancelled are terminal. Entering cancelled returns the
    order quantity to stock and takes it off the sold counter, inside the
    transaction that writes the status and under the product row lock.
    """

    def __init__(self, catalog: CatalogService):
        self.catalog = catalog
        self.tracer = trace.get_tracer(__name__)

    # Queries

    def get_user_orders(self, db: Session, user_id: int) -> List[Dict[str, Any]]:
        """
        Get user's orders, newest first.

        Args:
            db: Database session
            user_id: User identifier

        Returns:
            List of orders with current product name and subtitle
        """
        with self.tracer.start_as_current_span("db.query.get_user_orders") as db_span:
            db_span.set_attribute("db.operation", "SELECT")
            db_span.set_attribute("db.table", "orders")
            db_span.set_attribute("user.id", user_id)

            rows = (
                db.query(Order, Product)
                .outerjoin(Product, Order.product_id == Product.id)
                .filter(Order.user_id == user_id)
                .order_by(Order.created_at.desc(), Order.id.desc())
                .all()
            )
            db_span.set_attribute("db.rows_returned", len(rows))

        return [order_to_dict(order, product) for order, product in rows]

    def get_order_details(self, db: Session, order_id: int, user: CurrentUser) -> Dict[str, Any]:
        """
        Get one order and its transaction rows.

        Raises:
            NotFound: If the order doesn't exist
            Forbidden: If the order belongs to someone else and the caller isn't admin
        """
        row = (
            db.query(Order, Product)
            .outerjoin(Product, Order.product_id == Product.id)
            .filter(Order.id == order_id)
            .first()
        )
        if row is None:
            raise NotFound("Order not found")

        order, product = row
        if order.user_id != user.id and not user.is_admin:
            logger.warning("Order access denied", extra={"order_id": order_id, "user_id": user.id})
            raise Forbidden("Unauthorized access to order")

        transactions = (
            db.query(Transaction)
            .filter(Transaction.order_id == order_id)
            .order_by(Transaction.id)
            .all()
        )

        return {
            "order": order_to_dict(order, product),
            "transactions": [transaction_to_dict(tx) for tx in transactions],
        }

    def list_orders(
        self,
        db: Session,
        page: int = 1,
        limit: int = 10,
        status: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Get a page of all orders, newest first, optionally by status.

        Raises:
            InvalidStatus: If status isn't a known order status
        """
        q = db.query(Order)
        if status is not None:
            self._check_status(status)
            q = q.filter(Order.status == status)

        total = q.count()
        orders = (
            q.order_by(Order.created_at.desc(), Order.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )

        return {
            "orders": [order_to_dict(order) for order in orders],
            "pagination": {
                "total": total,
                "page": page,
                "limit": limit,
                "pages": (total + limit - 1) // limit,
            },
        }

    def get_stats(self, db: Session) -> Dict[str, Any]:
        """Order counts per status and revenue from orders that weren't cancelled."""
        counts = dict(
            db.query(Order.status, func.count(Order.id))
            .group_by(Order.status)
            .all()
        )
        revenue = (
            db.query(func.coalesce(func.sum(Order.price), 0))
            .filter(Order.status != OrderStatus.CANCELLED.value)
            .scalar()
        )

        by_status = {status: counts.get(status, 0) for status in VALID_STATUSES}
        return {
            "total": sum(by_status.values()),
            "byStatus": by_status,
            "revenue": Decimal(revenue).quantize(Decimal("0.01")),
        }

    # Commands

    def update_status(
        self,
        db: Session,
        order_id: int,
        status: str,
        admin_id: Optional[int] = None
    ) -> Dict[str, Any]:
        """
        Move an order to a new status.

        Args:
            db: Database session
            order_id: Order identifier
            status: Target status
            admin_id: Admin performing the change, recorded on the order's transactions

        Returns:
            The updated order

        Raises:
            InvalidStatus: If status isn't a known order status
            NotFound: If the order doesn't exist
            InvalidTransition: If the order is delivered or cancelled
        """
        self._check_status(status)

        with transaction(db):
            order = self._lock_orders(db, [order_id]).get(order_id)
            if order is None:
                raise NotFound("Order not found")

            if order.status in TERMINAL_STATUSES:
                raise InvalidTransition(
                    f"Order {order_id} is already {order.status} and cannot be changed"
                )

            previous = order.status
            self._apply_status(db, order, status, admin_id)
            db.flush()
            result = order_to_dict(order)

        order_status_transitions_counter.add(1, {"status": status, "mode": "single"})
        logger.info("Order status updated", extra={
            "order_id": order_id,
            "from_status": previous,
            "to_status": status,
            "admin_id": admin_id
        })

        return result

    def bulk_update(
        self,
        db: Session,
        order_ids: List[int],
        action: BulkOrderAction,
        force: bool = False,
        admin_id: Optional[int] = None
    ) -> Dict[str, Any]:
        """
        Apply one status action to many orders in a single transaction.

        Orders are locked in ascending id order, then their products in
        ascending product id order, before any status is applied. Unless
        force is set, a batch containing any delivered or cancelled order
        is rejected as a whole. Stock moves follow the cancelled boundary
        in both directions, so forcing an order out of cancelled takes its
        quantity out of stock again.

        Returns:
            Updated orders and the count of orders whose status changed

        Raises:
            InvalidStatus: If action isn't a known bulk action
            NotFound: If any listed order doesn't exist
            InvalidTransition: If a terminal order is listed and force is off
            InsufficientStock: If reopening a cancelled order needs more stock than exists
        """
        try:
            status = BULK_ACTION_STATUS[BulkOrderAction(action)]
        except ValueError:
            raise InvalidStatus(
                f"Invalid action. Valid actions are: {', '.join(a.value for a in BulkOrderAction)}"
            )

        with transaction(db):
            orders = self._lock_orders(db, order_ids)
            missing = sorted(set(order_ids) - set(orders))
            if missing:
                raise NotFound(f"Orders not found: {', '.join(str(i) for i in missing)}")

            terminal = [o.id for o in orders.values() if o.status in TERMINAL_STATUSES]
            if terminal and not force:
                raise InvalidTransition(
                    "Orders in a final state cannot be changed: "
                    + ", ".join(str(i) for i in terminal),
                    {"orderIds": terminal},
                )

            self.catalog.lock_products(
                db, {o.product_id for o in orders.values()}, include_deleted=True
            )

            changed = 0
            for order_id in sorted(orders):
                order = orders[order_id]
                if order.status != status:
                    changed += 1
                self._apply_status(db, order, status, admin_id)

            db.flush()
            result = [order_to_dict(orders[i]) for i in sorted(orders)]

        order_status_transitions_counter.add(changed, {"status": status, "mode": "bulk"})
        logger.info("Bulk order status update", extra={
            "order_ids": sorted(orders),
            "to_status": status,
            "forced": force,
            "changed": changed,
            "admin_id": admin_id
        })

        return {"orders": result, "updated": changed}

    def update_notes(self, db: Session, order_id: int, notes: str) -> Dict[str, Any]:
        with transaction(db):
            order = self._lock_orders(db, [order_id]).get(order_id)
            if order is None:
                raise NotFound("Order not found")
            order.notes = notes
            db.flush()
            result = order_to_dict(order)
        return result

    def update_tracking(self, db: Session, order_id: int, tracking_number: str) -> Dict[str, Any]:
        """Set the carrier tracking number of an order."""
        with transaction(db):
            order = self._lock_orders(db, [order_id]).get(order_id)
            if order is None:
                raise NotFound("Order not found")
            order.tracking_number = tracking_number
            db.flush()
            result = order_to_dict(order)

        logger.info("Order tracking number set", extra={"order_id": order_id})
        return result

    # Helpers

    def _check_status(self, status: str) -> None:
        if status not in VALID_STATUSES:
            raise InvalidStatus(
                f"Invalid order status. Valid statuses are: {', '.join(VALID_STATUSES)}"
            )

    def _lock_orders(self, db: Session, order_ids: List[int]) -> Dict[int, Order]:
        with self.tracer.start_as_current_span("db.query.lock_orders") as db_span:
            db_span.set_attribute("db.operation", "SELECT FOR UPDATE")
            db_span.set_attribute("db.table", "orders")
            db_span.set_attribute("db.rows_requested", len(order_ids))

            orders = (
                db.query(Order)
                .filter(Order.id.in_(sorted(set(order_ids))))
                .order_by(Order.id)
                .populate_existing()
                .with_for_update()
                .all()
            )
        return {order.id: order for order in orders}

    def _apply_status(self, db: Session, order: Order, status: str, admin_id: Optional[int]) -> None:
        cancelled = OrderStatus.CANCELLED.value

        if status == cancelled and order.status != cancelled:
            self.catalog.increment_stock(db, order.product_id, order.quantity)
            self.catalog.increment_sold(db, order.product_id, -order.quantity)
            stock_restocked_counter.add(order.quantity, {"product_id": str(order.product_id)})
        elif order.status == cancelled and status != cancelled:
            self.catalog.decrement_stock(db, order.product_id, order.quantity)
            self.catalog.increment_sold(db, order.product_id, order.quantity)

        order.status = status

        if admin_id is not None:
            (
                db.query(Transaction)
                .filter(Transaction.order_id == order.id)
                .update({Transaction.admin_id: admin_id}, synchronize_session="fetch")
            )
