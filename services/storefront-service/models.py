"""Database models for the storefront service."""
import enum
from datetime import datetime, timezone
from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    LargeBinary,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrderStatus(str, enum.Enum):
    """Order lifecycle states."""
    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = {OrderStatus.DELIVERED.value, OrderStatus.CANCELLED.value}


class User(Base):
    """User record, mirrored from the auth service."""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, index=True)
    name = Column(String(100))
    role = Column(String(20), default="user", nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class Product(Base):
    """Product model."""
    __tablename__ = "products"
    __table_args__ = (
        CheckConstraint("stock >= 0", name="ck_products_stock_non_negative"),
        CheckConstraint("sold >= 0", name="ck_products_sold_non_negative"),
    )

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), index=True, nullable=False)
    subtitle = Column(String(255))
    description = Column(String(255))
    type = Column(String(50))
    price = Column(Numeric(12, 2), nullable=False)
    stock = Column(Integer, default=0, nullable=False)
    sold = Column(Integer, default=0, nullable=False)
    image = Column(LargeBinary, nullable=True)
    is_deleted = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class CartItem(Base):
    """Cart line: one product in one user's cart."""
    __tablename__ = "cart_items"
    __table_args__ = (
        UniqueConstraint("user_id", "product_id", name="uq_cart_items_user_product"),
        CheckConstraint("quantity > 0", name="ck_cart_items_quantity_positive"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, index=True, nullable=False)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False)
    quantity = Column(Integer, nullable=False)
    # Price the customer saw when the line was last touched
    price = Column(Numeric(12, 2), nullable=False)
    added_at = Column(DateTime(timezone=True), default=utcnow)


class Order(Base):
    """Order model: one purchased cart line."""
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, index=True, nullable=False)
    name = Column(String(100))
    email = Column(String(255))
    phone_number = Column(String(20))
    address = Column(String(255))
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False)
    product = Column(String(100))
    quantity = Column(Integer, nullable=False)
    price = Column(Numeric(12, 2), nullable=False)
    status = Column(String(20), default=OrderStatus.PENDING.value, index=True, nullable=False)
    notes = Column(Text)
    tracking_number = Column(String(100))
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class Transaction(Base):
    """Payment/fulfillment audit entry, one per order row."""
    __tablename__ = "transactions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, index=True, nullable=False)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False)
    order_id = Column(Integer, ForeignKey("orders.id"), index=True, nullable=False)
    admin_id = Column(Integer, nullable=True)
    payment_method = Column(String(20))
    # Shared by every row written by the same checkout
    payment_id = Column(String(32), index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
