import os

# Must be set before the application modules read their configuration
os.environ["OTEL_ENABLED"] = "false"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["SEED_DATA"] = "false"
os.environ["PROFILING_ENABLED"] = "false"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["PAYMENT_DELAY_SECONDS"] = "0"

from decimal import Decimal

import fakeredis
import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from config import JWT_ALGORITHM, JWT_SECRET
from database import get_db
from dependencies import get_payment_service
from main import app
from models import Base, CartItem, Product, User
from services.payment_service import generate_payment_id


class LockNotAvailable(Exception):
    """DBAPI error carrying PostgreSQL's lock_not_available code."""
    pgcode = "55P03"


class StubPayments:
    """Deterministic payment processor; before_charge runs just before approving."""

    def __init__(self):
        self.approve = True
        self.reason = "Insufficient funds"
        self.before_charge = None
        self.charges = []
        self.voided = []

    async def process_payment(self, method, details, amount):
        self.charges.append({"method": method, "amount": amount})
        if self.before_charge is not None:
            self.before_charge()
        if not self.approve:
            return {"success": False, "reason": self.reason}
        return {
            "success": True,
            "id": generate_payment_id(),
            "method": method,
            "amount": amount,
            "date": "2026-01-01T00:00:00",
        }

    async def void_payment(self, payment):
        self.voided.append(payment)


USER_ID = 101
OTHER_USER_ID = 102


def token_for(user_id, role="user"):
    return jwt.encode({"id": user_id, "role": role}, JWT_SECRET, algorithm=JWT_ALGORITHM)


def auth_headers(user_id, role="user"):
    return {"Authorization": f"Bearer {token_for(user_id, role)}"}


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db(engine):
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    yield session
    session.close()


@pytest.fixture
def redis_client():
    return fakeredis.FakeRedis(decode_responses=True)


@pytest.fixture
def payments():
    return StubPayments()


@pytest.fixture
def client(db, redis_client, payments):
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_payment_service] = lambda: payments
    app.state.redis_client = redis_client
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def make_product(db):
    def _make(name="Gravel Wheelset", price="50000", stock=10, sold=0):
        product = Product(name=name, type="Wheels", price=Decimal(price), stock=stock, sold=sold)
        db.add(product)
        db.commit()
        return product
    return _make


@pytest.fixture
def add_line(db):
    """Put a line straight into a cart, priced at the product's current price."""
    def _add(user_id, product, quantity):
        line = CartItem(user_id=user_id, product_id=product.id, quantity=quantity, price=product.price)
        db.add(line)
        db.commit()
        return line
    return _add


@pytest.fixture
def admin(db):
    user = User(email="admin@storefront.test", name="Admin", role="admin")
    db.add(user)
    db.commit()
    return user


@pytest.fixture
def admin_headers(admin):
    return auth_headers(admin.id, "admin")


@pytest.fixture
def user_headers():
    return auth_headers(USER_ID)


CHECKOUT_BODY = {
    "name": "Jane Rider",
    "email": "jane@example.com",
    "phone": "+6281234567890",
    "address": "Jl. Sudirman 123, Jakarta",
    "paymentMethod": "cod",
    "paymentDetails": {},
}
