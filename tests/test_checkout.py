import re
import threading
from decimal import Decimal

from sqlalchemy.exc import OperationalError

from config import LOCK_RETRY_ATTEMPTS
from conftest import CHECKOUT_BODY, USER_ID, LockNotAvailable
from models import CartItem, Order, Product, Transaction
from services.cart_service import CartService

PAYMENT_ID = re.compile(r"^TX\d{4}\d{2}\d{10}$")


def test_empty_cart_cannot_check_out(client, user_headers, payments):
    response = client.post("/checkout/process", json=CHECKOUT_BODY, headers=user_headers)

    assert response.status_code == 400
    assert response.json()["code"] == "empty_cart"
    assert payments.charges == []


def test_validate_reports_price_change(client, db, make_product, add_line, user_headers):
    product = make_product(price="100000")
    add_line(USER_ID, product, 1)
    product.price = Decimal("120000")
    db.commit()

    response = client.get("/checkout/validate", headers=user_headers)

    assert response.status_code == 400
    body = response.json()
    assert body["code"] == "validation_failed"
    [issue] = body["invalidItems"]
    assert issue["issue"] == "price_changed"
    assert issue["oldPrice"] == 100000
    assert issue["newPrice"] == 120000


def test_validate_collects_every_issue(client, db, make_product, add_line, user_headers):
    gone = make_product(name="Aero Road Frame")
    short = make_product(name="Clipless Pedals", stock=5)
    add_line(USER_ID, gone, 1)
    add_line(USER_ID, short, 4)
    gone.is_deleted = True
    short.stock = 2
    short.price = Decimal("60000")
    db.commit()

    response = client.get("/checkout/validate", headers=user_headers)

    assert response.status_code == 400
    issues = {(item["productId"], item["issue"]) for item in response.json()["invalidItems"]}
    assert issues == {
        (gone.id, "no_longer_available"),
        (short.id, "insufficient_stock"),
        (short.id, "price_changed"),
    }


def test_validate_recomputes_summary(client, make_product, add_line, user_headers):
    add_line(USER_ID, make_product(price="50000"), 2)

    response = client.get("/checkout/validate", headers=user_headers)

    assert response.status_code == 200
    summary = response.json()["data"]["summary"]
    assert summary["subtotal"] == 100000
    assert summary["tax"] == 10000
    assert summary["total"] == 110000


def test_checkout_places_order(client, db, make_product, add_line, user_headers, payments):
    product = make_product(price="50000", stock=10)
    add_line(USER_ID, product, 3)

    response = client.post("/checkout/process", json=CHECKOUT_BODY, headers=user_headers)

    assert response.status_code == 201
    data = response.json()["data"]
    assert PAYMENT_ID.match(data["payment"]["id"])
    assert data["payment"]["method"] == "cod"
    assert data["payment"]["total"] == 165000
    assert data["orderSummary"]["subtotal"] == 150000

    [order] = db.query(Order).all()
    assert order.price == Decimal("150000")
    assert order.quantity == 3
    assert order.status == "pending"
    assert order.phone_number == CHECKOUT_BODY["phone"]

    [tx] = db.query(Transaction).all()
    assert tx.order_id == order.id
    assert tx.payment_id == data["payment"]["id"]

    db.refresh(product)
    assert product.stock == 7
    assert product.sold == 3
    assert db.query(CartItem).count() == 0
    assert payments.voided == []


def test_one_payment_id_per_checkout(client, db, make_product, add_line, user_headers):
    add_line(USER_ID, make_product(name="Floor Pump", price="59"), 1)
    add_line(USER_ID, make_product(name="Bib Shorts", price="99"), 2)

    response = client.post("/checkout/process", json=CHECKOUT_BODY, headers=user_headers)

    assert response.status_code == 201
    assert len(response.json()["data"]["orders"]) == 2
    assert {tx.payment_id for tx in db.query(Transaction).all()} == {response.json()["data"]["payment"]["id"]}


def test_declined_payment_persists_nothing(client, db, make_product, add_line, user_headers, payments):
    product = make_product(stock=10)
    add_line(USER_ID, product, 2)
    payments.approve = False

    response = client.post("/checkout/process", json=CHECKOUT_BODY, headers=user_headers)

    assert response.status_code == 400
    body = response.json()
    assert body["code"] == "payment_failed"
    assert body["reason"] == "Insufficient funds"
    assert db.query(Order).count() == 0
    db.refresh(product)
    assert product.stock == 10
    assert db.query(CartItem).count() == 1


def test_stock_race_during_payment_rolls_back_everything(client, db, make_product, add_line, user_headers, payments):
    products = [
        make_product(name="Floor Pump", stock=5),
        make_product(name="Bib Shorts", stock=5),
        make_product(name="Helmet MIPS", stock=5),
    ]
    for product in products:
        add_line(USER_ID, product, 2)

    def sell_out_second_product():
        # Another checkout takes the stock while the payment is in flight
        db.query(Product).filter(Product.id == products[1].id).update({Product.stock: 1})
        db.commit()

    payments.before_charge = sell_out_second_product

    response = client.post("/checkout/process", json=CHECKOUT_BODY, headers=user_headers)

    assert response.status_code == 400
    assert response.json()["code"] == "inventory_changed"
    assert db.query(Order).count() == 0
    assert db.query(Transaction).count() == 0
    assert db.query(CartItem).filter(CartItem.user_id == USER_ID).count() == 3
    stocks = [db.get(Product, product.id).stock for product in products]
    assert stocks == [5, 1, 5]
    assert len(payments.voided) == 1


def test_input_errors_are_reported_together(client, make_product, add_line, user_headers, payments):
    add_line(USER_ID, make_product(), 1)
    body = {
        **CHECKOUT_BODY,
        "email": "not-an-email",
        "address": "short",
        "paymentMethod": "credit_card",
        "paymentDetails": {
            "cardNumber": "1234",
            "cardHolderName": "Jane Rider",
            "expiryMonth": 13,
            "expiryYear": 99,
        },
    }

    response = client.post("/checkout/process", json=body, headers=user_headers)

    assert response.status_code == 400
    fields = {error["field"] for error in response.json()["errors"]}
    assert {
        "email",
        "address",
        "paymentDetails.cardNumber",
        "paymentDetails.expiryMonth",
        "paymentDetails.cvv",
    } <= fields
    assert payments.charges == []


def test_paypal_requires_email(client, user_headers):
    body = {**CHECKOUT_BODY, "paymentMethod": "paypal", "paymentDetails": {}}

    response = client.post("/checkout/process", json=body, headers=user_headers)

    assert response.status_code == 400
    assert [error["field"] for error in response.json()["errors"]] == ["paymentDetails.email"]


def contend_cart_locks(monkeypatch, failures):
    """Make the first `failures` locked cart reads hit a lock timeout."""
    real_cart_lines = CartService.cart_lines
    locked_reads = []

    def cart_lines(self, db, user_id, lock=False):
        if lock:
            locked_reads.append(user_id)
            if len(locked_reads) <= failures:
                raise OperationalError("SELECT ... FOR UPDATE", {}, LockNotAvailable())
        return real_cart_lines(self, db, user_id, lock)

    monkeypatch.setattr(CartService, "cart_lines", cart_lines)
    return locked_reads


def test_checkout_retries_through_lock_contention(client, db, redis_client, make_product, add_line, user_headers, payments, monkeypatch):
    product = make_product(stock=5)
    add_line(USER_ID, product, 2)
    locked_reads = contend_cart_locks(monkeypatch, failures=LOCK_RETRY_ATTEMPTS - 1)

    response = client.post("/checkout/process", json=CHECKOUT_BODY, headers=user_headers)

    assert response.status_code == 201
    assert len(locked_reads) == LOCK_RETRY_ATTEMPTS
    assert len(payments.charges) == 1
    assert payments.voided == []
    db.refresh(product)
    assert product.stock == 3
    assert redis_client.get(f"cart:count:{USER_ID}") == "0"


def test_persistent_lock_contention_voids_payment(client, db, make_product, add_line, user_headers, payments, monkeypatch):
    product = make_product(stock=5)
    add_line(USER_ID, product, 2)
    locked_reads = contend_cart_locks(monkeypatch, failures=LOCK_RETRY_ATTEMPTS)

    response = client.post("/checkout/process", json=CHECKOUT_BODY, headers=user_headers)

    assert response.status_code == 503
    assert response.headers["Retry-After"] == "1"
    assert response.json()["code"] == "lock_timeout"
    assert len(locked_reads) == LOCK_RETRY_ATTEMPTS
    assert len(payments.voided) == 1
    assert db.query(Order).count() == 0
    assert db.query(CartItem).filter(CartItem.user_id == USER_ID).count() == 1
    db.refresh(product)
    assert product.stock == 5


def test_checkout_database_work_runs_off_the_event_loop(client, make_product, add_line, user_headers, payments, monkeypatch):
    add_line(USER_ID, make_product(), 1)
    threads = {}
    real_cart_lines = CartService.cart_lines

    def cart_lines(self, db, user_id, lock=False):
        threads["locked" if lock else "validate"] = threading.get_ident()
        return real_cart_lines(self, db, user_id, lock)

    monkeypatch.setattr(CartService, "cart_lines", cart_lines)
    payments.before_charge = lambda: threads.setdefault("payment", threading.get_ident())

    response = client.post("/checkout/process", json=CHECKOUT_BODY, headers=user_headers)

    assert response.status_code == 201
    assert threads["validate"] != threads["payment"]
    assert threads["locked"] != threads["payment"]
