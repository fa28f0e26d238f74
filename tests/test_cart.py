from decimal import Decimal

from config import CART_COUNT_CACHE_TTL
from conftest import USER_ID, auth_headers
from models import CartItem
from services.cart_service import CartService
from services.catalog_service import CatalogService


def test_cart_requires_token(client):
    response = client.get("/cart")
    assert response.status_code == 401
    assert response.json()["code"] == "unauthorized"


def test_add_same_product_twice_merges_lines(client, db, make_product, user_headers):
    product = make_product(stock=10)

    client.post("/cart", json={"productId": product.id, "quantity": 2}, headers=user_headers)
    response = client.post("/cart", json={"productId": product.id, "quantity": 3}, headers=user_headers)
    assert response.status_code == 200

    cart = client.get("/cart", headers=user_headers).json()["data"]
    assert len(cart["items"]) == 1
    assert cart["items"][0]["quantity"] == 5
    assert db.query(CartItem).filter(CartItem.user_id == USER_ID).count() == 1


def test_add_checks_combined_quantity_against_stock(client, make_product, user_headers):
    product = make_product(stock=4)

    assert client.post("/cart", json={"productId": product.id, "quantity": 3}, headers=user_headers).status_code == 200
    response = client.post("/cart", json={"productId": product.id, "quantity": 2}, headers=user_headers)

    assert response.status_code == 400
    body = response.json()
    assert body["success"] is False
    assert body["code"] == "insufficient_stock"
    assert body["available"] == 4
    assert body["requested"] == 5


def test_add_unknown_product(client, user_headers):
    response = client.post("/cart", json={"productId": 999, "quantity": 1}, headers=user_headers)
    assert response.status_code == 404


def test_add_rejects_non_positive_quantity(client, make_product, user_headers):
    product = make_product()
    response = client.post("/cart", json={"productId": product.id, "quantity": 0}, headers=user_headers)
    assert response.status_code == 400
    assert response.json()["errors"][0]["field"] == "quantity"


def test_update_to_zero_removes_line(client, db, make_product, add_line, user_headers):
    line = add_line(USER_ID, make_product(), 2)

    response = client.put(f"/cart/{line.id}", json={"quantity": 0}, headers=user_headers)
    assert response.status_code == 200
    assert db.query(CartItem).count() == 0


def test_update_validates_requested_quantity_not_sum(client, make_product, add_line, user_headers):
    line = add_line(USER_ID, make_product(stock=5), 4)

    assert client.put(f"/cart/{line.id}", json={"quantity": 5}, headers=user_headers).status_code == 200
    response = client.put(f"/cart/{line.id}", json={"quantity": 6}, headers=user_headers)
    assert response.status_code == 400
    assert response.json()["code"] == "insufficient_stock"


def test_update_refreshes_stored_price(client, db, make_product, add_line, user_headers):
    product = make_product(price="100")
    line = add_line(USER_ID, product, 1)
    product.price = Decimal("120")
    db.commit()

    client.put(f"/cart/{line.id}", json={"quantity": 2}, headers=user_headers)

    db.refresh(line)
    assert line.price == Decimal("120")


def test_remove_twice_is_not_found(client, make_product, add_line, user_headers):
    line = add_line(USER_ID, make_product(), 1)

    assert client.delete(f"/cart/{line.id}", headers=user_headers).status_code == 200
    response = client.delete(f"/cart/{line.id}", headers=user_headers)
    assert response.status_code == 404
    assert response.json()["code"] == "not_found"


def test_lines_are_scoped_to_their_owner(client, make_product, add_line):
    line = add_line(USER_ID, make_product(), 1)
    other = auth_headers(USER_ID + 1)

    assert client.put(f"/cart/{line.id}", json={"quantity": 2}, headers=other).status_code == 404
    assert client.delete(f"/cart/{line.id}", headers=other).status_code == 404


def test_clear_always_succeeds(client, make_product, add_line, user_headers):
    assert client.delete("/cart", headers=user_headers).status_code == 200

    add_line(USER_ID, make_product(name="Floor Pump"), 1)
    add_line(USER_ID, make_product(name="Helmet MIPS"), 1)
    response = client.delete("/cart", headers=user_headers)
    assert response.json()["data"]["removed"] == 2
    assert client.get("/cart", headers=user_headers).json()["data"]["items"] == []


def test_summary_uses_stored_price(client, db, make_product, add_line, user_headers):
    product = make_product(price="100.00")
    add_line(USER_ID, product, 3)
    product.price = Decimal("150.00")
    db.commit()

    cart = client.get("/cart", headers=user_headers).json()["data"]
    item = cart["items"][0]
    assert item["price"] == 100
    assert item["current_price"] == 150

    summary = cart["summary"]
    assert summary["subtotal"] == 300
    assert summary["tax"] == 30
    assert summary["total"] == 330
    assert summary["itemCount"] == 1
    assert summary["totalQuantity"] == 3


def test_count_is_cached_and_written_through(client, redis_client, make_product, user_headers):
    first = make_product(name="Floor Pump")
    second = make_product(name="Helmet MIPS")
    client.post("/cart", json={"productId": first.id, "quantity": 1}, headers=user_headers)

    assert client.get("/cart/count", headers=user_headers).json()["data"]["count"] == 1
    assert redis_client.get(f"cart:count:{USER_ID}") == "1"

    client.post("/cart", json={"productId": second.id, "quantity": 4}, headers=user_headers)
    assert redis_client.get(f"cart:count:{USER_ID}") == "2"
    assert client.get("/cart/count", headers=user_headers).json()["data"]["count"] == 2

    client.delete("/cart", headers=user_headers)
    assert redis_client.get(f"cart:count:{USER_ID}") == "0"


def test_count_miss_does_not_replace_a_fresher_count(db, redis_client):
    service = CartService(redis_client, CatalogService())

    def count_while_cart_changes(db, user_id):
        # A cart mutation commits and writes its count while this read is counting
        service.cache_count(user_id, 1)
        return 0

    service._count_lines = count_while_cart_changes

    assert service.get_item_count(db, USER_ID) == 0
    assert redis_client.get(f"cart:count:{USER_ID}") == "1"
    assert 0 < redis_client.ttl(f"cart:count:{USER_ID}") <= CART_COUNT_CACHE_TTL
