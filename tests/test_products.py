import logging

from models import Product


def test_list_products_paginates_and_searches(client, make_product):
    make_product(name="Gravel Wheelset")
    make_product(name="Floor Pump")
    make_product(name="Helmet MIPS")

    data = client.get("/products", params={"limit": 2}).json()["data"]
    assert len(data["products"]) == 2
    assert data["pagination"] == {"total": 3, "page": 1, "limit": 2, "pages": 2}

    found = client.get("/products", params={"search": "pump"}).json()["data"]["products"]
    assert [p["name"] for p in found] == ["Floor Pump"]


def test_create_product_requires_admin(client, user_headers):
    body = {"name": "Chain Lube", "price": "12.50", "type": "Tools", "stock": 30}
    assert client.post("/products", json=body, headers=user_headers).status_code == 403


def test_admin_creates_and_updates_product(client, db, admin_headers):
    body = {"name": "Chain Lube", "price": "12.50", "type": "Tools", "stock": 30}
    created = client.post("/products", json=body, headers=admin_headers)
    assert created.status_code == 201
    product_id = created.json()["data"]["product_id"]

    response = client.put(f"/products/{product_id}", json={"stock": 25}, headers=admin_headers)
    assert response.status_code == 200
    assert response.json()["data"]["stock"] == 25
    assert response.json()["data"]["name"] == "Chain Lube"


def test_product_creation_is_logged(client, caplog, admin_headers):
    caplog.set_level(logging.INFO, logger="services.catalog_service")
    body = {"name": "Chain Lube", "price": "12.50", "type": "Tools", "stock": 30}

    response = client.post("/products", json=body, headers=admin_headers)

    assert response.status_code == 201
    [record] = [r for r in caplog.records if r.getMessage() == "Product created"]
    assert record.product_name == "Chain Lube"
    assert record.product_id == response.json()["data"]["product_id"]

def test_product_validation_errors(client, admin_headers):
    response = client.post("/products", json={"name": "ab", "price": "-1"}, headers=admin_headers)

    assert response.status_code == 400
    fields = {error["field"] for error in response.json()["errors"]}
    assert {"name", "price", "type"} <= fields


def test_deleted_product_is_hidden_but_kept(client, db, make_product, admin_headers):
    product = make_product()

    assert client.delete(f"/products/{product.id}", headers=admin_headers).status_code == 200

    assert client.get(f"/products/{product.id}").status_code == 404
    assert db.get(Product, product.id) is not None


def test_product_image_round_trip(client, make_product, admin_headers):
    product = make_product()
    assert client.get(f"/products/{product.id}/image").status_code == 404

    client.put(f"/products/{product.id}/image", content=b"\x89PNG-bytes", headers=admin_headers)

    response = client.get(f"/products/{product.id}/image")
    assert response.status_code == 200
    assert response.content == b"\x89PNG-bytes"
    assert client.get(f"/products/{product.id}").json()["data"]["has_image"] is True


def test_health(client):
    assert client.get("/health").json() == {"status": "healthy"}
