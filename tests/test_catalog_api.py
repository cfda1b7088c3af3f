"""Tests for the product catalog endpoints."""

import pytest
from bson import ObjectId

import catalog
from errors import ConcurrentModificationError
from inventory import record_sale
from schemas import ProductUpdate


@pytest.fixture
def product_body():
    return {
        "name": "  Ethiopian Coffee  ",
        "price": 12.5,
        "short_description": "Yirgacheffe beans",
        "stock_quantity": 10,
        "category": "beverages",
    }


class TestCreateProduct:
    def test_create(self, api_client, admin_headers, product_body):
        response = api_client.post("/api/products", json=product_body, headers=admin_headers)
        assert response.status_code == 201
        data = response.json()
        assert data["name"] == "Ethiopian Coffee"
        assert data["sold"] == 0
        assert data["stock_quantity"] == 10
        assert data["id"]
        assert data["created_at"]

    def test_discount_ignored_without_flag(self, api_client, admin_headers, product_body):
        product_body["discount"] = 30
        response = api_client.post("/api/products", json=product_body, headers=admin_headers)
        assert response.json()["discount"] == 0

    def test_negative_stock_rejected(self, api_client, admin_headers, product_body):
        product_body["stock_quantity"] = -1
        response = api_client.post("/api/products", json=product_body, headers=admin_headers)
        assert response.status_code == 422

    def test_requires_admin(self, api_client, user_headers, product_body):
        response = api_client.post("/api/products", json=product_body, headers=user_headers)
        assert response.status_code == 403


class TestReadProducts:
    def test_get_by_id(self, api_client, make_product):
        pid = make_product(name="Berbere")
        response = api_client.get(f"/api/products/{pid}")
        assert response.status_code == 200
        assert response.json()["name"] == "Berbere"

    def test_get_missing(self, api_client):
        response = api_client.get(f"/api/products/{ObjectId()}")
        assert response.status_code == 404

    def test_get_invalid_id(self, api_client):
        response = api_client.get("/api/products/xyz")
        assert response.status_code == 400

    def test_search_and_category(self, api_client, make_product):
        make_product(name="Green Coffee", category="beverages")
        make_product(name="Black Tea", category="beverages")
        make_product(name="Coffee Mug", category="kitchen")

        names = {p["name"] for p in api_client.get("/api/products", params={"q": "coffee"}).json()}
        assert names == {"Green Coffee", "Coffee Mug"}

        names = {p["name"] for p in api_client.get("/api/products", params={"category": "beverages"}).json()}
        assert names == {"Green Coffee", "Black Tea"}

    def test_best_sellers(self, api_client, make_product):
        for name, sold in [("A", 3), ("B", 10), ("C", 0), ("D", 7), ("E", 1), ("F", 5)]:
            make_product(name=name, sold=sold)
        data = api_client.get("/api/products/best-sellers").json()
        assert [p["name"] for p in data] == ["B", "D", "F", "A", "E"]
        assert [p["rank"] for p in data] == [1, 2, 3, 4, 5]

    def test_discount_listings(self, api_client, make_product):
        make_product(name="Sale", price=200.0, has_discount=True, discount=10)
        make_product(name="Regular", price=50.0)

        discounted = api_client.get("/api/products/discounted").json()
        assert [p["name"] for p in discounted] == ["Sale"]
        assert discounted[0]["calculated_price"] == 180.0

        regular = api_client.get("/api/products/non-discounted").json()
        assert [p["name"] for p in regular] == ["Regular"]


class TestUpdateProduct:
    def test_sold_increase_takes_stock(self, api_client, admin_headers, make_product):
        pid = make_product(stock_quantity=10, sold=2)
        response = api_client.put(f"/api/products/{pid}", json={"sold": 5}, headers=admin_headers)
        assert response.status_code == 200
        data = response.json()
        assert data["sold"] == 5
        assert data["stock_quantity"] == 7

    def test_sold_cannot_decrease(self, api_client, admin_headers, make_product):
        pid = make_product(sold=4)
        response = api_client.put(f"/api/products/{pid}", json={"sold": 3}, headers=admin_headers)
        assert response.status_code == 409
        assert response.json()["error_type"] == "SoldCountDecreaseError"

    def test_sold_increase_beyond_stock(self, api_client, mongo_db, admin_headers, make_product):
        pid = make_product(stock_quantity=2, sold=0)
        response = api_client.put(
            f"/api/products/{pid}", json={"sold": 5, "name": "Renamed"}, headers=admin_headers
        )
        assert response.status_code == 409
        assert response.json()["error_type"] == "InsufficientStockError"
        doc = mongo_db["product"].find_one({"_id": ObjectId(pid)})
        assert (doc["stock_quantity"], doc["sold"], doc["name"]) == (2, 0, "Coffee Beans")

    def test_explicit_stock_with_sold(self, api_client, admin_headers, make_product):
        pid = make_product(stock_quantity=2, sold=1)
        response = api_client.put(
            f"/api/products/{pid}", json={"sold": 4, "stock_quantity": 20}, headers=admin_headers
        )
        data = response.json()
        assert (data["stock_quantity"], data["sold"]) == (20, 4)

    def test_stock_edit_with_expected_level(self, api_client, admin_headers, make_product):
        pid = make_product(stock_quantity=5)
        response = api_client.put(
            f"/api/products/{pid}", json={"stock_quantity": 20, "expected_stock_quantity": 5}, headers=admin_headers
        )
        assert response.status_code == 200
        assert response.json()["stock_quantity"] == 20

    def test_stock_edit_refused_when_stock_moved(self, api_client, mongo_db, admin_headers, make_product):
        pid = make_product(stock_quantity=5)
        record_sale(mongo_db, ObjectId(pid), 2)
        response = api_client.put(
            f"/api/products/{pid}", json={"stock_quantity": 20, "expected_stock_quantity": 5}, headers=admin_headers
        )
        assert response.status_code == 409
        assert response.json()["error_type"] == "ConcurrentModificationError"
        doc = mongo_db["product"].find_one({"_id": ObjectId(pid)})
        assert (doc["stock_quantity"], doc["sold"]) == (3, 2)

    def test_stock_edit_keeps_delivery_landing_after_read(self, mongo_db, make_product, monkeypatch):
        pid = make_product(stock_quantity=5)
        real_get_product = catalog.get_product

        def read_then_deliver(database, product_id):
            doc = real_get_product(database, product_id)
            record_sale(database, ObjectId(product_id), 2)
            return doc

        monkeypatch.setattr(catalog, "get_product", read_then_deliver)
        with pytest.raises(ConcurrentModificationError):
            catalog.update_product(mongo_db, pid, ProductUpdate(stock_quantity=20))
        doc = mongo_db["product"].find_one({"_id": ObjectId(pid)})
        assert (doc["stock_quantity"], doc["sold"]) == (3, 2)

    def test_negative_stock_rejected(self, api_client, admin_headers, make_product):
        pid = make_product()
        response = api_client.put(f"/api/products/{pid}", json={"stock_quantity": -3}, headers=admin_headers)
        assert response.status_code == 422

    def test_disabling_discount_zeroes_it(self, api_client, admin_headers, make_product):
        pid = make_product(has_discount=True, discount=15)
        response = api_client.put(f"/api/products/{pid}", json={"has_discount": False}, headers=admin_headers)
        data = response.json()
        assert data["has_discount"] is False
        assert data["discount"] == 0

    def test_update_missing(self, api_client, admin_headers):
        response = api_client.put(f"/api/products/{ObjectId()}", json={"price": 3}, headers=admin_headers)
        assert response.status_code == 404


class TestProductImages:
    def test_upload_replaces_and_releases(self, api_client, admin_headers, object_store, make_product):
        old = {"url": "https://cdn.test/products/old.png", "storage_key": "products/old.png"}
        pid = make_product(images=[old])

        response = api_client.post(
            f"/api/products/{pid}/images",
            files=[
                ("images", ("front.png", b"png", "image/png")),
                ("images", ("back.webp", b"webp", "image/webp")),
            ],
            headers=admin_headers,
        )
        assert response.status_code == 200
        images = response.json()["images"]
        assert len(images) == 2
        assert all(img["storage_key"] in object_store.objects for img in images)
        assert object_store.deleted == ["products/old.png"]

    def test_upload_rejects_bad_type(self, api_client, admin_headers, object_store, make_product):
        pid = make_product()
        response = api_client.post(
            f"/api/products/{pid}/images",
            files=[
                ("images", ("front.png", b"png", "image/png")),
                ("images", ("doc.pdf", b"pdf", "application/pdf")),
            ],
            headers=admin_headers,
        )
        assert response.status_code == 400
        assert object_store.objects == {}

    def test_delete_releases_images(self, api_client, mongo_db, admin_headers, object_store, make_product):
        pid = make_product(images=[{"url": "https://cdn.test/products/a.png", "storage_key": "products/a.png"}])
        response = api_client.delete(f"/api/products/{pid}", headers=admin_headers)
        assert response.status_code == 200
        assert mongo_db["product"].count_documents({}) == 0
        assert object_store.deleted == ["products/a.png"]

    def test_delete_missing(self, api_client, admin_headers):
        response = api_client.delete(f"/api/products/{ObjectId()}", headers=admin_headers)
        assert response.status_code == 404
