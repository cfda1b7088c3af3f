"""Tests for the cart endpoints."""

from bson import ObjectId

from .conftest import make_token


class TestCart:
    def test_requires_token(self, api_client):
        assert api_client.get("/api/cart").status_code == 401

    def test_empty_cart(self, api_client, user_headers):
        response = api_client.get("/api/cart", headers=user_headers)
        assert response.status_code == 200
        assert response.json() == {"user_id": "user-1", "items": []}

    def test_add_snapshots_product(self, api_client, user_headers, make_product):
        pid = make_product(name="Injera Pan", price=30.0)
        response = api_client.post("/api/cart/items", json={"product_id": pid, "quantity": 2}, headers=user_headers)
        assert response.status_code == 200
        assert response.json()["items"] == [
            {"product_id": pid, "name": "Injera Pan", "image": None, "price": 30.0, "quantity": 2}
        ]

    def test_add_twice_increments(self, api_client, user_headers, make_product):
        pid = make_product()
        api_client.post("/api/cart/items", json={"product_id": pid}, headers=user_headers)
        response = api_client.post("/api/cart/items", json={"product_id": pid, "quantity": 3}, headers=user_headers)
        items = response.json()["items"]
        assert len(items) == 1
        assert items[0]["quantity"] == 4

    def test_add_unknown_product(self, api_client, user_headers):
        response = api_client.post("/api/cart/items", json={"product_id": str(ObjectId())}, headers=user_headers)
        assert response.status_code == 404

    def test_get_update_remove_item(self, api_client, user_headers, make_product):
        pid = make_product()
        api_client.post("/api/cart/items", json={"product_id": pid}, headers=user_headers)

        assert api_client.get(f"/api/cart/items/{pid}", headers=user_headers).json()["quantity"] == 1

        response = api_client.put(f"/api/cart/items/{pid}", json={"quantity": 6}, headers=user_headers)
        assert response.json()["items"][0]["quantity"] == 6

        response = api_client.delete(f"/api/cart/items/{pid}", headers=user_headers)
        assert response.status_code == 200
        assert response.json()["items"] == []
        assert api_client.get(f"/api/cart/items/{pid}", headers=user_headers).status_code == 404

    def test_update_missing_item(self, api_client, user_headers):
        response = api_client.put(f"/api/cart/items/{ObjectId()}", json={"quantity": 2}, headers=user_headers)
        assert response.status_code == 404
        assert response.json()["error_type"] == "CartItemNotFoundError"

    def test_carts_are_per_user(self, api_client, user_headers, make_product):
        pid = make_product()
        api_client.post("/api/cart/items", json={"product_id": pid}, headers=user_headers)
        other = {"Authorization": f"Bearer {make_token('user-2')}"}
        assert api_client.get("/api/cart", headers=other).json()["items"] == []

    def test_clear(self, api_client, user_headers, make_product):
        pid = make_product()
        api_client.post("/api/cart/items", json={"product_id": pid}, headers=user_headers)
        response = api_client.delete("/api/cart", headers=user_headers)
        assert response.status_code == 200
        assert api_client.get("/api/cart", headers=user_headers).json()["items"] == []
