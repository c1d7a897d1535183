"""HTTP tests for the cart endpoints."""
from bson import ObjectId

from factories import make_product, make_user


class TestCartEndpoints:
    def test_add_twice_merges_line(self, client, db):
        user_id = make_user(db)
        product_id = make_product(db)

        client.post(f"/api/users/{user_id}/cart", json={"product_id": product_id, "quantity": 2})
        response = client.post(f"/api/users/{user_id}/cart", json={"product_id": product_id, "quantity": 3})

        assert response.status_code == 200
        items = response.json()
        assert len(items) == 1
        assert items[0]["quantity"] == 5
        assert items[0]["product"]["name"] == "Tomatoes"

    def test_quantity_defaults_to_one(self, client, db):
        user_id = make_user(db)

        response = client.post(f"/api/users/{user_id}/cart", json={"product_id": make_product(db)})

        assert response.json()[0]["quantity"] == 1

    def test_zero_quantity(self, client, db):
        user_id = make_user(db)

        response = client.post(f"/api/users/{user_id}/cart", json={"product_id": make_product(db), "quantity": 0})

        assert response.status_code == 400
        assert response.json()["fields"] == ["quantity"]

    def test_unknown_user(self, client, db):
        response = client.post(f"/api/users/{ObjectId()}/cart", json={"product_id": make_product(db)})

        assert response.status_code == 404
        assert response.json()["detail"] == "User not found"

    def test_get_cart_hides_deleted_products(self, client, db):
        user_id = make_user(db)
        kept = make_product(db)
        gone = make_product(db, name="Onions")
        client.post(f"/api/users/{user_id}/cart", json={"product_id": kept})
        client.post(f"/api/users/{user_id}/cart", json={"product_id": gone})
        client.delete(f"/api/products/{gone}")

        response = client.get(f"/api/users/{user_id}/cart")

        assert response.status_code == 200
        assert [i["product_id"] for i in response.json()] == [kept]

    def test_remove_line(self, client, db):
        user_id = make_user(db)
        product_id = make_product(db)
        client.post(f"/api/users/{user_id}/cart", json={"product_id": product_id})

        response = client.delete(f"/api/users/{user_id}/cart/{product_id}")

        assert response.status_code == 200
        assert response.json() == {"message": "Item removed from cart"}
        assert client.get(f"/api/users/{user_id}/cart").json() == []

    def test_clear(self, client, db):
        user_id = make_user(db)
        client.post(f"/api/users/{user_id}/cart", json={"product_id": make_product(db)})
        client.post(f"/api/users/{user_id}/cart", json={"product_id": make_product(db)})

        response = client.delete(f"/api/users/{user_id}/cart")

        assert response.status_code == 200
        assert response.json() == {"message": "Cart cleared"}
        assert client.get(f"/api/users/{user_id}/cart").json() == []
