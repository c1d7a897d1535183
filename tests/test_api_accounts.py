"""HTTP tests for accounts, tool rentals, the dashboard and service endpoints."""
from bson import ObjectId
from fastapi.testclient import TestClient

import database
from factories import make_product, make_user


class TestAuth:
    def test_signup_and_login(self, client):
        response = client.post(
            "/api/auth/signup", json={"name": "Asha Patel", "email": "asha@example.com", "password": "s3cret"}
        )

        assert response.status_code == 201
        user = response.json()
        assert user["name"] == "Asha Patel"
        assert "password" not in user and "password_hash" not in user

        response = client.post("/api/auth/login", json={"email": "asha@example.com", "password": "s3cret"})

        assert response.status_code == 200
        assert response.json()["id"] == user["id"]

    def test_password_is_not_stored_in_clear(self, client, db):
        client.post("/api/auth/signup", json={"name": "Asha", "email": "asha@example.com", "password": "s3cret"})

        stored = db["user"].find_one({"email": "asha@example.com"})
        assert stored["password_hash"] != "s3cret"
        assert stored["cart"] == []

    def test_duplicate_email(self, client):
        body = {"name": "Asha", "email": "asha@example.com", "password": "s3cret"}
        client.post("/api/auth/signup", json=body)

        response = client.post("/api/auth/signup", json=body)

        assert response.status_code == 400
        assert response.json()["detail"] == "User with this email already exists"

    def test_invalid_email(self, client):
        response = client.post("/api/auth/signup", json={"name": "Asha", "email": "not-an-email", "password": "x"})

        assert response.status_code == 400
        assert response.json()["fields"] == ["email"]

    def test_wrong_password(self, client):
        client.post("/api/auth/signup", json={"name": "Asha", "email": "asha@example.com", "password": "s3cret"})

        response = client.post("/api/auth/login", json={"email": "asha@example.com", "password": "guess"})

        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid password"

    def test_unknown_user(self, client):
        response = client.post("/api/auth/login", json={"email": "ghost@example.com", "password": "x"})

        assert response.status_code == 401
        assert response.json()["detail"] == "User not found"


class TestTools:
    def _tool(self, listed_by, **overrides):
        data = {
            "name": "Rotavator",
            "description": "6 ft, tractor mounted",
            "category": "Soil Preparation",
            "price_per_day": 1500,
            "location": "Nashik",
            "listed_by": listed_by,
        }
        data.update(overrides)
        return data

    def test_list_shows_lister(self, client, db):
        user_id = make_user(db, name="Asha Patel")
        client.post("/api/tools", json=self._tool(user_id))

        response = client.get("/api/tools")

        assert response.status_code == 200
        tools = response.json()
        assert len(tools) == 1
        assert tools[0]["listed_by"] == {"id": user_id, "name": "Asha Patel"}
        assert tools[0]["available"] is True

    def test_unknown_lister(self, client):
        tool_id = client.post("/api/tools", json=self._tool(str(ObjectId()))).json()["id"]

        response = client.get(f"/api/tools/{tool_id}")

        assert response.status_code == 200
        assert response.json()["listed_by"] is None

    def test_invalid_category(self, client, db):
        response = client.post("/api/tools", json=self._tool(make_user(db), category="Drones"))

        assert response.status_code == 400
        assert response.json()["valid_values"] == ["Vehicles", "Tools", "Soil Preparation", "power Tools"]

    def test_unknown_tool(self, client):
        response = client.get(f"/api/tools/{ObjectId()}")

        assert response.status_code == 404
        assert response.json()["detail"] == "Tool not found"


class TestDashboard:
    def test_products_for_farmer(self, client, db):
        make_product(db, name="Tomatoes", farmer="Ravi Kumar")
        make_product(db, name="Okra", farmer="Lakshmi Rao")

        response = client.get("/api/dashboard/products/Ravi Kumar")

        assert [p["name"] for p in response.json()] == ["Tomatoes"]


class TestServiceEndpoints:
    def test_root(self, client):
        assert client.get("/").json() == {"message": "AgriConnect API running"}

    def test_schema_lists_product_variants(self, client):
        schema = client.get("/schema").json()

        assert set(schema["product"]) == {"direct_buy", "enquiry", "auction"}
        assert "starting_bid" in schema["product"]["auction"]
        assert "status" in schema["order"]

    def test_database_unavailable(self, monkeypatch):
        from main import app

        monkeypatch.setattr(database, "db", None)

        with TestClient(app) as c:
            response = c.get("/api/products")
            status = c.get("/test").json()

        assert response.status_code == 503
        assert status["database"] == "❌ Not Available"
