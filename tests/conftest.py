"""
Pytest configuration for the API tests.

The document store is an in-memory mongomock database injected through the
application factory, so no MongoDB server is required.
"""
import mongomock
import pytest

from cars_arena import create_app

TEST_SECRET = "cars-arena-test-secret-0123456789abcdef"


@pytest.fixture
def database():
    return mongomock.MongoClient().db


@pytest.fixture
def app(database):
    return create_app(
        {
            "TESTING": True,
            "JWT_SECRET_KEY": TEST_SECRET,
            "STRIPE_SECRET_KEY": "sk_test_123",
        },
        database=database,
    )


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def token_for(client):
    def _issue(email, **claims):
        response = client.post("/getToken", json={"email": email, **claims})
        assert response.status_code == 200
        return response.get_json()["accessToken"]

    return _issue


@pytest.fixture
def auth_for(token_for):
    """Authorization headers for a freshly issued token."""

    def _headers(email, **claims):
        return {"Authorization": f"Bearer {token_for(email, **claims)}"}

    return _headers


@pytest.fixture
def guest(database):
    inserted = database.users.insert_one({"email": "a@x.com", "role": "guest", "city": "Dhaka"})
    return {"_id": inserted.inserted_id, "email": "a@x.com"}


@pytest.fixture
def admin(database):
    inserted = database.users.insert_one({"email": "admin@x.com", "role": "admin"})
    return {"_id": inserted.inserted_id, "email": "admin@x.com"}
