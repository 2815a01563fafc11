from datetime import datetime, timedelta, timezone

import mongomock
import pytest
from fastapi.testclient import TestClient
from jose import jwt

from config import Settings
from main import create_app

SECRET = "test-secret"


def make_token(email, secret=SECRET, expires_in=3600, **claims):
    payload = {"exp": datetime.now(timezone.utc) + timedelta(seconds=expires_in), **claims}
    if email is not None:
        payload["email"] = email
    return jwt.encode(payload, secret, algorithm="HS256")


@pytest.fixture
def settings():
    return Settings(jwt_secret=SECRET, database_name="tastio_test", log_level="DEBUG")


@pytest.fixture
def mongo():
    return mongomock.MongoClient(tz_aware=True)


@pytest.fixture
def db(mongo, settings):
    return mongo[settings.database_name]


@pytest.fixture
def app(settings, mongo):
    return create_app(settings, mongo_client=mongo)


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


@pytest.fixture
def lenient_client(app):
    # unhandled errors become 500 responses instead of propagating
    with TestClient(app, raise_server_exceptions=False) as c:
        yield c


@pytest.fixture
def auth():
    def _headers(email):
        return {"Authorization": f"Bearer {make_token(email)}"}
    return _headers


@pytest.fixture
def make_user(db):
    def _make(email, role="user", name=None, photo=None, status="active"):
        db["user"].insert_one({
            "email": email,
            "role": role,
            "name": name or email.split("@")[0].title(),
            "photo": photo or f"https://img.example/{email}.png",
            "status": status,
            "created_at": datetime.now(timezone.utc),
        })
        return email
    return _make


@pytest.fixture
def admin(make_user):
    return make_user("admin@tastio.com", role="admin")


@pytest.fixture
def make_seller(db, make_user):
    def _make(email, restaurant_name="Spice Route", location="Dhaka"):
        make_user(email, role="seller")
        res = db["restaurant"].insert_one({
            "owner_email": email,
            "restaurant_name": restaurant_name,
            "location": location,
            "status": "verified",
            "created_at": datetime.now(timezone.utc),
        })
        return {"email": email, "restaurant_id": str(res.inserted_id)}
    return _make


@pytest.fixture
def seller(make_seller):
    return make_seller("chef@tastio.com")


@pytest.fixture
def menu_item(client, auth, seller):
    res = client.post(
        "/menu",
        json={"name": "Kacchi Biryani", "price": 350, "category": "Rice", "image": "https://img.example/kacchi.png"},
        headers=auth(seller["email"]),
    )
    assert res.status_code == 200, res.text
    return res.json()
