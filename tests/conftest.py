import io

import mongomock
import pytest
from fastapi.testclient import TestClient
from PIL import Image

from auth import create_access_token, hash_password, token_claims
from database import Database
from images import ImageStore
from main import create_app
from schemas import utcnow


@pytest.fixture
def database():
    return Database(client=mongomock.MongoClient(), name="abc_store_test")


@pytest.fixture
def image_store(tmp_path):
    store = ImageStore(str(tmp_path / "uploads"))
    store.ensure_directory()
    return store


@pytest.fixture
def app(database, image_store):
    return create_app(database=database, image_store=image_store, query_cache_seconds=0)


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


def _insert_user(database, name, email, role):
    now = utcnow()
    doc = {
        "name": name,
        "email": email,
        "passwordHash": hash_password("secret123"),
        "role": role,
        "isActive": True,
        "lastLogin": None,
        "createdAt": now,
        "updatedAt": now,
    }
    doc["_id"] = database["user"].insert_one(doc).inserted_id
    return doc


@pytest.fixture
def admin(database):
    return _insert_user(database, "Ada Admin", "admin@example.com", "admin")


@pytest.fixture
def user(database):
    return _insert_user(database, "Uma User", "user@example.com", "user")


@pytest.fixture
def other_user(database):
    return _insert_user(database, "Oscar Other", "other@example.com", "user")


@pytest.fixture
def headers_for():
    def make(user_doc):
        return {"Authorization": f"Bearer {create_access_token(token_claims(user_doc))}"}
    return make


@pytest.fixture
def admin_headers(admin, headers_for):
    return headers_for(admin)


@pytest.fixture
def user_headers(user, headers_for):
    return headers_for(user)


@pytest.fixture
def make_png():
    def make(size=(320, 240), color=(200, 30, 30)):
        buffer = io.BytesIO()
        Image.new("RGB", size, color).save(buffer, format="PNG")
        return buffer.getvalue()
    return make


@pytest.fixture
def png_bytes(make_png):
    return make_png()
