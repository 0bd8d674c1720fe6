import os

os.environ["PERSIST_DATA"] = "false"
os.environ["JWT_SECRET"] = "test-secret-key"
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ.pop("ANTHROPIC_API_KEY", None)
os.environ.pop("DATABASE_URL", None)

import pytest
from fastapi.testclient import TestClient

from symptomap.db import reset_db
from symptomap.auth import create_user, create_jwt
from symptomap.predictions import prediction_service
from symptomap.server import app


@pytest.fixture(autouse=True)
def fresh_db():
    reset_db()
    prediction_service.clear_cache()
    yield


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def make_user():
    def _make(role="analyst", email=None, password="correct-horse-1"):
        user = create_user(email or f"{role}@symptomap.test", password, role.title(), role)
        return user, create_jwt(user)
    return _make


@pytest.fixture
def headers(make_user):
    """headers("admin") -> Authorization header for a fresh user of that role."""
    cache = {}

    def _headers(role="analyst"):
        if role not in cache:
            _, token = make_user(role)
            cache[role] = {"Authorization": f"Bearer {token}"}
        return cache[role]
    return _headers
