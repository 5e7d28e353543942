"""
Shared fixtures: a throwaway SQLite database and upload dir per session,
tables recreated for every test, and helpers to register users / move money.
"""

import os
import shutil
import tempfile
from decimal import Decimal

import pytest

_TMP = tempfile.mkdtemp(prefix="cryptbet-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_TMP, 'test.db')}"
os.environ["UPLOAD_DIR"] = os.path.join(_TMP, "uploads")
os.environ["AUTOPILOT_ENABLED"] = "0"
os.environ["ADMIN_EMAILS"] = "admin@example.com"
os.environ["PBKDF2_ITERATIONS"] = "1000"

from fastapi.testclient import TestClient

import market_price
import market_rankings
import storage
from app import app
from db_core import SessionLocal, engine, init_schema
from models import Base, Profile


ADMIN_EMAIL = "admin@example.com"
PASSWORD = "secret123"


@pytest.fixture(autouse=True)
def fresh_db():
    Base.metadata.drop_all(bind=engine)
    init_schema()
    market_price._cache.clear()
    market_rankings._cache.update({"ts": 0.0, "items": []})
    for child in storage.UPLOAD_DIR.iterdir():
        shutil.rmtree(child)
    yield


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def db():
    s = SessionLocal()
    yield s
    s.close()


def register(client, email, name="Tester", referral_code=None):
    body = {"name": name, "email": email, "password": PASSWORD}
    if referral_code:
        body["referral_code"] = referral_code
    r = client.post("/auth/register", json=body)
    assert r.status_code == 200, r.text
    data = r.json()
    return {"Authorization": f"Bearer {data['token']}"}, data["user"]


def set_balance(user_id, amount):
    s = SessionLocal()
    try:
        p = s.get(Profile, user_id)
        p.balance = Decimal(str(amount))
        s.commit()
    finally:
        s.close()


def get_profile(user_id) -> Profile:
    s = SessionLocal()
    try:
        p = s.get(Profile, user_id)
        s.expunge(p)
        return p
    finally:
        s.close()


@pytest.fixture
def admin(client):
    headers, user = register(client, ADMIN_EMAIL, name="Admin")
    assert user["role"] == "admin"
    return headers, user


@pytest.fixture
def alice(client):
    return register(client, "alice@example.com", name="Alice")


@pytest.fixture
def bob(client):
    return register(client, "bob@example.com", name="Bob")
