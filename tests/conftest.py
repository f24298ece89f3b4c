import itertools
import threading
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import mongomock
import pytest
from fastapi.testclient import TestClient

import database
from main import app

TEST_DB = "quickfix_test"
PASSWORD = "secret123"
PIN = "1234"


@pytest.fixture(autouse=True)
def db(monkeypatch):
    client = mongomock.MongoClient()
    mock_db = client[TEST_DB]
    monkeypatch.setattr(database, "db", mock_db)
    database.ensure_indexes()
    yield mock_db
    client.drop_database(TEST_DB)


@pytest.fixture
def client():
    return TestClient(app)


def auth(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def register(client):
    """Factory registering a user through the API."""
    counter = itertools.count(1)

    def _register(role="customer", **overrides):
        n = next(counter)
        payload = {
            "name": f"{role.title()} {n}",
            "email": f"{role}{n}@gmail.com",
            "phone": f"0170000000{n}",
            "password": PASSWORD,
            "role": role,
        }
        if role == "provider":
            payload.update(occupation="Plumber", charge=500)
        payload.update(overrides)
        r = client.post("/api/auth/register", json=payload)
        assert r.status_code == 201, r.text
        body = r.json()
        return SimpleNamespace(
            id=body["user"]["id"],
            email=payload["email"],
            token=body["token"],
            headers=auth(body["token"]),
        )

    return _register


@pytest.fixture
def customer(register):
    return register("customer")


@pytest.fixture
def provider(register):
    return register("provider")


@pytest.fixture
def open_qpay(client):
    def _open(account, balance=0, pin=PIN):
        r = client.post("/api/qpay/register", json={"pin": pin}, headers=account.headers)
        assert r.status_code == 201, r.text
        if balance:
            r = client.put("/api/qpay/balance", json={"amount": balance, "operation": "add"}, headers=account.headers)
            assert r.status_code == 200, r.text
        return account

    return _open


@pytest.fixture
def qpay_balance(client):
    def _balance(account):
        r = client.get("/api/qpay/account", headers=account.headers)
        assert r.status_code == 200, r.text
        return r.json()["data"]["balance"]

    return _balance


def future_date(days=3):
    return (datetime.now(timezone.utc) + timedelta(days=days)).isoformat()


@pytest.fixture
def book(client):
    def _book(customer, provider, title="Fix kitchen sink"):
        r = client.post("/api/bookings", json={
            "provider_id": provider.id,
            "title": title,
            "description": "Leaking pipe under the sink",
            "booking_date": future_date(),
        }, headers=customer.headers)
        assert r.status_code == 201, r.text
        return r.json()["booking"]

    return _book


@pytest.fixture
def completed_booking(client, book, customer, provider):
    booking = book(customer, provider)
    r = client.put(f"/api/bookings/{booking['id']}/status", json={"status": "completed"}, headers=provider.headers)
    assert r.status_code == 200, r.text
    return r.json()["booking"]


@pytest.fixture
def atomic_updates(monkeypatch):
    """Apply find_one_and_update as one step, like the server does per document.

    mongomock matches the filter, then updates by _id in a second step, so
    threads could interleave between the two.
    """
    lock = threading.Lock()
    original = mongomock.Collection.find_one_and_update

    def find_one_and_update(self, *args, **kwargs):
        with lock:
            return original(self, *args, **kwargs)

    monkeypatch.setattr(mongomock.Collection, "find_one_and_update", find_one_and_update)
