from datetime import datetime, timedelta, timezone

import pytest

from tests.conftest import future_date


def test_create_booking(client, customer, provider):
    r = client.post("/api/bookings", json={
        "provider_id": provider.id,
        "title": "Fix kitchen sink",
        "description": "Leaking pipe",
        "booking_date": future_date(),
        "user_address": "House 12, Road 5",
    }, headers=customer.headers)
    assert r.status_code == 201
    booking = r.json()["booking"]
    assert booking["status"] == "pending"
    assert booking["charge"] == 500
    assert booking["customer_id"] == customer.id
    assert booking["provider"]["occupation"] == "Plumber"


def test_booking_in_the_past(client, customer, provider):
    past = (datetime.now(timezone.utc) - timedelta(hours=1)).isoformat()
    r = client.post("/api/bookings", json={
        "provider_id": provider.id, "title": "t", "description": "d", "booking_date": past,
    }, headers=customer.headers)
    assert r.status_code == 400
    assert r.json()["kind"] == "InvalidDate"


def test_booking_unparseable_date(client, customer, provider):
    r = client.post("/api/bookings", json={
        "provider_id": provider.id, "title": "t", "description": "d", "booking_date": "next tuesday",
    }, headers=customer.headers)
    assert r.json()["kind"] == "InvalidDate"


def test_booking_missing_fields(client, customer, provider):
    r = client.post("/api/bookings", json={"provider_id": provider.id, "title": "t"}, headers=customer.headers)
    assert r.status_code == 400
    assert r.json()["kind"] == "ValidationError"


def test_booking_unknown_provider(client, register, customer):
    other_customer = register()
    r = client.post("/api/bookings", json={
        "provider_id": other_customer.id, "title": "t", "description": "d", "booking_date": future_date(),
    }, headers=customer.headers)
    assert r.status_code == 404


def test_provider_cannot_book_self(client, provider):
    r = client.post("/api/bookings", json={
        "provider_id": provider.id, "title": "t", "description": "d", "booking_date": future_date(),
    }, headers=provider.headers)
    assert r.status_code == 400
    assert r.json()["kind"] == "SelfBookingForbidden"


def test_list_bookings(client, book, customer, provider):
    book(customer, provider, title="First")
    book(customer, provider, title="Second")
    mine = client.get("/api/bookings/user", headers=customer.headers).json()["bookings"]
    assert [b["title"] for b in mine] == ["Second", "First"]
    assert mine[0]["provider"]["name"]

    theirs = client.get("/api/bookings/service-provider", headers=provider.headers).json()["bookings"]
    assert len(theirs) == 2
    assert theirs[0]["customer"]["email"] == customer.email

    r = client.get("/api/bookings/service-provider", headers=customer.headers)
    assert r.status_code == 403


def test_only_assigned_provider_updates_status(client, book, register, customer, provider):
    booking = book(customer, provider)
    other = register("provider")
    for account in (customer, other):
        r = client.put(f"/api/bookings/{booking['id']}/status", json={"status": "confirmed"}, headers=account.headers)
        assert r.status_code == 403


@pytest.mark.parametrize("path,allowed", [
    (["confirmed", "completed"], True),
    (["confirmed", "cancelled"], True),
    (["cancelled"], True),
    (["completed", "confirmed"], False),
    (["cancelled", "confirmed"], False),
    (["paid"], False),
    (["request"], False),
])
def test_status_transitions(client, book, customer, provider, path, allowed):
    booking = book(customer, provider)
    url = f"/api/bookings/{booking['id']}/status"
    for status in path[:-1]:
        assert client.put(url, json={"status": status}, headers=provider.headers).status_code == 200
    r = client.put(url, json={"status": path[-1]}, headers=provider.headers)
    if allowed:
        assert r.status_code == 200
        assert r.json()["booking"]["status"] == path[-1]
    else:
        assert r.status_code == 409
        assert r.json()["kind"] == "InvalidState"


def test_unknown_status(client, book, customer, provider):
    booking = book(customer, provider)
    r = client.put(f"/api/bookings/{booking['id']}/status", json={"status": "done"}, headers=provider.headers)
    assert r.json()["kind"] == "ValidationError"


def test_bad_booking_id(client, provider):
    r = client.put("/api/bookings/not-an-id/status", json={"status": "confirmed"}, headers=provider.headers)
    assert r.status_code == 400
