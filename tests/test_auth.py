import time

import pytest

import auth
from errors import Forbidden
from tests.conftest import PASSWORD


def test_password_is_hashed(db, customer):
    stored = db["user"].find_one({"email": customer.email})
    assert stored["password_hash"] != PASSWORD
    assert auth.verify_password(PASSWORD, stored["password_hash"])
    assert not auth.verify_password("secret124", stored["password_hash"])


def test_login(client, customer):
    r = client.post("/api/auth/login", json={"email": customer.email, "password": PASSWORD})
    assert r.status_code == 200
    body = r.json()
    assert body["success"] is True
    assert body["user"]["id"] == customer.id
    assert "password_hash" not in body["user"]

    me = client.get("/api/auth/me", headers={"Authorization": f"Bearer {body['token']}"})
    assert me.json()["user"]["email"] == customer.email


def test_login_wrong_password(client, customer):
    r = client.post("/api/auth/login", json={"email": customer.email, "password": "nope"})
    assert r.status_code == 401
    assert r.json() == {"success": False, "kind": "InvalidCredentials", "message": "Invalid credentials"}


def test_login_unknown_email(client):
    r = client.post("/api/auth/login", json={"email": "ghost@gmail.com", "password": PASSWORD})
    assert r.json()["kind"] == "InvalidCredentials"


def test_duplicate_email(client, customer):
    r = client.post("/api/auth/register", json={
        "name": "Again", "email": customer.email.upper(), "phone": "1", "password": "x",
    })
    assert r.status_code == 409
    assert r.json()["kind"] == "Conflict"


def test_invalid_email_shape(client):
    r = client.post("/api/auth/register", json={"name": "A", "email": "not-an-email", "phone": "1", "password": "x"})
    assert r.status_code == 400
    assert r.json()["kind"] == "ValidationError"


def test_provider_requires_occupation_and_charge(client):
    base = {"name": "P", "email": "p@gmail.com", "phone": "1", "password": "x", "role": "provider"}
    r = client.post("/api/auth/register", json={**base, "charge": 100})
    assert r.status_code == 400
    assert r.json()["kind"] == "ValidationError"

    r = client.post("/api/auth/register", json={**base, "occupation": "Plumber"})
    assert r.json()["kind"] == "ValidationError"

    r = client.post("/api/auth/register", json={**base, "occupation": "Astronaut", "charge": 100})
    assert r.json()["kind"] == "ValidationError"

    r = client.post("/api/auth/register", json={**base, "occupation": "Plumber", "charge": -1})
    assert r.json()["kind"] == "ValidationError"


def test_registration_provisions_wallet(client, customer):
    r = client.get("/api/wallets/user", headers=customer.headers)
    assert r.status_code == 200
    assert r.json()["wallet"]["balance"] == 0


def test_missing_and_bad_tokens(client):
    r = client.get("/api/auth/me")
    assert r.status_code == 401
    assert r.json()["kind"] == "Unauthorized"

    r = client.get("/api/auth/me", headers={"Authorization": "Bearer abc.def.ghi"})
    assert r.status_code == 401


def test_token_carries_claims(customer):
    assert auth.verify_token(customer.token) == {"user_id": customer.id, "role": "customer"}
    assert customer.token.split(".")[:2] == [customer.id, "customer"]


def test_tampered_token(client, customer):
    user_id, role, nonce, expires, sig = customer.token.split(".")
    for forged in (
        ".".join([user_id, "admin", nonce, expires, sig]),
        ".".join([user_id, role, nonce, str(int(expires) + 3600), sig]),
    ):
        r = client.get("/api/auth/me", headers={"Authorization": f"Bearer {forged}"})
        assert r.status_code == 401


def test_expired_token(client, db, customer):
    user = db["user"].find_one({"email": customer.email})
    token = auth.issue_token(user, -1)
    r = client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert r.status_code == 401
    assert r.json()["message"] == "Token expired"


def test_logout_revokes_token(client, customer):
    assert client.post("/api/auth/logout", headers=customer.headers).status_code == 200
    assert client.get("/api/auth/me", headers=customer.headers).status_code == 401


def test_token_lifetimes(db, customer):
    session = db["token"].find_one({"user_id": customer.id})
    hours = (session["expires_at"] - time.time()) / 3600
    assert round(hours) == auth.REGISTER_TOKEN_TTL_HOURS


def test_update_profile(client, customer):
    r = client.put("/api/auth/update-profile", json={"name": "Renamed", "password": "newpass"},
                   headers=customer.headers)
    assert r.status_code == 200
    assert r.json()["user"]["name"] == "Renamed"
    r = client.post("/api/auth/login", json={"email": customer.email, "password": "newpass"})
    assert r.status_code == 200


def test_update_profile_email_taken(client, register):
    a = register()
    b = register()
    r = client.put("/api/auth/update-profile", json={"email": b.email}, headers=a.headers)
    assert r.status_code == 409


def test_customer_cannot_set_location(client, customer):
    r = client.put("/api/auth/update-profile", json={"latitude": 23.8, "address": "Dhaka"}, headers=customer.headers)
    assert r.json()["user"]["latitude"] is None


def test_search_providers(client, register):
    register("provider", name="Zed Plumbing")
    register("provider", name="Amy Wires", occupation="Electrician")
    register("customer", name="Plumber Fan")

    r = client.get("/api/auth/providers", params={"query": "electr"})
    names = [p["name"] for p in r.json()["providers"]]
    assert names == ["Amy Wires"]

    r = client.get("/api/auth/providers")
    assert [p["name"] for p in r.json()["providers"]] == ["Amy Wires", "Zed Plumbing"]


def test_require_role(customer):
    with pytest.raises(Forbidden):
        auth.require_role({"id": customer.id, "role": "customer"}, "provider", "admin")
