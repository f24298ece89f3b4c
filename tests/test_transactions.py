import re
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime

import pytest

import bookings
import transactions
import wallets
from errors import InsufficientBalance, Internal
from tests.conftest import PIN


@pytest.fixture
def funded(customer, provider, open_qpay):
    open_qpay(customer, balance=100)
    open_qpay(provider)
    return customer, provider


def _send(client, sender, receiver_id, amount, pin=PIN, **extra):
    payload = {"receiver_id": receiver_id, "amount": amount, "pin": pin, **extra}
    return client.post("/api/transactions/send-money", json=payload, headers=sender.headers)


def test_send_money(client, db, funded, qpay_balance):
    customer, provider = funded
    r = _send(client, customer, provider.id, 30)
    assert r.status_code == 200
    data = r.json()["data"]
    assert data["status"] == "completed"
    assert data["new_balance"] == 70
    assert data["receiver_balance"] == 30

    assert qpay_balance(customer) == 70
    assert qpay_balance(provider) == 30
    rows = list(db["transaction"].find())
    assert len(rows) == 1
    assert rows[0]["status"] == "completed"
    assert rows[0]["completed_at"] is not None
    assert rows[0]["currency"] == "BDT"


def test_wrong_pin_moves_nothing(client, db, funded, qpay_balance):
    customer, provider = funded
    r = _send(client, customer, provider.id, 30, pin="9999")
    assert r.status_code == 401
    assert r.json()["kind"] == "InvalidPin"
    assert qpay_balance(customer) == 100
    assert qpay_balance(provider) == 0
    assert db["transaction"].count_documents({}) == 0


def test_insufficient_balance_moves_nothing(client, db, funded, qpay_balance):
    customer, provider = funded
    r = _send(client, customer, provider.id, 100.01)
    assert r.status_code == 400
    assert r.json()["kind"] == "InsufficientBalance"
    assert qpay_balance(customer) == 100
    assert db["transaction"].count_documents({}) == 0


@pytest.mark.parametrize("amount", [0, -5, "abc"])
def test_invalid_amount(client, funded, amount):
    customer, provider = funded
    r = _send(client, customer, provider.id, amount)
    assert r.status_code == 400
    assert r.json()["kind"] == "ValidationError"


def test_missing_accounts(client, register, funded):
    customer, provider = funded
    stranger = register()
    r = _send(client, customer, stranger.id, 10)
    assert r.status_code == 404
    r = _send(client, stranger, customer.id, 10)
    assert r.status_code == 404


def test_cannot_pay_self(client, funded):
    customer, _ = funded
    assert _send(client, customer, customer.id, 10).json()["kind"] == "ValidationError"


def test_failed_credit_is_compensated(client, db, funded, qpay_balance, monkeypatch):
    customer, provider = funded
    real_credit = wallets.credit

    def flaky_credit(user_id, amount):
        if user_id == provider.id:
            raise Internal("ledger unavailable")
        return real_credit(user_id, amount)

    monkeypatch.setattr(wallets, "credit", flaky_credit)
    r = _send(client, customer, provider.id, 30)
    assert r.status_code == 500
    assert r.json()["kind"] == "Internal"
    assert qpay_balance(customer) == 100
    assert qpay_balance(provider) == 0
    assert db["transaction"].count_documents({}) == 0


def test_failed_refund_leaves_failed_row(client, db, funded, qpay_balance, monkeypatch):
    customer, provider = funded

    def broken_credit(user_id, amount):
        raise Internal("ledger unavailable")

    monkeypatch.setattr(wallets, "credit", broken_credit)
    r = _send(client, customer, provider.id, 30)
    assert r.status_code == 500
    rows = list(db["transaction"].find())
    assert len(rows) == 1
    assert rows[0]["status"] == "failed"
    assert qpay_balance(customer) == 70


def test_transaction_id_format():
    txn_id = transactions.generate_transaction_id(datetime(2024, 3, 9))
    assert re.fullmatch(r"TXN240309\d{6}", txn_id)


def test_transaction_id_collision_is_retried(client, db, funded, monkeypatch):
    customer, provider = funded
    ids = iter(["TXN240101000001", "TXN240101000001", "TXN240101000002"])
    monkeypatch.setattr(transactions, "generate_transaction_id", lambda: next(ids))
    first = _send(client, customer, provider.id, 10).json()["data"]
    second = _send(client, customer, provider.id, 10).json()["data"]
    assert first["transaction_id"] == "TXN240101000001"
    assert second["transaction_id"] == "TXN240101000002"


def test_transaction_id_attempts_exhausted(client, db, funded, monkeypatch):
    customer, provider = funded
    monkeypatch.setattr(transactions, "generate_transaction_id", lambda: "TXN240101000001")
    assert _send(client, customer, provider.id, 10).status_code == 200
    r = _send(client, customer, provider.id, 10)
    assert r.status_code == 500
    assert db["transaction"].count_documents({}) == 1


def test_apply_discount():
    assert transactions.apply_discount(100, 0) == 100
    assert transactions.apply_discount(100, 15) == 85
    assert transactions.apply_discount(100, 100) == 0


def _top_up(client, account, amount):
    r = client.put("/api/qpay/balance", json={"amount": amount, "operation": "add"}, headers=account.headers)
    assert r.status_code == 200, r.text


def test_booking_payment_is_priced_from_charge(client, completed_booking, funded, qpay_balance):
    customer, provider = funded
    _top_up(client, customer, 900)
    client.put("/api/qpay/discount", json={"discount": 10}, headers=provider.headers)

    # the amount sent by the client does not decide what the booking costs
    r = _send(client, customer, provider.id, 1, booking_id=completed_booking["id"])
    data = r.json()["data"]
    assert data["base_amount"] == 500
    assert data["discount_applied"] == 10
    assert data["amount"] == 450
    assert qpay_balance(customer) == 550
    assert qpay_balance(provider) == 450

    mine = client.get("/api/bookings/user", headers=customer.headers).json()["bookings"]
    assert mine[0]["status"] == "paid"


@pytest.mark.parametrize("status", ["cancelled", "paid", "request"])
def test_unpayable_booking_states(client, db, book, funded, qpay_balance, status):
    customer, provider = funded
    _top_up(client, customer, 900)
    booking = book(customer, provider)
    bookings.set_status(booking["id"], status)

    r = _send(client, customer, provider.id, 500, booking_id=booking["id"])
    assert r.status_code == 409
    assert r.json()["kind"] == "InvalidState"
    assert qpay_balance(customer) == 1000
    assert db["transaction"].count_documents({}) == 0


def test_booking_payment_checks_ownership(client, book, register, funded, open_qpay):
    customer, provider = funded
    booking = book(customer, provider)
    other = open_qpay(register("provider"))
    r = _send(client, customer, other.id, 10, booking_id=booking["id"])
    assert r.status_code == 403


def test_money_request_payment(client, completed_booking, funded, qpay_balance):
    customer, provider = funded
    rid = client.post("/api/money-requests", json={"booking_id": completed_booking["id"], "amount": 40},
                      headers=provider.headers).json()["data"]["id"]

    direct = _send(client, customer, provider.id, 40, booking_id=completed_booking["id"])
    assert direct.json()["kind"] == "InvalidState"

    r = _send(client, customer, provider.id, 1, request_id=rid)
    assert r.status_code == 200
    assert r.json()["data"]["amount"] == 40
    assert qpay_balance(provider) == 40

    details = client.get(f"/api/money-requests/details/{rid}", headers=customer.headers).json()["data"]
    assert details["status"] == "paid"
    mine = client.get("/api/bookings/user", headers=customer.headers).json()["bookings"]
    assert mine[0]["status"] == "paid"

    again = _send(client, customer, provider.id, 40, request_id=rid)
    assert again.json()["kind"] == "Conflict"
    assert qpay_balance(customer) == 60


def test_history_direction_and_pagination(client, funded):
    customer, provider = funded
    for amount in (1, 2, 3):
        _send(client, customer, provider.id, amount)

    r = client.get("/api/transactions/history", params={"limit": 2}, headers=customer.headers)
    data = r.json()["data"]
    assert [t["amount"] for t in data["transactions"]] == [3, 2]
    assert all(t["direction"] == "sent" for t in data["transactions"])
    assert data["transactions"][0]["other_party"]["id"] == provider.id
    assert data["pagination"] == {
        "current_page": 1,
        "total_pages": 2,
        "total_transactions": 3,
        "has_next_page": True,
        "has_prev_page": False,
    }

    page2 = client.get("/api/transactions/history", params={"limit": 2, "page": 2},
                       headers=customer.headers).json()["data"]
    assert [t["amount"] for t in page2["transactions"]] == [1]
    assert page2["pagination"]["has_next_page"] is False

    received = client.get("/api/transactions/history", params={"direction": "received"},
                          headers=provider.headers).json()["data"]["transactions"]
    assert len(received) == 3
    assert all(t["direction"] == "received" for t in received)
    none_sent = client.get("/api/transactions/history", params={"direction": "sent"},
                           headers=provider.headers).json()["data"]["transactions"]
    assert none_sent == []


def test_details_restricted_to_parties(client, register, funded):
    customer, provider = funded
    data = _send(client, customer, provider.id, 5).json()["data"]

    by_id = client.get(f"/api/transactions/{data['id']}", headers=provider.headers)
    assert by_id.json()["data"]["direction"] == "received"
    by_ref = client.get(f"/api/transactions/{data['transaction_id']}", headers=customer.headers)
    assert by_ref.json()["data"]["id"] == data["id"]

    stranger = register()
    assert client.get(f"/api/transactions/{data['id']}", headers=stranger.headers).status_code == 403
    assert client.get("/api/transactions/TXN000000000000", headers=customer.headers).status_code == 404


def test_receipt_pdf(client, register, funded):
    customer, provider = funded
    data = _send(client, customer, provider.id, 5).json()["data"]

    r = client.get(f"/api/transactions/{data['transaction_id']}/receipt", headers=customer.headers)
    assert r.status_code == 200
    assert r.headers["content-type"] == "application/pdf"
    assert f"receipt-{data['transaction_id']}.pdf" in r.headers["content-disposition"]
    assert r.content.startswith(b"%PDF")

    stranger = register()
    r = client.get(f"/api/transactions/{data['id']}/receipt", headers=stranger.headers)
    assert r.status_code == 403


def test_simultaneous_transfers_cannot_overdraw(db, customer, provider, open_qpay, atomic_updates):
    open_qpay(customer, balance=30)
    open_qpay(provider)

    def pay():
        try:
            return transactions.send_money({"id": customer.id}, provider.id, 20, PIN)
        except InsufficientBalance:
            return None

    with ThreadPoolExecutor(max_workers=2) as pool:
        results = list(pool.map(lambda _: pay(), range(2)))

    assert len([r for r in results if r is not None]) == 1
    assert wallets.balance_of(wallets.get_pin_account(customer.id)) == 10
    assert wallets.balance_of(wallets.get_pin_account(provider.id)) == 20
    assert db["transaction"].count_documents({}) == 1
