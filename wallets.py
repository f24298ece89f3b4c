"""
Wallet and QPay ledgers.

Both are one mutable balance row per user. Balances are stored as integer
minor units in ``balance_minor`` (hundredths of the currency) so repeated
credits and debits stay exact. Balance changes go through ``apply_delta`` which folds the
non-negative check into the update filter, so a debit either lands in full or
is rejected with InsufficientBalance.
"""
import os
import re
import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from auth import hash_password, require_role, verify_password
from database import collection, create_document, utcnow
from errors import (
    AccountNotFound, Conflict, DuplicateAccount, InsufficientBalance, InvalidCredentials,
    InvalidPin, NotFound, ValidationError,
)
from schemas import QPay, Wallet

logger = logging.getLogger(__name__)

WALLET_CURRENCY = os.getenv("WALLET_CURRENCY", "USD")
PIN_RE = re.compile(r"^\d{4}$")
OPERATIONS = ("add", "subtract")


def _check_amount(amount) -> float:
    try:
        value = float(amount)
    except (TypeError, ValueError):
        raise ValidationError("Invalid amount: must be a positive number")
    if value <= 0:
        raise ValidationError("Invalid amount: must be a positive number")
    return round(value, 2)


def _signed(amount, operation: str) -> float:
    if operation not in OPERATIONS:
        raise ValidationError('Operation must be either "add" or "subtract"')
    value = _check_amount(amount)
    return value if operation == "add" else -value


def to_minor(amount) -> int:
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor(value: int) -> float:
    return value / 100


def balance_of(doc: dict) -> float:
    return from_minor(doc.get("balance_minor", 0))


def apply_delta(collection_name: str, user_id: str, delta: int, extra: Optional[dict] = None) -> Optional[dict]:
    """Add ``delta`` minor units to the active ledger row of ``user_id``.

    Returns the updated row, or None when no row matched (missing account,
    or a debit larger than the balance).
    """
    query = {"user_id": user_id, "is_active": True}
    if delta < 0:
        query["balance_minor"] = {"$gte": -delta}
    now = utcnow()
    update = {"$inc": {"balance_minor": delta}, "$set": {"updated_at": now, **(extra or {})}}
    return collection(collection_name).find_one_and_update(query, update, return_document=ReturnDocument.AFTER)


def _mutate(collection_name: str, user_id: str, delta: float, missing_exc, extra: Optional[dict] = None) -> dict:
    doc = apply_delta(collection_name, user_id, to_minor(delta), extra)
    if doc is None:
        if collection(collection_name).find_one({"user_id": user_id, "is_active": True}) is None:
            raise missing_exc
        raise InsufficientBalance()
    return doc


# ------------------------ WALLET ------------------------

def serialize_wallet(doc: dict) -> dict:
    return {
        "id": str(doc["_id"]),
        "user_id": doc["user_id"],
        "balance": balance_of(doc),
        "currency": doc.get("currency", WALLET_CURRENCY),
        "is_active": doc.get("is_active", True),
        "last_transaction_date": doc.get("last_transaction_date"),
    }


def create_wallet(user_id: str) -> dict:
    if collection("wallet").find_one({"user_id": user_id}):
        raise Conflict("Wallet already exists for this user")
    try:
        create_document("wallet", Wallet(user_id=user_id, currency=WALLET_CURRENCY, last_transaction_date=utcnow()))
    except DuplicateKeyError:
        raise Conflict("Wallet already exists for this user")
    return collection("wallet").find_one({"user_id": user_id})


def get_wallet(user_id: str) -> dict:
    wallet = collection("wallet").find_one({"user_id": user_id, "is_active": True})
    if not wallet:
        raise NotFound("Wallet not found")
    return wallet


def update_wallet_balance(user_id: str, amount, operation: str = "add") -> dict:
    delta = _signed(amount, operation)
    return _mutate("wallet", user_id, delta, NotFound("Wallet not found"),
                   extra={"last_transaction_date": utcnow()})


# ------------------------ QPAY ------------------------

def serialize_pin_account(doc: dict) -> dict:
    return {
        "id": str(doc["_id"]),
        "balance": balance_of(doc),
        "discount": doc.get("discount", 0),
        "cashback": round(doc.get("cashback", 0), 2),
        "last_login": doc.get("last_login"),
        "created_at": doc.get("created_at"),
    }


def check_pin_format(pin: Optional[str], label: str = "PIN"):
    if not pin or not PIN_RE.match(pin):
        raise InvalidPin(f"{label} must be exactly 4 digits")


def register_pin_account(user_id: str, pin: str) -> dict:
    check_pin_format(pin)
    if collection("qpay").find_one({"user_id": user_id}):
        raise DuplicateAccount()
    try:
        create_document("qpay", QPay(user_id=user_id, pin_hash=hash_password(pin), last_login=utcnow()))
    except DuplicateKeyError:
        raise DuplicateAccount()
    logger.info("QPay account opened for user %s", user_id)
    return collection("qpay").find_one({"user_id": user_id})


def find_pin_account(user_id: str) -> Optional[dict]:
    return collection("qpay").find_one({"user_id": user_id, "is_active": True})


def get_pin_account(user_id: str) -> dict:
    account = find_pin_account(user_id)
    if not account:
        raise AccountNotFound()
    return account


def verify_pin(user_id: str, pin: str) -> bool:
    account = get_pin_account(user_id)
    return verify_password(pin or "", account.get("pin_hash"))


def login_pin_account(user_id: str, pin: str) -> dict:
    check_pin_format(pin)
    if not verify_pin(user_id, pin):
        raise InvalidPin()
    return collection("qpay").find_one_and_update(
        {"user_id": user_id, "is_active": True},
        {"$set": {"last_login": utcnow(), "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )


def update_pin_balance(user_id: str, amount, operation: str = "add") -> dict:
    delta = _signed(amount, operation)
    return _mutate("qpay", user_id, delta, AccountNotFound())


def credit(user_id: str, amount: float) -> dict:
    return _mutate("qpay", user_id, round(amount, 2), AccountNotFound())


def debit(user_id: str, amount: float) -> dict:
    return _mutate("qpay", user_id, -round(amount, 2), AccountNotFound())


def update_discount(user: dict, discount) -> dict:
    require_role(user, "provider")
    if isinstance(discount, bool) or not isinstance(discount, (int, float)) or not 0 <= discount <= 100:
        raise ValidationError("Discount must be a number between 0 and 100")
    get_pin_account(user["id"])
    return collection("qpay").find_one_and_update(
        {"user_id": user["id"], "is_active": True},
        {"$set": {"discount": discount, "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )


def update_cashback(user_id: str, amount: float) -> dict:
    """Adjust cashback by a signed amount, never below zero."""
    account = get_pin_account(user_id)
    cashback = max(0.0, round(account.get("cashback", 0) + amount, 2))
    return collection("qpay").find_one_and_update(
        {"_id": account["_id"]},
        {"$set": {"cashback": cashback, "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )


def reset_pin(user: dict, password: str, new_pin: str):
    check_pin_format(new_pin, "New PIN")
    if not verify_password(password, user.get("password_hash")):
        raise InvalidCredentials("Invalid QuickFix password")
    account = get_pin_account(user["id"])
    collection("qpay").update_one(
        {"_id": account["_id"]},
        {"$set": {"pin_hash": hash_password(new_pin), "updated_at": utcnow()}},
    )


def get_provider_discount(provider_id: str) -> float:
    account = find_pin_account(provider_id)
    if not account:
        raise AccountNotFound("Provider QPay account not found")
    return account.get("discount", 0) or 0
