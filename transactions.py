"""
Transaction ledger: QPay money transfers between two users.

A transfer is written in steps, each recoverable on its own:

1. the transaction row is inserted as ``pending`` under a fresh
   human-readable id (regenerated if the unique index rejects it),
2. the row moves to ``committing``,
3. the sender is debited with a conditional update,
4. the receiver is credited,
5. the row is marked ``completed``.

A failure in 3 deletes the row. A failure in 4 refunds the sender, then deletes
the row. If a compensating step fails too, the row is kept as ``failed`` and
the failure is logged so the ledger can be reconciled by hand.
"""
import os
import math
import logging
import secrets
from datetime import datetime
from typing import Any, Dict, Optional

from bson import ObjectId
from pymongo.errors import DuplicateKeyError, PyMongoError

import bookings
import money_requests
import wallets
from database import collection, create_document, oid, utcnow
from errors import (
    Conflict, Forbidden, InsufficientBalance, Internal, InvalidPin, InvalidState, NotFound,
    ServiceError, ValidationError,
)
from schemas import ServiceDetails, Transaction
from users import get_user, public_profile

logger = logging.getLogger(__name__)

TRANSACTION_CURRENCY = os.getenv("TRANSACTION_CURRENCY", "BDT")
TRANSACTION_ID_ATTEMPTS = int(os.getenv("TRANSACTION_ID_ATTEMPTS", 5))
PAYABLE_BOOKING_STATUSES = ("pending", "confirmed", "completed")


def generate_transaction_id(now: Optional[datetime] = None) -> str:
    now = now or datetime.now()
    return f"TXN{now:%y%m%d}{secrets.randbelow(10 ** 6):06d}"


def apply_discount(base_amount: float, discount: float) -> float:
    if discount <= 0:
        return base_amount
    if discount >= 100:
        return 0.0
    return round(max(0.0, base_amount - base_amount * discount / 100), 2)


def _insert_transaction(fields: Dict[str, Any]) -> ObjectId:
    for attempt in range(TRANSACTION_ID_ATTEMPTS):
        record = Transaction(transaction_id=generate_transaction_id(), **fields)
        try:
            return oid(create_document("transaction", record))
        except DuplicateKeyError:
            logger.warning("Transaction id %s already taken (attempt %d)", record.transaction_id, attempt + 1)
    raise Internal("Failed to create transaction. Please try again.")


def _set_status(txn_oid: ObjectId, status: str, **extra):
    collection("transaction").update_one(
        {"_id": txn_oid},
        {"$set": {"status": status, "updated_at": utcnow(), **extra}},
    )


def _discard(txn_oid: ObjectId, refund_to: Optional[str] = None, amount: float = 0.0):
    """Undo a partially applied transfer."""
    if refund_to:
        try:
            wallets.credit(refund_to, amount)
        except (ServiceError, PyMongoError) as e:
            logger.error("Refund of %.2f to %s failed for transaction %s: %s", amount, refund_to, txn_oid, e)
            try:
                _set_status(txn_oid, "failed", notes=f"Refund to sender failed: {e}")
            except PyMongoError as e2:
                logger.error("Could not mark transaction %s as failed: %s", txn_oid, e2)
            return
    try:
        collection("transaction").delete_one({"_id": txn_oid})
    except PyMongoError as e:
        logger.error("Compensating delete failed for transaction %s: %s", txn_oid, e)
        try:
            _set_status(txn_oid, "failed")
        except PyMongoError as e2:
            logger.error("Could not mark transaction %s as failed: %s", txn_oid, e2)


def _booking_context(booking_id: str, sender_id: str, receiver_id: str) -> dict:
    booking = bookings.get_booking(booking_id)
    if booking["customer_id"] != sender_id or booking["provider_id"] != receiver_id:
        raise Forbidden("Booking does not belong to this payer and receiver")
    status = booking.get("status", "pending")
    if status == "request":
        raise InvalidState("Booking has an open money request, pay it with the request id")
    if status not in PAYABLE_BOOKING_STATUSES:
        raise InvalidState(f"Cannot pay for a {status} booking")
    provider = get_user(receiver_id)
    return {
        "booking": booking,
        "details": ServiceDetails(
            service_name=booking.get("title"),
            service_provider=(provider or {}).get("name", "Unknown"),
            service_date=booking.get("booking_date"),
        ),
    }


def _request_context(request_id: str, sender_id: str, receiver_id: str) -> dict:
    request = money_requests.get_request(request_id)
    if request["customer_id"] != sender_id or request["provider_id"] != receiver_id:
        raise Forbidden("Money request does not belong to this payer and receiver")
    if request["status"] == "paid":
        raise Conflict("Money request is already paid")
    if request["status"] != "pending":
        raise InvalidState("Money request is not payable")
    booking = collection("booking").find_one({"_id": oid(request["booking_id"])}) or {}
    provider = get_user(receiver_id)
    return {
        "request": request,
        "details": ServiceDetails(
            service_name=booking.get("title", "Service"),
            service_provider=(provider or {}).get("name", "Unknown"),
            service_date=booking.get("booking_date"),
        ),
    }


def send_money(sender: dict, receiver_id: Optional[str], amount, pin: Optional[str],
               booking_id: Optional[str] = None, request_id: Optional[str] = None) -> dict:
    sender_id = sender["id"]
    if not receiver_id or amount is None or not pin:
        raise ValidationError("Receiver ID, amount, and PIN are required")
    try:
        amount = round(float(amount), 2)
    except (TypeError, ValueError):
        raise ValidationError("Amount must be a number")
    if not math.isfinite(amount) or amount <= 0:
        raise ValidationError("Amount must be greater than 0")
    if receiver_id == sender_id:
        raise ValidationError("Cannot send money to yourself")

    sender_account = wallets.find_pin_account(sender_id)
    if not sender_account:
        raise NotFound("Sender QPay account not found")
    receiver_account = wallets.find_pin_account(receiver_id)
    if not receiver_account:
        raise NotFound("Receiver QPay account not found")
    if not wallets.verify_pin(sender_id, pin):
        raise InvalidPin()

    # bookings are priced from their charge snapshot, requests from the requested amount
    discount = 0
    context: Dict[str, Any] = {"details": ServiceDetails()}
    if booking_id:
        context = _booking_context(booking_id, sender_id, receiver_id)
        base_amount = round(float(context["booking"].get("charge") or 0), 2)
        discount = receiver_account.get("discount", 0) or 0
        amount = apply_discount(base_amount, discount)
        if amount <= 0:
            raise ValidationError("Invalid amount after discount")
    elif request_id:
        context = _request_context(request_id, sender_id, receiver_id)
        amount = base_amount = round(float(context["request"]["amount"]), 2)
    else:
        base_amount = amount

    if wallets.balance_of(sender_account) < amount:
        raise InsufficientBalance()

    service_name = context["details"].service_name or "Service"
    description = (f"Payment for money request: {service_name}" if request_id
                   else f"Payment for service: {service_name}")
    txn_oid = _insert_transaction({
        "sender_id": sender_id,
        "receiver_id": receiver_id,
        "amount": amount,
        "base_amount": base_amount,
        "discount_applied": discount,
        "currency": TRANSACTION_CURRENCY,
        "description": description,
        "booking_id": booking_id,
        "request_id": request_id,
        "service_details": context["details"],
        "notes": f"Base amount: {base_amount:.2f}, Discount: {discount}%, Final amount: {amount:.2f}",
    })

    try:
        _set_status(txn_oid, "committing")
        sender_after = wallets.debit(sender_id, amount)
    except InsufficientBalance:
        _discard(txn_oid)
        raise
    except (ServiceError, PyMongoError) as e:
        logger.error("Debit of %s failed for transaction %s: %s", sender_id, txn_oid, e)
        _discard(txn_oid)
        raise Internal("Failed to update balances. Please try again.")

    try:
        receiver_after = wallets.credit(receiver_id, amount)
    except (ServiceError, PyMongoError) as e:
        logger.error("Credit of %s failed for transaction %s: %s", receiver_id, txn_oid, e)
        _discard(txn_oid, refund_to=sender_id, amount=amount)
        raise Internal("Failed to update balances. Please try again.")

    try:
        _set_status(txn_oid, "completed", completed_at=utcnow())
    except PyMongoError as e:
        logger.error("Could not mark transaction %s completed: %s", txn_oid, e)

    if booking_id:
        try:
            bookings.set_status(booking_id, "paid")
        except PyMongoError as e:
            logger.warning("Payment %s succeeded but booking %s was not marked paid: %s", txn_oid, booking_id, e)
    elif request_id:
        try:
            money_requests.mark_paid(request_id)
            bookings.set_status(context["request"]["booking_id"], "paid")
        except PyMongoError as e:
            logger.warning("Payment %s succeeded but request %s was not marked paid: %s", txn_oid, request_id, e)

    txn = collection("transaction").find_one({"_id": txn_oid})
    logger.info("Transaction %s: %s sent %.2f %s to %s", txn["transaction_id"], sender_id, amount,
                TRANSACTION_CURRENCY, receiver_id)
    return {
        "id": str(txn_oid),
        "transaction_id": txn["transaction_id"],
        "status": txn["status"],
        "amount": amount,
        "base_amount": base_amount,
        "discount_applied": discount,
        "new_balance": wallets.balance_of(sender_after),
        "receiver_balance": wallets.balance_of(receiver_after),
    }


def format_transaction(txn: dict, viewer_id: str) -> dict:
    is_sender = txn["sender_id"] == viewer_id
    other_id = txn["receiver_id"] if is_sender else txn["sender_id"]
    return {
        "id": str(txn["_id"]),
        "transaction_id": txn["transaction_id"],
        "direction": "sent" if is_sender else "received",
        "type": txn.get("type", "payment"),
        "amount": txn["amount"],
        "base_amount": txn.get("base_amount"),
        "discount_applied": txn.get("discount_applied", 0),
        "currency": txn.get("currency", TRANSACTION_CURRENCY),
        "status": txn["status"],
        "description": txn.get("description"),
        "other_party": public_profile(other_id, fields=("name", "email")),
        "booking_id": txn.get("booking_id"),
        "request_id": txn.get("request_id"),
        "service_details": txn.get("service_details"),
        "payment_method": txn.get("payment_method", "QPay"),
        "transaction_fee": txn.get("transaction_fee", 0),
        "notes": txn.get("notes"),
        "created_at": txn.get("created_at"),
        "completed_at": txn.get("completed_at"),
    }


def get_history(user: dict, status: Optional[str] = None, type: Optional[str] = None,
                direction: Optional[str] = None, page: int = 1, limit: int = 50) -> dict:
    uid = user["id"]
    if direction == "sent":
        query: Dict[str, Any] = {"sender_id": uid}
    elif direction == "received":
        query = {"receiver_id": uid}
    elif direction is None:
        query = {"$or": [{"sender_id": uid}, {"receiver_id": uid}]}
    else:
        raise ValidationError("Direction must be sent or received")
    if status:
        query["status"] = status
    if type:
        query["type"] = type
    if page < 1 or limit < 1:
        raise ValidationError("Page and limit must be positive")

    skip = (page - 1) * limit
    docs = list(
        collection("transaction").find(query)
        .sort([("created_at", -1), ("_id", -1)])
        .skip(skip)
        .limit(limit)
    )
    total = collection("transaction").count_documents(query)
    return {
        "transactions": [format_transaction(d, uid) for d in docs],
        "pagination": {
            "current_page": page,
            "total_pages": math.ceil(total / limit),
            "total_transactions": total,
            "has_next_page": skip + len(docs) < total,
            "has_prev_page": page > 1,
        },
    }


def find_transaction(ref: str) -> dict:
    """Look a transaction up by database id or by its generated id."""
    if ObjectId.is_valid(ref):
        txn = collection("transaction").find_one({"_id": ObjectId(ref)})
    else:
        txn = collection("transaction").find_one({"transaction_id": ref})
    if not txn:
        raise NotFound("Transaction not found")
    return txn


def get_for_party(user: dict, ref: str) -> dict:
    txn = find_transaction(ref)
    if user["id"] not in (txn["sender_id"], txn["receiver_id"]):
        raise Forbidden()
    return txn
