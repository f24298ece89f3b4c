"""
Provider-issued payment requests against completed bookings.
"""
import logging
from typing import Optional

from pymongo.errors import PyMongoError

import bookings
from auth import require_role
from database import collection, create_document, oid, to_str_id, utcnow
from errors import Conflict, Forbidden, InvalidState, NotFound, ValidationError
from schemas import MoneyRequest
from users import public_profile

logger = logging.getLogger(__name__)

OUTSTANDING = ("pending", "paid")


def get_request(request_id: str) -> dict:
    doc = collection("moneyrequest").find_one({"_id": oid(request_id)})
    if not doc:
        raise NotFound("Money request not found")
    return doc


def serialize_request(doc: dict) -> dict:
    out = to_str_id(dict(doc))
    booking = collection("booking").find_one({"_id": oid(doc["booking_id"])})
    out["booking"] = {
        "id": doc["booking_id"],
        "title": booking.get("title"),
        "description": booking.get("description"),
        "booking_date": booking.get("booking_date"),
    } if booking else None
    out["provider"] = public_profile(doc["provider_id"], fields=("name", "occupation"))
    out["customer"] = public_profile(doc["customer_id"], fields=("name", "email"))
    return out


def create_request(provider: dict, booking_id: Optional[str], amount, description: Optional[str] = None) -> dict:
    require_role(provider, "provider")
    try:
        amount = float(amount)
    except (TypeError, ValueError):
        raise ValidationError("Booking ID and valid amount are required")
    if not booking_id or amount <= 0:
        raise ValidationError("Booking ID and valid amount are required")

    booking = bookings.get_booking(booking_id)
    if booking["provider_id"] != provider["id"]:
        raise Forbidden("You can only request money for your own bookings")
    if booking.get("status") != "completed":
        raise InvalidState("Can only request money for completed bookings")
    if collection("moneyrequest").find_one({"booking_id": booking_id, "status": {"$in": list(OUTSTANDING)}}):
        raise Conflict("Money request already exists for this booking")

    request = MoneyRequest(
        booking_id=booking_id,
        provider_id=provider["id"],
        customer_id=booking["customer_id"],
        amount=round(amount, 2),
        description=description or f"Payment request for {booking.get('title')}",
        request_date=utcnow(),
    )
    rid = create_document("moneyrequest", request)
    bookings.set_status(booking_id, "request")
    logger.info("Money request %s for booking %s, amount %.2f", rid, booking_id, request.amount)
    return get_request(rid)


def list_customer_requests(customer: dict):
    docs = collection("moneyrequest").find({"customer_id": customer["id"], "status": "pending"}) \
        .sort([("request_date", -1), ("_id", -1)])
    return [serialize_request(d) for d in docs]


def list_provider_requests(provider: dict):
    docs = collection("moneyrequest").find({"provider_id": provider["id"]}) \
        .sort([("request_date", -1), ("_id", -1)])
    return [serialize_request(d) for d in docs]


def view_request(user: dict, request_id: str) -> dict:
    doc = get_request(request_id)
    if user["id"] not in (doc["customer_id"], doc["provider_id"]):
        raise Forbidden("You can only view your own money requests")
    return doc


def mark_paid(request_id: str):
    """Flip a request and its booking to paid. Shared with the payment flow."""
    now = utcnow()
    collection("moneyrequest").update_one(
        {"_id": oid(request_id)},
        {"$set": {"status": "paid", "paid_date": now, "updated_at": now}},
    )


def mark_as_paid(customer: dict, request_id: str) -> dict:
    doc = get_request(request_id)
    if doc["customer_id"] != customer["id"]:
        raise Forbidden("You can only pay for your own money requests")
    if doc["status"] == "paid":
        raise Conflict("Money request is already paid")
    if doc["status"] == "cancelled":
        raise InvalidState("Money request was cancelled")
    mark_paid(request_id)
    bookings.set_status(doc["booking_id"], "paid")
    return get_request(request_id)


def cancel(provider: dict, request_id: str) -> dict:
    doc = get_request(request_id)
    if doc["provider_id"] != provider["id"]:
        raise Forbidden("You can only cancel your own money requests")
    if doc["status"] == "paid":
        raise Conflict("Cannot cancel a paid money request")
    if doc["status"] == "cancelled":
        raise Conflict("Money request is already cancelled")
    collection("moneyrequest").update_one(
        {"_id": doc["_id"]},
        {"$set": {"status": "cancelled", "updated_at": utcnow()}},
    )
    try:
        bookings.set_status(doc["booking_id"], "completed")
    except PyMongoError as e:
        logger.warning("Could not revert booking %s after cancelling request %s: %s", doc["booking_id"], request_id, e)
    return get_request(request_id)
