"""
Booking lifecycle.

    pending -> confirmed -> completed -> request -> paid
    pending | confirmed -> cancelled

Providers drive pending/confirmed/completed/cancelled through update_status.
``request`` and ``paid`` are only set by the money-request and payment flows.
"""
import logging
from datetime import datetime, timezone
from typing import Optional

from pymongo import ReturnDocument

from auth import require_role
from database import collection, create_document, oid, to_str_id, utcnow
from errors import Forbidden, InvalidDate, InvalidState, NotFound, SelfBookingForbidden, ValidationError
from schemas import Booking
from users import get_provider, public_profile

logger = logging.getLogger(__name__)

PROVIDER_TRANSITIONS = {
    "pending": {"confirmed", "completed", "cancelled"},
    "confirmed": {"completed", "cancelled"},
}
STATUSES = ("pending", "confirmed", "completed", "cancelled", "request", "paid")


def parse_booking_date(value) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
        except ValueError:
            raise InvalidDate("Invalid date format")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def get_booking(booking_id: str) -> dict:
    booking = collection("booking").find_one({"_id": oid(booking_id)})
    if not booking:
        raise NotFound("Booking not found")
    return booking


def serialize_booking(doc: dict, with_customer: bool = True, with_provider: bool = True) -> dict:
    out = to_str_id(dict(doc))
    if with_customer:
        out["customer"] = public_profile(doc["customer_id"])
    if with_provider:
        out["provider"] = public_profile(doc["provider_id"], fields=("name", "email", "phone", "occupation"))
    return out


def create_booking(customer: dict, provider_id: Optional[str], title: Optional[str],
                   description: Optional[str], booking_date, user_address: Optional[str] = None) -> dict:
    if not provider_id or not title or not description or not booking_date:
        raise ValidationError("All fields are required: provider_id, title, description, booking_date")
    provider = get_provider(provider_id)
    if customer["id"] == str(provider["_id"]):
        raise SelfBookingForbidden()
    when = parse_booking_date(booking_date)
    if when < datetime.now(timezone.utc):
        raise InvalidDate("Booking date cannot be in the past")

    booking = Booking(
        customer_id=customer["id"],
        provider_id=str(provider["_id"]),
        title=title.strip(),
        description=description.strip(),
        booking_date=when,
        charge=provider.get("charge") or 0.0,
        user_address=user_address,
    )
    bid = create_document("booking", booking)
    logger.info("Booking %s created by %s for provider %s", bid, customer["id"], provider_id)
    return get_booking(bid)


def list_customer_bookings(customer: dict):
    docs = collection("booking").find({"customer_id": customer["id"]}) \
        .sort([("created_at", -1), ("_id", -1)])
    return [serialize_booking(d, with_customer=False) for d in docs]


def list_provider_bookings(provider: dict):
    require_role(provider, "provider")
    docs = collection("booking").find({"provider_id": provider["id"]}) \
        .sort([("created_at", -1), ("_id", -1)])
    return [serialize_booking(d, with_provider=False) for d in docs]


def update_status(provider: dict, booking_id: str, status: str) -> dict:
    if status not in STATUSES:
        raise ValidationError(f"Invalid status. Must be one of: {', '.join(STATUSES)}")
    booking = get_booking(booking_id)
    if booking["provider_id"] != provider["id"]:
        raise Forbidden("Access denied. You can only update your own bookings.")
    current = booking.get("status", "pending")
    if status not in PROVIDER_TRANSITIONS.get(current, set()):
        raise InvalidState(f"Cannot move booking from {current} to {status}")
    updated = collection("booking").find_one_and_update(
        {"_id": booking["_id"], "status": current},
        {"$set": {"status": status, "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise InvalidState("Booking status changed concurrently, reload and retry")
    return updated


def set_status(booking_id: str, status: str):
    """Status change driven by the payment flows, no ownership checks."""
    collection("booking").update_one({"_id": oid(booking_id)}, {"$set": {"status": status, "updated_at": utcnow()}})
