"""
Identity store: registration, login, profile updates and provider search.
"""
import re
import logging
from typing import Any, Dict, Optional

from pymongo.errors import DuplicateKeyError, PyMongoError

import wallets
from auth import LOGIN_TOKEN_TTL_HOURS, REGISTER_TOKEN_TTL_HOURS, hash_password, issue_token, verify_password
from database import collection, create_document, oid, utcnow
from errors import Conflict, InvalidCredentials, NotFound, ServiceError, ValidationError
from schemas import OCCUPATIONS, User

logger = logging.getLogger(__name__)

PUBLIC_FIELDS = ("name", "email", "phone", "role", "occupation", "charge", "longitude", "latitude", "address")


def serialize_user(doc: dict) -> dict:
    out = {"id": str(doc["_id"])}
    for f in PUBLIC_FIELDS:
        out[f] = doc.get(f)
    return out


def get_user(user_id: str) -> Optional[dict]:
    try:
        return collection("user").find_one({"_id": oid(user_id)})
    except ValidationError:
        return None


def public_profile(user_id: str, fields=("name", "email", "phone")) -> Optional[dict]:
    doc = get_user(user_id)
    if not doc:
        return None
    out = {"id": str(doc["_id"])}
    for f in fields:
        out[f] = doc.get(f)
    return out


def get_provider(provider_id: str) -> dict:
    provider = get_user(provider_id)
    if not provider or provider.get("role") != "provider":
        raise NotFound("Service provider not found")
    return provider


def _validate_provider_fields(occupation: Optional[str], charge: Optional[float]):
    if not occupation:
        raise ValidationError("Occupation is required for service providers")
    if occupation not in OCCUPATIONS:
        raise ValidationError(f"Unknown occupation: {occupation}")
    if charge is None:
        raise ValidationError("Charge is required for service providers")
    if charge < 0:
        raise ValidationError("Charge must be a non-negative number")


def register(name: str, email: str, phone: str, role: str, password: str,
             occupation: Optional[str] = None, charge: Optional[float] = None,
             longitude: Optional[float] = None, latitude: Optional[float] = None,
             address: Optional[str] = None):
    """Create a user, provision their wallet and return ``(user, token)``."""
    if not name or not phone or not password:
        raise ValidationError("Name, phone and password are required")
    email = email.strip().lower()
    if collection("user").find_one({"email": email}):
        raise Conflict("User already exists with this email")

    data: Dict[str, Any] = {
        "name": name.strip(),
        "email": email,
        "phone": phone.strip(),
        "role": role,
        "password_hash": hash_password(password),
        "address": address,
    }
    if role == "provider":
        _validate_provider_fields(occupation, charge)
        data.update(
            occupation=occupation,
            charge=float(charge),
            longitude=longitude if longitude is not None else 0.0,
            latitude=latitude if latitude is not None else 0.0,
        )
    else:
        data.update(longitude=longitude, latitude=latitude)

    try:
        user_id = create_document("user", User(**data))
    except DuplicateKeyError:
        raise Conflict("User already exists with this email")

    try:
        wallets.create_wallet(user_id)
    except (ServiceError, PyMongoError) as e:
        logger.warning("Wallet provisioning failed for user %s: %s", user_id, e)

    user = collection("user").find_one({"_id": oid(user_id)})
    logger.info("Registered %s %s", role, user_id)
    return user, issue_token(user, REGISTER_TOKEN_TTL_HOURS)


def login(email: str, password: str):
    user = collection("user").find_one({"email": email.strip().lower()})
    if not user or not verify_password(password, user.get("password_hash")):
        raise InvalidCredentials()
    return user, issue_token(user, LOGIN_TOKEN_TTL_HOURS)


def update_profile(user: dict, fields: Dict[str, Any]) -> dict:
    """Merge the provided fields into the user's profile."""
    updates: Dict[str, Any] = {}
    email = fields.get("email")
    if email:
        email = email.strip().lower()
        if email != user["email"]:
            if collection("user").find_one({"email": email}):
                raise Conflict("Email already exists")
            updates["email"] = email
    for f in ("name", "phone"):
        if fields.get(f):
            updates[f] = fields[f].strip()
    if user.get("role") == "provider":
        for f in ("longitude", "latitude", "address"):
            if fields.get(f) is not None:
                updates[f] = fields[f]
        if fields.get("charge") is not None:
            if fields["charge"] < 0:
                raise ValidationError("Charge must be a non-negative number")
            updates["charge"] = float(fields["charge"])
    if fields.get("password"):
        updates["password_hash"] = hash_password(fields["password"])

    if updates:
        updates["updated_at"] = utcnow()
        try:
            collection("user").update_one({"_id": user["_id"]}, {"$set": updates})
        except DuplicateKeyError:
            raise Conflict("Email already exists")
    return collection("user").find_one({"_id": user["_id"]})


def search_providers(query: Optional[str] = None):
    search: Dict[str, Any] = {"role": "provider"}
    if query and len(query.strip()) >= 2:
        pattern = re.escape(query.strip())
        search["$or"] = [
            {"name": {"$regex": pattern, "$options": "i"}},
            {"occupation": {"$regex": pattern, "$options": "i"}},
        ]
    docs = collection("user").find(search).sort("name", 1)
    return [
        {
            "id": str(d["_id"]),
            "name": d.get("name"),
            "occupation": d.get("occupation"),
            "charge": d.get("charge"),
            "longitude": d.get("longitude"),
            "latitude": d.get("latitude"),
            "phone": d.get("phone"),
        }
        for d in docs
    ]
