import os
import hmac
import time
import hashlib
import secrets
import logging
from typing import Optional

from fastapi import Header

from database import collection, create_document, oid
from errors import Forbidden, Unauthorized
from schemas import Session

logger = logging.getLogger(__name__)

SALT = os.getenv("AUTH_SALT", "quickfix_salt")
SECRET = os.getenv("AUTH_SECRET", "quickfix_secret")
HASH_ITERATIONS = 100_000
# Registration and login hand out tokens with different lifetimes.
REGISTER_TOKEN_TTL_HOURS = int(os.getenv("REGISTER_TOKEN_TTL_HOURS", 24 * 7))
LOGIN_TOKEN_TTL_HOURS = int(os.getenv("LOGIN_TOKEN_TTL_HOURS", 24))


def hash_password(pw: str) -> str:
    salt = secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", (SALT + pw).encode(), salt.encode(), HASH_ITERATIONS).hex()
    return f"{salt}${digest}"


def verify_password(pw: str, stored: Optional[str]) -> bool:
    if not pw or not stored or "$" not in stored:
        return False
    salt, digest = stored.split("$", 1)
    candidate = hashlib.pbkdf2_hmac("sha256", (SALT + pw).encode(), salt.encode(), HASH_ITERATIONS).hex()
    return hmac.compare_digest(candidate, digest)


def _sign(payload: str) -> str:
    return hmac.new(SECRET.encode(), payload.encode(), hashlib.sha256).hexdigest()


def issue_token(user: dict, ttl_hours: int) -> str:
    """Create a signed ``user_id.role.nonce.expiry.signature`` session token."""
    user_id = str(user["_id"])
    expires_at = int(time.time() + ttl_hours * 3600)
    payload = f"{user_id}.{user['role']}.{secrets.token_hex(16)}.{expires_at}"
    token = f"{payload}.{_sign(payload)}"
    create_document("token", Session(
        token=token,
        user_id=user_id,
        role=user["role"],
        expires_at=expires_at,
    ))
    return token


def revoke_token(token: str):
    collection("token").delete_one({"token": token})


def _bearer(authorization: Optional[str]) -> str:
    if not authorization:
        raise Unauthorized("Access token required")
    token = authorization.replace("Bearer ", "").strip()
    if not token:
        raise Unauthorized("Access token required")
    return token


def verify_token(token: str) -> dict:
    """Check signature, expiry and session row; return the ``{user_id, role}`` claims."""
    payload, _, signature = token.rpartition(".")
    parts = payload.split(".")
    if len(parts) != 4 or not hmac.compare_digest(_sign(payload).encode(), signature.encode()):
        raise Unauthorized("Invalid token")
    user_id, role, _, expiry = parts
    try:
        expires_at = int(expiry)
    except ValueError:
        raise Unauthorized("Invalid token")
    if expires_at < time.time():
        raise Unauthorized("Token expired")
    session = collection("token").find_one({"token": token})
    if not session or session["user_id"] != user_id:
        raise Unauthorized("Invalid token")
    return {"user_id": user_id, "role": role}


def get_user_by_token(authorization: Optional[str] = Header(None)) -> dict:
    token = _bearer(authorization)
    claims = verify_token(token)
    user = collection("user").find_one({"_id": oid(claims["user_id"])})
    if not user:
        raise Unauthorized("Unknown user")
    user["id"] = str(user["_id"])
    user["token"] = token
    return user


def require_role(user: dict, *roles: str):
    if user.get("role") not in roles:
        logger.info("User %s with role %s denied, needs one of %s", user.get("id"), user.get("role"), roles)
        raise Forbidden(f"Only {' or '.join(roles)} accounts can do this")
