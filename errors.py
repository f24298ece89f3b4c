"""
Error taxonomy for the marketplace API.

Every failure a caller can see is a ServiceError subclass with a stable
``kind``. The HTTP layer turns them into
``{"success": false, "kind": ..., "message": ...}`` responses.
"""
from typing import Optional


class ServiceError(Exception):
    kind = "Internal"
    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"success": False, "kind": self.kind, "message": self.message}


class ValidationError(ServiceError):
    kind = "ValidationError"
    status_code = 400
    default_message = "Invalid input"


class InvalidDate(ValidationError):
    kind = "InvalidDate"
    default_message = "Invalid date"


class NotFound(ServiceError):
    kind = "NotFound"
    status_code = 404
    default_message = "Not found"


class AccountNotFound(NotFound):
    kind = "AccountNotFound"
    default_message = "QPay account not found"


class Forbidden(ServiceError):
    kind = "Forbidden"
    status_code = 403
    default_message = "Access denied"


class SelfBookingForbidden(ServiceError):
    kind = "SelfBookingForbidden"
    status_code = 400
    default_message = "Users cannot book themselves"


class SelfReviewForbidden(ServiceError):
    kind = "SelfReviewForbidden"
    status_code = 400
    default_message = "You cannot review yourself"


class SelfFavoriteForbidden(ServiceError):
    kind = "SelfFavoriteForbidden"
    status_code = 400
    default_message = "You cannot add yourself to favorites"


class Conflict(ServiceError):
    kind = "Conflict"
    status_code = 409
    default_message = "Conflict"


class DuplicateAccount(Conflict):
    kind = "DuplicateAccount"
    default_message = "User already has a QPay account"


class InvalidState(ServiceError):
    kind = "InvalidState"
    status_code = 409
    default_message = "Operation not allowed in the current state"


class InsufficientBalance(ServiceError):
    kind = "InsufficientBalance"
    status_code = 400
    default_message = "Insufficient balance"


class InvalidPin(ServiceError):
    kind = "InvalidPin"
    status_code = 401
    default_message = "Invalid PIN"


class InvalidCredentials(ServiceError):
    kind = "InvalidCredentials"
    status_code = 401
    default_message = "Invalid credentials"


class Unauthorized(ServiceError):
    kind = "Unauthorized"
    status_code = 401
    default_message = "Access token required"


class Internal(ServiceError):
    pass
