import os
import logging
from typing import Optional, Literal

from fastapi import FastAPI, Depends, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, EmailStr, Field
from pymongo.errors import PyMongoError

import bookings
import database
import favorites
import messaging
import money_requests
import receipts
import reviews
import transactions
import users
import wallets
from auth import get_user_by_token, require_role, revoke_token
from errors import Internal, ServiceError, ValidationError
from schemas import Booking, Conversation, Favorite, Message, MoneyRequest, QPay, Review, Transaction, User, Wallet

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("quickfix")

app = FastAPI(title="QuickFix Marketplace API", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --- Error translation ---
@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    where = ".".join(str(p) for p in first.get("loc", ()) if p not in ("body", "query", "path"))
    message = first.get("msg", "Invalid input")
    return JSONResponse(status_code=400, content=ValidationError(f"{where}: {message}" if where else message).to_dict())


@app.exception_handler(PyMongoError)
async def storage_error_handler(request: Request, exc: PyMongoError):
    logger.exception("Storage failure on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content=Internal().to_dict())


@app.on_event("startup")
def create_indexes():
    try:
        database.ensure_indexes()
    except PyMongoError as e:
        logger.error("Index creation failed: %s", e)


def ok(message: str, **data):
    return {"success": True, "message": message, **data}


# --- Health ---
@app.get("/")
def root():
    return {"name": "QuickFix Marketplace API", "status": "ok"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set",
        "connection_status": "Not Connected",
        "collections": []
    }
    try:
        if database.db is not None:
            response["database"] = "✅ Available"
            response["connection_status"] = "Connected"
            response["collections"] = database.db.list_collection_names()
    except PyMongoError as e:
        response["database"] = f"⚠️ Error {str(e)[:60]}"
    return response


# --- Auth ---
class RegisterPayload(BaseModel):
    name: str
    email: EmailStr
    phone: str
    password: str
    role: Literal["customer", "provider", "admin"] = "customer"
    occupation: Optional[str] = None  # for providers
    charge: Optional[float] = None  # for providers
    longitude: Optional[float] = None
    latitude: Optional[float] = None
    address: Optional[str] = None


@app.post("/api/auth/register", status_code=201)
def register(payload: RegisterPayload):
    user, token = users.register(**payload.model_dump())
    return ok("User registered successfully", token=token, user=users.serialize_user(user))


class LoginPayload(BaseModel):
    email: EmailStr
    password: str


@app.post("/api/auth/login")
def login(payload: LoginPayload):
    user, token = users.login(payload.email, payload.password)
    return ok("Login successful", token=token, user=users.serialize_user(user))


@app.post("/api/auth/logout")
def logout(user=Depends(get_user_by_token)):
    revoke_token(user["token"])
    return ok("Logged out")


@app.get("/api/auth/me")
def me(user=Depends(get_user_by_token)):
    return ok("Current user", user=users.serialize_user(user))


class ProfilePayload(BaseModel):
    name: Optional[str] = None
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    password: Optional[str] = None
    longitude: Optional[float] = None
    latitude: Optional[float] = None
    address: Optional[str] = None
    charge: Optional[float] = None


@app.put("/api/auth/update-profile")
def update_profile(payload: ProfilePayload, user=Depends(get_user_by_token)):
    updated = users.update_profile(user, payload.model_dump(exclude_none=True))
    return ok("Profile updated successfully", user=users.serialize_user(updated))


@app.get("/api/auth/providers")
def search_providers(query: Optional[str] = None):
    found = users.search_providers(query)
    return ok("Service providers found" if query else "All service providers", providers=found)


# --- Wallet ---
class BalancePayload(BaseModel):
    amount: float
    operation: Literal["add", "subtract"] = "add"


@app.post("/api/wallets/create", status_code=201)
def create_wallet(user=Depends(get_user_by_token)):
    wallet = wallets.create_wallet(user["id"])
    return ok("Wallet created successfully", wallet=wallets.serialize_wallet(wallet))


@app.get("/api/wallets/user")
def my_wallet(user=Depends(get_user_by_token)):
    return ok("Wallet retrieved", wallet=wallets.serialize_wallet(wallets.get_wallet(user["id"])))


@app.put("/api/wallets/balance")
def wallet_balance(payload: BalancePayload, user=Depends(get_user_by_token)):
    wallet = wallets.update_wallet_balance(user["id"], payload.amount, payload.operation)
    return ok("Wallet balance updated successfully", wallet=wallets.serialize_wallet(wallet))


# --- QPay ---
class PinPayload(BaseModel):
    pin: Optional[str] = None


@app.post("/api/qpay/register", status_code=201)
def qpay_register(payload: PinPayload, user=Depends(get_user_by_token)):
    account = wallets.register_pin_account(user["id"], payload.pin)
    return ok("QPay account created successfully", data=wallets.serialize_pin_account(account))


@app.post("/api/qpay/login")
def qpay_login(payload: PinPayload, user=Depends(get_user_by_token)):
    account = wallets.login_pin_account(user["id"], payload.pin)
    return ok("QPay login successful", data=wallets.serialize_pin_account(account))


@app.post("/api/qpay/verify-pin")
def qpay_verify_pin(payload: PinPayload, user=Depends(get_user_by_token)):
    return ok("PIN checked", data={"valid": wallets.verify_pin(user["id"], payload.pin)})


@app.get("/api/qpay/account")
def qpay_account(user=Depends(get_user_by_token)):
    account = wallets.get_pin_account(user["id"])
    return ok("QPay account details retrieved successfully", data=wallets.serialize_pin_account(account))


@app.put("/api/qpay/balance")
def qpay_balance(payload: BalancePayload, user=Depends(get_user_by_token)):
    delta = payload.amount if payload.operation == "add" else -payload.amount
    account = wallets.update_pin_balance(user["id"], payload.amount, payload.operation)
    return ok("Balance updated successfully", data={"new_balance": wallets.balance_of(account), "change_amount": delta})


class DiscountPayload(BaseModel):
    discount: float


@app.put("/api/qpay/discount")
def qpay_discount(payload: DiscountPayload, user=Depends(get_user_by_token)):
    account = wallets.update_discount(user, payload.discount)
    return ok("Discount updated successfully", data={"new_discount": account["discount"]})


class CashbackPayload(BaseModel):
    user_id: str
    amount: float


@app.put("/api/qpay/cashback")
def qpay_cashback(payload: CashbackPayload, user=Depends(get_user_by_token)):
    require_role(user, "admin")
    account = wallets.update_cashback(payload.user_id, payload.amount)
    return ok("Cashback updated successfully", data={"cashback": account["cashback"]})


class ResetPinPayload(BaseModel):
    password: str
    new_pin: Optional[str] = None


@app.put("/api/qpay/reset-pin")
def qpay_reset_pin(payload: ResetPinPayload, user=Depends(get_user_by_token)):
    wallets.reset_pin(user, payload.password, payload.new_pin)
    return ok("QPay PIN updated successfully")


@app.get("/api/qpay/provider-discount/{provider_id}")
def qpay_provider_discount(provider_id: str, user=Depends(get_user_by_token)):
    return ok("Provider discount retrieved successfully", data={"discount": wallets.get_provider_discount(provider_id)})


# --- Bookings ---
class CreateBookingPayload(BaseModel):
    provider_id: Optional[str] = None
    title: Optional[str] = Field(None, max_length=100)
    description: Optional[str] = Field(None, max_length=1000)
    booking_date: Optional[str] = None
    user_address: Optional[str] = None


@app.post("/api/bookings", status_code=201)
def create_booking(payload: CreateBookingPayload, user=Depends(get_user_by_token)):
    b = bookings.create_booking(user, **payload.model_dump())
    return ok("Booking created successfully", booking=bookings.serialize_booking(b))


@app.get("/api/bookings/user")
def my_bookings(user=Depends(get_user_by_token)):
    return ok("Bookings retrieved", bookings=bookings.list_customer_bookings(user))


@app.get("/api/bookings/service-provider")
def provider_bookings(user=Depends(get_user_by_token)):
    return ok("Bookings retrieved", bookings=bookings.list_provider_bookings(user))


class StatusPayload(BaseModel):
    status: str


@app.put("/api/bookings/{booking_id}/status")
def update_booking_status(booking_id: str, payload: StatusPayload, user=Depends(get_user_by_token)):
    b = bookings.update_status(user, booking_id, payload.status)
    return ok("Booking status updated successfully", booking=bookings.serialize_booking(b))


# --- Money requests ---
class MoneyRequestPayload(BaseModel):
    booking_id: Optional[str] = None
    amount: Optional[float] = None
    description: Optional[str] = None


@app.post("/api/money-requests", status_code=201)
def create_money_request(payload: MoneyRequestPayload, user=Depends(get_user_by_token)):
    req = money_requests.create_request(user, payload.booking_id, payload.amount, payload.description)
    return ok("Money request created successfully", data=money_requests.serialize_request(req))


@app.get("/api/money-requests/user")
def my_money_requests(user=Depends(get_user_by_token)):
    return ok("Money requests retrieved", data=money_requests.list_customer_requests(user))


@app.get("/api/money-requests/service-provider")
def provider_money_requests(user=Depends(get_user_by_token)):
    return ok("Money requests retrieved", data=money_requests.list_provider_requests(user))


@app.get("/api/money-requests/details/{request_id}")
def money_request_details(request_id: str, user=Depends(get_user_by_token)):
    req = money_requests.view_request(user, request_id)
    return ok("Money request retrieved", data=money_requests.serialize_request(req))


@app.put("/api/money-requests/{request_id}/paid")
def pay_money_request(request_id: str, user=Depends(get_user_by_token)):
    req = money_requests.mark_as_paid(user, request_id)
    return ok("Payment completed successfully", data=money_requests.serialize_request(req))


@app.put("/api/money-requests/{request_id}/cancel")
def cancel_money_request(request_id: str, user=Depends(get_user_by_token)):
    req = money_requests.cancel(user, request_id)
    return ok("Money request cancelled successfully", data=money_requests.serialize_request(req))


# --- Transactions ---
class SendMoneyPayload(BaseModel):
    receiver_id: Optional[str] = None
    amount: Optional[float] = None
    pin: Optional[str] = None
    booking_id: Optional[str] = None
    request_id: Optional[str] = None


@app.post("/api/transactions/send-money")
def send_money(payload: SendMoneyPayload, user=Depends(get_user_by_token)):
    result = transactions.send_money(user, **payload.model_dump())
    return ok("Payment sent successfully", data=result)


@app.get("/api/transactions/history")
def transaction_history(
    status: Optional[str] = None,
    type: Optional[str] = None,
    direction: Optional[Literal["sent", "received"]] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    user=Depends(get_user_by_token),
):
    history = transactions.get_history(user, status=status, type=type, direction=direction, page=page, limit=limit)
    return ok("Transaction history retrieved successfully", data=history)


@app.get("/api/transactions/{transaction_id}")
def transaction_details(transaction_id: str, user=Depends(get_user_by_token)):
    txn = transactions.get_for_party(user, transaction_id)
    return ok("Transaction details retrieved successfully", data=transactions.format_transaction(txn, user["id"]))


@app.get("/api/transactions/{transaction_id}/receipt")
def transaction_receipt(transaction_id: str, user=Depends(get_user_by_token)):
    txn = transactions.get_for_party(user, transaction_id)
    is_sender = txn["sender_id"] == user["id"]
    other_id = txn["receiver_id"] if is_sender else txn["sender_id"]
    other = users.public_profile(other_id) or {"name": "Unknown", "email": ""}
    pdf = receipts.render_receipt(txn, user, other, is_sender)
    return Response(
        content=pdf,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="receipt-{txn["transaction_id"]}.pdf"'},
    )


# --- Chat ---
class SendMessagePayload(BaseModel):
    receiver_id: Optional[str] = None
    content: Optional[str] = None
    message_type: str = "text"


@app.post("/api/chat/send", status_code=201)
def chat_send(payload: SendMessagePayload, user=Depends(get_user_by_token)):
    msg = messaging.send_message(user, payload.receiver_id, payload.content, payload.message_type)
    return ok("Message sent successfully", data=msg)


@app.get("/api/chat/conversation/{other_user_id}")
def chat_conversation(other_user_id: str, user=Depends(get_user_by_token)):
    return ok("Conversation retrieved successfully", data=messaging.get_conversation(user, other_user_id))


@app.get("/api/chat/conversations")
def chat_conversations(user=Depends(get_user_by_token)):
    return ok("Conversations retrieved successfully", data=messaging.get_user_conversations(user))


@app.get("/api/chat/recent")
def chat_recent(user=Depends(get_user_by_token)):
    return ok("Recent messages retrieved successfully", data=messaging.get_recent_conversations(user))


@app.put("/api/chat/read/{other_user_id}")
def chat_mark_read(other_user_id: str, user=Depends(get_user_by_token)):
    count = messaging.mark_as_read(user, other_user_id)
    return ok("Messages marked as read", data={"updated_count": count})


@app.put("/api/chat/mark-read/{conversation_id}")
def chat_mark_conversation_read(conversation_id: str, user=Depends(get_user_by_token)):
    count = messaging.mark_conversation_read(user, conversation_id)
    return ok("Conversation marked as read", data={"conversation_id": conversation_id, "updated_count": count})


@app.get("/api/chat/unread-count")
def chat_unread_count(user=Depends(get_user_by_token)):
    return ok("Unread count retrieved successfully", data={"unread_count": messaging.get_unread_count(user)})


@app.get("/api/chat/unread-messages")
def chat_unread_messages(user=Depends(get_user_by_token)):
    return ok("Unread messages retrieved successfully", data=messaging.get_unread_messages(user))


# --- Reviews ---
class ReviewPayload(BaseModel):
    provider_id: Optional[str] = None
    comment: Optional[str] = Field(None, max_length=1000)
    rating: Optional[int] = None
    parent_review_id: Optional[str] = None


class ReviewUpdatePayload(BaseModel):
    comment: Optional[str] = Field(None, max_length=1000)
    rating: Optional[int] = None


@app.get("/api/reviews/service-provider/{provider_id}")
def provider_reviews(provider_id: str):
    return ok("Reviews retrieved", reviews=reviews.list_provider_reviews(provider_id))


@app.get("/api/reviews/user")
def my_reviews(user=Depends(get_user_by_token)):
    return ok("Reviews retrieved", reviews=reviews.list_user_reviews(user))


@app.post("/api/reviews", status_code=201)
def create_review(payload: ReviewPayload, user=Depends(get_user_by_token)):
    r = reviews.create_review(user, **payload.model_dump())
    return ok("Review created", review=reviews.serialize_review(r))


@app.put("/api/reviews/{review_id}")
def update_review(review_id: str, payload: ReviewUpdatePayload, user=Depends(get_user_by_token)):
    r = reviews.update_review(user, review_id, payload.comment, payload.rating)
    return ok("Review updated", review=reviews.serialize_review(r))


@app.delete("/api/reviews/{review_id}")
def delete_review(review_id: str, user=Depends(get_user_by_token)):
    reviews.delete_review(user, review_id)
    return ok("Review deleted successfully")


@app.post("/api/reviews/{review_id}/like")
def like_review(review_id: str, user=Depends(get_user_by_token)):
    return ok("Reaction updated", review=reviews.serialize_review(reviews.like(user, review_id)))


@app.post("/api/reviews/{review_id}/dislike")
def dislike_review(review_id: str, user=Depends(get_user_by_token)):
    return ok("Reaction updated", review=reviews.serialize_review(reviews.dislike(user, review_id)))


# --- Favorites ---
class FavoritePayload(BaseModel):
    provider_id: str


@app.post("/api/favorites", status_code=201)
def add_favorite(payload: FavoritePayload, user=Depends(get_user_by_token)):
    fav = favorites.add(user, payload.provider_id)
    return ok("Service provider added to favorites", favorite=fav)


@app.delete("/api/favorites/{provider_id}")
def remove_favorite(provider_id: str, user=Depends(get_user_by_token)):
    favorites.remove(user, provider_id)
    return ok("Service provider removed from favorites")


@app.get("/api/favorites/user")
def my_favorites(user=Depends(get_user_by_token)):
    return ok("Favorites retrieved", favorites=favorites.list_for_user(user))


@app.get("/api/favorites/check/{provider_id}")
def check_favorite(provider_id: str, user=Depends(get_user_by_token)):
    return ok("Favorite status retrieved", is_favorite=favorites.is_favorite(user, provider_id))


@app.get("/api/favorites/service-provider/{provider_id}")
def provider_favorites(provider_id: str):
    found = favorites.list_for_provider(provider_id)
    return ok("Favorites retrieved", count=len(found), favorites=found)


# Simple schemas endpoint
@app.get("/schema")
def get_schema():
    return {
        "User": User.model_json_schema(),
        "Wallet": Wallet.model_json_schema(),
        "QPay": QPay.model_json_schema(),
        "Booking": Booking.model_json_schema(),
        "MoneyRequest": MoneyRequest.model_json_schema(),
        "Transaction": Transaction.model_json_schema(),
        "Message": Message.model_json_schema(),
        "Conversation": Conversation.model_json_schema(),
        "Review": Review.model_json_schema(),
        "Favorite": Favorite.model_json_schema(),
    }


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
