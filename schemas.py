"""
Database Schemas for the QuickFix service marketplace

Each Pydantic model corresponds to a MongoDB collection (lowercased class name).
These are used for validation before inserting via database helpers.
"""
from __future__ import annotations
from datetime import datetime
from typing import Optional, List, Literal
from pydantic import BaseModel, Field, EmailStr

Role = Literal["customer", "provider", "admin"]
BookingStatus = Literal["pending", "confirmed", "completed", "cancelled", "request", "paid"]
MoneyRequestStatus = Literal["pending", "paid", "cancelled"]
TransactionStatus = Literal["pending", "committing", "completed", "failed", "cancelled"]
TransactionType = Literal["payment", "refund", "transfer"]
MessageType = Literal["text", "image", "file"]

OCCUPATIONS = (
    "Plumber",
    "Electrician",
    "Painter",
    "Carpenter",
    "AC/Fridge/Washer Repair Technician",
    "Cleaner",
    "Mechanic",
    "Bike Repairer",
    "General Handyman",
    "Internet Technician",
    "Pest Controller",
)


# Identity
class User(BaseModel):
    name: str = Field(..., description="Full name")
    email: EmailStr
    phone: str
    role: Role = "customer"
    password_hash: str
    occupation: Optional[str] = None  # providers only
    charge: Optional[float] = Field(None, ge=0)  # providers only
    longitude: Optional[float] = None
    latitude: Optional[float] = None
    address: Optional[str] = None


# Ledgers
class Wallet(BaseModel):
    user_id: str
    balance_minor: int = Field(0, ge=0)  # hundredths of the currency
    currency: Literal["USD", "EUR", "GBP"] = "USD"
    is_active: bool = True
    last_transaction_date: Optional[datetime] = None


class QPay(BaseModel):
    user_id: str
    pin_hash: str
    balance_minor: int = Field(0, ge=0)  # hundredths of the currency
    discount: float = Field(0, ge=0, le=100)
    cashback: float = Field(0.0, ge=0)
    is_active: bool = True
    last_login: Optional[datetime] = None


# Bookings and payments
class Booking(BaseModel):
    customer_id: str
    provider_id: str
    title: str = Field(..., max_length=100)
    description: str = Field(..., max_length=1000)
    booking_date: datetime
    status: BookingStatus = "pending"
    charge: float = Field(0.0, ge=0)
    user_address: Optional[str] = None


class MoneyRequest(BaseModel):
    booking_id: str
    provider_id: str
    customer_id: str
    amount: float = Field(..., gt=0)
    status: MoneyRequestStatus = "pending"
    description: Optional[str] = None
    request_date: datetime
    paid_date: Optional[datetime] = None


class ServiceDetails(BaseModel):
    service_name: Optional[str] = None
    service_provider: Optional[str] = None
    service_date: Optional[datetime] = None


class Transaction(BaseModel):
    transaction_id: str
    sender_id: str
    receiver_id: str
    amount: float = Field(..., gt=0)
    base_amount: float = Field(..., ge=0)
    discount_applied: float = Field(0, ge=0, le=100)
    currency: str = "BDT"
    type: TransactionType = "payment"
    status: TransactionStatus = "pending"
    description: str
    booking_id: Optional[str] = None
    request_id: Optional[str] = None
    service_details: ServiceDetails = Field(default_factory=ServiceDetails)
    payment_method: str = "QPay"
    transaction_fee: float = 0
    notes: Optional[str] = None
    completed_at: Optional[datetime] = None


# Messaging
class Message(BaseModel):
    sender_id: str
    receiver_id: str
    content: str
    message_type: MessageType = "text"
    conversation_id: str
    is_read: bool = False


class LastMessage(BaseModel):
    content: str
    sender_id: str
    timestamp: datetime


class Conversation(BaseModel):
    """Inbox summary row, one per (owner, counterpart) pair."""
    owner_id: str
    counterpart_id: str
    counterpart_name: str
    counterpart_role: Role
    last_message: LastMessage
    unread_count: int = Field(0, ge=0)
    conversation_id: str


# Reviews and favorites
class EditEntry(BaseModel):
    comment: str
    edited_at: datetime


class Review(BaseModel):
    author_id: str
    provider_id: str
    comment: str = Field(..., max_length=1000)
    rating: int = Field(5, ge=1, le=5)
    likes: List[str] = []
    dislikes: List[str] = []
    parent_review_id: Optional[str] = None
    replies: List[str] = []
    is_edited: bool = False
    edit_history: List[EditEntry] = []


class Favorite(BaseModel):
    user_id: str
    provider_id: str


# Auth sessions
class Session(BaseModel):
    token: str
    user_id: str
    role: Role
    expires_at: float
