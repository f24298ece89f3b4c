"""
Database helpers

MongoDB access shared by every resource module. Reads DATABASE_URL and
DATABASE_NAME from the environment; ``db`` stays None when they are not set.
"""
import os
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient

from errors import Internal, ValidationError

logger = logging.getLogger(__name__)

_client = None
db = None

database_url = os.getenv("DATABASE_URL")
database_name = os.getenv("DATABASE_NAME")

if database_url and database_name:
    _client = MongoClient(database_url)
    db = _client[database_name]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def collection(name: str):
    if db is None:
        raise Internal("Database not available. Check DATABASE_URL and DATABASE_NAME environment variables.")
    return db[name]


def create_document(collection_name: str, data: Union[BaseModel, dict]) -> str:
    """Insert a single document with timestamps and return its id as a string"""
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = data.copy()

    now = utcnow()
    data_dict["created_at"] = now
    data_dict["updated_at"] = now

    result = collection(collection_name).insert_one(data_dict)
    return str(result.inserted_id)


def get_documents(collection_name: str, filter_dict: Optional[dict] = None, limit: Optional[int] = None,
                  sort: Optional[list] = None) -> List[Dict[str, Any]]:
    cursor = collection(collection_name).find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def oid(val: Any) -> ObjectId:
    if isinstance(val, ObjectId):
        return val
    try:
        return ObjectId(str(val))
    except Exception:
        raise ValidationError("Invalid id format")


def to_str_id(doc):
    if not doc:
        return doc
    doc["id"] = str(doc.get("_id"))
    doc.pop("_id", None)
    return doc


def ensure_indexes():
    """Create the uniqueness constraints the resource modules rely on."""
    if db is None:
        logger.warning("Skipping index creation, database not configured")
        return
    db["user"].create_index("email", unique=True)
    db["wallet"].create_index("user_id", unique=True)
    db["qpay"].create_index("user_id", unique=True)
    db["transaction"].create_index("transaction_id", unique=True)
    db["transaction"].create_index([("sender_id", ASCENDING), ("created_at", -1)])
    db["transaction"].create_index([("receiver_id", ASCENDING), ("created_at", -1)])
    db["favorite"].create_index([("user_id", ASCENDING), ("provider_id", ASCENDING)], unique=True)
    db["conversation"].create_index([("owner_id", ASCENDING), ("counterpart_id", ASCENDING)], unique=True)
    db["message"].create_index([("conversation_id", ASCENDING), ("created_at", -1)])
    db["token"].create_index("token", unique=True)
