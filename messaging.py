"""
Direct messages between two users.

Messages of a pair share a conversation id derived from both user ids, and
each participant keeps an inbox summary row ("conversation" collection) with
the last message and their own unread counter.
"""
import logging
from typing import Optional

from database import collection, create_document, get_documents, oid, to_str_id, utcnow
from errors import Forbidden, NotFound, ValidationError
from schemas import Conversation, LastMessage, Message
from users import get_user, public_profile

logger = logging.getLogger(__name__)

MESSAGE_TYPES = ("text", "image", "file")
UNREAD_PREVIEW_LIMIT = 10


def conversation_id(user_a: str, user_b: str) -> str:
    first, second = sorted([str(user_a), str(user_b)])
    return f"{first}_{second}"


def _upsert_summary(owner_id: str, counterpart: dict, last: LastMessage, cid: str, unread_inc: int):
    now = utcnow()
    row = Conversation(
        owner_id=owner_id,
        counterpart_id=str(counterpart["_id"]),
        counterpart_name=counterpart.get("name", ""),
        counterpart_role=counterpart.get("role", "customer"),
        last_message=last,
        conversation_id=cid,
    ).model_dump(exclude={"owner_id", "counterpart_id", "unread_count"})
    collection("conversation").update_one(
        {"owner_id": owner_id, "counterpart_id": str(counterpart["_id"])},
        {
            "$set": {**row, "updated_at": now},
            "$inc": {"unread_count": unread_inc},
            "$setOnInsert": {"created_at": now},
        },
        upsert=True,
    )


def _serialize_message(doc: dict) -> dict:
    return to_str_id(dict(doc))


def send_message(sender: dict, receiver_id: Optional[str], content: Optional[str], message_type: str = "text") -> dict:
    if not receiver_id or not content or not content.strip():
        raise ValidationError("Receiver ID and content are required")
    if message_type not in MESSAGE_TYPES:
        raise ValidationError(f"Message type must be one of: {', '.join(MESSAGE_TYPES)}")
    if receiver_id == sender["id"]:
        raise ValidationError("Cannot send a message to yourself")
    receiver = get_user(receiver_id)
    if not receiver:
        raise NotFound("Receiver not found")

    cid = conversation_id(sender["id"], receiver_id)
    content = content.strip()
    mid = create_document("message", Message(
        sender_id=sender["id"],
        receiver_id=receiver_id,
        content=content,
        message_type=message_type,
        conversation_id=cid,
    ))

    last = LastMessage(content=content, sender_id=sender["id"], timestamp=utcnow())
    _upsert_summary(sender["id"], receiver, last, cid, 0)
    _upsert_summary(receiver_id, sender, last, cid, 1)

    out = _serialize_message(collection("message").find_one({"_id": oid(mid)}))
    out["sender"] = public_profile(sender["id"], fields=("name", "role"))
    out["receiver"] = public_profile(receiver_id, fields=("name", "role"))
    return out


def _mark_read(user_id: str, cid: str) -> int:
    result = collection("message").update_many(
        {"conversation_id": cid, "receiver_id": user_id, "is_read": False},
        {"$set": {"is_read": True}},
    )
    collection("conversation").update_one(
        {"owner_id": user_id, "conversation_id": cid},
        {"$set": {"unread_count": 0}},
    )
    return result.modified_count


def get_conversation(user: dict, other_user_id: str) -> dict:
    """Return the whole conversation and mark the caller's incoming messages read."""
    other = get_user(other_user_id)
    if not other:
        raise NotFound("User not found")
    cid = conversation_id(user["id"], other_user_id)
    messages = [
        _serialize_message(m)
        for m in collection("message").find({"conversation_id": cid}).sort([("created_at", 1), ("_id", 1)])
    ]
    if messages:
        _mark_read(user["id"], cid)
    return {
        "conversation_id": cid,
        "other_user": {"id": str(other["_id"]), "name": other.get("name"), "role": other.get("role")},
        "messages": messages,
    }


def get_user_conversations(user: dict):
    uid = user["id"]
    docs = collection("message").find({"$or": [{"sender_id": uid}, {"receiver_id": uid}]}) \
        .sort([("created_at", -1), ("_id", -1)])
    groups = {}
    for d in docs:
        cid = d["conversation_id"]
        group = groups.get(cid)
        if group is None:
            other_id = d["receiver_id"] if d["sender_id"] == uid else d["sender_id"]
            group = groups[cid] = {
                "conversation_id": cid,
                "other_user": public_profile(other_id, fields=("name", "role")),
                "last_message": {
                    "content": d["content"],
                    "created_at": d.get("created_at"),
                    "sender": "me" if d["sender_id"] == uid else "other",
                },
                "unread_count": 0,
            }
        if d["receiver_id"] == uid and not d.get("is_read"):
            group["unread_count"] += 1
    return list(groups.values())


def get_recent_conversations(user: dict):
    docs = collection("conversation").find({"owner_id": user["id"]}).sort("last_message.timestamp", -1)
    return [to_str_id(dict(d)) for d in docs]


def mark_as_read(user: dict, other_user_id: str) -> int:
    return _mark_read(user["id"], conversation_id(user["id"], other_user_id))


def mark_conversation_read(user: dict, cid: str) -> int:
    if user["id"] not in cid.split("_"):
        raise Forbidden("You are not part of this conversation")
    return _mark_read(user["id"], cid)


def get_unread_count(user: dict) -> int:
    return sum(d.get("unread_count", 0) for d in collection("conversation").find({"owner_id": user["id"]}))


def get_unread_messages(user: dict):
    docs = get_documents("message", {"receiver_id": user["id"], "is_read": False},
                         limit=UNREAD_PREVIEW_LIMIT, sort=[("created_at", -1), ("_id", -1)])
    out = []
    for d in docs:
        item = _serialize_message(d)
        item["sender"] = public_profile(d["sender_id"], fields=("name", "role"))
        out.append(item)
    return out
