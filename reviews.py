"""
Provider reviews with threaded replies, reactions and edit history.
"""
import logging
from typing import Optional

from pymongo import ReturnDocument

from database import collection, create_document, oid, to_str_id, utcnow
from errors import Forbidden, NotFound, SelfReviewForbidden, ValidationError
from schemas import EditEntry, Review
from users import get_provider, public_profile

logger = logging.getLogger(__name__)


def _check_rating(rating: Optional[int]):
    if rating is not None and not 1 <= rating <= 5:
        raise ValidationError("Rating must be between 1 and 5")


def get_review(review_id: str) -> dict:
    doc = collection("review").find_one({"_id": oid(review_id)})
    if not doc:
        raise NotFound("Review not found")
    return doc


def serialize_review(doc: dict, with_replies: bool = False) -> dict:
    out = to_str_id(dict(doc))
    out["author"] = public_profile(doc["author_id"], fields=("name",))
    out["like_count"] = len(doc.get("likes", []))
    out["dislike_count"] = len(doc.get("dislikes", []))
    out["reply_count"] = len(doc.get("replies", []))
    if with_replies and doc.get("replies"):
        ids = [oid(r) for r in doc["replies"]]
        replies = collection("review").find({"_id": {"$in": ids}}).sort([("created_at", 1), ("_id", 1)])
        out["replies"] = [serialize_review(r) for r in replies]
    return out


def create_review(author: dict, provider_id: Optional[str], comment: Optional[str], rating: Optional[int] = None,
                  parent_review_id: Optional[str] = None) -> dict:
    if not provider_id:
        raise ValidationError("Service provider ID is required")
    if not comment or not comment.strip():
        raise ValidationError("Comment is required")
    if author["id"] == provider_id:
        raise SelfReviewForbidden()
    _check_rating(rating)
    get_provider(provider_id)
    parent = None
    if parent_review_id:
        parent = get_review(parent_review_id)
        if parent["provider_id"] != provider_id:
            raise ValidationError("Reply must target the same service provider")

    review = Review(
        author_id=author["id"],
        provider_id=provider_id,
        comment=comment.strip(),
        rating=rating if rating is not None else 5,
        parent_review_id=parent_review_id,
    )
    rid = create_document("review", review)
    if parent is not None:
        collection("review").update_one({"_id": parent["_id"]}, {"$push": {"replies": rid}})
    return get_review(rid)


def update_review(author: dict, review_id: str, comment: Optional[str], rating: Optional[int] = None) -> dict:
    review = get_review(review_id)
    if review["author_id"] != author["id"]:
        raise Forbidden("You can only edit your own reviews")
    if not comment or not comment.strip():
        raise ValidationError("Comment is required")
    _check_rating(rating)
    comment = comment.strip()

    update = {"$set": {"comment": comment, "updated_at": utcnow()}}
    if rating:
        update["$set"]["rating"] = rating
    if comment != review["comment"]:
        update["$set"]["is_edited"] = True
        update["$push"] = {"edit_history": EditEntry(comment=review["comment"], edited_at=utcnow()).model_dump()}
    return collection("review").find_one_and_update({"_id": review["_id"]}, update,
                                                    return_document=ReturnDocument.AFTER)


def delete_review(author: dict, review_id: str):
    review = get_review(review_id)
    if review["author_id"] != author["id"]:
        raise Forbidden("You can only delete your own reviews")
    if review.get("parent_review_id"):
        collection("review").update_one({"_id": oid(review["parent_review_id"])}, {"$pull": {"replies": review_id}})
    else:
        removed = collection("review").delete_many({"parent_review_id": review_id}).deleted_count
        if removed:
            logger.info("Deleted %d replies of review %s", removed, review_id)
    collection("review").delete_one({"_id": review["_id"]})


def _react(user: dict, review_id: str, field: str, opposite: str) -> dict:
    review = get_review(review_id)
    uid = user["id"]
    if uid in review.get(field, []):
        update = {"$pull": {field: uid}}
    else:
        update = {"$addToSet": {field: uid}, "$pull": {opposite: uid}}
    return collection("review").find_one_and_update({"_id": review["_id"]}, update,
                                                    return_document=ReturnDocument.AFTER)


def like(user: dict, review_id: str) -> dict:
    return _react(user, review_id, "likes", "dislikes")


def dislike(user: dict, review_id: str) -> dict:
    return _react(user, review_id, "dislikes", "likes")


def list_provider_reviews(provider_id: str):
    docs = collection("review").find({"provider_id": provider_id, "parent_review_id": None}) \
        .sort([("created_at", -1), ("_id", -1)])
    return [serialize_review(d, with_replies=True) for d in docs]


def list_user_reviews(user: dict):
    docs = collection("review").find({"author_id": user["id"]}) \
        .sort([("created_at", -1), ("_id", -1)])
    out = []
    for d in docs:
        item = serialize_review(d)
        item["provider"] = public_profile(d["provider_id"], fields=("name", "occupation"))
        out.append(item)
    return out
