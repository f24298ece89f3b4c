from pymongo.errors import DuplicateKeyError

from database import collection, create_document, get_documents, oid
from errors import Conflict, NotFound, SelfFavoriteForbidden
from schemas import Favorite
from users import get_provider, public_profile

PROVIDER_FIELDS = ("name", "occupation", "phone", "longitude", "latitude")
NEWEST_FIRST = [("created_at", -1), ("_id", -1)]


def add(user: dict, provider_id: str) -> dict:
    if user["id"] == provider_id:
        raise SelfFavoriteForbidden()
    get_provider(provider_id)
    if is_favorite(user, provider_id):
        raise Conflict("Service provider is already in your favorites")
    try:
        fid = create_document("favorite", Favorite(user_id=user["id"], provider_id=provider_id))
    except DuplicateKeyError:
        raise Conflict("Service provider is already in your favorites")
    doc = collection("favorite").find_one({"_id": oid(fid)})
    return {
        "id": fid,
        "provider": public_profile(provider_id, fields=PROVIDER_FIELDS),
        "added_at": doc.get("created_at"),
    }


def remove(user: dict, provider_id: str):
    result = collection("favorite").delete_one({"user_id": user["id"], "provider_id": provider_id})
    if result.deleted_count == 0:
        raise NotFound("Service provider not found in favorites")


def is_favorite(user: dict, provider_id: str) -> bool:
    return collection("favorite").find_one({"user_id": user["id"], "provider_id": provider_id}) is not None


def list_for_user(user: dict):
    docs = get_documents("favorite", {"user_id": user["id"]}, sort=NEWEST_FIRST)
    return [
        {
            "id": str(d["_id"]),
            "provider": public_profile(d["provider_id"], fields=PROVIDER_FIELDS),
            "added_at": d.get("created_at"),
        }
        for d in docs
    ]


def list_for_provider(provider_id: str):
    docs = get_documents("favorite", {"provider_id": provider_id}, sort=NEWEST_FIRST)
    return [
        {
            "id": str(d["_id"]),
            "user": public_profile(d["user_id"], fields=("name",)),
            "added_at": d.get("created_at"),
        }
        for d in docs
    ]
