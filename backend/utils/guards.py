from bson import ObjectId
from bson.errors import InvalidId

from config.constants import ROLE_ADMIN, ROLE_BUYER, ROLE_SELLER
from utils.errors import NotAuthorizedError, ValidationError

# -------------------------------
# ObjectId Guard
# -------------------------------

def parse_object_id(value, name: str = "id") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        raise ValidationError(f"Invalid {name}")


def ref_query(ref, *, field: str) -> dict:
    """
    Documents are addressable by storage key or by their human-readable id.
    """
    if isinstance(ref, ObjectId):
        return {"_id": ref}
    if isinstance(ref, str) and ObjectId.is_valid(ref):
        return {"$or": [{"_id": ObjectId(ref)}, {field: ref}]}
    if not ref:
        raise ValidationError(f"Invalid {field}")
    return {field: str(ref)}


# -------------------------------
# Ownership Guards
# -------------------------------

def is_admin(actor: dict | None) -> bool:
    return bool(actor) and actor.get("role") == ROLE_ADMIN


def assert_order_visible(order: dict, actor: dict) -> None:
    role = actor.get("role")
    if role == ROLE_ADMIN:
        return
    if role == ROLE_BUYER and order.get("buyer_id") == actor.get("_id"):
        return
    if role == ROLE_SELLER and order.get("seller_id") == actor.get("_id"):
        return
    raise NotAuthorizedError("Not authorized to view this order")


def assert_payout_owner(payout: dict, actor: dict | None) -> None:
    if actor is None or is_admin(actor):
        return
    if actor.get("role") == ROLE_SELLER and payout.get("seller_id") == actor.get("_id"):
        return
    raise NotAuthorizedError("Not authorized to manage this payout")
