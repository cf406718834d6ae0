from datetime import datetime
from pymongo.errors import DuplicateKeyError

IDEMPOTENCY_TTL_SECONDS = 60 * 60 * 24  # 24 hours
IN_PROGRESS_STALE_SECONDS = 60 * 10     # 10 minutes

IN_PROGRESS_RESPONSE = {
    "message": "Request already in progress",
    "status": "processing",
}


async def reserve_idempotency_key(
    *,
    db,
    key: str,
    scope: str,
):
    """
    Reserve an idempotency key.
    Returns None when the caller owns the key and should do the work,
    the stored response for a completed key, or an in-progress marker.
    Failed and stale reservations are taken over in place.
    """
    now = datetime.utcnow()

    existing = await db.idempotency_keys.find_one({
        "key": key,
        "scope": scope,
    })

    if existing:
        if existing.get("status") == "completed":
            return existing.get("response")

        created_at = existing.get("created_at")
        age_seconds = (now - created_at).total_seconds() if created_at else 0
        if existing.get("status") == "reserved" and age_seconds <= IN_PROGRESS_STALE_SECONDS:
            return IN_PROGRESS_RESPONSE

        # take over only the exact state we looked at
        taken = await db.idempotency_keys.update_one(
            {"_id": existing["_id"], "status": existing.get("status"), "created_at": created_at},
            {"$set": {"status": "reserved", "response": None, "error": None, "created_at": now}},
        )
        return None if taken.modified_count else IN_PROGRESS_RESPONSE

    try:
        await db.idempotency_keys.insert_one({
            "key": key,
            "scope": scope,
            "status": "reserved",
            "response": None,
            "created_at": now,
        })
    except DuplicateKeyError:
        # Concurrent request won the race; return canonical response/state.
        concurrent = await db.idempotency_keys.find_one({"key": key, "scope": scope})
        if concurrent and concurrent.get("status") == "completed":
            return concurrent.get("response")
        return IN_PROGRESS_RESPONSE
    return None


async def complete_idempotency_key(
    *,
    db,
    key: str,
    scope: str,
    response: dict,
):
    await db.idempotency_keys.update_one(
        {"key": key, "scope": scope},
        {
            "$set": {
                "status": "completed",
                "response": response,
                "completed_at": datetime.utcnow(),
            }
        },
    )


async def fail_idempotency_key(
    *,
    db,
    key: str,
    scope: str,
    error: str,
):
    """
    Mark idempotency key as failed so a retry with the same key runs again.
    """
    await db.idempotency_keys.update_one(
        {"key": key, "scope": scope},
        {
            "$set": {
                "status": "failed",
                "error": error,
                "failed_at": datetime.utcnow(),
            }
        },
    )
