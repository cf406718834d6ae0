import logging
from datetime import datetime

from bson import ObjectId

logger = logging.getLogger(__name__)


async def record_order_event(
    db,
    *,
    order_id,
    event: str,
    actor_role: str,
    actor_id=None,
    metadata: dict | None = None,
) -> None:
    """
    Observer log of order events for timeline views.
    The embedded status_history on the order stays the authoritative record,
    so a failed write here is logged and never fails the operation.
    """

    doc = {
        "order_id": ObjectId(order_id),
        "event": event,
        "actor_role": actor_role,
        "actor_id": ObjectId(actor_id) if actor_id else None,
        "metadata": metadata or {},
        "created_at": datetime.utcnow(),
    }

    try:
        await db.order_timeline.insert_one(doc)
    except Exception:
        logger.exception("TIMELINE_ERROR order=%s event=%s", order_id, event)


async def get_order_events(db, order_id) -> list[dict]:
    return await db.order_timeline.find(
        {"order_id": ObjectId(order_id)},
        {"_id": 0},
    ).sort("created_at", 1).to_list(None)
