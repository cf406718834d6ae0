import asyncio
import logging
from datetime import datetime, timedelta
from database import get_db
from config.constants import ORDER_PAYOUT_BATCHED, ORDER_PAYOUT_UPCOMING
from config.env import BATCH_RECLAIM_MINUTES, RESTOCK_ON_RETURN
from utils.order_service import credit_delivered_earning, restore_order_stock
from utils.order_state import OrderStatus
from utils.order_timeline import record_order_event

CHECK_INTERVAL_SECONDS = 60 * 5  # every 5 minutes
logger = logging.getLogger(__name__)


async def reclaim_orphaned_batches(db, now: datetime | None = None) -> int:
    """
    Orders flipped to batched whose payout document never got written
    (process died between the flip and the insert) go back to upcoming.
    """
    now = now or datetime.utcnow()
    cutoff = now - timedelta(minutes=BATCH_RECLAIM_MINUTES)
    reclaimed = 0

    cursor = db.orders.find({
        "payout.status": ORDER_PAYOUT_BATCHED,
        "payout.batched_at": {"$lte": cutoff},
    })

    async for order in cursor:
        transaction_id = (order.get("payout") or {}).get("transaction_id")
        if transaction_id and await db.payout_transactions.find_one(
            {"transaction_id": transaction_id}, {"_id": 1}
        ):
            continue

        try:
            result = await db.orders.update_one(
                {
                    "_id": order["_id"],
                    "payout.status": ORDER_PAYOUT_BATCHED,
                    "payout.transaction_id": transaction_id,
                },
                {
                    "$set": {
                        "payout.status": ORDER_PAYOUT_UPCOMING,
                        "payout.transaction_id": None,
                        "updated_at": now,
                    },
                    "$inc": {"version": 1},
                }
            )
            if not result.modified_count:
                continue
            reclaimed += 1

            await record_order_event(
                db=db,
                order_id=order["_id"],
                event="PAYOUT_BATCH_RECLAIMED",
                actor_role="system",
                actor_id=None,
                metadata={"transaction_id": transaction_id},
            )

        except Exception:
            logger.exception("BATCH_RECLAIM_ERROR order=%s", order.get("order_id"))

    if reclaimed:
        logger.info("BATCH_RECLAIM reclaimed=%s", reclaimed)
    return reclaimed


async def sync_delivered_earnings(db) -> int:
    """
    Delivered orders whose wallet credit was lost after the status write.
    The ledger rejects duplicates, so re-crediting is safe.
    """
    cursor = db.orders.find({
        "status": OrderStatus.DELIVERED.value,
        "earnings.net_seller_earning": {"$gt": 0},
        "earnings_credited_at": None,
    })

    credited = 0
    async for order in cursor:
        try:
            if await credit_delivered_earning(db, order):
                credited += 1
        except Exception:
            logger.exception("EARNINGS_SYNC_ERROR order=%s", order.get("order_id"))

    if credited:
        logger.info("EARNINGS_SYNC credited=%s", credited)
    return credited


async def restore_pending_stock(db) -> int:
    """Cancelled orders whose stock never made it back to the shelf."""
    statuses = [OrderStatus.CANCELLED.value]
    if RESTOCK_ON_RETURN:
        statuses.append(OrderStatus.RETURNED.value)

    cursor = db.orders.find({
        "status": {"$in": statuses},
        "stock_restored_at": None,
    })

    restored = 0
    async for order in cursor:
        reason = f"ORDER_{order['status'].upper()}"
        try:
            if await restore_order_stock(db, order, reason):
                restored += 1
        except Exception:
            logger.exception("STOCK_RESTORE_ERROR order=%s", order.get("order_id"))

    if restored:
        logger.info("STOCK_RESTORE restored=%s", restored)
    return restored


async def batch_reclaim_worker():
    db = get_db()

    while True:
        try:
            await reclaim_orphaned_batches(db)
            await sync_delivered_earnings(db)
            await restore_pending_stock(db)
        except Exception:
            logger.exception("BATCH_RECLAIM_WORKER_ERROR")

        await asyncio.sleep(CHECK_INTERVAL_SECONDS)
