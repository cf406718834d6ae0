from datetime import datetime, timedelta

from bson import ObjectId

from workers.batch_reclaim_worker import (
    reclaim_orphaned_batches,
    restore_pending_stock,
    sync_delivered_earnings,
)


def batched_order(seller_id, transaction_id, batched_at):
    return {
        "_id": ObjectId(),
        "order_id": f"ORD{str(ObjectId())[-6:].upper()}",
        "seller_id": seller_id,
        "status": "delivered",
        "earnings": {"net_seller_earning": 90.0},
        "payout": {
            "status": "batched",
            "transaction_id": transaction_id,
            "batched_at": batched_at,
        },
        "version": 4,
    }


async def test_orphaned_batch_returns_to_upcoming(db, seller):
    now = datetime(2026, 3, 1, 12, 0)
    orphan = batched_order(seller["_id"], "PAYOUTGONE", now - timedelta(hours=1))
    await db.orders.insert_one(orphan)

    reclaimed = await reclaim_orphaned_batches(db, now=now)

    assert reclaimed == 1
    stored = await db.orders.find_one({"_id": orphan["_id"]})
    assert stored["payout"]["status"] == "upcoming"
    assert stored["payout"]["transaction_id"] is None
    assert stored["version"] == 5
    event = await db.order_timeline.find_one({"order_id": orphan["_id"]})
    assert event["event"] == "PAYOUT_BATCH_RECLAIMED"


async def test_batches_with_payout_or_recent_flip_are_left_alone(db, seller):
    now = datetime(2026, 3, 1, 12, 0)
    backed = batched_order(seller["_id"], "PAYOUTLIVE", now - timedelta(hours=1))
    fresh = batched_order(seller["_id"], "PAYOUTNEW", now - timedelta(minutes=2))
    await db.orders.insert_many([backed, fresh])
    await db.payout_transactions.insert_one({"transaction_id": "PAYOUTLIVE", "status": "pending"})

    reclaimed = await reclaim_orphaned_batches(db, now=now)

    assert reclaimed == 0
    assert (await db.orders.find_one({"_id": backed["_id"]}))["payout"]["status"] == "batched"
    assert (await db.orders.find_one({"_id": fresh["_id"]}))["payout"]["status"] == "batched"


async def test_missing_earning_credit_is_restored_once(db, seller):
    order = {
        "_id": ObjectId(),
        "order_id": "ORDLOST1",
        "seller_id": seller["_id"],
        "status": "delivered",
        "earnings": {"net_seller_earning": 120.5},
        "payout": {"status": "upcoming"},
    }
    await db.orders.insert_one(order)

    assert await sync_delivered_earnings(db) == 1
    assert await sync_delivered_earnings(db) == 0

    entries = await db.wallet_ledger.find({"reference_id": order["_id"]}).to_list(None)
    assert len(entries) == 1
    assert entries[0]["credit"] == 120.5
    stored = await db.orders.find_one({"_id": order["_id"]})
    assert stored["earnings_credited_at"] is not None


async def test_stamped_orders_are_not_rescanned(db, seller):
    order = {
        "_id": ObjectId(),
        "order_id": "ORDDONE1",
        "seller_id": seller["_id"],
        "status": "delivered",
        "earnings": {"net_seller_earning": 50.0},
        "earnings_credited_at": datetime(2026, 3, 1),
        "payout": {"status": "upcoming"},
    }
    await db.orders.insert_one(order)

    assert await sync_delivered_earnings(db) == 0
    assert await db.wallet_ledger.count_documents({}) == 0


async def test_cancelled_order_stock_is_restored_once(db, seller, make_product):
    product = await make_product(seller, quantity=3)
    order = {
        "_id": ObjectId(),
        "order_id": "ORDCANC1",
        "seller_id": seller["_id"],
        "status": "cancelled",
        "items": [{"product_id": product["_id"], "quantity": 2}],
        "stock_restored_at": None,
    }
    await db.orders.insert_one(order)

    assert await restore_pending_stock(db) == 1
    assert await restore_pending_stock(db) == 0

    stored = await db.products.find_one({"_id": product["_id"]})
    assert stored["stock"]["quantity"] == 5
    restored = await db.orders.find_one({"_id": order["_id"]})
    assert restored["stock_restored_reason"] == "ORDER_CANCELLED"
