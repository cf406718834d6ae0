from fastapi import APIRouter, Depends, Query
from datetime import datetime
from typing import Optional

from database import get_db
from models.payout import PayoutRequest
from utils.security import require_role
from utils.order_state import OrderStatus
from utils.payout_service import collect_eligible, create_payout, list_payouts
from utils.serializers import serialize_doc, serialize_payout
from utils.wallet_service import get_seller_wallet
from utils.pricing import money

router = APIRouter(
    prefix="/api/seller",
    tags=["Seller"]
)


# ======================================================
# PAYOUTS
# ======================================================

@router.get("/payouts/eligible")
async def eligible_orders(
    seller=Depends(require_role("seller")),
    db=Depends(get_db),
):
    orders = await collect_eligible(db, seller["_id"])

    rows = [
        {
            "id": str(order["_id"]),
            "order_id": order["order_id"],
            "delivered_at": order["delivered_at"].isoformat() if order.get("delivered_at") else None,
            "scheduled_date": (
                order["payout"]["scheduled_date"].isoformat()
                if order["payout"].get("scheduled_date") else None
            ),
            "net_seller_earning": order["earnings"]["net_seller_earning"],
        }
        for order in orders
    ]

    return {
        "count": len(rows),
        "total_amount": money(sum(r["net_seller_earning"] for r in rows)),
        "orders": rows,
    }


@router.post("/payouts/request")
async def request_payout(
    data: PayoutRequest,
    seller=Depends(require_role("seller")),
    db=Depends(get_db),
):
    payout = await create_payout(
        db,
        seller,
        order_ids=data.order_ids,
        destination=data.destination,
        actor=seller,
        notes=data.notes,
    )

    return {
        "message": "Payout requested",
        "payout": serialize_payout(payout),
    }


@router.get("/payouts")
async def payout_history(
    status: Optional[str] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(20, ge=1, le=100),
    seller=Depends(require_role("seller")),
    db=Depends(get_db),
):
    payouts, total = await list_payouts(
        db, seller_id=seller["_id"], status=status, skip=skip, limit=limit
    )
    return {
        "total": total,
        "payouts": [serialize_payout(p) for p in payouts],
    }


# ======================================================
# SELLER WALLET (READ ONLY)
# ======================================================

@router.get("/wallet")
async def wallet(
    seller=Depends(require_role("seller")),
    db=Depends(get_db),
):
    summary = await get_seller_wallet(db, seller["_id"])

    ledger = (
        await db.wallet_ledger
        .find({"seller_id": seller["_id"]})
        .sort("created_at", -1)
        .limit(50)
        .to_list(50)
    )

    return {
        "wallet": summary.model_dump(mode="json"),
        "ledger": [serialize_doc(entry) for entry in ledger],
    }


@router.get("/earnings/breakdown")
async def earnings_breakdown(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    seller=Depends(require_role("seller")),
    db=Depends(get_db),
):
    match = {
        "seller_id": seller["_id"],
        "earnings": {"$ne": None},
        "status": {"$in": [
            OrderStatus.DELIVERED.value,
            OrderStatus.RETURN_REQUESTED.value,
        ]},
    }
    if start or end:
        match["delivered_at"] = {}
        if start:
            match["delivered_at"]["$gte"] = start
        if end:
            match["delivered_at"]["$lte"] = end

    pipeline = [
        {"$match": match},
        {"$group": {
            "_id": "$payout.status",
            "orders": {"$sum": 1},
            "sales": {"$sum": "$pricing.items_total"},
            "commission": {"$sum": "$earnings.platform_commission"},
            "tax": {"$sum": "$earnings.total_tax"},
            "shipping": {"$sum": "$earnings.shipping_charges"},
            "net": {"$sum": "$earnings.net_seller_earning"},
        }},
    ]

    rows = await db.orders.aggregate(pipeline).to_list(None)

    by_payout_status = {
        row["_id"]: {
            "orders": row["orders"],
            "sales": money(row["sales"]),
            "commission": money(row["commission"]),
            "tax": money(row["tax"]),
            "shipping": money(row["shipping"]),
            "net": money(row["net"]),
        }
        for row in rows
    }

    totals = {
        key: money(sum(group[key] for group in by_payout_status.values()))
        for key in ("sales", "commission", "tax", "shipping", "net")
    }
    totals["orders"] = sum(group["orders"] for group in by_payout_status.values())

    return {
        "totals": totals,
        "by_payout_status": by_payout_status,
    }
