from fastapi import APIRouter, Depends, HTTPException, Query
from datetime import datetime
from typing import Optional

from database import get_db
from models.payout import PayoutCancel, PayoutComplete, PayoutFail
from models.product import CommissionUpdate
from utils.audit import log_audit
from utils.guards import parse_object_id
from utils.security import require_role
from utils.payout_service import (
    cancel_payout,
    create_payout,
    list_payouts,
    mark_completed,
    mark_failed,
    mark_processing,
    retry_failed_payout,
)
from utils.serializers import serialize_payout


router = APIRouter(prefix="/api/admin", tags=["Admin"])


# =====================================================
# PAYOUTS
# =====================================================

@router.get("/payouts")
async def admin_list_payouts(
    status: Optional[str] = None,
    seller_id: Optional[str] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    admin=Depends(require_role("admin")),
    db=Depends(get_db),
):
    payouts, total = await list_payouts(
        db, seller_id=seller_id, status=status, skip=skip, limit=limit
    )
    return {
        "total": total,
        "payouts": [serialize_payout(p) for p in payouts],
    }


@router.post("/payouts/batch/{seller_id}")
async def batch_seller_payout(
    seller_id: str,
    admin=Depends(require_role("admin")),
    db=Depends(get_db),
):
    seller = await db.users.find_one({
        "_id": parse_object_id(seller_id, "seller_id"),
        "role": "seller",
    })
    if not seller:
        raise HTTPException(404, "Seller not found")

    payout = await create_payout(db, seller, order_ids=None, actor=admin)

    return {
        "message": "Payout batched",
        "payout": serialize_payout(payout),
    }


@router.post("/payouts/{payout_ref}/processing")
async def payout_processing(
    payout_ref: str,
    admin=Depends(require_role("admin")),
    db=Depends(get_db),
):
    payout = await mark_processing(db, payout_ref, admin)
    return {"message": "Payout processing", "payout": serialize_payout(payout)}


@router.post("/payouts/{payout_ref}/complete")
async def payout_complete(
    payout_ref: str,
    data: PayoutComplete,
    admin=Depends(require_role("admin")),
    db=Depends(get_db),
):
    payout = await mark_completed(db, payout_ref, data.gateway_transaction_id, admin)
    return {"message": "Payout completed", "payout": serialize_payout(payout)}


@router.post("/payouts/{payout_ref}/fail")
async def payout_fail(
    payout_ref: str,
    data: PayoutFail,
    admin=Depends(require_role("admin")),
    db=Depends(get_db),
):
    payout = await mark_failed(db, payout_ref, data.reason, data.code, actor=admin)
    return {"message": "Payout marked failed", "payout": serialize_payout(payout)}


@router.post("/payouts/{payout_ref}/cancel")
async def payout_cancel(
    payout_ref: str,
    data: PayoutCancel,
    admin=Depends(require_role("admin")),
    db=Depends(get_db),
):
    payout = await cancel_payout(db, payout_ref, admin, data.reason)
    return {"message": "Payout cancelled", "payout": serialize_payout(payout)}


@router.post("/payouts/{payout_ref}/retry")
async def payout_retry(
    payout_ref: str,
    admin=Depends(require_role("admin")),
    db=Depends(get_db),
):
    payout = await retry_failed_payout(db, payout_ref, admin)
    return {
        "message": "Orders released for a new payout",
        "payout": serialize_payout(payout),
    }


# =====================================================
# COMMISSION
# =====================================================

@router.put("/categories/{category_id}/commission")
async def set_category_commission(
    category_id: str,
    data: CommissionUpdate,
    admin=Depends(require_role("admin")),
    db=Depends(get_db),
):
    category_oid = parse_object_id(category_id, "category_id")

    result = await db.categories.update_one(
        {"_id": category_oid},
        {"$set": {"commission": data.commission, "updated_at": datetime.utcnow()}},
    )
    if result.matched_count == 0:
        raise HTTPException(404, "Category not found")

    await log_audit(
        db,
        actor=admin,
        action="CATEGORY_COMMISSION_SET",
        target_type="category",
        target_id=category_oid,
        metadata={"commission": data.commission},
    )

    return {
        "message": "Commission updated",
        "category_id": category_id,
        "commission": data.commission,
    }
