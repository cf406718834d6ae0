from fastapi import APIRouter, Depends, HTTPException, Query
from typing import Optional

from database import get_db
from models.order import (
    CancelOrderRequest,
    PlaceOrderRequest,
    ReturnRequest,
    StatusUpdateRequest,
)
from utils.security import require_role
from utils.guards import assert_order_visible
from utils.order_service import (
    cancel_order,
    get_order,
    list_orders,
    order_status_counts,
    place_order,
    request_return,
    transition_order,
)
from utils.order_timeline import get_order_events
from utils.serializers import serialize_docs, serialize_order
from utils.idempotency import (
    reserve_idempotency_key,
    complete_idempotency_key,
    fail_idempotency_key,
)


router = APIRouter(
    prefix="/api/orders",
    tags=["Orders"]
)


# ======================================================
# PLACE ORDER (BUYER)
# ======================================================

@router.post("/place")
async def place_order_route(
    data: PlaceOrderRequest,
    buyer=Depends(require_role("buyer")),
    db=Depends(get_db),
):
    idempotency_key = data.idempotency_key
    scope = f"place_order:{buyer['_id']}"

    if idempotency_key:
        existing_response = await reserve_idempotency_key(
            db=db,
            key=idempotency_key,
            scope=scope,
        )
        if existing_response:
            return existing_response

    try:
        order = await place_order(
            db,
            buyer,
            address=data.shipping_address,
            payment_method=data.payment_method,
            items=data.items,
            use_cart=data.use_cart,
            seller_id=data.seller_id,
            notes=data.notes,
        )
    except Exception as e:
        if idempotency_key:
            detail = e.detail if isinstance(e, HTTPException) else str(e)
            await fail_idempotency_key(
                db=db,
                key=idempotency_key,
                scope=scope,
                error=str(detail),
            )
        raise

    response = {
        "message": "Order placed successfully",
        "order": serialize_order(order),
    }

    if idempotency_key:
        await complete_idempotency_key(
            db=db,
            key=idempotency_key,
            scope=scope,
            response=response,
        )
    return response


# ======================================================
# LISTINGS
# ======================================================

def _page(orders: list[dict], total: int, skip: int, limit: int) -> dict:
    return {
        "count": len(orders),
        "total": total,
        "skip": skip,
        "limit": limit,
        "orders": [serialize_order(o) for o in orders],
    }


@router.get("/user")
async def buyer_orders(
    status: Optional[str] = None,
    view: Optional[str] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(10, ge=1, le=100),
    buyer=Depends(require_role("buyer")),
    db=Depends(get_db),
):
    orders, total = await list_orders(
        db, buyer_id=buyer["_id"], status=status, view=view, skip=skip, limit=limit
    )
    return _page(orders, total, skip, limit)


@router.get("/seller")
async def seller_orders(
    status: Optional[str] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(10, ge=1, le=100),
    seller=Depends(require_role("seller")),
    db=Depends(get_db),
):
    orders, total = await list_orders(
        db, seller_id=seller["_id"], status=status, skip=skip, limit=limit
    )
    return _page(orders, total, skip, limit)


@router.get("/admin")
async def admin_orders(
    status: Optional[str] = None,
    search: Optional[str] = None,
    seller_id: Optional[str] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(20, ge=1, le=200),
    admin=Depends(require_role("admin")),
    db=Depends(get_db),
):
    orders, total = await list_orders(
        db, seller_id=seller_id, status=status, search=search, skip=skip, limit=limit
    )
    return {
        **_page(orders, total, skip, limit),
        "stats": await order_status_counts(db),
    }


# ======================================================
# READ
# ======================================================

@router.get("/{order_ref}")
async def get_order_route(
    order_ref: str,
    user=Depends(require_role("buyer", "seller", "admin")),
    db=Depends(get_db),
):
    order = await get_order(db, order_ref)
    assert_order_visible(order, user)
    return serialize_order(order)


@router.get("/{order_ref}/timeline")
async def get_order_timeline(
    order_ref: str,
    user=Depends(require_role("buyer", "seller", "admin")),
    db=Depends(get_db),
):
    order = await get_order(db, order_ref)
    assert_order_visible(order, user)

    events = await get_order_events(db, order["_id"])

    return {
        "order_id": order["order_id"],
        "status_history": serialize_order(order)["status_history"],
        "events": serialize_docs(events),
    }


# ======================================================
# STATUS CHANGES
# ======================================================

@router.post("/{order_ref}/status")
async def update_order_status(
    order_ref: str,
    data: StatusUpdateRequest,
    user=Depends(require_role("seller", "admin")),
    db=Depends(get_db),
):
    extra = {"tracking": data.tracking} if data.tracking else None

    order = await transition_order(
        db,
        order_ref,
        data.status,
        user,
        comment=data.comment,
        extra=extra,
    )

    return {
        "message": f"Order moved to {order['status']}",
        "order": serialize_order(order),
    }


@router.post("/{order_ref}/cancel")
async def cancel_order_route(
    order_ref: str,
    data: CancelOrderRequest,
    buyer=Depends(require_role("buyer")),
    db=Depends(get_db),
):
    order = await cancel_order(db, order_ref, buyer, data.reason)
    return {
        "message": "Order cancelled",
        "order": serialize_order(order),
    }


@router.post("/{order_ref}/return-request")
async def return_request_route(
    order_ref: str,
    data: ReturnRequest,
    buyer=Depends(require_role("buyer")),
    db=Depends(get_db),
):
    order = await request_return(db, order_ref, buyer, data.reason)
    return {
        "message": "Return request submitted",
        "order": serialize_order(order),
    }
