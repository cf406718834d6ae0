from fastapi import APIRouter, Depends, Query
from typing import Optional

from database import get_db
from models.product import StockAdjustment
from utils.audit import log_audit
from utils.errors import NotAuthorizedError, ProductNotFoundError, ValidationError
from utils.guards import is_admin, parse_object_id
from utils.security import require_role
from utils.serializers import serialize_docs
from utils.stock_ledger import LOW_STOCK, OUT_OF_STOCK, adjust_stock

router = APIRouter(prefix="/api/products", tags=["Products"])


# =========================
# SELLER / ADMIN STOCK ADJUSTMENT
# =========================

@router.post("/{product_id}/stock")
async def adjust_product_stock(
    product_id: str,
    data: StockAdjustment,
    user=Depends(require_role("seller", "admin")),
    db=Depends(get_db),
):
    if data.delta == 0:
        raise ValidationError("Stock delta cannot be zero")

    product_oid = parse_object_id(product_id, "product_id")

    product = await db.products.find_one({"_id": product_oid}, {"seller_id": 1})
    if not product:
        raise ProductNotFoundError()

    if not is_admin(user) and product.get("seller_id") != user["_id"]:
        raise NotAuthorizedError("Not authorized to manage this product")

    product = await adjust_stock(db, product_oid, data.delta)

    await log_audit(
        db,
        actor=user,
        action="STOCK_ADJUSTED",
        target_type="product",
        target_id=product_oid,
        metadata={"delta": data.delta, "reason": data.reason},
    )

    stock = product.get("stock") or {}
    return {
        "message": "Stock updated",
        "product_id": str(product_oid),
        "quantity": stock.get("quantity", 0),
        "status": stock.get("status"),
    }


# =========================
# LOW STOCK ALERTS
# =========================

@router.get("/alerts/low-stock")
async def low_stock_alerts(
    seller_id: Optional[str] = None,
    limit: int = Query(100, ge=1, le=500),
    user=Depends(require_role("seller", "admin")),
    db=Depends(get_db),
):
    query = {"stock.status": {"$in": [LOW_STOCK, OUT_OF_STOCK]}}
    if is_admin(user):
        if seller_id:
            query["seller_id"] = parse_object_id(seller_id, "seller_id")
    else:
        query["seller_id"] = user["_id"]

    products = await (
        db.products.find(query, {"name": 1, "price": 1, "images": 1, "seller_id": 1, "stock": 1})
        .sort("stock.quantity", 1)
        .limit(limit)
        .to_list(limit)
    )

    return {
        "count": len(products),
        "products": serialize_docs(products),
    }
