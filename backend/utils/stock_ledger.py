import logging
from datetime import datetime

from bson import ObjectId
from pymongo import ReturnDocument

from config.env import LOW_STOCK_THRESHOLD
from utils.errors import InsufficientStockError, ProductNotFoundError

logger = logging.getLogger(__name__)

IN_STOCK = "in_stock"
LOW_STOCK = "low_stock"
OUT_OF_STOCK = "out_of_stock"


def stock_status(quantity: int, threshold: int | None = None) -> str:
    if threshold is None:
        threshold = LOW_STOCK_THRESHOLD
    if quantity <= 0:
        return OUT_OF_STOCK
    if quantity <= threshold:
        return LOW_STOCK
    return IN_STOCK


async def _sync_stock_status(db, product: dict) -> None:
    stock = product.get("stock") or {}
    quantity = stock.get("quantity", 0)
    status = stock_status(quantity, stock.get("low_stock_threshold"))

    if stock.get("status") == status:
        return

    # Pinned to the quantity we computed from; a newer writer recomputes for its own value.
    await db.products.update_one(
        {"_id": product["_id"], "stock.quantity": quantity},
        {"$set": {"stock.status": status}},
    )
    stock["status"] = status


async def adjust_stock(db, product_id: ObjectId, delta: int, *, sold_delta: int = 0) -> dict:
    """
    Atomically apply `stock.quantity += delta`.

    Decrements carry their own guard in the update filter so the check and
    the write are a single server-side operation.
    """
    if not isinstance(delta, int) or isinstance(delta, bool):
        raise TypeError("Stock delta must be an integer")

    query = {"_id": product_id}
    if delta < 0:
        query["stock.quantity"] = {"$gte": -delta}

    inc = {"stock.quantity": delta}
    if sold_delta:
        inc["sold_count"] = sold_delta

    product = await db.products.find_one_and_update(
        query,
        {"$inc": inc, "$set": {"updated_at": datetime.utcnow()}},
        return_document=ReturnDocument.AFTER,
    )

    if product is None:
        exists = await db.products.find_one({"_id": product_id}, {"_id": 1})
        if not exists:
            raise ProductNotFoundError(f"Product {product_id} not found", product_id=str(product_id))
        raise InsufficientStockError(
            f"Insufficient stock for product {product_id}",
            product_id=str(product_id),
        )

    await _sync_stock_status(db, product)
    return product


def _aggregate_lines(lines: list[dict]) -> dict[ObjectId, int]:
    totals: dict[ObjectId, int] = {}
    for line in lines:
        totals[line["product_id"]] = totals.get(line["product_id"], 0) + int(line["quantity"])
    return totals


async def reserve_items(db, lines: list[dict], products: dict | None = None) -> None:
    """
    Validate every line first, then decrement each product.
    A decrement lost to a concurrent order rolls back the ones already applied.
    """
    totals = _aggregate_lines(lines)

    if products is None:
        products = {}
        async for product in db.products.find({"_id": {"$in": list(totals)}}):
            products[product["_id"]] = product

    # 1. validate all
    for product_id, quantity in totals.items():
        product = products.get(product_id)
        if not product:
            raise ProductNotFoundError(f"Product {product_id} not found", product_id=str(product_id))
        available = (product.get("stock") or {}).get("quantity", 0)
        if available < quantity:
            raise InsufficientStockError(
                f"Insufficient stock for {product.get('name') or product_id}",
                product_id=str(product_id),
            )

    # 2. commit all
    applied: list[tuple[ObjectId, int]] = []
    try:
        for product_id, quantity in totals.items():
            await adjust_stock(db, product_id, -quantity, sold_delta=quantity)
            applied.append((product_id, quantity))
    except Exception:
        for product_id, quantity in reversed(applied):
            await adjust_stock(db, product_id, quantity, sold_delta=-quantity)
        logger.warning(
            "STOCK_RESERVATION_ROLLED_BACK products=%s",
            [str(pid) for pid, _ in applied],
        )
        raise


async def release_items(db, lines: list[dict], *, unsell: bool = True) -> None:
    """Put reserved quantities back. All lines or none."""
    applied: list[tuple[ObjectId, int]] = []
    try:
        for product_id, quantity in _aggregate_lines(lines).items():
            await adjust_stock(
                db,
                product_id,
                quantity,
                sold_delta=-quantity if unsell else 0,
            )
            applied.append((product_id, quantity))
    except Exception:
        for product_id, quantity in reversed(applied):
            await adjust_stock(db, product_id, -quantity, sold_delta=quantity if unsell else 0)
        logger.warning(
            "STOCK_RELEASE_ROLLED_BACK products=%s",
            [str(pid) for pid, _ in applied],
        )
        raise
