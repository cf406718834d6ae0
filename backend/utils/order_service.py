import logging
import re
from datetime import datetime, timedelta
from typing import Callable

from pydantic import ValidationError as SchemaValidationError
from pymongo import ReturnDocument

from config.constants import (
    ORDER_PAYOUT_NONE,
    ORDER_PAYOUT_REVERSED,
    ORDER_PAYOUT_UPCOMING,
    PAYMENT_COD,
    PAYMENT_COMPLETED,
    PAYMENT_METHODS,
    PAYMENT_PENDING,
    PAYMENT_REFUNDED,
    RETURN_REQUEST_COMPLETED,
    RETURN_REQUEST_PENDING,
    ROLE_ADMIN,
    ROLE_BUYER,
    ROLE_SELLER,
    ROLE_SYSTEM,
)
from config.env import MAX_CONCURRENCY_RETRIES, RESTOCK_ON_RETURN, RETURN_WINDOW_DAYS
from models.order import ShippingAddress
from utils.earnings import compute_earnings
from utils.errors import (
    ConcurrentModificationError,
    EmptyCartError,
    InvalidTransitionError,
    NotAuthorizedError,
    OrderNotCancellableError,
    OrderNotFoundError,
    ProductNotFoundError,
    ReturnWindowExpiredError,
    ValidationError,
)
from utils.guards import parse_object_id, ref_query
from utils.identifiers import generate_order_id
from utils.order_state import (
    CANCELLABLE_STATUSES,
    OrderStatus,
    assert_transition,
    parse_status,
)
from utils.order_timeline import record_order_event
from utils.pricing import compute_pricing, money
from utils.stock_ledger import release_items, reserve_items
from utils.wallet_service import credit_order_earning, reverse_order_earning

logger = logging.getLogger(__name__)


def normalize_payment_method(payment_method: str) -> str:
    method = (payment_method or "").strip().lower()
    if method not in PAYMENT_METHODS:
        raise ValidationError(
            f"Invalid payment method. Allowed: {', '.join(sorted(PAYMENT_METHODS))}"
        )
    return method


def _actor_id(actor: dict | None):
    return actor.get("_id") if actor else None


def _actor_role(actor: dict | None) -> str:
    return (actor or {}).get("role") or ROLE_SYSTEM


def _history_entry(status: OrderStatus, actor: dict | None, comment: str | None, now: datetime) -> dict:
    return {
        "status": status.value,
        "comment": comment,
        "updated_by": _actor_id(actor),
        "actor_role": _actor_role(actor),
        "timestamp": now,
    }


def _version_filter(order: dict) -> dict:
    if "version" in order:
        return {"version": order["version"]}
    return {"version": {"$exists": False}}


async def get_order(db, order_ref) -> dict:
    order = await db.orders.find_one(ref_query(order_ref, field="order_id"))
    if not order:
        raise OrderNotFoundError()
    return order


# buyer-facing shortcuts over several statuses
ORDER_VIEWS = {
    "on_the_way": [
        OrderStatus.CONFIRMED.value,
        OrderStatus.PROCESSING.value,
        OrderStatus.SHIPPED.value,
        OrderStatus.OUT_FOR_DELIVERY.value,
    ],
    "delivered": [OrderStatus.DELIVERED.value],
    "cancelled": [OrderStatus.CANCELLED.value],
    "returned": [OrderStatus.RETURNED.value, OrderStatus.REFUNDED.value],
}


async def list_orders(
    db,
    *,
    buyer_id=None,
    seller_id=None,
    status: str | None = None,
    view: str | None = None,
    search: str | None = None,
    skip: int = 0,
    limit: int = 20,
) -> tuple[list[dict], int]:
    """Newest first. `status` and `view` narrow the same field, status wins."""
    query = {}
    if buyer_id:
        query["buyer_id"] = parse_object_id(buyer_id, "buyer_id")
    if seller_id:
        query["seller_id"] = parse_object_id(seller_id, "seller_id")

    if status:
        try:
            query["status"] = OrderStatus(status).value
        except ValueError:
            raise ValidationError(f"Unknown order status: {status}")
    elif view:
        if view not in ORDER_VIEWS:
            raise ValidationError(f"Unknown order view. Allowed: {', '.join(ORDER_VIEWS)}")
        query["status"] = {"$in": ORDER_VIEWS[view]}

    if search and search.strip():
        pattern = {"$regex": re.escape(search.strip()), "$options": "i"}
        query["$or"] = [
            {"order_id": pattern},
            {"shipping_address.full_name": pattern},
        ]

    total = await db.orders.count_documents(query)
    orders = await (
        db.orders.find(query)
        .sort("created_at", -1)
        .skip(skip)
        .limit(limit)
        .to_list(limit)
    )
    return orders, total


async def order_status_counts(db) -> dict:
    rows = await db.orders.aggregate([
        {"$group": {
            "_id": "$status",
            "count": {"$sum": 1},
            "total_amount": {"$sum": "$pricing.total"},
        }},
    ]).to_list(None)
    return {
        row["_id"]: {"count": row["count"], "total_amount": money(row["total_amount"])}
        for row in rows
    }


# ======================================================
# PLACE ORDER
# ======================================================

def _validate_address(address) -> dict:
    if isinstance(address, ShippingAddress):
        return address.model_dump()
    if not address:
        raise ValidationError("Shipping address is required")
    try:
        return ShippingAddress.model_validate(address).model_dump()
    except SchemaValidationError as e:
        raise ValidationError(f"Invalid shipping address: {e.errors()[0].get('msg')}")


def _normalize_requested_lines(raw_items: list) -> list[dict]:
    lines = []
    for raw in raw_items:
        if hasattr(raw, "model_dump"):
            raw = raw.model_dump()
        quantity = raw.get("quantity", 1)
        if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity <= 0:
            raise ValidationError("Item quantity must be a positive integer")
        lines.append({
            "product_id": parse_object_id(raw.get("product_id"), "product_id"),
            "quantity": quantity,
            "size": raw.get("size"),
            "color": raw.get("color"),
        })
    return lines


async def _load_cart_lines(db, buyer: dict) -> list[dict]:
    user = await db.users.find_one({"_id": buyer["_id"]}, {"cart": 1})
    cart = (user or {}).get("cart") or []
    if not cart:
        raise EmptyCartError()
    return _normalize_requested_lines(cart)


def _primary_image(product: dict) -> str:
    images = product.get("images") or []
    if not images:
        return ""
    first = images[0]
    return first.get("url", "") if isinstance(first, dict) else str(first)


async def _clear_ordered_cart_items(db, buyer_id, ordered_product_ids: set) -> None:
    ordered = {str(pid) for pid in ordered_product_ids}
    user = await db.users.find_one({"_id": buyer_id}, {"cart": 1})
    remaining = [
        item for item in (user or {}).get("cart") or []
        if str(item.get("product_id")) not in ordered
    ]
    await db.users.update_one(
        {"_id": buyer_id},
        {"$set": {"cart": remaining, "updated_at": datetime.utcnow()}},
    )


async def place_order(
    db,
    buyer: dict,
    *,
    address,
    payment_method: str = PAYMENT_COD,
    items: list | None = None,
    use_cart: bool = False,
    seller_id=None,
    notes: str = "",
) -> dict:
    """
    Create a confirmed order and reserve its stock.

    Every line is validated before any stock moves; if any line fails
    nothing is decremented. Items come either from `items` (buy now) or
    from the buyer's cart.
    """
    now = datetime.utcnow()

    # --------------------------------------------------
    # 1. VALIDATE INPUT (NO WRITES)
    # --------------------------------------------------
    payment_method = normalize_payment_method(payment_method)
    shipping_address = _validate_address(address)

    if items:
        source = "direct"
        requested = _normalize_requested_lines(items)
    elif use_cart:
        source = "cart"
        requested = await _load_cart_lines(db, buyer)
    else:
        raise ValidationError("No items provided")

    seller_filter = parse_object_id(seller_id, "seller_id") if seller_id else None

    product_ids = list({line["product_id"] for line in requested})
    products = {}
    async for product in db.products.find({"_id": {"$in": product_ids}}):
        products[product["_id"]] = product

    for line in requested:
        product = products.get(line["product_id"])
        if not product or product.get("is_active") is False:
            raise ProductNotFoundError(
                f"Product {line['product_id']} not found",
                product_id=str(line["product_id"]),
            )
        if not product.get("seller_id"):
            raise ValidationError(f"Product {product['_id']} has no seller")

    if seller_filter:
        requested = [
            line for line in requested
            if products[line["product_id"]]["seller_id"] == seller_filter
        ]
        if not requested:
            raise EmptyCartError("No items from this seller")

    seller_ids = {products[line["product_id"]]["seller_id"] for line in requested}
    if len(seller_ids) > 1:
        raise ValidationError(
            "Items from multiple sellers must be ordered separately; pass seller_id"
        )
    order_seller_id = seller_ids.pop()

    order_items = []
    for line in requested:
        product = products[line["product_id"]]
        variant = " / ".join(v for v in (line["size"], line["color"]) if v) or None
        order_items.append({
            "product_id": product["_id"],
            "name": product.get("name"),
            "image": _primary_image(product),
            "price": float(product.get("price", 0)),
            "quantity": line["quantity"],
            "size": line["size"],
            "color": line["color"],
            "variant": variant,
            "seller_id": product["seller_id"],
            "category_id": product.get("category_id"),
        })

    pricing = compute_pricing(order_items, payment_method)

    # --------------------------------------------------
    # 2. COMMIT: STOCK THEN ORDER
    # --------------------------------------------------
    await reserve_items(db, order_items, products)

    order = {
        "order_id": generate_order_id(),
        "buyer_id": buyer["_id"],
        "seller_id": order_seller_id,
        "items": order_items,
        "shipping_address": shipping_address,
        "payment": {
            "method": payment_method,
            "status": PAYMENT_PENDING,
            "transaction_id": None,
            "paid_at": None,
        },
        "pricing": pricing,
        "status": OrderStatus.CONFIRMED.value,
        "status_history": [
            _history_entry(OrderStatus.CONFIRMED, buyer, "Order placed successfully", now),
        ],
        "tracking": None,
        "shipped_at": None,
        "out_for_delivery_at": None,
        "delivered_at": None,
        "cancelled_at": None,
        "cancellation_reason": None,
        "returned_at": None,
        "refunded_at": None,
        "return_request": None,
        "earnings": None,
        "earnings_credited_at": None,
        "stock_restored_at": None,
        "payout": {
            "status": ORDER_PAYOUT_NONE,
            "transaction_id": None,
            "scheduled_date": None,
            "completed_date": None,
            "failure_reason": None,
        },
        "source": source,
        "notes": notes or "",
        "version": 0,
        "created_at": now,
        "updated_at": now,
    }

    try:
        await db.orders.insert_one(order)
    except Exception:
        logger.exception("ORDER_INSERT_FAILED buyer=%s releasing stock", buyer["_id"])
        await release_items(db, order_items)
        raise

    if source == "cart":
        try:
            await _clear_ordered_cart_items(
                db, buyer["_id"], {item["product_id"] for item in order_items}
            )
        except Exception:
            # order is committed; a stale cart is not worth failing checkout
            logger.exception("CART_CLEAR_ERROR order=%s", order["order_id"])

    await record_order_event(
        db,
        order_id=order["_id"],
        event="ORDER_PLACED",
        actor_role=ROLE_BUYER,
        actor_id=buyer["_id"],
        metadata={"payment_method": payment_method, "total": pricing["total"]},
    )

    logger.info(
        "ORDER_PLACED order=%s buyer=%s seller=%s total=%s",
        order["order_id"], buyer["_id"], order_seller_id, pricing["total"],
    )
    return order


# ======================================================
# TRANSITIONS
# ======================================================

async def _build_transition_update(
    db,
    order: dict,
    target: OrderStatus,
    actor: dict | None,
    comment: str | None,
    extra: dict,
    now: datetime,
) -> tuple[dict, dict]:
    """Returns (update document, additional CAS filter) for one edge."""
    set_fields = {"status": target.value, "updated_at": now}
    extra_filter = {}

    if target == OrderStatus.SHIPPED:
        set_fields["shipped_at"] = now
        tracking = extra.get("tracking")
        if tracking:
            if hasattr(tracking, "model_dump"):
                tracking = tracking.model_dump()
            set_fields["tracking"] = {
                "courier": tracking.get("courier"),
                "tracking_id": tracking.get("tracking_id"),
                "url": tracking.get("url") or "",
            }

    elif target == OrderStatus.OUT_FOR_DELIVERY:
        set_fields["out_for_delivery_at"] = now

    elif target == OrderStatus.DELIVERED:
        earnings = await compute_earnings(db, order, calculated_at=now)
        set_fields.update({
            "delivered_at": now,
            "payment.status": PAYMENT_COMPLETED,
            "earnings": earnings,
            "payout.status": ORDER_PAYOUT_UPCOMING,
            "payout.scheduled_date": now + timedelta(days=RETURN_WINDOW_DAYS),
        })
        if order.get("payment", {}).get("method") == PAYMENT_COD:
            set_fields["payment.paid_at"] = now
        # the snapshot is written once
        extra_filter["earnings"] = None

    elif target == OrderStatus.CANCELLED:
        set_fields["cancelled_at"] = now
        set_fields["cancellation_reason"] = comment

    elif target == OrderStatus.RETURN_REQUESTED:
        set_fields["return_request"] = {
            "reason": comment,
            "status": RETURN_REQUEST_PENDING,
            "requested_at": now,
            "requested_by": _actor_id(actor),
            "completed_at": None,
        }

    elif target == OrderStatus.RETURNED:
        set_fields["returned_at"] = now
        if order.get("return_request"):
            set_fields["return_request.status"] = RETURN_REQUEST_COMPLETED
            set_fields["return_request.completed_at"] = now
        payout_status = (order.get("payout") or {}).get("status")
        extra_filter["payout.status"] = payout_status
        if payout_status == ORDER_PAYOUT_UPCOMING:
            set_fields["payout.status"] = ORDER_PAYOUT_REVERSED

    elif target == OrderStatus.REFUNDED:
        set_fields["refunded_at"] = now
        set_fields["payment.status"] = PAYMENT_REFUNDED

    update = {
        "$set": set_fields,
        "$push": {"status_history": _history_entry(target, actor, comment, now)},
        "$inc": {"version": 1},
    }
    return update, extra_filter


async def _after_transition(db, before: dict, order: dict, target: OrderStatus, actor: dict | None) -> None:
    if target == OrderStatus.CANCELLED:
        try:
            await restore_order_stock(db, order, "ORDER_CANCELLED")
        except Exception:
            # the cancel is committed; the recovery sweep retries the restore
            logger.exception("STOCK_RESTORE_DEFERRED order=%s", order["order_id"])

    elif target == OrderStatus.DELIVERED:
        await credit_delivered_earning(db, order)

    elif target == OrderStatus.RETURNED:
        previous_payout = (before.get("payout") or {}).get("status")
        if previous_payout == ORDER_PAYOUT_UPCOMING:
            await reverse_order_earning(db, order)
        elif previous_payout not in (None, ORDER_PAYOUT_NONE):
            logger.warning(
                "RETURN_AFTER_PAYOUT order=%s payout_status=%s earnings not reversed",
                order["order_id"], previous_payout,
            )
        if RESTOCK_ON_RETURN:
            try:
                await restore_order_stock(db, order, "ORDER_RETURNED")
            except Exception:
                logger.exception("STOCK_RESTORE_DEFERRED order=%s", order["order_id"])

    await record_order_event(
        db,
        order_id=order["_id"],
        event=f"ORDER_{target.value.upper()}",
        actor_role=_actor_role(actor),
        actor_id=_actor_id(actor),
        metadata={"from": before["status"], "to": target.value},
    )


async def restore_order_stock(db, order: dict, reason: str) -> bool:
    """
    Put an order's items back on the shelf, at most once. The marker is
    claimed before the stock moves and dropped again if the release fails.
    """
    claimed = await db.orders.find_one_and_update(
        {"_id": order["_id"], "stock_restored_at": None},
        {"$set": {"stock_restored_at": datetime.utcnow(), "stock_restored_reason": reason}},
    )
    if not claimed:
        return False

    try:
        await release_items(db, order["items"])
    except Exception:
        await db.orders.update_one(
            {"_id": order["_id"]},
            {"$set": {"stock_restored_at": None, "stock_restored_reason": None}},
        )
        raise
    return True


async def credit_delivered_earning(db, order: dict) -> bool:
    """Ledger credit for a delivered order, stamped on the order once it lands."""
    credited = await credit_order_earning(db, order)
    await db.orders.update_one(
        {"_id": order["_id"]},
        {"$set": {"earnings_credited_at": datetime.utcnow()}},
    )
    return credited


async def _apply_transition(
    db,
    order: dict,
    target: OrderStatus,
    actor: dict | None,
    comment: str | None = None,
    extra: dict | None = None,
    *,
    guard: Callable[[dict], None] | None = None,
    now: datetime | None = None,
) -> dict:
    """
    Compare-and-swap on (status, version). A lost race reloads the order and
    re-validates the edge, so two requests from the same prior state can
    never both succeed.
    """
    extra = extra or {}

    for attempt in range(MAX_CONCURRENCY_RETRIES + 1):
        if guard:
            guard(order)
        assert_transition(order["status"], target)

        at = now or datetime.utcnow()
        update, extra_filter = await _build_transition_update(
            db, order, target, actor, comment, extra, at
        )
        query = {
            "_id": order["_id"],
            "status": order["status"],
            **_version_filter(order),
            **extra_filter,
        }

        updated = await db.orders.find_one_and_update(
            query,
            update,
            return_document=ReturnDocument.AFTER,
        )
        if updated:
            logger.info(
                "ORDER_TRANSITION order=%s %s->%s actor=%s",
                updated["order_id"], order["status"], target.value, _actor_id(actor),
            )
            await _after_transition(db, order, updated, target, actor)
            return updated

        logger.info(
            "ORDER_CAS_CONFLICT order=%s attempt=%s target=%s",
            order.get("order_id"), attempt + 1, target.value,
        )
        reloaded = await db.orders.find_one({"_id": order["_id"]})
        if not reloaded:
            raise OrderNotFoundError()
        order = reloaded

    raise ConcurrentModificationError(
        f"Order {order.get('order_id')} kept changing, transition to {target.value} abandoned"
    )


def _assert_can_drive(order: dict, target: OrderStatus, actor: dict | None) -> None:
    role = _actor_role(actor)

    if role in (ROLE_ADMIN, ROLE_SYSTEM):
        return

    if role == ROLE_SELLER:
        if order.get("seller_id") != _actor_id(actor):
            raise NotAuthorizedError("Not authorized to update this order")
        if target in (OrderStatus.REFUNDED, OrderStatus.RETURN_REQUESTED):
            raise NotAuthorizedError(f"Sellers cannot move orders to {target.value}")
        return

    raise NotAuthorizedError("Buyers update orders through cancel or return requests")


async def transition_order(
    db,
    order_ref,
    target_status,
    actor: dict | None,
    comment: str | None = None,
    extra: dict | None = None,
    *,
    now: datetime | None = None,
) -> dict:
    target = parse_status(target_status)
    order = await get_order(db, order_ref)
    _assert_can_drive(order, target, actor)
    return await _apply_transition(db, order, target, actor, comment, extra, now=now)


async def cancel_order(db, order_ref, actor: dict, reason: str | None = None) -> dict:
    order = await get_order(db, order_ref)

    def guard(current: dict) -> None:
        if (
            not actor
            or actor.get("role") != ROLE_BUYER
            or current.get("buyer_id") != actor.get("_id")
        ):
            raise OrderNotCancellableError("Only the buyer who placed the order can cancel it")
        if current["status"] not in {s.value for s in CANCELLABLE_STATUSES}:
            raise OrderNotCancellableError(
                f"Order cannot be cancelled once {current['status']}"
            )

    return await _apply_transition(
        db, order, OrderStatus.CANCELLED, actor, reason, guard=guard
    )


async def request_return(
    db,
    order_ref,
    actor: dict,
    reason: str,
    *,
    now: datetime | None = None,
) -> dict:
    if not reason or not str(reason).strip():
        raise ValidationError("Return reason required")

    now = now or datetime.utcnow()
    order = await get_order(db, order_ref)

    def guard(current: dict) -> None:
        if (
            not actor
            or actor.get("role") != ROLE_BUYER
            or current.get("buyer_id") != actor.get("_id")
        ):
            raise NotAuthorizedError("Not authorized to return this order")
        if current["status"] != OrderStatus.DELIVERED.value:
            raise InvalidTransitionError("Only delivered orders can be returned")
        delivered_at = current.get("delivered_at")
        if not delivered_at:
            raise InvalidTransitionError("Invalid delivery state")
        # whole elapsed days: the last allowed day runs until it ends
        if (now - delivered_at).days > RETURN_WINDOW_DAYS:
            raise ReturnWindowExpiredError(
                f"Return window has expired ({RETURN_WINDOW_DAYS} days)"
            )

    return await _apply_transition(
        db, order, OrderStatus.RETURN_REQUESTED, actor, reason, guard=guard, now=now
    )
