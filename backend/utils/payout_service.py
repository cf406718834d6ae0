import logging
from datetime import datetime

from pydantic import ValidationError as SchemaValidationError
from pymongo import ReturnDocument

from config.constants import (
    ORDER_PAYOUT_BATCHED,
    ORDER_PAYOUT_COMPLETED,
    ORDER_PAYOUT_FAILED,
    ORDER_PAYOUT_UPCOMING,
    PAYOUT_MODE_BANK,
    PAYOUT_MODE_UPI,
)
from config.env import MAX_CONCURRENCY_RETRIES
from models.payout import PaymentDestination
from models.wallet import LedgerEntryType
from utils.audit import log_audit
from utils.crypto import encrypt_sensitive_value, mask_account_number
from utils.earnings import earnings_figures
from utils.errors import (
    ConcurrentModificationError,
    InvalidTransitionError,
    NoEligibleOrdersError,
    PayoutNotFoundError,
    ValidationError,
)
from utils.guards import assert_payout_owner, parse_object_id, ref_query
from utils.identifiers import generate_payout_transaction_id
from utils.order_state import OrderStatus, PayoutStatus, assert_payout_transition
from utils.pricing import money
from utils.wallet_service import (
    hold_payout_amount,
    release_payout_amount,
    remove_ledger_entry,
    settle_payout_amount,
)

logger = logging.getLogger(__name__)


# ======================================================
# ELIGIBILITY
# ======================================================

def _eligible_filter(seller_id) -> dict:
    return {
        "seller_id": seller_id,
        "status": OrderStatus.DELIVERED.value,
        "payout.status": ORDER_PAYOUT_UPCOMING,
        "earnings.net_seller_earning": {"$gt": 0},
    }


async def collect_eligible(db, seller_id) -> list[dict]:
    seller_id = parse_object_id(seller_id, "seller_id")
    return await (
        db.orders.find(_eligible_filter(seller_id))
        .sort("delivered_at", -1)
        .to_list(None)
    )


def _build_breakdown(orders: list[dict]) -> dict:
    total_sales = 0.0
    total_commission = 0.0
    total_tax = 0.0
    total_shipping = 0.0
    net_amount = 0.0

    for order in orders:
        figures = earnings_figures(order.get("earnings") or {})
        total_sales += float((order.get("pricing") or {}).get("items_total", 0) or 0)
        total_commission += float(figures["platform_commission"] or 0)
        total_tax += float(figures["total_tax"] or 0)
        total_shipping += float(figures["shipping_charges"] or 0)
        net_amount += float(figures["net_seller_earning"] or 0)

    return {
        "total_orders": len(orders),
        "total_sales": money(total_sales),
        "total_commission": money(total_commission),
        "total_tax": money(total_tax),
        "total_shipping": money(total_shipping),
        "net_amount": money(net_amount),
    }


# ======================================================
# DESTINATION
# ======================================================

def _resolve_destination(seller: dict, destination) -> dict:
    if destination is None:
        saved = (seller.get("seller_profile") or {}).get("bank_details") or {}
        if not saved:
            raise ValidationError("Payment details not configured")
        mode = PAYOUT_MODE_UPI if saved.get("upi_id") and not saved.get("account_number") else PAYOUT_MODE_BANK
        destination = {"payment_mode": mode, **saved}

    if not isinstance(destination, PaymentDestination):
        if hasattr(destination, "model_dump"):
            destination = destination.model_dump()
        try:
            destination = PaymentDestination.model_validate(destination)
        except SchemaValidationError as e:
            raise ValidationError(f"Invalid payment details: {e.errors()[0].get('msg')}")

    details = {
        "account_holder_name": destination.account_holder_name,
        "bank_name": destination.bank_name,
        "ifsc_code": destination.ifsc_code,
        "account_number_masked": None,
        "account_number_encrypted": None,
        "upi_id": destination.upi_id,
    }
    if destination.payment_mode == PAYOUT_MODE_BANK:
        details["account_number_masked"] = mask_account_number(destination.account_number)
        details["account_number_encrypted"] = encrypt_sensitive_value(destination.account_number)

    return {"payment_mode": destination.payment_mode, "payment_details": details}


# ======================================================
# READS
# ======================================================

async def get_payout(db, payout_ref) -> dict:
    payout = await db.payout_transactions.find_one(ref_query(payout_ref, field="transaction_id"))
    if not payout:
        raise PayoutNotFoundError()
    return payout


async def list_payouts(db, *, seller_id=None, status: str | None = None, skip: int = 0, limit: int = 20) -> tuple[list[dict], int]:
    query = {}
    if seller_id:
        query["seller_id"] = parse_object_id(seller_id, "seller_id")
    if status:
        try:
            query["status"] = PayoutStatus(status).value
        except ValueError:
            raise ValidationError(f"Unknown payout status: {status}")

    total = await db.payout_transactions.count_documents(query)
    payouts = await (
        db.payout_transactions.find(query)
        .sort("created_at", -1)
        .skip(skip)
        .limit(limit)
        .to_list(limit)
    )
    return payouts, total


# ======================================================
# CREATE
# ======================================================

async def _flip_orders(db, seller_id, order_ids: list, transaction_id: str) -> list[dict]:
    flipped = []
    for order_id in order_ids:
        order = await db.orders.find_one_and_update(
            {"_id": order_id, **_eligible_filter(seller_id)},
            {
                "$set": {
                    "payout.status": ORDER_PAYOUT_BATCHED,
                    "payout.transaction_id": transaction_id,
                    "payout.batched_at": datetime.utcnow(),
                    "updated_at": datetime.utcnow(),
                },
                "$inc": {"version": 1},
            },
            return_document=ReturnDocument.AFTER,
        )
        if order:
            flipped.append(order)
    return flipped


async def _move_orders(db, order_ids: list, from_status: str, to_status: str, extra: dict | None = None) -> int:
    if not order_ids:
        return 0
    result = await db.orders.update_many(
        {"_id": {"$in": order_ids}, "payout.status": from_status},
        {
            "$set": {"payout.status": to_status, "updated_at": datetime.utcnow(), **(extra or {})},
            "$inc": {"version": 1},
        },
    )
    return result.modified_count


async def _reclaim_released_orders(db, payout: dict, to_status: str, extra: dict) -> int:
    """
    Compensation for a release that has to be undone. Orders that another
    payout has already claimed carry its transaction id and are left alone.
    """
    result = await db.orders.update_many(
        {
            "_id": {"$in": payout["order_ids"]},
            "payout.status": ORDER_PAYOUT_UPCOMING,
            "payout.transaction_id": None,
        },
        {
            "$set": {"payout.status": to_status, "updated_at": datetime.utcnow(), **extra},
            "$inc": {"version": 1},
        },
    )
    return result.modified_count


async def create_payout(
    db,
    seller: dict,
    order_ids: list | None = None,
    destination=None,
    actor: dict | None = None,
    notes: str | None = None,
) -> dict:
    """
    Batch a seller's delivered orders into one pending payout.

    Each order is claimed by an atomic upcoming -> batched flip; orders that
    another request already claimed are skipped, so an order can only ever
    sit in one open payout.
    """
    seller_id = seller["_id"]

    # --------------------------------------------------
    # 1. VALIDATE (NO WRITES)
    # --------------------------------------------------
    payment = _resolve_destination(seller, destination)

    if order_ids is None:
        candidates = [o["_id"] for o in await collect_eligible(db, seller_id)]
    else:
        candidates = list(dict.fromkeys(parse_object_id(oid, "order_id") for oid in order_ids))

    if not candidates:
        raise NoEligibleOrdersError()

    # --------------------------------------------------
    # 2. CLAIM ORDERS
    # --------------------------------------------------
    transaction_id = generate_payout_transaction_id()
    orders = await _flip_orders(db, seller_id, candidates, transaction_id)
    if not orders:
        raise NoEligibleOrdersError()

    claimed_ids = [o["_id"] for o in orders]
    breakdown = _build_breakdown(orders)
    now = datetime.utcnow()

    payout = {
        "transaction_id": transaction_id,
        "seller_id": seller_id,
        "amount": breakdown["net_amount"],
        "order_ids": claimed_ids,
        **payment,
        "status": PayoutStatus.PENDING.value,
        "breakdown": breakdown,
        "initiated_at": now,
        "processing_at": None,
        "completed_at": None,
        "failed_at": None,
        "cancelled_at": None,
        "failure_reason": None,
        "failure_code": None,
        "gateway_transaction_id": None,
        "processed_by": None,
        "notes": notes,
        "status_history": [{
            "status": PayoutStatus.PENDING.value,
            "comment": "Payout requested",
            "updated_by": (actor or seller).get("_id"),
            "timestamp": now,
        }],
        "retried_at": None,
        "version": 0,
        "created_at": now,
        "updated_at": now,
    }

    # --------------------------------------------------
    # 3. PERSIST (COMPENSATE ON FAILURE)
    # --------------------------------------------------
    try:
        await db.payout_transactions.insert_one(payout)
    except Exception:
        logger.exception("PAYOUT_INSERT_FAILED seller=%s releasing %s orders", seller_id, len(claimed_ids))
        await _move_orders(
            db, claimed_ids, ORDER_PAYOUT_BATCHED, ORDER_PAYOUT_UPCOMING,
            {"payout.transaction_id": None},
        )
        raise

    try:
        await hold_payout_amount(db, payout)
    except Exception:
        logger.exception("PAYOUT_HOLD_FAILED payout=%s withdrawing payout", transaction_id)
        await db.payout_transactions.delete_one({"_id": payout["_id"], "version": 0})
        await _move_orders(
            db, claimed_ids, ORDER_PAYOUT_BATCHED, ORDER_PAYOUT_UPCOMING,
            {"payout.transaction_id": None},
        )
        raise

    await log_audit(
        db,
        actor=actor or seller,
        action="PAYOUT_CREATED",
        target_type="payout",
        target_id=payout["_id"],
        metadata={"amount": payout["amount"], "orders": len(claimed_ids)},
    )

    logger.info(
        "PAYOUT_CREATED payout=%s seller=%s amount=%s orders=%s",
        payout["transaction_id"], seller_id, payout["amount"], len(claimed_ids),
    )
    return payout


# ======================================================
# STATUS CHANGES
# ======================================================

def _payout_version_filter(payout: dict) -> dict:
    if "version" in payout:
        return {"version": payout["version"]}
    return {"version": {"$exists": False}}


async def _apply_payout_transition(
    db,
    payout: dict,
    target: PayoutStatus,
    *,
    set_fields: dict,
    actor: dict | None = None,
    comment: str | None = None,
) -> tuple[dict, dict]:
    """
    CAS on (status, version). Returns (before, after) so callers can
    compensate against the exact state they replaced.
    """
    for attempt in range(MAX_CONCURRENCY_RETRIES + 1):
        current = PayoutStatus(payout["status"])
        history = []
        now = datetime.utcnow()
        # completing a pending payout walks it through processing
        if target == PayoutStatus.COMPLETED and current == PayoutStatus.PENDING:
            assert_payout_transition(current, PayoutStatus.PROCESSING)
            history.append({
                "status": PayoutStatus.PROCESSING.value,
                "comment": comment,
                "updated_by": (actor or {}).get("_id"),
                "timestamp": now,
            })
            set_fields = {"processing_at": now, **set_fields}
        else:
            assert_payout_transition(current, target)

        history.append({
            "status": target.value,
            "comment": comment,
            "updated_by": (actor or {}).get("_id"),
            "timestamp": now,
        })

        updated = await db.payout_transactions.find_one_and_update(
            {
                "_id": payout["_id"],
                "status": payout["status"],
                **_payout_version_filter(payout),
            },
            {
                "$set": {"status": target.value, "updated_at": now, **set_fields},
                "$push": {"status_history": {"$each": history}},
                "$inc": {"version": 1},
            },
            return_document=ReturnDocument.AFTER,
        )
        if updated:
            logger.info(
                "PAYOUT_TRANSITION payout=%s %s->%s",
                updated["transaction_id"], payout["status"], target.value,
            )
            return payout, updated

        logger.info("PAYOUT_CAS_CONFLICT payout=%s attempt=%s", payout.get("transaction_id"), attempt + 1)
        reloaded = await db.payout_transactions.find_one({"_id": payout["_id"]})
        if not reloaded:
            raise PayoutNotFoundError()
        payout = reloaded

    raise ConcurrentModificationError(
        f"Payout {payout.get('transaction_id')} kept changing, {target.value} abandoned"
    )


async def _revert_payout_transition(db, before: dict, after: dict, fields: list[str]) -> None:
    """
    Undo a status write whose follow-on updates failed. Status, the touched
    fields and status_history go back to exactly what `before` held.
    """
    restored = {field: before.get(field) for field in fields}
    result = await db.payout_transactions.update_one(
        {"_id": after["_id"], "version": after["version"]},
        {
            "$set": {
                "status": before["status"],
                "status_history": before.get("status_history", []),
                "updated_at": datetime.utcnow(),
                **restored,
            },
            "$inc": {"version": 1},
        },
    )
    if not result.modified_count:
        logger.error(
            "PAYOUT_REVERT_SKIPPED payout=%s changed after %s",
            after.get("transaction_id"), after["status"],
        )


async def _load_owned(db, payout_ref, actor: dict | None) -> dict:
    payout = await get_payout(db, payout_ref)
    assert_payout_owner(payout, actor)
    return payout


async def mark_processing(db, payout_ref, actor: dict | None = None) -> dict:
    payout = await _load_owned(db, payout_ref, actor)
    _, updated = await _apply_payout_transition(
        db, payout, PayoutStatus.PROCESSING,
        set_fields={"processing_at": datetime.utcnow()},
        actor=actor,
        comment="Payout processing",
    )
    await log_audit(
        db, actor=actor, action="PAYOUT_PROCESSING",
        target_type="payout", target_id=updated["_id"],
    )
    return updated


async def mark_completed(db, payout_ref, gateway_ref: str, processed_by: dict | None = None) -> dict:
    if not gateway_ref or not str(gateway_ref).strip():
        raise ValidationError("Gateway transaction reference required")

    payout = await _load_owned(db, payout_ref, processed_by)
    now = datetime.utcnow()

    before, updated = await _apply_payout_transition(
        db, payout, PayoutStatus.COMPLETED,
        set_fields={
            "completed_at": now,
            "gateway_transaction_id": str(gateway_ref).strip(),
            "processed_by": (processed_by or {}).get("_id"),
        },
        actor=processed_by,
        comment="Payout completed",
    )

    settled = False
    try:
        settled = await settle_payout_amount(db, updated)
        await _move_orders(
            db, updated["order_ids"], ORDER_PAYOUT_BATCHED, ORDER_PAYOUT_COMPLETED,
            {
                "payout.transaction_id": updated["transaction_id"],
                "payout.completed_date": now,
            },
        )
    except Exception:
        logger.exception("PAYOUT_COMPLETE_CASCADE_FAILED payout=%s rolling back", updated["transaction_id"])
        await _move_orders(
            db, updated["order_ids"], ORDER_PAYOUT_COMPLETED, ORDER_PAYOUT_BATCHED,
            {"payout.completed_date": None},
        )
        if settled:
            await remove_ledger_entry(db, updated["_id"], LedgerEntryType.PAYOUT_SETTLED)
        await _revert_payout_transition(
            db, before, updated,
            ["processing_at", "completed_at", "gateway_transaction_id", "processed_by"],
        )
        raise

    await log_audit(
        db,
        actor=processed_by,
        action="PAYOUT_COMPLETED",
        target_type="payout",
        target_id=updated["_id"],
        metadata={"amount": updated["amount"], "gateway_transaction_id": updated["gateway_transaction_id"]},
    )
    return updated


async def mark_failed(db, payout_ref, reason: str, code: str | None = None, actor: dict | None = None) -> dict:
    if not reason or not str(reason).strip():
        raise ValidationError("Failure reason required")

    payout = await _load_owned(db, payout_ref, actor)
    before, updated = await _apply_payout_transition(
        db, payout, PayoutStatus.FAILED,
        set_fields={
            "failed_at": datetime.utcnow(),
            "failure_reason": reason,
            "failure_code": code,
        },
        actor=actor,
        comment=reason,
    )

    # funds stay locked until the payout is retried
    try:
        await _move_orders(
            db, updated["order_ids"], ORDER_PAYOUT_BATCHED, ORDER_PAYOUT_FAILED,
            {"payout.failure_reason": reason},
        )
    except Exception:
        logger.exception("PAYOUT_FAIL_CASCADE_FAILED payout=%s rolling back", updated["transaction_id"])
        await _move_orders(
            db, updated["order_ids"], ORDER_PAYOUT_FAILED, ORDER_PAYOUT_BATCHED,
            {"payout.failure_reason": None},
        )
        await _revert_payout_transition(
            db, before, updated, ["failed_at", "failure_reason", "failure_code"]
        )
        raise

    await log_audit(
        db, actor=actor, action="PAYOUT_FAILED",
        target_type="payout", target_id=updated["_id"],
        metadata={"reason": reason, "code": code},
    )
    return updated


async def cancel_payout(db, payout_ref, actor: dict | None = None, reason: str | None = None) -> dict:
    payout = await _load_owned(db, payout_ref, actor)
    before, updated = await _apply_payout_transition(
        db, payout, PayoutStatus.CANCELLED,
        set_fields={"cancelled_at": datetime.utcnow(), "cancellation_reason": reason},
        actor=actor,
        comment=reason or "Payout cancelled",
    )

    try:
        await _move_orders(
            db, updated["order_ids"], ORDER_PAYOUT_BATCHED, ORDER_PAYOUT_UPCOMING,
            {"payout.transaction_id": None},
        )
        await release_payout_amount(db, updated, "PAYOUT_CANCELLED")
    except Exception:
        logger.exception("PAYOUT_CANCEL_CASCADE_FAILED payout=%s rolling back", updated["transaction_id"])
        await _reclaim_released_orders(
            db, updated, ORDER_PAYOUT_BATCHED, {"payout.transaction_id": updated["transaction_id"]}
        )
        await _revert_payout_transition(
            db, before, updated, ["cancelled_at", "cancellation_reason"]
        )
        raise

    await log_audit(
        db, actor=actor, action="PAYOUT_CANCELLED",
        target_type="payout", target_id=updated["_id"],
        metadata={"reason": reason},
    )
    return updated


async def retry_failed_payout(db, payout_ref, actor: dict | None = None) -> dict:
    """
    Hand a failed payout's orders back to the eligible pool. The payout
    document itself stays failed; the seller requests a fresh one.
    """
    payout = await _load_owned(db, payout_ref, actor)
    if payout["status"] != PayoutStatus.FAILED.value:
        raise InvalidTransitionError("Only failed payouts can be retried")

    updated = await db.payout_transactions.find_one_and_update(
        {"_id": payout["_id"], "status": PayoutStatus.FAILED.value, "retried_at": None},
        {
            "$set": {"retried_at": datetime.utcnow(), "updated_at": datetime.utcnow()},
            "$inc": {"version": 1},
        },
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        raise InvalidTransitionError("Payout already retried")

    try:
        released = await _move_orders(
            db, updated["order_ids"], ORDER_PAYOUT_FAILED, ORDER_PAYOUT_UPCOMING,
            {"payout.transaction_id": None, "payout.failure_reason": None},
        )
        await release_payout_amount(db, updated, "PAYOUT_RETRIED")
    except Exception:
        logger.exception("PAYOUT_RETRY_CASCADE_FAILED payout=%s rolling back", updated["transaction_id"])
        await _reclaim_released_orders(
            db, updated, ORDER_PAYOUT_FAILED,
            {
                "payout.transaction_id": updated["transaction_id"],
                "payout.failure_reason": updated.get("failure_reason"),
            },
        )
        await db.payout_transactions.update_one(
            {"_id": updated["_id"], "version": updated["version"]},
            {"$set": {"retried_at": None}, "$inc": {"version": 1}},
        )
        raise

    await log_audit(
        db, actor=actor, action="PAYOUT_RETRIED",
        target_type="payout", target_id=updated["_id"],
        metadata={"orders_released": released},
    )
    logger.info("PAYOUT_RETRIED payout=%s orders=%s", updated["transaction_id"], released)
    return updated
