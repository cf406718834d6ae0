import logging
from datetime import datetime

from bson import ObjectId
from pymongo.errors import DuplicateKeyError

from models.wallet import LedgerEntryType, SellerWallet
from utils.pricing import money

logger = logging.getLogger(__name__)


# ==============================
# Core: Append-only ledger write
# ==============================

async def add_ledger_entry(
    db,
    seller_id: ObjectId,
    entry_type: LedgerEntryType,
    *,
    reference_id: ObjectId,
    credit: float = 0,
    debit: float = 0,
    order_id: ObjectId | None = None,
    reason_code: str | None = None,
) -> bool:
    """
    Append one wallet effect. (reference_id, entry_type) is unique, so a
    repeated effect is reported as already applied instead of double counted.
    """
    if credit < 0 or debit < 0:
        raise ValueError("Credit/Debit cannot be negative")

    entry = {
        "seller_id": seller_id,
        "order_id": order_id,
        "reference_id": reference_id,
        "entry_type": LedgerEntryType(entry_type).value,
        "credit": money(credit),
        "debit": money(debit),
        "reason_code": reason_code,
        "created_at": datetime.utcnow(),
    }

    try:
        await db.wallet_ledger.insert_one(entry)
    except DuplicateKeyError:
        logger.info(
            "LEDGER_ENTRY_EXISTS seller=%s type=%s reference=%s",
            seller_id, entry["entry_type"], reference_id,
        )
        return False
    return True


async def remove_ledger_entry(db, reference_id: ObjectId, entry_type: LedgerEntryType) -> None:
    """Compensation only: undo an entry written by a unit of work that failed."""
    await db.wallet_ledger.delete_one({
        "reference_id": reference_id,
        "entry_type": LedgerEntryType(entry_type).value,
    })


# ==============================
# Domain effects
# ==============================

async def credit_order_earning(db, order: dict) -> bool:
    net = (order.get("earnings") or {}).get("net_seller_earning", 0) or 0
    if net <= 0:
        return False
    return await add_ledger_entry(
        db,
        order["seller_id"],
        LedgerEntryType.EARNING_CREDIT,
        reference_id=order["_id"],
        order_id=order["_id"],
        credit=net,
        reason_code="ORDER_DELIVERED",
    )


async def reverse_order_earning(db, order: dict) -> bool:
    net = (order.get("earnings") or {}).get("net_seller_earning", 0) or 0
    if net <= 0:
        return False
    return await add_ledger_entry(
        db,
        order["seller_id"],
        LedgerEntryType.EARNING_REVERSAL,
        reference_id=order["_id"],
        order_id=order["_id"],
        debit=net,
        reason_code="ORDER_RETURNED",
    )


async def hold_payout_amount(db, payout: dict) -> bool:
    return await add_ledger_entry(
        db,
        payout["seller_id"],
        LedgerEntryType.PAYOUT_HOLD,
        reference_id=payout["_id"],
        debit=payout["amount"],
        reason_code="PAYOUT_CREATED",
    )


async def release_payout_amount(db, payout: dict, reason_code: str) -> bool:
    return await add_ledger_entry(
        db,
        payout["seller_id"],
        LedgerEntryType.PAYOUT_RELEASE,
        reference_id=payout["_id"],
        credit=payout["amount"],
        reason_code=reason_code,
    )


async def settle_payout_amount(db, payout: dict) -> bool:
    return await add_ledger_entry(
        db,
        payout["seller_id"],
        LedgerEntryType.PAYOUT_SETTLED,
        reference_id=payout["_id"],
        debit=payout["amount"],
        reason_code="PAYOUT_COMPLETED",
    )


# ==============================
# Wallet balances (derived only)
# ==============================

async def get_wallet_summary(db, seller_id: ObjectId) -> dict:
    pipeline = [
        {"$match": {"seller_id": seller_id}},
        {"$group": {
            "_id": "$entry_type",
            "credit": {"$sum": "$credit"},
            "debit": {"$sum": "$debit"},
        }},
    ]

    rows = await db.wallet_ledger.aggregate(pipeline).to_list(None)
    return {r["_id"]: {"credit": r["credit"], "debit": r["debit"]} for r in rows}


async def get_seller_wallet(db, seller_id: ObjectId) -> SellerWallet:
    summary = await get_wallet_summary(db, seller_id)

    def credit(entry_type):
        return summary.get(entry_type.value, {}).get("credit", 0)

    def debit(entry_type):
        return summary.get(entry_type.value, {}).get("debit", 0)

    total_earnings = credit(LedgerEntryType.EARNING_CREDIT) - debit(LedgerEntryType.EARNING_REVERSAL)
    total_withdrawn = debit(LedgerEntryType.PAYOUT_SETTLED)
    locked = (
        debit(LedgerEntryType.PAYOUT_HOLD)
        - credit(LedgerEntryType.PAYOUT_RELEASE)
        - total_withdrawn
    )
    pending = total_earnings - total_withdrawn

    last = await db.wallet_ledger.find_one(
        {"seller_id": seller_id, "entry_type": LedgerEntryType.PAYOUT_SETTLED.value},
        sort=[("created_at", -1)],
    )

    return SellerWallet(
        seller_id=str(seller_id),
        pending_balance=money(pending),
        available_balance=money(pending - locked),
        locked_balance=money(locked),
        total_earnings=money(total_earnings),
        total_withdrawn=money(total_withdrawn),
        last_payout_date=last["created_at"] if last else None,
        last_payout_amount=money(last["debit"]) if last else 0,
    )
