from pymongo import ASCENDING, DESCENDING
from pymongo.errors import OperationFailure

from utils.idempotency import IDEMPOTENCY_TTL_SECONDS


def _normalize_key_pairs(keys):
    return [(k, v) for k, v in keys]


async def _create_index_safe(collection, keys, **kwargs):
    """
    Create index safely.
    If Mongo reports IndexOptionsConflict/IndexKeySpecsConflict for same key pattern,
    drop the conflicting index and recreate with desired options.
    """
    desired_key = _normalize_key_pairs(keys)
    desired_name = kwargs.get("name")
    try:
        await collection.create_index(keys, **kwargs)
        return
    except OperationFailure as e:
        if getattr(e, "code", None) not in {85, 86}:
            raise

        conflicting_names = []
        async for idx in collection.list_indexes():
            idx_key = _normalize_key_pairs(list(idx.get("key", {}).items()))
            if idx_key == desired_key:
                idx_name = idx.get("name")
                if idx_name and idx_name != desired_name:
                    conflicting_names.append(idx_name)

        for idx_name in conflicting_names:
            await collection.drop_index(idx_name)

        await collection.create_index(keys, **kwargs)


async def ensure_indexes(db):
    # Users
    await _create_index_safe(
        db.users,
        [("role", ASCENDING)],
        name="users_role_idx",
    )

    # Products
    await _create_index_safe(
        db.products,
        [("seller_id", ASCENDING), ("created_at", DESCENDING)],
        name="products_seller_created_idx",
    )
    await _create_index_safe(
        db.products,
        [("stock.status", ASCENDING)],
        name="products_stock_status_idx",
    )

    # Orders
    await _create_index_safe(
        db.orders,
        [("order_id", ASCENDING)],
        name="orders_order_id_unique",
        unique=True,
    )
    await _create_index_safe(
        db.orders,
        [("buyer_id", ASCENDING), ("created_at", DESCENDING)],
        name="orders_buyer_created_at_idx",
    )
    await _create_index_safe(
        db.orders,
        [("seller_id", ASCENDING), ("status", ASCENDING), ("created_at", DESCENDING)],
        name="orders_seller_status_created_at_idx",
    )
    await _create_index_safe(
        db.orders,
        [("seller_id", ASCENDING), ("payout.status", ASCENDING), ("delivered_at", DESCENDING)],
        name="orders_payout_eligibility_idx",
    )
    await _create_index_safe(
        db.orders,
        [("status", ASCENDING), ("created_at", DESCENDING)],
        name="orders_status_created_at_idx",
    )
    # recovery sweeps
    await _create_index_safe(
        db.orders,
        [("status", ASCENDING), ("earnings_credited_at", ASCENDING)],
        name="orders_earnings_credit_sweep_idx",
    )
    await _create_index_safe(
        db.orders,
        [("status", ASCENDING), ("stock_restored_at", ASCENDING)],
        name="orders_stock_restore_sweep_idx",
    )

    # Timeline / audit
    await _create_index_safe(
        db.order_timeline,
        [("order_id", ASCENDING), ("created_at", ASCENDING)],
        name="order_timeline_order_created_idx",
    )
    await _create_index_safe(
        db.audit_logs,
        [("target_type", ASCENDING), ("target_id", ASCENDING), ("created_at", DESCENDING)],
        name="audit_logs_target_idx",
    )

    # Idempotency
    await _create_index_safe(
        db.idempotency_keys,
        [("key", ASCENDING), ("scope", ASCENDING)],
        name="idempotency_key_scope_unique",
        unique=True,
    )
    await _create_index_safe(
        db.idempotency_keys,
        [("created_at", ASCENDING)],
        name="idempotency_ttl_idx",
        expireAfterSeconds=IDEMPOTENCY_TTL_SECONDS,
    )

    # Payout transactions
    await _create_index_safe(
        db.payout_transactions,
        [("transaction_id", ASCENDING)],
        name="payout_transactions_txn_unique",
        unique=True,
    )
    await _create_index_safe(
        db.payout_transactions,
        [("seller_id", ASCENDING), ("created_at", DESCENDING)],
        name="payout_transactions_seller_created_idx",
    )
    await _create_index_safe(
        db.payout_transactions,
        [("status", ASCENDING), ("created_at", DESCENDING)],
        name="payout_transactions_status_created_idx",
    )

    # Wallet ledger
    await _create_index_safe(
        db.wallet_ledger,
        [("seller_id", ASCENDING), ("created_at", DESCENDING)],
        name="wallet_ledger_seller_created_at_idx",
    )
    await _create_index_safe(
        db.wallet_ledger,
        [("reference_id", ASCENDING), ("entry_type", ASCENDING)],
        name="wallet_ledger_reference_entry_unique",
        unique=True,
    )
