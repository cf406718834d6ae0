from datetime import datetime, timedelta

import pytest
from bson import ObjectId

from utils import payout_service
from utils.crypto import decrypt_sensitive_value
from utils.errors import (
    InvalidTransitionError,
    NoEligibleOrdersError,
    NotAuthorizedError,
    ValidationError,
)
from utils.payout_service import (
    cancel_payout,
    collect_eligible,
    create_payout,
    get_payout,
    list_payouts,
    mark_completed,
    mark_failed,
    mark_processing,
    retry_failed_payout,
)
from utils.wallet_service import credit_order_earning, get_seller_wallet


@pytest.fixture
def make_delivered_order(db):
    async def _make(seller: dict, net: float, *, days_ago: int = 1) -> dict:
        delivered_at = datetime.utcnow() - timedelta(days=days_ago)
        commission = round(net * 0.1, 2)
        order = {
            "_id": ObjectId(),
            "order_id": f"ORD{str(ObjectId())[-8:].upper()}",
            "buyer_id": ObjectId(),
            "seller_id": seller["_id"],
            "items": [],
            "pricing": {"items_total": net + commission, "shipping_charge": 0.0},
            "status": "delivered",
            "delivered_at": delivered_at,
            "earnings": {
                "platform_commission": commission,
                "total_tax": 0.0,
                "shipping_charges": 0.0,
                "net_seller_earning": net,
            },
            "payout": {
                "status": "upcoming",
                "transaction_id": None,
                "scheduled_date": delivered_at + timedelta(days=7),
                "completed_date": None,
                "failure_reason": None,
            },
            "version": 3,
        }
        await db.orders.insert_one(order)
        await credit_order_earning(db, order)
        return order

    return _make


@pytest.fixture
async def three_orders(seller, make_delivered_order):
    return [
        await make_delivered_order(seller, 100.0, days_ago=3),
        await make_delivered_order(seller, 150.0, days_ago=2),
        await make_delivered_order(seller, 200.0, days_ago=1),
    ]


async def payout_statuses(db, orders):
    stored = await db.orders.find({"_id": {"$in": [o["_id"] for o in orders]}}).to_list(None)
    return {o["payout"]["status"] for o in stored}


async def test_collect_eligible_newest_first(db, seller, three_orders, make_user, make_delivered_order):
    other = await make_user("seller")
    await make_delivered_order(other, 75.0)

    eligible = await collect_eligible(db, seller["_id"])

    assert [o["earnings"]["net_seller_earning"] for o in eligible] == [200.0, 150.0, 100.0]


async def test_payout_lifecycle_moves_wallet(db, seller, admin, three_orders):
    payout = await create_payout(db, seller, actor=seller)

    assert payout["status"] == "pending"
    assert payout["transaction_id"].startswith("PAYOUT")
    assert payout["amount"] == 450.0
    assert payout["breakdown"]["net_amount"] == 450.0
    assert payout["breakdown"]["total_orders"] == 3
    assert payout["payment_mode"] == "bank"
    assert payout["payment_details"]["account_number_masked"] == "********9012"
    assert decrypt_sensitive_value(payout["payment_details"]["account_number_encrypted"]) == "123456789012"
    assert await payout_statuses(db, three_orders) == {"batched"}

    wallet = await get_seller_wallet(db, seller["_id"])
    assert wallet.pending_balance == 450.0
    assert wallet.locked_balance == 450.0
    assert wallet.available_balance == 0.0

    await mark_processing(db, payout["transaction_id"], admin)
    completed = await mark_completed(db, payout["transaction_id"], "UTR998877", admin)

    assert completed["status"] == "completed"
    assert completed["gateway_transaction_id"] == "UTR998877"
    assert completed["processed_by"] == admin["_id"]
    assert await payout_statuses(db, three_orders) == {"completed"}

    stored = await db.orders.find_one({"_id": three_orders[0]["_id"]})
    assert stored["payout"]["transaction_id"] == payout["transaction_id"]
    assert stored["payout"]["completed_date"] is not None

    wallet = await get_seller_wallet(db, seller["_id"])
    assert wallet.pending_balance == 0.0
    assert wallet.locked_balance == 0.0
    assert wallet.total_withdrawn == 450.0
    assert wallet.total_earnings == 450.0
    assert wallet.last_payout_amount == 450.0


async def test_complete_from_pending_steps_through_processing(db, seller, admin, three_orders):
    payout = await create_payout(db, seller)

    completed = await mark_completed(db, payout["_id"], "UTR1", admin)

    assert [h["status"] for h in completed["status_history"]] == ["pending", "processing", "completed"]
    assert completed["processing_at"] is not None


async def test_order_joins_only_one_open_payout(db, seller, three_orders):
    await create_payout(db, seller)

    with pytest.raises(NoEligibleOrdersError):
        await create_payout(db, seller)

    assert await db.payout_transactions.count_documents({}) == 1


async def test_selected_orders_only(db, seller, three_orders, make_user, make_delivered_order):
    other = await make_user("seller")
    foreign = await make_delivered_order(other, 500.0)

    payout = await create_payout(
        db, seller,
        order_ids=[str(three_orders[0]["_id"]), str(foreign["_id"])],
    )

    assert payout["order_ids"] == [three_orders[0]["_id"]]
    assert payout["amount"] == 100.0
    assert await payout_statuses(db, three_orders[1:]) == {"upcoming"}
    assert await payout_statuses(db, [foreign]) == {"upcoming"}


async def test_no_eligible_orders(db, seller):
    with pytest.raises(NoEligibleOrdersError):
        await create_payout(db, seller)


async def test_missing_bank_details(db, make_user, make_delivered_order):
    bare_seller = await make_user("seller", seller_profile={})
    order = await make_delivered_order(bare_seller, 100.0)

    with pytest.raises(ValidationError):
        await create_payout(db, bare_seller)

    assert await payout_statuses(db, [order]) == {"upcoming"}


async def test_upi_destination(db, seller, three_orders):
    payout = await create_payout(
        db, seller,
        destination={"payment_mode": "upi", "upi_id": "acme@okhdfc"},
    )

    assert payout["payment_mode"] == "upi"
    assert payout["payment_details"]["upi_id"] == "acme@okhdfc"
    assert payout["payment_details"]["account_number_encrypted"] is None


async def test_failed_payout_keeps_funds_locked_until_retry(db, seller, admin, three_orders):
    payout = await create_payout(db, seller)
    await mark_processing(db, payout["_id"], admin)

    failed = await mark_failed(db, payout["_id"], "Beneficiary bank offline", "BANK_DOWN", actor=admin)

    assert failed["status"] == "failed"
    assert failed["failure_code"] == "BANK_DOWN"
    assert await payout_statuses(db, three_orders) == {"failed"}
    wallet = await get_seller_wallet(db, seller["_id"])
    assert wallet.locked_balance == 450.0
    assert wallet.available_balance == 0.0

    retried = await retry_failed_payout(db, payout["_id"], admin)

    assert retried["retried_at"] is not None
    assert await payout_statuses(db, three_orders) == {"upcoming"}
    wallet = await get_seller_wallet(db, seller["_id"])
    assert wallet.locked_balance == 0.0
    assert wallet.available_balance == 450.0

    with pytest.raises(InvalidTransitionError):
        await retry_failed_payout(db, payout["_id"], admin)

    again = await create_payout(db, seller)
    assert again["amount"] == 450.0


async def test_cancel_returns_orders_to_pool(db, seller, admin, three_orders):
    payout = await create_payout(db, seller)

    cancelled = await cancel_payout(db, payout["transaction_id"], admin, "wrong account")

    assert cancelled["status"] == "cancelled"
    assert await payout_statuses(db, three_orders) == {"upcoming"}
    wallet = await get_seller_wallet(db, seller["_id"])
    assert wallet.available_balance == 450.0
    assert len(await collect_eligible(db, seller["_id"])) == 3


async def test_completed_payout_is_final(db, seller, admin, three_orders):
    payout = await create_payout(db, seller)
    await mark_completed(db, payout["_id"], "UTR1", admin)

    with pytest.raises(InvalidTransitionError):
        await mark_failed(db, payout["_id"], "late failure", actor=admin)
    with pytest.raises(InvalidTransitionError):
        await cancel_payout(db, payout["_id"], admin)
    with pytest.raises(InvalidTransitionError):
        await retry_failed_payout(db, payout["_id"], admin)

    assert (await get_payout(db, payout["_id"]))["status"] == "completed"


async def test_seller_cannot_manage_other_sellers_payout(db, seller, three_orders, make_user):
    payout = await create_payout(db, seller)
    stranger = await make_user("seller")

    with pytest.raises(NotAuthorizedError):
        await cancel_payout(db, payout["_id"], stranger)


async def test_completion_cascade_failure_rolls_back(db, seller, admin, three_orders, monkeypatch):
    payout = await create_payout(db, seller)
    await mark_processing(db, payout["_id"], admin)

    original_move = payout_service._move_orders

    async def broken_move(db, order_ids, from_status, to_status, extra=None):
        if to_status == "completed":
            raise RuntimeError("orders collection unavailable")
        return await original_move(db, order_ids, from_status, to_status, extra)

    monkeypatch.setattr(payout_service, "_move_orders", broken_move)

    with pytest.raises(RuntimeError):
        await mark_completed(db, payout["_id"], "UTR1", admin)

    stored = await get_payout(db, payout["_id"])
    assert stored["status"] == "processing"
    assert stored["gateway_transaction_id"] is None
    assert await payout_statuses(db, three_orders) == {"batched"}
    assert await db.wallet_ledger.count_documents({"entry_type": "PAYOUT_SETTLED"}) == 0


def fail_first_move(monkeypatch, to_status):
    original_move = payout_service._move_orders
    calls = {"failed": False}

    async def flaky_move(db, order_ids, from_status, target, extra=None):
        if target == to_status and not calls["failed"]:
            calls["failed"] = True
            raise RuntimeError("orders collection unavailable")
        return await original_move(db, order_ids, from_status, target, extra)

    monkeypatch.setattr(payout_service, "_move_orders", flaky_move)


async def test_completion_rollback_restores_history(db, seller, admin, three_orders, monkeypatch):
    payout = await create_payout(db, seller)
    fail_first_move(monkeypatch, "completed")

    with pytest.raises(RuntimeError):
        await mark_completed(db, payout["_id"], "UTR1", admin)

    stored = await get_payout(db, payout["_id"])
    assert stored["status"] == "pending"
    assert stored["processing_at"] is None
    assert [h["status"] for h in stored["status_history"]] == ["pending"]

    # the payout is still completable once the cascade works again
    completed = await mark_completed(db, payout["_id"], "UTR1", admin)
    assert completed["status"] == "completed"
    assert await payout_statuses(db, three_orders) == {"completed"}


async def test_failure_cascade_error_rolls_back(db, seller, admin, three_orders, monkeypatch):
    payout = await create_payout(db, seller)
    await mark_processing(db, payout["_id"], admin)
    fail_first_move(monkeypatch, "failed")

    with pytest.raises(RuntimeError):
        await mark_failed(db, payout["_id"], "IFSC mismatch", actor=admin)

    stored = await get_payout(db, payout["_id"])
    assert stored["status"] == "processing"
    assert stored["failure_reason"] is None
    assert [h["status"] for h in stored["status_history"]] == ["pending", "processing"]
    assert await payout_statuses(db, three_orders) == {"batched"}

    await mark_failed(db, payout["_id"], "IFSC mismatch", actor=admin)
    await retry_failed_payout(db, payout["_id"], admin)
    assert await payout_statuses(db, three_orders) == {"upcoming"}


async def test_cancel_release_error_rolls_back(db, seller, admin, three_orders, monkeypatch):
    payout = await create_payout(db, seller)

    async def broken_release(db, payout, reason_code):
        raise RuntimeError("ledger unavailable")

    monkeypatch.setattr(payout_service, "release_payout_amount", broken_release)

    with pytest.raises(RuntimeError):
        await cancel_payout(db, payout["_id"], admin, reason="wrong account")

    stored = await get_payout(db, payout["_id"])
    assert stored["status"] == "pending"
    assert stored["cancelled_at"] is None
    orders = await db.orders.find({"_id": {"$in": payout["order_ids"]}}).to_list(None)
    assert {o["payout"]["status"] for o in orders} == {"batched"}
    assert {o["payout"]["transaction_id"] for o in orders} == {payout["transaction_id"]}

    wallet = await get_seller_wallet(db, seller["_id"])
    assert wallet.locked_balance == 450.0


async def test_retry_release_error_rolls_back(db, seller, admin, three_orders, monkeypatch):
    payout = await create_payout(db, seller)
    await mark_failed(db, payout["_id"], "bank rejected", actor=admin)

    async def broken_release(db, payout, reason_code):
        raise RuntimeError("ledger unavailable")

    monkeypatch.setattr(payout_service, "release_payout_amount", broken_release)

    with pytest.raises(RuntimeError):
        await retry_failed_payout(db, payout["_id"], admin)

    stored = await get_payout(db, payout["_id"])
    assert stored["retried_at"] is None
    assert await payout_statuses(db, three_orders) == {"failed"}

    monkeypatch.undo()
    await retry_failed_payout(db, payout["_id"], admin)
    assert await payout_statuses(db, three_orders) == {"upcoming"}


async def test_hold_error_withdraws_payout(db, seller, three_orders, monkeypatch):
    async def broken_hold(db, payout):
        raise RuntimeError("ledger unavailable")

    monkeypatch.setattr(payout_service, "hold_payout_amount", broken_hold)

    with pytest.raises(RuntimeError):
        await create_payout(db, seller)

    assert await db.payout_transactions.count_documents({}) == 0
    assert await payout_statuses(db, three_orders) == {"upcoming"}
    orders = await db.orders.find({"_id": {"$in": [o["_id"] for o in three_orders]}}).to_list(None)
    assert {o["payout"]["transaction_id"] for o in orders} == {None}


async def test_list_payouts_filters(db, seller, admin, three_orders, make_user, make_delivered_order):
    other = await make_user("seller", seller_profile={"bank_details": {"upi_id": "other@upi"}})
    await make_delivered_order(other, 80.0)
    await create_payout(db, seller)
    other_payout = await create_payout(db, other)
    await mark_completed(db, other_payout["_id"], "UTR2", admin)

    mine, total = await list_payouts(db, seller_id=seller["_id"])
    assert total == 1
    assert mine[0]["seller_id"] == seller["_id"]

    completed, total = await list_payouts(db, status="completed")
    assert total == 1
    assert completed[0]["payment_mode"] == "upi"

    with pytest.raises(ValidationError):
        await list_payouts(db, status="lost")
