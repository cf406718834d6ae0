import pytest
from bson import ObjectId

from utils.errors import InsufficientStockError, ProductNotFoundError
from utils.stock_ledger import (
    IN_STOCK,
    LOW_STOCK,
    OUT_OF_STOCK,
    adjust_stock,
    release_items,
    reserve_items,
    stock_status,
)


def test_stock_status_thresholds():
    assert stock_status(0) == OUT_OF_STOCK
    assert stock_status(-1) == OUT_OF_STOCK
    assert stock_status(10, 10) == LOW_STOCK
    assert stock_status(11, 10) == IN_STOCK
    assert stock_status(3, 2) == IN_STOCK


async def test_adjust_stock_decrement_updates_status(db, seller, make_product):
    product = await make_product(seller, quantity=12)

    updated = await adjust_stock(db, product["_id"], -3)

    assert updated["stock"]["quantity"] == 9
    stored = await db.products.find_one({"_id": product["_id"]})
    assert stored["stock"]["quantity"] == 9
    assert stored["stock"]["status"] == LOW_STOCK


async def test_adjust_stock_never_goes_negative(db, seller, make_product):
    product = await make_product(seller, quantity=2)

    with pytest.raises(InsufficientStockError):
        await adjust_stock(db, product["_id"], -3)

    stored = await db.products.find_one({"_id": product["_id"]})
    assert stored["stock"]["quantity"] == 2


async def test_adjust_stock_to_zero_marks_out_of_stock(db, seller, make_product):
    product = await make_product(seller, quantity=2)

    await adjust_stock(db, product["_id"], -2)

    stored = await db.products.find_one({"_id": product["_id"]})
    assert stored["stock"]["quantity"] == 0
    assert stored["stock"]["status"] == OUT_OF_STOCK


async def test_adjust_stock_unknown_product(db):
    with pytest.raises(ProductNotFoundError):
        await adjust_stock(db, ObjectId(), -1)


async def test_adjust_stock_rejects_non_integer_delta(db, seller, make_product):
    product = await make_product(seller, quantity=2)

    with pytest.raises(TypeError):
        await adjust_stock(db, product["_id"], 1.5)


async def test_reserve_items_aggregates_lines(db, seller, make_product):
    product = await make_product(seller, quantity=5)
    lines = [
        {"product_id": product["_id"], "quantity": 2},
        {"product_id": product["_id"], "quantity": 2},
    ]

    await reserve_items(db, lines)

    stored = await db.products.find_one({"_id": product["_id"]})
    assert stored["stock"]["quantity"] == 1
    assert stored["sold_count"] == 4


async def test_reserve_items_validates_before_any_decrement(db, seller, make_product):
    plenty = await make_product(seller, quantity=10)
    scarce = await make_product(seller, quantity=1)

    with pytest.raises(InsufficientStockError):
        await reserve_items(db, [
            {"product_id": plenty["_id"], "quantity": 2},
            {"product_id": scarce["_id"], "quantity": 2},
        ])

    assert (await db.products.find_one({"_id": plenty["_id"]}))["stock"]["quantity"] == 10
    assert (await db.products.find_one({"_id": scarce["_id"]}))["stock"]["quantity"] == 1


async def test_reserve_items_rolls_back_when_stock_moved_after_validation(db, seller, make_product):
    first = await make_product(seller, quantity=10)
    second = await make_product(seller, quantity=5)

    # the caller's snapshot still shows 5 units, another order already took 4
    snapshot = {
        first["_id"]: await db.products.find_one({"_id": first["_id"]}),
        second["_id"]: await db.products.find_one({"_id": second["_id"]}),
    }
    await adjust_stock(db, second["_id"], -4)

    with pytest.raises(InsufficientStockError):
        await reserve_items(
            db,
            [
                {"product_id": first["_id"], "quantity": 3},
                {"product_id": second["_id"], "quantity": 3},
            ],
            snapshot,
        )

    stored_first = await db.products.find_one({"_id": first["_id"]})
    assert stored_first["stock"]["quantity"] == 10
    assert stored_first["sold_count"] == 0
    assert (await db.products.find_one({"_id": second["_id"]}))["stock"]["quantity"] == 1


async def test_release_items_restores_quantity_and_sold_count(db, seller, make_product):
    product = await make_product(seller, quantity=5)
    lines = [{"product_id": product["_id"], "quantity": 3}]

    await reserve_items(db, lines)
    await release_items(db, lines)

    stored = await db.products.find_one({"_id": product["_id"]})
    assert stored["stock"]["quantity"] == 5
    assert stored["sold_count"] == 0
