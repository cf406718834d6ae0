from datetime import datetime

from bson import ObjectId

from utils import earnings as earnings_module
from utils.earnings import (
    calculate_earnings,
    compute_earnings,
    earnings_figures,
    line_commission_rate,
)


def make_order(items, shipping=0.0):
    items_total = sum(i["price"] * i["quantity"] for i in items)
    return {
        "order_id": "ORDTEST",
        "seller_id": ObjectId(),
        "items": items,
        "pricing": {"items_total": items_total, "shipping_charge": shipping},
        "earnings": None,
    }


def test_rate_resolution_order():
    category = ObjectId()
    rates = {str(category): 15.0, "seller": 8.0, "default": 10.0}

    assert line_commission_rate({"category_id": category}, rates) == 15.0
    assert line_commission_rate({"category_id": ObjectId()}, rates) == 8.0
    assert line_commission_rate({"category_id": None}, {"seller": None, "default": 10.0}) == 10.0


def test_net_earning_formula():
    order = make_order([{"price": 500.0, "quantity": 2, "category_id": None}], shipping=40.0)

    result = calculate_earnings(order, {"seller": None, "default": 10.0})

    assert result["platform_commission"] == 100.0
    assert result["cgst"] == 9.0
    assert result["sgst"] == 9.0
    assert result["total_tax"] == 18.0
    # shipping is informational by default
    assert result["shipping_charges"] == 40.0
    assert result["shipping_deducted"] is False
    assert result["net_seller_earning"] == 882.0


def test_shipping_deduction_when_enabled(monkeypatch):
    monkeypatch.setattr(earnings_module, "DEDUCT_SHIPPING_FROM_EARNINGS", True)
    order = make_order([{"price": 500.0, "quantity": 2, "category_id": None}], shipping=40.0)

    result = calculate_earnings(order, {"seller": None, "default": 10.0})

    assert result["net_seller_earning"] == 842.0


def test_mixed_category_rates():
    apparel = ObjectId()
    order = make_order([
        {"price": 100.0, "quantity": 1, "category_id": apparel},
        {"price": 100.0, "quantity": 1, "category_id": None},
    ])

    result = calculate_earnings(order, {str(apparel): 20.0, "seller": None, "default": 10.0})

    assert result["platform_commission"] == 30.0
    assert result["commission_percent"] == 15.0
    assert [line["commission"] for line in result["lines"]] == [20.0, 10.0]


async def test_compute_earnings_is_deterministic(db, seller):
    category = ObjectId()
    await db.categories.insert_one({"_id": category, "name": "Shoes", "commission": 12})
    await db.users.update_one({"_id": seller["_id"]}, {"$set": {"commission_percent": 7}})
    order = make_order([
        {"price": 250.0, "quantity": 2, "category_id": category},
        {"price": 99.0, "quantity": 3, "category_id": None},
    ])
    order["seller_id"] = seller["_id"]
    at = datetime(2026, 3, 1)

    first = await compute_earnings(db, order, calculated_at=at)
    second = await compute_earnings(db, order, calculated_at=at)

    assert first == second
    # category 12% on 500, seller 7% on 297
    assert first["platform_commission"] == 80.79
    assert earnings_figures(first) == {
        "platform_commission": 80.79,
        "total_tax": 14.54,
        "shipping_charges": 0.0,
        "net_seller_earning": 701.67,
    }
