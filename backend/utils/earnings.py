"""
Seller earnings for a delivered order.

Formula (per order):
    commission  = sum(price * quantity * rate / 100) over lines
    tax         = commission * COMMISSION_TAX_PERCENT / 100  (CGST + SGST halves)
    net         = items_total - commission - tax - penalty [- shipping]

Rates resolve category > seller > platform default. The result is written
onto the order once, at delivery; later rate changes never touch it.
"""
import logging
from datetime import datetime

from config.env import (
    COMMISSION_TAX_PERCENT,
    DEDUCT_SHIPPING_FROM_EARNINGS,
    DEFAULT_COMMISSION_PERCENT,
)
from utils.pricing import money

logger = logging.getLogger(__name__)


def _positive(value) -> float | None:
    try:
        value = float(value)
    except (TypeError, ValueError):
        return None
    return value if value > 0 else None


async def resolve_commission_rates(db, order: dict) -> dict:
    """
    Returns {str(category_id): rate} plus the seller fallback under "seller"
    and the platform default under "default".
    """
    category_ids = {item.get("category_id") for item in order.get("items", [])}
    category_ids.discard(None)

    rates: dict = {"default": DEFAULT_COMMISSION_PERCENT, "seller": None}

    if category_ids:
        async for category in db.categories.find(
            {"_id": {"$in": list(category_ids)}},
            {"commission": 1},
        ):
            rates[str(category["_id"])] = _positive(category.get("commission"))

    seller_id = order.get("seller_id")
    if seller_id:
        seller = await db.users.find_one({"_id": seller_id}, {"commission_percent": 1})
        if seller:
            rates["seller"] = _positive(seller.get("commission_percent"))

    return rates


def line_commission_rate(item: dict, rates: dict) -> float:
    category_id = item.get("category_id")
    rate = rates.get(str(category_id)) if category_id is not None else None
    return rate or rates.get("seller") or rates.get("default") or DEFAULT_COMMISSION_PERCENT


def calculate_earnings(order: dict, rates: dict, *, calculated_at: datetime | None = None) -> dict:
    pricing = order.get("pricing") or {}
    items = order.get("items") or []

    lines = []
    commission = 0.0
    for item in items:
        gross = float(item["price"]) * int(item["quantity"])
        rate = line_commission_rate(item, rates)
        line_commission = gross * rate / 100
        commission += line_commission
        lines.append({
            "product_id": item.get("product_id"),
            "gross": money(gross),
            "commission_percent": rate,
            "commission": money(line_commission),
        })

    items_total = float(pricing.get("items_total", sum(line["gross"] for line in lines)))
    platform_commission = money(commission)

    half_tax = COMMISSION_TAX_PERCENT / 2
    cgst = money(platform_commission * half_tax / 100)
    sgst = money(platform_commission * half_tax / 100)
    total_tax = money(cgst + sgst)

    shipping_charges = money(pricing.get("shipping_charge", 0) or 0)
    penalty = money((order.get("earnings") or {}).get("penalty", 0) or 0)

    net = items_total - platform_commission - total_tax - penalty
    if DEDUCT_SHIPPING_FROM_EARNINGS:
        net -= shipping_charges

    effective_percent = (
        round(platform_commission / items_total * 100, 2) if items_total else 0.0
    )

    return {
        "commission_percent": effective_percent,
        "platform_commission": platform_commission,
        "cgst": cgst,
        "sgst": sgst,
        "total_tax": total_tax,
        "shipping_charges": shipping_charges,
        "shipping_deducted": DEDUCT_SHIPPING_FROM_EARNINGS,
        "penalty": penalty,
        "net_seller_earning": money(net),
        "lines": lines,
        "calculated_at": calculated_at or datetime.utcnow(),
    }


async def compute_earnings(db, order: dict, *, calculated_at: datetime | None = None) -> dict:
    rates = await resolve_commission_rates(db, order)
    earnings = calculate_earnings(order, rates, calculated_at=calculated_at)
    logger.debug(
        "EARNINGS_COMPUTED order=%s net=%s commission=%s",
        order.get("order_id"),
        earnings["net_seller_earning"],
        earnings["platform_commission"],
    )
    return earnings


def earnings_figures(earnings: dict) -> dict:
    """The monetary part of a snapshot, without timestamps."""
    return {
        key: earnings.get(key)
        for key in (
            "platform_commission",
            "total_tax",
            "shipping_charges",
            "net_seller_earning",
        )
    }
