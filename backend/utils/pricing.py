from config.constants import PREPAID_PAYMENT_METHODS
from config.env import (
    FLAT_SHIPPING_CHARGE,
    FREE_SHIPPING_THRESHOLD,
    ORDER_TAX_PERCENT,
    PREPAID_DISCOUNT_PERCENT,
)


def money(value: float) -> float:
    return round(float(value), 2)


def compute_pricing(items: list[dict], payment_method: str) -> dict:
    """
    Price breakdown for a set of order lines.
    total = items_total + shipping_charge - discount + tax
    """
    items_total = money(sum(float(item["price"]) * int(item["quantity"]) for item in items))

    shipping_charge = 0.0 if items_total >= FREE_SHIPPING_THRESHOLD else money(FLAT_SHIPPING_CHARGE)

    discount = 0.0
    if payment_method in PREPAID_PAYMENT_METHODS:
        discount = money(items_total * PREPAID_DISCOUNT_PERCENT / 100)

    tax = money(items_total * ORDER_TAX_PERCENT / 100) if ORDER_TAX_PERCENT else 0.0

    return {
        "items_total": items_total,
        "shipping_charge": shipping_charge,
        "discount": discount,
        "tax": tax,
        "total": money(items_total + shipping_charge - discount + tax),
    }
