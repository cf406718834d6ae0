import secrets
import string
import time

from config.constants import ORDER_ID_PREFIX, PAYOUT_ID_PREFIX

_ALPHABET = string.digits + string.ascii_uppercase


def _base36(number: int) -> str:
    if number == 0:
        return "0"
    digits = []
    while number:
        number, rem = divmod(number, 36)
        digits.append(_ALPHABET[rem])
    return "".join(reversed(digits))


def _random_suffix(length: int) -> str:
    return "".join(secrets.choice(_ALPHABET) for _ in range(length))


def generate_order_id() -> str:
    return f"{ORDER_ID_PREFIX}{_base36(int(time.time() * 1000))}{_random_suffix(4)}"


def generate_payout_transaction_id() -> str:
    return f"{PAYOUT_ID_PREFIX}{_base36(int(time.time() * 1000))}{_random_suffix(9)}"
