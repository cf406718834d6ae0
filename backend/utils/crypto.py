import base64
import hashlib

from cryptography.fernet import Fernet, InvalidToken

from config.env import BANK_DATA_ENCRYPTION_KEY, JWT_SECRET
from utils.errors import ValidationError


def _build_fernet() -> Fernet:
    seed = (BANK_DATA_ENCRYPTION_KEY or JWT_SECRET or "").strip()
    if not seed:
        raise RuntimeError("Bank data encryption key is not configured")
    key = base64.urlsafe_b64encode(hashlib.sha256(seed.encode("utf-8")).digest())
    return Fernet(key)


def encrypt_sensitive_value(value: str) -> str:
    if not value:
        raise ValidationError("Sensitive value missing")
    token = _build_fernet().encrypt(value.encode("utf-8"))
    return token.decode("utf-8")


def decrypt_sensitive_value(token: str) -> str:
    if not token:
        raise ValidationError("Encrypted sensitive value missing")
    try:
        raw = _build_fernet().decrypt(token.encode("utf-8"))
    except InvalidToken:
        raise ValidationError("Invalid encrypted sensitive value")
    return raw.decode("utf-8")


def mask_account_number(value: str | None) -> str | None:
    if not value:
        return None
    digits = str(value).strip()
    if len(digits) <= 4:
        return "*" * len(digits)
    return "*" * (len(digits) - 4) + digits[-4:]
