import os
from dotenv import load_dotenv

load_dotenv()


def _flag(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


# =====================================================
# ENV
# =====================================================
ENV = os.getenv("ENV", "development")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# =====================================================
# DATABASE
# =====================================================
MONGO_URI = os.getenv("MONGO_URI") or os.getenv("MONGODB_URI")
MONGO_DB_NAME = os.getenv("MONGO_DB_NAME", "marketly")

# =====================================================
# JWT
# =====================================================
JWT_SECRET = os.getenv("JWT_SECRET")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
ACCESS_TOKEN_DAYS = int(os.getenv("ACCESS_TOKEN_DAYS", 30))

# =====================================================
# SECRETS
# =====================================================
BANK_DATA_ENCRYPTION_KEY = os.getenv("BANK_DATA_ENCRYPTION_KEY")

# =====================================================
# PRICING
# =====================================================
FREE_SHIPPING_THRESHOLD = float(os.getenv("FREE_SHIPPING_THRESHOLD", 500))
FLAT_SHIPPING_CHARGE = float(os.getenv("FLAT_SHIPPING_CHARGE", 40))
PREPAID_DISCOUNT_PERCENT = float(os.getenv("PREPAID_DISCOUNT_PERCENT", 3))
ORDER_TAX_PERCENT = float(os.getenv("ORDER_TAX_PERCENT", 0))

# =====================================================
# EARNINGS
# =====================================================
DEFAULT_COMMISSION_PERCENT = float(os.getenv("DEFAULT_COMMISSION_PERCENT", 10))
# GST on platform commission, split evenly into CGST + SGST
COMMISSION_TAX_PERCENT = float(os.getenv("COMMISSION_TAX_PERCENT", 18))
DEDUCT_SHIPPING_FROM_EARNINGS = _flag("DEDUCT_SHIPPING_FROM_EARNINGS", False)

# =====================================================
# RETURNS / STOCK
# =====================================================
RETURN_WINDOW_DAYS = int(os.getenv("RETURN_WINDOW_DAYS", 7))
RESTOCK_ON_RETURN = _flag("RESTOCK_ON_RETURN", False)
LOW_STOCK_THRESHOLD = int(os.getenv("LOW_STOCK_THRESHOLD", 10))

# =====================================================
# CONCURRENCY / WORKERS
# =====================================================
MAX_CONCURRENCY_RETRIES = int(os.getenv("MAX_CONCURRENCY_RETRIES", 3))
BATCH_RECLAIM_MINUTES = int(os.getenv("BATCH_RECLAIM_MINUTES", 15))

# =====================================================
# CORS
# =====================================================
CORS_ALLOWED_ORIGINS = os.getenv("CORS_ALLOWED_ORIGINS", "").split(",")


def validate_production_env() -> None:
    if (ENV or "").lower() != "production":
        return

    required = {
        "JWT_SECRET": JWT_SECRET,
        "BANK_DATA_ENCRYPTION_KEY": BANK_DATA_ENCRYPTION_KEY,
        "MONGODB_URI": MONGO_URI,
    }

    invalid = []
    for key, value in required.items():
        val = (value or "").strip()
        if not val or val.startswith("CHANGE_THIS"):
            invalid.append(key)

    if invalid:
        raise RuntimeError(f"Production env misconfigured. Invalid keys: {', '.join(sorted(invalid))}")
