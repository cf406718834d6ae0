# backend/config/constants.py

# -----------------------------
# ROLES
# -----------------------------

ROLE_BUYER = "buyer"
ROLE_SELLER = "seller"
ROLE_ADMIN = "admin"
ROLE_SYSTEM = "system"

# -----------------------------
# PAYMENT
# -----------------------------

PAYMENT_COD = "cod"
PAYMENT_ONLINE = "online"
PAYMENT_WALLET = "wallet"

PAYMENT_METHODS = {PAYMENT_COD, PAYMENT_ONLINE, PAYMENT_WALLET}
PREPAID_PAYMENT_METHODS = {PAYMENT_ONLINE, PAYMENT_WALLET}

PAYMENT_PENDING = "pending"
PAYMENT_COMPLETED = "completed"
PAYMENT_REFUNDED = "refunded"

# -----------------------------
# ORDER PAYOUT LINKAGE
# -----------------------------

ORDER_PAYOUT_NONE = "none"
ORDER_PAYOUT_UPCOMING = "upcoming"
ORDER_PAYOUT_BATCHED = "batched"
ORDER_PAYOUT_COMPLETED = "completed"
ORDER_PAYOUT_FAILED = "failed"
ORDER_PAYOUT_REVERSED = "reversed"

# -----------------------------
# IDENTIFIERS
# -----------------------------

ORDER_ID_PREFIX = "ORD"
PAYOUT_ID_PREFIX = "PAYOUT"

# -----------------------------
# PAYOUT DESTINATION
# -----------------------------

PAYOUT_MODE_BANK = "bank"
PAYOUT_MODE_UPI = "upi"

# -----------------------------
# RETURNS
# -----------------------------

RETURN_REQUEST_PENDING = "pending"
RETURN_REQUEST_COMPLETED = "completed"
