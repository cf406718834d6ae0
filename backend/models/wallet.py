from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel


class LedgerEntryType(str, Enum):
    EARNING_CREDIT = "EARNING_CREDIT"
    EARNING_REVERSAL = "EARNING_REVERSAL"
    PAYOUT_HOLD = "PAYOUT_HOLD"
    PAYOUT_RELEASE = "PAYOUT_RELEASE"
    PAYOUT_SETTLED = "PAYOUT_SETTLED"


class SellerWallet(BaseModel):
    seller_id: str

    # earned and not yet paid out
    pending_balance: float = 0
    # part of pending not locked in an open payout
    available_balance: float = 0
    locked_balance: float = 0

    total_earnings: float = 0
    total_withdrawn: float = 0

    last_payout_date: Optional[datetime] = None
    last_payout_amount: float = 0
