from pydantic import BaseModel, Field, model_validator
from typing import List, Optional

from config.constants import PAYOUT_MODE_BANK, PAYOUT_MODE_UPI


class PaymentDestination(BaseModel):
    payment_mode: str = PAYOUT_MODE_BANK
    account_holder_name: Optional[str] = None
    account_number: Optional[str] = None
    ifsc_code: Optional[str] = None
    bank_name: Optional[str] = None
    upi_id: Optional[str] = None

    @model_validator(mode="after")
    def check_destination(self):
        if self.payment_mode == PAYOUT_MODE_BANK:
            if not self.account_number or not self.ifsc_code:
                raise ValueError("Bank payouts need account_number and ifsc_code")
        elif self.payment_mode == PAYOUT_MODE_UPI:
            if not self.upi_id:
                raise ValueError("UPI payouts need upi_id")
        else:
            raise ValueError(f"Unsupported payment_mode: {self.payment_mode}")
        return self


class PayoutRequest(BaseModel):
    order_ids: Optional[List[str]] = None
    destination: Optional[PaymentDestination] = None
    notes: Optional[str] = None


class PayoutComplete(BaseModel):
    gateway_transaction_id: str = Field(..., min_length=1)


class PayoutFail(BaseModel):
    reason: str = Field(..., min_length=1)
    code: Optional[str] = None


class PayoutCancel(BaseModel):
    reason: Optional[str] = None
