from pydantic import BaseModel, Field
from typing import Optional


class StockAdjustment(BaseModel):
    delta: int
    reason: Optional[str] = None


class CommissionUpdate(BaseModel):
    commission: float = Field(..., ge=0, le=100)
