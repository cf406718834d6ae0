from pydantic import BaseModel, Field
from typing import List, Optional

from utils.order_state import OrderStatus


class ShippingAddress(BaseModel):
    full_name: str = Field(..., min_length=1)
    phone: str = Field(..., min_length=6)
    address_line1: str = Field(..., min_length=1)
    address_line2: Optional[str] = None
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    pincode: str = Field(..., min_length=4, max_length=10)
    landmark: Optional[str] = None


class OrderItemIn(BaseModel):
    product_id: str
    quantity: int = Field(1, gt=0)
    size: Optional[str] = None
    color: Optional[str] = None


class PlaceOrderRequest(BaseModel):
    shipping_address: ShippingAddress
    payment_method: str = "cod"
    use_cart: bool = True
    items: Optional[List[OrderItemIn]] = None
    # checkout one seller's items out of a multi-seller cart
    seller_id: Optional[str] = None
    notes: str = ""
    idempotency_key: Optional[str] = None


class TrackingInfo(BaseModel):
    courier: Optional[str] = None
    tracking_id: Optional[str] = None
    url: Optional[str] = None


class StatusUpdateRequest(BaseModel):
    status: OrderStatus
    comment: Optional[str] = None
    tracking: Optional[TrackingInfo] = None


class CancelOrderRequest(BaseModel):
    reason: str = Field(..., min_length=1)


class ReturnRequest(BaseModel):
    reason: str = Field(..., min_length=1)
