"""
Checkout payload - what the storefront submits when a customer books a pickup.
Field names accept the legacy aliases older app builds still send
(service_name, tax_amount).
"""
from typing import Optional
from pydantic import AliasChoices, BaseModel, Field


class LineItemIn(BaseModel):
    """One cart line. line_total is recomputed server-side."""
    name: str = Field(..., min_length=1, validation_alias=AliasChoices("name", "service_name"))
    quantity: int = Field(default=1, ge=1)
    unit_price: float = Field(..., ge=0)
    line_total: Optional[float] = Field(default=None, ge=0)


class ChargesBreakdown(BaseModel):
    """Itemized charges as computed by the client. May disagree with the totals."""
    base_price: float = 0.0
    tax: float = Field(default=0.0, validation_alias=AliasChoices("tax", "tax_amount"))
    service_fee: float = 0.0
    delivery_fee: float = 0.0
    handling_fee: Optional[float] = None  # None -> configured default
    discount: float = 0.0


class CheckoutRequest(BaseModel):
    customer_id: Optional[str] = None
    customer_name: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    address_details: dict = Field(default_factory=dict)
    pickup_date: Optional[str] = None
    pickup_time: Optional[str] = None
    delivery_date: Optional[str] = None
    delivery_time: Optional[str] = None
    special_instructions: str = ""
    services: list[str] = Field(default_factory=list)
    line_items: list[LineItemIn] = Field(default_factory=list)
    charges_breakdown: ChargesBreakdown = Field(default_factory=ChargesBreakdown)
    total_price: Optional[float] = None
    discount_amount: float = 0.0
    final_amount: Optional[float] = None
    referral_code: Optional[str] = None


class StatusUpdateRequest(BaseModel):
    status: str
    reason: Optional[str] = None


class PaymentStatusRequest(BaseModel):
    payment_status: str


class RiderAssignRequest(BaseModel):
    rider_id: str = Field(..., min_length=1)


class RedeemReferralRequest(BaseModel):
    referral_code: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)
