from pydantic import BaseModel
from typing import Optional
from datetime import date, datetime
from decimal import Decimal


class SubscriptionResponse(BaseModel):
    plan: str  # Effective plan ("free" once a Pro period has lapsed)
    stored_plan: str
    status: str
    plan_duration: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    usage_date: date
    messages_sent_today: int
    daily_limit: Optional[int] = None  # None = unlimited
    messages_remaining: Optional[int] = None
    can_send: bool


class PromoValidateRequest(BaseModel):
    code: str


class PromoValidateResponse(BaseModel):
    valid: bool
    reason: Optional[str] = None
    message: Optional[str] = None
    promo_id: Optional[int] = None
    code: Optional[str] = None
    discount_type: Optional[str] = None
    discount_value: Optional[Decimal] = None
    plan_duration: Optional[str] = None
    is_free: Optional[bool] = None


class PromoRedeemRequest(BaseModel):
    promo_id: int


class PromoRedeemResponse(BaseModel):
    success: bool
    plan_duration: Optional[str] = None


class CreateOrderRequest(BaseModel):
    plan: str = "pro"
    currency: Optional[str] = "INR"  # "INR" | "USD"
    promo_id: Optional[int] = None


class CreateOrderResponse(BaseModel):
    order_id: str
    amount: int  # Minor units
    currency: str
    key_id: str


class VerifyPaymentRequest(BaseModel):
    razorpay_order_id: str
    razorpay_payment_id: str
    razorpay_signature: str


class VerifyPaymentResponse(BaseModel):
    success: bool
    plan_duration: Optional[str] = None
    already_applied: bool = False
