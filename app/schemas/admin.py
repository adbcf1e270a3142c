from pydantic import BaseModel
from typing import List, Optional
from datetime import datetime
from decimal import Decimal


class AdminUserResponse(BaseModel):
    id: int
    email: str
    roles: List[str]
    plan: str  # Effective plan
    status: str
    plan_duration: Optional[str] = None
    current_period_end: Optional[datetime] = None
    messages_sent_today: int
    created_at: Optional[datetime] = None


class AdminStatsResponse(BaseModel):
    total_users: int
    pro_users: int  # Effectively Pro right now
    free_users: int
    total_messages: int
    messages_today: int  # Counted sends today (UTC)
    total_promos: int
    paid_orders: int


class SetSubscriptionRequest(BaseModel):
    user_id: int
    plan: str  # "free" | "pro"
    status: str = "active"
    plan_duration: Optional[str] = "month"


class PromoCodeCreate(BaseModel):
    code: str
    discount_type: str = "percentage"  # "percentage" | "fixed"
    discount_value: Decimal = Decimal("0")
    max_uses: Optional[int] = None
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    plan_duration: str = "month"
    is_active: bool = True


class PromoCodeUpdate(BaseModel):
    code: Optional[str] = None
    discount_type: Optional[str] = None
    discount_value: Optional[Decimal] = None
    max_uses: Optional[int] = None
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    plan_duration: Optional[str] = None
    is_active: Optional[bool] = None


class PromoCodeResponse(BaseModel):
    id: int
    code: str
    discount_type: str
    discount_value: Decimal
    max_uses: Optional[int] = None
    times_used: int
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    plan_duration: str
    is_active: bool
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True
