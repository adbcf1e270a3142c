from sqlalchemy import Column, Integer, String, ForeignKey, DateTime
from app.core.clock import utcnow
from app.db.base import Base


class Subscription(Base):
    __tablename__ = "user_subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True)
    plan = Column(String, nullable=False, default="free")  # "free" | "pro"
    status = Column(String, nullable=False, default="active")  # "active" | "cancelled" | "expired"
    plan_duration = Column(String, nullable=True, default="month")  # "week" | "month" | "year"
    current_period_start = Column(DateTime, nullable=True)
    # Expiry is evaluated lazily against this on every read; nothing flips status to "expired".
    current_period_end = Column(DateTime, nullable=True)
    # Razorpay identifiers of the payment that granted the current period (if any)
    razorpay_order_id = Column(String, nullable=True)
    razorpay_payment_id = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
