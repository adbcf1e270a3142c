from sqlalchemy import Column, Integer, String, ForeignKey, DateTime
from app.core.clock import utcnow
from app.db.base import Base


class Payment(Base):
    """
    One row per Razorpay order created for a Pro upgrade.

    provider_payment_id is unique: it is the idempotency key that keeps the
    webhook and the synchronous verify call from crediting the same capture twice.
    """

    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)

    provider = Column(String, nullable=False, default="razorpay")
    order_id = Column(String, nullable=False, unique=True, index=True)
    provider_payment_id = Column(String, nullable=True, unique=True, index=True)

    # Amount in minor units (paise / cents), as sent to Razorpay
    amount = Column(Integer, nullable=False)
    currency = Column(String, nullable=False)
    plan = Column(String, nullable=False, default="pro")
    plan_duration = Column(String, nullable=False, default="month")
    promo_code_id = Column(Integer, ForeignKey("promo_codes.id", ondelete="SET NULL"), nullable=True)

    status = Column(String, nullable=False, default="created")  # "created" | "paid" | "failed"

    paid_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
