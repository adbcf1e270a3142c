from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, Boolean, Numeric, UniqueConstraint
from app.core.clock import utcnow
from app.db.base import Base


class PromoCode(Base):
    __tablename__ = "promo_codes"

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String, unique=True, nullable=False, index=True)  # Stored upper-cased
    discount_type = Column(String, nullable=False, default="percentage")  # "percentage" | "fixed"
    # Percentage points, or major currency units for "fixed"
    discount_value = Column(Numeric(10, 2), nullable=False, default=0)
    max_uses = Column(Integer, nullable=True)  # NULL = unlimited
    times_used = Column(Integer, nullable=False, default=0)
    valid_from = Column(DateTime, nullable=False, default=utcnow)
    valid_until = Column(DateTime, nullable=True)
    plan_duration = Column(String, nullable=False, default="month")
    is_active = Column(Boolean, nullable=False, default=True)
    created_by = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<PromoCode(code={self.code}, {self.discount_type}={self.discount_value}, used={self.times_used}/{self.max_uses})>"


class PromoRedemption(Base):
    """
    One row per (code, user). The unique constraint is what stops a user from
    redeeming twice; application-level checks are only a fast path.
    """

    __tablename__ = "promo_redemptions"
    __table_args__ = (UniqueConstraint("promo_code_id", "user_id", name="uq_promo_redemptions_code_user"),)

    id = Column(Integer, primary_key=True, index=True)
    promo_code_id = Column(Integer, ForeignKey("promo_codes.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    created_at = Column(DateTime, default=utcnow)
