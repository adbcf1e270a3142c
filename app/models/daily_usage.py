"""
Per-(user, UTC date) message counter. A new day gets a new row, so the free
quota resets without mutating yesterday's record.
"""
from sqlalchemy import CheckConstraint, Column, Integer, Date, DateTime, ForeignKey, UniqueConstraint
from app.core.clock import utcnow
from app.db.base import Base


class DailyUsage(Base):
    __tablename__ = "daily_usage"
    __table_args__ = (
        UniqueConstraint("user_id", "usage_date", name="uq_daily_usage_user_date"),
        CheckConstraint("messages_sent >= 0", name="ck_daily_usage_messages_sent_non_negative"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    usage_date = Column(Date, nullable=False)
    messages_sent = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=utcnow)

    def __repr__(self):
        return f"<DailyUsage(user_id={self.user_id}, date={self.usage_date}, sent={self.messages_sent})>"
