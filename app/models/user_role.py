"""
Role grants. A row with role="admin" unlocks the /admin routes for that user.
"""
from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, UniqueConstraint
from app.core.clock import utcnow
from app.db.base import Base

ADMIN_ROLE = "admin"


class UserRole(Base):
    __tablename__ = "user_roles"
    __table_args__ = (UniqueConstraint("user_id", "role", name="uq_user_roles_user_role"),)

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    role = Column(String, nullable=False)  # "admin" | "user"
    created_at = Column(DateTime, default=utcnow)
