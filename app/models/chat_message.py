"""
Model for messages exchanged in the impersonation chat (user and model turns).
"""
from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, Text
from app.core.clock import utcnow
from app.db.base import Base


class ChatMessage(Base):
    __tablename__ = "chat_messages"

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(Integer, ForeignKey("chat_sessions.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    role = Column(String, nullable=False)  # "user" | "assistant"
    content = Column(Text, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)

    def __repr__(self):
        return f"<ChatMessage(id={self.id}, role={self.role}, text={self.content[:30] if self.content else 'None'}...)>"
