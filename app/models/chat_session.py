"""
Models for the impersonation chat: the per-user session built from an
uploaded export, the rolling window of imported messages, and the live chat.
"""
from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, Text
from app.core.clock import utcnow
from app.db.base import Base


class ChatSession(Base):
    __tablename__ = "chat_sessions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True)
    partner_name = Column(String, nullable=False)  # Participant the model impersonates
    me_name = Column(String, nullable=False)
    memory_summary = Column(Text, nullable=False, default="")
    partner_style = Column(Text, nullable=False, default="")
    style_profile = Column(Text, nullable=False, default="")  # How the uploader writes
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def __repr__(self):
        return f"<ChatSession(id={self.id}, user_id={self.user_id}, partner={self.partner_name})>"


class ImportedChat(Base):
    __tablename__ = "imported_chats"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True)
    session_id = Column(Integer, ForeignKey("chat_sessions.id", ondelete="CASCADE"), nullable=False)
    recent_context = Column(Text, nullable=False, default="")  # "sender: text" lines, oldest first
    created_at = Column(DateTime, default=utcnow, nullable=False)
