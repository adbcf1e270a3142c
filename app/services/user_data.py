"""
"Delete all my data": removes everything tied to a user except the account
itself and their promo redemptions, which keep a code from being reused.
"""
import logging
from typing import Dict

from sqlalchemy.orm import Session

from app.models.chat_message import ChatMessage
from app.models.chat_session import ChatSession, ImportedChat
from app.models.daily_usage import DailyUsage
from app.services.entitlements import delete_subscription

logger = logging.getLogger(__name__)


def delete_user_data(db: Session, user_id: int, include_subscription: bool = True) -> Dict[str, int]:
    """
    Delete chat history, imports, session and usage in one transaction.

    The subscription goes too unless `include_subscription` is False (admin
    wipes keep what the user paid for).
    """
    counts = {}
    try:
        for name, model in (
            ("messages", ChatMessage),
            ("imports", ImportedChat),
            ("sessions", ChatSession),
            ("usage_days", DailyUsage),
        ):
            counts[name] = db.query(model).filter(model.user_id == user_id).delete(synchronize_session=False)
        if include_subscription:
            counts["subscriptions"] = int(delete_subscription(db, user_id, commit=False))
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.expire_all()
    logger.info("[Data] wiped data for user %s: %s", user_id, counts)
    return counts
