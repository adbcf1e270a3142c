from app.models.user import User
from app.models.user_role import UserRole
from app.models.subscription import Subscription
from app.models.daily_usage import DailyUsage
from app.models.promo_code import PromoCode, PromoRedemption
from app.models.payment import Payment
from app.models.chat_session import ChatSession, ImportedChat
from app.models.chat_message import ChatMessage

__all__ = [
    "User",
    "UserRole",
    "Subscription",
    "DailyUsage",
    "PromoCode",
    "PromoRedemption",
    "Payment",
    "ChatSession",
    "ImportedChat",
    "ChatMessage",
]
