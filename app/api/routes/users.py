from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session
from app.core.clock import SystemClock, get_clock
from app.db.session import get_db
from app.dependencies.auth import get_current_user_id, is_admin
from app.models.user import User
from app.schemas.billing import SubscriptionResponse
from app.services.entitlements import Entitlement, get_entitlement

router = APIRouter()


def entitlement_payload(entitlement: Entitlement) -> dict:
    return {
        "plan": entitlement.plan,
        "stored_plan": entitlement.stored_plan,
        "status": entitlement.status,
        "plan_duration": entitlement.plan_duration,
        "current_period_start": entitlement.current_period_start,
        "current_period_end": entitlement.current_period_end,
        "usage_date": entitlement.usage_date,
        "messages_sent_today": entitlement.messages_sent_today,
        "daily_limit": entitlement.daily_limit,
        "messages_remaining": entitlement.messages_remaining,
        "can_send": entitlement.can_send,
    }


@router.get("/me")
def get_current_user(
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id)
):
    """Get current user profile"""
    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="User not found"
        )

    return {
        "id": user.id,
        "email": user.email,
        "is_admin": is_admin(db, user.id),
        "created_at": user.created_at.isoformat() if user.created_at else None
    }


@router.get("/me/subscription", response_model=SubscriptionResponse)
def get_subscription(
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
    clock: SystemClock = Depends(get_clock),
):
    """
    Plan and today's usage. Pro periods that have ended read back as
    plan="free", status="expired" without anything being written.
    """
    return entitlement_payload(get_entitlement(db, user_id, clock.now()))
