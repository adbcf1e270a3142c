"""
Admin routes: user listing, subscription overrides, admin roles, data wipes
and promo code management. Every route requires the "admin" role.
"""
import logging
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import func, or_
from sqlalchemy.orm import Session
from typing import List
from app.core.clock import SystemClock, get_clock
from app.core.plan_limits import PLAN_DURATIONS, PLANS, SUBSCRIPTION_STATUSES
from app.db.session import get_db
from app.dependencies.auth import require_admin
from app.models.chat_message import ChatMessage
from app.models.daily_usage import DailyUsage
from app.models.payment import Payment
from app.models.promo_code import PromoCode
from app.models.subscription import Subscription
from app.models.user import User
from app.models.user_role import ADMIN_ROLE, UserRole
from app.schemas.admin import (
    AdminStatsResponse,
    AdminUserResponse,
    PromoCodeCreate,
    PromoCodeResponse,
    PromoCodeUpdate,
    SetSubscriptionRequest,
)
from app.api.routes.users import entitlement_payload
from app.services import promo as promo_service
from app.services.entitlements import delete_subscription, get_entitlement, set_subscription
from app.services.user_data import delete_user_data

logger = logging.getLogger(__name__)

router = APIRouter()

DISCOUNT_TYPES = ("percentage", "fixed")


def _get_user_or_404(db: Session, user_id: int) -> User:
    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return user


def _validate_promo_fields(fields: dict) -> None:
    if "discount_type" in fields and fields["discount_type"] not in DISCOUNT_TYPES:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="discount_type must be percentage or fixed")
    if fields.get("discount_value") is not None and fields["discount_value"] < 0:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="discount_value cannot be negative")
    if fields.get("max_uses") is not None and fields["max_uses"] < 1:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="max_uses must be at least 1")
    if "plan_duration" in fields and fields["plan_duration"] not in PLAN_DURATIONS:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid plan_duration")
    if "code" in fields and not (fields["code"] or "").strip():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Code cannot be empty")


@router.get("/users", response_model=List[AdminUserResponse])
def list_users(
    limit: int = 100,
    offset: int = 0,
    db: Session = Depends(get_db),
    admin_id: int = Depends(require_admin),
    clock: SystemClock = Depends(get_clock),
):
    now = clock.now()
    users = db.query(User).order_by(User.id.asc()).offset(offset).limit(min(limit, 500)).all()
    roles = {}
    for role in db.query(UserRole).filter(UserRole.user_id.in_([u.id for u in users])).all():
        roles.setdefault(role.user_id, []).append(role.role)

    result = []
    for user in users:
        entitlement = get_entitlement(db, user.id, now)
        result.append({
            "id": user.id,
            "email": user.email,
            "roles": roles.get(user.id, []),
            "plan": entitlement.plan,
            "status": entitlement.status,
            "plan_duration": entitlement.plan_duration,
            "current_period_end": entitlement.current_period_end,
            "messages_sent_today": entitlement.messages_sent_today,
            "created_at": user.created_at,
        })
    return result


@router.get("/stats", response_model=AdminStatsResponse)
def get_stats(
    db: Session = Depends(get_db),
    admin_id: int = Depends(require_admin),
    clock: SystemClock = Depends(get_clock),
):
    now = clock.now()
    total_users = db.query(func.count(User.id)).scalar() or 0
    # Same rule as is_effectively_pro, expressed as a filter
    pro_users = db.query(func.count(Subscription.id)).filter(
        Subscription.plan == "pro",
        Subscription.status == "active",
        or_(Subscription.current_period_end.is_(None), Subscription.current_period_end > now),
    ).scalar() or 0

    return {
        "total_users": total_users,
        "pro_users": pro_users,
        "free_users": total_users - pro_users,
        "total_messages": db.query(func.count(ChatMessage.id)).scalar() or 0,
        "messages_today": db.query(func.coalesce(func.sum(DailyUsage.messages_sent), 0)).filter(
            DailyUsage.usage_date == now.date()
        ).scalar() or 0,
        "total_promos": db.query(func.count(PromoCode.id)).scalar() or 0,
        "paid_orders": db.query(func.count(Payment.id)).filter(Payment.status == "paid").scalar() or 0,
    }


@router.post("/subscriptions")
def update_subscription(
    request: SetSubscriptionRequest,
    db: Session = Depends(get_db),
    admin_id: int = Depends(require_admin),
    clock: SystemClock = Depends(get_clock),
):
    """Set a user's plan. The period restarts now, replacing any remaining time."""
    if request.plan not in PLANS:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid plan")
    if request.status not in SUBSCRIPTION_STATUSES:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid status")
    if request.plan_duration is not None and request.plan_duration not in PLAN_DURATIONS:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid plan_duration")
    _get_user_or_404(db, request.user_id)

    now = clock.now()
    set_subscription(db, request.user_id, request.plan, request.status, request.plan_duration, now)
    logger.info("Admin %s set user %s to %s/%s", admin_id, request.user_id, request.plan, request.status)
    return {"success": True, "subscription": entitlement_payload(get_entitlement(db, request.user_id, now))}


@router.delete("/subscriptions/{user_id}")
def remove_subscription(
    user_id: int,
    db: Session = Depends(get_db),
    admin_id: int = Depends(require_admin),
):
    if not delete_subscription(db, user_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Subscription not found")
    logger.info("Admin %s deleted subscription of user %s", admin_id, user_id)
    return {"success": True}


@router.post("/users/{user_id}/admin")
def grant_admin(
    user_id: int,
    db: Session = Depends(get_db),
    admin_id: int = Depends(require_admin),
):
    """Grant the admin role. Granting it twice is a no-op."""
    _get_user_or_404(db, user_id)
    existing = db.query(UserRole).filter(UserRole.user_id == user_id, UserRole.role == ADMIN_ROLE).first()
    if not existing:
        db.add(UserRole(user_id=user_id, role=ADMIN_ROLE))
        db.commit()
        logger.info("Admin %s granted admin to user %s", admin_id, user_id)
    return {"success": True}


@router.delete("/users/{user_id}/admin")
def revoke_admin(
    user_id: int,
    db: Session = Depends(get_db),
    admin_id: int = Depends(require_admin),
):
    if user_id == admin_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="You cannot remove your own admin role")
    deleted = db.query(UserRole).filter(
        UserRole.user_id == user_id, UserRole.role == ADMIN_ROLE
    ).delete(synchronize_session=False)
    db.commit()
    if not deleted:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User is not an admin")
    logger.info("Admin %s revoked admin from user %s", admin_id, user_id)
    return {"success": True}


@router.delete("/users/{user_id}/data")
def wipe_user_data(
    user_id: int,
    db: Session = Depends(get_db),
    admin_id: int = Depends(require_admin),
):
    """Delete a user's chats and usage. Their subscription is kept."""
    _get_user_or_404(db, user_id)
    deleted = delete_user_data(db, user_id, include_subscription=False)
    logger.info("Admin %s wiped data of user %s", admin_id, user_id)
    return {"success": True, "deleted": deleted}


@router.get("/promo-codes", response_model=List[PromoCodeResponse])
def list_promo_codes(
    db: Session = Depends(get_db),
    admin_id: int = Depends(require_admin),
):
    return promo_service.list_promos(db)


@router.post("/promo-codes", response_model=PromoCodeResponse, status_code=status.HTTP_201_CREATED)
def create_promo_code(
    request: PromoCodeCreate,
    db: Session = Depends(get_db),
    admin_id: int = Depends(require_admin),
    clock: SystemClock = Depends(get_clock),
):
    data = request.model_dump()
    _validate_promo_fields(data)
    try:
        return promo_service.create_promo(db, data, admin_id, clock.now())
    except promo_service.PromoConflictError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))


@router.patch("/promo-codes/{promo_id}", response_model=PromoCodeResponse)
def update_promo_code(
    promo_id: int,
    request: PromoCodeUpdate,
    db: Session = Depends(get_db),
    admin_id: int = Depends(require_admin),
):
    updates = request.model_dump(exclude_unset=True)
    # Only max_uses and valid_until can be cleared
    updates = {
        key: value for key, value in updates.items()
        if value is not None or key in ("max_uses", "valid_until")
    }
    _validate_promo_fields(updates)
    try:
        promo = promo_service.update_promo(db, promo_id, updates)
    except promo_service.PromoConflictError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    if not promo:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Promo code not found")
    return promo


@router.delete("/promo-codes/{promo_id}")
def delete_promo_code(
    promo_id: int,
    db: Session = Depends(get_db),
    admin_id: int = Depends(require_admin),
):
    if not promo_service.delete_promo(db, promo_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Promo code not found")
    return {"success": True}
