"""
Promo codes from the user's side: preview a code, redeem a full-discount code.
Partially discounted codes are applied at /api/payments/create-order.
"""
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session
from app.core.clock import SystemClock, get_clock
from app.db.session import get_db
from app.dependencies.auth import get_current_user_id
from app.schemas.billing import (
    PromoRedeemRequest,
    PromoRedeemResponse,
    PromoValidateRequest,
    PromoValidateResponse,
)
from app.services.promo import INVALID, redeem_promo, validate_promo

router = APIRouter()


@router.post("/promo/validate", response_model=PromoValidateResponse)
def validate_promo_code(
    request: PromoValidateRequest,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
    clock: SystemClock = Depends(get_clock),
):
    """Check a promo code. Invalid codes are a normal response, not an error."""
    if not request.code.strip():
        return {"valid": False, "reason": INVALID, "message": "Enter a promo code"}

    validation = validate_promo(db, user_id, request.code, clock.now())
    if not validation.valid:
        return {"valid": False, "reason": validation.reason, "message": validation.message}

    terms = validation.terms
    return {
        "valid": True,
        "promo_id": terms.promo_id,
        "code": terms.code,
        "discount_type": terms.discount_type,
        "discount_value": terms.discount_value,
        "plan_duration": terms.plan_duration,
        "is_free": terms.is_free,
    }


@router.post("/promo/redeem", response_model=PromoRedeemResponse)
def redeem_promo_code(
    request: PromoRedeemRequest,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
    clock: SystemClock = Depends(get_clock),
):
    result = redeem_promo(db, user_id, request.promo_id, clock.now())
    if not result.success:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"reason": result.reason, "message": result.message},
        )
    return {"success": True, "plan_duration": result.plan_duration}
