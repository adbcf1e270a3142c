"""
Razorpay checkout: create an order for the Pro upgrade, then verify the
signature the checkout widget hands back.
"""
import logging
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session
from app.core.clock import SystemClock, get_clock
from app.db.session import get_db
from app.dependencies.auth import get_current_user_id
from app.schemas.billing import (
    CreateOrderRequest,
    CreateOrderResponse,
    VerifyPaymentRequest,
    VerifyPaymentResponse,
)
from app.services import payments

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/create-order", response_model=CreateOrderResponse)
async def create_order(
    request: CreateOrderRequest,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
    clock: SystemClock = Depends(get_clock),
):
    """Create a Razorpay order for Pro, optionally discounted by a promo code."""
    try:
        return await payments.create_order(
            db, user_id, request.plan, request.currency, request.promo_id, clock.now()
        )
    except payments.OrderError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except payments.PaymentGatewayError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))


@router.post("/verify", response_model=VerifyPaymentResponse)
def verify_payment(
    request: VerifyPaymentRequest,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
    clock: SystemClock = Depends(get_clock),
):
    """
    Verify a completed checkout and upgrade the user.
    The webhook may have applied the same capture already; that is still a success.
    """
    if not payments.verify_payment_signature(
        request.razorpay_order_id, request.razorpay_payment_id, request.razorpay_signature
    ):
        logger.warning("[Razorpay] signature mismatch for order %s (user %s)", request.razorpay_order_id, user_id)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Could not verify payment"
        )

    result = payments.apply_captured_payment(
        db,
        request.razorpay_order_id,
        request.razorpay_payment_id,
        clock.now(),
        user_id=user_id,
    )
    if not result.success:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Could not verify payment"
        )

    return {
        "success": True,
        "plan_duration": result.plan_duration,
        "already_applied": result.already_applied,
    }
