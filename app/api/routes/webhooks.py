"""
Webhooks for the payment provider (Razorpay).

Register https://your-backend.com/webhooks/razorpay in the Razorpay dashboard
with the payment.captured, order.paid and payment.failed events.
"""
import json
import logging
from fastapi import APIRouter, Request, HTTPException, status, Depends
from sqlalchemy.orm import Session
from app.core.clock import SystemClock, get_clock
from app.db.session import get_db
from app.services import payments

logger = logging.getLogger(__name__)

router = APIRouter()

CAPTURE_EVENTS = ("payment.captured", "order.paid")


def _payment_entity(data: dict) -> dict:
    """payload.payment.entity, or {} when any level is missing or not an object."""
    node = data
    for key in ("payload", "payment", "entity"):
        node = node.get(key) if isinstance(node, dict) else None
    return node if isinstance(node, dict) else {}


def _string_field(entity: dict, key: str) -> str | None:
    value = entity.get(key)
    return value if isinstance(value, str) and value else None


def _notes_user_id(entity: dict) -> int | None:
    notes = entity.get("notes") or {}
    if not isinstance(notes, dict):
        return None
    try:
        return int(notes.get("user_id"))
    except (TypeError, ValueError):
        return None


@router.post("/razorpay")
async def razorpay_webhook(
    request: Request,
    db: Session = Depends(get_db),
    clock: SystemClock = Depends(get_clock),
):
    """
    Razorpay webhook. The signature is an HMAC of the raw body, so it is
    checked before the payload is parsed. Replays of an already applied
    capture are acknowledged without changing anything.
    """
    payload = await request.body()
    signature = request.headers.get("x-razorpay-signature")

    if not payments.verify_webhook_signature(payload, signature):
        logger.warning("[Razorpay webhook] rejected: invalid or missing signature")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid webhook signature"
        )

    try:
        data = json.loads(payload)
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON")
    if not isinstance(data, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Webhook body must be a JSON object")

    event_type = data.get("event")
    entity = _payment_entity(data)
    order_id = _string_field(entity, "order_id")
    payment_id = _string_field(entity, "id")

    logger.info("[Razorpay webhook] event=%s order=%s payment=%s", event_type, order_id, payment_id)

    if event_type in CAPTURE_EVENTS:
        if not order_id or not payment_id:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing order or payment id")
        result = payments.apply_captured_payment(
            db,
            order_id,
            payment_id,
            clock.now(),
            user_id=_notes_user_id(entity),
            allow_unknown_order=True,
            amount=entity.get("amount"),
            currency=entity.get("currency"),
        )
        if not result.success:
            # Nothing to credit; acknowledge so Razorpay stops retrying.
            logger.warning("[Razorpay webhook] capture for order %s not applied: %s", order_id, result.reason)
            return {"status": "ignored", "reason": result.reason}
        return {"status": "success", "already_applied": result.already_applied}

    if event_type == "payment.failed":
        payments.mark_payment_failed(db, order_id, clock.now())

    return {"status": "success"}
