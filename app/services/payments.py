"""
Razorpay integration: order creation, signature checks and capture handling.

A capture can reach us twice (the client's verify call and the
payment.captured webhook), in either order and possibly at the same time.
Both paths go through `apply_captured_payment`, which flips the order row to
"paid" with a conditional UPDATE. Only the caller that wins the flip
extends the subscription; the other one is a successful no-op.
"""
import hashlib
import hmac
import logging
import os
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import httpx
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.plan_limits import DEFAULT_PLAN_DURATION, PRO_PRICE_MINOR
from app.models.payment import Payment
from app.models.promo_code import PromoCode
from app.services.entitlements import activate_pro, get_subscription, is_effectively_pro
from app.services.promo import apply_discount, consume_promo, validate_promo_id

logger = logging.getLogger(__name__)

# Strip whitespace to avoid invisible copy/paste errors.
RAZORPAY_KEY_ID = os.getenv("RAZORPAY_KEY_ID", "").strip()
RAZORPAY_KEY_SECRET = os.getenv("RAZORPAY_KEY_SECRET", "").strip()
# Razorpay lets the webhook secret differ from the API secret; fall back to the API secret.
RAZORPAY_WEBHOOK_SECRET = (os.getenv("RAZORPAY_WEBHOOK_SECRET") or RAZORPAY_KEY_SECRET).strip()
RAZORPAY_API_URL = os.getenv("RAZORPAY_API_URL", "https://api.razorpay.com/v1").rstrip("/")
GATEWAY_TIMEOUT = 15.0


class OrderError(Exception):
    """The order request itself is not acceptable (bad plan, unusable promo, ...)."""


class PaymentGatewayError(Exception):
    def __init__(self, message: str, status_code: int = 502):
        super().__init__(message)
        self.status_code = status_code


@dataclass
class OrderQuote:
    plan: str
    amount: int  # minor units
    currency: str
    plan_duration: str
    promo_code_id: Optional[int] = None


@dataclass
class PaymentResult:
    success: bool
    user_id: Optional[int] = None
    plan_duration: Optional[str] = None
    already_applied: bool = False
    reason: Optional[str] = None


def razorpay_configured() -> bool:
    return bool(RAZORPAY_KEY_ID and RAZORPAY_KEY_SECRET)


def _hmac_sha256_hex(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def _signature_matches(expected: str, signature: str) -> bool:
    # Bytes, since compare_digest raises TypeError on non-ASCII str
    return hmac.compare_digest(expected.encode(), signature.strip().encode("utf-8", "replace"))


def verify_payment_signature(
    order_id: str,
    payment_id: str,
    signature: Optional[str],
    secret: Optional[str] = None,
) -> bool:
    """
    Checkout signature: hex HMAC-SHA256 of "<order_id>|<payment_id>" keyed
    with the API key secret.
    """
    secret = RAZORPAY_KEY_SECRET if secret is None else secret
    if not secret or not signature or not order_id or not payment_id:
        return False
    expected = _hmac_sha256_hex(secret, f"{order_id}|{payment_id}".encode())
    return _signature_matches(expected, signature)


def verify_webhook_signature(raw_body: bytes, signature: Optional[str], secret: Optional[str] = None) -> bool:
    """Webhook signature: hex HMAC-SHA256 of the raw request body."""
    secret = RAZORPAY_WEBHOOK_SECRET if secret is None else secret
    if not secret or not signature:
        return False
    expected = _hmac_sha256_hex(secret, raw_body)
    return _signature_matches(expected, signature)


def quote_order(
    db: Session,
    user_id: int,
    plan: str,
    currency: Optional[str],
    promo_id: Optional[int],
    now: datetime,
) -> OrderQuote:
    """Price a Pro order, applying a (re-validated) partial-discount promo."""
    if plan != "pro":
        raise OrderError("Invalid plan")

    if is_effectively_pro(get_subscription(db, user_id), now):
        raise OrderError("User already has an active subscription")

    currency = "USD" if currency == "USD" else "INR"
    amount = PRO_PRICE_MINOR[currency]
    duration = DEFAULT_PLAN_DURATION

    if promo_id is None:
        return OrderQuote(plan=plan, amount=amount, currency=currency, plan_duration=duration)

    validation = validate_promo_id(db, user_id, promo_id, now)
    if not validation.valid:
        raise OrderError(validation.message)
    if validation.terms.is_free:
        raise OrderError("This promo code covers the full price. Redeem it instead of paying.")

    promo = db.query(PromoCode).filter(PromoCode.id == promo_id).first()
    return OrderQuote(
        plan=plan,
        amount=apply_discount(amount, promo),
        currency=currency,
        plan_duration=promo.plan_duration or duration,
        promo_code_id=promo.id,
    )


async def _razorpay_create_order(amount: int, currency: str, receipt: str, notes: dict) -> dict:
    """POST /v1/orders with basic auth. Returns Razorpay's order object."""
    payload = {
        "amount": amount,
        "currency": currency,
        "receipt": receipt,
        "notes": notes,
    }
    try:
        async with httpx.AsyncClient(timeout=GATEWAY_TIMEOUT) as client:
            r = await client.post(
                f"{RAZORPAY_API_URL}/orders",
                json=payload,
                auth=(RAZORPAY_KEY_ID, RAZORPAY_KEY_SECRET),
            )
    except httpx.TimeoutException as e:
        logger.error("[Razorpay] Timeout creating order: %s", e)
        raise PaymentGatewayError("Payment gateway timeout", status_code=504) from e
    except httpx.RequestError as e:
        logger.error("[Razorpay] Request error creating order: %s", e)
        raise PaymentGatewayError("Payment gateway unreachable") from e

    if r.status_code not in (200, 201):
        logger.error("[Razorpay] Order failed [%s]: %s", r.status_code, r.text[:500] if r.text else "NO_BODY")
        raise PaymentGatewayError(f"Razorpay order failed [{r.status_code}]")

    data = r.json()
    if not data.get("id"):
        raise PaymentGatewayError("Razorpay did not return an order id")
    return data


async def create_order(
    db: Session,
    user_id: int,
    plan: str,
    currency: Optional[str],
    promo_id: Optional[int],
    now: datetime,
) -> dict:
    """Create a Razorpay order for a Pro upgrade and remember it locally."""
    if not razorpay_configured():
        raise PaymentGatewayError("Razorpay credentials not configured", status_code=503)

    quote = quote_order(db, user_id, plan, currency, promo_id, now)
    notes = {"user_id": str(user_id), "plan": quote.plan}
    if quote.promo_code_id is not None:
        notes["promo_id"] = str(quote.promo_code_id)

    order = await _razorpay_create_order(quote.amount, quote.currency, f"pro_{user_id}", notes)

    payment = Payment(
        user_id=user_id,
        order_id=order["id"],
        amount=order.get("amount", quote.amount),
        currency=order.get("currency", quote.currency),
        plan=quote.plan,
        plan_duration=quote.plan_duration,
        promo_code_id=quote.promo_code_id,
        status="created",
        created_at=now,
        updated_at=now,
    )
    db.add(payment)
    db.commit()
    logger.info("[Razorpay] order %s created for user %s: %s %s", payment.order_id, user_id, payment.amount, payment.currency)

    return {
        "order_id": payment.order_id,
        "amount": payment.amount,
        "currency": payment.currency,
        "key_id": RAZORPAY_KEY_ID,
    }


def _record_external_order(
    db: Session,
    order_id: str,
    user_id: int,
    amount: Optional[int],
    currency: Optional[str],
    now: datetime,
) -> Optional[Payment]:
    """
    Store an order we only learned about from a webhook (one month of Pro).
    Returns None when the row could not be stored, e.g. the notes name a
    user that does not exist here.
    """
    payment = Payment(
        user_id=user_id,
        order_id=order_id,
        amount=amount or 0,
        currency=(currency or "INR").upper(),
        plan="pro",
        plan_duration=DEFAULT_PLAN_DURATION,
        status="created",
        created_at=now,
        updated_at=now,
    )
    db.add(payment)
    try:
        db.commit()
    except IntegrityError as e:
        # Usually recorded concurrently by the other capture path
        db.rollback()
        logger.info("[Razorpay] could not record order %s: %s", order_id, e.orig)
    return db.query(Payment).filter(Payment.order_id == order_id).first()


def apply_captured_payment(
    db: Session,
    order_id: str,
    payment_id: str,
    now: datetime,
    user_id: Optional[int] = None,
    allow_unknown_order: bool = False,
    amount: Optional[int] = None,
    currency: Optional[str] = None,
) -> PaymentResult:
    """
    Credit a verified capture exactly once.

    Callers must have checked the signature already. `user_id`, when given,
    must own the order. Unknown orders are only accepted from webhooks
    (`allow_unknown_order`), which carry the user id in the order notes.
    """
    payment = db.query(Payment).filter(Payment.order_id == order_id).first()
    if payment is None:
        if not allow_unknown_order or user_id is None:
            logger.warning("[Razorpay] capture for unknown order %s", order_id)
            return PaymentResult(success=False, reason="unknown_order")
        payment = _record_external_order(db, order_id, user_id, amount, currency, now)
        if payment is None:
            logger.warning("[Razorpay] capture for order %s names unknown user %s", order_id, user_id)
            return PaymentResult(success=False, reason="unknown_user")
    elif user_id is not None and payment.user_id != user_id:
        logger.warning("[Razorpay] order %s belongs to user %s, not %s", order_id, payment.user_id, user_id)
        return PaymentResult(success=False, reason="order_mismatch")

    owner_id = payment.user_id
    duration = payment.plan_duration
    promo_id = payment.promo_code_id
    payments = Payment.__table__

    try:
        flipped = db.execute(
            update(payments)
            .where(payments.c.order_id == order_id)
            .where(payments.c.status != "paid")
            .values(status="paid", provider_payment_id=payment_id, paid_at=now, updated_at=now)
        )
        if flipped.rowcount == 0:
            db.rollback()
            logger.info("[Razorpay] payment %s for order %s already applied", payment_id, order_id)
            return PaymentResult(success=True, user_id=owner_id, plan_duration=duration, already_applied=True)

        activate_pro(
            db, owner_id, duration, now,
            razorpay_order_id=order_id,
            razorpay_payment_id=payment_id,
            commit=False,
        )
        db.commit()
    except IntegrityError:
        # provider_payment_id already credited against another order
        db.rollback()
        logger.warning("[Razorpay] payment %s already credited elsewhere", payment_id)
        return PaymentResult(success=True, user_id=owner_id, plan_duration=duration, already_applied=True)

    db.expire_all()
    logger.info("[Razorpay] payment %s captured; user %s upgraded (%s)", payment_id, owner_id, duration)

    if promo_id is not None:
        # The user has paid, so a promo that ran out meanwhile doesn't block the upgrade.
        failure = consume_promo(db, promo_id, owner_id, now)
        if failure is None:
            db.commit()
        else:
            db.rollback()
            logger.warning("[Promo] promo %s not consumed for order %s: %s", promo_id, order_id, failure)

    return PaymentResult(success=True, user_id=owner_id, plan_duration=duration)


def mark_payment_failed(db: Session, order_id: Optional[str], now: datetime) -> bool:
    if not order_id:
        return False
    payments = Payment.__table__
    result = db.execute(
        update(payments)
        .where(payments.c.order_id == order_id)
        .where(payments.c.status == "created")
        .values(status="failed", updated_at=now)
    )
    db.commit()
    return result.rowcount > 0
