"""
Promo code validation, redemption and admin management.

Validation is a read-only preview for the UI. Redemption re-validates on the
server and relies on database constraints, not on the preview:
- the (promo_code_id, user_id) unique constraint rejects a second redemption
- `UPDATE ... WHERE times_used < max_uses` rejects redemptions past the cap
Either failure rolls back the whole redemption, subscription included.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import insert, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.plan_limits import BASE_PRICE_INR, MIN_ORDER_AMOUNT_MINOR
from app.models.promo_code import PromoCode, PromoRedemption
from app.services.entitlements import activate_pro

logger = logging.getLogger(__name__)

# Failure reasons, in the order they are checked
INVALID = "invalid"
NOT_YET_VALID = "not_yet_valid"
EXPIRED = "expired"
FULLY_REDEEMED = "fully_redeemed"
ALREADY_USED = "already_used"
REQUIRES_PAYMENT = "requires_payment"

REASON_MESSAGES = {
    INVALID: "Invalid promo code",
    NOT_YET_VALID: "Promo code is not active yet",
    EXPIRED: "Promo code expired",
    FULLY_REDEEMED: "Promo code fully redeemed",
    ALREADY_USED: "Already used this promo code",
    REQUIRES_PAYMENT: "This promo code gives a discount. Please proceed with payment.",
}


class PromoConflictError(Exception):
    """Raised when an admin write collides with an existing code."""


@dataclass
class PromoTerms:
    promo_id: int
    code: str
    discount_type: str
    discount_value: Decimal
    plan_duration: str
    is_free: bool


@dataclass
class PromoValidation:
    valid: bool
    terms: Optional[PromoTerms] = None
    reason: Optional[str] = None

    @property
    def message(self) -> Optional[str]:
        return REASON_MESSAGES.get(self.reason) if self.reason else None


@dataclass
class PromoRedemptionResult:
    success: bool
    plan_duration: Optional[str] = None
    reason: Optional[str] = None

    @property
    def message(self) -> Optional[str]:
        return REASON_MESSAGES.get(self.reason) if self.reason else None


def normalize_code(code: str) -> str:
    return (code or "").strip().upper()


def is_free_promo(promo: PromoCode) -> bool:
    """A promo is "free" when it covers the full Pro price, so no payment is needed."""
    value = Decimal(str(promo.discount_value or 0))
    if promo.discount_type == "percentage":
        return value >= 100
    if promo.discount_type == "fixed":
        return value >= BASE_PRICE_INR
    return False


def apply_discount(amount_minor: int, promo: Optional[PromoCode]) -> int:
    """Discounted order amount in minor units. Fixed discounts are in major units."""
    if promo is None:
        return amount_minor
    value = Decimal(str(promo.discount_value or 0))
    if promo.discount_type == "percentage":
        discounted = Decimal(amount_minor) * (1 - value / 100)
        return int(discounted.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    if promo.discount_type == "fixed":
        return max(MIN_ORDER_AMOUNT_MINOR, amount_minor - int(value * 100))
    return amount_minor


def _terms(promo: PromoCode) -> PromoTerms:
    return PromoTerms(
        promo_id=promo.id,
        code=promo.code,
        discount_type=promo.discount_type,
        discount_value=Decimal(str(promo.discount_value)),
        plan_duration=promo.plan_duration,
        is_free=is_free_promo(promo),
    )


def _has_redeemed(db: Session, promo_id: int, user_id: int) -> bool:
    return db.query(PromoRedemption.id).filter(
        PromoRedemption.promo_code_id == promo_id,
        PromoRedemption.user_id == user_id,
    ).first() is not None


def _check(db: Session, user_id: int, promo: Optional[PromoCode], now: datetime) -> PromoValidation:
    if promo is None or not promo.is_active:
        return PromoValidation(valid=False, reason=INVALID)
    if promo.valid_from and now < promo.valid_from:
        return PromoValidation(valid=False, reason=NOT_YET_VALID)
    if promo.valid_until and promo.valid_until < now:
        return PromoValidation(valid=False, reason=EXPIRED)
    if promo.max_uses is not None and promo.times_used >= promo.max_uses:
        return PromoValidation(valid=False, reason=FULLY_REDEEMED)
    if _has_redeemed(db, promo.id, user_id):
        return PromoValidation(valid=False, reason=ALREADY_USED)
    return PromoValidation(valid=True, terms=_terms(promo))


def validate_promo(db: Session, user_id: int, code: str, now: datetime) -> PromoValidation:
    """Check a code for this user without consuming it."""
    promo = db.query(PromoCode).filter(PromoCode.code == normalize_code(code)).first()
    return _check(db, user_id, promo, now)


def validate_promo_id(db: Session, user_id: int, promo_id: int, now: datetime) -> PromoValidation:
    promo = db.query(PromoCode).filter(PromoCode.id == promo_id).first()
    return _check(db, user_id, promo, now)


def consume_promo(db: Session, promo_id: int, user_id: int, now: datetime) -> Optional[str]:
    """
    Record a redemption and bump the usage counter inside the caller's transaction.

    Returns None on success or the failure reason. On failure the transaction
    is no longer usable and the caller must roll back.
    """
    try:
        db.execute(
            insert(PromoRedemption.__table__).values(
                promo_code_id=promo_id, user_id=user_id, created_at=now
            )
        )
    except IntegrityError:
        return ALREADY_USED

    promos = PromoCode.__table__
    result = db.execute(
        update(promos)
        .where(promos.c.id == promo_id)
        .where((promos.c.max_uses.is_(None)) | (promos.c.times_used < promos.c.max_uses))
        .values(times_used=promos.c.times_used + 1)
    )
    if result.rowcount == 0:
        return FULLY_REDEEMED
    return None


def redeem_promo(db: Session, user_id: int, promo_id: int, now: datetime) -> PromoRedemptionResult:
    """
    Redeem a full-discount code and upgrade the user to Pro for its duration.

    Partial discounts are refused with `requires_payment`; they are applied
    to a Razorpay order instead.
    """
    validation = validate_promo_id(db, user_id, promo_id, now)
    if not validation.valid:
        return PromoRedemptionResult(success=False, reason=validation.reason)

    terms = validation.terms
    if not terms.is_free:
        return PromoRedemptionResult(success=False, reason=REQUIRES_PAYMENT)

    try:
        failure = consume_promo(db, promo_id, user_id, now)
        if failure is not None:
            db.rollback()
            logger.info("[Promo] redemption of %s by user %s refused: %s", terms.code, user_id, failure)
            return PromoRedemptionResult(success=False, reason=failure)

        activate_pro(db, user_id, terms.plan_duration, now, commit=False)
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.expire_all()
    logger.info("[Promo] user %s redeemed %s (%s of Pro)", user_id, terms.code, terms.plan_duration)
    return PromoRedemptionResult(success=True, plan_duration=terms.plan_duration)


# ---------------------------------------------------------------------------
# Admin CRUD
# ---------------------------------------------------------------------------

def list_promos(db: Session) -> List[PromoCode]:
    return db.query(PromoCode).order_by(PromoCode.created_at.desc(), PromoCode.id.desc()).all()


def create_promo(db: Session, data: Dict[str, Any], created_by: Optional[int], now: datetime) -> PromoCode:
    promo = PromoCode(
        code=normalize_code(data["code"]),
        discount_type=data.get("discount_type") or "percentage",
        discount_value=data.get("discount_value") or 0,
        max_uses=data.get("max_uses") or None,
        valid_from=data.get("valid_from") or now,
        valid_until=data.get("valid_until"),
        plan_duration=data.get("plan_duration") or "month",
        is_active=data.get("is_active") is not False,
        created_by=created_by,
        created_at=now,
        updated_at=now,
    )
    db.add(promo)
    try:
        db.commit()
    except IntegrityError as e:
        db.rollback()
        raise PromoConflictError(f"Promo code {promo.code} already exists") from e
    db.refresh(promo)
    logger.info("[Promo] created %s by admin %s", promo.code, created_by)
    return promo


def update_promo(db: Session, promo_id: int, updates: Dict[str, Any]) -> Optional[PromoCode]:
    promo = db.query(PromoCode).filter(PromoCode.id == promo_id).first()
    if not promo:
        return None
    for key, value in updates.items():
        if key == "code":
            value = normalize_code(value)
        setattr(promo, key, value)
    try:
        db.commit()
    except IntegrityError as e:
        db.rollback()
        raise PromoConflictError(f"Promo code {updates.get('code')} already exists") from e
    db.refresh(promo)
    return promo


def delete_promo(db: Session, promo_id: int) -> bool:
    deleted = db.query(PromoCode).filter(PromoCode.id == promo_id).delete(synchronize_session=False)
    db.commit()
    return deleted > 0
