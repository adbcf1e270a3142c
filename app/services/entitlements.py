"""
Service for plan entitlements and daily message usage.

- Expiry is lazy: `is_effectively_pro` compares the period end to "now" on
  every read. No code path writes status="expired".
- Usage is one row per (user, UTC date). Increment + cap check is a single
  conditional upsert, so concurrent sends can never push a free user past the
  daily limit.
- Subscription writes are atomic upserts keyed by user_id (last write wins).
"""
import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Optional

from dateutil.relativedelta import relativedelta
from sqlalchemy import update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from app.core.plan_limits import (
    DEFAULT_PLAN_DURATION,
    FREE_DAILY_MESSAGE_LIMIT,
    PLAN_DURATIONS,
    daily_message_limit,
)
from app.models.daily_usage import DailyUsage
from app.models.subscription import Subscription

logger = logging.getLogger(__name__)


@dataclass
class Entitlement:
    user_id: int
    plan: str  # Effective plan after lazy expiry
    stored_plan: str
    status: str  # Effective status ("expired" when a pro period has lapsed)
    plan_duration: Optional[str]
    current_period_start: Optional[datetime]
    current_period_end: Optional[datetime]
    usage_date: date
    messages_sent_today: int
    daily_limit: Optional[int]  # None = unlimited

    @property
    def is_pro(self) -> bool:
        return self.plan == "pro"

    @property
    def can_send(self) -> bool:
        return self.daily_limit is None or self.messages_sent_today < self.daily_limit

    @property
    def messages_remaining(self) -> Optional[int]:
        if self.daily_limit is None:
            return None
        return max(0, self.daily_limit - self.messages_sent_today)


@dataclass
class UsageResult:
    accepted: bool
    new_count: int
    daily_limit: Optional[int] = None


def dialect_insert(db: Session):
    """`insert` construct with ON CONFLICT support for the bound dialect."""
    if db.get_bind().dialect.name == "postgresql":
        return postgresql.insert
    return sqlite.insert


def compute_period_end(start: datetime, duration: str) -> datetime:
    """week = 7 days, month/year = calendar month/year (clamped to month end)."""
    if duration == "week":
        return start + timedelta(days=7)
    if duration == "year":
        return start + relativedelta(years=1)
    return start + relativedelta(months=1)


def is_effectively_pro(subscription: Optional[Subscription], now: datetime) -> bool:
    """The one place that decides whether a stored subscription grants Pro right now."""
    if subscription is None:
        return False
    if subscription.plan != "pro" or subscription.status != "active":
        return False
    return subscription.current_period_end is None or subscription.current_period_end > now


def get_subscription(db: Session, user_id: int) -> Optional[Subscription]:
    return db.query(Subscription).filter(Subscription.user_id == user_id).first()


def get_usage_count(db: Session, user_id: int, usage_date: date) -> int:
    usage = db.query(DailyUsage).filter(
        DailyUsage.user_id == user_id,
        DailyUsage.usage_date == usage_date,
    ).first()
    return usage.messages_sent if usage else 0


def get_entitlement(db: Session, user_id: int, now: datetime) -> Entitlement:
    """
    Read contract for a user's plan and today's usage.

    Users without a subscription row are treated as active free users.
    """
    subscription = get_subscription(db, user_id)
    pro = is_effectively_pro(subscription, now)
    usage_date = now.date()

    if subscription is None:
        stored_plan, status, duration, start, end = "free", "active", None, None, None
    else:
        stored_plan = subscription.plan
        status = subscription.status
        duration = subscription.plan_duration
        start = subscription.current_period_start
        end = subscription.current_period_end
        if stored_plan == "pro" and status == "active" and not pro:
            status = "expired"

    plan = "pro" if pro else "free"
    return Entitlement(
        user_id=user_id,
        plan=plan,
        stored_plan=stored_plan,
        status=status,
        plan_duration=duration,
        current_period_start=start,
        current_period_end=end,
        usage_date=usage_date,
        messages_sent_today=get_usage_count(db, user_id, usage_date),
        daily_limit=daily_message_limit(plan),
    )


def increment_usage(db: Session, user_id: int, now: datetime) -> UsageResult:
    """
    Count one chat message for today, refusing it if a free user is at the cap.

    The cap check and the increment are the same statement:

        INSERT ... VALUES (user, today, 1)
        ON CONFLICT (user_id, usage_date) DO UPDATE
            SET messages_sent = messages_sent + 1
            WHERE messages_sent < :limit      -- free users only
        RETURNING messages_sent

    No row back means the WHERE failed, i.e. the quota is used up.
    """
    pro = is_effectively_pro(get_subscription(db, user_id), now)
    limit = None if pro else FREE_DAILY_MESSAGE_LIMIT
    usage_date = now.date()
    usage = DailyUsage.__table__

    stmt = dialect_insert(db)(usage).values(
        user_id=user_id,
        usage_date=usage_date,
        messages_sent=1,
        created_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[usage.c.user_id, usage.c.usage_date],
        set_={"messages_sent": usage.c.messages_sent + 1},
        where=(usage.c.messages_sent < limit) if limit is not None else None,
    ).returning(usage.c.messages_sent)

    try:
        row = db.execute(stmt).first()
        db.commit()
    except Exception:
        db.rollback()
        raise

    if row is None:
        current = get_usage_count(db, user_id, usage_date)
        logger.info("[Usage] user %s at daily limit (%s/%s)", user_id, current, limit)
        return UsageResult(accepted=False, new_count=current, daily_limit=limit)

    return UsageResult(accepted=True, new_count=row[0], daily_limit=limit)


def release_usage(db: Session, user_id: int, now: datetime) -> bool:
    """
    Give back a send counted by `increment_usage` whose reply never got
    stored. Never goes below zero.
    """
    usage = DailyUsage.__table__
    try:
        result = db.execute(
            update(usage)
            .where(usage.c.user_id == user_id)
            .where(usage.c.usage_date == now.date())
            .where(usage.c.messages_sent > 0)
            .values(messages_sent=usage.c.messages_sent - 1)
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    if result.rowcount:
        logger.info("[Usage] released one send for user %s", user_id)
    return result.rowcount > 0


def set_subscription(
    db: Session,
    user_id: int,
    plan: str,
    status: str,
    duration: Optional[str],
    now: datetime,
    razorpay_order_id: Optional[str] = None,
    razorpay_payment_id: Optional[str] = None,
    commit: bool = True,
) -> None:
    """
    Upsert the user's subscription.

    The period restarts at `now`; pro gets `now + duration`, free gets no end.
    Concurrent writers (admin, webhook, verify) are last-write-wins.
    """
    duration = duration if duration in PLAN_DURATIONS else DEFAULT_PLAN_DURATION
    period_end = compute_period_end(now, duration) if plan == "pro" else None
    subs = Subscription.__table__

    values = {
        "plan": plan,
        "status": status,
        "plan_duration": duration,
        "current_period_start": now,
        "current_period_end": period_end,
        "updated_at": now,
    }
    if razorpay_order_id is not None:
        values["razorpay_order_id"] = razorpay_order_id
    if razorpay_payment_id is not None:
        values["razorpay_payment_id"] = razorpay_payment_id

    stmt = dialect_insert(db)(subs).values(user_id=user_id, created_at=now, **values)
    stmt = stmt.on_conflict_do_update(index_elements=[subs.c.user_id], set_=values)

    db.execute(stmt)
    if commit:
        db.commit()
        # Upsert bypasses the identity map; drop stale copies of the row.
        db.expire_all()

    logger.info(
        "[Subscription] user %s -> plan=%s status=%s duration=%s period_end=%s",
        user_id, plan, status, duration, period_end,
    )


def activate_pro(db: Session, user_id: int, duration: Optional[str], now: datetime, **kwargs) -> None:
    set_subscription(db, user_id, "pro", "active", duration, now, **kwargs)


def delete_subscription(db: Session, user_id: int, commit: bool = True) -> bool:
    deleted = db.query(Subscription).filter(
        Subscription.user_id == user_id
    ).delete(synchronize_session=False)
    if commit:
        db.commit()
    return deleted > 0
