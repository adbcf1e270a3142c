import asyncio
import hashlib
import hmac
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker

from app.db.base import Base
from app.models import Payment, PromoCode, PromoRedemption
from app.services import payments
from app.services.entitlements import activate_pro, get_entitlement

from tests.conftest import NOW


def sign(message: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


@pytest.fixture
def fake_gateway(monkeypatch):
    calls = []

    async def fake_create_order(amount, currency, receipt, notes):
        calls.append({"amount": amount, "currency": currency, "receipt": receipt, "notes": notes})
        return {"id": f"order_{len(calls)}", "amount": amount, "currency": currency}

    monkeypatch.setattr(payments, "_razorpay_create_order", fake_create_order)
    return calls


@pytest.fixture
def fk_db(tmp_path):
    """Session on a database that enforces foreign keys, like Postgres."""
    engine = create_engine(f"sqlite:///{tmp_path / 'fk.db'}")

    @event.listens_for(engine, "connect")
    def enable_foreign_keys(dbapi_connection, connection_record):
        dbapi_connection.execute("PRAGMA foreign_keys=ON")

    Base.metadata.create_all(bind=engine)
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


def _order(db, user_id, order_id="order_1", promo_id=None, duration="month"):
    payment = Payment(
        user_id=user_id,
        order_id=order_id,
        amount=49900,
        currency="INR",
        plan="pro",
        plan_duration=duration,
        promo_code_id=promo_id,
        status="created",
    )
    db.add(payment)
    db.commit()
    return payment


class TestSignatures:
    def test_checkout_signature(self):
        signature = sign(b"order_1|pay_1", "secret")

        assert payments.verify_payment_signature("order_1", "pay_1", signature, secret="secret")
        assert not payments.verify_payment_signature("order_1", "pay_2", signature, secret="secret")
        assert not payments.verify_payment_signature("order_1", "pay_1", signature, secret="other")
        assert not payments.verify_payment_signature("order_1", "pay_1", None, secret="secret")

    def test_checkout_signature_uses_configured_key_secret(self):
        signature = sign(b"order_1|pay_1", "rzp_test_secret")
        assert payments.verify_payment_signature("order_1", "pay_1", signature)

    def test_webhook_signature_covers_raw_body(self):
        body = b'{"event":"payment.captured"}'
        signature = sign(body, "rzp_webhook_secret")

        assert payments.verify_webhook_signature(body, signature)
        assert not payments.verify_webhook_signature(body + b" ", signature)
        assert not payments.verify_webhook_signature(body, "")

    def test_missing_secret_fails_closed(self):
        body = b"{}"
        assert not payments.verify_webhook_signature(body, sign(body, ""), secret="")

    def test_non_ascii_signatures_are_rejected(self):
        assert not payments.verify_payment_signature("order_1", "pay_1", "é" * 64, secret="secret")
        assert not payments.verify_webhook_signature(b"{}", "\xe9", secret="secret")
        assert not payments.verify_webhook_signature(b"{}", "\ud800", secret="secret")


class TestCreateOrder:
    def test_prices(self, db, make_user, fake_gateway):
        user = make_user()

        inr = asyncio.run(payments.create_order(db, user.id, "pro", "INR", None, NOW))
        usd = asyncio.run(payments.create_order(db, user.id, "pro", "USD", None, NOW))

        assert (inr["amount"], inr["currency"]) == (49900, "INR")
        assert (usd["amount"], usd["currency"]) == (900, "USD")
        assert inr["key_id"] == "rzp_test_key"
        assert fake_gateway[0]["notes"]["user_id"] == str(user.id)
        assert db.query(Payment).filter(Payment.status == "created").count() == 2

    def test_unknown_currency_defaults_to_inr(self, db, make_user, fake_gateway):
        order = asyncio.run(payments.create_order(db, make_user().id, "pro", "EUR", None, NOW))
        assert order["currency"] == "INR"

    def test_invalid_plan(self, db, make_user, fake_gateway):
        with pytest.raises(payments.OrderError):
            asyncio.run(payments.create_order(db, make_user().id, "enterprise", "INR", None, NOW))
        assert fake_gateway == []

    def test_discounted_promo_is_applied(self, db, make_user, fake_gateway):
        user = make_user()
        promo = PromoCode(code="HALF", discount_type="percentage", discount_value=Decimal(50),
                          valid_from=NOW - timedelta(days=1), plan_duration="year")
        db.add(promo)
        db.commit()

        order = asyncio.run(payments.create_order(db, user.id, "pro", "INR", promo.id, NOW))

        assert order["amount"] == 24950
        payment = db.query(Payment).filter(Payment.order_id == order["order_id"]).one()
        assert payment.promo_code_id == promo.id
        assert payment.plan_duration == "year"

    def test_free_promo_is_refused(self, db, make_user, fake_gateway):
        promo = PromoCode(code="FREE", discount_type="percentage", discount_value=Decimal(100),
                          valid_from=NOW - timedelta(days=1))
        db.add(promo)
        db.commit()

        with pytest.raises(payments.OrderError):
            asyncio.run(payments.create_order(db, make_user().id, "pro", "INR", promo.id, NOW))

    def test_active_pro_cannot_order_again(self, db, make_user, fake_gateway):
        user = make_user()
        activate_pro(db, user.id, "month", NOW)

        with pytest.raises(payments.OrderError):
            asyncio.run(payments.create_order(db, user.id, "pro", "INR", None, NOW))


class TestApplyCapturedPayment:
    def test_capture_upgrades_once(self, db, make_user):
        user = make_user()
        _order(db, user.id, duration="month")

        first = payments.apply_captured_payment(db, "order_1", "pay_1", NOW, user_id=user.id)
        later = NOW + timedelta(days=3)
        second = payments.apply_captured_payment(db, "order_1", "pay_1", later)

        assert first.success and not first.already_applied
        assert second.success and second.already_applied
        entitlement = get_entitlement(db, user.id, later)
        assert entitlement.plan == "pro"
        # The replay did not restart the period
        assert entitlement.current_period_start == NOW

        payment = db.query(Payment).filter(Payment.order_id == "order_1").one()
        assert payment.status == "paid"
        assert payment.provider_payment_id == "pay_1"

    def test_order_of_another_user_is_rejected(self, db, make_user):
        owner, other = make_user(), make_user()
        _order(db, owner.id)

        result = payments.apply_captured_payment(db, "order_1", "pay_1", NOW, user_id=other.id)

        assert not result.success
        assert get_entitlement(db, other.id, NOW).plan == "free"
        assert get_entitlement(db, owner.id, NOW).plan == "free"

    def test_unknown_order_needs_webhook_notes(self, db, make_user):
        user = make_user()

        assert not payments.apply_captured_payment(db, "order_x", "pay_x", NOW, user_id=user.id).success

        result = payments.apply_captured_payment(
            db, "order_x", "pay_x", NOW, user_id=user.id, allow_unknown_order=True, amount=49900, currency="inr"
        )
        assert result.success
        assert result.plan_duration == "month"
        assert get_entitlement(db, user.id, NOW).plan == "pro"
        assert db.query(Payment).filter(Payment.order_id == "order_x").one().currency == "INR"

    def test_webhook_order_for_unknown_user_is_refused(self, fk_db):
        result = payments.apply_captured_payment(
            fk_db, "order_x", "pay_x", NOW, user_id=999, allow_unknown_order=True, amount=49900, currency="INR"
        )

        assert not result.success
        assert result.reason == "unknown_user"
        assert fk_db.query(Payment).count() == 0

    def test_paid_order_consumes_promo(self, db, make_user):
        user = make_user()
        promo = PromoCode(code="HALF", discount_type="percentage", discount_value=Decimal(50),
                          valid_from=NOW - timedelta(days=1), max_uses=10)
        db.add(promo)
        db.commit()
        _order(db, user.id, promo_id=promo.id)

        payments.apply_captured_payment(db, "order_1", "pay_1", NOW, user_id=user.id)
        payments.apply_captured_payment(db, "order_1", "pay_1", NOW, user_id=user.id)

        db.refresh(promo)
        assert promo.times_used == 1
        assert db.query(PromoRedemption).filter(PromoRedemption.user_id == user.id).count() == 1

    def test_exhausted_promo_does_not_block_paid_upgrade(self, db, make_user):
        user = make_user()
        promo = PromoCode(code="LAST", discount_type="percentage", discount_value=Decimal(50),
                          valid_from=NOW - timedelta(days=1), max_uses=1, times_used=1)
        db.add(promo)
        db.commit()
        _order(db, user.id, promo_id=promo.id)

        result = payments.apply_captured_payment(db, "order_1", "pay_1", NOW, user_id=user.id)

        assert result.success
        assert get_entitlement(db, user.id, NOW).plan == "pro"
        db.refresh(promo)
        assert promo.times_used == 1

    def test_mark_failed(self, db, make_user):
        user = make_user()
        _order(db, user.id)

        assert payments.mark_payment_failed(db, "order_1", NOW)
        assert not payments.mark_payment_failed(db, "order_1", NOW)
        assert not payments.mark_payment_failed(db, None, NOW)
