import asyncio
import hashlib
import hmac
import json
from datetime import timedelta

import pytest
from fastapi import HTTPException

from app.api.routes import chat as chat_routes
from app.models import ChatMessage, ChatSession, DailyUsage, ImportedChat, Payment, PromoCode
from app.services import llm_client
from app.services.entitlements import activate_pro, get_entitlement, get_usage_count

from tests.conftest import NOW

EXPORT = "\n".join([
    "12/03/24, 9:00 am - Alice: Messages and calls are end-to-end encrypted",
    "12/03/24, 9:15 am - Alice: good morning jaan 💗",
    "12/03/24, 9:16 am - Bob: morning!!",
    "12/03/24, 9:17 am - Alice: kya kar rahe ho",
    "hope you slept well",
])


def _sign(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


@pytest.fixture
def fake_llm(monkeypatch):
    calls = {"reply": [], "memory": []}

    async def build_memory(sample, my_texts, partner_texts, me_name, other_name):
        calls["memory"].append(sample)
        return {"summary": "They are close.", "partner_style": "Short, lots of 💗", "style_profile": "Dry humour"}

    async def generate_reply(**kwargs):
        calls["reply"].append(kwargs)
        return "hii 💗"

    async def suggest_replies(last_message, memory_summary, partner_style, me_name, other_name):
        return ["haan", "acha", "miss you"]

    monkeypatch.setattr(llm_client, "build_memory", build_memory)
    monkeypatch.setattr(llm_client, "generate_reply", generate_reply)
    monkeypatch.setattr(llm_client, "suggest_replies", suggest_replies)
    return calls


def _create_session(client):
    return client.post(
        "/api/chat/session",
        files={"file": ("chat.txt", EXPORT.encode(), "text/plain")},
        data={"me_name": "Bob", "other_name": "Alice"},
    )


class TestChat:
    def test_parse(self, client, current_user, make_user):
        current_user.user_id = make_user().id
        r = client.post("/api/chat/parse", files={"file": ("chat.txt", EXPORT.encode(), "text/plain")})

        assert r.status_code == 200
        body = r.json()
        assert body["participants"] == ["Alice", "Bob"]
        assert body["message_count"] == 3
        assert len(body["preview"]) == 5

    def test_parse_rejects_unrecognised_file(self, client, current_user, make_user):
        current_user.user_id = make_user().id
        r = client.post("/api/chat/parse", files={"file": ("notes.txt", b"hello world", "text/plain")})

        assert r.status_code == 400

    def test_oversized_export_is_rejected(self, client, current_user, make_user, monkeypatch):
        current_user.user_id = make_user().id
        monkeypatch.setattr(chat_routes, "MAX_EXPORT_SIZE", 64)

        r = client.post("/api/chat/parse", files={"file": ("chat.txt", EXPORT.encode(), "text/plain")})

        assert r.status_code == 400
        assert "maximum size" in r.json()["detail"]

    def test_export_read_stops_past_the_limit(self, monkeypatch):
        monkeypatch.setattr(chat_routes, "MAX_EXPORT_SIZE", 64)

        class StreamingUpload:
            size = None  # e.g. chunked upload without a length

            def __init__(self, data):
                self.data = data
                self.requested = []

            async def read(self, size=-1):
                self.requested.append(size)
                return self.data if size < 0 else self.data[:size]

        upload = StreamingUpload(b"x" * 10_000)
        with pytest.raises(HTTPException) as exc:
            asyncio.run(chat_routes._read_export(upload))

        assert exc.value.status_code == 400
        assert upload.requested == [65]

    def test_create_session_and_read_it_back(self, client, current_user, make_user, fake_llm):
        current_user.user_id = make_user().id

        r = _create_session(client)
        assert r.status_code == 200
        assert r.json()["session"]["partner_name"] == "Alice"
        assert r.json()["memory_fallback"] is False

        state = client.get("/api/chat/session").json()
        assert state["session"]["memory_summary"] == "They are close."
        assert "Alice: kya kar rahe ho" in state["recent_context"]
        assert state["messages"] == []

    def test_session_survives_llm_failure(self, client, current_user, make_user, monkeypatch):
        current_user.user_id = make_user().id

        async def broken(*args, **kwargs):
            raise llm_client.LLMError("AI gateway error")

        monkeypatch.setattr(llm_client, "build_memory", broken)
        r = _create_session(client)

        assert r.status_code == 200
        assert r.json()["memory_fallback"] is True
        assert r.json()["session"]["memory_summary"] == "A conversation between two partners."
        assert r.json()["session"]["partner_style"] == "Casual, loving texting style with emojis."

    def test_session_requires_known_participants(self, client, current_user, make_user, fake_llm):
        current_user.user_id = make_user().id
        r = client.post(
            "/api/chat/session",
            files={"file": ("chat.txt", EXPORT.encode(), "text/plain")},
            data={"me_name": "Bob", "other_name": "Carol"},
        )
        assert r.status_code == 400

    def test_free_quota_returns_429_with_upgrade_prompt(self, client, current_user, make_user, fake_llm, session_factory):
        user_id = make_user().id
        current_user.user_id = user_id
        _create_session(client)

        for _ in range(10):
            assert client.post("/api/chat/messages", json={"message": "hi"}).status_code == 200

        r = client.post("/api/chat/messages", json={"message": "hi"})
        assert r.status_code == 429
        assert r.json()["detail"]["upgrade_required"] is True
        assert r.json()["detail"]["messages_sent_today"] == 10

        check = session_factory()
        try:
            assert check.query(DailyUsage).filter(DailyUsage.user_id == user_id).one().messages_sent == 10
            assert check.query(ChatMessage).filter(ChatMessage.user_id == user_id).count() == 20
        finally:
            check.close()

    def test_send_message_passes_history_and_timezone(self, client, current_user, make_user, fake_llm):
        current_user.user_id = make_user().id
        _create_session(client)

        client.post("/api/chat/messages", json={"message": "first"})
        r = client.post("/api/chat/messages", json={"message": "second", "timezone": "Asia/Kolkata"})

        assert r.json()["reply"] == "hii 💗"
        assert r.json()["messages_sent_today"] == 2
        last_call = fake_llm["reply"][-1]
        assert last_call["timezone"] == "Asia/Kolkata"
        assert [m["content"] for m in last_call["chat_history"]] == ["first", "hii 💗"]
        assert last_call["other_name"] == "Alice"

    def test_send_without_session_is_404(self, client, current_user, make_user, fake_llm):
        current_user.user_id = make_user().id
        assert client.post("/api/chat/messages", json={"message": "hi"}).status_code == 404

    def test_llm_rate_limit_is_passed_through(self, client, current_user, make_user, fake_llm, monkeypatch):
        current_user.user_id = make_user().id
        _create_session(client)

        async def limited(**kwargs):
            raise llm_client.LLMError("Rate limited, try again shortly", status_code=429)

        monkeypatch.setattr(llm_client, "generate_reply", limited)
        assert client.post("/api/chat/messages", json={"message": "hi"}).status_code == 429

    def test_failed_reply_does_not_use_quota(self, client, current_user, make_user, fake_llm, monkeypatch, db):
        user_id = make_user().id
        current_user.user_id = user_id
        _create_session(client)
        working = llm_client.generate_reply

        async def gateway_down(**kwargs):
            raise llm_client.LLMError("AI gateway error")

        monkeypatch.setattr(llm_client, "generate_reply", gateway_down)
        statuses = [client.post("/api/chat/messages", json={"message": "hi"}).status_code for _ in range(10)]

        assert statuses == [502] * 10
        assert get_usage_count(db, user_id, NOW.date()) == 0
        assert db.query(ChatMessage).filter(ChatMessage.user_id == user_id).count() == 0

        # Once the gateway is back the full quota is still there
        monkeypatch.setattr(llm_client, "generate_reply", working)
        r = client.post("/api/chat/messages", json={"message": "hi"})
        assert r.status_code == 200
        assert r.json()["messages_sent_today"] == 1

    def test_suggestions(self, client, current_user, make_user, fake_llm):
        current_user.user_id = make_user().id
        _create_session(client)

        r = client.post("/api/chat/suggestions", json={})
        assert r.json()["replies"] == ["haan", "acha", "miss you"]

    def test_delete_all_data(self, client, current_user, make_user, fake_llm, session_factory):
        user_id = make_user().id
        current_user.user_id = user_id
        _create_session(client)
        client.post("/api/chat/messages", json={"message": "hi"})

        check = session_factory()
        try:
            activate_pro(check, user_id, "month", NOW)
        finally:
            check.close()

        assert client.delete("/api/chat/data").status_code == 200

        check = session_factory()
        try:
            for model in (ChatMessage, ImportedChat, ChatSession, DailyUsage):
                assert check.query(model).filter(model.user_id == user_id).count() == 0
            assert get_entitlement(check, user_id, NOW).stored_plan == "free"
        finally:
            check.close()


class TestSubscriptionRead:
    def test_expired_pro_reads_as_free(self, client, current_user, make_user, db, clock):
        user = make_user()
        current_user.user_id = user.id
        activate_pro(db, user.id, "week", NOW)

        assert client.get("/users/me/subscription").json()["plan"] == "pro"

        clock.advance(days=8)
        body = client.get("/users/me/subscription").json()
        assert body["plan"] == "free"
        assert body["status"] == "expired"
        assert body["daily_limit"] == 10


class TestPromoRoutes:
    def test_validate_and_redeem(self, client, current_user, make_user, db):
        current_user.user_id = make_user().id
        promo = PromoCode(code="LOVE", discount_type="percentage", discount_value=100,
                          valid_from=NOW - timedelta(days=1), plan_duration="month")
        db.add(promo)
        db.commit()

        body = client.post("/api/billing/promo/validate", json={"code": "love"}).json()
        assert body["valid"] and body["is_free"]

        r = client.post("/api/billing/promo/redeem", json={"promo_id": body["promo_id"]})
        assert r.status_code == 200

        again = client.post("/api/billing/promo/redeem", json={"promo_id": body["promo_id"]})
        assert again.status_code == 400
        assert again.json()["detail"]["reason"] == "already_used"

    def test_invalid_code(self, client, current_user, make_user):
        current_user.user_id = make_user().id
        body = client.post("/api/billing/promo/validate", json={"code": "NOPE"}).json()
        assert body["valid"] is False
        assert body["reason"] == "invalid"


class TestPayments:
    def test_verify_rejects_bad_signature(self, client, current_user, make_user, db):
        user = make_user()
        current_user.user_id = user.id
        db.add(Payment(user_id=user.id, order_id="order_1", amount=49900, currency="INR", status="created"))
        db.commit()

        r = client.post("/api/payments/verify", json={
            "razorpay_order_id": "order_1",
            "razorpay_payment_id": "pay_1",
            "razorpay_signature": "0" * 64,
        })

        assert r.status_code == 400
        assert get_entitlement(db, user.id, NOW).plan == "free"

    def test_verify_upgrades(self, client, current_user, make_user, db):
        user = make_user()
        current_user.user_id = user.id
        db.add(Payment(user_id=user.id, order_id="order_1", amount=49900, currency="INR", status="created"))
        db.commit()

        r = client.post("/api/payments/verify", json={
            "razorpay_order_id": "order_1",
            "razorpay_payment_id": "pay_1",
            "razorpay_signature": _sign(b"order_1|pay_1", "rzp_test_secret"),
        })

        assert r.status_code == 200
        assert r.json()["success"] is True
        db.expire_all()
        assert get_entitlement(db, user.id, NOW).plan == "pro"


    def test_verify_rejects_non_ascii_signature(self, client, current_user, make_user, db):
        user = make_user()
        current_user.user_id = user.id
        db.add(Payment(user_id=user.id, order_id="order_1", amount=49900, currency="INR", status="created"))
        db.commit()

        r = client.post("/api/payments/verify", json={
            "razorpay_order_id": "order_1",
            "razorpay_payment_id": "pay_1",
            "razorpay_signature": "é" * 64,
        })

        assert r.status_code == 400
        assert get_entitlement(db, user.id, NOW).plan == "free"


class TestRazorpayWebhook:
    def _event(self, user_id, order_id="order_9", payment_id="pay_9"):
        return json.dumps({
            "event": "payment.captured",
            "payload": {"payment": {"entity": {
                "id": payment_id,
                "order_id": order_id,
                "amount": 49900,
                "currency": "INR",
                "notes": {"user_id": str(user_id)},
            }}},
        }).encode()

    def test_bad_signature_is_400(self, client, make_user, db):
        user = make_user()
        body = self._event(user.id)

        r = client.post("/webhooks/razorpay", content=body, headers={"x-razorpay-signature": "bad"})

        assert r.status_code == 400
        assert get_entitlement(db, user.id, NOW).plan == "free"

    def test_missing_signature_is_400(self, client, make_user):
        body = self._event(make_user().id)
        assert client.post("/webhooks/razorpay", content=body).status_code == 400

    def test_non_ascii_signature_is_400(self, client, make_user):
        body = self._event(make_user().id)
        r = client.post("/webhooks/razorpay", content=body, headers={"x-razorpay-signature": b"\xe9"})
        assert r.status_code == 400

    def test_signed_body_that_is_not_an_object_is_400(self, client):
        for body in (b"[1, 2]", b"\"payment.captured\"", b"42", b"null"):
            headers = {"x-razorpay-signature": _sign(body, "rzp_webhook_secret")}
            assert client.post("/webhooks/razorpay", content=body, headers=headers).status_code == 400

    def test_capture_with_malformed_payment_entity_is_400(self, client):
        for body in (
            b'{"event": "payment.captured", "payload": []}',
            b'{"event": "payment.captured", "payload": {"payment": {"entity": "pay_1"}}}',
            b'{"event": "payment.captured", "payload": {"payment": {"entity": {"id": 1, "order_id": 2}}}}',
        ):
            headers = {"x-razorpay-signature": _sign(body, "rzp_webhook_secret")}
            assert client.post("/webhooks/razorpay", content=body, headers=headers).status_code == 400

    def test_capture_is_applied_once(self, client, make_user, db):
        user = make_user()
        body = self._event(user.id)
        headers = {"x-razorpay-signature": _sign(body, "rzp_webhook_secret")}

        first = client.post("/webhooks/razorpay", content=body, headers=headers)
        second = client.post("/webhooks/razorpay", content=body, headers=headers)

        assert first.status_code == 200 and first.json()["already_applied"] is False
        assert second.status_code == 200 and second.json()["already_applied"] is True
        db.expire_all()
        assert get_entitlement(db, user.id, NOW).plan == "pro"
        assert db.query(Payment).filter(Payment.order_id == "order_9").one().status == "paid"


class TestAdmin:
    def test_non_admin_is_forbidden(self, client, current_user, make_user):
        current_user.user_id = make_user().id

        assert client.get("/admin/users").status_code == 403
        assert client.get("/admin/stats").status_code == 403
        assert client.post("/admin/promo-codes", json={"code": "X"}).status_code == 403

    def test_admin_manages_subscriptions(self, client, current_user, make_user, db):
        current_user.user_id = make_user(admin=True).id
        target = make_user()

        r = client.post("/admin/subscriptions", json={
            "user_id": target.id, "plan": "pro", "status": "active", "plan_duration": "year",
        })
        assert r.status_code == 200
        assert r.json()["subscription"]["plan"] == "pro"
        assert r.json()["subscription"]["current_period_end"].startswith("2027-02-11")

        stats = client.get("/admin/stats").json()
        assert stats["total_users"] == 2
        assert stats["pro_users"] == 1

        users = {u["id"]: u for u in client.get("/admin/users").json()}
        assert users[target.id]["plan"] == "pro"
        assert users[current_user.user_id]["roles"] == ["admin"]

        assert client.delete(f"/admin/subscriptions/{target.id}").status_code == 200
        assert client.delete(f"/admin/subscriptions/{target.id}").status_code == 404

    def test_invalid_subscription_values(self, client, current_user, make_user):
        current_user.user_id = make_user(admin=True).id
        target = make_user()

        r = client.post("/admin/subscriptions", json={"user_id": target.id, "plan": "gold"})
        assert r.status_code == 400
        r = client.post("/admin/subscriptions", json={"user_id": 999, "plan": "pro"})
        assert r.status_code == 404

    def test_admin_roles(self, client, current_user, make_user):
        admin = make_user(admin=True)
        current_user.user_id = admin.id
        other = make_user()

        assert client.post(f"/admin/users/{other.id}/admin").status_code == 200
        assert client.post(f"/admin/users/{other.id}/admin").status_code == 200
        assert client.delete(f"/admin/users/{other.id}/admin").status_code == 200
        assert client.delete(f"/admin/users/{other.id}/admin").status_code == 404
        assert client.delete(f"/admin/users/{admin.id}/admin").status_code == 400

    def test_promo_crud(self, client, current_user, make_user):
        current_user.user_id = make_user(admin=True).id

        r = client.post("/admin/promo-codes", json={"code": "diwali", "discount_value": "30", "max_uses": 50})
        assert r.status_code == 201
        promo = r.json()
        assert promo["code"] == "DIWALI"

        assert client.post("/admin/promo-codes", json={"code": "Diwali"}).status_code == 409
        assert client.post("/admin/promo-codes", json={"code": "BAD", "discount_type": "bogus"}).status_code == 400

        r = client.patch(f"/admin/promo-codes/{promo['id']}", json={"is_active": False, "max_uses": None})
        assert r.status_code == 200
        assert r.json()["is_active"] is False
        assert r.json()["max_uses"] is None

        assert [p["code"] for p in client.get("/admin/promo-codes").json()] == ["DIWALI"]
        assert client.delete(f"/admin/promo-codes/{promo['id']}").status_code == 200
        assert client.delete(f"/admin/promo-codes/{promo['id']}").status_code == 404

    def test_admin_data_wipe_keeps_subscription(self, client, current_user, make_user, db):
        current_user.user_id = make_user(admin=True).id
        target = make_user()
        activate_pro(db, target.id, "month", NOW)
        db.add(DailyUsage(user_id=target.id, usage_date=NOW.date(), messages_sent=3))
        db.commit()

        assert client.delete(f"/admin/users/{target.id}/data").status_code == 200

        db.expire_all()
        assert db.query(DailyUsage).filter(DailyUsage.user_id == target.id).count() == 0
        assert get_entitlement(db, target.id, NOW).plan == "pro"
