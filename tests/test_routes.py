"""
HTTP layer: request validation, error envelopes, auth and background confirmation
"""

import hashlib
import hmac
import json
from datetime import timedelta

import httpx
import pytest
from fastapi.testclient import TestClient

from app import app
from conftest import USER_ID, RecordingTransport, StubEmailSender
from database.session import get_session_factory
from routes.deps import get_app_settings, get_notification_outbox, get_whatsapp_client
from services.notifications import NotificationOutbox
from services.whatsapp_gateway import WhatsAppGatewayClient
from utils.dates import utcnow

CRON_AUTH = {"Authorization": "Bearer cron-secret"}
ADMIN_AUTH = {"Authorization": "Bearer admin-secret"}


@pytest.fixture
def client(catalog, session_factory, settings, whatsapp):
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_app_settings] = lambda: settings
    app.dependency_overrides[get_whatsapp_client] = lambda: whatsapp
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def current_voucher(make_voucher):
    now = utcnow()
    return make_voucher(
        "NOW10", start_date=now - timedelta(days=1), end_date=now + timedelta(days=1)
    )


def checkout(client, items=None, **extra):
    payload = {"user_id": USER_ID, "items": items or [{"type": "product", "id": "pkg-pro"}]}
    payload.update(extra)
    response = client.post("/api/customer/checkout", json=payload)
    assert response.status_code == 200, response.text
    return response.json()["transaction"]


def sign(body: bytes, secret: str = "webhook-secret") -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


class TestHealth:
    def test_health(self, client):
        assert client.get("/health").json() == {"status": "healthy"}


class TestCheckoutRoutes:
    def test_check_voucher(self, client, current_voucher):
        response = client.post(
            "/api/customer/check-voucher",
            json={"code": "NOW10", "items": [{"type": "product", "id": "pkg-pro"}]},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["is_valid"] is True
        assert data["calculation"]["discount_amount"] == 30000.0
        assert data["calculation"]["final_amount"] == 270000.0

    def test_check_voucher_expired(self, client, make_voucher):
        make_voucher("OLD10")

        response = client.post(
            "/api/customer/check-voucher",
            json={"code": "OLD10", "items": [{"type": "product", "id": "pkg-pro"}]},
        )

        assert response.status_code == 400
        assert response.json() == {
            "success": False,
            "message": "Voucher has expired",
            "error": "VOUCHER_EXPIRED",
        }

    def test_checkout_validation(self, client):
        response = client.post("/api/customer/checkout", json={"user_id": USER_ID, "items": []})

        assert response.status_code == 422
        body = response.json()
        assert body["success"] is False
        assert body["error"] == "VALIDATION_ERROR"
        assert body["message"].startswith("items:")

    def test_checkout_and_cancel(self, client, current_voucher):
        transaction = checkout(client, voucher_code="NOW10")
        assert transaction["status"] == "created"
        assert transaction["final_amount"] == 270000.0

        response = client.post(
            f"/api/customer/transactions/{transaction['id']}/cancel",
            json={"user_id": USER_ID, "reason": "Wrong package"},
        )
        assert response.status_code == 200
        assert response.json()["transaction"]["status"] == "cancelled"

        again = client.post(f"/api/customer/transactions/{transaction['id']}/cancel", json={})
        assert again.status_code == 409
        assert again.json()["error"] == "INVALID_STATUS_TRANSITION"

    def test_unknown_item(self, client):
        response = client.post(
            "/api/customer/checkout",
            json={"user_id": USER_ID, "items": [{"type": "product", "id": "nope"}]},
        )
        assert response.status_code == 404
        assert response.json()["error"] == "ITEM_NOT_FOUND"

    def test_get_transaction_of_other_user(self, client):
        transaction = checkout(client)

        response = client.get(
            f"/api/customer/transactions/{transaction['id']}", params={"user_id": "intruder"}
        )
        assert response.status_code == 404


class TestPaymentRoutes:
    def test_amount_mismatch(self, client):
        transaction = checkout(client)

        response = client.post(
            "/api/payments/process",
            json={"transactionId": transaction["id"], "method": "manual", "amount": 1},
        )

        assert response.status_code == 400
        assert response.json()["error"] == "AMOUNT_MISMATCH"

    def test_simulated_payment_is_confirmed_in_background(self, client):
        transaction = checkout(client, items=[{"type": "whatsapp", "id": "wa-starter", "duration": "month"}])

        response = client.post(
            "/api/payments/process",
            json={"transactionId": transaction["id"], "method": "test", "amount": 150000},
        )
        assert response.status_code == 200
        payment_id = response.json()["data"]["payment_id"]

        status = client.get(f"/api/payments/status/{payment_id}").json()["data"]
        assert status["status"] == "paid"
        detail = client.get(f"/api/customer/transactions/{transaction['id']}").json()
        assert detail["transaction"]["status"] == "success"
        assert detail["transaction"]["whatsapp_transaction"]["status"] == "success"

    def test_manual_payment_admin_confirmation(self, client):
        transaction = checkout(client)
        receipt = client.post(
            "/api/payments/process",
            json={"transactionId": transaction["id"], "method": "manual", "amount": 300000},
        ).json()["data"]
        assert receipt["total_amount"] == 304000.0

        url = f"/api/payments/{receipt['payment_id']}/update-status"
        assert client.post(url, json={"status": "paid"}).status_code == 401
        assert client.post(
            url, json={"status": "paid"}, headers={"Authorization": "Bearer wrong"}
        ).status_code == 401

        response = client.post(url, json={"status": "paid", "note": "BCA ok"}, headers=ADMIN_AUTH)
        assert response.status_code == 200
        assert response.json()["transaction_status"] == "success"
        assert response.json()["activation"]["success"] is True


class TestPaymentWebhook:
    def start_payment(self, client):
        transaction = checkout(client)
        return client.post(
            "/api/payments/process",
            json={"transactionId": transaction["id"], "method": "manual", "amount": 300000},
        ).json()["data"]["payment_id"]

    def test_rejects_bad_signature(self, client):
        payment_id = self.start_payment(client)
        body = json.dumps({"event_id": "evt-1", "data": {"payment_id": payment_id, "status": "paid"}}).encode()

        missing = client.post("/api/payments/webhook", content=body)
        forged = client.post(
            "/api/payments/webhook", content=body, headers={"x-payment-signature": sign(body, "nope")}
        )

        assert missing.status_code == 401
        assert forged.status_code == 401

    def test_applies_and_deduplicates(self, client):
        payment_id = self.start_payment(client)
        body = json.dumps({"event_id": "evt-1", "data": {"payment_id": payment_id, "status": "paid"}}).encode()
        headers = {"x-payment-signature": f"sha256={sign(body)}", "Content-Type": "application/json"}

        first = client.post("/api/payments/webhook", content=body, headers=headers)
        assert first.status_code == 200
        assert first.json()["transaction_status"] == "success"

        replay = client.post("/api/payments/webhook", content=body, headers=headers)
        assert replay.json() == {"status": "success", "duplicate": True}

    def test_malformed_payload(self, client):
        body = json.dumps({"event_id": "evt-2", "data": {"status": "paid"}}).encode()

        response = client.post(
            "/api/payments/webhook", content=body, headers={"x-payment-signature": sign(body)}
        )
        assert response.status_code == 400
        assert response.json()["error"] == "BAD_REQUEST"

    @pytest.mark.parametrize("payload", [[], "paid", {"data": "paid"}])
    def test_body_must_be_an_object(self, client, payload):
        body = json.dumps(payload).encode()

        response = client.post(
            "/api/payments/webhook", content=body, headers={"x-payment-signature": sign(body)}
        )
        assert response.status_code == 400


class TestCronRoutes:
    def test_requires_key(self, client):
        response = client.post("/api/public/cron/activate-subscriptions")

        assert response.status_code == 401
        assert response.json() == {
            "success": False,
            "message": "Unauthorized. Valid cron API key required.",
            "error": "UNAUTHORIZED",
        }

    def test_activation_sweep(self, client):
        response = client.post("/api/public/cron/activate-subscriptions", headers=CRON_AUTH)

        assert response.status_code == 200
        assert response.json()["summary"]["totalTransactions"] == 0

    def test_stats(self, client):
        response = client.get("/api/public/cron/activate-subscriptions", headers=CRON_AUTH)

        assert response.json()["stats"] == {
            "totalPaidTransactions": 0,
            "activeSubscriptions": 0,
            "recentActivations24h": 0,
        }

    def test_expire_payments(self, client):
        response = client.post("/api/public/cron/expire-payments", headers=CRON_AUTH)

        assert response.json()["summary"] == {"expiredPayments": 0, "expiredTransactions": 0}

    def test_dispatch_notifications(self, client, session_factory, settings, whatsapp):
        app.dependency_overrides[get_notification_outbox] = lambda: NotificationOutbox(
            session_factory, settings, whatsapp, StubEmailSender()
        )

        response = client.post("/api/public/cron/dispatch-notifications", headers=CRON_AUTH)

        assert response.json() == {
            "success": True,
            "summary": {"processed": 0, "sent": 0, "retried": 0, "failed": 0},
        }


class TestAdminRoutes:
    def voucher(self, **overrides):
        payload = {
            "code": "ADMIN20",
            "name": "Admin promo",
            "calculation_kind": "percentage",
            "scope": "products",
            "value": 20,
            "start_date": "2025-01-01T00:00:00",
        }
        payload.update(overrides)
        return payload

    def test_create_voucher(self, client):
        response = client.post("/api/admin/vouchers", json=self.voucher(), headers=ADMIN_AUTH)

        assert response.status_code == 201
        data = response.json()["data"]
        assert data["type"] == "percentage"
        assert data["discount_type"] == "products"

        usage = client.get(f"/api/admin/vouchers/{data['id']}/usage", headers=ADMIN_AUTH)
        assert usage.json()["data"]["usage_count"] == 0

    def test_percentage_over_100(self, client):
        response = client.post("/api/admin/vouchers", json=self.voucher(value=150), headers=ADMIN_AUTH)
        assert response.status_code == 422

    def test_requires_key(self, client):
        assert client.post("/api/admin/vouchers", json=self.voucher()).status_code == 401


class TestAccountRoutes:
    def test_register(self, client, wa_transport):
        response = client.post(
            "/api/auth/register", json={"name": "Siti", "phone": "081298765432"}
        )

        assert response.status_code == 201
        assert response.json()["next_step"] == "verify-otp"
        assert len(wa_transport.requests) == 1

    def test_register_delivery_failure(self, client, settings):
        def timeout(request):
            raise httpx.ReadTimeout("timed out", request=request)

        app.dependency_overrides[get_whatsapp_client] = lambda: WhatsAppGatewayClient(
            settings, transport=RecordingTransport(timeout)
        )

        response = client.post(
            "/api/auth/register", json={"name": "Siti", "phone": "081298765432"}
        )

        assert response.status_code == 503
        assert response.json()["error"] == "WHATSAPP_TIMEOUT"

    def test_verify_wrong_otp(self, client):
        response = client.post(
            "/api/auth/verify-otp", json={"phone": "081234567890", "otp": "123456"}
        )
        assert response.status_code == 400
        assert response.json()["error"] == "INVALID_OTP"


class TestSubscriptionRoute:
    def test_no_subscription(self, client):
        response = client.get("/api/customer/whatsapp/subscription", params={"user_id": USER_ID})

        assert response.json() == {"success": True, "subscription": None}

    def test_after_payment(self, client):
        transaction = checkout(client, items=[{"type": "whatsapp", "id": "wa-starter", "duration": "month"}])
        client.post(
            "/api/payments/process",
            json={"transactionId": transaction["id"], "method": "test", "amount": 150000},
        )

        response = client.get("/api/customer/whatsapp/subscription", params={"user_id": USER_ID})

        subscription = response.json()["subscription"]
        assert subscription["package_id"] == "wa-starter"
        assert subscription["transaction_id"] == transaction["id"]
        assert subscription["status"] == "active"

    def test_user_id_required(self, client):
        response = client.get("/api/customer/whatsapp/subscription")

        assert response.status_code == 422
        assert response.json()["error"] == "VALIDATION_ERROR"
