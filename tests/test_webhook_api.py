"""
Tests for the webhook and admin HTTP endpoints.
"""

import json
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from rentflow.api import deps
from rentflow.errors import (
    BatchNotFoundError,
    BatchStateError,
    ProviderNotAvailableError,
    WebhookVerificationError,
)
from rentflow.fsm.states import PaymentStatus, ProviderType
from rentflow.main import app
from rentflow.providers.base import PaymentResponse, ProviderConfig
from rentflow.providers.coop import CoopProvider
from rentflow.providers.registry import ProviderRegistry
from rentflow.services.webhook_service import ReconcileResult

APPLIED = ReconcileResult(
    outcome="applied",
    payment_id="5b0c8f7e-0000-4000-8000-000000000001",
    reference="Rent-2026-01-A1-9f2c",
    status=PaymentStatus.COMPLETED,
    transaction_id="ws_CO_0001",
    message="Payment updated",
)

JENGA_CALLBACK = {
    "status": "SUCCESS",
    "transactionId": "JG-777",
    "reference": "Rent-2026-01-A1-9f2c",
    "amount": "12000.00",
}


@pytest.fixture
def webhook_service():
    service = AsyncMock()
    service.process_callback.return_value = APPLIED
    return service


@pytest.fixture
def client(webhook_service):
    # No `with` block: the lifespan (database, Redis) is not started
    app.dependency_overrides[deps.get_webhook_service] = lambda: webhook_service
    yield TestClient(app)
    app.dependency_overrides.clear()


class TestSafaricomWebhook:
    """Daraja always gets HTTP 200 with a ResultCode."""

    def test_accepted(self, client, webhook_service, stk_callback):
        response = client.post("/webhooks/safaricom", json=stk_callback("ws_CO_0001"))

        assert response.status_code == 200
        assert response.json() == {
            "ResultCode": 0,
            "ResultDesc": "Accepted",
            "ThirdPartyTransID": "ws_CO_0001",
        }
        provider, raw = webhook_service.process_callback.await_args.args
        assert provider == "safaricom"
        assert json.loads(raw.body)["Body"]["stkCallback"]["CheckoutRequestID"] == "ws_CO_0001"

    def test_verification_failure_still_200(self, client, webhook_service):
        webhook_service.process_callback.side_effect = WebhookVerificationError(
            "bad", provider="safaricom", reason="verification_failed",
        )

        response = client.post("/webhooks/safaricom", json={"Body": {}})

        assert response.status_code == 200
        assert response.json()["ResultCode"] == 1
        assert "ThirdPartyTransID" not in response.json()

    def test_internal_error_still_200(self, client, webhook_service):
        webhook_service.process_callback.side_effect = RuntimeError("database down")

        response = client.post("/webhooks/safaricom", json={"Body": {}})

        assert response.status_code == 200
        assert response.json() == {"ResultCode": 1, "ResultDesc": "Internal error"}


class TestGenericWebhook:

    def test_jenga_applied(self, client):
        response = client.post(
            "/webhooks/jenga",
            content=json.dumps(JENGA_CALLBACK),
            headers={"X-Jenga-Signature": "abc"},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["outcome"] == "applied"
        assert body["status"] == "completed"

    def test_signature_headers_forwarded(self, client, webhook_service):
        client.post("/webhooks/jenga", content=b"{}", headers={"X-Jenga-Signature": "abc"})

        _, raw = webhook_service.process_callback.await_args.args
        assert raw.header("x-jenga-signature") == "abc"

    def test_bad_signature(self, client, webhook_service):
        webhook_service.process_callback.side_effect = WebhookVerificationError(
            "Jenga callback verification failed", provider="jenga", reason="verification_failed",
        )

        response = client.post("/webhooks/jenga", json=JENGA_CALLBACK)

        assert response.status_code == 401
        assert response.json()["success"] is False

    def test_unknown_provider(self, client, webhook_service):
        webhook_service.process_callback.side_effect = ProviderNotAvailableError("unknown")

        response = client.post("/webhooks/paypal", json={})

        assert response.status_code == 400

    def test_malformed_payload(self, client, webhook_service):
        webhook_service.process_callback.side_effect = KeyError("reference")

        response = client.post("/webhooks/coop", json={})

        assert response.status_code == 400
        assert response.json()["message"] == "Malformed callback payload"

    def test_internal_error(self, client, webhook_service):
        webhook_service.process_callback.side_effect = RuntimeError("database down")

        response = client.post("/webhooks/coop", json={})

        assert response.status_code == 500


class TestAdminEndpoints:

    @pytest.fixture
    def batch_service(self):
        return AsyncMock()

    @pytest.fixture
    def admin(self, client, batch_service):
        app.dependency_overrides[deps.get_batch_service] = lambda: batch_service
        app.dependency_overrides[deps.get_admin_user] = lambda: "test-key"
        return client

    def test_missing_admin_key(self, client, batch_service):
        app.dependency_overrides[deps.get_batch_service] = lambda: batch_service

        response = client.get("/admin/batches/RENT-2026-01-X")

        assert response.status_code == 401
        batch_service.get_batch_status.assert_not_awaited()

    def test_wrong_admin_key(self, client, batch_service, monkeypatch):
        monkeypatch.setattr(deps.settings, "admin_api_key", "right-key")
        app.dependency_overrides[deps.get_batch_service] = lambda: batch_service

        response = client.get("/admin/batches/RENT-2026-01-X", headers={"X-Admin-Key": "wrong"})

        assert response.status_code == 401

    def test_trigger_collection(self, admin, batch_service):
        batch_service.run_monthly_rent_collection.return_value = {
            "batch_id": "RENT-2026-01-ABC",
            "status": "processing",
            "provider": "safaricom",
            "test_mode": False,
            "total_payments": 3,
            "failed_payments": 1,
            "pending_payments": 2,
            "results": [],
        }

        response = admin.post("/admin/batches/rent-collection", json={"month": "2026-01"})

        assert response.status_code == 200
        assert response.json()["batch_id"] == "RENT-2026-01-ABC"
        assert batch_service.run_monthly_rent_collection.await_args.kwargs["month"] == "2026-01"

    def test_trigger_collection_bad_month(self, admin, batch_service):
        response = admin.post("/admin/batches/rent-collection", json={"month": "2026-13"})

        assert response.status_code == 422
        batch_service.run_monthly_rent_collection.assert_not_awaited()

    def test_batch_not_found(self, admin, batch_service):
        batch_service.get_batch_status.side_effect = BatchNotFoundError("RENT-X")

        response = admin.get("/admin/batches/RENT-X")

        assert response.status_code == 404

    def test_retry_conflict(self, admin, batch_service):
        batch_service.retry_failed_payments.side_effect = BatchStateError("Batch is still processing")

        response = admin.post("/admin/batches/RENT-X/retry")

        assert response.status_code == 409
        assert response.json()["detail"] == "Batch is still processing"

    def test_phone_audit(self, admin, batch_service):
        batch_service.audit_tenant_phones.return_value = {
            "checked": 2,
            "valid": ["+254 711 000 001"],
            "invalid": [{"phone": "0722", "code": "INVALID_LENGTH", "room_number": "A4"}],
        }

        response = admin.get("/admin/tenants/phone-audit")

        assert response.status_code == 200
        assert response.json()["checked"] == 2
        assert response.json()["invalid"][0]["code"] == "INVALID_LENGTH"

    def test_reversal(self, admin):
        adapter = MagicMock()
        adapter.capabilities.supports.return_value = True
        adapter.reverse_transaction = AsyncMock(return_value=PaymentResponse(
            success=True,
            transaction_id="AG_20260105_0001",
            status=PaymentStatus.PROCESSING,
            message="Accept the service request successfully.",
        ))
        registry = MagicMock()
        registry.get.return_value = adapter
        app.dependency_overrides[deps.get_registry] = lambda: registry

        response = admin.post(
            "/admin/payments/safaricom/QAB12CD34/reverse",
            json={"amount": "12000.00", "reason": "Duplicate payment"},
        )

        assert response.status_code == 200
        assert response.json()["status"] == "success"
        assert response.json()["reversal"]["transaction_id"] == "AG_20260105_0001"
        adapter.reverse_transaction.assert_awaited_once_with("QAB12CD34", Decimal("12000.00"), "Duplicate payment")

    def test_reversal_not_supported(self, admin):
        coop = CoopProvider(
            ProviderConfig(provider=ProviderType.COOP, enabled=True, base_url="https://coop.invalid"), None,
        )
        app.dependency_overrides[deps.get_registry] = lambda: ProviderRegistry({ProviderType.COOP: coop})

        response = admin.post(
            "/admin/payments/coop/CB100/reverse",
            json={"amount": "12000.00", "reason": "Duplicate payment"},
        )

        assert response.status_code == 400

    def test_reversal_requires_positive_amount(self, admin):
        registry = MagicMock()
        app.dependency_overrides[deps.get_registry] = lambda: registry

        response = admin.post(
            "/admin/payments/safaricom/QAB12CD34/reverse",
            json={"amount": "0", "reason": "Duplicate payment"},
        )

        assert response.status_code == 422
        registry.get.assert_not_called()


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
