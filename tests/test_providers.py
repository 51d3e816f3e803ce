"""
Tests for provider adapters and the provider registry.
HTTP is served by httpx.MockTransport.
"""

import hashlib
import hmac
import json
from datetime import datetime
from decimal import Decimal

import httpx
import pytest

from rentflow.config import Settings
from rentflow.errors import (
    CapabilityNotSupportedError,
    ProviderNotAvailableError,
    ProviderRejectedError,
    ProviderTransientError,
)
from rentflow.fsm.states import PaymentStatus, ProviderType
from rentflow.providers.base import Capability, PaymentRequest, ProviderConfig, RawCallback
from rentflow.providers.coop import CoopProvider, parse_statement_csv
from rentflow.providers.jenga import JengaProvider
from rentflow.providers.registry import ProviderRegistry, build_provider_configs
from rentflow.providers.safaricom import SafaricomProvider, map_result_code
from rentflow.services.retry import RetryExecutor, RetryPolicy


class Router:
    """Minimal MockTransport handler keyed by URL path."""

    def __init__(self, routes):
        self.routes = routes
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get(request.url.path)
        if route is None:
            return httpx.Response(404, json={"error": "not found"})
        if callable(route):
            return route(request)
        status, body = route
        return httpx.Response(status, json=body)

    def calls_to(self, path):
        return [r for r in self.requests if r.url.path == path]


def make_client(router) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(router))


def make_config(provider: ProviderType, **overrides) -> ProviderConfig:
    values = {
        "provider": provider,
        "enabled": True,
        "base_url": "https://sandbox.test",
        "callback_url": f"https://rent.example.com/webhooks/{provider.value}",
        "credentials": {
            "api_key": "api-key",
            "consumer_key": "ck",
            "consumer_secret": "cs",
            "merchant_code": "0011547896523",
            "short_code": "174379",
            "passkey": "passkey",
        },
    }
    values.update(overrides)
    return ProviderConfig(**values)


def signed(body: dict, secret: str, header: str, prefix: str = "") -> RawCallback:
    raw = json.dumps(body).encode()
    signature = hmac.new(secret.encode(), raw, hashlib.sha256).hexdigest()
    return RawCallback(body=raw, headers={header: prefix + signature})


def rent_request(reference="Rent-2026-01-A1", amount="12000.00", phone="254712345678"):
    return PaymentRequest(
        phone_number=phone,
        amount=Decimal(amount),
        reference=reference,
        description="Rent payment for A1 - 2026-01",
    )


SAFARICOM_TOKEN = ("/oauth/v1/generate", (200, {"access_token": "tok", "expires_in": "3599"}))
JENGA_TOKEN = ("/identity-sandbox/v2/token", (200, {"access_token": "jtok", "expires_in": 3600}))


class TestPaymentRequest:

    def test_float_amount_rejected(self):
        with pytest.raises(ValueError):
            PaymentRequest(phone_number="254712345678", amount=12000.5, reference="R1")

    def test_non_positive_amount_rejected(self):
        with pytest.raises(ValueError):
            PaymentRequest(phone_number="254712345678", amount=Decimal("0"), reference="R1")

    def test_string_amount_accepted(self):
        request = PaymentRequest(phone_number="254712345678", amount="12000.50", reference="R1")
        assert request.amount == Decimal("12000.50")


class TestSafaricomProvider:
    """Daraja STK push."""

    @pytest.mark.asyncio
    async def test_stk_push_accepted(self):
        router = Router(dict([
            SAFARICOM_TOKEN,
            ("/mpesa/stkpush/v1/processrequest", (200, {
                "MerchantRequestID": "29115-34620561-1",
                "CheckoutRequestID": "ws_CO_191220191020363925",
                "ResponseCode": "0",
                "ResponseDescription": "Success. Request accepted for processing",
                "CustomerMessage": "Success. Request accepted for processing",
            })),
        ]))
        async with make_client(router) as client:
            provider = SafaricomProvider(make_config(ProviderType.SAFARICOM), client)
            response = await provider.send_payment(
                rent_request(reference="Rent-2026-01-A101-3f9a1c2b", amount="12000.50")
            )

        assert response.success is True
        assert response.status == PaymentStatus.PROCESSING
        assert response.transaction_id == "ws_CO_191220191020363925"
        assert response.checkout_request_id == "ws_CO_191220191020363925"
        assert response.merchant_request_id == "29115-34620561-1"

        sent = json.loads(router.calls_to("/mpesa/stkpush/v1/processrequest")[0].content)
        assert sent["Amount"] == 12001
        assert sent["PhoneNumber"] == "254712345678"
        assert sent["BusinessShortCode"] == "174379"
        assert sent["CallBackURL"] == "https://rent.example.com/webhooks/safaricom"
        assert len(sent["AccountReference"]) <= 12
        assert len(sent["TransactionDesc"]) <= 13

    @pytest.mark.asyncio
    async def test_token_cached(self):
        router = Router(dict([
            SAFARICOM_TOKEN,
            ("/mpesa/stkpush/v1/processrequest", (200, {"ResponseCode": "0", "CheckoutRequestID": "c1"})),
        ]))
        async with make_client(router) as client:
            provider = SafaricomProvider(make_config(ProviderType.SAFARICOM), client)
            await provider.send_payment(rent_request(reference="R1"))
            await provider.send_payment(rent_request(reference="R2"))

        assert len(router.calls_to("/oauth/v1/generate")) == 1
        assert router.calls_to("/mpesa/stkpush/v1/processrequest")[0].headers["authorization"] == "Bearer tok"

    @pytest.mark.asyncio
    async def test_business_rejection_is_failed_response(self):
        router = Router(dict([
            SAFARICOM_TOKEN,
            ("/mpesa/stkpush/v1/processrequest", (200, {
                "ResponseCode": "1",
                "ResponseDescription": "Invalid PhoneNumber",
            })),
        ]))
        async with make_client(router) as client:
            provider = SafaricomProvider(make_config(ProviderType.SAFARICOM), client)
            response = await provider.send_payment(rent_request())

        assert response.success is False
        assert response.status == PaymentStatus.FAILED
        assert response.message == "Invalid PhoneNumber"

    @pytest.mark.asyncio
    async def test_server_error_is_transient(self):
        router = Router(dict([
            SAFARICOM_TOKEN,
            ("/mpesa/stkpush/v1/processrequest", (503, {"errorMessage": "Service unavailable"})),
        ]))
        async with make_client(router) as client:
            provider = SafaricomProvider(make_config(ProviderType.SAFARICOM), client)
            with pytest.raises(ProviderTransientError) as exc_info:
                await provider.send_payment(rent_request())

        assert exc_info.value.status_code == 503

    @pytest.mark.asyncio
    async def test_client_error_is_rejected(self):
        router = Router(dict([
            SAFARICOM_TOKEN,
            ("/mpesa/stkpush/v1/processrequest", (400, {"errorMessage": "Bad Request - Invalid Amount"})),
        ]))
        async with make_client(router) as client:
            provider = SafaricomProvider(make_config(ProviderType.SAFARICOM), client)
            with pytest.raises(ProviderRejectedError):
                await provider.send_payment(rent_request())

    @pytest.mark.asyncio
    async def test_transport_error_is_transient(self):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        async with make_client(refuse) as client:
            provider = SafaricomProvider(make_config(ProviderType.SAFARICOM), client)
            with pytest.raises(ProviderTransientError):
                await provider.send_payment(rent_request())

    @pytest.mark.asyncio
    async def test_status_query(self):
        router = Router(dict([
            SAFARICOM_TOKEN,
            ("/mpesa/stkpushquery/v1/query", (200, {
                "ResponseCode": "0",
                "MerchantRequestID": "m1",
                "CheckoutRequestID": "ws_CO_1",
                "ResultCode": "1032",
                "ResultDesc": "Request cancelled by user",
            })),
        ]))
        async with make_client(router) as client:
            provider = SafaricomProvider(make_config(ProviderType.SAFARICOM), client)
            response = await provider.get_status("ws_CO_1")

        assert response.status == PaymentStatus.CANCELLED
        assert response.failure_reason == "Request cancelled by user"

    def test_result_codes(self):
        assert map_result_code(0) == PaymentStatus.COMPLETED
        assert map_result_code("0") == PaymentStatus.COMPLETED
        assert map_result_code(1032) == PaymentStatus.CANCELLED
        assert map_result_code(1) == PaymentStatus.FAILED
        assert map_result_code(2001) == PaymentStatus.FAILED
        assert map_result_code(None) == PaymentStatus.PENDING

    def test_verify_well_formed_callback(self, stk_callback):
        provider = SafaricomProvider(make_config(ProviderType.SAFARICOM), None)
        raw = RawCallback(body=json.dumps(stk_callback("ws_CO_1")).encode())
        assert provider.verify_callback(raw) is True

    @pytest.mark.parametrize("body", [
        b"not json",
        b"[]",
        json.dumps({"Body": {}}).encode(),
        json.dumps({"Body": {"stkCallback": {"MerchantRequestID": "m1", "ResultCode": 0}}}).encode(),
        json.dumps({"Body": {"stkCallback": {
            "MerchantRequestID": "m1", "CheckoutRequestID": "c1", "ResultCode": "0",
        }}}).encode(),
    ])
    def test_verify_rejects_malformed_callback(self, body):
        provider = SafaricomProvider(make_config(ProviderType.SAFARICOM), None)
        assert provider.verify_callback(RawCallback(body=body)) is False

    def test_parse_success_callback(self, stk_callback):
        provider = SafaricomProvider(make_config(ProviderType.SAFARICOM), None)
        raw = RawCallback(body=json.dumps(stk_callback("ws_CO_1", amount=12000)).encode())

        callback = provider.parse_callback(raw)

        assert callback.status == PaymentStatus.COMPLETED
        assert callback.transaction_id == "ws_CO_1"
        assert callback.reference is None
        assert callback.amount == Decimal("12000")
        assert callback.phone_number == "254712345678"
        assert callback.receipt_number == "QKT123ABC"
        assert callback.completed_at == datetime(2026, 1, 1, 9, 30, 15)
        assert callback.failure_reason is None

    def test_parse_cancelled_callback(self, stk_callback):
        provider = SafaricomProvider(make_config(ProviderType.SAFARICOM), None)
        raw = RawCallback(body=json.dumps(stk_callback("ws_CO_1", result_code=1032)).encode())

        callback = provider.parse_callback(raw)

        assert callback.status == PaymentStatus.CANCELLED
        assert callback.amount is None
        assert callback.failure_reason == "Request cancelled by user"


class TestJengaProvider:
    """JengaHQ remittance and signed callbacks."""

    @pytest.mark.asyncio
    async def test_send_completed(self):
        router = Router(dict([
            JENGA_TOKEN,
            ("/send-money-sandbox/v2/remittance", (200, {
                "status": "SUCCESS",
                "transactionId": "JG-10001",
                "message": "Transfer successful",
            })),
        ]))
        async with make_client(router) as client:
            provider = JengaProvider(make_config(ProviderType.JENGA), client)
            response = await provider.send_payment(rent_request())

        assert response.success is True
        assert response.status == PaymentStatus.COMPLETED
        assert response.transaction_id == "JG-10001"

        sent = json.loads(router.calls_to("/send-money-sandbox/v2/remittance")[0].content)
        assert sent["transfer"]["amount"] == "12000.00"
        assert sent["destination"]["mobileNumber"] == "254712345678"

    @pytest.mark.asyncio
    async def test_send_rejected(self):
        router = Router(dict([
            JENGA_TOKEN,
            ("/send-money-sandbox/v2/remittance", (200, {"status": "FAILED", "message": "Insufficient funds"})),
        ]))
        async with make_client(router) as client:
            provider = JengaProvider(make_config(ProviderType.JENGA), client)
            response = await provider.send_payment(rent_request())

        assert response.success is False
        assert response.failure_reason == "Insufficient funds"

    def test_unknown_status_maps_to_pending(self):
        assert JengaProvider.map_status("SOMETHING_NEW") == PaymentStatus.PENDING
        assert JengaProvider.map_status("success") == PaymentStatus.COMPLETED
        assert JengaProvider.map_status(None) == PaymentStatus.PENDING

    def test_valid_signature(self):
        provider = JengaProvider(make_config(ProviderType.JENGA, webhook_secret="s3cret"), None)
        raw = signed({"status": "SUCCESS", "transactionId": "JG-1"}, "s3cret", "X-Jenga-Signature")
        assert provider.verify_callback(raw) is True

    def test_wrong_signature(self):
        provider = JengaProvider(make_config(ProviderType.JENGA, webhook_secret="s3cret"), None)
        raw = signed({"status": "SUCCESS", "transactionId": "JG-1"}, "other", "X-Jenga-Signature")
        assert provider.verify_callback(raw) is False

    def test_missing_signature_header(self):
        provider = JengaProvider(make_config(ProviderType.JENGA, webhook_secret="s3cret"), None)
        raw = RawCallback(body=b'{"status": "SUCCESS"}')
        assert provider.verify_callback(raw) is False

    def test_unsigned_callbacks_only_when_allowed(self):
        raw = RawCallback(body=b'{"status": "SUCCESS"}')
        strict = JengaProvider(make_config(ProviderType.JENGA), None)
        lenient = JengaProvider(make_config(ProviderType.JENGA, allow_unsigned_callbacks=True), None)

        assert strict.verify_callback(raw) is False
        assert lenient.verify_callback(raw) is True

    def test_parse_callback(self):
        provider = JengaProvider(make_config(ProviderType.JENGA), None)
        raw = RawCallback(body=json.dumps({
            "status": "COMPLETED",
            "transactionId": "JG-1",
            "reference": "Rent-2026-01-A1-abc",
            "amount": "12000.00",
            "phoneNumber": "254712345678",
        }).encode())

        callback = provider.parse_callback(raw)

        assert callback.status == PaymentStatus.COMPLETED
        assert callback.reference == "Rent-2026-01-A1-abc"
        assert callback.amount == Decimal("12000.00")

    def test_parse_callback_numeric_fields(self):
        provider = JengaProvider(make_config(ProviderType.JENGA), None)
        raw = RawCallback(body=json.dumps({
            "status": "SUCCESS",
            "transactionId": 88120045,
            "reference": "Rent-2026-01-A1-abc",
            "amount": 12000,
            "phoneNumber": 254712345678,
            "receiptNumber": 5521,
        }).encode())

        callback = provider.parse_callback(raw)

        assert callback.transaction_id == "88120045"
        assert callback.phone_number == "254712345678"
        assert callback.receipt_number == "5521"
        assert callback.amount == Decimal("12000")

    @pytest.mark.asyncio
    async def test_reversal_not_supported(self):
        provider = JengaProvider(make_config(ProviderType.JENGA), None)
        with pytest.raises(CapabilityNotSupportedError):
            await provider.reverse_transaction("JG-1", Decimal("100"), "duplicate")

    @pytest.mark.asyncio
    async def test_send_batch_paces_sub_batches(self, sleeper):
        counter = {"n": 0}

        def remit(request):
            counter["n"] += 1
            body = json.loads(request.content)
            return httpx.Response(200, json={
                "status": "PENDING",
                "transactionId": f"JG-{body['transfer']['reference']}",
            })

        router = Router(dict([JENGA_TOKEN, ("/send-money-sandbox/v2/remittance", remit)]))
        retry = RetryExecutor(RetryPolicy(max_attempts=2), sleep=sleeper)
        requests = [rent_request(reference=f"R{n}") for n in range(7)]

        async with make_client(router) as client:
            provider = JengaProvider(make_config(ProviderType.JENGA), client, sleep=sleeper)
            responses = await provider.send_batch(requests, retry)

        assert counter["n"] == 7
        assert [r.transaction_id for r in responses] == [f"JG-R{n}" for n in range(7)]
        assert all(r.status == PaymentStatus.PROCESSING for r in responses)
        # 5 + 2: one pause between the two sub-batches
        assert sleeper.calls == [JengaProvider.BATCH_DELAY]

    @pytest.mark.asyncio
    async def test_send_batch_isolates_failures(self, sleeper):
        def remit(request):
            body = json.loads(request.content)
            if body["transfer"]["reference"] == "R1":
                return httpx.Response(400, json={"message": "Invalid mobile number"})
            return httpx.Response(200, json={"status": "SUCCESS", "transactionId": "JG-ok"})

        router = Router(dict([JENGA_TOKEN, ("/send-money-sandbox/v2/remittance", remit)]))
        retry = RetryExecutor(RetryPolicy(max_attempts=2), sleep=sleeper)

        async with make_client(router) as client:
            provider = JengaProvider(make_config(ProviderType.JENGA), client, sleep=sleeper)
            responses = await provider.send_batch([rent_request(reference=f"R{n}") for n in range(3)], retry)

        assert [r.success for r in responses] == [True, False, True]
        assert responses[1].reference == "R1"
        assert responses[1].status == PaymentStatus.FAILED


STATEMENT = """Transaction ID,Reference,Amount,Phone Number,Status,Account Number,Narration,Date
CB100,Rent-2026-01-A1-abc,"12,000.00",0712345678,DR,0011547896523,Rent A1,2026-01-05T10:00:00
CB101,,8500.00,254722000111,RETURNED,0011547896523,Account closed,2026-01-05T10:05:00
,Rent-2026-01-A3-abc,9000.00,0733000111,DR,0011547896523,No txn id,
CB103,Rent-2026-01-A4-abc,not-a-number,0744000111,DR,0011547896523,Bad amount,
"""


class TestCoopProvider:
    """COOP Bank bulk transfers and statements."""

    def test_capabilities(self):
        assert not CoopProvider.capabilities.supports(Capability.PUSH_PAYMENT)
        assert not CoopProvider.capabilities.supports(Capability.WEBHOOK)
        assert CoopProvider.capabilities.supports(Capability.CSV_RECONCILIATION)

    def test_parse_statement(self):
        lines = parse_statement_csv(STATEMENT)

        assert [line.transaction_id for line in lines] == ["CB100", "CB101"]
        assert lines[0].amount == Decimal("12000.00")
        assert lines[0].status == PaymentStatus.COMPLETED
        assert lines[0].reference == "Rent-2026-01-A1-abc"
        assert lines[1].reference is None
        assert lines[1].status == PaymentStatus.FAILED

    def test_parse_statement_header_aliases(self):
        lines = parse_statement_csv("TxnId,Ref,Amount,Mobile,State\nCB1,R1,100,0712345678,PENDING\n")
        assert lines[0].transaction_id == "CB1"
        assert lines[0].phone_number == "0712345678"
        assert lines[0].status == PaymentStatus.PROCESSING

    def test_csv_not_supported_elsewhere(self):
        provider = SafaricomProvider(make_config(ProviderType.SAFARICOM), None)
        with pytest.raises(CapabilityNotSupportedError):
            provider.parse_reconciliation_csv(STATEMENT)

    @pytest.mark.asyncio
    async def test_bulk_submission(self, sleeper):
        def bulk(request):
            payments = json.loads(request.content)["payments"]
            # Answer for the first item only
            return httpx.Response(200, json={"results": [
                {"reference": payments[0]["reference"], "status": "PROCESSING", "transactionId": "CB-1"},
            ]})

        router = Router({"/api/payments/bulk": bulk})
        retry = RetryExecutor(RetryPolicy(max_attempts=1), sleep=sleeper)

        async with make_client(router) as client:
            provider = CoopProvider(make_config(ProviderType.COOP), client, sleep=sleeper)
            responses = await provider.send_batch([rent_request(reference="R1"), rent_request(reference="R2")], retry)

        assert len(router.calls_to("/api/payments/bulk")) == 1
        assert responses[0].success is True
        assert responses[0].transaction_id == "CB-1"
        assert responses[1].success is False
        assert responses[1].message == "No result returned for item"

    @pytest.mark.asyncio
    async def test_bulk_chunk_failure_fails_chunk(self, sleeper):
        router = Router({"/api/payments/bulk": (502, {"error": "bad gateway"})})
        retry = RetryExecutor(RetryPolicy(max_attempts=2, initial_delay=0.5), sleep=sleeper)

        async with make_client(router) as client:
            provider = CoopProvider(make_config(ProviderType.COOP), client, sleep=sleeper)
            responses = await provider.send_batch([rent_request(reference="R1"), rent_request(reference="R2")], retry)

        assert len(router.calls_to("/api/payments/bulk")) == 2
        assert [r.status for r in responses] == [PaymentStatus.FAILED, PaymentStatus.FAILED]
        assert "after 2 attempts" in responses[0].message

    def test_signature_with_prefix(self):
        provider = CoopProvider(make_config(ProviderType.COOP, webhook_secret="coop-secret"), None)
        raw = signed(
            {"transactionId": "CB1", "status": "SUCCESS"}, "coop-secret", "X-COOP-Signature", prefix="sha256=",
        )
        assert provider.verify_callback(raw) is True

    def test_callback_requires_fields(self):
        provider = CoopProvider(make_config(ProviderType.COOP, webhook_secret="coop-secret"), None)
        raw = signed({"status": "SUCCESS"}, "coop-secret", "X-COOP-Signature")
        assert provider.verify_callback(raw) is False

    def test_parse_callback_numeric_fields(self):
        provider = CoopProvider(make_config(ProviderType.COOP), None)
        raw = RawCallback(body=json.dumps({
            "transactionId": 700123,
            "status": "SUCCESS",
            "amount": 9500.5,
            "phoneNumber": 254722000111,
        }).encode())

        callback = provider.parse_callback(raw)

        assert callback.transaction_id == "700123"
        assert callback.phone_number == "254722000111"
        assert callback.amount == Decimal("9500.5")
        assert callback.reference is None


class TestRawCallback:

    def test_header_names_case_insensitive(self):
        raw = RawCallback(body=b"{}", headers={"X-Jenga-Signature": "abc"})
        assert raw.header("x-jenga-signature") == "abc"
        assert raw.header("X-Signature", "X-JENGA-SIGNATURE") == "abc"

    def test_json_body_must_be_object(self):
        with pytest.raises(ValueError):
            RawCallback(body=b"[1, 2]").json_body()


class TestProviderRegistry:

    def _settings(self, **overrides):
        values = {
            "_env_file": None,
            "app_env": "development",
            "base_url": "https://rent.example.com/",
            "safaricom_consumer_key": "ck",
            "safaricom_consumer_secret": "cs",
            "safaricom_short_code": "174379",
            "safaricom_passkey": "pk",
            "safaricom_initiator_name": "apiop",
            "safaricom_security_credential": "cred",
        }
        values.update(overrides)
        return Settings(**values)

    def test_configs_validated(self):
        configs = build_provider_configs(self._settings())

        safaricom = configs[ProviderType.SAFARICOM]
        assert safaricom.enabled is True
        assert safaricom.sandbox is True
        assert safaricom.base_url == "https://sandbox.safaricom.co.ke"
        assert safaricom.callback_url == "https://rent.example.com/webhooks/safaricom"
        assert safaricom.allow_unsigned_callbacks is True

        jenga = configs[ProviderType.JENGA]
        assert jenga.enabled is False
        assert "jenga_api_key is required" in jenga.validation_errors

    def test_production_urls(self):
        configs = build_provider_configs(self._settings(app_env="production"))
        assert configs[ProviderType.SAFARICOM].base_url == "https://api.safaricom.co.ke"
        assert configs[ProviderType.SAFARICOM].allow_unsigned_callbacks is False

    @pytest.mark.asyncio
    async def test_lookup(self):
        async with httpx.AsyncClient() as client:
            registry = ProviderRegistry.from_settings(self._settings(default_payment_provider="jenga"), client)

        # Configured default is not enabled, so fall back by priority
        assert registry.default_provider().name == "safaricom"
        assert registry.available() == [ProviderType.SAFARICOM]
        assert registry.adapter("jenga").name == "jenga"
        with pytest.raises(ProviderNotAvailableError):
            registry.get("jenga")
        with pytest.raises(ProviderNotAvailableError):
            registry.adapter("paypal")

    @pytest.mark.asyncio
    async def test_best_provider_for(self):
        async with httpx.AsyncClient() as client:
            registry = ProviderRegistry.from_settings(
                self._settings(coop_api_key="key", coop_merchant_code="001"), client,
            )

        assert registry.best_provider_for(Capability.B2B).name == "coop"
        assert registry.best_provider_for(Capability.PUSH_PAYMENT).name == "safaricom"
        assert registry.best_provider_for(Capability.CSV_RECONCILIATION).name == "coop"

    @pytest.mark.asyncio
    async def test_best_provider_for_unsupported(self):
        async with httpx.AsyncClient() as client:
            registry = ProviderRegistry.from_settings(self._settings(), client)

        with pytest.raises(ProviderNotAvailableError):
            registry.best_provider_for(Capability.CSV_RECONCILIATION)

    def test_no_providers(self):
        registry = ProviderRegistry({})
        with pytest.raises(ProviderNotAvailableError):
            registry.default_provider()

    @pytest.mark.asyncio
    async def test_health(self):
        router = Router({"/oauth/v1/generate": (500, {"error": "down"})})
        async with make_client(router) as client:
            registry = ProviderRegistry.from_settings(self._settings(), client)
            health = await registry.health()

        assert health == {"safaricom": False}
