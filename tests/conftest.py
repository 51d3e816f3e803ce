"""
Pytest configuration and fixtures.
"""

import sys
import os
from decimal import Decimal
from typing import AsyncGenerator, Callable, Dict, List, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

# Add package to path
sys.path.append(os.getcwd())

from rentflow.config import Settings
from rentflow.database import Base
from rentflow.fsm.states import PaymentStatus, ProviderType
from rentflow.models import Property, Room, Tenant
from rentflow.providers.base import (
    Balance,
    PaymentRequest,
    PaymentResponse,
    ProviderCapabilities,
    ProviderConfig,
)
from rentflow.providers.registry import ProviderRegistry
from rentflow.providers.safaricom import SafaricomProvider
from rentflow.services.retry import RetryExecutor, RetryPolicy

# Use in-memory SQLite for tests
TEST_DB_URL = "sqlite+aiosqlite://"


@pytest_asyncio.fixture
async def test_engine():
    """
    Create async engine for a test.

    Services commit, so every test gets its own in-memory database.
    """
    engine = create_async_engine(
        TEST_DB_URL,
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def db(test_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create a fresh database session for a test."""
    async_session = async_sessionmaker(
        test_engine, class_=AsyncSession, expire_on_commit=False
    )

    async with async_session() as session:
        yield session
        await session.rollback()


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        _env_file=None,
        app_env="development",
        base_url="https://rent.example.com",
        batch_item_delay=0.5,
        payment_test_mode=False,
        sms_enabled=False,
    )


class RecordingSleep:
    """Stand-in for asyncio.sleep that records requested delays."""

    def __init__(self):
        self.calls: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.calls.append(delay)


@pytest.fixture
def sleeper() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def retry(sleeper) -> RetryExecutor:
    return RetryExecutor(RetryPolicy(max_attempts=3, initial_delay=1.0, max_delay=4.0), sleep=sleeper)


class FakeProvider(SafaricomProvider):
    """
    Safaricom adapter with the network calls scripted.

    `script` maps a canonical phone number to a PaymentResponse, an
    exception instance, or a list of those consumed one per call.
    Callback verification and parsing are the real Daraja ones.
    """

    def __init__(self, capabilities: Optional[ProviderCapabilities] = None, **kwargs):
        config = ProviderConfig(
            provider=ProviderType.SAFARICOM,
            enabled=True,
            base_url="https://fake.invalid",
            callback_url="https://rent.example.com/webhooks/safaricom",
        )
        super().__init__(config, None, **kwargs)
        if capabilities is not None:
            self.capabilities = capabilities
        self.script: Dict[str, object] = {}
        self.sent: List[PaymentRequest] = []
        self.status_script: Dict[str, PaymentResponse] = {}

    async def send_payment(self, request: PaymentRequest) -> PaymentResponse:
        self.sent.append(request)
        outcome = self.script.get(request.phone_number)
        if isinstance(outcome, list):
            outcome = outcome.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        if outcome is not None:
            return outcome
        checkout_id = f"ws_CO_{len(self.sent):04d}"
        return PaymentResponse(
            success=True,
            transaction_id=checkout_id,
            reference=request.reference,
            status=PaymentStatus.PROCESSING,
            message="Success. Request accepted for processing",
            checkout_request_id=checkout_id,
            merchant_request_id=f"29115-{len(self.sent):04d}",
        )

    async def get_status(self, transaction_id: str) -> PaymentResponse:
        return self.status_script.get(
            transaction_id,
            PaymentResponse(success=True, transaction_id=transaction_id, status=PaymentStatus.PENDING),
        )

    async def get_balance(self, account_number=None) -> Balance:
        return Balance(provider=self.provider_type, available=Decimal("1000.00"))

    async def health_check(self) -> bool:
        return True


@pytest.fixture
def fake_provider(sleeper) -> FakeProvider:
    return FakeProvider(sleep=sleeper)


@pytest.fixture
def provider_factory(sleeper) -> Callable[..., FakeProvider]:
    """Build FakeProviders with custom capabilities."""
    def _make(**kwargs) -> FakeProvider:
        return FakeProvider(sleep=sleeper, **kwargs)

    return _make


@pytest.fixture
def registry(fake_provider) -> ProviderRegistry:
    return ProviderRegistry({ProviderType.SAFARICOM: fake_provider})


@pytest.fixture
def make_tenants(db) -> Callable:
    """
    Seed tenants. Each entry is (room_number, rent, phone[, status]).
    """
    async def _make(entries) -> List[Tenant]:
        prop = Property(name="Sunrise Apartments")
        db.add(prop)
        await db.flush()

        tenants = []
        for index, entry in enumerate(entries):
            room_number, rent, phone = entry[:3]
            status = entry[3] if len(entry) > 3 else "active"
            room = Room(property_id=prop.id, room_number=room_number, rent_amount=Decimal(rent))
            db.add(room)
            await db.flush()
            tenant = Tenant(
                room=room,
                first_name=f"Tenant{index}",
                last_name="Test",
                phone=phone,
                status=status,
            )
            db.add(tenant)
            tenants.append(tenant)
        await db.commit()
        return tenants

    return _make


def build_stk_callback(checkout_id: str, result_code: int = 0, amount=12000, phone=254712345678,
                 receipt: str = "QKT123ABC", merchant_id: str = "29115-34620561-1") -> dict:
    """Daraja STK callback body."""
    stk = {
        "MerchantRequestID": merchant_id,
        "CheckoutRequestID": checkout_id,
        "ResultCode": result_code,
        "ResultDesc": "The service request is processed successfully." if result_code == 0
        else "Request cancelled by user",
    }
    if result_code == 0:
        stk["CallbackMetadata"] = {
            "Item": [
                {"Name": "Amount", "Value": amount},
                {"Name": "MpesaReceiptNumber", "Value": receipt},
                {"Name": "TransactionDate", "Value": 20260101093015},
                {"Name": "PhoneNumber", "Value": phone},
            ]
        }
    return {"Body": {"stkCallback": stk}}


@pytest.fixture
def stk_callback() -> Callable[..., dict]:
    return build_stk_callback
