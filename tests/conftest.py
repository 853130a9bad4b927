"""Pytest fixtures for testing"""

import asyncio
from decimal import Decimal
from typing import Callable, Generator, List, Optional

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from smartz_gateway.api.dependencies import (
    get_payment_client,
    get_pricing_policy,
    get_provider_client,
)
from smartz_gateway.api.main import create_app
from smartz_gateway.domain.coordinator import TransactionCoordinator
from smartz_gateway.domain.exceptions import NotAvailableError
from smartz_gateway.domain.models import (
    AcquiredNumber,
    ActivationStatus,
    CodeStatus,
    PaymentVerification,
)
from smartz_gateway.domain.pricing import MultiplicativeMarginPolicy
from smartz_gateway.infrastructure.clients.payments import PaymentVerifier
from smartz_gateway.infrastructure.clients.provider import ProviderGateway
from smartz_gateway.infrastructure.database.ledger import LedgerStore
from smartz_gateway.infrastructure.database.models import Account, Base
from smartz_gateway.infrastructure.database.repositories import OrderRepository
from smartz_gateway.infrastructure.database.session import get_session_factory


# Test database
TEST_DATABASE_URL = "sqlite:///./test.db"
engine = create_engine(TEST_DATABASE_URL, connect_args={"check_same_thread": False})
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


class FakeProvider(ProviderGateway):
    """Scriptable provider: prices per (service, country), one acquisition outcome, queued poll answers"""

    def __init__(self):
        self.prices = {("wa", "22"): Decimal("30")}
        self.acquire_error: Optional[Exception] = None
        self.acquire_delay = 0.0
        self.statuses: List[ActivationStatus] = [ActivationStatus(status=CodeStatus.WAITING)]
        self.acquire_calls = 0
        self.poll_calls = 0

    async def get_service_price(self, service, country):
        await asyncio.sleep(0)
        if (service, country) not in self.prices:
            raise NotAvailableError(f"No price for {service}/{country}")
        return self.prices[(service, country)]

    async def acquire_number(self, service, country):
        self.acquire_calls += 1
        await asyncio.sleep(self.acquire_delay)
        if self.acquire_error is not None:
            raise self.acquire_error
        return AcquiredNumber(provider_order_id=f"act-{self.acquire_calls}", phone_number="2348012345678")

    async def poll_status(self, provider_order_id):
        self.poll_calls += 1
        if len(self.statuses) > 1:
            return self.statuses.pop(0)
        return self.statuses[0]

    async def get_countries(self):
        return {"22": {"id": 22, "eng": "India"}}

    async def get_services(self):
        return {"services": [{"code": "wa", "name": "Whatsapp"}]}


class FakePayments(PaymentVerifier):
    """Payment gateway answering from a reference -> verification map"""

    def __init__(self):
        self.results = {
            "ref_ok": PaymentVerification(verified=True, amount_minor=22500, currency="NGN"),
            "ref_small": PaymentVerification(verified=True, amount_minor=10, currency="NGN"),
            "ref_failed": PaymentVerification(verified=False, amount_minor=22500, currency="NGN"),
            "ref_usd": PaymentVerification(verified=True, amount_minor=22500, currency="USD"),
        }
        self.error: Optional[Exception] = None
        self.calls = 0

    async def verify(self, reference):
        self.calls += 1
        await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        return self.results.get(reference, PaymentVerification(verified=False, amount_minor=0, currency="NGN"))


@pytest.fixture
def session_factory() -> Generator[sessionmaker, None, None]:
    """Create test database and hand out the session factory"""
    Base.metadata.create_all(bind=engine)
    try:
        yield TestingSessionLocal
    finally:
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def create_account(session_factory: sessionmaker) -> Callable[[str, int], str]:
    """Provision an account the way the external signup system would"""

    def _create(account_id: str, balance: int = 0) -> str:
        with session_factory() as session:
            session.add(Account(id=account_id, balance=balance))
            session.commit()
        return account_id

    return _create


@pytest.fixture
def ledger(session_factory: sessionmaker) -> LedgerStore:
    return LedgerStore(session_factory, backoff_base=0)


@pytest.fixture
def orders(session_factory: sessionmaker) -> OrderRepository:
    return OrderRepository(session_factory, backoff_base=0)


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def payments() -> FakePayments:
    return FakePayments()


@pytest.fixture
def policy() -> MultiplicativeMarginPolicy:
    return MultiplicativeMarginPolicy(margin_factor=Decimal("1.5"))


@pytest.fixture
def coordinator(ledger, orders, provider, payments, policy) -> TransactionCoordinator:
    return TransactionCoordinator(
        ledger=ledger,
        orders=orders,
        provider=provider,
        payments=payments,
        policy=policy,
        deadline_seconds=1.0,
        minor_units_per_coin=15,
        payment_currency="NGN",
    )


@pytest.fixture
def client(session_factory, provider, payments, policy) -> TestClient:
    """Create FastAPI test client with test database and fake external services"""
    app = create_app()

    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_provider_client] = lambda: provider
    app.dependency_overrides[get_payment_client] = lambda: payments
    app.dependency_overrides[get_pricing_policy] = lambda: policy
    return TestClient(app)
