"""Dependency injection for FastAPI endpoints"""

from fastapi import Depends, Request
from sqlalchemy.orm import sessionmaker

from smartz_gateway.config import settings
from smartz_gateway.domain.coordinator import TransactionCoordinator
from smartz_gateway.domain.pricing import PricingPolicy, build_pricing_policy
from smartz_gateway.infrastructure.clients.payments import PaymentVerifier, PaystackClient
from smartz_gateway.infrastructure.clients.provider import ProviderGateway, SmsActivateClient
from smartz_gateway.infrastructure.database.ledger import LedgerStore
from smartz_gateway.infrastructure.database.repositories import OrderRepository
from smartz_gateway.infrastructure.database.session import get_session_factory


def get_request_id(request: Request) -> str:
    """Extract request ID from request state"""
    return getattr(request.state, "request_id", "unknown")


def get_provider_client() -> ProviderGateway:
    """Provide SMS provider client instance"""
    return SmsActivateClient()


def get_payment_client() -> PaymentVerifier:
    """Provide payment gateway client instance"""
    return PaystackClient()


def get_pricing_policy() -> PricingPolicy:
    """Markup policy selected by configuration"""
    return build_pricing_policy(settings)


def get_ledger(session_factory: sessionmaker = Depends(get_session_factory)) -> LedgerStore:
    return LedgerStore(session_factory)


def get_coordinator(
    session_factory: sessionmaker = Depends(get_session_factory),
    provider: ProviderGateway = Depends(get_provider_client),
    payments: PaymentVerifier = Depends(get_payment_client),
    policy: PricingPolicy = Depends(get_pricing_policy),
) -> TransactionCoordinator:
    """Wire the coordinator for one request"""
    return TransactionCoordinator(
        ledger=LedgerStore(session_factory),
        orders=OrderRepository(session_factory),
        provider=provider,
        payments=payments,
        policy=policy,
    )
