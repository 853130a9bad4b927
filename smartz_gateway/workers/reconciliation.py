"""
Reconciliation worker.

Refunds purchase orders stranded in RESERVED (process died or refund write
failed mid-saga). Run from cron: python -m smartz_gateway.workers.reconciliation
"""

import logging
import sys

from smartz_gateway.config import settings
from smartz_gateway.domain.coordinator import TransactionCoordinator
from smartz_gateway.domain.pricing import build_pricing_policy
from smartz_gateway.infrastructure.clients.payments import PaystackClient
from smartz_gateway.infrastructure.clients.provider import SmsActivateClient
from smartz_gateway.infrastructure.database.ledger import LedgerStore
from smartz_gateway.infrastructure.database.repositories import OrderRepository
from smartz_gateway.infrastructure.database.session import SessionLocal
from smartz_gateway.infrastructure.observability.logging import setup_logging


def run_reconciliation(coordinator: TransactionCoordinator, older_than_seconds: int | None = None) -> int:
    """Refund stranded orders once and report how many were closed"""
    logging.info("Reconciliation started")
    closed = coordinator.refund_stranded_orders(older_than_seconds)
    logging.info("Reconciliation completed", extra={"orders_refunded": closed})
    return closed


def main() -> int:
    setup_logging(settings.log_level)
    coordinator = TransactionCoordinator(
        ledger=LedgerStore(SessionLocal),
        orders=OrderRepository(SessionLocal),
        provider=SmsActivateClient(),
        payments=PaystackClient(),
        policy=build_pricing_policy(settings),
    )
    try:
        run_reconciliation(coordinator)
    except Exception:
        logging.exception("Reconciliation failed")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
