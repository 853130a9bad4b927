"""Data access layer for purchase orders"""

from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, List, Optional, TypeVar

from sqlalchemy.orm import Session, sessionmaker

from smartz_gateway.config import settings
from smartz_gateway.domain.models import OrderState, PriceQuote, PurchaseOrder
from smartz_gateway.infrastructure.database.models import PurchaseOrderRecord
from smartz_gateway.infrastructure.database.transactions import run_in_transaction

T = TypeVar("T")


def _to_domain(record: PurchaseOrderRecord) -> PurchaseOrder:
    return PurchaseOrder(
        order_id=record.id,
        account_id=record.account_id,
        service_code=record.service_code,
        country_code=record.country_code,
        reserved_coins=record.reserved_coins,
        state=OrderState(record.state),
        provider_order_id=record.provider_order_id,
        phone_number=record.phone_number,
        code=record.code,
        failure_reason=record.failure_reason,
        created_at=record.created_at,
    )


class OrderRepository:
    """Repository for purchase orders; every write is its own retried transaction"""

    def __init__(
        self,
        session_factory: sessionmaker,
        max_retries: int | None = None,
        backoff_base: float | None = None,
    ):
        self.session_factory = session_factory
        self.max_retries = max_retries or settings.ledger_max_retries
        self.backoff_base = settings.ledger_backoff_base if backoff_base is None else backoff_base

    def _run(self, operation: str, work: Callable[[Session], T]) -> T:
        return run_in_transaction(self.session_factory, operation, work, self.max_retries, self.backoff_base)

    def create_order(self, account_id: str, price_quote: PriceQuote) -> PurchaseOrder:
        """Persist a freshly quoted order"""

        def insert(session: Session) -> str:
            record = PurchaseOrderRecord(
                account_id=account_id,
                service_code=price_quote.service_code,
                country_code=price_quote.country_code,
                base_price=price_quote.base_price,
                policy_id=price_quote.policy_id,
                reserved_coins=price_quote.final_price_coins,
                state=OrderState.QUOTED.value,
            )
            session.add(record)
            session.flush()
            return record.id

        return self.get_order(self._run("create_order", insert))

    def get_order(self, order_id: str) -> Optional[PurchaseOrder]:
        def load(session: Session) -> Optional[PurchaseOrder]:
            record = session.get(PurchaseOrderRecord, order_id)
            return _to_domain(record) if record else None

        return self._run("get_order", load)

    def transition(
        self,
        order_id: str,
        expected: Iterable[OrderState],
        target: OrderState,
        **fields,
    ) -> bool:
        """
        Move an order to target only if it is currently in one of expected.

        Returns:
            False when another writer already moved the order elsewhere

        Raises:
            ConcurrencyConflictError: store kept failing, or commit outcome unknown
        """
        values = {PurchaseOrderRecord.state: target.value}
        for name, value in fields.items():
            values[getattr(PurchaseOrderRecord, name)] = value
        states = [state.value for state in expected]

        def update(session: Session) -> bool:
            updated = (
                session.query(PurchaseOrderRecord)
                .filter(
                    PurchaseOrderRecord.id == order_id,
                    PurchaseOrderRecord.state.in_(states),
                )
                .update(values, synchronize_session=False)
            )
            return updated == 1

        return self._run("transition", update)

    def find_stranded(self, older_than_seconds: int, limit: int = 100) -> List[PurchaseOrder]:
        """Orders still RESERVED after the cutoff (crash or failed refund mid-saga)"""
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=older_than_seconds)

        def load(session: Session) -> List[PurchaseOrder]:
            records = (
                session.query(PurchaseOrderRecord)
                .filter(
                    PurchaseOrderRecord.state == OrderState.RESERVED.value,
                    PurchaseOrderRecord.updated_at < cutoff,
                )
                .order_by(PurchaseOrderRecord.created_at)
                .limit(limit)
                .all()
            )
            return [_to_domain(record) for record in records]

        return self._run("find_stranded", load)
