"""Coin ledger backed by the relational account store

Each public operation is a single transaction. Balance changes are expressed
as conditional or additive UPDATE statements so that no caller ever reads a
balance and writes it back. A commit whose outcome is unknown is surfaced
as ConcurrencyConflictError and never replayed, so a debit cannot land twice.
"""

import logging
from typing import Callable, TypeVar

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from smartz_gateway.config import settings
from smartz_gateway.domain.exceptions import (
    AccountNotFoundError,
    InsufficientFundsError,
    InvalidOrderStateError,
    ValidationError,
)
from smartz_gateway.domain.models import CreditResult, OrderState
from smartz_gateway.infrastructure.database.models import Account, PaymentCredit, PurchaseOrderRecord
from smartz_gateway.infrastructure.database.transactions import run_in_transaction

T = TypeVar("T")


def _check_amount(amount: int) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount < 0:
        raise ValidationError(f"Amount must be a non-negative integer, got {amount!r}")


class LedgerStore:
    """Per-account coin balances with atomic debit, credit and idempotent credit"""

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

    @staticmethod
    def _read_balance(session: Session, account_id: str) -> int:
        balance = session.query(Account.balance).filter(Account.id == account_id).scalar()
        if balance is None:
            raise AccountNotFoundError(f"Account {account_id} not found")
        return balance

    def get_balance(self, account_id: str) -> int:
        return self._run("get_balance", lambda session: self._read_balance(session, account_id))

    def try_debit(self, account_id: str, amount: int) -> int:
        """
        Atomically take amount coins from the account.

        The check and the decrement are one conditional UPDATE
        (WHERE balance >= amount); if no row matched, the balance was too low
        or the account does not exist.

        Returns:
            New balance

        Raises:
            InsufficientFundsError: balance below amount, nothing changed
            AccountNotFoundError: unknown account
        """
        _check_amount(amount)
        return self._run("try_debit", lambda session: self._debit(session, account_id, amount))

    def reserve(self, order_id: str, account_id: str, amount: int) -> int:
        """
        Debit the account and move the order QUOTED -> RESERVED in one transaction.

        A crash can never leave coins taken for an order that does not say so.

        Raises:
            InsufficientFundsError: nothing debited, order untouched
            InvalidOrderStateError: order was not QUOTED; debit rolled back
        """
        _check_amount(amount)

        def debit_and_mark(session: Session) -> int:
            balance = self._debit(session, account_id, amount)
            updated = (
                session.query(PurchaseOrderRecord)
                .filter(
                    PurchaseOrderRecord.id == order_id,
                    PurchaseOrderRecord.state == OrderState.QUOTED.value,
                )
                .update({PurchaseOrderRecord.state: OrderState.RESERVED.value}, synchronize_session=False)
            )
            if updated == 0:
                raise InvalidOrderStateError(f"Order {order_id} is not awaiting reservation")
            return balance

        return self._run("reserve", debit_and_mark)

    def _debit(self, session: Session, account_id: str, amount: int) -> int:
        if amount == 0:
            return self._read_balance(session, account_id)

        updated = (
            session.query(Account)
            .filter(Account.id == account_id, Account.balance >= amount)
            .update({Account.balance: Account.balance - amount}, synchronize_session=False)
        )
        if updated == 0:
            # Raises AccountNotFoundError for unknown accounts
            self._read_balance(session, account_id)
            raise InsufficientFundsError(account_id, amount)
        return self._read_balance(session, account_id)

    def credit(self, account_id: str, amount: int) -> int:
        """Add amount coins to the account and return the new balance"""
        _check_amount(amount)

        def add(session: Session) -> int:
            if amount > 0:
                updated = (
                    session.query(Account)
                    .filter(Account.id == account_id)
                    .update({Account.balance: Account.balance + amount}, synchronize_session=False)
                )
                if updated == 0:
                    raise AccountNotFoundError(f"Account {account_id} not found")
            return self._read_balance(session, account_id)

        return self._run("credit", add)

    def credit_once(self, reference: str, account_id: str, amount: int) -> CreditResult:
        """
        Credit the account at most once per reference.

        The reference row and the balance increment commit together; the unique
        index on payment_credit.reference rejects every later attempt, including
        concurrent ones blocked on the first insert.

        Returns:
            CreditResult with applied=False and the current balance on replays
        """
        _check_amount(amount)
        if not reference:
            raise ValidationError("Credit reference is required")

        def apply(session: Session) -> CreditResult:
            session.add(PaymentCredit(reference=reference, account_id=account_id, amount_coins=amount))
            session.flush()

            if amount > 0:
                updated = (
                    session.query(Account)
                    .filter(Account.id == account_id)
                    .update({Account.balance: Account.balance + amount}, synchronize_session=False)
                )
                if updated == 0:
                    raise AccountNotFoundError(f"Account {account_id} not found")
            return CreditResult(applied=True, balance=self._read_balance(session, account_id))

        try:
            return self._run("credit_once", apply)
        except IntegrityError:
            logging.info(
                "Credit reference already applied",
                extra={"payment_reference": reference, "account_id": account_id},
            )
            return CreditResult(applied=False, balance=self.get_balance(account_id))

    def is_payment_processed(self, reference: str) -> bool:
        def lookup(session: Session) -> bool:
            return (
                session.query(PaymentCredit.id).filter(PaymentCredit.reference == reference).first()
                is not None
            )

        return self._run("is_payment_processed", lookup)
