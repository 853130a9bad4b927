"""Transaction runner shared by the ledger and the order store"""

import logging
import time
from typing import Callable, TypeVar

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker

from smartz_gateway.domain.exceptions import ConcurrencyConflictError
from smartz_gateway.infrastructure.observability.metrics import ledger_conflict_counter

T = TypeVar("T")


def run_in_transaction(
    session_factory: sessionmaker,
    operation: str,
    work: Callable[[Session], T],
    max_retries: int,
    backoff_base: float,
) -> T:
    """
    Run work in its own transaction, retrying transient store failures.

    Retry strategy:
    - OperationalError raised while the work runs (lock timeouts, deadlocks,
      serialization failures) rolls back and replays the work from the top
    - OperationalError raised by COMMIT is never replayed: the server may
      have applied the transaction before the connection dropped
    - Any other exception rolls back and propagates unchanged

    Raises:
        ConcurrencyConflictError: still failing after max_retries attempts,
            or commit outcome unknown
    """
    attempt = 0
    while True:
        session = session_factory()
        try:
            try:
                result = work(session)
                session.flush()
            except OperationalError as e:
                session.rollback()
                attempt += 1
                ledger_conflict_counter.labels(operation=operation).inc()
                if attempt >= max_retries:
                    raise ConcurrencyConflictError(
                        f"Store {operation} kept conflicting after {attempt} attempts"
                    ) from e
                logging.warning(
                    f"Store {operation} conflict, retrying",
                    extra={"operation": operation, "attempt": attempt},
                )
                time.sleep(backoff_base * (2 ** (attempt - 1)))
                continue
            except Exception:
                session.rollback()
                raise

            try:
                session.commit()
            except OperationalError as e:
                session.rollback()
                ledger_conflict_counter.labels(operation=operation).inc()
                logging.error(
                    f"Store {operation} commit failed, outcome unknown",
                    extra={"operation": operation},
                )
                raise ConcurrencyConflictError(f"Store {operation} commit outcome unknown") from e
            return result
        finally:
            session.close()
