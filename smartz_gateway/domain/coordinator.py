"""Transaction coordinator - number purchase saga and idempotent payment credit"""

import asyncio
import logging
from typing import Awaitable, Optional, Type, TypeVar

from fastapi.concurrency import run_in_threadpool

from smartz_gateway.config import settings
from smartz_gateway.domain.exceptions import (
    AccountNotFoundError,
    AcquisitionFailedError,
    DomainException,
    InsufficientFundsError,
    InvalidOrderStateError,
    NotAvailableError,
    OrderNotFoundError,
    PaymentTooSmallError,
    PaymentVerificationError,
    ProviderUnavailableError,
    ValidationError,
)
from smartz_gateway.domain.models import (
    ActivationStatus,
    CodeStatus,
    OrderState,
    PaymentEvent,
    PaymentOutcome,
    PriceQuote,
    PurchaseOrder,
)
from smartz_gateway.domain.pricing import PricingPolicy, coins_for_payment, quote
from smartz_gateway.infrastructure.clients.payments import PaymentVerifier
from smartz_gateway.infrastructure.clients.provider import ProviderGateway
from smartz_gateway.infrastructure.database.ledger import LedgerStore
from smartz_gateway.infrastructure.database.repositories import OrderRepository
from smartz_gateway.infrastructure.observability.metrics import (
    record_payment,
    record_purchase,
    refund_counter,
)

T = TypeVar("T")

MAX_FIELD_LENGTH = 64
REFUND_REFERENCE_PREFIX = "refund:"


def refund_reference(order_id: str) -> str:
    """Credit reference that makes the refund of an order apply at most once"""
    return f"{REFUND_REFERENCE_PREFIX}{order_id}"


def _require(**fields: Optional[str]) -> None:
    for name, value in fields.items():
        if not isinstance(value, str) or not value.strip():
            raise ValidationError(f"{name} is required")
        if len(value) > MAX_FIELD_LENGTH:
            raise ValidationError(f"{name} is too long")


class TransactionCoordinator:
    """
    Orchestrates pricing, ledger and external APIs.

    Purchase saga:
    1. Quote the provider price under the configured policy
    2. Persist the order (QUOTED)
    3. Debit the quoted coins and mark the order RESERVED atomically
    4. Acquire a number from the provider
    5. Success: ACQUIRED -> AWAITING_CODE
       Any failure (refusal, transport error, deadline, cancellation):
       refund the reserved coins, then ACQUISITION_FAILED

    Payment credit:
    1. Replayed references short-circuit to DUPLICATE
    2. Verify with the gateway
    3. Convert to coins and credit once per reference

    The deadline covers a whole operation: every external call gets only
    the time left of it. Store calls run in the threadpool so retry backoff
    never blocks the event loop.
    """

    def __init__(
        self,
        ledger: LedgerStore,
        orders: OrderRepository,
        provider: ProviderGateway,
        payments: PaymentVerifier,
        policy: PricingPolicy,
        deadline_seconds: float | None = None,
        minor_units_per_coin: int | None = None,
        payment_currency: str | None = None,
    ):
        self.ledger = ledger
        self.orders = orders
        self.provider = provider
        self.payments = payments
        self.policy = policy
        self.deadline_seconds = deadline_seconds or settings.provider_deadline_seconds
        self.minor_units_per_coin = minor_units_per_coin or settings.payment_minor_units_per_coin
        self.payment_currency = payment_currency or settings.payment_currency

    def _expires_at(self, deadline: float | None) -> float:
        """Absolute loop time at which the operation runs out of budget"""
        if deadline is not None and deadline <= 0:
            raise ValidationError("deadline must be positive")
        budget = deadline if deadline is not None else self.deadline_seconds
        return asyncio.get_running_loop().time() + budget

    async def _bounded(
        self,
        call: Awaitable[T],
        expires_at: float,
        error: Type[DomainException],
        what: str,
    ) -> T:
        """Await an external call with the remaining budget; expiry raises error"""
        remaining = expires_at - asyncio.get_running_loop().time()
        if remaining <= 0:
            if asyncio.iscoroutine(call):
                call.close()
            raise error(f"{what} not attempted, deadline already passed")
        try:
            return await asyncio.wait_for(call, timeout=remaining)
        except asyncio.TimeoutError as e:
            raise error(f"{what} missed the deadline") from e

    async def quote_price(self, service: str, country: str, deadline: float | None = None) -> PriceQuote:
        """
        Price a number for service/country in coins.

        Raises:
            NotAvailableError: provider does not sell this combination
            ProviderUnavailableError: provider failed or missed the deadline
        """
        _require(service=service, country=country)
        return await self._quote(service, country, self._expires_at(deadline))

    async def _quote(self, service: str, country: str, expires_at: float) -> PriceQuote:
        try:
            base_price = await self._bounded(
                self.provider.get_service_price(service, country),
                expires_at,
                ProviderUnavailableError,
                "Price lookup",
            )
        except (NotAvailableError, ProviderUnavailableError):
            raise
        except Exception as e:
            raise ProviderUnavailableError(f"Price lookup failed: {e.__class__.__name__}") from e

        return quote(base_price, service, country, self.policy)

    async def purchase_number(
        self,
        account_id: str,
        service: str,
        country: str,
        deadline: float | None = None,
    ) -> PurchaseOrder:
        """
        Run the purchase saga for one number.

        Returns:
            Order in AWAITING_CODE with the provider order id and phone number

        Raises:
            InsufficientFundsError / AccountNotFoundError: nothing debited
            AcquisitionFailedError / ProviderUnavailableError: coins refunded
        """
        _require(account_id=account_id, service=service, country=country)
        expires_at = self._expires_at(deadline)
        price_quote = await self._quote(service, country, expires_at)
        order = await run_in_threadpool(self.orders.create_order, account_id, price_quote)

        try:
            await run_in_threadpool(self.ledger.reserve, order.order_id, account_id, order.reserved_coins)
        except (InsufficientFundsError, AccountNotFoundError) as e:
            await run_in_threadpool(
                self.orders.transition,
                order.order_id,
                [OrderState.QUOTED],
                OrderState.DECLINED,
                failure_reason=e.kind,
            )
            record_purchase("declined")
            raise

        try:
            acquired = await self._bounded(
                self.provider.acquire_number(service, country),
                expires_at,
                ProviderUnavailableError,
                "Number acquisition",
            )
        except (AcquisitionFailedError, ProviderUnavailableError) as e:
            await run_in_threadpool(self._compensate, order, getattr(e, "reason", e.kind))
            record_purchase(e.kind)
            raise
        except asyncio.CancelledError:
            # Inline so a second cancel cannot interrupt the refund
            self._compensate(order, reason="cancelled")
            record_purchase("provider_unavailable")
            raise
        except Exception as e:
            await run_in_threadpool(self._compensate, order, "provider_error")
            record_purchase("provider_unavailable")
            raise ProviderUnavailableError(f"Number acquisition failed: {e.__class__.__name__}") from e

        marked = await run_in_threadpool(
            self.orders.transition,
            order.order_id,
            [OrderState.RESERVED],
            OrderState.ACQUIRED,
            provider_order_id=acquired.provider_order_id,
            phone_number=acquired.phone_number,
        )
        if not marked:
            # Reconciliation refunded the order while the provider call was in flight
            logging.error(
                "Number acquired for an order that was already reconciled",
                extra={"order_id": order.order_id, "provider_order_id": acquired.provider_order_id},
            )
            raise InvalidOrderStateError(f"Order {order.order_id} was reconciled before acquisition completed")

        # A crash here leaves the order ACQUIRED, which poll_code still serves
        await run_in_threadpool(self.orders.transition, order.order_id, [OrderState.ACQUIRED], OrderState.AWAITING_CODE)
        record_purchase("acquired", order.reserved_coins)
        return await run_in_threadpool(self.orders.get_order, order.order_id)

    def _compensate(self, order: PurchaseOrder, reason: str) -> bool:
        """
        Return the reserved coins, then close the order as ACQUISITION_FAILED.

        The refund is an additive credit keyed by the order, so replays (saga
        and reconciliation racing) apply it once. If either write fails the
        order stays RESERVED for refund_stranded_orders and the caller's
        original error still propagates.
        """
        try:
            result = self.ledger.credit_once(refund_reference(order.order_id), order.account_id, order.reserved_coins)
        except Exception:
            refund_counter.labels(result="failed").inc()
            logging.exception(
                "Refund failed, order left for reconciliation",
                extra={"order_id": order.order_id, "account_id": order.account_id, "coins": order.reserved_coins},
            )
            return False

        refund_counter.labels(result="applied" if result.applied else "already_applied").inc()
        try:
            self.orders.transition(
                order.order_id,
                [OrderState.RESERVED],
                OrderState.ACQUISITION_FAILED,
                failure_reason=reason,
            )
        except Exception:
            logging.exception(
                "Refund applied but order not closed, left for reconciliation",
                extra={"order_id": order.order_id, "account_id": order.account_id},
            )
            return False

        logging.info(
            "Reserved coins refunded",
            extra={"order_id": order.order_id, "account_id": order.account_id, "coins": order.reserved_coins, "reason": reason},
        )
        return True

    async def poll_code(
        self,
        order_id: str,
        account_id: str | None = None,
        deadline: float | None = None,
    ) -> ActivationStatus:
        """
        Ask the provider for the SMS code of an order.

        Only a received code changes state (AWAITING_CODE -> DELIVERED);
        waiting and provider-side failures leave the order as it is. An order
        left in ACQUIRED by an interrupted purchase is polled the same way.
        """
        _require(order_id=order_id)
        expires_at = self._expires_at(deadline)
        order = await run_in_threadpool(self.orders.get_order, order_id)
        if order is None or (account_id is not None and order.account_id != account_id):
            raise OrderNotFoundError(f"Order {order_id} not found")

        if order.state == OrderState.DELIVERED:
            return ActivationStatus(status=CodeStatus.CODE_RECEIVED, code=order.code)
        if order.state not in (OrderState.AWAITING_CODE, OrderState.ACQUIRED):
            raise InvalidOrderStateError(f"Order {order_id} is {order.state.value}")

        try:
            status = await self._bounded(
                self.provider.poll_status(order.provider_order_id),
                expires_at,
                ProviderUnavailableError,
                "Status poll",
            )
        except ProviderUnavailableError:
            raise
        except Exception as e:
            raise ProviderUnavailableError(f"Status poll failed: {e.__class__.__name__}") from e

        if status.status == CodeStatus.CODE_RECEIVED:
            delivered = await run_in_threadpool(
                self.orders.transition,
                order_id,
                [OrderState.AWAITING_CODE, OrderState.ACQUIRED],
                OrderState.DELIVERED,
                code=status.code,
            )
            if not delivered:
                # A concurrent poll delivered first; report what it stored
                current = await run_in_threadpool(self.orders.get_order, order_id)
                return ActivationStatus(status=CodeStatus.CODE_RECEIVED, code=current.code)
            return status

        if order.state == OrderState.ACQUIRED:
            await run_in_threadpool(self.orders.transition, order_id, [OrderState.ACQUIRED], OrderState.AWAITING_CODE)
        if status.status == CodeStatus.FAILED:
            logging.warning(
                "Provider reported activation failure",
                extra={"order_id": order_id, "reason": status.reason},
            )
        return status

    async def credit_from_payment(
        self,
        reference: str,
        account_id: str,
        deadline: float | None = None,
    ) -> PaymentEvent:
        """
        Convert a verified gateway payment into coins exactly once.

        Returns:
            PaymentEvent with outcome CREDITED, or DUPLICATE when the reference
            was already applied (no balance change)

        Raises:
            ValidationError: missing fields, or a reference in the refund namespace
            PaymentVerificationError: gateway rejected or unreachable
            PaymentTooSmallError: payment worth less than one coin
        """
        _require(reference=reference, account_id=account_id)
        if reference.startswith(REFUND_REFERENCE_PREFIX):
            raise ValidationError(f"reference must not start with {REFUND_REFERENCE_PREFIX!r}")
        expires_at = self._expires_at(deadline)

        if await run_in_threadpool(self.ledger.is_payment_processed, reference):
            record_payment(PaymentOutcome.DUPLICATE.value)
            return PaymentEvent(
                reference=reference,
                account_id=account_id,
                outcome=PaymentOutcome.DUPLICATE,
                amount_minor=0,
                currency=self.payment_currency,
                coins=0,
                balance=await run_in_threadpool(self.ledger.get_balance, account_id),
            )

        try:
            verification = await self._bounded(
                self.payments.verify(reference),
                expires_at,
                PaymentVerificationError,
                "Payment verification",
            )
            if not verification.verified:
                raise PaymentVerificationError(f"Payment {reference} is not successful")
            if verification.currency.upper() != self.payment_currency.upper():
                raise PaymentVerificationError(
                    f"Payment {reference} is in {verification.currency}, expected {self.payment_currency}"
                )
            coins = coins_for_payment(verification.amount_minor, self.minor_units_per_coin)
        except (PaymentVerificationError, PaymentTooSmallError):
            record_payment(PaymentOutcome.REJECTED.value)
            raise
        except Exception as e:
            record_payment(PaymentOutcome.REJECTED.value)
            raise PaymentVerificationError(f"Payment verification failed: {e.__class__.__name__}") from e

        result = await run_in_threadpool(self.ledger.credit_once, reference, account_id, coins)
        outcome = PaymentOutcome.CREDITED if result.applied else PaymentOutcome.DUPLICATE
        record_payment(outcome.value, coins if result.applied else 0)

        return PaymentEvent(
            reference=reference,
            account_id=account_id,
            outcome=outcome,
            amount_minor=verification.amount_minor,
            currency=verification.currency,
            coins=coins if result.applied else 0,
            balance=result.balance,
        )

    def refund_stranded_orders(self, older_than_seconds: int | None = None) -> int:
        """Refund orders stuck in RESERVED; returns how many were closed"""
        age = older_than_seconds if older_than_seconds is not None else settings.stranded_order_age_seconds
        closed = 0
        for order in self.orders.find_stranded(age):
            if self._compensate(order, reason="stranded"):
                closed += 1
        if closed:
            logging.warning("Stranded orders refunded", extra={"count": closed})
        return closed
