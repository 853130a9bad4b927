"""Unit tests for the purchase saga and payment crediting"""

import asyncio
from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError

from smartz_gateway.domain.coordinator import TransactionCoordinator, refund_reference
from smartz_gateway.domain.exceptions import (
    AccountNotFoundError,
    AcquisitionFailedError,
    InsufficientFundsError,
    InvalidOrderStateError,
    NotAvailableError,
    OrderNotFoundError,
    PaymentTooSmallError,
    PaymentVerificationError,
    ProviderUnavailableError,
    ValidationError,
)
from smartz_gateway.domain.models import ActivationStatus, CodeStatus, OrderState, PaymentOutcome
from smartz_gateway.infrastructure.database.ledger import LedgerStore
from smartz_gateway.infrastructure.database.models import PurchaseOrderRecord


# ---------------------------------------------------------------- quoting


async def test_quote_price(coordinator):
    price_quote = await coordinator.quote_price("wa", "22")

    assert price_quote.base_price == Decimal("30")
    assert price_quote.final_price_coins == 45


async def test_quote_price_not_available(coordinator):
    with pytest.raises(NotAvailableError):
        await coordinator.quote_price("tg", "22")


@pytest.mark.parametrize("service,country", [("", "22"), ("wa", ""), ("   ", "22"), ("wa", None)])
async def test_quote_price_validates_before_calling_provider(coordinator, provider, service, country):
    provider.prices = {}

    with pytest.raises(ValidationError):
        await coordinator.quote_price(service, country)


async def test_quote_price_deadline(coordinator, provider):
    async def slow_price(service, country):
        await asyncio.sleep(5)

    provider.get_service_price = slow_price

    with pytest.raises(ProviderUnavailableError):
        await coordinator.quote_price("wa", "22", deadline=0.05)


# ---------------------------------------------------------------- purchase saga


async def test_purchase_success(coordinator, ledger, create_account):
    create_account("alice", 100)

    order = await coordinator.purchase_number("alice", "wa", "22")

    assert order.state == OrderState.AWAITING_CODE
    assert order.reserved_coins == 45
    assert order.provider_order_id == "act-1"
    assert order.phone_number == "2348012345678"
    assert ledger.get_balance("alice") == 55


async def test_purchase_insufficient_funds_changes_nothing(coordinator, ledger, orders, provider, create_account, session_factory):
    create_account("alice", 44)

    with pytest.raises(InsufficientFundsError):
        await coordinator.purchase_number("alice", "wa", "22")

    assert ledger.get_balance("alice") == 44
    assert provider.acquire_calls == 0
    with session_factory() as session:
        record = session.query(PurchaseOrderRecord).one()
        assert record.state == OrderState.DECLINED.value


async def test_purchase_unknown_account(coordinator, provider):
    with pytest.raises(AccountNotFoundError):
        await coordinator.purchase_number("nobody", "wa", "22")
    assert provider.acquire_calls == 0


async def test_purchase_not_available_touches_nothing(coordinator, ledger, provider, create_account):
    create_account("alice", 100)

    with pytest.raises(NotAvailableError):
        await coordinator.purchase_number("alice", "tg", "22")

    assert ledger.get_balance("alice") == 100
    assert provider.acquire_calls == 0


async def test_purchase_provider_refusal_refunds(coordinator, ledger, provider, create_account, session_factory):
    create_account("alice", 100)
    provider.acquire_error = AcquisitionFailedError("NO_NUMBERS")

    with pytest.raises(AcquisitionFailedError):
        await coordinator.purchase_number("alice", "wa", "22")

    assert ledger.get_balance("alice") == 100
    with session_factory() as session:
        record = session.query(PurchaseOrderRecord).one()
        assert record.state == OrderState.ACQUISITION_FAILED.value
        assert record.failure_reason == "NO_NUMBERS"
        assert ledger.is_payment_processed(refund_reference(record.id))


async def test_purchase_transport_failure_refunds(coordinator, ledger, provider, create_account):
    create_account("alice", 100)
    provider.acquire_error = ProviderUnavailableError("Provider getNumber error: 502")

    with pytest.raises(ProviderUnavailableError):
        await coordinator.purchase_number("alice", "wa", "22")

    assert ledger.get_balance("alice") == 100


async def test_purchase_unexpected_error_refunds_and_translates(coordinator, ledger, provider, create_account):
    create_account("alice", 100)
    provider.acquire_error = RuntimeError("connection reset")

    with pytest.raises(ProviderUnavailableError):
        await coordinator.purchase_number("alice", "wa", "22")

    assert ledger.get_balance("alice") == 100


async def test_purchase_deadline_expiry_refunds(coordinator, ledger, provider, create_account):
    create_account("alice", 100)
    provider.acquire_delay = 5

    with pytest.raises(ProviderUnavailableError):
        await coordinator.purchase_number("alice", "wa", "22", deadline=0.05)

    assert ledger.get_balance("alice") == 100


async def test_purchase_cancelled_mid_acquisition_refunds(coordinator, ledger, provider, create_account, session_factory):
    create_account("alice", 100)
    provider.acquire_delay = 5

    task = asyncio.create_task(coordinator.purchase_number("alice", "wa", "22"))
    while provider.acquire_calls == 0:
        await asyncio.sleep(0.01)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task

    assert ledger.get_balance("alice") == 100
    with session_factory() as session:
        assert session.query(PurchaseOrderRecord).one().state == OrderState.ACQUISITION_FAILED.value


async def test_refund_is_additive_not_snapshot(coordinator, ledger, provider, create_account):
    """A credit landing while acquisition is in flight survives the refund"""
    create_account("alice", 100)

    async def acquire_while_topped_up(service, country):
        ledger.credit("alice", 1000)
        raise AcquisitionFailedError("NO_BALANCE")

    provider.acquire_number = acquire_while_topped_up

    with pytest.raises(AcquisitionFailedError):
        await coordinator.purchase_number("alice", "wa", "22")

    assert ledger.get_balance("alice") == 1100


async def test_concurrent_purchases_exactly_one_succeeds(coordinator, ledger, provider, create_account):
    create_account("alice", 45)
    provider.acquire_delay = 0.01

    results = await asyncio.gather(
        coordinator.purchase_number("alice", "wa", "22"),
        coordinator.purchase_number("alice", "wa", "22"),
        return_exceptions=True,
    )

    succeeded = [r for r in results if not isinstance(r, Exception)]
    declined = [r for r in results if isinstance(r, InsufficientFundsError)]
    assert len(succeeded) == 1
    assert len(declined) == 1
    assert ledger.get_balance("alice") == 0


async def test_refund_failure_leaves_order_for_reconciliation(coordinator, ledger, provider, create_account, session_factory):
    create_account("alice", 100)
    provider.acquire_error = AcquisitionFailedError("NO_NUMBERS")
    original_credit_once = ledger.credit_once

    def broken_credit_once(reference, account_id, amount):
        raise RuntimeError("store down")

    ledger.credit_once = broken_credit_once

    with pytest.raises(AcquisitionFailedError):
        await coordinator.purchase_number("alice", "wa", "22")

    assert ledger.get_balance("alice") == 55
    with session_factory() as session:
        record = session.query(PurchaseOrderRecord).one()
        assert record.state == OrderState.RESERVED.value
        record.updated_at = record.updated_at.replace(year=2000)
        session.commit()

    ledger.credit_once = original_credit_once
    assert coordinator.refund_stranded_orders(older_than_seconds=900) == 1
    assert ledger.get_balance("alice") == 100

    # Second sweep finds nothing and refunds nothing
    assert coordinator.refund_stranded_orders(older_than_seconds=900) == 0
    assert ledger.get_balance("alice") == 100


async def test_order_store_failure_after_refund_keeps_original_error(
    coordinator, ledger, orders, provider, create_account, session_factory
):
    create_account("alice", 100)
    provider.acquire_error = AcquisitionFailedError("NO_NUMBERS")
    real_transition = orders.transition

    def locked_when_closing(order_id, expected, target, **fields):
        if target == OrderState.ACQUISITION_FAILED:
            raise OperationalError("UPDATE", {}, Exception("database is locked"))
        return real_transition(order_id, expected, target, **fields)

    orders.transition = locked_when_closing

    with pytest.raises(AcquisitionFailedError):
        await coordinator.purchase_number("alice", "wa", "22")

    assert ledger.get_balance("alice") == 100
    with session_factory() as session:
        record = session.query(PurchaseOrderRecord).one()
        assert record.state == OrderState.RESERVED.value
        record.updated_at = record.updated_at.replace(year=2000)
        session.commit()

    # The sweep closes the order without refunding twice
    orders.transition = real_transition
    assert coordinator.refund_stranded_orders(older_than_seconds=900) == 1
    assert ledger.get_balance("alice") == 100


async def test_deadline_covers_the_whole_purchase(coordinator, ledger, provider, create_account):
    """Two 0.6s provider calls cannot both fit in a 1.0s budget"""
    create_account("alice", 100)
    provider.acquire_delay = 0.6
    real_price = provider.get_service_price

    async def slow_price(service, country):
        await asyncio.sleep(0.6)
        return await real_price(service, country)

    provider.get_service_price = slow_price

    with pytest.raises(ProviderUnavailableError):
        await coordinator.purchase_number("alice", "wa", "22", deadline=1.0)

    assert ledger.get_balance("alice") == 100


@pytest.mark.parametrize("deadline", [0, -1])
async def test_purchase_rejects_non_positive_deadline(coordinator, provider, create_account, deadline):
    create_account("alice", 100)

    with pytest.raises(ValidationError):
        await coordinator.purchase_number("alice", "wa", "22", deadline=deadline)

    assert provider.acquire_calls == 0


class LockedOnceSessionFactory:
    """First session's statements fail with a lock error"""

    def __init__(self, session_factory):
        self.session_factory = session_factory
        self.locked = True

    def __call__(self):
        session = self.session_factory()
        if self.locked:
            self.locked = False

            def fail(*args, **kwargs):
                raise OperationalError("UPDATE", {}, Exception("database is locked"))

            session.execute = fail
        return session


async def test_ledger_retry_backoff_does_not_block_event_loop(
    session_factory, orders, provider, payments, policy, create_account
):
    create_account("alice", 100)
    ledger = LedgerStore(LockedOnceSessionFactory(session_factory), max_retries=3, backoff_base=0.3)
    slow_ledger_coordinator = TransactionCoordinator(
        ledger=ledger, orders=orders, provider=provider, payments=payments, policy=policy, deadline_seconds=5.0
    )
    ticks = 0

    async def ticker():
        nonlocal ticks
        while True:
            await asyncio.sleep(0.01)
            ticks += 1

    ticking = asyncio.create_task(ticker())
    try:
        order = await slow_ledger_coordinator.purchase_number("alice", "wa", "22")
    finally:
        ticking.cancel()

    assert order.state == OrderState.AWAITING_CODE
    assert ledger.get_balance("alice") == 55
    assert ticks >= 10


async def test_reconciliation_skips_recent_orders(coordinator, orders, ledger, create_account):
    create_account("alice", 100)
    order = await coordinator.purchase_number("alice", "wa", "22")

    assert coordinator.refund_stranded_orders(older_than_seconds=900) == 0
    assert orders.get_order(order.order_id).state == OrderState.AWAITING_CODE
    assert ledger.get_balance("alice") == 55


# ---------------------------------------------------------------- code polling


async def test_poll_code_waiting_then_delivered(coordinator, orders, provider, create_account):
    create_account("alice", 100)
    provider.statuses = [
        ActivationStatus(status=CodeStatus.WAITING),
        ActivationStatus(status=CodeStatus.CODE_RECEIVED, code="482913"),
    ]
    order = await coordinator.purchase_number("alice", "wa", "22")

    first = await coordinator.poll_code(order.order_id)
    assert first.status == CodeStatus.WAITING
    assert orders.get_order(order.order_id).state == OrderState.AWAITING_CODE

    second = await coordinator.poll_code(order.order_id)
    assert second.status == CodeStatus.CODE_RECEIVED
    assert second.code == "482913"

    stored = orders.get_order(order.order_id)
    assert stored.state == OrderState.DELIVERED
    assert stored.code == "482913"


async def test_poll_code_after_delivery_does_not_call_provider(coordinator, provider, create_account):
    create_account("alice", 100)
    provider.statuses = [ActivationStatus(status=CodeStatus.CODE_RECEIVED, code="1111")]
    order = await coordinator.purchase_number("alice", "wa", "22")

    await coordinator.poll_code(order.order_id)
    again = await coordinator.poll_code(order.order_id)

    assert again.code == "1111"
    assert provider.poll_calls == 1


async def test_poll_code_failure_leaves_state(coordinator, orders, provider, create_account):
    create_account("alice", 100)
    provider.statuses = [ActivationStatus(status=CodeStatus.FAILED, reason="STATUS_CANCEL")]
    order = await coordinator.purchase_number("alice", "wa", "22")

    result = await coordinator.poll_code(order.order_id)

    assert result.status == CodeStatus.FAILED
    assert orders.get_order(order.order_id).state == OrderState.AWAITING_CODE


async def test_poll_code_serves_order_left_acquired(coordinator, orders, provider, create_account):
    """An order interrupted between ACQUIRED and AWAITING_CODE can still be polled"""
    create_account("alice", 100)
    provider.statuses = [
        ActivationStatus(status=CodeStatus.WAITING),
        ActivationStatus(status=CodeStatus.CODE_RECEIVED, code="7777"),
    ]
    order = await coordinator.purchase_number("alice", "wa", "22")
    assert orders.transition(order.order_id, [OrderState.AWAITING_CODE], OrderState.ACQUIRED)

    first = await coordinator.poll_code(order.order_id)
    assert first.status == CodeStatus.WAITING
    assert orders.get_order(order.order_id).state == OrderState.AWAITING_CODE

    second = await coordinator.poll_code(order.order_id)
    assert second.code == "7777"
    assert orders.get_order(order.order_id).state == OrderState.DELIVERED


async def test_poll_code_delivers_straight_from_acquired(coordinator, orders, provider, create_account):
    create_account("alice", 100)
    provider.statuses = [ActivationStatus(status=CodeStatus.CODE_RECEIVED, code="8888")]
    order = await coordinator.purchase_number("alice", "wa", "22")
    orders.transition(order.order_id, [OrderState.AWAITING_CODE], OrderState.ACQUIRED)

    result = await coordinator.poll_code(order.order_id)

    assert result.code == "8888"
    assert orders.get_order(order.order_id).state == OrderState.DELIVERED


async def test_poll_code_unknown_order(coordinator):
    with pytest.raises(OrderNotFoundError):
        await coordinator.poll_code("00000000-0000-0000-0000-000000000000")


async def test_poll_code_other_account(coordinator, create_account):
    create_account("alice", 100)
    order = await coordinator.purchase_number("alice", "wa", "22")

    with pytest.raises(OrderNotFoundError):
        await coordinator.poll_code(order.order_id, account_id="mallory")


async def test_poll_code_failed_order(coordinator, provider, create_account, session_factory):
    create_account("alice", 100)
    provider.acquire_error = AcquisitionFailedError("NO_NUMBERS")
    with pytest.raises(AcquisitionFailedError):
        await coordinator.purchase_number("alice", "wa", "22")

    with session_factory() as session:
        order_id = session.query(PurchaseOrderRecord.id).scalar()

    with pytest.raises(InvalidOrderStateError):
        await coordinator.poll_code(order_id)


# ---------------------------------------------------------------- payments


async def test_credit_from_payment(coordinator, ledger, create_account):
    create_account("alice", 100)

    event = await coordinator.credit_from_payment("ref_ok", "alice")

    assert event.outcome == PaymentOutcome.CREDITED
    assert event.coins == 1500
    assert event.amount_minor == 22500
    assert event.balance == 1600
    assert ledger.get_balance("alice") == 1600


async def test_credit_from_payment_replays_are_duplicates(coordinator, ledger, payments, create_account):
    create_account("alice", 100)
    await coordinator.credit_from_payment("ref_ok", "alice")

    for _ in range(3):
        event = await coordinator.credit_from_payment("ref_ok", "alice")
        assert event.outcome == PaymentOutcome.DUPLICATE
        assert event.coins == 0
        assert event.balance == 1600

    assert ledger.get_balance("alice") == 1600
    assert payments.calls == 1


async def test_concurrent_payment_replays_credit_once(coordinator, ledger, create_account):
    create_account("alice", 0)

    events = await asyncio.gather(*[coordinator.credit_from_payment("ref_ok", "alice") for _ in range(5)])

    assert sum(1 for e in events if e.outcome == PaymentOutcome.CREDITED) == 1
    assert sum(1 for e in events if e.outcome == PaymentOutcome.DUPLICATE) == 4
    assert ledger.get_balance("alice") == 1500


async def test_credit_from_payment_too_small(coordinator, ledger, create_account):
    create_account("alice", 100)

    with pytest.raises(PaymentTooSmallError):
        await coordinator.credit_from_payment("ref_small", "alice")

    assert ledger.get_balance("alice") == 100
    assert ledger.is_payment_processed("ref_small") is False


@pytest.mark.parametrize("reference", ["ref_failed", "ref_usd", "ref_unknown"])
async def test_credit_from_payment_rejected(coordinator, ledger, create_account, reference):
    create_account("alice", 100)

    with pytest.raises(PaymentVerificationError):
        await coordinator.credit_from_payment(reference, "alice")

    assert ledger.get_balance("alice") == 100
    assert ledger.is_payment_processed(reference) is False


async def test_credit_from_payment_gateway_down(coordinator, ledger, payments, create_account):
    create_account("alice", 100)
    payments.error = PaymentVerificationError("Payment gateway timeout after 10s")

    with pytest.raises(PaymentVerificationError):
        await coordinator.credit_from_payment("ref_ok", "alice")

    assert ledger.get_balance("alice") == 100


async def test_credit_from_payment_unexpected_gateway_error(coordinator, ledger, payments, create_account):
    create_account("alice", 100)
    payments.error = KeyError("data")

    with pytest.raises(PaymentVerificationError):
        await coordinator.credit_from_payment("ref_ok", "alice")

    assert ledger.get_balance("alice") == 100


async def test_credit_from_payment_deadline(coordinator, ledger, payments, create_account):
    create_account("alice", 100)

    async def slow_verify(reference):
        await asyncio.sleep(5)

    payments.verify = slow_verify

    with pytest.raises(PaymentVerificationError):
        await coordinator.credit_from_payment("ref_ok", "alice", deadline=0.05)

    assert ledger.get_balance("alice") == 100


async def test_credit_from_payment_unknown_account(coordinator):
    with pytest.raises(AccountNotFoundError):
        await coordinator.credit_from_payment("ref_ok", "nobody")


async def test_credit_from_payment_requires_reference(coordinator, payments):
    with pytest.raises(ValidationError):
        await coordinator.credit_from_payment("", "alice")
    assert payments.calls == 0


async def test_credit_from_payment_rejects_refund_references(coordinator, ledger, payments, create_account):
    """Saga refund keys cannot be claimed as gateway payments"""
    create_account("alice", 100)

    with pytest.raises(ValidationError):
        await coordinator.credit_from_payment(refund_reference("some-order"), "alice")

    assert payments.calls == 0
    assert ledger.get_balance("alice") == 100
