"""POST /v1/payments/verify - Credit coins for a verified gateway payment"""

import time

from fastapi import APIRouter, Depends, Request

from smartz_gateway.api.dependencies import get_coordinator, get_request_id
from smartz_gateway.api.errors import internal_error, to_http_error
from smartz_gateway.api.v1.schemas import PaymentCreditRequest, PaymentCreditResponse
from smartz_gateway.domain.coordinator import TransactionCoordinator
from smartz_gateway.domain.exceptions import DomainException
from smartz_gateway.infrastructure.observability.logging import log_payment

router = APIRouter()


@router.post("/payments/verify", response_model=PaymentCreditResponse)
async def verify_payment(
    request_body: PaymentCreditRequest,
    request: Request,
    coordinator: TransactionCoordinator = Depends(get_coordinator),
):
    """
    Verify a payment reference with the gateway and credit coins.

    Retransmitting the same reference is safe: the response reports
    outcome "duplicate" and the balance is not touched again.
    """
    start_time = time.time()
    request_id = get_request_id(request)

    try:
        event = await coordinator.credit_from_payment(request_body.reference, request_body.account_id)
    except DomainException as e:
        duration_ms = (time.time() - start_time) * 1000
        log_payment(request_id, request_body.account_id, request_body.reference, e.kind, 0, duration_ms)
        raise to_http_error(e, request_id)
    except Exception as e:
        raise internal_error(e, request_id)

    duration_ms = (time.time() - start_time) * 1000
    log_payment(request_id, event.account_id, event.reference, event.outcome.value, event.coins, duration_ms)

    return PaymentCreditResponse(
        reference=event.reference,
        outcome=event.outcome.value,
        coins_credited=event.coins,
        balance=event.balance,
    )
