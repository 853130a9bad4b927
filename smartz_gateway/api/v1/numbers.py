"""POST /v1/numbers and GET /v1/numbers/{order_id}/code - Number purchase and SMS code polling"""

import time

from fastapi import APIRouter, Depends, Query, Request, status

from smartz_gateway.api.dependencies import get_coordinator, get_request_id
from smartz_gateway.api.errors import internal_error, to_http_error
from smartz_gateway.api.v1.schemas import CodeResponse, PurchaseRequest, PurchaseResponse
from smartz_gateway.domain.coordinator import TransactionCoordinator
from smartz_gateway.domain.exceptions import DomainException
from smartz_gateway.infrastructure.observability.logging import log_purchase

router = APIRouter()


@router.post("/numbers", response_model=PurchaseResponse, status_code=status.HTTP_201_CREATED)
async def purchase_number(
    request_body: PurchaseRequest,
    request: Request,
    coordinator: TransactionCoordinator = Depends(get_coordinator),
):
    """
    Buy a temporary number with coins.

    Flow:
    1. Quote the provider price
    2. Reserve the coins on the account
    3. Rent the number from the provider
    4. Refund the coins if the provider fails
    """
    start_time = time.time()
    request_id = get_request_id(request)

    try:
        order = await coordinator.purchase_number(
            request_body.account_id,
            request_body.service,
            request_body.country,
        )
    except DomainException as e:
        duration_ms = (time.time() - start_time) * 1000
        log_purchase(request_id, request_body.account_id, None, e.kind, 0, duration_ms)
        raise to_http_error(e, request_id)
    except Exception as e:
        raise internal_error(e, request_id)

    duration_ms = (time.time() - start_time) * 1000
    log_purchase(request_id, order.account_id, order.order_id, "acquired", order.reserved_coins, duration_ms)

    return PurchaseResponse(
        order_id=order.order_id,
        provider_order_id=order.provider_order_id,
        phone_number=order.phone_number,
        price_coins=order.reserved_coins,
        state=order.state.value,
    )


@router.get("/numbers/{order_id}/code", response_model=CodeResponse)
async def poll_code(
    order_id: str,
    request: Request,
    account_id: str | None = Query(None, description="Restrict to orders of this account"),
    coordinator: TransactionCoordinator = Depends(get_coordinator),
):
    """Check whether the SMS code for an order has arrived"""
    request_id = get_request_id(request)
    try:
        activation = await coordinator.poll_code(order_id, account_id=account_id)
    except DomainException as e:
        raise to_http_error(e, request_id)
    except Exception as e:
        raise internal_error(e, request_id)

    return CodeResponse(order_id=order_id, status=activation.status.value, code=activation.code)
