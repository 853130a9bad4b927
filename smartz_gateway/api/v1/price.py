"""GET /v1/price - Coin price for a service/country pair"""

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from smartz_gateway.api.dependencies import get_coordinator, get_request_id
from smartz_gateway.api.errors import internal_error, to_http_error
from smartz_gateway.api.v1.schemas import QuoteResponse
from smartz_gateway.domain.coordinator import TransactionCoordinator
from smartz_gateway.domain.exceptions import DomainException

router = APIRouter()


@router.get("/price", response_model=QuoteResponse)
async def get_price(
    request: Request,
    service: str = Query(..., min_length=1, description="Provider service code"),
    country: str = Query(..., min_length=1, description="Provider country code"),
    coordinator: TransactionCoordinator = Depends(get_coordinator),
):
    """
    Quote the coin price of a number.

    Returns 404 when the provider does not sell the service in that country.
    """
    request_id = get_request_id(request)
    try:
        price_quote = await coordinator.quote_price(service, country)
    except DomainException as e:
        raise to_http_error(e, request_id)
    except Exception as e:
        raise internal_error(e, request_id)

    return QuoteResponse(
        service=price_quote.service_code,
        country=price_quote.country_code,
        base_price=price_quote.base_price,
        price_coins=price_quote.final_price_coins,
        policy=price_quote.policy_id,
        quoted_at=price_quote.quoted_at,
    )
