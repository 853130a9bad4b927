"""GET /v1/countries and GET /v1/services - Provider listings passed through read-only"""

from fastapi import APIRouter, Depends, Request

from smartz_gateway.api.dependencies import get_provider_client, get_request_id
from smartz_gateway.api.errors import to_http_error
from smartz_gateway.api.v1.schemas import CatalogResponse
from smartz_gateway.domain.exceptions import DomainException
from smartz_gateway.infrastructure.clients.provider import ProviderGateway

router = APIRouter()


@router.get("/countries", response_model=CatalogResponse)
async def list_countries(request: Request, provider: ProviderGateway = Depends(get_provider_client)):
    try:
        return CatalogResponse(items=await provider.get_countries())
    except DomainException as e:
        raise to_http_error(e, get_request_id(request))


@router.get("/services", response_model=CatalogResponse)
async def list_services(request: Request, provider: ProviderGateway = Depends(get_provider_client)):
    try:
        return CatalogResponse(items=await provider.get_services())
    except DomainException as e:
        raise to_http_error(e, get_request_id(request))
