"""GET /v1/accounts/{account_id}/balance - Current coin balance"""

from fastapi import APIRouter, Depends, Request

from smartz_gateway.api.dependencies import get_ledger, get_request_id
from smartz_gateway.api.errors import to_http_error
from smartz_gateway.api.v1.schemas import BalanceResponse
from smartz_gateway.domain.exceptions import DomainException
from smartz_gateway.infrastructure.database.ledger import LedgerStore

router = APIRouter()


@router.get("/accounts/{account_id}/balance", response_model=BalanceResponse)
def get_balance(account_id: str, request: Request, ledger: LedgerStore = Depends(get_ledger)):
    try:
        balance = ledger.get_balance(account_id)
    except DomainException as e:
        raise to_http_error(e, get_request_id(request))

    return BalanceResponse(account_id=account_id, balance=balance)
