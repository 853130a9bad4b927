"""Pydantic schemas for API request/response validation"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class QuoteResponse(BaseModel):
    """Response for GET /v1/price"""

    service: str
    country: str
    base_price: Decimal
    price_coins: int
    policy: str
    quoted_at: datetime


class PurchaseRequest(BaseModel):
    """Request body for POST /v1/numbers"""

    account_id: str = Field(..., min_length=1, max_length=64, description="Authenticated account identifier")
    service: str = Field(..., min_length=1, max_length=64, description="Provider service code, e.g. 'wa'")
    country: str = Field(..., min_length=1, max_length=64, description="Provider country code")


class PurchaseResponse(BaseModel):
    """Response for POST /v1/numbers"""

    order_id: str
    provider_order_id: Optional[str] = None
    phone_number: Optional[str] = None
    price_coins: int
    state: str


class CodeResponse(BaseModel):
    """Response for GET /v1/numbers/{order_id}/code"""

    order_id: str
    status: str  # waiting | code_received | failed
    code: Optional[str] = None


class PaymentCreditRequest(BaseModel):
    """Request body for POST /v1/payments/verify"""

    reference: str = Field(..., min_length=1, max_length=64, description="Gateway payment reference")
    account_id: str = Field(..., min_length=1, max_length=64, description="Account to credit")


class PaymentCreditResponse(BaseModel):
    """Response for POST /v1/payments/verify"""

    reference: str
    outcome: str  # credited | duplicate
    coins_credited: int
    balance: int


class BalanceResponse(BaseModel):
    """Response for GET /v1/accounts/{account_id}/balance"""

    account_id: str
    balance: int


class CatalogResponse(BaseModel):
    """Provider listing passed through unchanged"""

    items: Dict[str, Any]
