"""Domain models - pure Python dataclasses representing business entities"""

import enum
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional


class OrderState(str, enum.Enum):
    """Lifecycle of a number purchase"""

    QUOTED = "quoted"
    DECLINED = "declined"  # debit refused, nothing reserved
    RESERVED = "reserved"
    ACQUIRED = "acquired"
    AWAITING_CODE = "awaiting_code"
    DELIVERED = "delivered"
    ACQUISITION_FAILED = "acquisition_failed"


class CodeStatus(str, enum.Enum):
    """Activation status reported by the provider"""

    WAITING = "waiting"
    CODE_RECEIVED = "code_received"
    FAILED = "failed"


class PaymentOutcome(str, enum.Enum):
    CREDITED = "credited"
    DUPLICATE = "duplicate"
    REJECTED = "rejected"


@dataclass
class PriceQuote:
    """Final coin price for a service/country pair at a point in time"""

    service_code: str
    country_code: str
    base_price: Decimal
    final_price_coins: int
    policy_id: str
    quoted_at: datetime


@dataclass
class AcquiredNumber:
    """Number handed out by the provider"""

    provider_order_id: str
    phone_number: str


@dataclass
class ActivationStatus:
    """Result of polling the provider for an SMS code"""

    status: CodeStatus
    code: Optional[str] = None
    reason: Optional[str] = None


@dataclass
class PurchaseOrder:
    """Snapshot of a persisted purchase order"""

    order_id: str
    account_id: str
    service_code: str
    country_code: str
    reserved_coins: int
    state: OrderState
    provider_order_id: Optional[str] = None
    phone_number: Optional[str] = None
    code: Optional[str] = None
    failure_reason: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass
class PaymentVerification:
    """Payment gateway verdict for a reference"""

    verified: bool
    amount_minor: int
    currency: str


@dataclass
class CreditResult:
    """Outcome of an idempotent ledger credit"""

    applied: bool
    balance: int


@dataclass
class PaymentEvent:
    """Processing record of one payment reference"""

    reference: str
    account_id: str
    outcome: PaymentOutcome
    amount_minor: int
    currency: str
    coins: int
    balance: int
