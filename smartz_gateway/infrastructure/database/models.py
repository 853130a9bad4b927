"""SQLAlchemy ORM models for accounts, payment credits and purchase orders"""

import uuid
from sqlalchemy import Column, String, BigInteger, DateTime, Numeric, Text, CheckConstraint
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func

from smartz_gateway.domain.models import OrderState

Base = declarative_base()


class Account(Base):
    """Coin balance of an externally provisioned user"""

    __tablename__ = "account"

    id = Column(Text, primary_key=True)
    balance = Column(BigInteger, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        CheckConstraint("balance >= 0", name="check_account_balance_non_negative"),
    )


class PaymentCredit(Base):
    """One row per applied credit; the unique reference makes credits idempotent"""

    __tablename__ = "payment_credit"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    reference = Column(Text, nullable=False, unique=True)
    account_id = Column(Text, nullable=False, index=True)
    amount_coins = Column(BigInteger, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    __table_args__ = (
        CheckConstraint("amount_coins >= 0", name="check_payment_credit_amount"),
    )


class PurchaseOrderRecord(Base):
    """Number purchase tracked through the saga"""

    __tablename__ = "purchase_order"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    account_id = Column(Text, nullable=False, index=True)
    service_code = Column(Text, nullable=False)
    country_code = Column(Text, nullable=False)
    base_price = Column(Numeric(18, 4), nullable=False)
    policy_id = Column(Text, nullable=False)
    reserved_coins = Column(BigInteger, nullable=False)
    state = Column(Text, nullable=False, default=OrderState.QUOTED.value, index=True)
    provider_order_id = Column(Text, nullable=True)
    phone_number = Column(Text, nullable=True)
    code = Column(Text, nullable=True)
    failure_reason = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())
