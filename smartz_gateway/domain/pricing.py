"""Pricing engine - turns a provider base price into a coin price"""

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import ClassVar

from smartz_gateway.config import Settings
from smartz_gateway.domain.exceptions import PaymentTooSmallError, ValidationError
from smartz_gateway.domain.models import PriceQuote


def ceil_coins(amount: Decimal) -> int:
    """Round up to the next whole coin"""
    return int(math.ceil(amount))


class PricingPolicy(ABC):
    """Markup strategy applied on top of the provider's base price"""

    policy_id: ClassVar[str] = "base"

    @abstractmethod
    def raw_price(self, base_price: Decimal) -> Decimal:
        """Unrounded coin price for a base price"""

    def price(self, base_price: Decimal) -> int:
        return ceil_coins(self.raw_price(base_price))


@dataclass(frozen=True)
class MultiplicativeMarginPolicy(PricingPolicy):
    """
    final = ceil(base * rate * margin_factor)

    rate converts provider units to coin units (e.g. RUB -> NGN at 15);
    with the default of 1 the base price is already in coin units.
    """

    margin_factor: Decimal
    rate: Decimal = Decimal("1")
    policy_id: ClassVar[str] = "multiplicative"

    def __post_init__(self):
        if self.margin_factor <= 1:
            raise ValueError("margin_factor must be greater than 1")
        if self.rate <= 0:
            raise ValueError("rate must be positive")

    def raw_price(self, base_price: Decimal) -> Decimal:
        return base_price * self.rate * self.margin_factor


@dataclass(frozen=True)
class FixedMarkupPolicy(PricingPolicy):
    """final = ceil(base) + markup_coins"""

    markup_coins: int
    policy_id: ClassVar[str] = "fixed"

    def __post_init__(self):
        if self.markup_coins < 0:
            raise ValueError("markup_coins must be non-negative")

    def raw_price(self, base_price: Decimal) -> Decimal:
        return Decimal(ceil_coins(base_price) + self.markup_coins)


@dataclass(frozen=True)
class TieredMarkupPolicy(PricingPolicy):
    """
    Fixed markup chosen by a threshold on the base price.

    Base prices below threshold get standard_markup, everything at or above
    it gets premium_markup.
    """

    threshold: Decimal
    standard_markup: int
    premium_markup: int
    policy_id: ClassVar[str] = "tiered"

    def __post_init__(self):
        if self.standard_markup < 0 or self.premium_markup < 0:
            raise ValueError("markups must be non-negative")

    def raw_price(self, base_price: Decimal) -> Decimal:
        markup = self.standard_markup if base_price < self.threshold else self.premium_markup
        return Decimal(ceil_coins(base_price) + markup)


@dataclass(frozen=True)
class CrossCurrencyPolicy(PricingPolicy):
    """
    Currency chain: provider -> reference -> target (+ markup) -> coins.

    Steps:
    1. base * provider_to_reference_rate (e.g. RUB -> USD)
    2. * reference_to_target_rate (e.g. USD -> NGN)
    3. + target_markup (fixed, in target currency)
    4. * coins_per_target_unit

    Prices landing within round_number_band of round_number_price are sold at
    exactly round_number_price. This is a promotional price point and can pull
    the price slightly below the chained value.
    """

    provider_to_reference_rate: Decimal
    reference_to_target_rate: Decimal
    target_markup: Decimal
    coins_per_target_unit: Decimal
    round_number_price: Decimal = Decimal("0")
    round_number_band: Decimal = Decimal("0")
    policy_id: ClassVar[str] = "cross_currency"

    def __post_init__(self):
        for name in ("provider_to_reference_rate", "reference_to_target_rate", "coins_per_target_unit"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        if self.target_markup < 0 or self.round_number_band < 0:
            raise ValueError("target_markup and round_number_band must be non-negative")

    def raw_price(self, base_price: Decimal) -> Decimal:
        reference = base_price * self.provider_to_reference_rate
        target = reference * self.reference_to_target_rate + self.target_markup
        coins = target * self.coins_per_target_unit

        if (
            self.round_number_price > 0
            and self.round_number_price >= base_price
            and abs(coins - self.round_number_price) <= self.round_number_band
        ):
            return self.round_number_price
        return coins


def build_pricing_policy(settings: Settings) -> PricingPolicy:
    """Select the markup policy named in configuration"""
    name = settings.pricing_policy
    if name == "multiplicative":
        return MultiplicativeMarginPolicy(
            margin_factor=settings.margin_factor,
            rate=settings.provider_to_coin_rate,
        )
    if name == "fixed":
        return FixedMarkupPolicy(markup_coins=settings.fixed_markup_coins)
    if name == "tiered":
        return TieredMarkupPolicy(
            threshold=settings.tier_threshold,
            standard_markup=settings.tier_standard_markup_coins,
            premium_markup=settings.tier_premium_markup_coins,
        )
    if name == "cross_currency":
        return CrossCurrencyPolicy(
            provider_to_reference_rate=settings.provider_to_reference_rate,
            reference_to_target_rate=settings.reference_to_target_rate,
            target_markup=settings.target_markup,
            coins_per_target_unit=settings.coins_per_target_unit,
            round_number_price=settings.round_number_price,
            round_number_band=settings.round_number_band,
        )
    raise ValueError(f"Unknown pricing policy: {name}")


def quote(
    base_price: Decimal,
    service_code: str,
    country_code: str,
    policy: PricingPolicy,
) -> PriceQuote:
    """
    Main entry point: price a provider resource in coins.

    All policies round up, so a buyer is never charged a fraction of a coin
    short of the true cost.

    Raises:
        ValidationError: base price is negative or not a number
    """
    if not isinstance(base_price, Decimal):
        base_price = Decimal(str(base_price))
    if not base_price.is_finite() or base_price < 0:
        raise ValidationError(f"Invalid base price: {base_price}")

    return PriceQuote(
        service_code=service_code,
        country_code=country_code,
        base_price=base_price,
        final_price_coins=policy.price(base_price),
        policy_id=policy.policy_id,
        quoted_at=datetime.now(timezone.utc),
    )


def coins_for_payment(amount_minor: int, minor_units_per_coin: int) -> int:
    """
    Convert a verified payment into coins, rounding down.

    Example:
        22,500 minor units at 15 per coin -> 1500 coins

    Raises:
        PaymentTooSmallError: payment is worth less than one coin
    """
    if minor_units_per_coin <= 0:
        raise ValueError("minor_units_per_coin must be positive")

    coins = max(amount_minor, 0) // minor_units_per_coin
    if coins == 0:
        raise PaymentTooSmallError(
            f"Payment of {amount_minor} minor units is below one coin ({minor_units_per_coin})"
        )
    return coins
