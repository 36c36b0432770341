# File: src/tmparking/domain/strategies.py
"""
Strategy Pattern Implementation for billing and subscription policies

This module encapsulates the time-window policies of the engine:
1. RateTable - immutable lookup from vehicle category to RateConfig
2. Pricing Strategies - amount owed for a completed stay
3. Lateness Strategies - whether a monthly subscriber is behind on payment

Strategies are pure: every instant they need is passed in by the caller,
none of them reads the clock.
"""

from abc import ABC, abstractmethod
from types import MappingProxyType
from typing import Optional, Dict, Any, Iterator, Mapping, Tuple
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
import logging

from .models import (
    VehicleCategory, RateConfig, Customer,
    UnknownVehicleCategory, InvalidAmount,
    CENT, ZERO, to_money, duration_minutes
)


DEFAULT_RATES: Dict[VehicleCategory, RateConfig] = {
    VehicleCategory.CAR: RateConfig(Decimal('10.00'), Decimal('5.00'), 0),
    VehicleCategory.MOTO: RateConfig(Decimal('5.00'), Decimal('3.00'), 0),
    VehicleCategory.VAN: RateConfig(Decimal('15.00'), Decimal('8.00'), 0),
    VehicleCategory.TRUCK: RateConfig(Decimal('25.00'), Decimal('15.00'), 0),
}


# ============================================================================
# RATE TABLE
# ============================================================================

class RateTable:
    """
    Immutable mapping from vehicle category to rate policy.
    Updates return a new table.
    """

    def __init__(self, rates: Optional[Mapping[VehicleCategory, RateConfig]] = None):
        source = DEFAULT_RATES if rates is None else rates
        self._rates = MappingProxyType({VehicleCategory(k): v for k, v in source.items()})

    def __getitem__(self, category: VehicleCategory) -> RateConfig:
        return self.rate_for(category)

    def __contains__(self, category: object) -> bool:
        return category in self._rates

    def __iter__(self) -> Iterator[VehicleCategory]:
        return iter(self._rates)

    def __len__(self) -> int:
        return len(self._rates)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, RateTable):
            return NotImplemented
        return dict(self._rates) == dict(other._rates)

    def __repr__(self) -> str:
        return f"RateTable({dict(self._rates)!r})"

    def rate_for(self, category: Any) -> RateConfig:
        """Look up the rate for a category; UnknownVehicleCategory on a miss"""
        try:
            return self._rates[VehicleCategory(category)]
        except (KeyError, ValueError):
            raise UnknownVehicleCategory(category) from None

    def items(self):
        return self._rates.items()

    def with_rate(self, category: VehicleCategory, rate: RateConfig) -> 'RateTable':
        updated = dict(self._rates)
        updated[VehicleCategory(category)] = rate
        return RateTable(updated)

    def to_dict(self) -> Dict[str, Any]:
        return {category.value: rate.to_dict() for category, rate in self._rates.items()}


# ============================================================================
# PRICING STRATEGIES
# ============================================================================

class PricingStrategy(ABC):
    """
    Abstract base class for pricing strategies
    Defines the interface for fee calculation algorithms
    """

    def __init__(self):
        self.logger = logging.getLogger(self.__class__.__name__)

    @abstractmethod
    def calculate_parking_fee(
        self,
        entry_time: datetime,
        exit_time: datetime,
        vehicle_category: VehicleCategory,
        rate_table: RateTable
    ) -> Decimal:
        """
        Calculate the amount owed for a stay
        Returns: fee rounded to cents
        """
        pass

    def get_strategy_name(self) -> str:
        return self.__class__.__name__.replace("Strategy", "")

    def __str__(self) -> str:
        return f"{self.get_strategy_name()} Strategy"


class TieredHourlyPricingStrategy(PricingStrategy):
    """
    Tiered hourly pricing
    - All-or-nothing tolerance window (free when the stay fits inside it)
    - Flat first-hour charge, billed in full once tolerance is exceeded
    - Every started hour after the first billed at the additional-hour price
    """

    def calculate_parking_fee(
        self,
        entry_time: datetime,
        exit_time: datetime,
        vehicle_category: VehicleCategory,
        rate_table: RateTable
    ) -> Decimal:
        minutes = duration_minutes(entry_time, exit_time)
        rate = rate_table.rate_for(vehicle_category)

        fee = self.fee_for_minutes(minutes, rate)
        self.logger.debug(f"Fee for {minutes} min ({vehicle_category}): {fee}")
        return fee

    @staticmethod
    def fee_for_minutes(minutes: int, rate: RateConfig) -> Decimal:
        """Apply the tiered policy to an already-rounded duration"""
        if rate.tolerance_minutes > 0 and minutes <= rate.tolerance_minutes:
            return ZERO

        fee = rate.first_hour_price
        if minutes > 60:
            extra_blocks = -(-(minutes - 60) // 60)
            fee += rate.additional_hour_price * extra_blocks

        return fee.quantize(CENT, rounding=ROUND_HALF_UP)


_default_pricing = TieredHourlyPricingStrategy()


def compute_fee(
    entry_time: datetime,
    exit_time: datetime,
    vehicle_category: VehicleCategory,
    rate_table: RateTable
) -> Decimal:
    """Amount owed for a stay under the tiered hourly policy"""
    return _default_pricing.calculate_parking_fee(entry_time, exit_time, vehicle_category, rate_table)


def minimum_fee(vehicle_category: VehicleCategory, rate_table: RateTable) -> Decimal:
    """The 'charge minimum fee' shortcut: the category's first-hour price"""
    return rate_table.rate_for(vehicle_category).first_hour_price


def validate_override_amount(value: Any) -> Decimal:
    """
    Validate a manually entered amount before it is committed
    Raises: InvalidAmount for non-numeric, non-finite or negative input
    """
    if value is None:
        raise InvalidAmount("Amount is required")
    amount = to_money(value)
    if amount < ZERO:
        raise InvalidAmount(f"Amount cannot be negative: {amount}")
    return amount


# ============================================================================
# SUBSCRIPTION LATENESS STRATEGIES
# ============================================================================

class LatenessPolicy(ABC):
    """Abstract base class for subscriber lateness rules"""

    @abstractmethod
    def is_late(self, customer: Customer, now: datetime) -> bool:
        pass


class ThirtyDayLatenessPolicy(LatenessPolicy):
    """
    Late when the last payment is more than 30 whole days old AND the
    current day of month is past the customer's due day. Never paid means
    late.

    Known gaps kept for compatibility: a due day beyond the month's length
    is never passed, and the two conditions disagree around month ends.
    """

    def __init__(self, window_days: int = 30):
        self.window_days = window_days

    def is_late(self, customer: Customer, now: datetime) -> bool:
        if customer.last_payment is None:
            return True

        days_since_payment = (now - customer.last_payment) // timedelta(days=1)
        return days_since_payment > self.window_days and now.day > customer.due_day


_default_lateness = ThirtyDayLatenessPolicy()


def is_late(customer: Customer, now: datetime) -> bool:
    return _default_lateness.is_late(customer, now)


def late_customers(customers, now: datetime, policy: Optional[LatenessPolicy] = None) -> Tuple[Customer, ...]:
    """Active customers the policy considers late"""
    policy = policy or _default_lateness
    return tuple(c for c in customers if c.active and policy.is_late(c, now))
