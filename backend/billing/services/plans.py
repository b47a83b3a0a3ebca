"""Subscription plan catalogue and promo-code validation."""
from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, List, Optional

from billing.constants import (
    BASIC_PLAN_ID,
    FREE_PLAN_ID,
    PAID_PLAN_IDS,
    PREMIUM_PLAN_ID,
    SUPPORTED_DURATIONS,
    ULTIMATE_PLAN_ID,
)


class PlanNotFound(Exception):
    """Raised when a plan identifier is not part of the catalogue."""


@dataclass(frozen=True)
class PlanOption:
    duration_months: int
    price: Decimal


@dataclass(frozen=True)
class Plan:
    id: str
    name: str
    tokens: int
    options: tuple

    @property
    def is_paid(self) -> bool:
        return self.id in PAID_PLAN_IDS

    def price_for(self, duration_months: int) -> Optional[Decimal]:
        for option in self.options:
            if option.duration_months == duration_months:
                return option.price
        return None


def _options(*prices: str) -> tuple:
    return tuple(PlanOption(duration, Decimal(price)) for duration, price in zip(SUPPORTED_DURATIONS, prices))


PLANS: Dict[str, Plan] = {
    FREE_PLAN_ID: Plan(FREE_PLAN_ID, "Free", 5, _options("0", "0", "0")),
    BASIC_PLAN_ID: Plan(BASIC_PLAN_ID, "Basic", 60, _options("12.99", "69.99", "129.99")),
    PREMIUM_PLAN_ID: Plan(PREMIUM_PLAN_ID, "Premium", 250, _options("24.99", "134.99", "249.99")),
    ULTIMATE_PLAN_ID: Plan(ULTIMATE_PLAN_ID, "Ultimate", 600, _options("49.99", "269.99", "499.99")),
}

PROMO_CODES: Dict[str, int] = {
    "AILAUNCH20": 20,
    "WELCOME10": 10,
    "SPRING2025": 15,
}


@dataclass(frozen=True)
class PromoValidation:
    valid: bool
    code: str = ""
    discount_percentage: int = 0
    message: str = ""


def get_plan(plan_id: Optional[str]) -> Plan:
    plan = PLANS.get((plan_id or "").upper())
    if plan is None:
        raise PlanNotFound(f"Unknown plan '{plan_id}'.")
    return plan


def list_plans() -> List[Plan]:
    return list(PLANS.values())


def is_paid_plan(plan_id: Optional[str]) -> bool:
    return (plan_id or "").upper() in PAID_PLAN_IDS


def is_known_plan(plan_id: Optional[str]) -> bool:
    return (plan_id or "").upper() in PLANS


def get_tokens_for_plan(plan_id: str) -> int:
    return get_plan(plan_id).tokens


def get_price(plan_id: str, duration_months: int) -> Decimal:
    price = get_plan(plan_id).price_for(duration_months)
    if price is None:
        raise PlanNotFound(f"Plan '{plan_id}' has no {duration_months}-month option.")
    return price


def validate_promo_code(code: Optional[str]) -> PromoValidation:
    """Check a promo code against the configured table; codes are case-insensitive."""

    normalized = (code or "").strip().upper()
    if not normalized:
        return PromoValidation(valid=False, message="Promo code is required.")
    discount = PROMO_CODES.get(normalized)
    if discount is None:
        return PromoValidation(valid=False, code=normalized, message="Invalid promo code.")
    return PromoValidation(
        valid=True,
        code=normalized,
        discount_percentage=discount,
        message=f"Promo code applied: {discount}% off.",
    )


def apply_discount(price: Decimal, percentage: int) -> Decimal:
    if not percentage:
        return price
    bounded = max(0, min(100, int(percentage)))
    discounted = price * (Decimal(100 - bounded) / Decimal(100))
    return discounted.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def to_minor_units(amount: Decimal) -> int:
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
