"""Read-only plan catalog lookups used to price-check settlements."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal

from paysettle.config import Settings

_CENTS = Decimal("0.01")


@dataclass(frozen=True)
class Plan:
    code: str
    price: Decimal
    currency: str
    duration: timedelta


def resolve_plan(settings: Settings, plan_code: str | None) -> Plan | None:
    """Return the plan named in the event, the default plan when none is named, or ``None``."""

    code = plan_code or settings.default_plan_code
    config = settings.plans.get(code)
    if config is None:
        return None
    return Plan(
        code=code,
        price=config.price.quantize(_CENTS),
        currency=config.currency,
        duration=timedelta(days=config.duration_days),
    )


def price_mismatch(plan: Plan, amount: Decimal | None, currency: str | None) -> str | None:
    """Describe why ``amount``/``currency`` do not match ``plan``, or ``None`` when they do."""

    if amount is None or currency is None:
        return "amount_or_currency_missing"
    if currency.upper() != plan.currency:
        return "currency_mismatch"
    # Compared unrounded: 9.994 does not match a 9.99 price.
    if Decimal(amount) != plan.price:
        return "amount_mismatch"
    return None


__all__ = ["Plan", "resolve_plan", "price_mismatch"]
