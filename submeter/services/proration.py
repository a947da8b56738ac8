"""
Plan Change / Proration Calculator
==================================

Pure calculation, no I/O. Money is computed with Decimal and rounded
half-up to whole cents.

    unused = 1 - clamp(elapsed_fraction, 0, 1)

    upgrade   (new period price > current):
        charge = max(0, new_price - unused * current_price)
        credit = any excess of the unused value over new_price
        effective immediately
    downgrade (new period price <= current):
        charge = 0
        credit = unused * current_price, applied to future invoices
        effective at period end
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from submeter.services.plan_catalog import PlanCatalog, plan_catalog

UPGRADE = "upgrade"
DOWNGRADE = "downgrade"

IMMEDIATE = "immediate"
PERIOD_END = "period_end"

_CENT = Decimal("1")


@dataclass(frozen=True)
class ProrationQuote:
    current_plan: str
    new_plan: str
    direction: str
    charge_cents: int
    credit_cents: int
    new_usage_limit: int
    unused_fraction: Decimal
    effective: str

    def to_dict(self) -> dict:
        return {
            "current_plan": self.current_plan,
            "new_plan": self.new_plan,
            "direction": self.direction,
            "charge_cents": self.charge_cents,
            "credit_cents": self.credit_cents,
            "new_usage_limit": self.new_usage_limit,
            "unused_fraction": float(self.unused_fraction),
            "effective": self.effective,
        }


def _cents(value: Decimal) -> int:
    return int(value.quantize(_CENT, rounding=ROUND_HALF_UP))


def elapsed_fraction(period_start: datetime, period_end: Optional[datetime], now: datetime) -> Decimal:
    """Fraction of the current period already used, clamped to [0, 1]."""
    if period_end is None or period_end <= period_start:
        return Decimal(1)
    total = Decimal(str((period_end - period_start).total_seconds()))
    used = Decimal(str((now - period_start).total_seconds()))
    return min(Decimal(1), max(Decimal(0), used / total))


def calculate_proration(
    current_plan: str,
    new_plan: str,
    elapsed: float | Decimal,
    catalog: PlanCatalog = plan_catalog,
) -> ProrationQuote:
    if current_plan == new_plan:
        raise ValueError(f"already on the {new_plan} plan")
    current = catalog.get(current_plan)
    target = catalog.get(new_plan)
    if current is None or not current.recurring:
        raise ValueError(f"{current_plan!r} is not a recurring plan")
    if target is None or not target.recurring:
        raise ValueError(f"{new_plan!r} is not a recurring plan")

    fraction = min(Decimal(1), max(Decimal(0), Decimal(str(elapsed))))
    unused = Decimal(1) - fraction
    unused_value = unused * current.price_cents

    if target.price_cents > current.price_cents:
        balance = Decimal(target.price_cents) - unused_value
        return ProrationQuote(
            current_plan=current_plan,
            new_plan=new_plan,
            direction=UPGRADE,
            charge_cents=max(0, _cents(balance)),
            credit_cents=max(0, _cents(-balance)),
            new_usage_limit=target.usage_limit,
            unused_fraction=unused,
            effective=IMMEDIATE,
        )

    return ProrationQuote(
        current_plan=current_plan,
        new_plan=new_plan,
        direction=DOWNGRADE,
        charge_cents=0,
        credit_cents=_cents(unused_value),
        new_usage_limit=target.usage_limit,
        unused_fraction=unused,
        effective=PERIOD_END,
    )
