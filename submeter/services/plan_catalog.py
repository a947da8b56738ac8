"""
Plan catalog
============

Static description of every purchasable plan: whether it recurs, how long
a billing period lasts, how often the quota resets, the per-period usage
limit and the list price. Values come from Settings so deployments can
tune limits and prices without code changes.

    plan          recurring  billing   quota reset     limit  price
    monthly       yes        30 days   billing period  100    $19.00
    yearly        yes        365 days  every 30 days   100    $149.00
    pay-per-use   no         expires   never           3      $4.99
    free          no         never     never           0      $0
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Dict, Optional

from submeter.config import Settings, settings

FREE = "free"
MONTHLY = "monthly"
YEARLY = "yearly"
PAY_PER_USE = "pay-per-use"

RECURRING_PLANS = (MONTHLY, YEARLY)


@dataclass(frozen=True)
class PlanSpec:
    name: str
    recurring: bool
    usage_limit: int
    price_cents: int
    billing_interval: Optional[timedelta] = None
    # Quota interval shorter than the billing interval (yearly plans reset
    # monthly). None means the quota follows the billing period.
    quota_interval: Optional[timedelta] = None
    # Lifetime of a non-recurring grant. None means it never expires.
    expires_after: Optional[timedelta] = None

    @property
    def reset_interval(self) -> Optional[timedelta]:
        """Interval after which usage_count returns to zero."""
        return self.quota_interval or self.billing_interval


class PlanCatalog:
    """Lookup of PlanSpec by plan name."""

    def __init__(self, plans: Dict[str, PlanSpec]) -> None:
        self._plans = dict(plans)

    @classmethod
    def from_settings(cls, cfg: Settings = settings) -> "PlanCatalog":
        return cls({
            MONTHLY: PlanSpec(
                name=MONTHLY,
                recurring=True,
                usage_limit=cfg.recurring_usage_limit,
                price_cents=cfg.monthly_price_cents,
                billing_interval=timedelta(days=cfg.monthly_period_days),
            ),
            YEARLY: PlanSpec(
                name=YEARLY,
                recurring=True,
                usage_limit=cfg.recurring_usage_limit,
                price_cents=cfg.yearly_price_cents,
                billing_interval=timedelta(days=cfg.yearly_period_days),
                quota_interval=timedelta(days=cfg.quota_reset_days),
            ),
            PAY_PER_USE: PlanSpec(
                name=PAY_PER_USE,
                recurring=False,
                usage_limit=cfg.pay_per_use_credits,
                price_cents=cfg.pay_per_use_price_cents,
                expires_after=timedelta(days=cfg.pay_per_use_expiry_days),
            ),
            FREE: PlanSpec(name=FREE, recurring=False, usage_limit=0, price_cents=0),
        })

    def get(self, name: Optional[str]) -> Optional[PlanSpec]:
        if name is None:
            return None
        return self._plans.get(name)

    def __getitem__(self, name: str) -> PlanSpec:
        return self._plans[name]

    def __contains__(self, name: object) -> bool:
        return name in self._plans

    def is_recurring(self, name: Optional[str]) -> bool:
        spec = self.get(name)
        return bool(spec and spec.recurring)


plan_catalog = PlanCatalog.from_settings()
