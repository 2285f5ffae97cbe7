"""
PayLedger Plan Catalog
---
Static lookup from a Stripe price id to an internal plan: tier rank and
credit grants. Pure configuration: no state, no I/O.

Plans:
- Free (tier 0): signup bonus + monthly free credits
- Pro (tier 1): monthly / yearly Stripe prices
- Enterprise (tier 2): monthly / yearly Stripe prices
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, Optional

from config.settings import settings
from src.models import BillingInterval
from src.services.errors import PlanNotFound

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CreditGrants:
    on_signup: int = 0
    on_subscribe: int = 0
    monthly: int = 0
    yearly: int = 0


@dataclass(frozen=True)
class Plan:
    id: str
    name: str
    tier: int                     # Ordered rank, compared as a plain integer
    price_ids: dict[BillingInterval, str] = field(default_factory=dict)
    credit_grants: CreditGrants = field(default_factory=CreditGrants)

    def credits_for(self, interval: BillingInterval | str | None) -> int:
        """Credits granted per billing period of ``interval``."""
        interval = BillingInterval(interval) if interval else BillingInterval.MONTH
        if interval == BillingInterval.YEAR:
            return self.credit_grants.yearly or self.credit_grants.monthly * 12
        return self.credit_grants.monthly


def default_plans() -> list[Plan]:
    return [
        Plan(
            id="free",
            name="Free",
            tier=0,
            credit_grants=CreditGrants(on_signup=50, monthly=50),
        ),
        Plan(
            id="pro",
            name="Pro",
            tier=1,
            price_ids={
                BillingInterval.MONTH: settings.STRIPE_PRICE_PRO_MONTHLY,
                BillingInterval.YEAR: settings.STRIPE_PRICE_PRO_YEARLY,
            },
            credit_grants=CreditGrants(on_subscribe=1000, monthly=1000, yearly=12000),
        ),
        Plan(
            id="enterprise",
            name="Enterprise",
            tier=2,
            price_ids={
                BillingInterval.MONTH: settings.STRIPE_PRICE_ENTERPRISE_MONTHLY,
                BillingInterval.YEAR: settings.STRIPE_PRICE_ENTERPRISE_YEARLY,
            },
            credit_grants=CreditGrants(on_subscribe=5000, monthly=5000, yearly=60000),
        ),
    ]


class PlanCatalog:
    """Price id → (plan, interval) index over a fixed set of plans."""

    def __init__(self, plans: Iterable[Plan]):
        self.plans: dict[str, Plan] = {}
        self._by_price: dict[str, tuple[Plan, BillingInterval]] = {}
        for plan in plans:
            if plan.id in self.plans:
                raise ValueError(f"Duplicate plan id: {plan.id}")
            self.plans[plan.id] = plan
            for interval, price_id in plan.price_ids.items():
                if not price_id:
                    continue
                if price_id in self._by_price:
                    raise ValueError(f"Price {price_id} mapped to more than one plan")
                self._by_price[price_id] = (plan, BillingInterval(interval))

    def by_price_id(self, price_id: Optional[str]) -> Plan:
        return self.resolve(price_id)[0]

    def interval_for(self, price_id: Optional[str]) -> BillingInterval:
        return self.resolve(price_id)[1]

    def resolve(self, price_id: Optional[str]) -> tuple[Plan, BillingInterval]:
        if not price_id or price_id not in self._by_price:
            raise PlanNotFound(price_id)
        return self._by_price[price_id]

    @property
    def free_plan(self) -> Plan:
        """Lowest-tier plan; source of signup and monthly free credits."""
        return min(self.plans.values(), key=lambda p: p.tier)


_catalog: Optional[PlanCatalog] = None


def get_catalog() -> PlanCatalog:
    global _catalog
    if _catalog is None:
        _catalog = PlanCatalog(default_plans())
        logger.info("Plan catalog loaded: %s", ", ".join(_catalog.plans))
    return _catalog
