"""Plan change detection: decides whether a price swap is an upgrade and what it's worth."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from src.models import BillingInterval
from src.services.plans import Plan, PlanCatalog

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PlanChange:
    is_upgrade: bool
    credit_delta: int = 0
    immediate_credits: int = 0
    old_plan: Optional[Plan] = None
    new_plan: Optional[Plan] = None
    interval: BillingInterval = BillingInterval.MONTH


class PlanChangeDetector:
    """Compare two price ids by plan tier.

    Downgrades and lateral moves (same tier, e.g. monthly → yearly) carry no
    credit action: there is no clawback or proration policy.
    """

    def __init__(self, catalog: PlanCatalog):
        self.catalog = catalog

    def detect(self, old_price_id: str, new_price_id: str) -> PlanChange:
        """Raises PlanNotFound if either price id is not in the catalog."""
        old_plan, _ = self.catalog.resolve(old_price_id)
        new_plan, interval = self.catalog.resolve(new_price_id)

        if new_plan.tier <= old_plan.tier:
            logger.info(
                "Plan change %s -> %s is not an upgrade (tier %d -> %d)",
                old_plan.id, new_plan.id, old_plan.tier, new_plan.tier,
            )
            return PlanChange(is_upgrade=False, old_plan=old_plan, new_plan=new_plan, interval=interval)

        delta = max(0, new_plan.credits_for(interval) - old_plan.credits_for(interval))
        return PlanChange(
            is_upgrade=True,
            credit_delta=delta,
            immediate_credits=new_plan.credit_grants.on_subscribe or 0,
            old_plan=old_plan,
            new_plan=new_plan,
            interval=interval,
        )
