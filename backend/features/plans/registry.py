"""
backend/features/plans/registry.py

Plan registry: static catalogue of plans, their prices, trials and limits.

Handles:
- Default catalogue (free, plus, pro)
- Lookup by plan id (falls back to free) and by Stripe price id
- Trial lookups used by checkout

The registry is built once at startup from settings and passed to the
services that need it.
"""

import logging
from typing import Dict, Iterable, List, Optional, Union

from backend.models.plan import BillingInterval, Plan, PlanId, UNLIMITED

logger = logging.getLogger("dashboard")


# Default plan configurations (prices in whole currency units)
DEFAULT_PLANS = {
    PlanId.FREE: {
        "name": "Free",
        "description": "For getting started and exploring the product",
        "monthly_price": 0,
        "yearly_price": 0,
        "trial_days": None,
        "generation_limit": 5,
        "features": (
            "5 generations per month",
            "Basic models",
            "Email support",
        ),
        "rank": 0,
    },
    PlanId.PLUS: {
        "name": "Plus",
        "description": "For professionals",
        "monthly_price": 15,
        "yearly_price": 144,  # 12/month, 20% off
        "trial_days": 14,
        "generation_limit": 100,
        "features": (
            "100 generations per month",
            "All models",
            "Priority support",
            "Unlimited history",
        ),
        "rank": 1,
        "is_popular": True,
    },
    PlanId.PRO: {
        "name": "Pro",
        "description": "For teams and companies",
        "monthly_price": 40,
        "yearly_price": 384,  # 32/month, 20% off
        "trial_days": 7,
        "generation_limit": UNLIMITED,
        "features": (
            "Unlimited generations",
            "All models + early access",
            "24/7 support",
            "API access",
            "Advanced integrations",
        ),
        "rank": 2,
    },
}


class PlanRegistryError(ValueError):
    """Raised when a plan catalogue violates its invariants."""


class PlanRegistry:
    """Immutable lookup over a plan catalogue."""

    def __init__(self, plans: Iterable[Plan]):
        ordered = sorted(plans, key=lambda p: p.rank)
        by_id: Dict[PlanId, Plan] = {}
        by_price: Dict[str, Plan] = {}

        for plan in ordered:
            if plan.id in by_id:
                raise PlanRegistryError(f"Duplicate plan id: {plan.id.value}")
            by_id[plan.id] = plan
            for price_id in plan.price_ids:
                if price_id in by_price:
                    raise PlanRegistryError(f"Price {price_id} mapped to more than one plan")
                by_price[price_id] = plan

        free = by_id.get(PlanId.FREE)
        if free is None:
            raise PlanRegistryError("Plan catalogue must contain exactly one free plan")
        if free.price_ids:
            raise PlanRegistryError("Free plan must not have Stripe price ids")

        self._plans = tuple(ordered)
        self._by_id = by_id
        self._by_price = by_price

    @property
    def free(self) -> Plan:
        return self._by_id[PlanId.FREE]

    def by_id(self, plan_id: Union[PlanId, str, None]) -> Plan:
        """Return the plan for ``plan_id``, or the free plan if unknown."""
        if plan_id is None:
            return self.free
        try:
            key = PlanId(plan_id)
        except ValueError:
            return self.free
        return self._by_id.get(key, self.free)

    def by_external_price_id(self, price_id: Optional[str]) -> Optional[Plan]:
        if not price_id:
            return None
        return self._by_price.get(price_id)

    def has_trial(self, plan_id: Union[PlanId, str, None]) -> bool:
        trial_days = self.by_id(plan_id).trial_days
        return trial_days is not None and trial_days > 0

    def trial_days_for_price(self, price_id: Optional[str]) -> Optional[int]:
        plan = self.by_external_price_id(price_id)
        if plan is None or not self.has_trial(plan.id):
            return None
        return plan.trial_days

    def is_purchasable(self, plan_id: Union[PlanId, str, None]) -> bool:
        plan = self.by_id(plan_id)
        return plan.id != PlanId.FREE and bool(plan.price_ids)

    def all(self) -> List[Plan]:
        return list(self._plans)

    def paid(self) -> List[Plan]:
        return [plan for plan in self._plans if plan.price_ids]

    def __iter__(self):
        return iter(self._plans)

    def __len__(self) -> int:
        return len(self._plans)


def build_plan_registry(settings_obj=None) -> PlanRegistry:
    """Build the registry from DEFAULT_PLANS and the configured Stripe prices."""
    if settings_obj is None:
        from backend.core.config import settings as settings_obj

    price_ids = {
        PlanId.PLUS: {
            BillingInterval.MONTHLY: getattr(settings_obj, "STRIPE_PLUS_MONTHLY_PRICE_ID", None),
            BillingInterval.YEARLY: getattr(settings_obj, "STRIPE_PLUS_YEARLY_PRICE_ID", None),
        },
        PlanId.PRO: {
            BillingInterval.MONTHLY: getattr(settings_obj, "STRIPE_PRO_MONTHLY_PRICE_ID", None),
            BillingInterval.YEARLY: getattr(settings_obj, "STRIPE_PRO_YEARLY_PRICE_ID", None),
        },
    }

    plans = []
    for plan_id, config in DEFAULT_PLANS.items():
        plan = Plan(id=plan_id, external_price_ids=price_ids.get(plan_id, {}), **config)
        if plan_id != PlanId.FREE and not plan.price_ids:
            logger.warning(f"Plan '{plan_id.value}' has no Stripe price configured and cannot be purchased")
        plans.append(plan)

    return PlanRegistry(plans)
