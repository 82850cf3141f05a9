"""
backend/models/plan.py

Plan model: a named tier of service with price, trial length and usage limit.
"""

from enum import Enum
from typing import Dict, Optional, Tuple
from pydantic import BaseModel, ConfigDict, Field


class PlanId(str, Enum):
    FREE = "free"
    PLUS = "plus"
    PRO = "pro"


class BillingInterval(str, Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"


UNLIMITED = -1


class Plan(BaseModel):
    """
    Plan represents a purchasable (or free) tier.

    Prices are whole currency units. ``external_price_ids`` maps each billing
    interval to the Stripe price id; a missing or null entry means that
    interval cannot be purchased.
    """
    model_config = ConfigDict(frozen=True)

    id: PlanId
    name: str
    description: str = ""
    monthly_price: int = 0
    yearly_price: int = 0
    trial_days: Optional[int] = None
    external_price_ids: Dict[BillingInterval, Optional[str]] = Field(default_factory=dict)
    generation_limit: int = 0
    features: Tuple[str, ...] = ()
    rank: int = 0
    is_popular: bool = False

    @property
    def price_ids(self) -> Tuple[str, ...]:
        """Configured (non-null) Stripe price ids for this plan."""
        return tuple(pid for pid in self.external_price_ids.values() if pid)

    @property
    def is_unlimited(self) -> bool:
        return self.generation_limit == UNLIMITED

    def price_id_for(self, interval: BillingInterval) -> Optional[str]:
        return self.external_price_ids.get(interval)
