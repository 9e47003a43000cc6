"""
Plan Catalog

Static mapping of subscription plans to monthly credit allotments and
Stripe price IDs. Credits and prices are USD cents.
"""

import logging
from dataclasses import dataclass, asdict
from typing import Optional, List, Dict, Any

from .billing_config import BillingConfig, billing_config
from .exceptions import InvalidPlanError

logger = logging.getLogger(__name__)


FREE_PLAN_ID = "free"


@dataclass(frozen=True)
class PlanDetails:
    """Immutable catalog entry for a subscription plan."""
    id: str
    name: str
    credits_in_usd_cents: int
    price_in_usd_cents: int
    price_id: Optional[str] = None

    @property
    def is_paid(self) -> bool:
        return self.price_in_usd_cents > 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def get_plans(config: Optional[BillingConfig] = None) -> List[PlanDetails]:
    """
    Build the plan catalog.

    Price IDs are read from the billing configuration so that test and
    live Stripe accounts can share the same catalog.

    Args:
        config: Billing configuration (defaults to the global instance)

    Returns:
        Plans ordered from cheapest to most expensive
    """
    config = config or billing_config
    return [
        PlanDetails(
            id=FREE_PLAN_ID,
            name="Free",
            credits_in_usd_cents=0,
            price_in_usd_cents=0,
            price_id=None,
        ),
        PlanDetails(
            id="first",
            name="Hobby",
            credits_in_usd_cents=1000,
            price_in_usd_cents=1900,
            price_id=config.subscription_1_price_id,
        ),
        PlanDetails(
            id="second",
            name="Standard",
            credits_in_usd_cents=4000,
            price_in_usd_cents=4900,
            price_id=config.subscription_2_price_id,
        ),
        PlanDetails(
            id="third",
            name="Growth",
            credits_in_usd_cents=10000,
            price_in_usd_cents=9900,
            price_id=config.subscription_3_price_id,
        ),
    ]


def plan_ids(config: Optional[BillingConfig] = None) -> List[str]:
    """List every plan ID in catalog order."""
    return [plan.id for plan in get_plans(config)]


def get_plan_details(plan_id: Optional[str], config: Optional[BillingConfig] = None) -> PlanDetails:
    """
    Get a specific plan by ID.

    Args:
        plan_id: Plan identifier (e.g. 'first', 'second')
        config: Billing configuration

    Returns:
        PlanDetails

    Raises:
        InvalidPlanError: If plan not found
    """
    for plan in get_plans(config):
        if plan.id == plan_id:
            return plan

    raise InvalidPlanError(plan_id=plan_id, valid_plan_ids=plan_ids(config))


def find_plan_by_price_id(price_id: Optional[str], config: Optional[BillingConfig] = None) -> Optional[PlanDetails]:
    if not price_id:
        return None
    return next((p for p in get_plans(config) if p.price_id == price_id), None)


def find_plan_by_name(product_name: Optional[str], config: Optional[BillingConfig] = None) -> Optional[PlanDetails]:
    """Match a Stripe product name against catalog plan names (case-insensitive)."""
    if not product_name:
        return None
    lowered = product_name.lower()
    for plan in get_plans(config):
        if plan.is_paid and plan.name.lower() in lowered:
            return plan
    return None


def find_plan_by_price_amount(unit_amount: Optional[int], config: Optional[BillingConfig] = None) -> Optional[PlanDetails]:
    if not unit_amount:
        return None
    return next(
        (p for p in get_plans(config) if p.is_paid and p.price_in_usd_cents == unit_amount),
        None
    )


def parse_credits(value: Any) -> Optional[int]:
    """Parse a metadata credit amount; None unless it is a positive integer."""
    try:
        credits = int(value)
    except (TypeError, ValueError):
        return None
    return credits if credits > 0 else None


def monthly_allocation_for(
    product_metadata: Optional[Dict[str, Any]] = None,
    subscription_metadata: Optional[Dict[str, Any]] = None,
    product_name: Optional[str] = None,
    unit_amount: Optional[int] = None,
    config: Optional[BillingConfig] = None
) -> int:
    """
    Resolve the monthly credit allotment of a subscription.

    Lookup order:
    1. ``monthly_credits`` on the Stripe product metadata
    2. ``planType`` on the subscription metadata
    3. Catalog plan whose name occurs in the product name
    4. Catalog plan with the same unit price

    Returns:
        Credits in USD cents (0 if nothing matches)
    """
    credits = parse_credits((product_metadata or {}).get("monthly_credits"))
    if credits:
        return credits

    plan_type = (subscription_metadata or {}).get("planType")
    if plan_type:
        try:
            plan = get_plan_details(plan_type, config)
        except InvalidPlanError:
            logger.warning(f"⚠ Unknown planType '{plan_type}' in subscription metadata")
        else:
            if plan.credits_in_usd_cents > 0:
                return plan.credits_in_usd_cents

    plan = find_plan_by_name(product_name, config) or find_plan_by_price_amount(unit_amount, config)
    if plan:
        return plan.credits_in_usd_cents

    logger.warning(
        f"⚠ No monthly credit allocation found for product '{product_name}', falling back to 0"
    )
    return 0
