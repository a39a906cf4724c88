"""
Plan catalog and entitlement snapshots.

The catalog is built once from settings and treated as immutable; a catalog
update replaces the whole mapping. Entitlement snapshots are the
denormalized membership fields written onto the user record.
"""
from dataclasses import asdict, dataclass
from decimal import Decimal
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional

from billing_engine.models.billing import BillingCycle, SubscriptionPlan

BASELINE_PLAN_ID = "basic"

CARD_FEE_RATE = Decimal("0.029")
CARD_FEE_FIXED = Decimal("0.30")
CENTS = Decimal("0.01")


@dataclass(frozen=True)
class PlanLimits:
    max_listings: int = 5  # -1 is unlimited
    max_images: int = 10
    priority_placement: bool = False
    featured_listings: int = 0
    analytics_access: bool = False
    bulk_operations: bool = False
    advanced_search: bool = False
    premium_support: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


PLAN_LIMITS: Mapping[str, PlanLimits] = MappingProxyType({
    BASELINE_PLAN_ID: PlanLimits(),
    "premium_individual": PlanLimits(
        max_listings=-1,
        max_images=50,
        priority_placement=True,
        featured_listings=3,
        analytics_access=True,
        advanced_search=True,
        premium_support=True,
    ),
    "premium_dealer": PlanLimits(
        max_listings=-1,
        max_images=100,
        priority_placement=True,
        featured_listings=10,
        analytics_access=True,
        bulk_operations=True,
        advanced_search=True,
        premium_support=True,
    ),
})

PREMIUM_FEATURES = (
    "unlimited_listings",
    "priority_placement",
    "advanced_analytics",
    "premium_support",
    "featured_listings",
    "enhanced_photos",
)

DEALER_FEATURES = PREMIUM_FEATURES + (
    "bulk_operations",
    "dealer_badge",
    "inventory_management",
    "lead_management",
    "custom_branding",
)


def build_plan_catalog(cfg) -> Mapping[str, SubscriptionPlan]:
    """Build the read-only plan catalog, resolving processor references from settings."""
    plans = [
        SubscriptionPlan(
            plan_id=BASELINE_PLAN_ID,
            name="Basic",
            tier="individual",
            is_premium=False,
            features=("basic_listing_creation", "standard_search", "basic_support"),
            monthly_price=Decimal("0"),
            yearly_price=Decimal("0"),
        ),
        SubscriptionPlan(
            plan_id="premium_individual",
            name="Premium Individual",
            tier="individual",
            is_premium=True,
            features=PREMIUM_FEATURES,
            monthly_price=Decimal("29.99"),
            yearly_price=Decimal("299.99"),
            processor_refs={
                "stripe": {
                    "monthly": cfg.STRIPE_PREMIUM_INDIVIDUAL_MONTHLY_PRICE_ID,
                    "yearly": cfg.STRIPE_PREMIUM_INDIVIDUAL_YEARLY_PRICE_ID,
                },
                "paypal": {
                    "monthly": cfg.PAYPAL_PREMIUM_INDIVIDUAL_MONTHLY_PLAN_ID,
                    "yearly": cfg.PAYPAL_PREMIUM_INDIVIDUAL_YEARLY_PLAN_ID,
                },
            },
            trial_days=14,
        ),
        SubscriptionPlan(
            plan_id="premium_dealer",
            name="Premium Dealer",
            tier="dealer",
            is_premium=True,
            features=DEALER_FEATURES,
            monthly_price=Decimal("99.99"),
            yearly_price=Decimal("999.99"),
            processor_refs={
                "stripe": {
                    "monthly": cfg.STRIPE_PREMIUM_DEALER_MONTHLY_PRICE_ID,
                    "yearly": cfg.STRIPE_PREMIUM_DEALER_YEARLY_PRICE_ID,
                },
                "paypal": {
                    "monthly": cfg.PAYPAL_PREMIUM_DEALER_MONTHLY_PLAN_ID,
                    "yearly": cfg.PAYPAL_PREMIUM_DEALER_YEARLY_PLAN_ID,
                },
            },
            trial_days=14,
        ),
    ]
    return MappingProxyType({plan.plan_id: plan for plan in plans})


def get_plan_limits(plan_id: str) -> PlanLimits:
    return PLAN_LIMITS.get(plan_id, PLAN_LIMITS[BASELINE_PLAN_ID])


def card_fees(amount: Decimal) -> Decimal:
    """Processing fee for a charge, quantized to cents."""
    if amount <= 0:
        return Decimal("0.00")
    return (amount * CARD_FEE_RATE + CARD_FEE_FIXED).quantize(CENTS)


def premium_snapshot(
    plan: SubscriptionPlan,
    billing_cycle: BillingCycle,
    expires_at: Optional[int],
    auto_renew: bool = True,
) -> Dict[str, Any]:
    """User fields granting a premium plan until ``expires_at``."""
    return {
        "user_type": "premium_dealer" if plan.tier == "dealer" else "premium_individual",
        "premium_active": True,
        "premium_plan": plan.plan_id,
        "premium_expires_at": expires_at,
        "membership": {
            "plan": plan.plan_id,
            "features": list(plan.features),
            "limits": get_plan_limits(plan.plan_id).to_dict(),
            "expires_at": expires_at,
            "auto_renew": auto_renew,
            "billing_cycle": BillingCycle(billing_cycle).value,
        },
    }


def baseline_snapshot(baseline: SubscriptionPlan) -> Dict[str, Any]:
    """User fields after a downgrade to the free tier: all premium flags cleared."""
    return {
        "user_type": "individual",
        "premium_active": False,
        "premium_plan": None,
        "premium_expires_at": None,
        "membership": {
            "plan": baseline.plan_id,
            "features": list(baseline.features),
            "limits": get_plan_limits(baseline.plan_id).to_dict(),
            "expires_at": None,
            "auto_renew": False,
            "billing_cycle": None,
        },
    }
