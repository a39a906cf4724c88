"""
Billing domain models.

Plain dataclasses shared by the adapters, the lifecycle manager and the
account store. Money is ``Decimal`` in major units; billing dates are epoch
milliseconds.
"""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple, Union


class BillingCycle(str, Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"


class AccountStatus(str, Enum):
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


class TransactionType(str, Enum):
    PAYMENT = "payment"
    REFUND = "refund"


class TransactionStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    PENDING = "pending"


class SubscriptionStatus(str, Enum):
    """Canonical subscription status returned by every adapter."""
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"
    PENDING = "pending"


class WebhookAction(str, Enum):
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    SUBSCRIPTION_CREATED = "subscription_created"
    SUBSCRIPTION_ACTIVATED = "subscription_activated"
    SUBSCRIPTION_CANCELED = "subscription_canceled"
    SUBSCRIPTION_SUSPENDED = "subscription_suspended"
    SUBSCRIPTION_PAYMENT_FAILED = "subscription_payment_failed"
    DISPUTE_CREATED = "dispute_created"


@dataclass(frozen=True)
class SubscriptionPlan:
    """Static catalog entry. Replaced wholesale on catalog update."""
    plan_id: str
    name: str
    tier: str  # individual | dealer
    is_premium: bool
    features: Tuple[str, ...]
    monthly_price: Decimal
    yearly_price: Decimal
    currency: str = "USD"
    # processor -> cycle -> price/plan reference
    processor_refs: Mapping[str, Mapping[str, str]] = field(default_factory=dict)
    trial_days: Optional[int] = None
    active: bool = True

    def price_for(self, billing_cycle: Union[BillingCycle, str]) -> Decimal:
        cycle = BillingCycle(billing_cycle)
        return self.yearly_price if cycle is BillingCycle.YEARLY else self.monthly_price

    def processor_ref(self, processor: str, billing_cycle: Union[BillingCycle, str]) -> Optional[str]:
        return self.processor_refs.get(processor, {}).get(BillingCycle(billing_cycle).value)


@dataclass
class BillingAccount:
    billing_id: str
    user_id: str
    plan_id: str = "basic"
    billing_cycle: BillingCycle = BillingCycle.MONTHLY
    processor: Optional[str] = None
    customer_id: Optional[str] = None
    payment_method_id: Optional[str] = None
    subscription_id: Optional[str] = None
    subscription_item_ref: Optional[str] = None
    status: AccountStatus = AccountStatus.ACTIVE
    amount: Decimal = Decimal("0")
    currency: str = "USD"
    next_billing_date: Optional[int] = None
    trial_ends_at: Optional[int] = None
    canceled_at: Optional[int] = None
    # Durable deadline; evaluated by every renewal pass
    grace_ends_at: Optional[int] = None
    # Set by a non-immediate cancel; renewal cancels instead of charging
    cancel_at_period_end: bool = False
    # Net downgrade credit recorded on plan change; refunds are explicit
    pending_downgrade_credit: Optional[Decimal] = None
    # Charge retries while past due; next_retry_at is None once they are exhausted
    retry_attempts: int = 0
    next_retry_at: Optional[int] = None
    # Plan reference the processor still has to be switched to
    pending_plan_ref: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[int] = None
    updated_at: Optional[int] = None

    def with_changes(self, **fields: Any) -> "BillingAccount":
        return replace(self, **fields)


@dataclass(frozen=True)
class Transaction:
    """Append-only ledger entry. Corrections are new rows."""
    id: str
    type: TransactionType
    amount: Decimal
    currency: str
    status: TransactionStatus
    user_id: str
    processor_transaction_id: Optional[str] = None
    billing_account_id: Optional[str] = None
    fees: Decimal = Decimal("0")
    net_amount: Decimal = Decimal("0")
    description: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[int] = None
    completed_at: Optional[int] = None


@dataclass(frozen=True)
class ProrationResult:
    current_plan_amount: Decimal
    new_plan_amount: Decimal
    refund_equivalent: Decimal
    charge_equivalent: Decimal
    amount_due: Decimal
    days_remaining: int
    effective_date: Optional[int] = None

    @property
    def downgrade_credit(self) -> Decimal:
        """Credit owed to the customer when the new plan is cheaper."""
        if self.refund_equivalent > self.charge_equivalent:
            return self.refund_equivalent - self.charge_equivalent
        return Decimal("0")


@dataclass(frozen=True)
class DisputeCase:
    """A chargeback or inquiry opened against a recorded payment."""
    id: str
    processor: str
    processor_dispute_id: str
    transaction_id: Optional[str] = None
    processor_transaction_id: Optional[str] = None
    billing_account_id: Optional[str] = None
    user_id: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    reason: Optional[str] = None
    status: str = "open"
    priority: str = "low"  # low | medium | high
    respond_by: Optional[int] = None  # epoch ms
    created_at: Optional[int] = None


# Adapter result shapes


@dataclass(frozen=True)
class CustomerProfile:
    user_id: str
    email: Optional[str] = None
    name: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class PaymentMethodData:
    type: str  # card | bank_account | paypal
    card: Optional[Dict[str, Any]] = None
    billing_details: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class SubscriptionResult:
    subscription_id: str
    status: str
    # Processor id of the subscription line item, when the processor has one
    item_ref: Optional[str] = None


@dataclass(frozen=True)
class PaymentResult:
    transaction_id: str
    status: str
    redirect_url: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.redirect_url is None and self.status in ("succeeded", "completed")


@dataclass(frozen=True)
class RefundResult:
    refund_id: str
    status: str


@dataclass(frozen=True)
class SubscriptionDelta:
    """Only set fields are sent to the provider."""
    plan_ref: Optional[str] = None
    # Line item the plan_ref replaces; lets the adapter skip a lookup
    item_ref: Optional[str] = None
    quantity: Optional[int] = None
    cancel_at_period_end: Optional[bool] = None
    metadata: Optional[Dict[str, str]] = None

    def is_empty(self) -> bool:
        return all(v is None for v in (self.plan_ref, self.quantity, self.cancel_at_period_end, self.metadata))


@dataclass(frozen=True)
class PaymentIntentData:
    id: str
    amount: Decimal
    currency: str
    status: str
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SubscriptionData:
    id: str
    status: SubscriptionStatus
    current_period_start: Optional[int]  # epoch seconds
    current_period_end: Optional[int]  # epoch seconds
    cancel_at_period_end: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)


# Provider events: a tagged union keyed by provider name


@dataclass(frozen=True)
class StripeEvent:
    id: str
    type: str
    resource: Mapping[str, Any]
    provider: str = "stripe"


@dataclass(frozen=True)
class PayPalEvent:
    id: str
    type: str
    resource: Mapping[str, Any]
    resource_type: Optional[str] = None
    provider: str = "paypal"


ProviderEvent = Union[StripeEvent, PayPalEvent]


@dataclass(frozen=True)
class CanonicalWebhookAction:
    action: WebhookAction
    data: Dict[str, Any]
    event_id: str
    event_type: str
    processor: str


@dataclass
class WebhookResult:
    handled: bool
    action: Optional[str] = None
    data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    duplicate: bool = False

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"handled": self.handled}
        if self.action is not None:
            out["action"] = self.action
        if self.data is not None:
            out["data"] = self.data
        if self.error is not None:
            out["error"] = self.error
        if self.duplicate:
            out["duplicate"] = True
        return out
