"""
Payment processor protocol.

Defines the processor-agnostic contract both adapters (Stripe for cards,
PayPal for wallet payments) implement, plus the adapter error taxonomy.
This allows swapping processors without changing lifecycle logic.

Adapters perform one logical provider operation per method and never retry;
retry policy belongs to the caller (see billing_engine.core.retry).
"""
from decimal import Decimal
from typing import Protocol, Dict, Mapping, Optional, Union

from billing_engine.core.errors import AppError
from billing_engine.models.billing import (
    CustomerProfile,
    PaymentIntentData,
    PaymentMethodData,
    PaymentResult,
    ProviderEvent,
    RefundResult,
    SubscriptionData,
    SubscriptionDelta,
    SubscriptionResult,
    SubscriptionStatus,
)


class ProcessorError(AppError):
    """Base exception for payment processor errors."""
    code = "processor_error"
    status_code = 502


class ProcessorAuthError(ProcessorError):
    """Bad credentials. Fatal, never retried."""
    code = "processor_auth_error"
    status_code = 401


class ProcessorValidationError(ProcessorError):
    """Malformed request. Not retried, surfaced to the caller."""
    code = "processor_validation_error"
    status_code = 400


class ProcessorTransientError(ProcessorError):
    """Network failure, timeout or 5xx. Retried by the caller with backoff."""
    code = "processor_transient_error"
    status_code = 503


class WebhookSignatureError(ProcessorError):
    """Webhook authenticity could not be established. Never processed."""
    code = "webhook_signature_error"
    status_code = 400


IDEMPOTENCY_METADATA_KEY = "idempotency_key"

# Stripe sends one header string; PayPal sends a set of transmission headers
SignatureHeader = Union[str, Mapping[str, str], None]


def split_idempotency_key(metadata: Optional[Dict[str, str]]) -> tuple:
    """Separate the caller's idempotency key from provider-visible metadata."""
    meta = dict(metadata or {})
    key = meta.pop(IDEMPOTENCY_METADATA_KEY, None)
    return key, {k: str(v) for k, v in meta.items() if v is not None}


def to_minor_units(amount: Decimal) -> int:
    """Convert a major-unit amount (e.g. dollars) to integer minor units (cents)."""
    return int((Decimal(amount) * 100).quantize(Decimal("1")))


def from_minor_units(value: int) -> Decimal:
    return (Decimal(value) / Decimal(100)).quantize(Decimal("0.01"))


def format_major_units(amount: Decimal) -> str:
    return str(Decimal(amount).quantize(Decimal("0.01")))


def normalize_status(raw: Optional[str], mapping: Dict[str, SubscriptionStatus]) -> SubscriptionStatus:
    """Map a raw provider status onto the canonical enum.

    Unknown statuses fall back to PENDING so callers never see a raw
    provider string.
    """
    if not raw:
        return SubscriptionStatus.PENDING
    return mapping.get(raw.lower(), SubscriptionStatus.PENDING)


class PaymentProcessor(Protocol):
    """
    Protocol for payment processor adapters.

    Implementations must handle:
    - Customer and payment method creation
    - Subscription create/update/cancel
    - One-time payments and refunds
    - Read-through payment intent / subscription queries
    - Webhook signature verification and parsing
    """

    name: str

    async def create_customer(self, profile: CustomerProfile) -> str:
        """
        Create (or reuse) a processor customer for the profile.

        Returns:
            Processor customer ID

        Raises:
            ProcessorAuthError: Bad credentials
            ProcessorValidationError: Malformed profile
        """
        ...

    async def create_payment_method(self, customer_id: str, payment_data: PaymentMethodData) -> str:
        """Create a payment method and attach it to the customer."""
        ...

    async def create_subscription(
        self,
        customer_id: str,
        plan_ref: str,
        payment_method_id: Optional[str],
        metadata: Optional[Dict[str, str]] = None,
    ) -> SubscriptionResult:
        """
        Create a subscription.

        The returned status is the provider's raw status, lower-cased.
        """
        ...

    async def process_payment(
        self,
        amount: Decimal,
        currency: str,
        payment_method_id: Optional[str],
        metadata: Optional[Dict[str, str]] = None,
    ) -> PaymentResult:
        """
        Charge a one-time amount given in major units.

        ``redirect_url`` is set only when the customer must approve the
        payment out of band; otherwise the payment is already final.
        """
        ...

    async def cancel_subscription(self, subscription_id: str) -> None:
        ...

    async def update_subscription(self, subscription_id: str, delta: SubscriptionDelta) -> None:
        """Send only the fields set on ``delta``."""
        ...

    async def process_refund(
        self,
        transaction_id: str,
        amount: Optional[Decimal] = None,
        reason: Optional[str] = None,
    ) -> RefundResult:
        """Full refund when ``amount`` is omitted."""
        ...

    async def retrieve_payment_intent(self, payment_intent_id: str) -> PaymentIntentData:
        ...

    async def retrieve_subscription(self, subscription_id: str) -> SubscriptionData:
        ...

    async def verify_and_parse_webhook(self, raw_payload: bytes, signature_header: SignatureHeader) -> ProviderEvent:
        """
        Verify webhook authenticity and parse the event.

        Raises:
            WebhookSignatureError: If verification fails or the payload is
                structurally invalid
        """
        ...

    async def check_health(self) -> bool:
        """Cheap authenticated read used by startup/health checks."""
        ...

    async def aclose(self) -> None:
        ...
