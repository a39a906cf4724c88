"""
Stripe card processor adapter.

Implements the PaymentProcessor protocol using the Stripe API.
Handles signature verification for webhooks and translates Stripe
exceptions into the processor error taxonomy. The secret key is passed on
every call; the module-level ``stripe.api_key`` is never touched.
"""
import asyncio
import json
import logging
from decimal import Decimal
from functools import partial
from typing import Any, Callable, Dict, Mapping, Optional

import stripe

from billing_engine.features.billing.provider import (
    ProcessorAuthError,
    ProcessorError,
    ProcessorTransientError,
    ProcessorValidationError,
    SignatureHeader,
    WebhookSignatureError,
    from_minor_units,
    normalize_status,
    split_idempotency_key,
    to_minor_units,
)
from billing_engine.models.billing import (
    CustomerProfile,
    PaymentIntentData,
    PaymentMethodData,
    PaymentResult,
    RefundResult,
    StripeEvent,
    SubscriptionData,
    SubscriptionDelta,
    SubscriptionResult,
    SubscriptionStatus,
)

logger = logging.getLogger(__name__)

STRIPE_STATUS_MAP = {
    "trialing": SubscriptionStatus.TRIALING,
    "active": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELED,
    "incomplete_expired": SubscriptionStatus.CANCELED,
    "incomplete": SubscriptionStatus.INCOMPLETE,
    "paused": SubscriptionStatus.PENDING,
}

REFUND_REASONS = {"duplicate", "fraudulent", "requested_by_customer"}

WEBHOOK_TOLERANCE_SECONDS = 300


def _translate(exc: Exception, operation: str) -> ProcessorError:
    """Map a Stripe SDK exception onto the processor error taxonomy."""
    message = f"Stripe {operation} failed: {getattr(exc, 'user_message', None) or exc}"
    if isinstance(exc, (stripe.AuthenticationError, stripe.PermissionError)):
        return ProcessorAuthError(message)
    if isinstance(exc, (stripe.RateLimitError, stripe.APIConnectionError, stripe.APIError)):
        return ProcessorTransientError(message)
    if isinstance(exc, (stripe.InvalidRequestError, stripe.IdempotencyError)):
        return ProcessorValidationError(message)
    status = getattr(exc, "http_status", None)
    if status is not None and status >= 500:
        return ProcessorTransientError(message)
    return ProcessorValidationError(message)


def _get(obj: Any, key: str, default: Any = None) -> Any:
    """Read a field from a StripeObject or plain dict without raising."""
    if obj is None:
        return default
    try:
        value = obj.get(key, default)
    except AttributeError:
        value = getattr(obj, key, default)
    return default if value is None else value


class StripeProvider:
    """Card processor: Stripe implementation of PaymentProcessor."""

    name = "stripe"

    def __init__(self, secret_key: str, webhook_secret: Optional[str], return_url: Optional[str] = None):
        """
        Initialize Stripe provider.

        Args:
            secret_key: Stripe secret key
            webhook_secret: Stripe webhook signing secret
            return_url: URL Stripe redirects to after 3DS/redirect flows
        """
        if not secret_key:
            raise ProcessorAuthError("Stripe secret key is required")
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.return_url = return_url

    @classmethod
    def from_settings(cls, cfg) -> "StripeProvider":
        return cls(
            secret_key=cfg.STRIPE_SECRET_KEY,
            webhook_secret=cfg.STRIPE_WEBHOOK_SECRET,
            return_url=cfg.STRIPE_RETURN_URL,
        )

    async def _call(self, operation: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Run one blocking SDK call off the event loop and translate errors."""
        kwargs["api_key"] = self.secret_key
        try:
            return await asyncio.to_thread(partial(fn, *args, **kwargs))
        except stripe.StripeError as e:
            raise _translate(e, operation) from e

    async def create_customer(self, profile: CustomerProfile) -> str:
        """Create Stripe customer for user; the idempotency key makes retries reuse it."""
        if not profile.user_id:
            raise ProcessorValidationError("Customer profile requires a user_id")

        customer_data: Dict[str, Any] = {
            "metadata": {"source": "harborlist", "user_id": profile.user_id, **profile.metadata},
        }
        if profile.email:
            customer_data["email"] = profile.email
        if profile.name:
            customer_data["name"] = profile.name

        customer = await self._call(
            "customer creation",
            stripe.Customer.create,
            idempotency_key=f"customer-{profile.user_id}",
            **customer_data,
        )
        return customer.id

    async def create_payment_method(self, customer_id: str, payment_data: PaymentMethodData) -> str:
        if payment_data.type == "paypal":
            raise ProcessorValidationError("PayPal payment methods should use the PayPal processor")
        if payment_data.type != "card":
            raise ProcessorValidationError(f"Unsupported payment method type: {payment_data.type}")
        if not payment_data.card:
            raise ProcessorValidationError("Card details are required")

        existing = payment_data.card.get("payment_method")
        if existing:
            # Created client-side by Stripe.js; only the attach is left
            await self._call("payment method attach", stripe.PaymentMethod.attach, existing, customer=customer_id)
            return existing

        params: Dict[str, Any] = {"type": "card", "card": payment_data.card}
        if payment_data.billing_details:
            params["billing_details"] = payment_data.billing_details
        payment_method = await self._call("payment method creation", stripe.PaymentMethod.create, **params)
        await self._call("payment method attach", stripe.PaymentMethod.attach, payment_method.id, customer=customer_id)
        return payment_method.id

    async def create_subscription(
        self,
        customer_id: str,
        plan_ref: str,
        payment_method_id: Optional[str],
        metadata: Optional[Dict[str, str]] = None,
    ) -> SubscriptionResult:
        idempotency_key, meta = split_idempotency_key(metadata)
        params: Dict[str, Any] = {
            "customer": customer_id,
            "items": [{"price": plan_ref}],
            "metadata": {"source": "harborlist", **meta},
        }
        if payment_method_id:
            params["default_payment_method"] = payment_method_id
        if idempotency_key:
            params["idempotency_key"] = idempotency_key

        subscription = await self._call("subscription creation", stripe.Subscription.create, **params)
        items = _get(_get(subscription, "items"), "data", [])
        return SubscriptionResult(
            subscription_id=subscription.id,
            status=str(_get(subscription, "status", "")).lower(),
            item_ref=_get(items[0], "id") if items else None,
        )

    async def process_payment(
        self,
        amount: Decimal,
        currency: str,
        payment_method_id: Optional[str],
        metadata: Optional[Dict[str, str]] = None,
    ) -> PaymentResult:
        if amount <= 0:
            raise ProcessorValidationError("Payment amount must be positive")
        if not payment_method_id:
            raise ProcessorValidationError("A payment method is required for card payments")

        idempotency_key, meta = split_idempotency_key(metadata)
        params: Dict[str, Any] = {
            "amount": to_minor_units(amount),
            "currency": currency.lower(),
            "payment_method": payment_method_id,
            "confirm": True,
            "metadata": {"source": "harborlist", **meta},
        }
        if self.return_url:
            params["return_url"] = self.return_url
        if idempotency_key:
            params["idempotency_key"] = idempotency_key

        try:
            intent = await asyncio.to_thread(
                partial(stripe.PaymentIntent.create, api_key=self.secret_key, **params)
            )
        except stripe.CardError as e:
            # A decline is a business outcome, not an adapter fault
            declined = _get(getattr(e, "error", None), "payment_intent")
            logger.info("[billing] stripe card declined", extra={"decline_code": getattr(e, "code", None)})
            return PaymentResult(transaction_id=_get(declined, "id", ""), status="failed")
        except stripe.StripeError as e:
            raise _translate(e, "payment") from e

        status = str(_get(intent, "status", "")).lower()
        redirect_url = None
        if status == "requires_action":
            next_action = _get(intent, "next_action")
            redirect_url = _get(_get(next_action, "redirect_to_url"), "url")
        return PaymentResult(transaction_id=intent.id, status=status, redirect_url=redirect_url)

    async def cancel_subscription(self, subscription_id: str) -> None:
        await self._call("subscription cancel", stripe.Subscription.cancel, subscription_id)

    async def update_subscription(self, subscription_id: str, delta: SubscriptionDelta) -> None:
        if delta.is_empty():
            return

        params: Dict[str, Any] = {}
        if delta.plan_ref:
            # Swapping a price needs the existing item id; look it up only when the caller lacks it
            item_ref = delta.item_ref or await self._first_item_id(subscription_id)
            item: Dict[str, Any] = {"price": delta.plan_ref}
            if item_ref:
                item["id"] = item_ref
            if delta.quantity is not None:
                item["quantity"] = delta.quantity
            params["items"] = [item]
            # Proration is computed and charged locally
            params["proration_behavior"] = "none"
        elif delta.quantity is not None:
            item_ref = delta.item_ref or await self._first_item_id(subscription_id)
            if not item_ref:
                raise ProcessorValidationError("Subscription has no items to update")
            params["items"] = [{"id": item_ref, "quantity": delta.quantity}]
            params["proration_behavior"] = "none"
        if delta.cancel_at_period_end is not None:
            params["cancel_at_period_end"] = delta.cancel_at_period_end
        if delta.metadata is not None:
            params["metadata"] = delta.metadata

        await self._call("subscription update", stripe.Subscription.modify, subscription_id, **params)

    async def _first_item_id(self, subscription_id: str) -> Optional[str]:
        subscription = await self._call("subscription retrieve", stripe.Subscription.retrieve, subscription_id)
        items = _get(_get(subscription, "items"), "data", [])
        return _get(items[0], "id") if items else None

    async def process_refund(
        self,
        transaction_id: str,
        amount: Optional[Decimal] = None,
        reason: Optional[str] = None,
    ) -> RefundResult:
        params: Dict[str, Any] = {
            "payment_intent": transaction_id,
            "reason": reason if reason in REFUND_REASONS else "requested_by_customer",
        }
        if reason and reason not in REFUND_REASONS:
            params["metadata"] = {"note": reason}
        if amount is not None:
            params["amount"] = to_minor_units(amount)

        refund = await self._call("refund", stripe.Refund.create, **params)
        return RefundResult(refund_id=refund.id, status=str(_get(refund, "status", "pending")).lower())

    async def retrieve_payment_intent(self, payment_intent_id: str) -> PaymentIntentData:
        intent = await self._call("payment intent retrieve", stripe.PaymentIntent.retrieve, payment_intent_id)
        return PaymentIntentData(
            id=intent.id,
            amount=from_minor_units(int(_get(intent, "amount", 0))),
            currency=str(_get(intent, "currency", "")).upper(),
            status=str(_get(intent, "status", "")).lower(),
            metadata=dict(_get(intent, "metadata", {}) or {}),
        )

    async def retrieve_subscription(self, subscription_id: str) -> SubscriptionData:
        subscription = await self._call("subscription retrieve", stripe.Subscription.retrieve, subscription_id)

        # Newer API versions report the period on the subscription item
        period_start = _get(subscription, "current_period_start")
        period_end = _get(subscription, "current_period_end")
        if period_start is None or period_end is None:
            items = _get(_get(subscription, "items"), "data", [])
            if items:
                period_start = period_start or _get(items[0], "current_period_start")
                period_end = period_end or _get(items[0], "current_period_end")

        return SubscriptionData(
            id=subscription.id,
            status=normalize_status(_get(subscription, "status"), STRIPE_STATUS_MAP),
            current_period_start=int(period_start) if period_start is not None else None,
            current_period_end=int(period_end) if period_end is not None else None,
            cancel_at_period_end=bool(_get(subscription, "cancel_at_period_end", False)),
            metadata=dict(_get(subscription, "metadata", {}) or {}),
        )

    async def verify_and_parse_webhook(self, raw_payload: bytes, signature_header: SignatureHeader) -> StripeEvent:
        """Verify Stripe webhook signature and parse event."""
        if not self.webhook_secret:
            raise WebhookSignatureError("Stripe webhook secret not configured")
        if isinstance(signature_header, Mapping):
            signature_header = {k.lower(): v for k, v in signature_header.items()}.get("stripe-signature")
        if not signature_header:
            raise WebhookSignatureError("Missing stripe-signature header")

        try:
            payload = raw_payload.decode("utf-8") if isinstance(raw_payload, (bytes, bytearray)) else raw_payload
            stripe.WebhookSignature.verify_header(
                payload, signature_header, self.webhook_secret, WEBHOOK_TOLERANCE_SECONDS
            )
            event = json.loads(payload)
        except stripe.SignatureVerificationError as e:
            raise WebhookSignatureError(f"Invalid signature: {e}") from e
        except (ValueError, UnicodeDecodeError) as e:
            raise WebhookSignatureError(f"Invalid payload: {e}") from e

        if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
            raise WebhookSignatureError("Invalid payload: missing event id or type")

        data = event.get("data") if isinstance(event.get("data"), dict) else {}
        resource = data.get("object") if isinstance(data.get("object"), dict) else {}
        return StripeEvent(id=str(event["id"]), type=str(event["type"]), resource=resource)

    async def check_health(self) -> bool:
        try:
            await self._call("balance retrieve", stripe.Balance.retrieve)
        except ProcessorError as e:
            logger.warning("[billing] stripe health check failed", extra={"error": str(e)})
            return False
        return True

    async def aclose(self) -> None:
        return None
