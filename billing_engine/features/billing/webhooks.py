"""
Webhook normalization.

Maps verified provider events onto canonical billing actions through explicit
per-provider lookup tables. Field extraction is defensive: a missing field
becomes ``None`` in the action data, it never raises.
"""
import logging
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from billing_engine.core.clock import MS_PER_SECOND, from_datetime
from billing_engine.features.billing.provider import from_minor_units
from billing_engine.models.billing import CanonicalWebhookAction, ProviderEvent, WebhookAction

logger = logging.getLogger(__name__)

Extractor = Callable[[Mapping[str, Any]], Dict[str, Any]]


def _dig(resource: Any, *path: str) -> Any:
    """Walk nested mappings, returning None at the first missing step."""
    current = resource
    for key in path:
        if not isinstance(current, Mapping):
            return None
        current = current.get(key)
    return current


def _minor(value: Any) -> Optional[Decimal]:
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return from_minor_units(value)


def _major(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None


def _upper(value: Any) -> Optional[str]:
    return value.upper() if isinstance(value, str) else None


def _epoch_ms(value: Any) -> Optional[int]:
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value * MS_PER_SECOND


def _iso_ms(value: Any) -> Optional[int]:
    if not isinstance(value, str):
        return None
    try:
        return from_datetime(datetime.fromisoformat(value.replace("Z", "+00:00")))
    except ValueError:
        return None


# Stripe extractors


def _stripe_payment_intent(resource: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        "payment_id": resource.get("id"),
        "customer_id": resource.get("customer"),
        "amount": _minor(resource.get("amount")),
        "currency": _upper(resource.get("currency")),
        "status": resource.get("status"),
        "failure_reason": _dig(resource, "last_payment_error", "message"),
        "billing_id": _dig(resource, "metadata", "billing_id"),
    }


def _stripe_invoice(resource: Mapping[str, Any]) -> Dict[str, Any]:
    paid = resource.get("amount_paid")
    return {
        "invoice_id": resource.get("id"),
        "payment_id": resource.get("payment_intent"),
        "subscription_id": resource.get("subscription"),
        "customer_id": resource.get("customer"),
        "amount": _minor(paid if paid else resource.get("amount_due")),
        "currency": _upper(resource.get("currency")),
        "attempt_count": resource.get("attempt_count"),
    }


def _stripe_subscription(resource: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        "subscription_id": resource.get("id"),
        "customer_id": resource.get("customer"),
        "status": resource.get("status"),
        "plan_ref": _first_price(resource),
        "cancel_at_period_end": resource.get("cancel_at_period_end"),
        "current_period_end": resource.get("current_period_end"),
    }


def _stripe_dispute(resource: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        "dispute_id": resource.get("id"),
        "payment_id": resource.get("payment_intent") or resource.get("charge"),
        "charge_id": resource.get("charge"),
        "amount": _minor(resource.get("amount")),
        "currency": _upper(resource.get("currency")),
        "reason": resource.get("reason"),
        "status": resource.get("status"),
        "respond_by": _epoch_ms(_dig(resource, "evidence_details", "due_by")),
    }


def _first_price(resource: Mapping[str, Any]) -> Optional[str]:
    items = _dig(resource, "items", "data")
    if isinstance(items, list) and items:
        return _dig(items[0], "price", "id")
    return None


# PayPal extractors


def _paypal_capture(resource: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        "payment_id": _dig(resource, "supplementary_data", "related_ids", "order_id") or resource.get("id"),
        "capture_id": resource.get("id"),
        "amount": _major(_dig(resource, "amount", "value")),
        "currency": _upper(_dig(resource, "amount", "currency_code")),
        "status": resource.get("status"),
        "custom_id": resource.get("custom_id"),
        "invoice_id": resource.get("invoice_id"),
        "reason_code": _dig(resource, "status_details", "reason") or resource.get("reason_code"),
    }


def _paypal_subscription(resource: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        "subscription_id": resource.get("id"),
        "status": resource.get("status"),
        "plan_ref": resource.get("plan_id"),
        "custom_id": resource.get("custom_id"),
        "subscriber_email": _dig(resource, "subscriber", "email_address"),
        "start_time": resource.get("start_time"),
        "status_update_time": resource.get("status_update_time"),
    }


def _paypal_subscription_payment_failed(resource: Mapping[str, Any]) -> Dict[str, Any]:
    data = _paypal_subscription(resource)
    data["failed_payment_count"] = _dig(resource, "billing_info", "failed_payments_count")
    data["next_billing_time"] = _dig(resource, "billing_info", "next_billing_time")
    return data


def _paypal_dispute(resource: Mapping[str, Any]) -> Dict[str, Any]:
    disputed = resource.get("disputed_transactions")
    first = disputed[0] if isinstance(disputed, list) and disputed else {}
    return {
        "dispute_id": resource.get("dispute_id"),
        "payment_id": _dig(first, "seller_transaction_id"),
        "custom_id": _dig(first, "custom"),
        "amount": _major(_dig(resource, "dispute_amount", "value")),
        "currency": _upper(_dig(resource, "dispute_amount", "currency_code")),
        "reason": resource.get("reason"),
        "status": resource.get("status"),
        "respond_by": _iso_ms(resource.get("seller_response_due_date")),
    }


STRIPE_EVENT_MAP: Dict[str, Tuple[WebhookAction, Extractor]] = {
    "payment_intent.succeeded": (WebhookAction.PAYMENT_SUCCEEDED, _stripe_payment_intent),
    "payment_intent.payment_failed": (WebhookAction.PAYMENT_FAILED, _stripe_payment_intent),
    "invoice.payment_succeeded": (WebhookAction.PAYMENT_SUCCEEDED, _stripe_invoice),
    "invoice.payment_failed": (WebhookAction.SUBSCRIPTION_PAYMENT_FAILED, _stripe_invoice),
    "customer.subscription.created": (WebhookAction.SUBSCRIPTION_CREATED, _stripe_subscription),
    "customer.subscription.updated": (WebhookAction.SUBSCRIPTION_ACTIVATED, _stripe_subscription),
    "customer.subscription.deleted": (WebhookAction.SUBSCRIPTION_CANCELED, _stripe_subscription),
    "charge.dispute.created": (WebhookAction.DISPUTE_CREATED, _stripe_dispute),
}

PAYPAL_EVENT_MAP: Dict[str, Tuple[WebhookAction, Extractor]] = {
    "PAYMENT.CAPTURE.COMPLETED": (WebhookAction.PAYMENT_SUCCEEDED, _paypal_capture),
    "PAYMENT.CAPTURE.DENIED": (WebhookAction.PAYMENT_FAILED, _paypal_capture),
    "BILLING.SUBSCRIPTION.CREATED": (WebhookAction.SUBSCRIPTION_CREATED, _paypal_subscription),
    "BILLING.SUBSCRIPTION.ACTIVATED": (WebhookAction.SUBSCRIPTION_ACTIVATED, _paypal_subscription),
    "BILLING.SUBSCRIPTION.CANCELLED": (WebhookAction.SUBSCRIPTION_CANCELED, _paypal_subscription),
    "BILLING.SUBSCRIPTION.SUSPENDED": (WebhookAction.SUBSCRIPTION_SUSPENDED, _paypal_subscription),
    "BILLING.SUBSCRIPTION.PAYMENT.FAILED": (
        WebhookAction.SUBSCRIPTION_PAYMENT_FAILED,
        _paypal_subscription_payment_failed,
    ),
    "CUSTOMER.DISPUTE.CREATED": (WebhookAction.DISPUTE_CREATED, _paypal_dispute),
}

EVENT_MAPS = {"stripe": STRIPE_EVENT_MAP, "paypal": PAYPAL_EVENT_MAP}


def normalize_event(event: ProviderEvent) -> Optional[CanonicalWebhookAction]:
    """
    Translate a verified provider event into a canonical action.

    Returns None for event types with no canonical meaning.
    """
    table = EVENT_MAPS.get(event.provider, {})
    entry = table.get(event.type)
    if entry is None:
        logger.info(
            "[billing] unhandled webhook event type",
            extra={"processor": event.provider, "event_type": event.type},
        )
        return None

    action, extract = entry
    resource = event.resource if isinstance(event.resource, Mapping) else {}
    return CanonicalWebhookAction(
        action=action,
        data=extract(resource),
        event_id=event.id,
        event_type=event.type,
        processor=event.provider,
    )
