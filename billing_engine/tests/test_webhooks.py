"""
Test webhook normalization for both processors.
"""
from decimal import Decimal

import pytest

from billing_engine.features.billing.webhooks import PAYPAL_EVENT_MAP, STRIPE_EVENT_MAP, normalize_event
from billing_engine.models.billing import PayPalEvent, StripeEvent, WebhookAction


def test_stripe_payment_intent_succeeded():
    event = StripeEvent(
        id="evt_1",
        type="payment_intent.succeeded",
        resource={
            "id": "pi_123",
            "customer": "cus_123",
            "amount": 2999,
            "currency": "usd",
            "status": "succeeded",
            "metadata": {"billing_id": "bill_1"},
        },
    )

    action = normalize_event(event)

    assert action is not None
    assert action.action is WebhookAction.PAYMENT_SUCCEEDED
    assert action.event_id == "evt_1"
    assert action.processor == "stripe"
    assert action.data["payment_id"] == "pi_123"
    assert action.data["customer_id"] == "cus_123"
    assert action.data["amount"] == Decimal("29.99")
    assert action.data["currency"] == "USD"
    assert action.data["billing_id"] == "bill_1"


def test_stripe_invoice_payment_failed_is_subscription_failure():
    event = StripeEvent(
        id="evt_2",
        type="invoice.payment_failed",
        resource={
            "id": "in_1",
            "subscription": "sub_1",
            "customer": "cus_1",
            "amount_paid": 0,
            "amount_due": 9999,
            "currency": "usd",
            "attempt_count": 2,
        },
    )

    action = normalize_event(event)

    assert action.action is WebhookAction.SUBSCRIPTION_PAYMENT_FAILED
    assert action.data["subscription_id"] == "sub_1"
    assert action.data["amount"] == Decimal("99.99")
    assert action.data["attempt_count"] == 2


def test_stripe_subscription_updated_extracts_price_and_flag():
    event = StripeEvent(
        id="evt_3",
        type="customer.subscription.updated",
        resource={
            "id": "sub_1",
            "customer": "cus_1",
            "status": "active",
            "cancel_at_period_end": True,
            "current_period_end": 1_760_000_000,
            "items": {"data": [{"id": "si_1", "price": {"id": "price_premium_dealer_monthly"}}]},
        },
    )

    action = normalize_event(event)

    assert action.action is WebhookAction.SUBSCRIPTION_ACTIVATED
    assert action.data["plan_ref"] == "price_premium_dealer_monthly"
    assert action.data["cancel_at_period_end"] is True
    assert action.data["current_period_end"] == 1_760_000_000


def test_stripe_subscription_deleted_is_cancel():
    action = normalize_event(StripeEvent(id="evt_4", type="customer.subscription.deleted", resource={"id": "sub_1"}))
    assert action.action is WebhookAction.SUBSCRIPTION_CANCELED
    assert action.data["subscription_id"] == "sub_1"


def test_paypal_capture_completed():
    event = PayPalEvent(
        id="WH-1",
        type="PAYMENT.CAPTURE.COMPLETED",
        resource_type="capture",
        resource={
            "id": "CAP-1",
            "status": "COMPLETED",
            "amount": {"value": "29.99", "currency_code": "usd"},
            "custom_id": "bill_1",
            "supplementary_data": {"related_ids": {"order_id": "ORDER-1"}},
        },
    )

    action = normalize_event(event)

    assert action.action is WebhookAction.PAYMENT_SUCCEEDED
    assert action.processor == "paypal"
    assert action.data["payment_id"] == "ORDER-1"
    assert action.data["capture_id"] == "CAP-1"
    assert action.data["amount"] == Decimal("29.99")
    assert action.data["currency"] == "USD"
    assert action.data["custom_id"] == "bill_1"


def test_paypal_subscription_payment_failed():
    event = PayPalEvent(
        id="WH-2",
        type="BILLING.SUBSCRIPTION.PAYMENT.FAILED",
        resource={
            "id": "I-SUB1",
            "status": "ACTIVE",
            "plan_id": "P-PLAN",
            "billing_info": {"failed_payments_count": 1, "next_billing_time": "2025-02-15T10:00:00Z"},
        },
    )

    action = normalize_event(event)

    assert action.action is WebhookAction.SUBSCRIPTION_PAYMENT_FAILED
    assert action.data["subscription_id"] == "I-SUB1"
    assert action.data["failed_payment_count"] == 1
    assert action.data["next_billing_time"] == "2025-02-15T10:00:00Z"


@pytest.mark.parametrize(
    "event_type, expected",
    [
        ("BILLING.SUBSCRIPTION.CREATED", WebhookAction.SUBSCRIPTION_CREATED),
        ("BILLING.SUBSCRIPTION.ACTIVATED", WebhookAction.SUBSCRIPTION_ACTIVATED),
        ("BILLING.SUBSCRIPTION.CANCELLED", WebhookAction.SUBSCRIPTION_CANCELED),
        ("BILLING.SUBSCRIPTION.SUSPENDED", WebhookAction.SUBSCRIPTION_SUSPENDED),
        ("PAYMENT.CAPTURE.DENIED", WebhookAction.PAYMENT_FAILED),
    ],
)
def test_paypal_event_table(event_type, expected):
    action = normalize_event(PayPalEvent(id="WH-3", type=event_type, resource={"id": "X-1"}))
    assert action.action is expected


def test_missing_fields_become_none():
    action = normalize_event(StripeEvent(id="evt_5", type="payment_intent.payment_failed", resource={}))

    assert action.action is WebhookAction.PAYMENT_FAILED
    assert action.data["payment_id"] is None
    assert action.data["amount"] is None
    assert action.data["failure_reason"] is None


def test_unknown_event_type_is_not_an_action():
    assert normalize_event(StripeEvent(id="evt_6", type="customer.tax_id.created", resource={})) is None
    assert normalize_event(PayPalEvent(id="WH-4", type="CATALOG.PRODUCT.CREATED", resource={})) is None


def test_event_tables_do_not_cross_providers():
    for event_type in STRIPE_EVENT_MAP:
        assert normalize_event(PayPalEvent(id="WH-5", type=event_type, resource={})) is None
    for event_type in PAYPAL_EVENT_MAP:
        assert normalize_event(StripeEvent(id="evt_7", type=event_type, resource={})) is None


def test_stripe_dispute_created():
    event = StripeEvent(
        id="evt_8",
        type="charge.dispute.created",
        resource={
            "id": "dp_1",
            "charge": "ch_1",
            "payment_intent": "pi_1",
            "amount": 9999,
            "currency": "usd",
            "reason": "product_not_received",
            "status": "needs_response",
            "evidence_details": {"due_by": 1737590400},
        },
    )

    action = normalize_event(event)

    assert action.action is WebhookAction.DISPUTE_CREATED
    assert action.data["dispute_id"] == "dp_1"
    assert action.data["payment_id"] == "pi_1"
    assert action.data["amount"] == Decimal("99.99")
    assert action.data["currency"] == "USD"
    assert action.data["respond_by"] == 1737590400000


def test_paypal_dispute_created():
    event = PayPalEvent(
        id="WH-6",
        type="CUSTOMER.DISPUTE.CREATED",
        resource={
            "dispute_id": "PP-D-1",
            "reason": "MERCHANDISE_OR_SERVICE_NOT_RECEIVED",
            "status": "OPEN",
            "dispute_amount": {"currency_code": "USD", "value": "750.00"},
            "seller_response_due_date": "2025-01-25T00:00:00.000Z",
            "disputed_transactions": [{"seller_transaction_id": "CAP-1", "custom": "bill_1"}],
        },
    )

    action = normalize_event(event)

    assert action.action is WebhookAction.DISPUTE_CREATED
    assert action.data["dispute_id"] == "PP-D-1"
    assert action.data["payment_id"] == "CAP-1"
    assert action.data["custom_id"] == "bill_1"
    assert action.data["amount"] == Decimal("750.00")
    assert action.data["respond_by"] == 1737763200000


def test_dispute_without_deadline_or_transactions():
    action = normalize_event(PayPalEvent(id="WH-7", type="CUSTOMER.DISPUTE.CREATED", resource={"dispute_id": "PP-D-2"}))

    assert action.data["payment_id"] is None
    assert action.data["respond_by"] is None
