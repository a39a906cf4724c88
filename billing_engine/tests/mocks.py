"""
Test doubles for the billing engine.

FakeClock - settable epoch-ms clock
FakeProcessor - PaymentProcessor with AsyncMock methods and canned results
"""
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional
from unittest.mock import AsyncMock

from billing_engine.core.clock import from_datetime
from billing_engine.models.billing import (
    AccountStatus,
    BillingAccount,
    BillingCycle,
    PaymentResult,
    RefundResult,
    SubscriptionResult,
)

# 2025-01-15T12:00:00Z
NOW_MS = from_datetime(datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc))


class FakeClock:
    def __init__(self, now_ms: int = NOW_MS):
        self.now_ms = now_ms

    def __call__(self) -> int:
        return self.now_ms

    def advance(self, ms: int) -> None:
        self.now_ms += ms


class FakeProcessor:
    """Processor double; each operation is an AsyncMock tests can reprogram."""

    def __init__(self, name: str = "stripe"):
        self.name = name
        self.create_customer = AsyncMock(return_value="cus_test")
        self.create_payment_method = AsyncMock(return_value="pm_test")
        self.create_subscription = AsyncMock(return_value=SubscriptionResult(subscription_id="sub_test", status="trialing"))
        self.process_payment = AsyncMock(return_value=PaymentResult(transaction_id="pi_test", status="succeeded"))
        self.cancel_subscription = AsyncMock(return_value=None)
        self.update_subscription = AsyncMock(return_value=None)
        self.process_refund = AsyncMock(return_value=RefundResult(refund_id="re_test", status="succeeded"))
        self.retrieve_payment_intent = AsyncMock()
        self.retrieve_subscription = AsyncMock()
        self.verify_and_parse_webhook = AsyncMock()
        self.check_health = AsyncMock(return_value=True)
        self.aclose = AsyncMock(return_value=None)


async def no_sleep(_delay: float) -> None:
    return None


def make_account(
    billing_id: str = "bill_1",
    user_id: str = "user_1",
    *,
    next_billing_date: Optional[int] = None,
    **overrides: Any,
) -> BillingAccount:
    """A subscribed premium_individual monthly account."""
    fields = dict(
        billing_id=billing_id,
        user_id=user_id,
        plan_id="premium_individual",
        billing_cycle=BillingCycle.MONTHLY,
        processor="stripe",
        customer_id=f"cus_{user_id}",
        payment_method_id=f"pm_{user_id}",
        subscription_id=f"sub_{user_id}",
        status=AccountStatus.ACTIVE,
        amount=Decimal("29.99"),
        currency="USD",
        next_billing_date=next_billing_date,
        created_at=NOW_MS,
        updated_at=NOW_MS,
    )
    fields.update(overrides)
    return BillingAccount(**fields)
