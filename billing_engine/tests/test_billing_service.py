"""
Test the subscription lifecycle manager with a mocked processor and a real
in-memory store.
"""
import asyncio
import logging
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from billing_engine.core.clock import MS_PER_DAY, system_clock
from billing_engine.core.errors import (
    ConfigurationError,
    ConflictError,
    NotFoundError,
    PaymentFailedError,
    StoreWriteError,
    ValidationError,
)
from billing_engine.features.billing.paypal_provider import PayPalProvider
from billing_engine.features.billing.provider import (
    IDEMPOTENCY_METADATA_KEY,
    ProcessorTransientError,
    WebhookSignatureError,
)
from billing_engine.features.billing.service import SubscriptionLifecycleManager, build_processor, dispute_priority
from billing_engine.features.billing.stripe_provider import StripeProvider
from billing_engine.models.billing import (
    AccountStatus,
    BillingCycle,
    PaymentMethodData,
    PaymentResult,
    RefundResult,
    StripeEvent,
    SubscriptionDelta,
    SubscriptionResult,
    Transaction,
    TransactionStatus,
    TransactionType,
)
from billing_engine.tests.mocks import NOW_MS, make_account


def _subscribed(store, **overrides):
    overrides.setdefault("next_billing_date", NOW_MS + 15 * MS_PER_DAY)
    account = make_account(**overrides)
    store.create_billing_account(account)
    return account


def _completed_payment(store, txn_id="txn_1", amount=Decimal("29.99")):
    transaction = Transaction(
        id=txn_id,
        type=TransactionType.PAYMENT,
        amount=amount,
        currency="USD",
        status=TransactionStatus.COMPLETED,
        user_id="user_1",
        processor_transaction_id=f"pi_{txn_id}",
        billing_account_id="bill_1",
        fees=Decimal("1.17"),
        net_amount=amount - Decimal("1.17"),
        created_at=NOW_MS,
    )
    store.create_transaction(transaction)
    return transaction


# -- customers ---------------------------------------------------------------


@pytest.mark.asyncio
async def test_ensure_customer_creates_account_once(manager, store, processor):
    account = await manager.ensure_customer("user_1", email="a@example.test", name="Alice")
    again = await manager.ensure_customer("user_1", email="a@example.test")

    assert account.customer_id == "cus_test"
    assert account.processor == "stripe"
    assert account.billing_id.startswith("bill_")
    assert again.billing_id == account.billing_id
    assert processor.create_customer.await_count == 1
    assert store.get_user("user_1")["email"] == "a@example.test"


@pytest.mark.asyncio
async def test_attach_payment_method(manager, store, processor):
    await manager.ensure_customer("user_1")

    payment_method_id = await manager.attach_payment_method("user_1", PaymentMethodData(type="card", card={"token": "tok_visa"}))

    assert payment_method_id == "pm_test"
    assert store.get_billing_account_by_user("user_1").payment_method_id == "pm_test"
    assert processor.create_payment_method.call_args.args[0] == "cus_test"


@pytest.mark.asyncio
async def test_attach_payment_method_requires_customer(manager):
    with pytest.raises(NotFoundError):
        await manager.attach_payment_method("nobody", PaymentMethodData(type="card", card={}))


# -- subscriptions -----------------------------------------------------------


@pytest.mark.asyncio
async def test_create_subscription_with_trial(manager, store, processor):
    await manager.ensure_customer("user_1")
    await manager.attach_payment_method("user_1", PaymentMethodData(type="card", card={"token": "tok_visa"}))

    created = await manager.create_subscription("user_1", "premium_individual", "monthly", {"campaign": "spring"})

    assert created.subscription_id == "sub_test"
    assert created.trial_end == NOW_MS + 14 * MS_PER_DAY
    assert created.next_billing_date == created.trial_end
    account = store.get_billing_account_by_user("user_1")
    assert account.status is AccountStatus.TRIALING
    assert account.plan_id == "premium_individual"
    assert account.amount == Decimal("29.99")
    assert account.metadata == {"campaign": "spring"}

    customer_id, plan_ref, payment_method_id, metadata = processor.create_subscription.call_args.args
    assert (customer_id, plan_ref, payment_method_id) == ("cus_test", "price_premium_individual_monthly", "pm_test")
    assert metadata[IDEMPOTENCY_METADATA_KEY].startswith(f"subscription-{account.billing_id}-")
    assert metadata["billing_id"] == account.billing_id

    user = store.get_user("user_1")
    assert user["premium_active"] is True
    assert user["premium_plan"] == "premium_individual"
    assert user["membership"]["billing_cycle"] == "monthly"


@pytest.mark.asyncio
async def test_second_active_subscription_conflicts(manager, processor):
    await manager.ensure_customer("user_1")
    await manager.create_subscription("user_1", "premium_dealer", BillingCycle.YEARLY)

    with pytest.raises(ConflictError):
        await manager.create_subscription("user_1", "premium_individual", "monthly")
    assert processor.create_subscription.await_count == 1


@pytest.mark.asyncio
async def test_plan_change_reuses_stored_subscription_item(manager, store, processor):
    processor.create_subscription.return_value = SubscriptionResult(subscription_id="sub_test", status="active", item_ref="si_1")
    await manager.ensure_customer("user_1")
    await manager.attach_payment_method("user_1", PaymentMethodData(type="card", card={"token": "tok_visa"}))
    created = await manager.create_subscription("user_1", "premium_individual", "monthly")

    assert created.account.subscription_item_ref == "si_1"

    await manager.change_plan(created.account.billing_id, "premium_dealer")

    processor.update_subscription.assert_awaited_once_with(
        "sub_test", SubscriptionDelta(plan_ref="price_premium_dealer_monthly", item_ref="si_1")
    )


@pytest.mark.asyncio
async def test_create_subscription_validation(manager):
    with pytest.raises(NotFoundError):
        await manager.create_subscription("user_1", "premium_individual", "monthly")

    await manager.ensure_customer("user_1")
    with pytest.raises(NotFoundError):
        await manager.create_subscription("user_1", "gold", "monthly")
    with pytest.raises(ValidationError):
        await manager.create_subscription("user_1", "basic", "monthly")
    with pytest.raises(ValidationError):
        await manager.create_subscription("user_1", "premium_individual", "weekly")


# -- plan changes ------------------------------------------------------------


@pytest.mark.asyncio
async def test_upgrade_charges_prorated_amount_then_switches(manager, store, processor):
    _subscribed(store)

    result = await manager.change_plan("bill_1", "premium_dealer")

    assert result.proration.days_remaining == 15
    assert result.transaction.amount == Decimal("35.00")
    assert result.transaction.status is TransactionStatus.COMPLETED
    processor.update_subscription.assert_awaited_once_with(
        "sub_user_1", SubscriptionDelta(plan_ref="price_premium_dealer_monthly")
    )
    account = store.get_billing_account("bill_1")
    assert account.plan_id == "premium_dealer"
    assert account.amount == Decimal("99.99")
    assert store.get_user("user_1")["user_type"] == "premium_dealer"


@pytest.mark.asyncio
async def test_failed_proration_payment_leaves_plan_unchanged(manager, store, processor):
    _subscribed(store)
    processor.process_payment.return_value = PaymentResult(transaction_id="pi_declined", status="failed")

    with pytest.raises(PaymentFailedError) as exc_info:
        await manager.change_plan("bill_1", "premium_dealer")

    assert exc_info.value.transaction.status is TransactionStatus.FAILED
    processor.update_subscription.assert_not_called()
    assert store.get_billing_account("bill_1").plan_id == "premium_individual"
    [failed] = store.list_transactions("bill_1")
    assert failed.status is TransactionStatus.FAILED


@pytest.mark.asyncio
async def test_downgrade_records_credit_without_refunding(manager, store, processor):
    _subscribed(store, plan_id="premium_dealer", amount=Decimal("99.99"))

    result = await manager.change_plan("bill_1", "premium_individual")

    assert result.transaction is None
    assert result.downgrade_credit.quantize(Decimal("0.01")) == Decimal("35.00")
    processor.process_payment.assert_not_called()
    processor.process_refund.assert_not_called()
    assert store.get_billing_account("bill_1").pending_downgrade_credit == Decimal("35.00")


@pytest.mark.asyncio
async def test_same_plan_change_is_a_no_op(manager, store, processor):
    _subscribed(store)

    result = await manager.change_plan("bill_1", "premium_individual")

    assert result.proration.amount_due == Decimal("0")
    processor.process_payment.assert_not_called()
    processor.update_subscription.assert_not_called()


@pytest.mark.asyncio
async def test_concurrent_plan_changes_are_serialized(manager, store, processor):
    _subscribed(store)
    gate = asyncio.Event()

    async def slow_charge(*args):
        await gate.wait()
        return PaymentResult(transaction_id="pi_1", status="succeeded")

    processor.process_payment.side_effect = slow_charge

    first = asyncio.create_task(manager.change_plan("bill_1", "premium_dealer"))
    second = asyncio.create_task(manager.change_plan("bill_1", "premium_dealer"))
    await asyncio.sleep(0.05)
    gate.set()
    results = await asyncio.gather(first, second)

    # The queued change re-reads the account and finds the upgrade already applied
    assert processor.process_payment.await_count == 1
    assert [r.transaction is not None for r in results] == [True, False]
    assert len(store.list_transactions("bill_1")) == 1


@pytest.mark.asyncio
async def test_change_plan_unknown_target(manager, store):
    _subscribed(store)
    with pytest.raises(ValidationError):
        await manager.change_plan("bill_1", "gold")
    with pytest.raises(NotFoundError):
        await manager.change_plan("missing", "premium_dealer")


@pytest.mark.asyncio
async def test_processor_failure_after_paid_upgrade_never_charges_twice(manager, store, processor):
    _subscribed(store)
    processor.update_subscription.side_effect = ProcessorTransientError("503 Service Unavailable")

    first = await manager.change_plan("bill_1", "premium_dealer")

    assert first.transaction.status is TransactionStatus.COMPLETED
    assert first.processor_synced is False
    account = store.get_billing_account("bill_1")
    assert account.plan_id == "premium_dealer"
    assert account.pending_plan_ref == "price_premium_dealer_monthly"

    again = await manager.change_plan("bill_1", "premium_dealer")

    assert again.transaction is None
    assert again.processor_synced is False
    assert processor.process_payment.await_count == 1
    assert len(store.list_transactions("bill_1")) == 1

    # The next renewal pass pushes the committed price
    processor.update_subscription.side_effect = None
    report = await manager.process_automatic_renewals()

    assert report.plans_synced == 1
    assert store.get_billing_account("bill_1").pending_plan_ref is None
    processor.update_subscription.assert_awaited_with(
        "sub_user_1", SubscriptionDelta(plan_ref="price_premium_dealer_monthly")
    )
    assert processor.process_payment.await_count == 1


@pytest.mark.asyncio
async def test_retried_plan_change_reuses_its_charge_key(manager, store, processor):
    account = _subscribed(store)
    processor.process_payment.side_effect = ProcessorTransientError("timeout")

    with pytest.raises(ProcessorTransientError):
        await manager.change_plan("bill_1", "premium_dealer")

    processor.process_payment.side_effect = None
    await manager.change_plan("bill_1", "premium_dealer")

    keys = {call.args[3][IDEMPOTENCY_METADATA_KEY] for call in processor.process_payment.await_args_list}
    assert keys == {
        f"plan-change-bill_1-premium_individual-premium_dealer-monthly-{account.next_billing_date}-pm_user_1"
    }
    assert len(store.list_transactions("bill_1")) == 1


@pytest.mark.asyncio
async def test_replayed_charge_is_recorded_once(manager, store, processor):
    account = _subscribed(store)

    first = await manager.charge_account(
        account, Decimal("35.00"), description="Plan upgrade prorated payment", metadata={}, idempotency_key="key-1"
    )
    replay = await manager.charge_account(
        account, Decimal("35.00"), description="Plan upgrade prorated payment", metadata={}, idempotency_key="key-1"
    )

    assert replay.id == first.id
    assert len(store.list_transactions("bill_1")) == 1


@pytest.mark.asyncio
async def test_new_card_gets_a_new_plan_change_key(manager, store, processor):
    _subscribed(store, payment_method_id="pm_declined")
    processor.process_payment.return_value = PaymentResult(transaction_id="pi_declined", status="failed")

    with pytest.raises(PaymentFailedError):
        await manager.change_plan("bill_1", "premium_dealer")

    store.update_billing_account("bill_1", {"payment_method_id": "pm_new"})
    processor.process_payment.return_value = PaymentResult(transaction_id="pi_ok", status="succeeded")
    result = await manager.change_plan("bill_1", "premium_dealer")

    first_key, second_key = [call.args[3][IDEMPOTENCY_METADATA_KEY] for call in processor.process_payment.await_args_list]
    assert first_key != second_key
    assert second_key.endswith("-pm_new")
    assert result.transaction.status is TransactionStatus.COMPLETED


# -- cancellation ------------------------------------------------------------


@pytest.mark.asyncio
async def test_cancel_at_period_end_keeps_access(manager, store, processor):
    _subscribed(store)

    account = await manager.cancel_subscription("sub_user_1")

    processor.update_subscription.assert_awaited_once_with("sub_user_1", SubscriptionDelta(cancel_at_period_end=True))
    processor.cancel_subscription.assert_not_called()
    assert account.cancel_at_period_end is True
    assert account.status is AccountStatus.ACTIVE
    user = store.get_user("user_1")
    assert user["premium_active"] is True
    assert user["membership"]["auto_renew"] is False


@pytest.mark.asyncio
async def test_immediate_cancel_downgrades_and_is_idempotent(manager, store, processor):
    _subscribed(store)

    account = await manager.cancel_subscription("sub_user_1", immediate=True)
    again = await manager.cancel_subscription("sub_user_1", immediate=True)

    assert account.status is AccountStatus.CANCELED
    assert account.plan_id == "basic"
    assert again.status is AccountStatus.CANCELED
    processor.cancel_subscription.assert_awaited_once_with("sub_user_1")
    assert store.get_user("user_1")["premium_active"] is False


@pytest.mark.asyncio
async def test_resume_clears_period_end_cancel(manager, store, processor):
    _subscribed(store, cancel_at_period_end=True)

    account = await manager.update_subscription("sub_user_1", cancel_at_period_end=False)

    assert account.cancel_at_period_end is False
    processor.update_subscription.assert_awaited_once_with("sub_user_1", SubscriptionDelta(cancel_at_period_end=False))


@pytest.mark.asyncio
async def test_update_subscription_routes_plan_change_and_metadata(manager, store, processor):
    _subscribed(store, metadata={"source": "web"})

    account = await manager.update_subscription("sub_user_1", plan_id="premium_dealer", metadata={"campaign": "fall"})

    assert account.plan_id == "premium_dealer"
    assert account.metadata == {"source": "web", "campaign": "fall"}


@pytest.mark.asyncio
async def test_local_write_failure_surfaces_without_reversing_processor(manager, store, processor, monkeypatch):
    _subscribed(store)

    def broken_update(billing_id, fields):
        raise RuntimeError("database is locked")

    monkeypatch.setattr(store, "update_billing_account", broken_update)

    with pytest.raises(StoreWriteError) as exc_info:
        await manager.cancel_subscription("sub_user_1")

    assert exc_info.value.pending_fields["cancel_at_period_end"] is True
    processor.update_subscription.assert_awaited_once()


# -- refunds -----------------------------------------------------------------


@pytest.mark.asyncio
async def test_refund_appends_refund_row(manager, store, processor):
    _subscribed(store)
    original = _completed_payment(store)

    refund = await manager.process_refund("txn_1", Decimal("10.00"), "requested_by_customer")

    processor.process_refund.assert_awaited_once_with("pi_txn_1", Decimal("10.00"), "requested_by_customer")
    assert refund.type is TransactionType.REFUND
    assert refund.amount == Decimal("10.00")
    assert refund.processor_transaction_id == "re_test"
    assert refund.metadata["original_transaction_id"] == "txn_1"
    assert store.get_transaction("txn_1") == original


@pytest.mark.asyncio
async def test_refund_is_attempted_once(manager, store, processor):
    _subscribed(store)
    _completed_payment(store)
    processor.process_refund.side_effect = ProcessorTransientError("timeout")

    with pytest.raises(ProcessorTransientError):
        await manager.process_refund("txn_1")

    assert processor.process_refund.await_count == 1
    assert len(store.list_transactions("bill_1")) == 1


@pytest.mark.asyncio
async def test_refund_validation(manager, store):
    _subscribed(store)
    _completed_payment(store)

    with pytest.raises(NotFoundError):
        await manager.process_refund("txn_missing")
    with pytest.raises(ValidationError):
        await manager.process_refund("txn_1", Decimal("50.00"))
    with pytest.raises(ValidationError):
        await manager.process_refund("txn_1", Decimal("0"))


@pytest.mark.asyncio
async def test_refund_draws_down_downgrade_credit(manager, store, processor):
    _subscribed(store, pending_downgrade_credit=Decimal("35.00"))
    _completed_payment(store)
    processor.process_refund.return_value = RefundResult(refund_id="re_1", status="succeeded")

    await manager.process_refund("txn_1", Decimal("20.00"))
    assert store.get_billing_account("bill_1").pending_downgrade_credit == Decimal("15.00")

    await manager.process_refund("txn_1", Decimal("20.00"))
    assert store.get_billing_account("bill_1").pending_downgrade_credit is None


# -- webhooks ----------------------------------------------------------------


def _invoice_paid(event_id="evt_1", subscription_id="sub_user_1"):
    return StripeEvent(
        id=event_id,
        type="invoice.payment_succeeded",
        resource={"id": "in_1", "subscription": subscription_id, "amount_paid": 2999, "currency": "usd"},
    )


@pytest.mark.asyncio
async def test_payment_webhook_recovers_past_due_account_once(manager, store, processor):
    account = _subscribed(store, status=AccountStatus.PAST_DUE, grace_ends_at=NOW_MS + 5 * MS_PER_DAY)
    processor.verify_and_parse_webhook.return_value = _invoice_paid()

    first = await manager.handle_webhook(b"{}", "t=1,v1=sig", "stripe")
    second = await manager.handle_webhook(b"{}", "t=1,v1=sig", "stripe")

    assert first.handled is True
    assert first.action == "payment_succeeded"
    assert second.duplicate is True
    recovered = store.get_billing_account("bill_1")
    assert recovered.status is AccountStatus.ACTIVE
    assert recovered.grace_ends_at is None
    # Advanced exactly once despite the redelivery
    assert recovered.next_billing_date > account.next_billing_date
    assert recovered.next_billing_date < account.next_billing_date + 32 * MS_PER_DAY


@pytest.mark.asyncio
async def test_concurrent_duplicate_webhooks_apply_once(manager, store, processor):
    _subscribed(store, status=AccountStatus.PAST_DUE, grace_ends_at=NOW_MS + MS_PER_DAY)
    processor.verify_and_parse_webhook.return_value = _invoice_paid()

    results = await asyncio.gather(*[manager.handle_webhook(b"{}", "sig", "stripe") for _ in range(3)])

    assert sum(1 for r in results if r.duplicate) == 2
    assert store.get_billing_account("bill_1").status is AccountStatus.ACTIVE


@pytest.mark.asyncio
async def test_subscription_payment_failed_webhook_starts_grace(manager, store, processor):
    _subscribed(store)
    processor.verify_and_parse_webhook.return_value = StripeEvent(
        id="evt_2", type="invoice.payment_failed", resource={"subscription": "sub_user_1"}
    )

    result = await manager.handle_webhook(b"{}", "sig", "stripe")

    assert result.handled is True
    account = store.get_billing_account("bill_1")
    assert account.status is AccountStatus.PAST_DUE
    assert account.grace_ends_at == NOW_MS + 7 * MS_PER_DAY


@pytest.mark.asyncio
async def test_subscription_deleted_webhook_downgrades_locally(manager, store, processor):
    _subscribed(store)
    processor.verify_and_parse_webhook.return_value = StripeEvent(
        id="evt_3", type="customer.subscription.deleted", resource={"id": "sub_user_1"}
    )

    await manager.handle_webhook(b"{}", "sig", "stripe")

    assert store.get_billing_account("bill_1").status is AccountStatus.CANCELED
    processor.cancel_subscription.assert_not_called()
    assert store.get_user("user_1")["premium_active"] is False


@pytest.mark.asyncio
async def test_subscription_updated_webhook_syncs_cancel_flag(manager, store, processor):
    _subscribed(store)
    processor.verify_and_parse_webhook.return_value = StripeEvent(
        id="evt_4",
        type="customer.subscription.updated",
        resource={"id": "sub_user_1", "status": "active", "cancel_at_period_end": True},
    )

    await manager.handle_webhook(b"{}", "sig", "stripe")

    assert store.get_billing_account("bill_1").cancel_at_period_end is True


@pytest.mark.asyncio
async def test_invalid_signature_is_reported_not_processed(manager, store, processor):
    processor.verify_and_parse_webhook.side_effect = WebhookSignatureError("Invalid signature")

    result = await manager.handle_webhook(b"{}", "bad", "stripe")

    assert result.handled is False
    assert "Invalid signature" in result.error


@pytest.mark.asyncio
async def test_unknown_event_type_not_handled(manager, processor):
    processor.verify_and_parse_webhook.return_value = StripeEvent(id="evt_5", type="customer.tax_id.created", resource={})

    result = await manager.handle_webhook(b"{}", "sig", "stripe")

    assert result.handled is False
    assert result.error is None


@pytest.mark.asyncio
async def test_unsupported_processor_name(manager):
    result = await manager.handle_webhook(b"{}", None, "square")

    assert result.handled is False
    assert "square" in result.error


@pytest.mark.asyncio
async def test_failed_webhook_is_retried_on_redelivery(manager, store, processor, monkeypatch):
    _subscribed(store, status=AccountStatus.PAST_DUE, grace_ends_at=NOW_MS + MS_PER_DAY)
    processor.verify_and_parse_webhook.return_value = _invoice_paid()
    monkeypatch.setattr(manager, "_apply_webhook_action", AsyncMock(side_effect=[RuntimeError("db down"), None]))

    first = await manager.handle_webhook(b"{}", "sig", "stripe")
    second = await manager.handle_webhook(b"{}", "sig", "stripe")

    assert first.handled is False
    assert first.error == "db down"
    assert second.handled is True
    assert second.duplicate is False


@pytest.mark.asyncio
async def test_store_failure_while_recording_webhook_is_reported(manager, store, processor, monkeypatch, caplog):
    _subscribed(store, status=AccountStatus.PAST_DUE, grace_ends_at=NOW_MS + MS_PER_DAY)
    processor.verify_and_parse_webhook.return_value = _invoice_paid()

    def broken_record(*args):
        raise RuntimeError("db down")

    monkeypatch.setattr(store, "record_webhook_event", broken_record)

    with caplog.at_level(logging.ERROR):
        result = await manager.handle_webhook(b"{}", "sig", "stripe")

    assert result.handled is False
    assert result.error == "db down"
    assert any(r.levelno == logging.ERROR and "could not be recorded" in r.getMessage() for r in caplog.records)
    assert store.get_billing_account("bill_1").status is AccountStatus.PAST_DUE


@pytest.mark.asyncio
async def test_store_failure_while_marking_webhook_is_reported(manager, store, processor, monkeypatch):
    _subscribed(store, status=AccountStatus.PAST_DUE, grace_ends_at=NOW_MS + MS_PER_DAY)
    processor.verify_and_parse_webhook.return_value = _invoice_paid()

    def broken_mark(*args, **kwargs):
        raise RuntimeError("db down")

    monkeypatch.setattr(store, "mark_webhook_event", broken_mark)

    result = await manager.handle_webhook(b"{}", "sig", "stripe")

    assert result.handled is False
    assert result.error == "db down"
    assert store.get_billing_account("bill_1").status is AccountStatus.ACTIVE


def _dispute_event(event_id="evt_d1", dispute_id="dp_1", amount=2999):
    return StripeEvent(
        id=event_id,
        type="charge.dispute.created",
        resource={
            "id": dispute_id,
            "charge": "ch_1",
            "payment_intent": "pi_txn_1",
            "amount": amount,
            "currency": "usd",
            "reason": "fraudulent",
            "status": "needs_response",
            "evidence_details": {"due_by": 1737590400},
        },
    )


@pytest.mark.asyncio
async def test_dispute_webhook_files_a_case_against_the_payment(manager, store, processor):
    _subscribed(store)
    _completed_payment(store)
    processor.verify_and_parse_webhook.return_value = _dispute_event()

    result = await manager.handle_webhook(b"{}", "sig", "stripe")

    assert result.handled is True
    assert result.action == "dispute_created"
    dispute = store.get_dispute("stripe", "dp_1")
    assert dispute.transaction_id == "txn_1"
    assert dispute.billing_account_id == "bill_1"
    assert dispute.user_id == "user_1"
    assert dispute.amount == Decimal("29.99")
    assert dispute.currency == "USD"
    assert dispute.reason == "fraudulent"
    assert dispute.priority == "low"
    assert dispute.respond_by == 1737590400 * 1000
    # Filing a dispute leaves the subscription alone
    assert store.get_billing_account("bill_1").status is AccountStatus.ACTIVE


@pytest.mark.asyncio
async def test_dispute_for_unknown_payment_is_still_filed_once(manager, store, processor):
    processor.verify_and_parse_webhook.return_value = _dispute_event(amount=150000)
    first = await manager.handle_webhook(b"{}", "sig", "stripe")

    processor.verify_and_parse_webhook.return_value = _dispute_event(event_id="evt_d2", amount=150000)
    second = await manager.handle_webhook(b"{}", "sig", "stripe")

    assert first.handled is True
    assert second.handled is True
    dispute = store.get_dispute("stripe", "dp_1")
    assert dispute.transaction_id is None
    assert dispute.billing_account_id is None
    assert dispute.priority == "high"


@pytest.mark.parametrize(
    "amount, priority",
    [
        (Decimal("1000.01"), "high"),
        (Decimal("1000.00"), "medium"),
        (Decimal("500.01"), "medium"),
        (Decimal("500.00"), "low"),
        (Decimal("0"), "low"),
    ],
)
def test_dispute_priority_follows_amount(amount, priority):
    assert dispute_priority(amount) == priority


# -- status and factories ----------------------------------------------------


def test_billing_status(manager, store):
    empty = manager.get_billing_status("nobody")
    assert empty["plan_id"] == "basic"
    assert empty["status"] is None

    _subscribed(store, pending_downgrade_credit=Decimal("5.00"))
    status = manager.get_billing_status("user_1")
    assert status["plan_id"] == "premium_individual"
    assert status["status"] == "active"
    assert status["billing_cycle"] == "monthly"
    assert status["pending_downgrade_credit"] == "5.00"


def test_plan_catalog_lookup(manager):
    assert {plan.plan_id for plan in manager.list_active_plans()} == {"basic", "premium_individual", "premium_dealer"}
    assert manager.get_plan("premium_dealer").monthly_price == Decimal("99.99")
    assert manager.get_plan("gold") is None


def test_build_processor_selects_adapter(test_settings):
    assert isinstance(build_processor(test_settings), StripeProvider)
    assert isinstance(build_processor(test_settings.model_copy(update={"PAYMENT_PROCESSOR": "paypal"})), PayPalProvider)
    with pytest.raises(ConfigurationError):
        build_processor(test_settings.model_copy(update={"PAYMENT_PROCESSOR": "square"}))


def test_from_settings_validates_configuration(monkeypatch, test_settings, store):
    monkeypatch.delenv("SKIP_ENV_VALIDATION", raising=False)

    with pytest.raises(ConfigurationError, match="STRIPE_SECRET_KEY"):
        SubscriptionLifecycleManager.from_settings(test_settings.model_copy(update={"STRIPE_SECRET_KEY": ""}), store=store)


@pytest.mark.asyncio
async def test_from_settings_holds_account_leases_in_the_store(monkeypatch, test_settings, store):
    monkeypatch.delenv("SKIP_ENV_VALIDATION", raising=False)
    built = SubscriptionLifecycleManager.from_settings(test_settings, store=store)

    async with built.locks.hold("bill_1"):
        # Another process sees the account as taken
        assert store.acquire_lock("bill_1", "other-worker", system_clock(), 1000) is False

    assert store.acquire_lock("bill_1", "other-worker", system_clock(), 1000) is True
    await built.aclose()
