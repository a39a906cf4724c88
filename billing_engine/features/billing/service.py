"""
Billing service orchestrator.

Coordinates:
- Customer and payment method setup
- Subscription lifecycle (create, plan change with proration, cancel)
- Renewals (delegated to RenewalScheduler)
- Refunds
- Webhook processing

Every mutating operation follows the same order: validate, call the
processor (timeout-bounded, retried on transient failure), write the local
account and ledger with reconciliation retry, then update the user's
entitlement snapshot. Once a processor call is dispatched the call and its
bookkeeping run shielded from caller cancellation.

All provider-specific code lives in stripe_provider.py and paypal_provider.py.
"""
import asyncio
import hashlib
import logging
import uuid
from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, TypeVar, Union

from billing_engine.core.clock import MS_PER_DAY, Clock, add_cycle, system_clock
from billing_engine.core.config import Settings, settings
from billing_engine.core.errors import (
    AccountBusyError,
    ConfigurationError,
    ConflictError,
    NotFoundError,
    PaymentFailedError,
    ProrationInputError,
    ValidationError,
)
from billing_engine.core.logging import correlation_scope, log_event
from billing_engine.core.retry import RetryPolicy, call_processor, reconcile_write
from billing_engine.core.validation import validate_settings
from billing_engine.features.billing.locks import AccountLocks
from billing_engine.features.billing.paypal_provider import PayPalProvider
from billing_engine.features.billing.plans import (
    BASELINE_PLAN_ID,
    baseline_snapshot,
    build_plan_catalog,
    card_fees,
    premium_snapshot,
)
from billing_engine.features.billing.proration import calculate_proration, days_remaining_in_period
from billing_engine.features.billing.provider import (
    IDEMPOTENCY_METADATA_KEY,
    PaymentProcessor,
    ProcessorError,
    ProcessorValidationError,
    SignatureHeader,
    WebhookSignatureError,
)
from billing_engine.features.billing.renewal import DEFAULT_LOOKAHEAD_MS, RenewalReport, RenewalScheduler
from billing_engine.features.billing.repository import AccountStore, SqlAccountStore
from billing_engine.features.billing.stripe_provider import StripeProvider
from billing_engine.features.billing.webhooks import normalize_event
from billing_engine.models.billing import (
    AccountStatus,
    BillingAccount,
    BillingCycle,
    CanonicalWebhookAction,
    CustomerProfile,
    DisputeCase,
    PaymentMethodData,
    ProrationResult,
    SubscriptionDelta,
    SubscriptionPlan,
    Transaction,
    TransactionStatus,
    TransactionType,
    WebhookAction,
    WebhookResult,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

CENTS = Decimal("0.01")
ZERO = Decimal("0")

SUCCESS_REFUND_STATUSES = ("succeeded", "completed")
FAILED_REFUND_STATUSES = ("failed", "canceled", "cancelled")

HIGH_PRIORITY_DISPUTE = Decimal("1000")
MEDIUM_PRIORITY_DISPUTE = Decimal("500")


@dataclass(frozen=True)
class SubscriptionCreated:
    subscription_id: str
    status: str
    next_billing_date: int
    trial_end: Optional[int]
    account: BillingAccount


@dataclass(frozen=True)
class PlanChangeResult:
    proration: ProrationResult
    account: BillingAccount
    transaction: Optional[Transaction] = None
    # False while the new price is still waiting to be pushed to the processor
    processor_synced: bool = True

    @property
    def downgrade_credit(self) -> Decimal:
        return self.proration.downgrade_credit


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


def _cents(amount: Decimal) -> Decimal:
    return Decimal(amount).quantize(CENTS)


def _plan_change_key(account: BillingAccount, new_plan_id: str, cycle: BillingCycle) -> str:
    # Stable across retries of one change; a new card gets a fresh key
    return (
        f"plan-change-{account.billing_id}-{account.plan_id}-{new_plan_id}-{cycle.value}"
        f"-{account.next_billing_date}-{account.payment_method_id}"
    )


def dispute_priority(amount: Decimal) -> str:
    if amount > HIGH_PRIORITY_DISPUTE:
        return "high"
    if amount > MEDIUM_PRIORITY_DISPUTE:
        return "medium"
    return "low"


def _parse_cycle(value: Union[BillingCycle, str]) -> BillingCycle:
    try:
        return BillingCycle(value)
    except ValueError as e:
        raise ValidationError(f"Invalid billing cycle: {value}") from e


def build_processor(cfg: Settings = settings) -> PaymentProcessor:
    """Instantiate the adapter selected by PAYMENT_PROCESSOR."""
    name = (cfg.PAYMENT_PROCESSOR or "").lower()
    if name == "stripe":
        return StripeProvider.from_settings(cfg)
    if name == "paypal":
        return PayPalProvider.from_settings(cfg)
    raise ConfigurationError(f"Unsupported payment processor: {cfg.PAYMENT_PROCESSOR}")


class SubscriptionLifecycleManager:
    """Owns the subscription lifecycle over one active processor and an account store."""

    def __init__(
        self,
        processor: PaymentProcessor,
        store: AccountStore,
        *,
        cfg: Settings = settings,
        plans: Optional[Mapping[str, SubscriptionPlan]] = None,
        clock: Clock = system_clock,
        retry_policy: Optional[RetryPolicy] = None,
        webhook_processors: Optional[Mapping[str, PaymentProcessor]] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        locks: Optional[AccountLocks] = None,
    ):
        self.processor = processor
        self.store = store
        self.cfg = cfg
        self.plans = plans if plans is not None else build_plan_catalog(cfg)
        self.clock = clock
        self.retry_policy = retry_policy or RetryPolicy.from_settings(cfg)
        # Webhooks may arrive from a processor other than the active one
        self.webhook_processors = dict(webhook_processors or {})
        self.webhook_processors.setdefault(processor.name, processor)
        self.locks = locks if locks is not None else AccountLocks()
        self._sleep = sleep
        self.scheduler = RenewalScheduler(
            self,
            clock=clock,
            grace_period_days=cfg.GRACE_PERIOD_DAYS,
            batch_limit=cfg.RENEWAL_BATCH_LIMIT,
            retry_max_attempts=cfg.PAYMENT_RETRY_MAX_ATTEMPTS,
            retry_base_hours=cfg.PAYMENT_RETRY_BASE_HOURS,
            retry_max_hours=cfg.PAYMENT_RETRY_MAX_HOURS,
        )

    @classmethod
    def from_settings(cls, cfg: Settings = settings, store: Optional[AccountStore] = None) -> "SubscriptionLifecycleManager":
        """Build the production manager: validated config, SQL store, database-backed account leases."""
        validate_settings(cfg)
        store = store or SqlAccountStore()
        locks = AccountLocks(
            store,
            ttl_ms=cfg.ACCOUNT_LOCK_TTL_SECONDS * 1000,
            wait_seconds=cfg.ACCOUNT_LOCK_WAIT_SECONDS,
        )
        return cls(build_processor(cfg), store, cfg=cfg, locks=locks)

    # -- plumbing ----------------------------------------------------------

    async def _call(self, operation: str, call: Callable[[], Awaitable[T]], policy: Optional[RetryPolicy] = None) -> T:
        return await call_processor(call, policy or self.retry_policy, operation=operation, sleep=self._sleep)

    async def _write(self, operation: str, write: Callable[[], T], pending_fields: Optional[dict] = None) -> T:
        return await reconcile_write(
            write,
            operation=operation,
            max_attempts=self.cfg.STORE_WRITE_MAX_ATTEMPTS,
            pending_fields=pending_fields,
            sleep=self._sleep,
        )

    async def write_account(self, billing_id: str, fields: Dict[str, Any], *, operation: str) -> BillingAccount:
        return await self._write(
            operation,
            lambda: self.store.update_billing_account(billing_id, fields),
            pending_fields=fields,
        )

    async def refresh_entitlements(self, account: BillingAccount, *, operation: str) -> None:
        """Rewrite the user's entitlement snapshot from the account's current plan."""
        plan = self.plans.get(account.plan_id)
        if plan is None or not plan.is_premium or account.status is AccountStatus.CANCELED:
            snapshot = baseline_snapshot(self._baseline_plan())
        else:
            snapshot = premium_snapshot(
                plan,
                account.billing_cycle,
                account.next_billing_date,
                auto_renew=not account.cancel_at_period_end,
            )
        await self._write(operation, lambda: self.store.update_user(account.user_id, snapshot), pending_fields=snapshot)

    def _baseline_plan(self) -> SubscriptionPlan:
        baseline = self.plans.get(BASELINE_PLAN_ID)
        if baseline is None:
            raise ConfigurationError("Basic plan not found")
        return baseline

    def _require_account(self, billing_id: str) -> BillingAccount:
        account = self.store.get_billing_account(billing_id)
        if account is None:
            raise NotFoundError(f"Billing account not found: {billing_id}")
        return account

    def _require_account_by_subscription(self, subscription_id: str) -> BillingAccount:
        if not subscription_id:
            raise ValidationError("subscription_id is required")
        account = self.store.get_billing_account_by_subscription(subscription_id)
        if account is None:
            raise NotFoundError("Billing account not found for subscription")
        return account

    # -- plans -------------------------------------------------------------

    def list_active_plans(self) -> List[SubscriptionPlan]:
        return [plan for plan in self.plans.values() if plan.active]

    def get_plan(self, plan_id: str) -> Optional[SubscriptionPlan]:
        return self.plans.get(plan_id)

    # -- customers ---------------------------------------------------------

    async def ensure_customer(self, user_id: str, email: Optional[str] = None, name: Optional[str] = None) -> BillingAccount:
        """
        Ensure the user has a billing account with a processor customer.

        Returns the existing account when it already has a customer on the
        active processor.
        """
        if not user_id:
            raise ValidationError("user_id is required")

        async with self.locks.hold(f"user:{user_id}"):
            account = self.store.get_billing_account_by_user(user_id)
            if account and account.customer_id and account.processor == self.processor.name:
                return account

            async def _run() -> BillingAccount:
                customer_id = await self._call(
                    "create_customer",
                    lambda: self.processor.create_customer(CustomerProfile(user_id=user_id, email=email, name=name)),
                )
                now = self.clock()
                if account is None:
                    created = BillingAccount(
                        billing_id=_new_id("bill"),
                        user_id=user_id,
                        processor=self.processor.name,
                        customer_id=customer_id,
                        currency=self.cfg.DEFAULT_CURRENCY,
                        created_at=now,
                        updated_at=now,
                    )
                    result = await self._write(
                        "ensure_customer.account",
                        lambda: self.store.create_billing_account(created),
                        pending_fields={"user_id": user_id, "customer_id": customer_id},
                    )
                else:
                    result = await self.write_account(
                        account.billing_id,
                        {"customer_id": customer_id, "processor": self.processor.name, "updated_at": now},
                        operation="ensure_customer.account",
                    )
                profile = {k: v for k, v in (("email", email), ("name", name)) if v is not None}
                await self._write("ensure_customer.user", lambda: self.store.update_user(user_id, profile))
                return result

            result = await asyncio.shield(_run())

        log_event("info", "[billing] customer ensured", user_id=user_id, billing_id=result.billing_id, processor=self.processor.name)
        return result

    async def attach_payment_method(self, user_id: str, payment_data: PaymentMethodData) -> str:
        account = self.store.get_billing_account_by_user(user_id)
        if account is None or not account.customer_id:
            raise NotFoundError("Billing account not found")

        async with self.locks.hold(account.billing_id):
            async def _run() -> str:
                payment_method_id = await self._call(
                    "create_payment_method",
                    lambda: self.processor.create_payment_method(account.customer_id, payment_data),
                )
                await self.write_account(
                    account.billing_id,
                    {"payment_method_id": payment_method_id, "updated_at": self.clock()},
                    operation="attach_payment_method",
                )
                return payment_method_id

            return await asyncio.shield(_run())

    # -- subscriptions -----------------------------------------------------

    async def create_subscription(
        self,
        user_id: str,
        plan_id: str,
        billing_cycle: Union[BillingCycle, str],
        metadata: Optional[Dict[str, str]] = None,
    ) -> SubscriptionCreated:
        plan = self.plans.get(plan_id)
        if plan is None or not plan.active:
            raise NotFoundError(f"Subscription plan not found: {plan_id}")
        if not plan.is_premium:
            raise ValidationError(f"Plan {plan_id} is free and has no subscription")
        cycle = _parse_cycle(billing_cycle)
        plan_ref = plan.processor_ref(self.processor.name, cycle)
        if not plan_ref:
            raise ValidationError(f"Plan {plan_id} has no {self.processor.name} reference for {cycle.value} billing")

        account = self.store.get_billing_account_by_user(user_id)
        if account is None or not account.customer_id:
            raise NotFoundError("Billing account not found")

        async with self.locks.hold(account.billing_id):
            account = self._require_account(account.billing_id)
            if account.subscription_id and account.status is not AccountStatus.CANCELED:
                raise ConflictError("User already has an active subscription")

            provider_meta = {
                **(metadata or {}),
                "user_id": user_id,
                "plan_id": plan_id,
                "billing_cycle": cycle.value,
                "billing_id": account.billing_id,
                IDEMPOTENCY_METADATA_KEY: f"subscription-{account.billing_id}-{uuid.uuid4().hex}",
            }

            async def _run() -> SubscriptionCreated:
                result = await self._call(
                    "create_subscription",
                    lambda: self.processor.create_subscription(
                        account.customer_id, plan_ref, account.payment_method_id, provider_meta
                    ),
                )
                now = self.clock()
                trial_end = now + plan.trial_days * MS_PER_DAY if plan.trial_days else None
                next_billing_date = trial_end or add_cycle(now, cycle.value)
                if result.status == "active":
                    status = AccountStatus.ACTIVE
                elif result.status == "trialing" or trial_end:
                    status = AccountStatus.TRIALING
                else:
                    status = AccountStatus.ACTIVE

                fields = {
                    "subscription_id": result.subscription_id,
                    "subscription_item_ref": result.item_ref,
                    "plan_id": plan_id,
                    "billing_cycle": cycle,
                    "amount": plan.price_for(cycle),
                    "currency": plan.currency,
                    "status": status,
                    "next_billing_date": next_billing_date,
                    "trial_ends_at": trial_end,
                    "canceled_at": None,
                    "grace_ends_at": None,
                    "cancel_at_period_end": False,
                    "pending_downgrade_credit": None,
                    "pending_plan_ref": None,
                    "retry_attempts": 0,
                    "next_retry_at": None,
                    "metadata": {**account.metadata, **(metadata or {})},
                    "updated_at": now,
                }
                updated = await self.write_account(account.billing_id, fields, operation="create_subscription.account")
                await self.refresh_entitlements(updated, operation="create_subscription.entitlements")
                return SubscriptionCreated(
                    subscription_id=result.subscription_id,
                    status=result.status,
                    next_billing_date=next_billing_date,
                    trial_end=trial_end,
                    account=updated,
                )

            created = await asyncio.shield(_run())

        log_event(
            "info",
            "[billing] subscription created",
            user_id=user_id,
            billing_id=account.billing_id,
            processor=self.processor.name,
            extra={"plan_id": plan_id, "billing_cycle": cycle.value, "status": created.status},
        )
        return created

    async def change_plan(
        self,
        billing_account_id: str,
        new_plan_id: str,
        new_cycle: Optional[Union[BillingCycle, str]] = None,
    ) -> PlanChangeResult:
        """
        Switch an account to another plan and/or cycle with proration.

        A positive amount due is charged first under a key derived from the
        change itself, so a retried change replays the same charge. Once paid
        the new plan is committed locally together with ``pending_plan_ref``;
        the processor is then told about the new price. If that call fails
        the result reports ``processor_synced=False`` and the renewal pass
        pushes the pending price later. A net downgrade credit is recorded on
        the account, never auto-refunded.

        Raises:
            ProrationInputError: unknown current or target plan
            PaymentFailedError: the proration charge did not succeed
        """
        async with self.locks.hold(billing_account_id):
            # Read under the lock so a queued change sees the previous one committed
            account = self._require_account(billing_account_id)
            if account.status is AccountStatus.CANCELED:
                raise ValidationError("Subscription is canceled; create a new subscription instead")

            cycle = _parse_cycle(new_cycle) if new_cycle else account.billing_cycle
            current_plan = self.plans.get(account.plan_id)
            new_plan = self.plans.get(new_plan_id)
            if new_plan is None:
                raise ProrationInputError(f"Invalid plan configuration: unknown plan {new_plan_id}")
            now = self.clock()
            proration = calculate_proration(
                current_plan,
                new_plan,
                cycle,
                days_remaining_in_period(account.next_billing_date, now),
                effective_date=now,
            )
            if not new_plan.is_premium:
                raise ValidationError("Use cancel_subscription to move to the free plan")
            if new_plan_id == account.plan_id and cycle is account.billing_cycle:
                return PlanChangeResult(proration=proration, account=account, processor_synced=not account.pending_plan_ref)

            plan_ref = new_plan.processor_ref(self.processor.name, cycle)
            if account.subscription_id and not plan_ref:
                raise ValidationError(f"Plan {new_plan_id} has no {self.processor.name} reference for {cycle.value} billing")

            async def _run() -> PlanChangeResult:
                transaction = None
                amount_due = _cents(proration.amount_due)
                if amount_due > ZERO:
                    transaction = await self.charge_account(
                        account,
                        amount_due,
                        description="Plan upgrade prorated payment",
                        metadata={
                            "type": "plan_upgrade",
                            "old_plan": account.plan_id,
                            "new_plan": new_plan_id,
                            "prorated_days": str(proration.days_remaining),
                        },
                        idempotency_key=_plan_change_key(account, new_plan_id, cycle),
                    )
                    if transaction.status is not TransactionStatus.COMPLETED:
                        raise PaymentFailedError("Prorated payment failed", transaction=transaction)

                fields: Dict[str, Any] = {
                    "plan_id": new_plan_id,
                    "billing_cycle": cycle,
                    "amount": new_plan.price_for(cycle),
                    "pending_plan_ref": plan_ref if account.subscription_id else None,
                    "updated_at": now,
                }
                credit = _cents(proration.downgrade_credit)
                if credit > ZERO:
                    fields["pending_downgrade_credit"] = (account.pending_downgrade_credit or ZERO) + credit
                updated = await self.write_account(account.billing_id, fields, operation="change_plan.account")
                await self.refresh_entitlements(updated, operation="change_plan.entitlements")

                synced = True
                if updated.pending_plan_ref:
                    pushed = await self._push_pending_plan(updated, operation="change_plan.processor")
                    synced = pushed is not None
                    updated = pushed or updated
                return PlanChangeResult(proration=proration, account=updated, transaction=transaction, processor_synced=synced)

            result = await asyncio.shield(_run())

        log_event(
            "info",
            "[billing] plan changed",
            user_id=account.user_id,
            billing_id=account.billing_id,
            processor=self.processor.name,
            extra={
                "old_plan": account.plan_id,
                "new_plan": new_plan_id,
                "amount_due": str(_cents(proration.amount_due)),
                "downgrade_credit": str(_cents(proration.downgrade_credit)),
                "processor_synced": result.processor_synced,
            },
        )
        return result

    async def _push_pending_plan(self, account: BillingAccount, *, operation: str) -> Optional[BillingAccount]:
        """Send the account's pending price to the processor. Returns None when the processor call failed."""
        try:
            await self._call(
                "update_subscription",
                lambda: self.processor.update_subscription(
                    account.subscription_id,
                    SubscriptionDelta(plan_ref=account.pending_plan_ref, item_ref=account.subscription_item_ref),
                ),
            )
        except ProcessorError as exc:
            log_event(
                "error",
                "[billing] plan change not yet applied at processor",
                user_id=account.user_id,
                billing_id=account.billing_id,
                processor=self.processor.name,
                error_code=exc.code,
                extra={"plan_ref": account.pending_plan_ref, "error": str(exc)},
            )
            return None
        return await self.write_account(
            account.billing_id,
            {"pending_plan_ref": None, "updated_at": self.clock()},
            operation=f"{operation}.synced",
        )

    async def sync_pending_plan(self, billing_id: str) -> bool:
        """Retry pushing a committed plan change to the processor. True once the processor has it."""
        async with self.locks.hold(billing_id):
            account = self._require_account(billing_id)
            if not account.pending_plan_ref:
                return True
            if account.status is AccountStatus.CANCELED or not account.subscription_id:
                await self.write_account(billing_id, {"pending_plan_ref": None, "updated_at": self.clock()}, operation="plan_sync.dropped")
                return True
            return await asyncio.shield(self._push_pending_plan(account, operation="plan_sync")) is not None

    async def update_subscription(
        self,
        subscription_id: str,
        plan_id: Optional[str] = None,
        billing_cycle: Optional[Union[BillingCycle, str]] = None,
        cancel_at_period_end: Optional[bool] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> BillingAccount:
        """Apply a partial update; plan/cycle changes go through change_plan."""
        account = self._require_account_by_subscription(subscription_id)

        if plan_id is not None or billing_cycle is not None:
            target_plan = plan_id or account.plan_id
            target_cycle = _parse_cycle(billing_cycle) if billing_cycle else account.billing_cycle
            if target_plan != account.plan_id or target_cycle is not account.billing_cycle:
                await self.change_plan(account.billing_id, target_plan, target_cycle)

        if cancel_at_period_end is True:
            await self.cancel_subscription(subscription_id, immediate=False)
        elif cancel_at_period_end is False:
            await self._resume(account.billing_id)

        if metadata:
            async with self.locks.hold(account.billing_id):
                current = self._require_account(account.billing_id)

                async def _run() -> None:
                    await self._call(
                        "update_subscription",
                        lambda: self.processor.update_subscription(subscription_id, SubscriptionDelta(metadata=metadata)),
                    )
                    await self.write_account(
                        current.billing_id,
                        {"metadata": {**current.metadata, **metadata}, "updated_at": self.clock()},
                        operation="update_subscription.metadata",
                    )

                await asyncio.shield(_run())

        return self._require_account(account.billing_id)

    async def _resume(self, billing_id: str) -> None:
        async with self.locks.hold(billing_id):
            account = self._require_account(billing_id)
            if not account.cancel_at_period_end or account.status is AccountStatus.CANCELED:
                return

            async def _run() -> None:
                if account.subscription_id:
                    await self._call(
                        "update_subscription",
                        lambda: self.processor.update_subscription(
                            account.subscription_id, SubscriptionDelta(cancel_at_period_end=False)
                        ),
                    )
                updated = await self.write_account(
                    billing_id,
                    {"cancel_at_period_end": False, "updated_at": self.clock()},
                    operation="resume.account",
                )
                await self.refresh_entitlements(updated, operation="resume.entitlements")

            await asyncio.shield(_run())

    async def cancel_subscription(self, subscription_id: str, immediate: bool = False) -> BillingAccount:
        """
        Cancel a subscription.

        ``immediate`` cancels with the processor now and downgrades the user.
        Otherwise the subscription is flagged to end at the period boundary;
        entitlements stay until ``next_billing_date``, when the renewal pass
        completes the cancellation instead of charging.
        """
        account = self._require_account_by_subscription(subscription_id)

        async with self.locks.hold(account.billing_id):
            account = self._require_account(account.billing_id)
            if account.status is AccountStatus.CANCELED:
                return account

            if immediate:
                result = await asyncio.shield(self.downgrade_account(account, self.clock(), reason="canceled_immediately"))
            else:
                async def _run() -> BillingAccount:
                    await self._call(
                        "update_subscription",
                        lambda: self.processor.update_subscription(
                            subscription_id, SubscriptionDelta(cancel_at_period_end=True)
                        ),
                    )
                    updated = await self.write_account(
                        account.billing_id,
                        {"cancel_at_period_end": True, "updated_at": self.clock()},
                        operation="cancel_subscription.account",
                    )
                    await self.refresh_entitlements(updated, operation="cancel_subscription.entitlements")
                    return updated

                result = await asyncio.shield(_run())

        log_event(
            "info",
            "[billing] subscription canceled",
            user_id=account.user_id,
            billing_id=account.billing_id,
            processor=self.processor.name,
            extra={"immediate": immediate},
        )
        return result

    async def downgrade_account(self, account: BillingAccount, now: int, *, reason: str) -> BillingAccount:
        """
        Move an account to the free tier: canceled, entitlements cleared.

        Callers hold the account lock. Terminal for the cycle; a new
        subscription is required to reactivate.
        """
        if account.subscription_id:
            try:
                await self._call("cancel_subscription", lambda: self.processor.cancel_subscription(account.subscription_id))
            except ProcessorValidationError as exc:
                # Already gone on the processor side
                logger.warning(
                    "[billing] processor cancel rejected during downgrade",
                    extra={"billing_id": account.billing_id, "reason": reason, "error": str(exc)},
                )

        fields = {
            "plan_id": BASELINE_PLAN_ID,
            "amount": ZERO,
            "status": AccountStatus.CANCELED,
            "canceled_at": now,
            "next_billing_date": None,
            "grace_ends_at": None,
            "cancel_at_period_end": False,
            "pending_plan_ref": None,
            "retry_attempts": 0,
            "next_retry_at": None,
            "updated_at": now,
        }
        updated = await self.write_account(account.billing_id, fields, operation=f"downgrade.{reason}")
        snapshot = baseline_snapshot(self._baseline_plan())
        await self._write(
            f"downgrade.{reason}.entitlements",
            lambda: self.store.update_user(account.user_id, snapshot),
            pending_fields=snapshot,
        )
        log_event(
            "info",
            "[billing] account downgraded to basic",
            user_id=account.user_id,
            billing_id=account.billing_id,
            extra={"reason": reason},
        )
        return updated

    # -- payments ----------------------------------------------------------

    async def charge_account(
        self,
        account: BillingAccount,
        amount: Decimal,
        *,
        description: str,
        metadata: Dict[str, str],
        idempotency_key: str,
    ) -> Transaction:
        """
        Charge the account's payment method and append the ledger row.

        Declines come back as a FAILED transaction, not an exception. The
        idempotency key is reused across retries so a retried call never
        charges twice. A processor replay of an already recorded charge
        returns the existing ledger row instead of appending a second one.
        """
        amount = _cents(amount)
        provider_meta = {
            **metadata,
            "billing_id": account.billing_id,
            "user_id": account.user_id,
            IDEMPOTENCY_METADATA_KEY: idempotency_key,
        }
        result = await self._call(
            "process_payment",
            lambda: self.processor.process_payment(amount, account.currency, account.payment_method_id, provider_meta),
        )
        if result.transaction_id:
            recorded = self.store.get_transaction_by_processor_id(result.transaction_id)
            if recorded is not None and recorded.metadata.get("idempotency_key") == idempotency_key:
                return recorded

        now = self.clock()
        if result.succeeded:
            status = TransactionStatus.COMPLETED
        elif result.redirect_url or result.status in ("processing", "pending", "created", "approved"):
            status = TransactionStatus.PENDING
        else:
            status = TransactionStatus.FAILED
        fees = card_fees(amount) if status is TransactionStatus.COMPLETED else ZERO
        txn_metadata: Dict[str, Any] = {**metadata, "processor": self.processor.name, "idempotency_key": idempotency_key}
        if result.redirect_url:
            txn_metadata["redirect_url"] = result.redirect_url

        transaction = Transaction(
            id=_new_id("txn"),
            type=TransactionType.PAYMENT,
            amount=amount,
            currency=account.currency,
            status=status,
            user_id=account.user_id,
            processor_transaction_id=result.transaction_id or None,
            billing_account_id=account.billing_id,
            fees=fees,
            net_amount=amount - fees,
            description=description,
            metadata=txn_metadata,
            created_at=now,
            completed_at=now if status is TransactionStatus.COMPLETED else None,
        )
        await self._write(
            "record_transaction",
            lambda: self.store.create_transaction(transaction),
            pending_fields={"transaction_id": transaction.id, "processor_transaction_id": transaction.processor_transaction_id},
        )
        if status is not TransactionStatus.COMPLETED:
            log_event(
                "warning",
                "[billing] payment not completed",
                user_id=account.user_id,
                billing_id=account.billing_id,
                processor=self.processor.name,
                extra={"status": result.status, "amount": str(amount)},
            )
        return transaction

    async def process_refund(
        self,
        transaction_id: str,
        amount: Optional[Decimal] = None,
        reason: Optional[str] = None,
    ) -> Transaction:
        """
        Refund a completed payment, in full or in part.

        Writes a new refund transaction; the original row is never changed.
        Refunds are attempted once: a timed-out refund is reported, not
        blindly resent.
        """
        original = self.store.get_transaction(transaction_id) or self.store.get_transaction_by_processor_id(transaction_id)
        if original is None:
            raise NotFoundError(f"Transaction not found: {transaction_id}")
        if original.type is not TransactionType.PAYMENT or original.status is not TransactionStatus.COMPLETED:
            raise ValidationError("Only completed payments can be refunded")
        if not original.processor_transaction_id:
            raise ValidationError("Transaction has no processor reference")
        if amount is not None:
            amount = _cents(amount)
            if amount <= ZERO or amount > original.amount:
                raise ValidationError("Refund amount must be positive and no more than the original payment")
        refund_amount = amount if amount is not None else original.amount

        lock_key = original.billing_account_id or f"user:{original.user_id}"
        async with self.locks.hold(lock_key):
            async def _run() -> Transaction:
                result = await self._call(
                    "process_refund",
                    lambda: self.processor.process_refund(original.processor_transaction_id, amount, reason),
                    policy=replace(self.retry_policy, max_attempts=1),
                )
                now = self.clock()
                if result.status in SUCCESS_REFUND_STATUSES:
                    status = TransactionStatus.COMPLETED
                elif result.status in FAILED_REFUND_STATUSES:
                    status = TransactionStatus.FAILED
                else:
                    status = TransactionStatus.PENDING
                refund = Transaction(
                    id=_new_id("txn"),
                    type=TransactionType.REFUND,
                    amount=refund_amount,
                    currency=original.currency,
                    status=status,
                    user_id=original.user_id,
                    processor_transaction_id=result.refund_id,
                    billing_account_id=original.billing_account_id,
                    fees=ZERO,
                    net_amount=refund_amount,
                    description=f"Refund of {original.id}",
                    metadata={"original_transaction_id": original.id, "reason": reason or ""},
                    created_at=now,
                    completed_at=now if status is TransactionStatus.COMPLETED else None,
                )
                await self._write(
                    "process_refund.transaction",
                    lambda: self.store.create_transaction(refund),
                    pending_fields={"refund_id": result.refund_id, "original_transaction_id": original.id},
                )
                await self._settle_downgrade_credit(original.billing_account_id, refund)
                return refund

            refund = await asyncio.shield(_run())

        log_event(
            "info",
            "[billing] refund processed",
            user_id=original.user_id,
            billing_id=original.billing_account_id,
            processor=self.processor.name,
            extra={"amount": str(refund_amount), "status": refund.status.value},
        )
        return refund

    async def _settle_downgrade_credit(self, billing_id: Optional[str], refund: Transaction) -> None:
        """Draw a completed refund down against any recorded downgrade credit."""
        if not billing_id or refund.status is TransactionStatus.FAILED:
            return
        account = self.store.get_billing_account(billing_id)
        if account is None or not account.pending_downgrade_credit:
            return
        remaining = max(ZERO, account.pending_downgrade_credit - refund.amount)
        await self.write_account(
            billing_id,
            {"pending_downgrade_credit": remaining if remaining > ZERO else None, "updated_at": self.clock()},
            operation="process_refund.credit",
        )

    # -- renewals ----------------------------------------------------------

    async def process_automatic_renewals(
        self, now_ms: Optional[int] = None, lookahead_ms: Optional[int] = None
    ) -> RenewalReport:
        if lookahead_ms is None:
            lookahead_ms = self.cfg.RENEWAL_LOOKAHEAD_SECONDS * 1000 or DEFAULT_LOOKAHEAD_MS
        return await self.scheduler.run_once(now_ms=now_ms, lookahead_ms=lookahead_ms)

    # -- status ------------------------------------------------------------

    def get_billing_status(self, user_id: str) -> Dict[str, Any]:
        """
        Get user's billing status.

        Returns:
            {
                "enabled": bool,
                "processor": str,
                "plan_id": str,
                "status": str | None,
                "billing_cycle": str | None,
                "next_billing_date": int | None,
                "cancel_at_period_end": bool,
                "grace_ends_at": int | None,
                "pending_downgrade_credit": str | None,
            }
        """
        account = self.store.get_billing_account_by_user(user_id)
        if account is None:
            return {
                "enabled": True,
                "processor": self.processor.name,
                "plan_id": BASELINE_PLAN_ID,
                "status": None,
                "billing_cycle": None,
                "next_billing_date": None,
                "cancel_at_period_end": False,
                "grace_ends_at": None,
                "pending_downgrade_credit": None,
            }
        credit = account.pending_downgrade_credit
        return {
            "enabled": True,
            "processor": account.processor or self.processor.name,
            "plan_id": account.plan_id,
            "status": account.status.value,
            "billing_cycle": account.billing_cycle.value,
            "next_billing_date": account.next_billing_date,
            "cancel_at_period_end": account.cancel_at_period_end,
            "grace_ends_at": account.grace_ends_at,
            "pending_downgrade_credit": str(credit) if credit is not None else None,
        }

    # -- webhooks ----------------------------------------------------------

    async def handle_webhook(
        self,
        raw_body: bytes,
        signature_header: SignatureHeader,
        provider_name: str,
    ) -> WebhookResult:
        """
        Process billing webhook event (idempotent).

        1. Verify signature
        2. Normalize to a canonical action (unknown types are not handled)
        3. Check idempotency (skip if already processed)
        4. Apply state changes
        5. Mark as processed

        Always returns a result; failures are reported in ``error``.
        """
        processor = self.webhook_processors.get((provider_name or "").lower())
        if processor is None:
            return WebhookResult(handled=False, error=f"Unsupported processor: {provider_name}")

        try:
            event = await processor.verify_and_parse_webhook(raw_body, signature_header)
        except WebhookSignatureError as e:
            logger.warning("[billing] webhook rejected", extra={"processor": provider_name, "error": str(e)})
            return WebhookResult(handled=False, error=str(e))
        except ProcessorError as e:
            logger.warning("[billing] webhook verification unavailable", extra={"processor": provider_name, "error": str(e)})
            return WebhookResult(handled=False, error=str(e))

        action = normalize_event(event)
        if action is None:
            return WebhookResult(handled=False)

        payload_hash = hashlib.sha256(raw_body).hexdigest()
        # Concurrent deliveries of one event queue here; the second sees it processed
        with correlation_scope(f"{action.processor}:{action.event_id}"):
            try:
                async with self.locks.hold(f"event:{action.processor}:{action.event_id}"):
                    return await self._process_action(action, payload_hash)
            except AccountBusyError as e:
                logger.warning("[billing] webhook event is locked elsewhere", extra={"processor": action.processor, "event_id": action.event_id})
                return WebhookResult(handled=False, action=action.action.value, data=action.data, error=str(e))
            except Exception as e:
                logger.error("[billing] webhook event lock failed", exc_info=True, extra={"processor": action.processor, "event_id": action.event_id})
                return WebhookResult(handled=False, action=action.action.value, data=action.data, error=str(e))

    async def _process_action(self, action: CanonicalWebhookAction, payload_hash: str) -> WebhookResult:
        log_context = {"processor": action.processor, "event_id": action.event_id, "event_type": action.event_type}
        try:
            first_delivery = self.store.record_webhook_event(action.processor, action.event_id, action.event_type, payload_hash)
        except Exception as e:
            logger.error("[billing] webhook event could not be recorded", exc_info=True, extra=log_context)
            return WebhookResult(handled=False, action=action.action.value, data=action.data, error=str(e))
        if not first_delivery:
            logger.info("[billing] duplicate webhook skipped", extra=log_context)
            return WebhookResult(handled=True, action=action.action.value, data=action.data, duplicate=True)

        try:
            await self._apply_webhook_action(action)
        except Exception as e:
            logger.error("[billing] webhook processing failed", exc_info=True, extra=log_context)
            self._mark_event(action, processed=False, error=str(e))
            return WebhookResult(handled=False, action=action.action.value, data=action.data, error=str(e))

        mark_error = self._mark_event(action, processed=True)
        if mark_error:
            # Redelivery replays the event; every action is safe to apply twice
            return WebhookResult(handled=False, action=action.action.value, data=action.data, error=mark_error)
        return WebhookResult(handled=True, action=action.action.value, data=action.data)

    def _mark_event(self, action: CanonicalWebhookAction, *, processed: bool, error: Optional[str] = None) -> Optional[str]:
        """Record the event outcome. Returns the store error, if any."""
        try:
            self.store.mark_webhook_event(action.processor, action.event_id, processed=processed, error=error)
        except Exception as e:
            logger.error(
                "[billing] webhook event outcome could not be recorded",
                exc_info=True,
                extra={"processor": action.processor, "event_id": action.event_id, "processed": processed},
            )
            return str(e)
        return None

    def _find_account_for(self, action: CanonicalWebhookAction) -> Optional[BillingAccount]:
        data = action.data
        if data.get("subscription_id"):
            account = self.store.get_billing_account_by_subscription(data["subscription_id"])
            if account:
                return account
        if data.get("customer_id"):
            account = self.store.get_billing_account_by_customer(data["customer_id"])
            if account:
                return account
        for key in ("billing_id", "custom_id"):
            if data.get(key):
                account = self.store.get_billing_account(data[key])
                if account:
                    return account
        if data.get("payment_id"):
            transaction = self.store.get_transaction_by_processor_id(data["payment_id"])
            if transaction and transaction.billing_account_id:
                return self.store.get_billing_account(transaction.billing_account_id)
        return None

    async def _apply_webhook_action(self, action: CanonicalWebhookAction) -> None:
        if action.action is WebhookAction.DISPUTE_CREATED:
            await self._record_dispute(action)
            return

        located = self._find_account_for(action)
        if located is None:
            logger.info(
                "[billing] webhook has no matching billing account",
                extra={"processor": action.processor, "event_type": action.event_type},
            )
            return

        async with self.locks.hold(located.billing_id):
            account = self._require_account(located.billing_id)
            now = self.clock()
            kind = action.action

            if kind is WebhookAction.PAYMENT_SUCCEEDED:
                await self._recover_past_due(account, now)
            elif kind in (WebhookAction.SUBSCRIPTION_PAYMENT_FAILED, WebhookAction.SUBSCRIPTION_SUSPENDED):
                if account.status in (AccountStatus.ACTIVE, AccountStatus.TRIALING):
                    await self.write_account(
                        account.billing_id,
                        {
                            "status": AccountStatus.PAST_DUE,
                            "grace_ends_at": account.grace_ends_at or now + self.cfg.GRACE_PERIOD_DAYS * MS_PER_DAY,
                            "updated_at": now,
                        },
                        operation="webhook.past_due",
                    )
            elif kind is WebhookAction.SUBSCRIPTION_CANCELED:
                if account.status is not AccountStatus.CANCELED:
                    # The processor already canceled; only local state moves
                    await self._downgrade_local(account, now, reason="processor_canceled")
            elif kind is WebhookAction.SUBSCRIPTION_ACTIVATED:
                status = str(action.data.get("status") or "").lower()
                if status in ("active", "trialing"):
                    await self._recover_past_due(account, now, advance=False)
                flag = action.data.get("cancel_at_period_end")
                if isinstance(flag, bool) and flag != account.cancel_at_period_end:
                    current = self._require_account(account.billing_id)
                    if current.status is not AccountStatus.CANCELED:
                        updated = await self.write_account(
                            account.billing_id,
                            {"cancel_at_period_end": flag, "updated_at": now},
                            operation="webhook.cancel_flag",
                        )
                        await self.refresh_entitlements(updated, operation="webhook.entitlements")
            elif kind is WebhookAction.SUBSCRIPTION_CREATED:
                if not account.subscription_id and action.data.get("subscription_id"):
                    await self.write_account(
                        account.billing_id,
                        {"subscription_id": action.data["subscription_id"], "updated_at": now},
                        operation="webhook.subscription_created",
                    )
            elif kind is WebhookAction.PAYMENT_FAILED:
                log_event(
                    "warning",
                    "[billing] processor reported payment failure",
                    user_id=account.user_id,
                    billing_id=account.billing_id,
                    processor=action.processor,
                    event_type=action.event_type,
                )

    async def _record_dispute(self, action: CanonicalWebhookAction) -> None:
        """
        File a dispute opened against a payment.

        The disputed payment and its account are linked when they are on
        file; a dispute for an unknown payment is still recorded. Priority
        follows the disputed amount.
        """
        data = action.data
        if not data.get("dispute_id"):
            raise ValidationError("Dispute event carries no dispute id")
        transaction = self.store.get_transaction_by_processor_id(data["payment_id"]) if data.get("payment_id") else None
        account = self._find_account_for(action)
        amount = data.get("amount")
        if amount is None:
            amount = transaction.amount if transaction else ZERO
        dispute = DisputeCase(
            id=_new_id("dsp"),
            processor=action.processor,
            processor_dispute_id=data["dispute_id"],
            transaction_id=transaction.id if transaction else None,
            processor_transaction_id=data.get("payment_id"),
            billing_account_id=account.billing_id if account else None,
            user_id=account.user_id if account else (transaction.user_id if transaction else None),
            amount=amount,
            currency=data.get("currency") or (transaction.currency if transaction else None),
            reason=data.get("reason"),
            priority=dispute_priority(amount),
            respond_by=data.get("respond_by"),
            created_at=self.clock(),
        )
        created = await self._write(
            "webhook.dispute",
            lambda: self.store.create_dispute(dispute),
            pending_fields={"processor_dispute_id": dispute.processor_dispute_id},
        )
        if not created:
            return
        log_event(
            "warning",
            "[billing] payment disputed",
            user_id=dispute.user_id,
            billing_id=dispute.billing_account_id,
            processor=action.processor,
            event_type=action.event_type,
            extra={
                "dispute_id": dispute.processor_dispute_id,
                "amount": str(amount),
                "priority": dispute.priority,
                "reason": dispute.reason,
            },
        )

    async def _recover_past_due(self, account: BillingAccount, now: int, *, advance: bool = True) -> None:
        """A past-due account whose payment went through is active again."""
        if account.status is not AccountStatus.PAST_DUE:
            return
        fields: Dict[str, Any] = {
            "status": AccountStatus.ACTIVE,
            "grace_ends_at": None,
            "retry_attempts": 0,
            "next_retry_at": None,
            "updated_at": now,
        }
        if advance and account.next_billing_date is not None:
            fields["next_billing_date"] = add_cycle(account.next_billing_date, account.billing_cycle.value)
        updated = await self.write_account(account.billing_id, fields, operation="webhook.recovered")
        await self.refresh_entitlements(updated, operation="webhook.entitlements")

    async def _downgrade_local(self, account: BillingAccount, now: int, *, reason: str) -> None:
        fields = {
            "plan_id": BASELINE_PLAN_ID,
            "amount": ZERO,
            "status": AccountStatus.CANCELED,
            "canceled_at": now,
            "next_billing_date": None,
            "grace_ends_at": None,
            "cancel_at_period_end": False,
            "pending_plan_ref": None,
            "retry_attempts": 0,
            "next_retry_at": None,
            "updated_at": now,
        }
        updated = await self.write_account(account.billing_id, fields, operation=f"downgrade.{reason}")
        await self.refresh_entitlements(updated, operation=f"downgrade.{reason}.entitlements")

    async def aclose(self) -> None:
        for processor in {id(p): p for p in self.webhook_processors.values()}.values():
            await processor.aclose()
