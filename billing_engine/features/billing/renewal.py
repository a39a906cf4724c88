"""
Renewal scheduler.

One ``run_once`` pass:

1. Pushes plan changes that were committed locally but not yet accepted by
   the processor.
2. Retries the renewal charge for past-due accounts whose next retry is
   due. Retries back off exponentially (base, 2x base, 4x base, capped) and
   stop after the configured number of attempts; a successful retry
   reactivates the account and advances the cycle.
3. Downgrades past-due accounts whose grace deadline has passed.
4. For every active/trialing account due within the lookahead window:
   - flagged ``cancel_at_period_end`` and at its billing date: canceled
   - otherwise charged; success advances ``next_billing_date`` by exactly
     one cycle from the previous date, failure moves the account to
     ``past_due`` with a grace deadline and schedules the first retry,
     leaving the date unchanged.

Grace deadlines and retry times are stored on the account and evaluated on
every pass, so a restart never loses a pending downgrade or retry. A failure
on one account is logged and counted; it never stops the pass.
"""
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, List, Optional

from billing_engine.core.clock import MS_PER_DAY, MS_PER_HOUR, Clock, add_cycle
from billing_engine.core.logging import correlation_scope, log_event
from billing_engine.features.billing.locks import SingleFlight
from billing_engine.features.billing.provider import ProcessorValidationError
from billing_engine.models.billing import AccountStatus, BillingAccount, Transaction, TransactionStatus

if TYPE_CHECKING:
    from billing_engine.features.billing.service import SubscriptionLifecycleManager

logger = logging.getLogger(__name__)

DEFAULT_LOOKAHEAD_MS = MS_PER_HOUR

RENEWED = "renewed"
FAILED = "failed"
CANCELED = "canceled"
SKIPPED = "skipped"


@dataclass
class RenewalReport:
    started_at: Optional[int] = None
    renewed: int = 0
    failed: int = 0
    recovered: int = 0
    retried: int = 0
    downgraded: int = 0
    canceled: int = 0
    plans_synced: int = 0
    skipped: bool = False
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "started_at": self.started_at,
            "renewed": self.renewed,
            "failed": self.failed,
            "recovered": self.recovered,
            "retried": self.retried,
            "downgraded": self.downgraded,
            "canceled": self.canceled,
            "plans_synced": self.plans_synced,
            "skipped": self.skipped,
            "errors": list(self.errors),
        }


def retry_delay_ms(attempt: int, base_hours: int, max_hours: int) -> int:
    """Wait before retry number ``attempt`` (1-based): base * 2^(attempt-1), capped."""
    hours = min(base_hours * 2 ** max(attempt - 1, 0), max_hours)
    return hours * MS_PER_HOUR


class RenewalScheduler:
    def __init__(
        self,
        manager: "SubscriptionLifecycleManager",
        *,
        clock: Clock,
        grace_period_days: int = 7,
        batch_limit: Optional[int] = None,
        retry_max_attempts: int = 3,
        retry_base_hours: int = 24,
        retry_max_hours: int = 168,
    ):
        self.manager = manager
        self.store = manager.store
        self.clock = clock
        self.grace_period_ms = grace_period_days * MS_PER_DAY
        self.batch_limit = batch_limit
        self.retry_max_attempts = retry_max_attempts
        self.retry_base_hours = retry_base_hours
        self.retry_max_hours = retry_max_hours
        self._flight = SingleFlight()

    @property
    def running(self) -> bool:
        return self._flight.running

    async def run_once(self, now_ms: Optional[int] = None, lookahead_ms: int = DEFAULT_LOOKAHEAD_MS) -> RenewalReport:
        """Run one renewal pass. An overlapping call returns a skipped report."""
        async with self._flight.guard() as owner:
            if not owner:
                logger.info("[billing] renewal pass already running, skipping tick")
                return RenewalReport(skipped=True)

            now = now_ms if now_ms is not None else self.clock()
            report = RenewalReport(started_at=now)
            with correlation_scope():
                await self._sync_pending_plans(report)
                await self._retry_past_due(now, report)
                await self._expire_grace_periods(now, report)
                await self._renew_due_accounts(now, now + lookahead_ms, report)

            logger.info("[billing] renewal pass complete", extra=report.to_dict())
            return report

    async def _sync_pending_plans(self, report: RenewalReport) -> None:
        for account in self.store.list_pending_plan_syncs(self.batch_limit):
            try:
                if await self.manager.sync_pending_plan(account.billing_id):
                    report.plans_synced += 1
            except Exception as exc:
                self._record_error(report, account, exc, "plan_sync")

    async def _retry_past_due(self, now: int, report: RenewalReport) -> None:
        for account in self.store.list_accounts_due_for_retry(now, self.batch_limit):
            try:
                outcome = await self._retry(account.billing_id, now)
            except Exception as exc:
                self._record_error(report, account, exc, "payment_retry")
                continue
            if outcome == RENEWED:
                report.recovered += 1
            elif outcome == FAILED:
                report.retried += 1

    async def _retry(self, billing_id: str, now: int) -> str:
        async with self.manager.locks.hold(billing_id):
            account = self.store.get_billing_account(billing_id)
            if account is None or account.status is not AccountStatus.PAST_DUE:
                return SKIPPED
            if account.next_retry_at is None or account.next_retry_at > now:
                return SKIPPED
            # Past the deadline the downgrade step takes over
            if account.grace_ends_at is not None and account.grace_ends_at <= now:
                return SKIPPED
            if account.next_billing_date is None or account.amount <= 0:
                return SKIPPED

            attempt = account.retry_attempts + 1
            transaction = await self._charge(account, f"renewal-{account.billing_id}-{account.next_billing_date}-r{attempt}")
            if transaction is not None and transaction.status is TransactionStatus.COMPLETED:
                await self._advance(account, now)
                return RENEWED

            if attempt >= self.retry_max_attempts:
                next_retry_at = None
            else:
                next_retry_at = now + retry_delay_ms(attempt + 1, self.retry_base_hours, self.retry_max_hours)
            await self.manager.write_account(
                account.billing_id,
                {"retry_attempts": attempt, "next_retry_at": next_retry_at, "updated_at": now},
                operation="renewal.retry_failed",
            )
            log_event(
                "warning",
                "[billing] payment retry failed",
                billing_id=account.billing_id,
                user_id=account.user_id,
                extra={"attempt": attempt, "next_retry_at": next_retry_at, "grace_ends_at": account.grace_ends_at},
            )
            return FAILED

    async def _expire_grace_periods(self, now: int, report: RenewalReport) -> None:
        for account in self.store.list_expired_grace_accounts(now, self.batch_limit):
            try:
                if await self._expire_grace(account.billing_id, now):
                    report.downgraded += 1
            except Exception as exc:
                self._record_error(report, account, exc, "grace_expiry")

    async def _expire_grace(self, billing_id: str, now: int) -> bool:
        async with self.manager.locks.hold(billing_id):
            account = self.store.get_billing_account(billing_id)
            # Recovered since it was listed
            if account is None or account.status is not AccountStatus.PAST_DUE:
                return False
            if account.grace_ends_at is None or account.grace_ends_at > now:
                return False
            await self.manager.downgrade_account(account, now, reason="grace_period_expired")
            return True

    async def _renew_due_accounts(self, now: int, before: int, report: RenewalReport) -> None:
        for account in self.store.list_accounts_due_for_renewal(before, self.batch_limit):
            try:
                outcome = await self._renew(account.billing_id, now, before)
            except Exception as exc:
                self._record_error(report, account, exc, "renewal")
                continue
            if outcome == RENEWED:
                report.renewed += 1
            elif outcome == FAILED:
                report.failed += 1
            elif outcome == CANCELED:
                report.canceled += 1

    async def _renew(self, billing_id: str, now: int, before: int) -> str:
        async with self.manager.locks.hold(billing_id):
            # Re-read under the lock; a concurrent change may have moved the date
            account = self.store.get_billing_account(billing_id)
            if account is None or account.status not in (AccountStatus.ACTIVE, AccountStatus.TRIALING):
                return SKIPPED
            if account.next_billing_date is None or account.next_billing_date > before:
                return SKIPPED

            if account.cancel_at_period_end:
                if account.next_billing_date > now:
                    return SKIPPED
                await self.manager.downgrade_account(account, now, reason="canceled_at_period_end")
                return CANCELED

            if account.amount <= 0:
                return SKIPPED

            transaction = await self._charge(account, f"renewal-{account.billing_id}-{account.next_billing_date}")
            if transaction is not None and transaction.status is TransactionStatus.COMPLETED:
                await self._advance(account, now)
                return RENEWED

            await self._mark_past_due(account, now)
            return FAILED

    async def _charge(self, account: BillingAccount, idempotency_key: str) -> Optional[Transaction]:
        """Charge one renewal. Returns None when the processor rejected the charge outright."""
        try:
            return await self.manager.charge_account(
                account,
                account.amount,
                description="Subscription renewal",
                metadata={
                    "type": "subscription_renewal",
                    "subscription_id": account.subscription_id or "",
                    "plan": account.plan_id,
                },
                idempotency_key=idempotency_key,
            )
        except ProcessorValidationError as exc:
            # e.g. no usable payment method
            log_event(
                "warning",
                "[billing] renewal charge rejected",
                billing_id=account.billing_id,
                user_id=account.user_id,
                processor=self.manager.processor.name,
                error_code=exc.code,
                extra={"error": str(exc)},
            )
            return None

    async def _advance(self, account: BillingAccount, now: int) -> None:
        if account.next_billing_date is None:
            logger.warning("[billing] renewal charged an account with no billing date", extra={"billing_id": account.billing_id})
            return
        next_billing_date = add_cycle(account.next_billing_date, account.billing_cycle.value)
        fields = {
            "status": AccountStatus.ACTIVE,
            "next_billing_date": next_billing_date,
            "grace_ends_at": None,
            "retry_attempts": 0,
            "next_retry_at": None,
            "updated_at": now,
        }
        updated = await self.manager.write_account(account.billing_id, fields, operation="renewal.advance")
        await self.manager.refresh_entitlements(updated, operation="renewal.entitlements")
        log_event(
            "info",
            "[billing] subscription renewed",
            billing_id=account.billing_id,
            user_id=account.user_id,
            extra={"next_billing_date": next_billing_date},
        )

    async def _mark_past_due(self, account: BillingAccount, now: int) -> None:
        grace_ends_at = account.grace_ends_at or now + self.grace_period_ms
        next_retry_at = None
        if self.retry_max_attempts > 0:
            next_retry_at = now + retry_delay_ms(1, self.retry_base_hours, self.retry_max_hours)
        fields = {
            "status": AccountStatus.PAST_DUE,
            "grace_ends_at": grace_ends_at,
            "retry_attempts": 0,
            "next_retry_at": next_retry_at,
            "updated_at": now,
        }
        await self.manager.write_account(account.billing_id, fields, operation="renewal.past_due")
        log_event(
            "warning",
            "[billing] renewal payment failed, grace period started",
            billing_id=account.billing_id,
            user_id=account.user_id,
            extra={"grace_ends_at": grace_ends_at, "next_retry_at": next_retry_at},
        )

    @staticmethod
    def _record_error(report: RenewalReport, account: BillingAccount, exc: Exception, stage: str) -> None:
        report.errors.append(f"{account.billing_id}: {exc}")
        logger.error(
            "[billing] renewal processing failed for account",
            exc_info=True,
            extra={"billing_id": account.billing_id, "stage": stage, "error": str(exc)},
        )
