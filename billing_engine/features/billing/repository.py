"""
Account store.

``AccountStore`` is the persistence contract the lifecycle manager and the
renewal scheduler depend on; ``SqlAccountStore`` implements it with
SQLAlchemy Core over the tables in ``billing_engine.core.database``.
Transactions are append-only: there is no update or delete for them.
"""
import logging
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, ContextManager, Dict, List, Optional, Protocol

from sqlalchemy import and_, delete, insert, or_, select, update
from sqlalchemy.engine import Row
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from billing_engine.core.database import (
    billing_accounts,
    billing_disputes,
    billing_events,
    billing_locks,
    billing_transactions,
    get_db_session,
    users,
)
from billing_engine.core.errors import ConflictError, NotFoundError
from billing_engine.models.billing import (
    AccountStatus,
    BillingAccount,
    BillingCycle,
    DisputeCase,
    Transaction,
    TransactionStatus,
    TransactionType,
)

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")

RENEWABLE_STATUSES = (AccountStatus.ACTIVE.value, AccountStatus.TRIALING.value)

USER_FIELDS = {
    "email",
    "name",
    "user_type",
    "premium_active",
    "premium_plan",
    "premium_expires_at",
    "membership",
}


class AccountStore(Protocol):
    """Persistence contract for billing accounts, ledger, users and webhook events."""

    def get_billing_account(self, billing_id: str) -> Optional[BillingAccount]: ...

    def get_billing_account_by_user(self, user_id: str) -> Optional[BillingAccount]: ...

    def get_billing_account_by_subscription(self, subscription_id: str) -> Optional[BillingAccount]: ...

    def get_billing_account_by_customer(self, customer_id: str) -> Optional[BillingAccount]: ...

    def create_billing_account(self, account: BillingAccount) -> BillingAccount: ...

    def update_billing_account(self, billing_id: str, fields: Dict[str, Any]) -> BillingAccount: ...

    def create_transaction(self, transaction: Transaction) -> Transaction: ...

    def get_transaction(self, transaction_id: str) -> Optional[Transaction]: ...

    def get_transaction_by_processor_id(self, processor_transaction_id: str) -> Optional[Transaction]: ...

    def list_accounts_due_for_renewal(self, before_ms: int, limit: Optional[int] = None) -> List[BillingAccount]: ...

    def list_expired_grace_accounts(self, now_ms: int, limit: Optional[int] = None) -> List[BillingAccount]: ...

    def list_accounts_due_for_retry(self, now_ms: int, limit: Optional[int] = None) -> List[BillingAccount]: ...

    def list_pending_plan_syncs(self, limit: Optional[int] = None) -> List[BillingAccount]: ...

    def get_user(self, user_id: str) -> Optional[Dict[str, Any]]: ...

    def update_user(self, user_id: str, fields: Dict[str, Any]) -> None: ...

    def record_webhook_event(self, processor: str, event_id: str, event_type: str, payload_hash: str) -> bool: ...

    def mark_webhook_event(
        self, processor: str, event_id: str, *, processed: bool, error: Optional[str] = None
    ) -> None: ...

    def create_dispute(self, dispute: DisputeCase) -> bool: ...

    def get_dispute(self, processor: str, processor_dispute_id: str) -> Optional[DisputeCase]: ...

    def acquire_lock(self, lock_key: str, owner: str, now_ms: int, ttl_ms: int) -> bool: ...

    def release_lock(self, lock_key: str, owner: str) -> None: ...


def _money(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    return Decimal(str(value)).quantize(CENTS)


def _db_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return value.quantize(CENTS)
    return value


def _account_from_row(row: Row) -> BillingAccount:
    m = row._mapping
    return BillingAccount(
        billing_id=m["billing_id"],
        user_id=m["user_id"],
        plan_id=m["plan_id"],
        billing_cycle=BillingCycle(m["billing_cycle"]),
        processor=m["processor"],
        customer_id=m["customer_id"],
        payment_method_id=m["payment_method_id"],
        subscription_id=m["subscription_id"],
        subscription_item_ref=m["subscription_item_ref"],
        status=AccountStatus(m["status"]),
        amount=_money(m["amount"]) or Decimal("0.00"),
        currency=m["currency"],
        next_billing_date=m["next_billing_date"],
        trial_ends_at=m["trial_ends_at"],
        canceled_at=m["canceled_at"],
        grace_ends_at=m["grace_ends_at"],
        cancel_at_period_end=bool(m["cancel_at_period_end"]),
        pending_downgrade_credit=_money(m["pending_downgrade_credit"]),
        retry_attempts=m["retry_attempts"] or 0,
        next_retry_at=m["next_retry_at"],
        pending_plan_ref=m["pending_plan_ref"],
        metadata=dict(m["metadata_json"] or {}),
        created_at=m["created_at"],
        updated_at=m["updated_at"],
    )


def _account_values(fields: Dict[str, Any]) -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    for key, value in fields.items():
        column = "metadata_json" if key == "metadata" else key
        if column not in billing_accounts.c:
            raise ValueError(f"Unknown billing account field: {key}")
        values[column] = _db_value(value)
    return values


def _transaction_from_row(row: Row) -> Transaction:
    m = row._mapping
    return Transaction(
        id=m["id"],
        processor_transaction_id=m["processor_transaction_id"],
        type=TransactionType(m["type"]),
        amount=_money(m["amount"]) or Decimal("0.00"),
        currency=m["currency"],
        status=TransactionStatus(m["status"]),
        user_id=m["user_id"],
        billing_account_id=m["billing_account_id"],
        fees=_money(m["fees"]) or Decimal("0.00"),
        net_amount=_money(m["net_amount"]) or Decimal("0.00"),
        description=m["description"] or "",
        metadata=dict(m["metadata_json"] or {}),
        created_at=m["created_at"],
        completed_at=m["completed_at"],
    )


class SqlAccountStore:
    """SQLAlchemy Core implementation of AccountStore."""

    def __init__(self, session_scope: Callable[[], ContextManager[Session]] = get_db_session):
        self._session_scope = session_scope

    # -- billing accounts ------------------------------------------------

    def _fetch_account(self, session: Session, *criteria) -> Optional[BillingAccount]:
        row = session.execute(select(billing_accounts).where(*criteria)).fetchone()
        return _account_from_row(row) if row else None

    def get_billing_account(self, billing_id: str) -> Optional[BillingAccount]:
        with self._session_scope() as session:
            return self._fetch_account(session, billing_accounts.c.billing_id == billing_id)

    def get_billing_account_by_user(self, user_id: str) -> Optional[BillingAccount]:
        with self._session_scope() as session:
            return self._fetch_account(session, billing_accounts.c.user_id == user_id)

    def get_billing_account_by_subscription(self, subscription_id: str) -> Optional[BillingAccount]:
        with self._session_scope() as session:
            return self._fetch_account(session, billing_accounts.c.subscription_id == subscription_id)

    def get_billing_account_by_customer(self, customer_id: str) -> Optional[BillingAccount]:
        with self._session_scope() as session:
            return self._fetch_account(session, billing_accounts.c.customer_id == customer_id)

    def create_billing_account(self, account: BillingAccount) -> BillingAccount:
        values = _account_values({
            "billing_id": account.billing_id,
            "user_id": account.user_id,
            "plan_id": account.plan_id,
            "billing_cycle": account.billing_cycle,
            "processor": account.processor,
            "customer_id": account.customer_id,
            "payment_method_id": account.payment_method_id,
            "subscription_id": account.subscription_id,
            "subscription_item_ref": account.subscription_item_ref,
            "status": account.status,
            "amount": account.amount,
            "currency": account.currency,
            "next_billing_date": account.next_billing_date,
            "trial_ends_at": account.trial_ends_at,
            "canceled_at": account.canceled_at,
            "grace_ends_at": account.grace_ends_at,
            "cancel_at_period_end": account.cancel_at_period_end,
            "pending_downgrade_credit": account.pending_downgrade_credit,
            "retry_attempts": account.retry_attempts,
            "next_retry_at": account.next_retry_at,
            "pending_plan_ref": account.pending_plan_ref,
            "metadata": account.metadata,
            "created_at": account.created_at,
            "updated_at": account.updated_at,
        })
        try:
            with self._session_scope() as session:
                session.execute(insert(billing_accounts).values(**values))
        except IntegrityError as e:
            raise ConflictError(f"Billing account already exists for user {account.user_id}") from e
        return account

    def update_billing_account(self, billing_id: str, fields: Dict[str, Any]) -> BillingAccount:
        values = _account_values(fields)
        with self._session_scope() as session:
            if values:
                result = session.execute(
                    update(billing_accounts)
                    .where(billing_accounts.c.billing_id == billing_id)
                    .values(**values)
                )
                if result.rowcount == 0:
                    raise NotFoundError(f"Billing account not found: {billing_id}")
            account = self._fetch_account(session, billing_accounts.c.billing_id == billing_id)
        if account is None:
            raise NotFoundError(f"Billing account not found: {billing_id}")
        return account

    def list_accounts_due_for_renewal(self, before_ms: int, limit: Optional[int] = None) -> List[BillingAccount]:
        """Active or trialing accounts whose next billing date is at or before ``before_ms``."""
        query = (
            select(billing_accounts)
            .where(
                and_(
                    billing_accounts.c.status.in_(RENEWABLE_STATUSES),
                    billing_accounts.c.next_billing_date.is_not(None),
                    billing_accounts.c.next_billing_date <= before_ms,
                )
            )
            .order_by(billing_accounts.c.next_billing_date)
        )
        if limit:
            query = query.limit(limit)
        with self._session_scope() as session:
            return [_account_from_row(row) for row in session.execute(query).fetchall()]

    def list_expired_grace_accounts(self, now_ms: int, limit: Optional[int] = None) -> List[BillingAccount]:
        query = (
            select(billing_accounts)
            .where(
                and_(
                    billing_accounts.c.status == AccountStatus.PAST_DUE.value,
                    billing_accounts.c.grace_ends_at.is_not(None),
                    billing_accounts.c.grace_ends_at <= now_ms,
                )
            )
            .order_by(billing_accounts.c.grace_ends_at)
        )
        if limit:
            query = query.limit(limit)
        with self._session_scope() as session:
            return [_account_from_row(row) for row in session.execute(query).fetchall()]

    def list_accounts_due_for_retry(self, now_ms: int, limit: Optional[int] = None) -> List[BillingAccount]:
        """Past-due accounts whose next charge retry is due."""
        query = (
            select(billing_accounts)
            .where(
                and_(
                    billing_accounts.c.status == AccountStatus.PAST_DUE.value,
                    billing_accounts.c.next_retry_at.is_not(None),
                    billing_accounts.c.next_retry_at <= now_ms,
                )
            )
            .order_by(billing_accounts.c.next_retry_at)
        )
        if limit:
            query = query.limit(limit)
        with self._session_scope() as session:
            return [_account_from_row(row) for row in session.execute(query).fetchall()]

    def list_pending_plan_syncs(self, limit: Optional[int] = None) -> List[BillingAccount]:
        query = (
            select(billing_accounts)
            .where(
                and_(
                    billing_accounts.c.pending_plan_ref.is_not(None),
                    billing_accounts.c.status != AccountStatus.CANCELED.value,
                )
            )
            .order_by(billing_accounts.c.updated_at)
        )
        if limit:
            query = query.limit(limit)
        with self._session_scope() as session:
            return [_account_from_row(row) for row in session.execute(query).fetchall()]

    # -- transactions ----------------------------------------------------

    def create_transaction(self, transaction: Transaction) -> Transaction:
        try:
            with self._session_scope() as session:
                session.execute(
                    insert(billing_transactions).values(
                        id=transaction.id,
                        processor_transaction_id=transaction.processor_transaction_id,
                        type=transaction.type.value,
                        amount=_db_value(transaction.amount),
                        currency=transaction.currency,
                        status=transaction.status.value,
                        user_id=transaction.user_id,
                        billing_account_id=transaction.billing_account_id,
                        fees=_db_value(transaction.fees),
                        net_amount=_db_value(transaction.net_amount),
                        description=transaction.description,
                        metadata_json=transaction.metadata,
                        created_at=transaction.created_at,
                        completed_at=transaction.completed_at,
                    )
                )
        except IntegrityError as e:
            raise ConflictError(f"Transaction already recorded: {transaction.id}") from e
        return transaction

    def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        with self._session_scope() as session:
            row = session.execute(
                select(billing_transactions).where(billing_transactions.c.id == transaction_id)
            ).fetchone()
            return _transaction_from_row(row) if row else None

    def get_transaction_by_processor_id(self, processor_transaction_id: str) -> Optional[Transaction]:
        """The payment row for a processor charge id, if one was recorded."""
        with self._session_scope() as session:
            row = session.execute(
                select(billing_transactions)
                .where(
                    and_(
                        billing_transactions.c.processor_transaction_id == processor_transaction_id,
                        billing_transactions.c.type == TransactionType.PAYMENT.value,
                    )
                )
                .order_by(billing_transactions.c.created_at.desc())
                .limit(1)
            ).fetchone()
            return _transaction_from_row(row) if row else None

    def list_transactions(self, billing_account_id: str) -> List[Transaction]:
        with self._session_scope() as session:
            rows = session.execute(
                select(billing_transactions)
                .where(billing_transactions.c.billing_account_id == billing_account_id)
                .order_by(billing_transactions.c.created_at)
            ).fetchall()
            return [_transaction_from_row(row) for row in rows]

    # -- users -----------------------------------------------------------

    def get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        with self._session_scope() as session:
            row = session.execute(select(users).where(users.c.user_id == user_id)).fetchone()
            return dict(row._mapping) if row else None

    def update_user(self, user_id: str, fields: Dict[str, Any]) -> None:
        """Write entitlement fields onto the user, creating the row if needed."""
        unknown = set(fields) - USER_FIELDS
        if unknown:
            raise ValueError(f"Unknown user fields: {sorted(unknown)}")
        with self._session_scope() as session:
            exists = session.execute(
                select(users.c.user_id).where(users.c.user_id == user_id)
            ).fetchone()
            if exists:
                if fields:
                    session.execute(
                        update(users)
                        .where(users.c.user_id == user_id)
                        .values(**fields, updated_at=datetime.now(timezone.utc))
                    )
            else:
                session.execute(insert(users).values(user_id=user_id, **fields))

    # -- webhook events --------------------------------------------------

    def record_webhook_event(self, processor: str, event_id: str, event_type: str, payload_hash: str) -> bool:
        """
        Record a webhook delivery.

        Returns False when the event was already processed; a delivery whose
        earlier attempt failed is handed back for another try.
        """
        try:
            with self._session_scope() as session:
                session.execute(
                    insert(billing_events).values(
                        processor=processor,
                        event_id=event_id,
                        event_type=event_type,
                        payload_hash=payload_hash,
                        processed=False,
                    )
                )
            return True
        except IntegrityError:
            # Already seen, possibly by a concurrent delivery
            with self._session_scope() as session:
                row = session.execute(
                    select(billing_events.c.processed).where(
                        and_(
                            billing_events.c.processor == processor,
                            billing_events.c.event_id == event_id,
                        )
                    )
                ).fetchone()
            return not (row and row[0])

    def mark_webhook_event(
        self, processor: str, event_id: str, *, processed: bool, error: Optional[str] = None
    ) -> None:
        with self._session_scope() as session:
            session.execute(
                update(billing_events)
                .where(
                    and_(
                        billing_events.c.processor == processor,
                        billing_events.c.event_id == event_id,
                    )
                )
                .values(
                    processed=processed,
                    processed_at=datetime.now(timezone.utc) if processed else None,
                    error=error,
                )
            )

    # -- disputes --------------------------------------------------------

    def create_dispute(self, dispute: DisputeCase) -> bool:
        """Record a dispute. Returns False when the processor's dispute id is already on file."""
        try:
            with self._session_scope() as session:
                session.execute(
                    insert(billing_disputes).values(
                        id=dispute.id,
                        processor=dispute.processor,
                        processor_dispute_id=dispute.processor_dispute_id,
                        transaction_id=dispute.transaction_id,
                        processor_transaction_id=dispute.processor_transaction_id,
                        billing_account_id=dispute.billing_account_id,
                        user_id=dispute.user_id,
                        amount=_db_value(dispute.amount),
                        currency=dispute.currency,
                        reason=dispute.reason,
                        status=dispute.status,
                        priority=dispute.priority,
                        respond_by=dispute.respond_by,
                        created_at=dispute.created_at,
                    )
                )
        except IntegrityError:
            return False
        return True

    def get_dispute(self, processor: str, processor_dispute_id: str) -> Optional[DisputeCase]:
        with self._session_scope() as session:
            row = session.execute(
                select(billing_disputes).where(
                    and_(
                        billing_disputes.c.processor == processor,
                        billing_disputes.c.processor_dispute_id == processor_dispute_id,
                    )
                )
            ).fetchone()
        if row is None:
            return None
        m = row._mapping
        return DisputeCase(
            id=m["id"],
            processor=m["processor"],
            processor_dispute_id=m["processor_dispute_id"],
            transaction_id=m["transaction_id"],
            processor_transaction_id=m["processor_transaction_id"],
            billing_account_id=m["billing_account_id"],
            user_id=m["user_id"],
            amount=_money(m["amount"]),
            currency=m["currency"],
            reason=m["reason"],
            status=m["status"],
            priority=m["priority"],
            respond_by=m["respond_by"],
            created_at=m["created_at"],
        )

    # -- account leases --------------------------------------------------

    def acquire_lock(self, lock_key: str, owner: str, now_ms: int, ttl_ms: int) -> bool:
        """
        Claim ``lock_key`` for ``owner`` until ``now_ms + ttl_ms``.

        Succeeds when the key is free, already held by ``owner``, or held
        under an expired lease. The claim is a single conditional UPDATE or
        INSERT, so two processes can never both win it.
        """
        expires_at = now_ms + ttl_ms
        with self._session_scope() as session:
            result = session.execute(
                update(billing_locks)
                .where(
                    and_(
                        billing_locks.c.lock_key == lock_key,
                        or_(billing_locks.c.owner == owner, billing_locks.c.expires_at <= now_ms),
                    )
                )
                .values(owner=owner, expires_at=expires_at)
            )
            if result.rowcount:
                return True
        try:
            with self._session_scope() as session:
                session.execute(insert(billing_locks).values(lock_key=lock_key, owner=owner, expires_at=expires_at))
        except IntegrityError:
            return False
        return True

    def release_lock(self, lock_key: str, owner: str) -> None:
        with self._session_scope() as session:
            session.execute(
                delete(billing_locks).where(
                    and_(billing_locks.c.lock_key == lock_key, billing_locks.c.owner == owner)
                )
            )
