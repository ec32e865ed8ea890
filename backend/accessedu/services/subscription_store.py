"""Durable subscription state.

The store is the only thing that talks to the subscription, transaction,
webhook-event and payment-log tables. Each public method opens its own short
session and commits once, so a subscription patch, its transaction row, the
processed-event marker and the audit entry land together or not at all.
"""
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from accessedu.core.clock import utcnow
from accessedu.core.errors import NotFoundError, StoreConflictError
from accessedu.core.logging import get_logger
from accessedu.models.payment_log import PaymentLog
from accessedu.models.subscription import Subscription, SubscriptionStatus
from accessedu.models.transaction import Transaction, TransactionStatus
from accessedu.models.webhook_event import WebhookEvent

logger = get_logger(__name__)

# First revision a new record is written with. Passing it minus one as
# expected_revision means "the record must not exist yet".
INITIAL_REVISION = 1


def _attr(key: str) -> str:
    return "metadata_" if key == "metadata" else key


def _apply(obj, patch: dict):
    for key, value in patch.items():
        setattr(obj, _attr(key), value)


class SubscriptionStore:
    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    # =========================================================
    # subscriptions
    # =========================================================

    def find(self, subscription_code: str) -> Optional[Subscription]:
        if not subscription_code:
            return None
        with self._session_factory() as db:
            return db.query(Subscription).filter(
                Subscription.subscription_code == subscription_code
            ).first()

    def get(self, subscription_code: str) -> Subscription:
        sub = self.find(subscription_code)
        if sub is None:
            raise NotFoundError(f"Subscription not found: {subscription_code}")
        return sub

    def upsert(
        self,
        subscription_code: str,
        patch: dict,
        expected_revision: Optional[int] = None,
        transaction: Optional[dict] = None,
        event: Optional[dict] = None,
        audit: Optional[dict] = None,
    ) -> Subscription:
        """Insert or patch one subscription in a single commit.

        ``expected_revision`` is the revision the caller read. ``0`` means the
        caller saw no record. ``None`` skips the precondition.
        """
        final_code = patch.get("subscription_code") or subscription_code
        with self._session_factory() as db:
            try:
                current = db.query(Subscription).filter(
                    Subscription.subscription_code == subscription_code
                ).first()

                if current is None:
                    if expected_revision not in (None, INITIAL_REVISION - 1):
                        raise StoreConflictError(f"Subscription {subscription_code} disappeared during update")
                    sub = Subscription(subscription_code=subscription_code, revision=INITIAL_REVISION)
                    _apply(sub, patch)
                    if sub.created_at is None:
                        sub.created_at = utcnow()
                    sub.updated_at = sub.created_at
                    db.add(sub)
                else:
                    if expected_revision is not None and current.revision != expected_revision:
                        raise StoreConflictError(
                            f"Subscription {subscription_code} changed concurrently "
                            f"(expected revision {expected_revision}, found {current.revision})"
                        )
                    values = {getattr(Subscription, _attr(k)): v for k, v in patch.items()}
                    values[Subscription.revision] = current.revision + 1
                    values[Subscription.updated_at] = utcnow()
                    result = db.execute(
                        update(Subscription)
                        .where(
                            Subscription.id == current.id,
                            Subscription.revision == current.revision,
                        )
                        .values(values)
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount != 1:
                        raise StoreConflictError(f"Subscription {subscription_code} changed concurrently")

                    if final_code != subscription_code:
                        db.execute(
                            update(Transaction)
                            .where(Transaction.subscription_code == subscription_code)
                            .values(subscription_code=final_code)
                            .execution_options(synchronize_session=False)
                        )
                        logger.info(f"Subscription re-keyed: {subscription_code} -> {final_code}")

                if transaction:
                    self._merge_transaction(db, transaction)
                if event:
                    db.add(WebhookEvent(**event))
                if audit:
                    db.add(PaymentLog(**audit))
                db.commit()
            except IntegrityError as e:
                db.rollback()
                raise StoreConflictError(f"Concurrent write on subscription {subscription_code}") from e

            db.expire_all()
            return db.query(Subscription).filter(
                Subscription.subscription_code == final_code
            ).one()

    def find_active_by_user(self, user_id: str) -> Subscription:
        with self._session_factory() as db:
            sub = db.query(Subscription).filter(
                Subscription.user_id == user_id,
                Subscription.status == SubscriptionStatus.ACTIVE.value,
            ).order_by(Subscription.end_date.desc(), Subscription.id.desc()).first()
        if sub is None:
            raise NotFoundError(f"No active subscription for user {user_id}")
        return sub

    def list_by_user(self, user_id: str) -> list[Subscription]:
        with self._session_factory() as db:
            return db.query(Subscription).filter(
                Subscription.user_id == user_id
            ).order_by(Subscription.created_at.desc(), Subscription.id.desc()).all()

    def find_provisional(self, email: str, plan_code: str) -> Optional[Subscription]:
        """Newest record for this customer and plan still keyed by its initialization reference."""
        if not email or not plan_code:
            return None
        with self._session_factory() as db:
            return db.query(Subscription).filter(
                func.lower(Subscription.email) == email.strip().lower(),
                Subscription.plan_code == plan_code,
                Subscription.subscription_code == Subscription.initial_reference,
            ).order_by(Subscription.created_at.desc(), Subscription.id.desc()).first()

    def find_for_customer(
        self,
        plan_code: Optional[str],
        customer_code: Optional[str] = None,
        email: Optional[str] = None,
    ) -> Optional[Subscription]:
        """Newest confirmed subscription of a customer, used for renewal charges that carry no code."""
        if not customer_code and not email:
            return None
        with self._session_factory() as db:
            q = db.query(Subscription).filter(
                Subscription.status.in_([
                    SubscriptionStatus.ACTIVE.value,
                    SubscriptionStatus.PAYMENT_FAILED.value,
                    SubscriptionStatus.CANCELLED.value,
                ])
            )
            if customer_code:
                q = q.filter(Subscription.customer_code == customer_code)
            else:
                q = q.filter(func.lower(Subscription.email) == email.strip().lower())
            if plan_code:
                q = q.filter(Subscription.plan_code == plan_code)
            return q.order_by(Subscription.created_at.desc(), Subscription.id.desc()).first()

    # =========================================================
    # transactions
    # =========================================================

    def _merge_transaction(self, db: Session, tx: dict) -> Transaction:
        existing = db.query(Transaction).filter(Transaction.reference == tx["reference"]).first()
        if existing is None:
            row = Transaction(created_at=utcnow())
            _apply(row, {k: v for k, v in tx.items() if v is not None})
            row.updated_at = row.created_at
            db.add(row)
            return row

        # a settled payment is never downgraded; only missing fields are filled
        settled = existing.status == TransactionStatus.SUCCESS.value
        for key, value in tx.items():
            if value is None:
                continue
            if settled and key != "subscription_code" and getattr(existing, _attr(key)) is not None:
                continue
            setattr(existing, _attr(key), value)
        existing.updated_at = utcnow()
        return existing

    def append_transaction(self, tx: dict, audit: Optional[dict] = None, event: Optional[dict] = None) -> Transaction:
        with self._session_factory() as db:
            try:
                row = self._merge_transaction(db, tx)
                if event:
                    db.add(WebhookEvent(**event))
                if audit:
                    db.add(PaymentLog(**audit))
                db.commit()
            except IntegrityError as e:
                db.rollback()
                raise StoreConflictError(f"Concurrent write on transaction {tx.get('reference')}") from e
            return row

    def get_transaction(self, reference: str) -> Optional[Transaction]:
        if not reference:
            return None
        with self._session_factory() as db:
            return db.query(Transaction).filter(Transaction.reference == reference).first()

    def list_transactions(self, subscription_code: str, limit: int = 50) -> list[Transaction]:
        with self._session_factory() as db:
            return db.query(Transaction).filter(
                Transaction.subscription_code == subscription_code
            ).order_by(Transaction.created_at.desc(), Transaction.id.desc()).limit(limit).all()

    # =========================================================
    # processed-event ledger
    # =========================================================

    def is_event_processed(self, event_key: str) -> bool:
        with self._session_factory() as db:
            return db.query(WebhookEvent).filter(
                WebhookEvent.event_key == event_key
            ).first() is not None

    def mark_event_processed(
        self,
        event_key: str,
        event_type: str,
        subscription_code: Optional[str] = None,
        outcome: Optional[str] = None,
    ):
        with self._session_factory() as db:
            db.add(WebhookEvent(
                event_key=event_key,
                event_type=event_type,
                subscription_code=subscription_code,
                outcome=outcome,
            ))
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                logger.info(f"Webhook event already recorded: {event_key}")

    # =========================================================
    # housekeeping / reporting
    # =========================================================

    def list_stale_pending(self, older_than: datetime) -> list[Subscription]:
        with self._session_factory() as db:
            return db.query(Subscription).filter(
                Subscription.status == SubscriptionStatus.PENDING.value,
                Subscription.created_at < older_than,
            ).order_by(Subscription.created_at.asc()).all()

    def list_expiring(self, days: int = 7, now: Optional[datetime] = None) -> list[Subscription]:
        now = now or utcnow()
        with self._session_factory() as db:
            return db.query(Subscription).filter(
                Subscription.status == SubscriptionStatus.ACTIVE.value,
                Subscription.end_date >= now,
                Subscription.end_date <= now + timedelta(days=days),
            ).order_by(Subscription.end_date.asc()).all()

    def analytics(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        plan_code: Optional[str] = None,
    ) -> dict:
        """Totals, status and plan breakdowns, and active revenue."""
        with self._session_factory() as db:
            q = db.query(Subscription)
            if start:
                q = q.filter(Subscription.created_at >= start)
            if end:
                q = q.filter(Subscription.created_at <= end)
            if plan_code:
                q = q.filter(Subscription.plan_code == plan_code)
            subs = q.all()

            tx_q = db.query(func.coalesce(func.sum(Transaction.amount), 0)).filter(
                Transaction.status == TransactionStatus.SUCCESS.value
            )
            if start:
                tx_q = tx_q.filter(Transaction.paid_at >= start)
            if end:
                tx_q = tx_q.filter(Transaction.paid_at <= end)
            collected = int(tx_q.scalar() or 0)

        by_status = {s.value: 0 for s in SubscriptionStatus}
        by_plan = {}
        active_revenue = 0
        for sub in subs:
            by_status[sub.status] = by_status.get(sub.status, 0) + 1
            plan = by_plan.setdefault(sub.plan_code, {"count": 0, "active": 0, "revenue": 0})
            plan["count"] += 1
            if sub.status == SubscriptionStatus.ACTIVE.value:
                plan["active"] += 1
                plan["revenue"] += sub.amount or 0
                active_revenue += sub.amount or 0

        return {
            "total": len(subs),
            "by_status": by_status,
            "by_plan": by_plan,
            "active_revenue": active_revenue,
            "collected": collected,
        }
