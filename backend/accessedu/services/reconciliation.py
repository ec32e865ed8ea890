"""Subscription reconciliation.

The engine is the only writer of subscription state. User-initiated
verification, inbound webhooks, user cancel/reactivate and the housekeeping
sweep all become a ``GatewayEvent`` and go through the same transition table.

Each transition is a pure function of (current subscription, current
transaction, event, now) that returns a ``Decision``. The engine writes the
decision as one atomic store patch guarded by the subscription's revision and
re-reads and re-decides on a revision conflict.
"""
import enum
import hashlib
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError

from accessedu.core.clock import parse_gateway_datetime, utcnow
from accessedu.core.errors import GatewayError, StoreConflictError, ValidationError
from accessedu.core.logging import get_logger
from accessedu.models.subscription import Subscription, SubscriptionStatus
from accessedu.models.transaction import Transaction, TransactionStatus
from accessedu.services.paystack_gateway import (
    InitializeResult,
    TransactionResult,
    parse_metadata,
    parse_transaction,
    to_local_interval,
)
from accessedu.services.plan_catalog import interval_length

logger = get_logger(__name__)

MAX_ATTEMPTS = 3

ACTIVE = SubscriptionStatus.ACTIVE.value
PENDING = SubscriptionStatus.PENDING.value
CANCELLED = SubscriptionStatus.CANCELLED.value
EXPIRED = SubscriptionStatus.EXPIRED.value
PAYMENT_FAILED = SubscriptionStatus.PAYMENT_FAILED.value


class EventKind(str, enum.Enum):
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    SUBSCRIPTION_CREATED = "subscription_created"
    SUBSCRIPTION_DISABLED = "subscription_disabled"
    SUBSCRIPTION_ENABLED = "subscription_enabled"
    PENDING_EXPIRED = "pending_expired"


class EventSource(str, enum.Enum):
    VERIFY = "verify"
    WEBHOOK = "webhook"
    USER = "user"
    SWEEPER = "sweeper"


# webhook event string -> event kind
WEBHOOK_EVENTS = {
    "charge.success": EventKind.PAYMENT_SUCCEEDED,
    "charge.failed": EventKind.PAYMENT_FAILED,
    "invoice.payment_failed": EventKind.PAYMENT_FAILED,
    "subscription.create": EventKind.SUBSCRIPTION_CREATED,
    "subscription.disable": EventKind.SUBSCRIPTION_DISABLED,
    "subscription.enable": EventKind.SUBSCRIPTION_ENABLED,
}

CHARGE_EVENTS = {EventKind.PAYMENT_SUCCEEDED, EventKind.PAYMENT_FAILED}

# Paystack subscription status -> local status, for records first seen through subscription.create
GATEWAY_SUBSCRIPTION_STATUSES = {
    "active": ACTIVE,
    "non-renewing": ACTIVE,
    "attention": PAYMENT_FAILED,
    "cancelled": CANCELLED,
    "complete": CANCELLED,
}


@dataclass
class GatewayEvent:
    kind: EventKind
    source: EventSource
    event_type: str
    key: Optional[str] = None
    reference: Optional[str] = None
    amount: Optional[int] = None
    currency: Optional[str] = None
    channel: Optional[str] = None
    gateway_response: Optional[str] = None
    paid_at: Optional[datetime] = None
    subscription_code: Optional[str] = None
    customer_code: Optional[str] = None
    email: Optional[str] = None
    email_token: Optional[str] = None
    plan_code: Optional[str] = None
    plan_name: Optional[str] = None
    interval: Optional[str] = None
    next_payment_date: Optional[datetime] = None
    gateway_status: Optional[str] = None
    user_id: Optional[str] = None
    metadata: dict = field(default_factory=dict)


@dataclass
class Decision:
    outcome: str
    patch: Optional[dict] = None
    transaction: Optional[dict] = None
    audit: Optional[dict] = None
    notify: Optional[str] = None


@dataclass
class InitializeOutcome:
    payment: InitializeResult
    plan: object
    subscription: Subscription


@dataclass
class VerifyOutcome:
    result: TransactionResult
    subscription: Optional[Subscription]


# =========================================================
# event construction
# =========================================================

def event_key(event_type: str, data: dict) -> str:
    """Charge events are keyed by reference; everything else by a digest of the payload."""
    kind = WEBHOOK_EVENTS.get(event_type)
    reference = _charge_reference(data)
    if kind in CHARGE_EVENTS and reference:
        return f"{event_type}:{reference}"
    canonical = json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)
    return f"{event_type}:{hashlib.sha256(canonical.encode('utf-8')).hexdigest()}"


def _charge_reference(data: dict) -> Optional[str]:
    if data.get("reference"):
        return data["reference"]
    tx = data.get("transaction")
    if isinstance(tx, dict):
        return tx.get("reference")
    return None


def _user_id_from(metadata: dict) -> Optional[str]:
    value = metadata.get("userId") or metadata.get("user_id")
    return str(value) if value is not None else None


def event_from_transaction(
    kind: EventKind,
    source: EventSource,
    event_type: str,
    result: TransactionResult,
    key: Optional[str] = None,
) -> GatewayEvent:
    return GatewayEvent(
        kind=kind,
        source=source,
        event_type=event_type,
        key=key,
        reference=result.reference,
        amount=result.amount,
        currency=result.currency,
        channel=result.channel,
        gateway_response=result.gateway_response,
        paid_at=result.paid_at,
        subscription_code=result.subscription_code or result.metadata.get("subscription_code"),
        customer_code=result.customer.get("customer_code"),
        email=result.customer.get("email"),
        email_token=result.email_token,
        plan_code=result.plan_code or result.metadata.get("planCode"),
        user_id=_user_id_from(result.metadata),
        metadata=result.metadata,
    )


def event_from_webhook(event_type: str, data: dict) -> Optional[GatewayEvent]:
    kind = WEBHOOK_EVENTS.get(event_type)
    if kind is None:
        return None
    key = event_key(event_type, data)

    if kind in CHARGE_EVENTS:
        charge = dict(data)
        if not charge.get("reference") and isinstance(data.get("transaction"), dict):
            charge = {**data, **data["transaction"]}
        if kind is EventKind.PAYMENT_FAILED:
            charge["status"] = "failed"
        result = parse_transaction(charge)
        plan = data.get("plan") if isinstance(data.get("plan"), dict) else {}
        if not result.subscription_code and plan.get("subscription_code"):
            result.subscription_code = plan["subscription_code"]
        ev = event_from_transaction(kind, EventSource.WEBHOOK, event_type, result, key=key)
        ev.interval = to_local_interval(plan.get("interval"))
        ev.plan_name = plan.get("name")
        return ev

    plan = data.get("plan") if isinstance(data.get("plan"), dict) else {}
    customer = data.get("customer") if isinstance(data.get("customer"), dict) else {}
    metadata = parse_metadata(customer.get("metadata"))
    metadata.update(parse_metadata(data.get("metadata")))
    amount = data.get("amount") or plan.get("amount")
    return GatewayEvent(
        kind=kind,
        source=EventSource.WEBHOOK,
        event_type=event_type,
        key=key,
        amount=int(amount) if amount else None,
        currency=plan.get("currency") or data.get("currency"),
        subscription_code=data.get("subscription_code"),
        customer_code=customer.get("customer_code"),
        email=customer.get("email"),
        email_token=data.get("email_token"),
        plan_code=plan.get("plan_code"),
        plan_name=plan.get("name"),
        interval=to_local_interval(plan.get("interval")),
        next_payment_date=parse_gateway_datetime(data.get("next_payment_date")),
        gateway_status=str(data.get("status") or "").lower() or None,
        user_id=_user_id_from(metadata),
        metadata=metadata,
    )


# =========================================================
# transitions
# =========================================================

def _identity_patch(sub: Subscription, ev: GatewayEvent) -> dict:
    """Fill identity fields the record does not have yet and adopt a gateway code."""
    patch = {}
    if ev.subscription_code and sub.is_provisional and ev.subscription_code != sub.subscription_code:
        patch["subscription_code"] = ev.subscription_code
    for attr in ("customer_code", "email_token", "email", "user_id"):
        value = getattr(ev, attr)
        if value and not getattr(sub, attr):
            patch[attr] = value
    return patch


def _transaction_row(sub: Optional[Subscription], tx: Optional[Transaction], ev: GatewayEvent, status: str) -> dict:
    row = {
        "reference": ev.reference,
        "subscription_code": (tx.subscription_code if tx else None)
        or (sub.subscription_code if sub else None)
        or ev.subscription_code,
        "user_id": ev.user_id or (sub.user_id if sub else None),
        "amount": ev.amount,
        "currency": ev.currency,
        "status": status,
        "channel": ev.channel,
        "gateway_response": ev.gateway_response,
        "paid_at": ev.paid_at if status == TransactionStatus.SUCCESS.value else None,
    }
    if ev.metadata:
        row["metadata"] = ev.metadata
    return row


def _audit(action: str, sub: Optional[Subscription], ev: GatewayEvent, status: str, **details) -> dict:
    details = {k: v.isoformat() if isinstance(v, datetime) else v for k, v in details.items()}
    return {
        "action": action,
        "subscription_code": sub.subscription_code if sub else ev.subscription_code,
        "user_id": (sub.user_id if sub else None) or ev.user_id,
        "reference": ev.reference,
        "amount": ev.amount,
        "status": status,
        "details": {"source": ev.source.value, "event": ev.event_type, **details},
    }


def _on_payment_succeeded(sub, tx, ev, now, plan) -> Decision:
    if tx is not None and tx.status == TransactionStatus.SUCCESS.value:
        return Decision("already_applied")

    tx_row = _transaction_row(sub, tx, ev, TransactionStatus.SUCCESS.value)
    paid_at = ev.paid_at or now

    if sub is None:
        if not ev.subscription_code:
            return Decision(
                "orphan_payment",
                transaction=tx_row,
                audit=_audit("payment_unmatched", None, ev, "success"),
            )
        interval = (plan.interval if plan else None) or ev.interval or "monthly"
        end = now + interval_length(interval)
        patch = {
            "subscription_code": ev.subscription_code,
            "user_id": ev.user_id,
            "email": ev.email,
            "customer_code": ev.customer_code,
            "email_token": ev.email_token,
            "plan_code": plan.plan_code if plan else (ev.plan_code or ""),
            "plan_name": (plan.name if plan else None) or ev.plan_name,
            "amount": ev.amount or (plan.amount if plan else 0),
            "currency": ev.currency or (plan.currency if plan else "NGN"),
            "interval": interval,
            "status": ACTIVE,
            "start_date": now,
            "end_date": end,
            "next_payment_date": end,
            "last_payment_date": paid_at,
            "metadata": ev.metadata or None,
            "last_event_key": ev.key,
        }
        tx_row["subscription_code"] = ev.subscription_code
        return Decision(
            "activated",
            patch=patch,
            transaction=tx_row,
            audit=_audit("payment_successful", None, ev, ACTIVE),
        )

    delta = interval_length(sub.interval)
    patch = _identity_patch(sub, ev)
    patch["last_payment_date"] = paid_at
    patch["last_event_key"] = ev.key

    if sub.status in (PENDING, EXPIRED):
        end = now + delta
        patch.update(status=ACTIVE, start_date=now, end_date=end, next_payment_date=end)
        return Decision(
            "activated",
            patch=patch,
            transaction=tx_row,
            audit=_audit("payment_successful", sub, ev, ACTIVE, previous_status=sub.status),
        )

    if sub.status in (ACTIVE, PAYMENT_FAILED):
        # extend from the stored paid-through date so early or delayed renewals never compound or shrink
        base = sub.end_date if sub.end_date and sub.end_date > now else now
        end = base + delta
        patch.update(status=ACTIVE, end_date=end, next_payment_date=end)
        return Decision(
            "renewed",
            patch=patch,
            transaction=tx_row,
            audit=_audit("subscription_renewed", sub, ev, ACTIVE, previous_end_date=sub.end_date, end_date=end),
        )

    # cancelled: the money is recorded, the cancellation stands
    return Decision(
        "recorded",
        transaction=tx_row,
        audit=_audit("payment_after_cancellation", sub, ev, sub.status),
    )


def _on_payment_failed(sub, tx, ev, now, plan) -> Decision:
    if tx is not None and tx.status == TransactionStatus.SUCCESS.value:
        return Decision("ignored_after_success")
    if tx is not None and tx.status == TransactionStatus.FAILED.value:
        return Decision("already_applied")

    tx_row = _transaction_row(sub, tx, ev, TransactionStatus.FAILED.value) if ev.reference else None

    if ev.source is EventSource.WEBHOOK and sub is not None and sub.status == ACTIVE:
        patch = _identity_patch(sub, ev)
        patch.update(status=PAYMENT_FAILED, last_event_key=ev.key)
        return Decision(
            "payment_failed",
            patch=patch,
            transaction=tx_row,
            audit=_audit("payment_failed", sub, ev, PAYMENT_FAILED),
            notify="payment_failed",
        )

    # verification failures and failures on non-active records leave the subscription untouched
    return Decision(
        "payment_failed" if ev.source is not EventSource.WEBHOOK else "recorded",
        transaction=tx_row,
        audit=_audit("payment_failed", sub, ev, sub.status if sub else "unknown") if tx_row else None,
    )


def _on_subscription_created(sub, tx, ev, now, plan) -> Decision:
    if sub is not None:
        # creation never moves state; it only attaches what the record is missing
        patch = _identity_patch(sub, ev)
        if ev.next_payment_date and sub.next_payment_date is None:
            patch["next_payment_date"] = ev.next_payment_date
        if not patch:
            return Decision("already_applied")
        patch["last_event_key"] = ev.key
        return Decision("identity_attached", patch=patch)

    if not ev.subscription_code:
        return Decision("ignored")

    status = GATEWAY_SUBSCRIPTION_STATUSES.get(ev.gateway_status, PENDING)
    interval = (plan.interval if plan else None) or ev.interval or "monthly"
    patch = {
        "subscription_code": ev.subscription_code,
        "user_id": ev.user_id,
        "email": ev.email,
        "customer_code": ev.customer_code,
        "email_token": ev.email_token,
        "plan_code": plan.plan_code if plan else (ev.plan_code or ""),
        "plan_name": (plan.name if plan else None) or ev.plan_name,
        "amount": ev.amount or (plan.amount if plan else 0),
        "currency": ev.currency or (plan.currency if plan else "NGN"),
        "interval": interval,
        "status": status,
        "next_payment_date": ev.next_payment_date,
        "metadata": ev.metadata or None,
        "last_event_key": ev.key,
    }
    if status == ACTIVE:
        patch["start_date"] = now
        patch["end_date"] = ev.next_payment_date or now + interval_length(interval)
    if status == CANCELLED:
        patch["cancelled_at"] = now
    return Decision(
        "created",
        patch=patch,
        audit=_audit("subscription_created", None, ev, status),
    )


def _on_subscription_disabled(sub, tx, ev, now, plan) -> Decision:
    if sub is None:
        return Decision("unknown_subscription")
    if sub.status == CANCELLED:
        return Decision("already_applied")
    if sub.status not in (ACTIVE, PAYMENT_FAILED):
        return Decision("ignored")
    patch = _identity_patch(sub, ev)
    patch.update(status=CANCELLED, cancelled_at=now, last_event_key=ev.key)
    return Decision(
        "cancelled",
        patch=patch,
        audit=_audit("subscription_cancelled", sub, ev, CANCELLED, previous_status=sub.status),
        notify="cancelled",
    )


def _on_subscription_enabled(sub, tx, ev, now, plan) -> Decision:
    if sub is None:
        return Decision("unknown_subscription")
    if sub.status == ACTIVE:
        return Decision("already_applied")
    if sub.status != CANCELLED:
        return Decision("ignored")

    if ev.next_payment_date:
        next_payment = ev.next_payment_date
    elif sub.end_date and sub.end_date > now:
        next_payment = sub.end_date
    else:
        next_payment = now + interval_length(sub.interval)

    patch = _identity_patch(sub, ev)
    patch.update(status=ACTIVE, cancelled_at=None, next_payment_date=next_payment, last_event_key=ev.key)
    if sub.end_date is None or sub.end_date < next_payment:
        patch["end_date"] = next_payment
    return Decision(
        "reactivated",
        patch=patch,
        audit=_audit("subscription_reactivated", sub, ev, ACTIVE),
    )


def _on_pending_expired(sub, tx, ev, now, plan) -> Decision:
    if sub is None:
        return Decision("unknown_subscription")
    if sub.status != PENDING:
        return Decision("ignored")
    return Decision(
        "expired",
        patch={"status": EXPIRED, "last_event_key": ev.key},
        audit=_audit("subscription_expired", sub, ev, EXPIRED),
    )


TRANSITIONS = {
    EventKind.PAYMENT_SUCCEEDED: _on_payment_succeeded,
    EventKind.PAYMENT_FAILED: _on_payment_failed,
    EventKind.SUBSCRIPTION_CREATED: _on_subscription_created,
    EventKind.SUBSCRIPTION_DISABLED: _on_subscription_disabled,
    EventKind.SUBSCRIPTION_ENABLED: _on_subscription_enabled,
    EventKind.PENDING_EXPIRED: _on_pending_expired,
}


# =========================================================
# engine
# =========================================================

class ReconciliationEngine:
    def __init__(self, gateway, store, catalog, notifier=None, clock: Callable[[], datetime] = utcnow, callback_url: str = None):
        self.gateway = gateway
        self.store = store
        self.catalog = catalog
        self.notifier = notifier
        self.clock = clock
        self.callback_url = callback_url

    # ---------------------------------------------------------
    # entry points
    # ---------------------------------------------------------

    def initialize_subscription(
        self,
        email: str,
        plan_code: str,
        user_id: str,
        metadata: dict = None,
        reference: str = None,
    ) -> InitializeOutcome:
        """Start a payment with the gateway and record a pending subscription keyed by its reference."""
        if not email or not email.strip():
            raise ValidationError("email is required")
        if not plan_code:
            raise ValidationError("planCode is required")
        if not user_id:
            raise ValidationError("userId is required")

        plan = self.catalog.resolve(plan_code)
        reference = reference or f"AE_{uuid.uuid4().hex[:20]}"
        meta = dict(metadata or {})
        meta.update(userId=str(user_id), planCode=plan.plan_code)

        payment = self.gateway.initialize_payment(
            email.strip(),
            plan.gateway_plan_code,
            plan.amount,
            meta,
            reference=reference,
            callback_url=self.callback_url,
            currency=plan.currency,
        )
        reference = payment.reference or reference
        now = self.clock()

        sub = self.store.upsert(
            reference,
            {
                "initial_reference": reference,
                "user_id": str(user_id),
                "email": email.strip(),
                "plan_code": plan.plan_code,
                "plan_name": plan.name,
                "amount": plan.amount,
                "currency": plan.currency,
                "interval": plan.interval,
                "status": PENDING,
                "metadata": meta,
                "created_at": now,
            },
            expected_revision=0,
            transaction={
                "reference": reference,
                "subscription_code": reference,
                "user_id": str(user_id),
                "amount": plan.amount,
                "currency": plan.currency,
                "status": TransactionStatus.PENDING.value,
                "metadata": meta,
            },
            audit={
                "action": "payment_initialized",
                "subscription_code": reference,
                "user_id": str(user_id),
                "reference": reference,
                "amount": plan.amount,
                "status": PENDING,
                "details": {"plan_code": plan.plan_code},
            },
        )
        logger.info(f"Subscription initialized: reference={reference}, user_id={user_id}, plan={plan.plan_code}")
        return InitializeOutcome(payment=payment, plan=plan, subscription=sub)

    def verify_transaction(self, reference: str, source: EventSource = EventSource.VERIFY) -> VerifyOutcome:
        """Ask the gateway for the truth about ``reference`` and reconcile local state with it."""
        if not reference or not reference.strip():
            raise ValidationError("reference is required")
        reference = reference.strip()
        result = self.gateway.verify_transaction(reference)

        if result.status == TransactionStatus.SUCCESS.value:
            ev = event_from_transaction(EventKind.PAYMENT_SUCCEEDED, source, "transaction.verify", result)
            try:
                sub, _ = self._apply(ev)
            except (StoreConflictError, SQLAlchemyError) as e:
                # the customer has paid; the sweeper repairs the local record later
                logger.error(
                    f"Payment confirmed by gateway but local store is stale: reference={reference} - {e}",
                    extra={"extra_data": {"reference": reference, "subscription_code": result.subscription_code}},
                )
                sub = None
            return VerifyOutcome(result=result, subscription=sub)

        if result.status == TransactionStatus.FAILED.value:
            ev = event_from_transaction(EventKind.PAYMENT_FAILED, source, "transaction.verify", result)
            sub, _ = self._apply(ev)
            logger.info(f"Transaction verification failed: reference={reference}, response={result.gateway_response}")
            return VerifyOutcome(result=result, subscription=sub)

        tx = self.store.get_transaction(reference)
        sub = self.store.find(tx.subscription_code) if tx and tx.subscription_code else None
        return VerifyOutcome(result=result, subscription=sub)

    def handle_webhook(self, event_type: str, data: dict) -> str:
        """Apply one authenticated webhook event. Returns the outcome name."""
        ev = event_from_webhook(event_type, data or {})
        if ev is None:
            logger.info(f"Unhandled webhook event: {event_type}")
            return "unhandled"

        if self.store.is_event_processed(ev.key):
            logger.info(f"Duplicate webhook skipped: {ev.key}")
            return "duplicate"

        _, outcome = self._apply(ev)
        logger.info(f"Webhook processed: {event_type} -> {outcome}")
        return outcome

    def cancel_subscription(self, subscription_code: str, token: str = None) -> Subscription:
        return self._toggle(subscription_code, token, EventKind.SUBSCRIPTION_DISABLED)

    def reactivate_subscription(self, subscription_code: str, token: str = None) -> Subscription:
        return self._toggle(subscription_code, token, EventKind.SUBSCRIPTION_ENABLED)

    def expire_pending(self, subscription_code: str) -> Subscription:
        """Move an unpaid pending subscription to expired."""
        sub = self.store.get(subscription_code)
        ev = GatewayEvent(
            kind=EventKind.PENDING_EXPIRED,
            source=EventSource.SWEEPER,
            event_type="pending.expire",
            subscription_code=sub.subscription_code,
            reference=sub.initial_reference,
        )
        result, outcome = self._apply(ev)
        if outcome == "expired":
            logger.info(f"Pending subscription expired: {subscription_code}")
        return result or sub

    def reconcile_pending(self, subscription_code: str) -> Subscription:
        """Re-verify the initialization payment of a pending subscription."""
        sub = self.store.get(subscription_code)
        if sub.status != PENDING or not sub.initial_reference:
            return sub
        try:
            outcome = self.verify_transaction(sub.initial_reference, source=EventSource.SWEEPER)
        except GatewayError as e:
            logger.warning(f"Pending reconcile skipped: {subscription_code} - {e.message}")
            return sub
        return outcome.subscription or sub

    # ---------------------------------------------------------
    # internals
    # ---------------------------------------------------------

    def _toggle(self, subscription_code: str, token: Optional[str], kind: EventKind) -> Subscription:
        sub = self.store.get(subscription_code)
        token = (token or "").strip() or sub.email_token
        if not token:
            raise ValidationError("token is required")
        if sub.is_provisional:
            raise ValidationError("Subscription has not been confirmed by the payment gateway yet")

        if kind is EventKind.SUBSCRIPTION_DISABLED:
            self.gateway.disable_subscription(sub.subscription_code, token)
            event_type = "subscription.disable"
        else:
            self.gateway.enable_subscription(sub.subscription_code, token)
            event_type = "subscription.enable"

        ev = GatewayEvent(
            kind=kind,
            source=EventSource.USER,
            event_type=event_type,
            key=f"{event_type}:user:{sub.subscription_code}:{self.clock().isoformat()}",
            subscription_code=sub.subscription_code,
            email_token=token,
        )
        result, _ = self._apply(ev)
        return result or sub

    def _resolve(self, ev: GatewayEvent, plan) -> tuple[Optional[Subscription], Optional[Transaction]]:
        """Find the subscription an event belongs to."""
        tx = self.store.get_transaction(ev.reference) if ev.reference else None
        if tx is not None and tx.subscription_code:
            sub = self.store.find(tx.subscription_code)
            if sub is not None:
                return sub, tx

        if ev.subscription_code:
            sub = self.store.find(ev.subscription_code)
            if sub is not None:
                return sub, tx

        if ev.kind in (EventKind.PAYMENT_SUCCEEDED, EventKind.SUBSCRIPTION_CREATED) and ev.email:
            local_code = plan.plan_code if plan else ev.plan_code
            sub = self.store.find_provisional(ev.email, local_code)
            if sub is not None:
                return sub, tx

        if ev.kind in CHARGE_EVENTS and (ev.customer_code or ev.email):
            local_code = plan.plan_code if plan else ev.plan_code
            sub = self.store.find_for_customer(local_code, customer_code=ev.customer_code, email=ev.email)
            if sub is not None:
                return sub, tx

        return None, tx

    def _apply(self, ev: GatewayEvent) -> tuple[Optional[Subscription], str]:
        """Read, decide, write. Retries the whole cycle on a revision conflict."""
        plan = self.catalog.find(ev.plan_code) if ev.plan_code else None
        for attempt in range(1, MAX_ATTEMPTS + 1):
            now = self.clock()
            sub, tx = self._resolve(ev, plan)
            decision = TRANSITIONS[ev.kind](sub, tx, ev, now, plan)
            try:
                result = self._commit(ev, sub, decision)
            except StoreConflictError as e:
                if attempt == MAX_ATTEMPTS:
                    raise
                logger.warning(f"Store conflict on {ev.event_type} (attempt {attempt}/{MAX_ATTEMPTS}): {e.message}")
                continue
            self._notify(decision, result)
            return result, decision.outcome
        raise StoreConflictError("Subscription is being updated concurrently")

    def _commit(self, ev: GatewayEvent, sub: Optional[Subscription], decision: Decision) -> Optional[Subscription]:
        marker = None
        if ev.source is EventSource.WEBHOOK and ev.key:
            marker = {"event_key": ev.key, "event_type": ev.event_type, "outcome": decision.outcome}

        if decision.patch is not None:
            patch = dict(decision.patch)
            new_code = patch.get("subscription_code")
            if sub is not None and new_code and new_code != sub.subscription_code and self.store.find(new_code):
                logger.warning(f"Gateway code {new_code} already has a record; keeping {sub.subscription_code}")
                patch.pop("subscription_code")
            target = sub.subscription_code if sub is not None else patch["subscription_code"]
            final_code = patch.get("subscription_code") or target

            tx = decision.transaction
            if tx is not None:
                tx = {**tx, "subscription_code": final_code}
            audit = {**decision.audit, "subscription_code": final_code} if decision.audit else None
            if marker:
                marker["subscription_code"] = final_code

            return self.store.upsert(
                target,
                patch,
                expected_revision=sub.revision if sub is not None else 0,
                transaction=tx,
                event=marker,
                audit=audit,
            )

        if marker:
            marker["subscription_code"] = sub.subscription_code if sub is not None else ev.subscription_code

        if decision.transaction is not None:
            self.store.append_transaction(decision.transaction, audit=decision.audit, event=marker)
        elif marker:
            self.store.mark_event_processed(**marker)
        return sub

    def _notify(self, decision: Decision, sub: Optional[Subscription]):
        if not decision.notify or self.notifier is None or sub is None:
            return
        try:
            if decision.notify == "payment_failed":
                self.notifier.payment_failed(sub)
            elif decision.notify == "cancelled":
                self.notifier.subscription_cancelled(sub)
        except Exception as e:
            logger.error(f"Notification failed: {decision.notify} {sub.subscription_code} - {e}")
