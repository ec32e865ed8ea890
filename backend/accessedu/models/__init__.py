# Import every model so Base.metadata is complete (Alembic autogenerate, create_all)
from accessedu.models.plan import Plan
from accessedu.models.subscription import Subscription, SubscriptionStatus, BillingInterval
from accessedu.models.transaction import Transaction, TransactionStatus
from accessedu.models.webhook_event import WebhookEvent
from accessedu.models.payment_log import PaymentLog

__all__ = [
    "Plan",
    "Subscription",
    "SubscriptionStatus",
    "BillingInterval",
    "Transaction",
    "TransactionStatus",
    "WebhookEvent",
    "PaymentLog",
]
