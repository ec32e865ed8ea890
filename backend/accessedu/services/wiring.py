"""Construct the gateway, store, catalog and engine once per process."""
from accessedu.core.config import settings
from accessedu.core.database import SessionLocal
from accessedu.services.mail_service import MailNotifier
from accessedu.services.paystack_gateway import PaystackGateway
from accessedu.services.plan_catalog import PlanCatalog
from accessedu.services.reconciliation import ReconciliationEngine
from accessedu.services.subscription_store import SubscriptionStore


def build_reconciler(session_factory=SessionLocal) -> ReconciliationEngine:
    gateway = PaystackGateway(
        secret_key=settings.PAYSTACK_SECRET_KEY,
        base_url=settings.PAYSTACK_BASE_URL,
        timeout=settings.GATEWAY_TIMEOUT_SECONDS,
        retry_backoff=settings.GATEWAY_RETRY_BACKOFF_SECONDS,
    )
    notifier = MailNotifier(
        api_key=settings.RESEND_API_KEY,
        from_email=settings.RESEND_FROM_EMAIL,
        site_name=settings.SITE_NAME,
        site_url=settings.SITE_URL,
    )
    return ReconciliationEngine(
        gateway=gateway,
        store=SubscriptionStore(session_factory),
        catalog=PlanCatalog(session_factory),
        notifier=notifier,
        callback_url=settings.CALLBACK_URL or None,
    )
