"""Stale pending subscription sweep: re-verify, then expire what was never paid"""
from datetime import timedelta

from accessedu.core.config import settings
from accessedu.core.logging import get_logger

logger = get_logger(__name__)


def reconcile_stale_pending(engine, older_than_minutes: int = None) -> int:
    """Re-verify pending subscriptions older than the threshold. Returns how many became active."""
    minutes = older_than_minutes if older_than_minutes is not None else settings.PENDING_RECONCILE_MINUTES
    cutoff = engine.clock() - timedelta(minutes=minutes)
    recovered = 0
    for sub in engine.store.list_stale_pending(cutoff):
        try:
            result = engine.reconcile_pending(sub.subscription_code)
        except Exception as e:
            logger.error(f"Pending reconcile error: {sub.subscription_code} - {e}")
            continue
        if result.status != "pending":
            recovered += 1
            logger.info(f"Pending subscription reconciled: {sub.subscription_code} -> {result.status}")
    return recovered


def expire_unpaid_pending(engine, older_than_hours: int = None) -> int:
    """Expire pending subscriptions older than the expiry window. Returns how many expired."""
    hours = older_than_hours if older_than_hours is not None else settings.PENDING_EXPIRY_HOURS
    cutoff = engine.clock() - timedelta(hours=hours)
    expired = 0
    for sub in engine.store.list_stale_pending(cutoff):
        try:
            result = engine.expire_pending(sub.subscription_code)
        except Exception as e:
            logger.error(f"Pending expiry error: {sub.subscription_code} - {e}")
            continue
        if result.status == "expired":
            expired += 1
    if expired:
        logger.info(f"Expired {expired} unpaid pending subscriptions")
    return expired


def sweep_pending(engine):
    """Scheduled job: reconcile first so a late payment is never expired"""
    try:
        recovered = reconcile_stale_pending(engine)
        expired = expire_unpaid_pending(engine)
        logger.info(f"Pending sweep finished: recovered={recovered}, expired={expired}")
    except Exception as e:
        logger.error(f"Pending sweep error: {e}")
