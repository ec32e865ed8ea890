"""Shared dependencies: the reconciliation engine and admin guard"""
import hmac

from fastapi import Request, Header

from accessedu.core.config import settings
from accessedu.core.errors import ForbiddenError
from accessedu.services.reconciliation import ReconciliationEngine


def get_reconciler(request: Request) -> ReconciliationEngine:
    """Engine built once in the app lifespan"""
    return request.app.state.reconciler


async def require_admin(x_admin_token: str = Header(default="")):
    """X-Admin-Token must match ADMIN_TOKEN. Admin routes are closed when no token is configured."""
    if not settings.ADMIN_TOKEN or not hmac.compare_digest(x_admin_token.encode(), settings.ADMIN_TOKEN.encode()):
        raise ForbiddenError("Admin token required")
