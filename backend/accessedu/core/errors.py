"""Error taxonomy and its HTTP rendering.

Every error that reaches the HTTP boundary is rendered as
``{"success": false, "error": <message>}`` with the status code carried by
the exception class.
"""
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from accessedu.core.logging import get_logger

logger = get_logger(__name__)


class AppError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(AppError):
    """Missing or malformed request fields. Never retried."""

    status_code = 400


class NotFoundError(AppError):
    status_code = 404


class SignatureError(AppError):
    """Webhook authentication failure"""

    status_code = 400


class ForbiddenError(AppError):
    status_code = 403


class StoreConflictError(AppError):
    """Optimistic-concurrency precondition failed"""

    status_code = 503


class GatewayError(AppError):
    """The payment processor rejected the call, timed out, or answered garbage.

    ``code`` is a short machine-readable cause: ``unavailable`` for transport
    failures, ``rejected`` for a 4xx or a ``status: false`` envelope,
    ``upstream`` for 5xx, ``malformed`` for an unparseable body.
    """

    status_code = 502

    def __init__(self, code: str, message: str, status_code: int = 502):
        super().__init__(message)
        self.code = code
        self.status_code = status_code

    def __repr__(self):
        return f"GatewayError(code={self.code!r}, message={self.message!r})"


def error_body(message: str) -> dict:
    return {"success": False, "error": message}


def _describe_validation_error(err: dict) -> str:
    loc = [str(p) for p in err.get("loc", []) if p != "body"]
    field = ".".join(loc) or "body"
    t = err.get("type", "")
    if t == "missing":
        return f"{field} is required"
    if t == "string_too_short":
        return f"{field} must not be empty"
    if "email" in t or "email" in err.get("msg", "").lower():
        return f"{field} must be a valid email address"
    return f"{field}: {err.get('msg', 'invalid value')}"


def register_exception_handlers(app: FastAPI):
    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError):
        if exc.status_code >= 500:
            logger.error(f"{type(exc).__name__} on {request.method} {request.url.path}: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=error_body(exc.message))

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        messages = [_describe_validation_error(e) for e in exc.errors()]
        return JSONResponse(status_code=400, content=error_body("; ".join(messages)))
