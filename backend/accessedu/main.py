from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi.errors import RateLimitExceeded

from accessedu.core.config import settings
from accessedu.core.database import init_db
from accessedu.core.errors import register_exception_handlers
from accessedu.core.logging import setup_logging, get_logger
from accessedu.core.security_headers import SecurityHeadersMiddleware
from accessedu.core.rate_limit import limiter, rate_limit_exceeded_handler
from accessedu.routers import health, plans, subscriptions, webhooks, admin
from accessedu.services.wiring import build_reconciler

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifecycle"""
    setup_logging(debug=settings.DEBUG)
    init_db()
    app.state.reconciler = build_reconciler()
    logger.info(f"Application started (env={settings.ENV})")
    yield
    app.state.reconciler.gateway.close()
    logger.info("Application stopped")


app = FastAPI(
    title=f"{settings.SITE_NAME} Subscriptions",
    lifespan=lifespan,
    docs_url="/api/docs" if settings.DEBUG else None,
    redoc_url="/api/redoc" if settings.DEBUG else None,
)

# rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)

register_exception_handlers(app)

# middleware: the last one registered runs first
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# routers, served bare and under /api
for module in (health, plans, subscriptions, webhooks, admin):
    app.include_router(module.router)
    app.include_router(module.router, prefix="/api")
