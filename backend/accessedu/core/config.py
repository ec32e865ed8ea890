from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings"""

    # Database
    DATABASE_URL: str = "mysql+pymysql://accessedu:accessedu@db:3306/accessedu?charset=utf8mb4"

    # Paystack
    PAYSTACK_SECRET_KEY: str = ""
    PAYSTACK_PUBLIC_KEY: str = ""
    PAYSTACK_WEBHOOK_SECRET: str = ""
    PAYSTACK_BASE_URL: str = "https://api.paystack.co"
    GATEWAY_TIMEOUT_SECONDS: float = 10.0
    GATEWAY_RETRY_BACKOFF_SECONDS: float = 0.5
    DEFAULT_CURRENCY: str = "NGN"
    CALLBACK_URL: str = "http://localhost:5173/subscription/callback"

    # Resend
    RESEND_API_KEY: str = ""
    RESEND_FROM_EMAIL: str = "noreply@accessedu.ng"

    # Site
    SITE_URL: str = "http://localhost:5173"
    SITE_NAME: str = "Access Edu NG"
    ALLOWED_ORIGINS: str = "http://localhost:5173,http://localhost:3000"

    # Admin endpoints (X-Admin-Token)
    ADMIN_TOKEN: str = ""

    # Housekeeping
    PENDING_RECONCILE_MINUTES: int = 30
    PENDING_EXPIRY_HOURS: int = 24

    RATE_LIMIT_ENABLED: bool = True

    # Environment
    ENV: str = "development"
    DEBUG: bool = False

    @property
    def allowed_origins_list(self) -> list[str]:
        return [o.strip() for o in self.ALLOWED_ORIGINS.split(",") if o.strip()]

    @property
    def webhook_secret(self) -> str:
        # Paystack signs webhooks with the secret key unless a dedicated secret is configured
        return self.PAYSTACK_WEBHOOK_SECRET or self.PAYSTACK_SECRET_KEY

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
