# ==================================================================================
# core/config.py: Billing Engine Configuration (Stripe + SendGrid + Pydantic v2)
# ==================================================================================
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import ValidationError
import sys


class Settings(BaseSettings):
    # ------------------------
    # DATABASE CONFIG
    # ------------------------
    DATABASE_URL: str = "sqlite:///./boxbilling.db"

    # ------------------------
    # SECURITY CONFIG
    # ------------------------
    SECRET_KEY: str
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60

    # ------------------------
    # SENDGRID EMAIL CONFIG
    # ------------------------
    SENDGRID_API_KEY: str | None = None
    MAIL_FROM: str | None = None  # Example: "billing@yourbox.com"
    NOTIFICATION_DEDUP_TTL_SECONDS: int = 86400
    NOTIFICATION_DEDUP_MAX_KEYS: int = 10000

    # ------------------------
    # FRONTEND & BACKEND CONFIG
    # ------------------------
    FRONTEND_URL: str = "http://localhost:5173"
    BACKEND_URL: str = "http://localhost:8000"

    # ------------------------
    # STRIPE / PAYMENT CONFIG
    # ------------------------
    STRIPE_SECRET_KEY: str | None = None
    STRIPE_WEBHOOK_SECRET: str | None = None

    @property
    def CHECKOUT_SUCCESS_URL(self) -> str:
        """Where the gateway sends the owner after a completed checkout."""
        return f"{self.FRONTEND_URL}/billing/success?session_id={{CHECKOUT_SESSION_ID}}"

    @property
    def CHECKOUT_CANCEL_URL(self) -> str:
        return f"{self.FRONTEND_URL}/billing/cancel"

    @property
    def BILLING_URL(self) -> str:
        """Base link used as actionUrl for billing notifications."""
        return f"{self.FRONTEND_URL}/billing"

    # ------------------------
    # BILLING POLICY
    # ------------------------
    BILLING_EVENT_MAX_RETRIES: int = 3
    DEFAULT_ATHLETE_LIMIT: int = 75
    DEFAULT_COACH_LIMIT: int = 3
    DEFAULT_OVERAGE_RATE_CENTS: int = 100
    LIMIT_WARNING_PERCENT: int = 90
    GRACE_PERIOD_WARNING_DAYS: int = 3

    # ------------------------
    # BATCH / SCHEDULER
    # ------------------------
    BATCH_SIZE: int = 10
    BATCH_DELAY_SECONDS: float = 1.0
    EXTERNAL_CALL_TIMEOUT_SECONDS: float = 10.0
    SCHEDULER_ENABLED: bool = False
    SCHEDULER_INTERVAL_SECONDS: int = 3600

    # ------------------------
    # ENVIRONMENT SETTINGS
    # ------------------------
    ENVIRONMENT: str = "development"  # 'development' | 'production'
    DEBUG: bool = True
    LOG_LEVEL: str = "INFO"

    @property
    def IS_PRODUCTION(self) -> bool:
        """Convenience helper to check if running in production"""
        return self.ENVIRONMENT.lower() == "production"

    # ------------------------
    # Pydantic v2 Settings
    # ------------------------
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


# ------------------------
# Global Settings Loader
# ------------------------
try:
    settings = Settings()
    print("✅ Environment variables loaded successfully.")
    print(f"🌍 Environment: {settings.ENVIRONMENT}, Debug: {settings.DEBUG}")
except ValidationError as e:
    print("❌ Environment configuration error — missing or invalid settings!")
    print(e)
    sys.exit(1)
