"""
submeter Application Configuration
===================================

PURPOSE:
    Pydantic-Settings based configuration for the subscription & metering
    core. All settings can be overridden via environment variables
    (SUBMETER_ prefix) or a local ``.env`` file.

    DATABASE_URL (no prefix) selects the persistent store; see
    submeter.core.database.
"""

import logging
from typing import Dict, List, Literal, Optional

from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)

PROVIDERS = ("stripe", "paddle", "dodo", "gumroad")


class Settings(BaseSettings):
    """Runtime settings for webhook ingestion, metering and plan changes."""

    app_name: str = "submeter"
    debug: bool = False
    environment: Literal["production", "staging", "development", "test"] = "production"
    data_directory: str = "/data"
    log_directory: str = "logs"

    # Store access
    sqlite_busy_timeout_ms: int = 5000
    store_busy_retries: int = 3
    blocking_call_timeout_s: float = 30.0

    # Webhook signature verification. Turning it off is honoured only
    # outside production (see webhook_verification_enabled()).
    webhook_verification: bool = True
    webhook_tolerance_s: int = 300

    # Provider signing secrets
    stripe_webhook_secret: Optional[str] = None
    paddle_webhook_secret: Optional[str] = None
    dodo_webhook_secret: Optional[str] = None  # whsec_<base64>
    gumroad_webhook_token: Optional[str] = None

    # Provider product / price ids → plan
    stripe_product_monthly: Optional[str] = None
    stripe_product_yearly: Optional[str] = None
    stripe_product_pay_per_use: Optional[str] = None
    paddle_product_monthly: Optional[str] = None
    paddle_product_yearly: Optional[str] = None
    paddle_product_pay_per_use: Optional[str] = None
    dodo_product_monthly: Optional[str] = None
    dodo_product_yearly: Optional[str] = None
    dodo_product_pay_per_use: Optional[str] = None
    gumroad_product_monthly: str = "pro-monthly"
    gumroad_product_yearly: str = "pro-yearly"
    gumroad_product_pay_per_use: Optional[str] = None

    # Provider REST APIs (plan change, cancel at period end)
    stripe_secret_key: Optional[str] = None
    paddle_api_key: Optional[str] = None
    paddle_api_url: str = "https://sandbox-api.paddle.com"
    dodo_api_key: Optional[str] = None
    dodo_api_url: str = "https://test.dodopayments.com"
    provider_api_timeout_s: float = 10.0

    # Plan catalog
    recurring_usage_limit: int = 100
    pay_per_use_credits: int = 3
    pay_per_use_expiry_days: int = 365
    monthly_period_days: int = 30
    yearly_period_days: int = 365
    quota_reset_days: int = 30
    monthly_price_cents: int = 1900
    yearly_price_cents: int = 14900
    pay_per_use_price_cents: int = 499

    # Abuse guard
    abuse_window_hours: int = 24
    abuse_alert_threshold: int = 50
    abuse_suspend_threshold: int = 150
    consume_cooldown_seconds: int = 0  # 0 disables the per-user cooldown

    # Idempotency ledger retention
    idempotency_retention_days: int = 90
    marker_prune_interval_s: int = 86400  # 0 disables the background prune

    # Notifications (Resend)
    notifications_enabled: bool = True
    resend_api_key: Optional[str] = None
    resend_api_url: str = "https://api.resend.com/emails"
    email_from: str = "Billing <billing@example.com>"
    notification_timeout_s: float = 10.0

    # Operator endpoints
    internal_api_key: Optional[str] = None

    cors_origins: List[str] = ["http://localhost:3000"]

    class Config:
        env_file = ".env"
        env_prefix = "SUBMETER_"
        extra = "ignore"

    def product_map(self, provider: str) -> Dict[str, str]:
        """Return {provider product id: plan} for *provider*, skipping unset ids."""
        out: Dict[str, str] = {}
        for plan, attr in (
            ("monthly", "product_monthly"),
            ("yearly", "product_yearly"),
            ("pay-per-use", "product_pay_per_use"),
        ):
            product_id = getattr(self, f"{provider}_{attr}", None)
            if product_id:
                out[product_id] = plan
        return out

    def product_id(self, provider: str, plan: str) -> Optional[str]:
        """Provider product / price id configured for *plan*, if any."""
        return getattr(self, f"{provider}_product_{plan.replace('-', '_')}", None)

    def webhook_verification_enabled(self) -> bool:
        """Signature checks can only be disabled outside production.

        A single env var must never be able to switch verification off on a
        production deployment.
        """
        if self.webhook_verification:
            return True
        if self.environment == "production":
            logger.warning(
                "Ignoring SUBMETER_WEBHOOK_VERIFICATION=false because ENVIRONMENT=production"
            )
            return True
        return False


settings = Settings()

if not settings.webhook_verification and settings.environment != "production":
    logger.warning(
        "WEBHOOK VERIFICATION DISABLED (environment=%s). Do NOT use this in production.",
        settings.environment,
    )

