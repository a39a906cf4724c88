from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional


class Settings(BaseSettings):
    # Environment
    ENV: str = "development"

    # Database
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None

    # Processor selection: "stripe" | "paypal"
    PAYMENT_PROCESSOR: str = "stripe"
    DEFAULT_CURRENCY: str = "USD"

    # Stripe (card processor)
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    STRIPE_RETURN_URL: str = "https://harborlist.com/payment/return"

    # PayPal (wallet processor)
    PAYPAL_CLIENT_ID: Optional[str] = None
    PAYPAL_CLIENT_SECRET: Optional[str] = None
    PAYPAL_ENVIRONMENT: str = "sandbox"  # sandbox | live
    PAYPAL_WEBHOOK_ID: Optional[str] = None
    PAYPAL_RETURN_URL: str = "https://harborlist.com/payment/return"
    PAYPAL_CANCEL_URL: str = "https://harborlist.com/payment/cancel"
    PAYPAL_BRAND_NAME: str = "HarborList"

    # Per-plan processor references
    STRIPE_PREMIUM_INDIVIDUAL_MONTHLY_PRICE_ID: str = "price_premium_individual_monthly"
    STRIPE_PREMIUM_INDIVIDUAL_YEARLY_PRICE_ID: str = "price_premium_individual_yearly"
    STRIPE_PREMIUM_DEALER_MONTHLY_PRICE_ID: str = "price_premium_dealer_monthly"
    STRIPE_PREMIUM_DEALER_YEARLY_PRICE_ID: str = "price_premium_dealer_yearly"
    PAYPAL_PREMIUM_INDIVIDUAL_MONTHLY_PLAN_ID: str = "plan_premium_individual_monthly"
    PAYPAL_PREMIUM_INDIVIDUAL_YEARLY_PLAN_ID: str = "plan_premium_individual_yearly"
    PAYPAL_PREMIUM_DEALER_MONTHLY_PLAN_ID: str = "plan_premium_dealer_monthly"
    PAYPAL_PREMIUM_DEALER_YEARLY_PLAN_ID: str = "plan_premium_dealer_yearly"

    # Outbound call policy
    PROCESSOR_TIMEOUT_SECONDS: float = 20.0
    PROCESSOR_MAX_ATTEMPTS: int = 3
    PROCESSOR_BACKOFF_BASE_SECONDS: float = 0.5
    PROCESSOR_BACKOFF_MAX_SECONDS: float = 8.0
    STORE_WRITE_MAX_ATTEMPTS: int = 5

    # Lifecycle
    GRACE_PERIOD_DAYS: int = 7
    RENEWAL_LOOKAHEAD_SECONDS: int = 3600
    RENEWAL_LOOP_SECONDS: int = 300
    RENEWAL_BATCH_LIMIT: int = 500
    # Charge retries during the grace period: base * 2^(n-1), capped
    PAYMENT_RETRY_MAX_ATTEMPTS: int = 3
    PAYMENT_RETRY_BASE_HOURS: int = 24
    PAYMENT_RETRY_MAX_HOURS: int = 168

    # Cross-process account leases
    ACCOUNT_LOCK_TTL_SECONDS: int = 120
    ACCOUNT_LOCK_WAIT_SECONDS: float = 30.0

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )


settings = Settings()
