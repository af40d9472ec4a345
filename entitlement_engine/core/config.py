import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional


class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Database
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None

    # Catalog
    FREE_PLAN_ID: str = "gratuito"
    CURRENCY: str = "ARS"
    CATALOG_CACHE_TTL_SECONDS: float = 30.0

    # Subscription lifecycle
    GRACE_PERIOD_DAYS: int = 7
    MAX_FAILED_ATTEMPTS: int = 3
    BILLING_PERIOD_MONTHS: int = 1
    TRANSITION_RETRIES: int = 3

    # Renewal reconciler
    RECONCILER_ENABLED: bool = False
    RECONCILE_INTERVAL_SECONDS: int = 3600
    RENEWAL_LOOKAHEAD_HOURS: int = 24
    RETRY_BACKOFF_BASE_SECONDS: int = 3600
    GATEWAY_TIMEOUT_SECONDS: float = 10.0
    CRON_SECRET: Optional[str] = None

    # Usage meter
    USAGE_INCREMENT_RETRIES: int = 3

    # Stripe
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    CHECKOUT_SUCCESS_URL: str = "http://localhost:3000/suscripcion/exito"
    CHECKOUT_CANCEL_URL: str = "http://localhost:3000/suscripcion/fallo"

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


settings = Settings()


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("entitlements")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "STRIPE_SECRET_KEY",
        "STRIPE_WEBHOOK_SECRET",
        "CRON_SECRET",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    problems = []
    if cfg.GRACE_PERIOD_DAYS < 1:
        problems.append("GRACE_PERIOD_DAYS must be >= 1")
    if cfg.MAX_FAILED_ATTEMPTS < 1:
        problems.append("MAX_FAILED_ATTEMPTS must be >= 1")
    if cfg.GRACE_PERIOD_DAYS * 24 < cfg.RENEWAL_LOOKAHEAD_HOURS:
        problems.append("GRACE_PERIOD_DAYS must cover RENEWAL_LOOKAHEAD_HOURS")
    if problems:
        message = f"Invalid configuration: {'; '.join(problems)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
