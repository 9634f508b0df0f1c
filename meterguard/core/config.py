import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import List, Optional

class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False
    LOG_LEVEL: str = "INFO"

    # Database
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None

    # Cashfree payment gateway
    CASHFREE_APP_ID: Optional[str] = None
    CASHFREE_SECRET_KEY: Optional[str] = None
    CASHFREE_ENVIRONMENT: str = "sandbox"  # sandbox | production
    CASHFREE_API_VERSION: str = "2025-01-01"
    GATEWAY_TIMEOUT_SECONDS: float = 10.0

    # Purchase flow
    ORDER_RETURN_URL: str = "http://localhost:3000/status?order_id={order_id}"
    SUBSCRIPTION_MAX_CYCLES: int = 60  # 5 years of monthly charges
    DEFAULT_CUSTOMER_PHONE: str = "9999999999"
    DEFAULT_FREE_TRIAL: int = 3

    # Auth
    JWT_SECRET_KEY: Optional[str] = None
    JWT_ALGORITHM: str = "HS256"
    ALLOW_HEADER_AUTH: bool = True  # X-User-Id fallback (dev/tests)

    CORS_ORIGINS: List[str] = ["http://localhost:3000"]

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )
settings = Settings()


def billing_enabled(settings_obj: Optional[Settings] = None) -> bool:
    """Billing is enabled when Cashfree credentials are configured."""
    cfg = settings_obj or settings
    return bool(cfg.CASHFREE_APP_ID and cfg.CASHFREE_SECRET_KEY)


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("meterguard")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "CASHFREE_APP_ID",
        "CASHFREE_SECRET_KEY",
        "JWT_SECRET_KEY",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    if cfg.CASHFREE_ENVIRONMENT not in ("sandbox", "production"):
        message = f"CASHFREE_ENVIRONMENT must be 'sandbox' or 'production', got {cfg.CASHFREE_ENVIRONMENT!r}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    if cfg.TEST_DATABASE_URL and cfg.ENV.lower() == "production":
        message = "TEST_DATABASE_URL must not be set in production"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
