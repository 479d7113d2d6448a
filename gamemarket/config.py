import logging
import warnings

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Environment
    environment: str = "development"  # development | test | production

    # Server
    marketplace_host: str = "0.0.0.0"
    marketplace_port: int = 8000

    # Database (sqlite for local dev, postgresql+asyncpg for production)
    database_url: str = "sqlite+aiosqlite:///./data/gamemarket.db"

    # Auth
    jwt_secret_key: str = "dev-secret-change-in-production"
    jwt_algorithm: str = "HS256"
    jwt_expire_hours: int = 24 * 7  # 7 days

    # Client app (payment result redirects, notification action links)
    client_url: str = "http://localhost:3000"

    # CORS
    cors_origins: str = "http://localhost:5173,http://localhost:3000"

    # Negotiation
    offer_ttl_days: int = 7

    # Payments (Paytm hosted checkout). Empty merchant id = simulated gateway.
    paytm_merchant_id: str = ""
    paytm_merchant_key: str = "dev-paytm-merchant-key-change-in-production"
    paytm_website: str = "WEBSTAGING"
    paytm_industry_type: str = "Retail"
    paytm_gateway_url: str = "https://securegw-stage.paytm.in"
    paytm_callback_url: str = "http://localhost:8000/api/v1/payments/callback"
    paytm_timeout_seconds: float = 15.0
    payment_link_ttl_hours: int = 24
    payment_pending_stale_seconds: int = 120  # pending w/o gateway ack older than this is abandoned
    default_customer_phone: str = "9999999999"

    # Background sweep of expired offers / payment links
    expiry_sweep_enabled: bool = True
    expiry_sweep_interval_seconds: int = 600

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}


settings = Settings()

# Warn on insecure defaults (logged at startup, not a hard error for dev convenience)
_logger = logging.getLogger("gamemarket.config")
_INSECURE_SECRETS = {
    "dev-secret-change-in-production",
    "change-me-to-a-random-string",
    "dev-paytm-merchant-key-change-in-production",
}


def validate_security_posture(cfg: Settings) -> None:
    is_prod = cfg.environment.lower() in {"production", "prod"}

    if cfg.jwt_secret_key in _INSECURE_SECRETS:
        if is_prod:
            raise RuntimeError(
                "FATAL: JWT_SECRET_KEY is set to an insecure default. "
                "Set a strong random secret via the JWT_SECRET_KEY environment variable before deploying to production."
            )
        warnings.warn(
            "JWT_SECRET_KEY is set to the default insecure value. "
            "Set a strong random secret via the JWT_SECRET_KEY environment variable for production.",
            stacklevel=1,
        )

    if cfg.cors_origins == "*":
        if is_prod:
            raise RuntimeError(
                "FATAL: CORS_ORIGINS cannot be '*' in production. "
                "Set explicit trusted origins via the CORS_ORIGINS environment variable."
            )
        _logger.warning(
            "CORS_ORIGINS is set to '*' (allow all). "
            "Configure specific origins for production via the CORS_ORIGINS environment variable."
        )

    if is_prod:
        if not cfg.paytm_merchant_id:
            raise RuntimeError(
                "FATAL: PAYTM_MERCHANT_ID must be set in production; the simulated gateway never settles funds."
            )
        if not cfg.paytm_merchant_key or cfg.paytm_merchant_key in _INSECURE_SECRETS:
            raise RuntimeError(
                "FATAL: PAYTM_MERCHANT_KEY must be set to the merchant key issued by Paytm in production."
            )
    elif cfg.paytm_merchant_key in _INSECURE_SECRETS:
        _logger.warning(
            "PAYTM_MERCHANT_KEY is the development default; callback checksums are only as strong as this key."
        )


validate_security_posture(settings)
