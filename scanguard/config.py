import logging

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Environment
    environment: str = "development"  # development | test | production
    log_level: str = "INFO"

    # Server
    scanguard_host: str = "0.0.0.0"
    scanguard_port: int = 8000

    # Database (sqlite for local dev, postgresql+asyncpg for production)
    database_url: str = "sqlite+aiosqlite:///./data/scanguard.db"

    # CORS
    cors_origins: str = "http://localhost:5173,http://localhost:3000"

    # Code registry
    code_prefix: str = "SG-"
    code_length: int = 10
    max_batch_quantity: int = 100_000
    code_generation_max_retries: int = 5

    # Anomaly scoring
    anomaly_window_minutes: int = 60
    anomaly_location_weight: float = 0.6
    anomaly_frequency_weight: float = 0.3
    anomaly_frequency_threshold: int = 5
    anomaly_unregistered_weight: float = 0.2
    anomaly_unregistered_threshold: int = 3

    # Product risk alerts
    risk_alert_high: int = 50
    risk_alert_critical: int = 70
    alert_cooldown_hours: int = 24

    # Optional AI risk service (soft dependency)
    ai_risk_enabled: bool = False
    ai_risk_url: str = ""
    ai_risk_api_key: str = ""
    ai_risk_timeout_seconds: float = 5.0

    # Regulatory webhooks
    webhook_default_retry_attempts: int = 3
    webhook_default_retry_interval_seconds: int = 300
    webhook_default_timeout_seconds: int = 30

    # Agency rate limits
    agency_default_alerts_per_hour: int = 100
    agency_default_alerts_per_day: int = 1000

    # Scheduler
    scheduler_enabled: bool = True
    rate_limit_reset_interval_seconds: int = 3600
    trust_recompute_interval_seconds: int = 24 * 3600
    risk_recompute_interval_seconds: int = 24 * 3600
    reputation_recheck_interval_seconds: int = 7 * 24 * 3600
    reputation_check_timeout_seconds: float = 5.0

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}


settings = Settings()

_logger = logging.getLogger("scanguard.config")


def validate_security_posture(cfg: Settings) -> None:
    is_prod = cfg.environment.lower() in {"production", "prod"}

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

    if cfg.ai_risk_enabled and not cfg.ai_risk_url:
        if is_prod:
            raise RuntimeError(
                "FATAL: AI_RISK_ENABLED is true but AI_RISK_URL is empty."
            )
        _logger.warning(
            "AI_RISK_ENABLED is true but AI_RISK_URL is empty; rule-based scoring only."
        )

    if cfg.ai_risk_enabled and cfg.ai_risk_url.startswith("http://"):
        if is_prod:
            raise RuntimeError(
                "FATAL: AI_RISK_URL must use https in production; scan history is sent to it."
            )
        _logger.warning("AI_RISK_URL uses plain http; scan history will be sent unencrypted.")


validate_security_posture(settings)
