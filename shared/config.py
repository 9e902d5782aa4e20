"""Shared configuration."""
from decimal import Decimal
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Settings for the fulfillment engine."""

    # Service info
    service_name: str = "fulfillment-service"
    service_port: int = 8000

    # Database
    postgres_user: str = "postgres"
    postgres_password: str = "postgres"
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_db: str = "fulfillment"
    database_url_override: Optional[str] = None
    database_echo: bool = False

    # RabbitMQ
    rabbitmq_user: str = "guest"
    rabbitmq_password: str = "guest"
    rabbitmq_host: str = "localhost"
    rabbitmq_port: int = 5672

    # Logging
    log_level: str = "INFO"

    # Security
    webhook_secret: str = "whsec_local_development"
    admin_token: str = "admin-local-token"

    # Lifecycle timing
    payment_window_seconds: int = 900
    sweep_interval_seconds: int = 30
    lock_timeout_seconds: float = 5.0

    # Pricing
    currency: str = "INR"
    tax_percent: Decimal = Decimal("18")

    # Outbox / notifications
    outbox_poll_interval: int = 1
    outbox_batch_size: int = 100
    outbox_max_retries: int = 3
    notification_backend: str = "log"  # log | rabbitmq

    # Risk policy
    risk_policy_version: str = "2024-01"
    risk_enabled: bool = True
    risk_max_auto_approve_value: Decimal = Decimal("50000")
    risk_max_rental_days: int = 30
    risk_verified_customers_only: bool = False
    risk_blacklist_check: bool = True
    risk_fallback_to_manual: bool = True
    risk_reject_above_ceiling: bool = True
    risk_approve_below: int = 50
    risk_review_ceiling: int = 80
    risk_unknown_subject_decision: str = "MANUAL_REVIEW"
    risk_new_account_days: int = 7
    risk_high_risk_level: int = 50
    risk_min_order_history: int = 3
    risk_velocity_max_orders: int = 3
    risk_velocity_window_minutes: int = 10

    # Risk weights
    risk_weight_new_account: int = 15
    risk_weight_fingerprint_mismatch: int = 25
    risk_weight_high_risk_profile: int = 30
    risk_weight_prior_violations: int = 35
    risk_weight_high_value: int = 40
    risk_weight_long_duration: int = 20
    risk_weight_kyc_missing: int = 40
    risk_weight_unknown_subject: int = 10
    risk_weight_new_subject: int = 20
    risk_weight_velocity: int = 30

    @property
    def database_url(self) -> str:
        """Get async database connection URL."""
        if self.database_url_override:
            return self.database_url_override
        return (
            f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    @property
    def rabbitmq_url(self) -> str:
        """Get RabbitMQ connection URL."""
        return (
            f"amqp://{self.rabbitmq_user}:{self.rabbitmq_password}"
            f"@{self.rabbitmq_host}:{self.rabbitmq_port}/"
        )

    class Config:
        env_file = ".env"
        case_sensitive = False
