"""
Application configuration using Pydantic Settings.
Loads configuration from environment variables with sensible defaults.
"""

from functools import lru_cache
from typing import Any

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Broker connection
    rabbitmq_host: str = "localhost"
    rabbitmq_port: int = 5672
    rabbitmq_user: str = "guest"
    rabbitmq_password: str = "guest"
    rabbitmq_vhost: str = "/"
    rabbitmq_heartbeat: int = 60
    rabbitmq_connection_timeout: float = 10.0

    # Queue topology
    rabbitmq_queue: str = "default"
    rabbitmq_durable: bool = True
    rabbitmq_dead_letter_exchange: str = "immediate"
    # None follows rabbitmq_durable
    rabbitmq_dead_letter_exchange_durable: bool | None = None
    rabbitmq_delayed_queue_expiry_grace_ms: int = 60_000
    rabbitmq_failed_queue: str | None = "failed"

    # Worker Configuration
    worker_id: str | None = None
    worker_poll_interval_seconds: float = 1.0
    worker_max_attempts: int = 3
    worker_backoff_base_seconds: float = 5.0
    worker_backoff_max_seconds: float = 300.0
    worker_handler_modules: list[str] = []

    # Observability
    otel_enabled: bool = False
    otel_exporter_otlp_endpoint: str = "http://localhost:4317"
    otel_service_name: str = "amqp-jobs"
    prometheus_port: int = 9090
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    def connection_config(self) -> dict[str, Any]:
        """Connector configuration built from the rabbitmq_* settings."""
        return {
            "host": self.rabbitmq_host,
            "port": self.rabbitmq_port,
            "user": self.rabbitmq_user,
            "pass": self.rabbitmq_password,
            "vhost": self.rabbitmq_vhost,
            "queue": self.rabbitmq_queue,
            "durable": self.rabbitmq_durable,
        }


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
