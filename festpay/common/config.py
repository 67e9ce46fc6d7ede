"""Central environment-driven settings shared by all services.

Each service process loads this once at startup. Service-specific behavior is
controlled by environment variables (see `.env.example`).
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class CommonSettings(BaseSettings):
    """Typed view of runtime configuration from environment variables."""

    service_name: str = "unknown-service"
    log_level: str = "INFO"
    kafka_bootstrap_servers: str = "kafka:9092"
    redis_url: str = "redis://redis:6379/0"
    postgres_dsn: str
    api_key: str
    otel_exporter_otlp_endpoint: str = "http://otel-collector:4318/v1/traces"
    rate_limit_per_minute: int = 30

    # Payment gateway (Cashfree-compatible PG API).
    gateway_api_url: str = "https://sandbox.cashfree.com/pg"
    gateway_app_id: str = ""
    gateway_secret_key: str = ""
    gateway_api_version: str = "2025-01-01"
    gateway_webhook_secret: str = ""
    gateway_timeout_seconds: float = 5.0
    gateway_max_retries: int = 3
    gateway_backoff_base_seconds: float = 0.5
    gateway_return_url: str = "http://localhost:3000/payment/success?order_id={order_id}"
    gateway_payment_methods: str = "cc,dc,upi,nb,wallet,emi"

    # Amounts are integer minor units of this single currency.
    order_currency: str = "INR"

    reconcile_grace_seconds: int = 120
    reconcile_interval_seconds: float = 30.0
    reconcile_batch_size: int = 100
    reconcile_max_failures: int = 10
    order_expiry_seconds: int = 3600

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = CommonSettings()
