"""Central environment-driven settings for the payment session service.

The process loads this once at startup. Behavior is controlled by environment
variables (see `.env.example`).
"""

from pydantic_settings import BaseSettings, SettingsConfigDict

_SECRET_MARKERS = ("KEY", "SECRET", "PASSWORD", "TOKEN")


class CommonSettings(BaseSettings):
    """Typed view of runtime configuration from environment variables."""

    service_name: str = "ilppay"
    app_version: str = "1.0.0"
    log_level: str = "INFO"
    environment: str = "production"

    # Sending wallet credentials. Validated when the gateway is built, not here,
    # so tests and tooling can import settings without a key on disk.
    wallet_address_url: str = ""
    key_id: str = ""
    private_key_path: str = "private.key"

    max_amount: int = 10_000_000
    session_ttl_seconds: int = 3600
    completion_grace_seconds: int = 300
    sweep_interval_seconds: int = 1800
    gateway_timeout_seconds: float = 10.0

    session_backend: str = "memory"
    redis_url: str = "redis://redis:6379/0"
    redis_key_prefix: str = "ilppay"

    # Comma-separated browser origins allowed to call the API.
    cors_origins: str = "http://localhost:3000,http://localhost:3001"

    otel_exporter_otlp_endpoint: str | None = None
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    @property
    def diagnostics_enabled(self) -> bool:
        """Raw exception text is only exposed to callers in development."""

        return self.environment.lower() == "development"

    @property
    def cors_origin_list(self) -> list[str]:
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    def redacted(self) -> dict[str, object]:
        """Settings snapshot safe to log: secret-like fields are masked."""

        snapshot: dict[str, object] = {}
        for name, value in self.model_dump().items():
            if any(marker in name.upper() for marker in _SECRET_MARKERS):
                snapshot[name] = "<redacted>" if value else "<unset>"
            else:
                snapshot[name] = value
        return snapshot


settings = CommonSettings()
