"""Application settings and configuration.

This module defines all configuration options for the CFP federation service.
Settings are loaded from environment variables with sensible defaults.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Validation cache windows (seconds)
DEV_LICENSE_CACHE_TTL_SECONDS = 5 * 60
PROD_LICENSE_CACHE_TTL_SECONDS = 60 * 60


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Settings can be overridden via environment variables or .env files.
    """

    # Application metadata
    app_name: str = Field(default="CFP Federation", alias="APP_NAME")
    app_version: str = Field(default="1.0.0", alias="APP_VERSION")
    app_env: str = Field(default="development", alias="APP_ENV")
    app_url: str = Field(default="http://localhost:3000", alias="APP_URL")
    debug: bool = Field(default=False, alias="DEBUG")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Security: master secret for PII encryption, cron/operator shared secret
    secret_key: str = Field(alias="SECRET_KEY")
    cron_secret: str | None = Field(default=None, alias="CRON_SECRET")
    encrypt_pii_at_rest: bool | None = Field(default=None, alias="ENCRYPT_PII_AT_REST")

    # Database configuration
    database_url: str = Field(default="sqlite:///./cfp_federation.db", alias="DATABASE_URL")
    sql_debug: bool = Field(default=False, alias="SQL_DEBUG")

    # Federation directory integration
    federation_license_key: str | None = Field(default=None, alias="FEDERATION_LICENSE_KEY")
    federation_api_url: str = Field(
        default="https://cfp.directory/api/federation/v1",
        alias="FEDERATION_API_URL",
    )
    federation_http_timeout_seconds: float = Field(
        default=15.0,
        alias="FEDERATION_HTTP_TIMEOUT_SECONDS",
    )
    federation_cache_ttl_seconds: int | None = Field(
        default=None,
        alias="FEDERATION_CACHE_TTL_SECONDS",
    )

    # Material downloads
    upload_root: str = Field(default="./uploads", alias="UPLOAD_ROOT")
    material_download_timeout_seconds: float = Field(
        default=30.0,
        alias="MATERIAL_DOWNLOAD_TIMEOUT_SECONDS",
    )
    material_max_bytes: int = Field(default=50 * 1024 * 1024, alias="MATERIAL_MAX_BYTES")

    # Outbound webhooks
    webhook_timeout_seconds: float = Field(default=10.0, alias="WEBHOOK_TIMEOUT_SECONDS")
    webhook_retry_delays_seconds: list[float] = Field(
        default=[1.0, 5.0, 15.0],
        alias="WEBHOOK_RETRY_DELAYS_SECONDS",
    )

    # Background worker
    federation_worker_enabled: bool = Field(default=True, alias="FEDERATION_WORKER_ENABLED")
    federation_worker_interval_seconds: float = Field(
        default=30.0,
        alias="FEDERATION_WORKER_INTERVAL_SECONDS",
    )
    webhook_cleanup_interval_seconds: float = Field(
        default=60.0 * 60,
        alias="WEBHOOK_CLEANUP_INTERVAL_SECONDS",
    )
    heartbeat_interval_seconds: float = Field(
        default=60.0 * 60,
        alias="HEARTBEAT_INTERVAL_SECONDS",
    )

    # Consent revocation: how long revoked speaker data may linger before purge
    consent_deletion_grace_hours: int = Field(default=24 * 30, alias="CONSENT_DELETION_GRACE_HOURS")
    consent_sweep_interval_seconds: float = Field(
        default=60.0 * 60,
        alias="CONSENT_SWEEP_INTERVAL_SECONDS",
    )

    # CORS configuration for web frontend access
    cors_origins: list[str] = Field(default=["*"], alias="CORS_ORIGINS")
    cors_allow_credentials: bool = Field(default=True, alias="CORS_ALLOW_CREDENTIALS")
    cors_allow_methods: list[str] = Field(
        default=["GET", "POST", "DELETE", "OPTIONS"],
        alias="CORS_ALLOW_METHODS",
    )
    cors_allow_headers: list[str] = Field(default=["*"], alias="CORS_ALLOW_HEADERS")

    model_config = SettingsConfigDict(
        env_file=".env",
        validate_assignment=True,
        extra="ignore",
    )

    @property
    def is_production(self) -> bool:
        return self.app_env.lower() == "production"

    @property
    def pii_encryption_enabled(self) -> bool:
        """Return whether PII is encrypted at rest.

        An explicit ``ENCRYPT_PII_AT_REST`` wins; otherwise encryption is on in
        production and off elsewhere.
        """
        if self.encrypt_pii_at_rest is not None:
            return self.encrypt_pii_at_rest
        return self.is_production

    @property
    def license_cache_ttl_seconds(self) -> int:
        """Return how long a successful license validation is trusted."""
        if self.federation_cache_ttl_seconds is not None:
            return self.federation_cache_ttl_seconds
        if self.is_production:
            return PROD_LICENSE_CACHE_TTL_SECONDS
        return DEV_LICENSE_CACHE_TTL_SECONDS


settings = Settings()
