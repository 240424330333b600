"""Immutable federation configuration derived from settings."""

from __future__ import annotations

from dataclasses import dataclass, field

from cfp_federation.core.settings import settings


@dataclass(frozen=True)
class FederationConfig:
    """Immutable configuration for federation operations."""

    license_key: str | None
    api_url: str
    app_url: str
    app_version: str
    http_timeout_seconds: float = 15.0
    license_cache_ttl_seconds: int = 300
    upload_root: str = "./uploads"
    download_timeout_seconds: float = 30.0
    download_max_bytes: int = 50 * 1024 * 1024
    webhook_timeout_seconds: float = 10.0
    webhook_retry_delays_seconds: tuple[float, ...] = field(default=(1.0, 5.0, 15.0))
    consent_deletion_grace_hours: int = 24 * 30

    @property
    def is_configured(self) -> bool:
        return bool(self.license_key)

    @property
    def webhook_url(self) -> str:
        return f"{self.api_url.rstrip('/')}/submissions/notify"

    @property
    def incoming_webhook_url(self) -> str:
        return f"{self.app_url.rstrip('/')}/api/v1/federation/incoming-webhook"


def load_federation_config() -> FederationConfig:
    """Build configuration object from global settings."""

    return FederationConfig(
        license_key=settings.federation_license_key or None,
        api_url=settings.federation_api_url,
        app_url=settings.app_url,
        app_version=settings.app_version,
        http_timeout_seconds=float(settings.federation_http_timeout_seconds),
        license_cache_ttl_seconds=settings.license_cache_ttl_seconds,
        upload_root=settings.upload_root,
        download_timeout_seconds=float(settings.material_download_timeout_seconds),
        download_max_bytes=settings.material_max_bytes,
        webhook_timeout_seconds=float(settings.webhook_timeout_seconds),
        webhook_retry_delays_seconds=tuple(settings.webhook_retry_delays_seconds),
        consent_deletion_grace_hours=settings.consent_deletion_grace_hours,
    )
