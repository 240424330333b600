"""HTTP client for the federation directory's license API.

The client wraps every directory call behind a shared ``httpx.AsyncClient``
that carries the license headers. Validation and heartbeat failures are
returned as typed results; registration calls raise ``FederationApiError``.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import httpx
from pydantic import ValidationError

from cfp_federation.schemas.federation import LicenseInfo, LicenseWarning
from cfp_federation.services.config import FederationConfig, load_federation_config
from cfp_federation.services.errors import FederationApiError

logger = logging.getLogger(__name__)

USER_AGENT_PREFIX = "CFP-Directory-Self-Hosted"
NO_LICENSE_ERROR = "No license key configured"

WARNING_NO_LICENSE = "NO_LICENSE"
WARNING_HEARTBEAT_FAILED = "HEARTBEAT_FAILED"


@dataclass(frozen=True)
class ValidateLicenseResult:
    """Outcome of a license validation round-trip."""

    valid: bool
    license: LicenseInfo | None = None
    public_key: str | None = None
    warnings: tuple[LicenseWarning, ...] = ()
    error: str | None = None
    status_code: int | None = None

    @property
    def is_transport_failure(self) -> bool:
        """True when the directory could not give an answer at all."""
        if self.valid or self.status_code is None:
            return False
        return self.status_code == 0 or self.status_code >= 500


@dataclass(frozen=True)
class InstanceStats:
    """Usage counters reported with each heartbeat."""

    total_events: int = 0
    federated_events: int = 0
    total_submissions: int = 0
    federated_submissions: int = 0
    active_users: int = 0

    def to_payload(self) -> dict[str, int]:
        return {
            "totalEvents": self.total_events,
            "federatedEvents": self.federated_events,
            "totalSubmissions": self.total_submissions,
            "federatedSubmissions": self.federated_submissions,
            "activeUsers": self.active_users,
        }


@dataclass(frozen=True)
class HeartbeatResult:
    """Directory answer to a heartbeat."""

    success: bool
    warnings: tuple[LicenseWarning, ...] = ()
    latest_version: str | None = None
    update_available: bool = False
    maintenance_window: Mapping[str, Any] | None = None
    error: str | None = None


@dataclass(frozen=True)
class EventRegistration:
    """Public description of an event being registered with the directory."""

    name: str
    slug: str
    is_virtual: bool = False
    description: str | None = None
    website_url: str | None = None
    location: str | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    cfp_opens_at: datetime | None = None
    cfp_closes_at: datetime | None = None
    tracks: list[dict[str, Any]] = field(default_factory=list)
    formats: list[dict[str, Any]] = field(default_factory=list)

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "name": self.name,
            "slug": self.slug,
            "isVirtual": self.is_virtual,
            "tracks": self.tracks,
            "formats": self.formats,
        }
        optional = {
            "description": self.description,
            "websiteUrl": self.website_url,
            "location": self.location,
            "startDate": self.start_date,
            "endDate": self.end_date,
            "cfpOpensAt": self.cfp_opens_at,
            "cfpClosesAt": self.cfp_closes_at,
        }
        for key, value in optional.items():
            if value is None:
                continue
            payload[key] = value.isoformat() if isinstance(value, datetime) else value
        return payload


@dataclass(frozen=True)
class RegisterEventResult:
    success: bool
    federated_event_id: str | None = None
    webhook_secret: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class UnregisterEventResult:
    success: bool
    error: str | None = None


def _parse_warnings(raw: Any) -> tuple[LicenseWarning, ...]:
    if not isinstance(raw, list):
        return ()
    warnings: list[LicenseWarning] = []
    for item in raw:
        try:
            warnings.append(LicenseWarning.model_validate(item))
        except ValidationError:
            logger.debug("Ignoring malformed license warning: %r", item)
    return tuple(warnings)


class LicenseClient:
    """HTTP client wrapper for the directory's license endpoints."""

    def __init__(self, config: FederationConfig | None = None) -> None:
        self.config = config or load_federation_config()
        self._client: httpx.AsyncClient | None = None
        self._client_lock = asyncio.Lock()

    @property
    def enabled(self) -> bool:
        return self.config.is_configured

    @property
    def user_agent(self) -> str:
        return f"{USER_AGENT_PREFIX}/{self.config.app_version}"

    async def _ensure_client(self) -> httpx.AsyncClient:
        async with self._client_lock:
            if self._client is None:
                self._client = httpx.AsyncClient(
                    base_url=self.config.api_url,
                    timeout=httpx.Timeout(self.config.http_timeout_seconds),
                )
        return self._client

    def _build_headers(self, *, include_license: bool = True) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "User-Agent": self.user_agent,
        }
        if include_license and self.config.license_key:
            headers["X-License-Key"] = self.config.license_key
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        json_data: Mapping[str, Any] | None = None,
    ) -> Any:
        client = await self._ensure_client()
        try:
            response = await client.request(
                method, path, json=json_data, headers=self._build_headers()
            )
        except httpx.HTTPError as exc:
            raise FederationApiError(f"Failed to connect to federation API: {exc}", 0) from exc

        if not response.is_success:
            try:
                error_data = response.json()
            except ValueError:
                error_data = {}
            message = None
            if isinstance(error_data, Mapping):
                message = error_data.get("error")
            raise FederationApiError(
                str(message or f"API request failed with status {response.status_code}"),
                response.status_code,
                error_data,
            )

        try:
            return response.json()
        except ValueError as exc:
            raise FederationApiError(
                "Federation API returned invalid JSON", response.status_code
            ) from exc

    async def validate_license(self) -> ValidateLicenseResult:
        """Validate the configured license key with the directory."""

        if not self.config.license_key:
            return ValidateLicenseResult(valid=False, error=NO_LICENSE_ERROR)

        request = {
            "licenseKey": self.config.license_key,
            "instanceUrl": self.config.app_url,
            "version": self.config.app_version,
        }
        try:
            data = await self._request("POST", "/validate-license", request)
        except FederationApiError as exc:
            logger.warning("License validation failed (%s): %s", exc.status_code, exc)
            return ValidateLicenseResult(valid=False, error=str(exc), status_code=exc.status_code)

        if not isinstance(data, Mapping):
            return ValidateLicenseResult(valid=False, error="Malformed validation response")

        license_info: LicenseInfo | None = None
        if data.get("license"):
            try:
                license_info = LicenseInfo.model_validate(data["license"])
            except ValidationError as exc:
                logger.warning("Directory returned an unparseable license: %s", exc)
                return ValidateLicenseResult(
                    valid=False, error="Malformed license in validation response"
                )

        return ValidateLicenseResult(
            valid=bool(data.get("valid")),
            license=license_info,
            public_key=data.get("publicKey"),
            warnings=_parse_warnings(data.get("warnings")),
            error=data.get("error"),
        )

    async def send_heartbeat(self, stats: InstanceStats) -> HeartbeatResult:
        """Report instance counters; failures come back as a warning, never raise."""

        if not self.config.license_key:
            return HeartbeatResult(
                success=False,
                warnings=(
                    LicenseWarning(
                        code=WARNING_NO_LICENSE,
                        message="No license key configured",
                        severity="info",
                    ),
                ),
                error=NO_LICENSE_ERROR,
            )

        request = {
            "licenseKey": self.config.license_key,
            "instanceUrl": self.config.app_url,
            "version": self.config.app_version,
            "stats": stats.to_payload(),
        }
        try:
            data = await self._request("POST", "/heartbeat", request)
        except FederationApiError as exc:
            logger.warning("Heartbeat failed (%s): %s", exc.status_code, exc)
            return HeartbeatResult(
                success=False,
                warnings=(
                    LicenseWarning(
                        code=WARNING_HEARTBEAT_FAILED, message=str(exc), severity="warning"
                    ),
                ),
                error=str(exc),
            )

        data = data if isinstance(data, Mapping) else {}
        return HeartbeatResult(
            success=bool(data.get("success")),
            warnings=_parse_warnings(data.get("warnings")),
            latest_version=data.get("latestVersion"),
            update_available=bool(data.get("updateAvailable")),
            maintenance_window=data.get("maintenanceWindow"),
        )

    async def register_event(
        self, event: EventRegistration, callback_url: str
    ) -> RegisterEventResult:
        """Register an event for federation. Raises ``FederationApiError`` on failure."""

        if not self.config.license_key:
            raise FederationApiError(NO_LICENSE_ERROR, 0)

        data = await self._request(
            "POST",
            "/events/register",
            {
                "licenseKey": self.config.license_key,
                "event": event.to_payload(),
                "callbackUrl": callback_url,
            },
        )
        data = data if isinstance(data, Mapping) else {}
        return RegisterEventResult(
            success=bool(data.get("success")),
            federated_event_id=data.get("federatedEventId"),
            webhook_secret=data.get("webhookSecret"),
            error=data.get("error"),
        )

    async def unregister_event(self, federated_event_id: str) -> UnregisterEventResult:
        """Remove an event from federation. Raises ``FederationApiError`` on failure."""

        if not self.config.license_key:
            raise FederationApiError(NO_LICENSE_ERROR, 0)

        data = await self._request(
            "POST",
            "/events/unregister",
            {"licenseKey": self.config.license_key, "federatedEventId": federated_event_id},
        )
        data = data if isinstance(data, Mapping) else {}
        return UnregisterEventResult(success=bool(data.get("success")), error=data.get("error"))

    async def check_api_health(self) -> bool:
        """Return True when the directory health endpoint answers 2xx."""

        client = await self._ensure_client()
        try:
            response = await client.get(
                "/health", headers=self._build_headers(include_license=False)
            )
        except httpx.HTTPError:
            return False
        return response.is_success

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
