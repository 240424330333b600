"""Cached federation/license state for this instance.

``FederationStateService`` is built once at startup and shared through
``app.state``. It answers "is federation usable right now?" from a snapshot
that is revalidated against the directory when its TTL runs out. When the
directory cannot be reached the last persisted state is served with a
``VALIDATION_ERROR`` warning and a short recheck window.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any

from pydantic import ValidationError
from sqlalchemy import distinct, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from cfp_federation.db.session import SessionLocal
from cfp_federation.db.time import ensure_utc, utcnow
from cfp_federation.models import SITE_SETTINGS_ID, Event, SiteSettings, Submission
from cfp_federation.schemas.federation import LicenseFeatures, LicenseInfo, LicenseWarning
from cfp_federation.services.config import FederationConfig
from cfp_federation.services.license_client import (
    InstanceStats,
    LicenseClient,
    ValidateLicenseResult,
)

logger = logging.getLogger(__name__)

FALLBACK_RECHECK_SECONDS = 60
WARNING_VALIDATION_ERROR = "VALIDATION_ERROR"
NOT_ACTIVE_ERROR = "Federation not enabled or not configured"


@dataclass(frozen=True)
class FederationState:
    """Snapshot of whether federation is enabled, configured and licensed."""

    is_enabled: bool
    is_configured: bool
    is_valid: bool
    license: LicenseInfo | None = None
    warnings: tuple[LicenseWarning, ...] = ()
    last_validated: datetime | None = None
    last_heartbeat: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.is_enabled and self.is_configured and self.is_valid

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_enabled": self.is_enabled,
            "is_configured": self.is_configured,
            "is_valid": self.is_valid,
            "license": self.license.model_dump(mode="json") if self.license else None,
            "warnings": [warning.model_dump() for warning in self.warnings],
            "last_validated": self.last_validated.isoformat() if self.last_validated else None,
            "last_heartbeat": self.last_heartbeat.isoformat() if self.last_heartbeat else None,
        }


UNCONFIGURED_STATE = FederationState(is_enabled=False, is_configured=False, is_valid=False)


@dataclass(frozen=True)
class HeartbeatOutcome:
    success: bool
    update_available: bool = False
    latest_version: str | None = None
    warnings: tuple[LicenseWarning, ...] = ()
    error: str | None = None


@dataclass(frozen=True)
class _PersistedState:
    enabled: bool = False
    last_heartbeat: datetime | None = None
    last_validated: datetime | None = None
    warnings: tuple[LicenseWarning, ...] = ()
    license: LicenseInfo | None = None


def _feature_field(name: str) -> str | None:
    """Resolve a feature name given in snake_case or camelCase."""
    fields = LicenseFeatures.model_fields
    if name in fields:
        return name
    for field_name, info in fields.items():
        if info.alias == name:
            return field_name
    return None


class FederationStateService:
    """Process-wide holder of the federation state cache."""

    def __init__(
        self,
        license_client: LicenseClient,
        session_factory: sessionmaker[Session] = SessionLocal,
        config: FederationConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.license_client = license_client
        self.config = config or license_client.config
        self._session_factory = session_factory
        self._clock = clock
        self._state: FederationState | None = None
        self._expires_at = 0.0

    # -- cache -------------------------------------------------------------

    async def get(self, force_refresh: bool = False) -> FederationState:
        """Return the cached state, revalidating when stale or forced."""

        if not force_refresh and self._state is not None and self._clock() < self._expires_at:
            return self._state

        state, ttl = await self._load()
        self._state = state
        self._expires_at = self._clock() + ttl
        return state

    def invalidate(self) -> None:
        """Drop the cached snapshot so the next ``get`` revalidates."""
        self._state = None
        self._expires_at = 0.0

    @property
    def cached_license(self) -> LicenseInfo | None:
        return self._state.license if self._state else None

    @property
    def cached_warnings(self) -> tuple[LicenseWarning, ...]:
        return self._state.warnings if self._state else ()

    async def _load(self) -> tuple[FederationState, float]:
        if not self.config.license_key:
            return UNCONFIGURED_STATE, float(self.config.license_cache_ttl_seconds)

        persisted: _PersistedState | None = None
        try:
            persisted = self._read_persisted()
            result = await self.license_client.validate_license()
            if result.is_transport_failure:
                return self._fallback(persisted, result.error), FALLBACK_RECHECK_SECONDS

            validated_at = utcnow()
            self._persist_validation(result, validated_at)
            state = FederationState(
                is_enabled=persisted.enabled,
                is_configured=True,
                is_valid=result.valid,
                license=result.license,
                warnings=result.warnings,
                last_validated=validated_at,
                last_heartbeat=persisted.last_heartbeat,
            )
            return state, float(self.config.license_cache_ttl_seconds)
        except SQLAlchemyError as exc:
            logger.error("Failed to load federation state: %s", exc)
            return self._fallback(persisted, str(exc)), FALLBACK_RECHECK_SECONDS

    def _fallback(self, persisted: _PersistedState | None, error: str | None) -> FederationState:
        persisted = persisted or _PersistedState()
        warning = LicenseWarning(
            code=WARNING_VALIDATION_ERROR,
            message=f"Failed to validate license: {error or 'unknown error'}",
            severity="error",
        )
        logger.warning("Serving persisted federation state; recheck in %ss", FALLBACK_RECHECK_SECONDS)
        return FederationState(
            is_enabled=persisted.enabled,
            is_configured=True,
            is_valid=False,
            license=persisted.license,
            warnings=(*persisted.warnings, warning),
            last_validated=persisted.last_validated,
            last_heartbeat=persisted.last_heartbeat,
        )

    # -- persistence -------------------------------------------------------

    def _read_persisted(self) -> _PersistedState:
        with self._session_factory() as db:
            row = db.get(SiteSettings, SITE_SETTINGS_ID)
            if row is None:
                return _PersistedState()

            license_info = None
            if row.federation_license:
                try:
                    license_info = LicenseInfo.model_validate(row.federation_license)
                except ValidationError:
                    logger.warning("Ignoring unreadable persisted license snapshot")

            warnings: list[LicenseWarning] = []
            for item in row.federation_warnings or []:
                try:
                    warnings.append(LicenseWarning.model_validate(item))
                except ValidationError:
                    continue

            return _PersistedState(
                enabled=row.federation_enabled,
                last_heartbeat=ensure_utc(row.federation_last_heartbeat),
                last_validated=ensure_utc(row.federation_last_validated),
                warnings=tuple(warnings),
                license=license_info,
            )

    @staticmethod
    def _get_or_create_settings(db: Session) -> SiteSettings:
        row = db.get(SiteSettings, SITE_SETTINGS_ID)
        if row is None:
            row = SiteSettings(id=SITE_SETTINGS_ID, federation_enabled=False)
            db.add(row)
        return row

    def _persist_validation(self, result: ValidateLicenseResult, validated_at: datetime) -> None:
        with self._session_factory() as db:
            row = self._get_or_create_settings(db)
            row.federation_public_key = result.public_key
            row.federation_warnings = [w.model_dump() for w in result.warnings]
            row.federation_last_validated = validated_at
            if result.valid and result.license is not None:
                row.federation_features = result.license.features.model_dump()
                row.federation_license = result.license.model_dump(mode="json")
            db.commit()

    # -- public operations -------------------------------------------------

    async def set_federation_enabled(self, enabled: bool) -> FederationState:
        """Persist the enabled flag and revalidate immediately."""

        with self._session_factory() as db:
            row = self._get_or_create_settings(db)
            row.federation_enabled = enabled
            if enabled and row.federation_activated_at is None:
                row.federation_activated_at = utcnow()
            db.commit()

        logger.info("Federation %s", "enabled" if enabled else "disabled")
        self.invalidate()
        return await self.get(force_refresh=True)

    async def is_federation_active(self) -> bool:
        return (await self.get()).is_active

    async def has_feature(self, name: str) -> bool:
        """True only when federation is enabled, licensed, and the license grants ``name``."""

        field_name = _feature_field(name)
        if field_name is None:
            return False
        state = await self.get()
        if not (state.is_enabled and state.is_valid and state.license):
            return False
        return bool(getattr(state.license.features, field_name))

    async def get_enabled_features(self) -> list[str]:
        state = await self.get()
        if not (state.is_valid and state.license):
            return []
        return [name for name, value in state.license.features.model_dump().items() if value]

    def collect_instance_stats(self) -> InstanceStats:
        """Count events, submissions and distinct submitting speakers."""

        with self._session_factory() as db:
            total_events = db.scalar(select(func.count()).select_from(Event)) or 0
            federated_events = db.scalar(
                select(func.count()).select_from(Event).where(Event.is_federated.is_(True))
            ) or 0
            total_submissions = db.scalar(select(func.count()).select_from(Submission)) or 0
            federated_submissions = db.scalar(
                select(func.count())
                .select_from(Submission)
                .where(Submission.is_federated.is_(True))
            ) or 0
            active_users = db.scalar(
                select(func.count(distinct(Submission.speaker_id))).where(
                    Submission.speaker_id.is_not(None)
                )
            ) or 0

        return InstanceStats(
            total_events=total_events,
            federated_events=federated_events,
            total_submissions=total_submissions,
            federated_submissions=federated_submissions,
            active_users=active_users,
        )

    async def perform_heartbeat(self) -> HeartbeatOutcome:
        """Report instance stats to the directory and record the answer."""

        state = await self.get()
        if not (state.is_enabled and state.is_configured):
            return HeartbeatOutcome(success=False, error=NOT_ACTIVE_ERROR)

        stats = self.collect_instance_stats()
        result = await self.license_client.send_heartbeat(stats)
        sent_at = utcnow()

        with self._session_factory() as db:
            row = self._get_or_create_settings(db)
            row.federation_warnings = [w.model_dump() for w in result.warnings]
            if result.success:
                row.federation_last_heartbeat = sent_at
            db.commit()

        if self._state is not None:
            updates: dict[str, Any] = {"warnings": result.warnings}
            if result.success:
                updates["last_heartbeat"] = sent_at
            self._state = replace(self._state, **updates)

        if result.update_available:
            logger.info("A newer release is available: %s", result.latest_version)

        return HeartbeatOutcome(
            success=result.success,
            update_available=result.update_available,
            latest_version=result.latest_version,
            warnings=result.warnings,
            error=result.error,
        )
