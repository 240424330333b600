"""Register local events with the federation directory and remove them again."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.orm import Session, sessionmaker

from cfp_federation.db.session import SessionLocal
from cfp_federation.models import Event
from cfp_federation.services.errors import FederationApiError
from cfp_federation.services.federation_state import FederationStateService
from cfp_federation.services.license_client import EventRegistration, LicenseClient

logger = logging.getLogger(__name__)

EVENT_NOT_FOUND = "NOT_FOUND"
FEDERATION_UNAVAILABLE = "FEDERATION_UNAVAILABLE"
FEATURE_UNAVAILABLE = "FEATURE_UNAVAILABLE"
ALREADY_FEDERATED = "ALREADY_FEDERATED"
NOT_FEDERATED = "NOT_FEDERATED"
REGISTRATION_FAILED = "REGISTRATION_FAILED"
API_ERROR = "API_ERROR"


@dataclass(frozen=True)
class EventFederationResult:
    success: bool
    data: dict[str, Any] = field(default_factory=dict)
    error_code: str | None = None
    error: str | None = None


def _failure(code: str, message: str) -> EventFederationResult:
    return EventFederationResult(success=False, error_code=code, error=message)


def _registration_for(event: Event) -> EventRegistration:
    return EventRegistration(
        name=event.name,
        slug=event.slug,
        is_virtual=event.is_virtual,
        description=event.description,
        website_url=event.website_url,
        location=event.location,
        start_date=event.start_date,
        end_date=event.end_date,
        cfp_opens_at=event.cfp_opens_at,
        cfp_closes_at=event.cfp_closes_at,
        tracks=[
            {"name": track.name, **({"description": track.description} if track.description else {})}
            for track in event.tracks
        ],
        formats=[{"name": fmt.name, "durationMin": fmt.duration_min} for fmt in event.formats],
    )


class EventFederationService:
    """Toggle federation for individual events."""

    def __init__(
        self,
        license_client: LicenseClient,
        state_service: FederationStateService,
        session_factory: sessionmaker[Session] = SessionLocal,
    ) -> None:
        self.license_client = license_client
        self.state_service = state_service
        self._session_factory = session_factory

    async def get_event_federation_status(self, event_id: str) -> EventFederationResult:
        with self._session_factory() as db:
            event = db.get(Event, event_id)
            if event is None:
                return _failure(EVENT_NOT_FOUND, "Event not found")
            data: dict[str, Any] = {
                "eventId": event.id,
                "eventName": event.name,
                "isFederated": event.is_federated,
                "federatedEventId": event.federated_event_id,
                "hasWebhookSecret": bool(event.webhook_secret),
            }

        state = await self.state_service.get()
        data["federationAvailable"] = state.is_enabled and state.is_valid
        data["federationState"] = {
            "isEnabled": state.is_enabled,
            "isConfigured": state.is_configured,
            "isValid": state.is_valid,
            "license": (
                {
                    "tier": state.license.tier,
                    "features": state.license.features.model_dump(by_alias=True),
                }
                if state.license
                else None
            ),
        }
        return EventFederationResult(success=True, data=data)

    async def federate_event(self, event_id: str) -> EventFederationResult:
        """Register the event with the directory and store its webhook secret."""

        state = await self.state_service.get()
        if not (state.is_enabled and state.is_valid):
            return _failure(
                FEDERATION_UNAVAILABLE,
                "Federation is not available. Please configure a valid license key.",
            )
        if not (state.license and state.license.features.federated_events):
            return _failure(
                FEATURE_UNAVAILABLE, "Your license does not include federated events."
            )

        with self._session_factory() as db:
            event = db.get(Event, event_id)
            if event is None:
                return _failure(EVENT_NOT_FOUND, "Event not found")
            if event.is_federated and event.federated_event_id:
                return _failure(ALREADY_FEDERATED, "Event is already federated")
            registration = _registration_for(event)

        try:
            result = await self.license_client.register_event(
                registration, self.license_client.config.incoming_webhook_url
            )
        except FederationApiError as exc:
            logger.warning("Registering event %s failed (%s): %s", event_id, exc.status_code, exc)
            return _failure(API_ERROR, f"Federation API error: {exc}")

        if not result.success or not result.federated_event_id:
            return _failure(
                REGISTRATION_FAILED, result.error or "Failed to register event with the directory"
            )

        with self._session_factory() as db:
            event = db.get(Event, event_id)
            if event is None:
                return _failure(EVENT_NOT_FOUND, "Event not found")
            event.is_federated = True
            event.federated_event_id = result.federated_event_id
            event.webhook_secret = result.webhook_secret
            db.commit()
            data = {
                "id": event.id,
                "name": event.name,
                "isFederated": event.is_federated,
                "federatedEventId": event.federated_event_id,
            }

        logger.info("Event %s federated as %s", event_id, result.federated_event_id)
        return EventFederationResult(success=True, data=data)

    async def unfederate_event(self, event_id: str) -> EventFederationResult:
        """Unregister remotely when possible, then clear local federation fields."""

        with self._session_factory() as db:
            event = db.get(Event, event_id)
            if event is None:
                return _failure(EVENT_NOT_FOUND, "Event not found")
            if not (event.is_federated and event.federated_event_id):
                return _failure(NOT_FEDERATED, "Event is not federated")
            federated_event_id = event.federated_event_id

        try:
            result = await self.license_client.unregister_event(federated_event_id)
        except FederationApiError as exc:
            logger.warning("Error unregistering event %s: %s", event_id, exc)
        else:
            if not result.success:
                logger.warning("Could not unregister event %s: %s", event_id, result.error)

        with self._session_factory() as db:
            event = db.get(Event, event_id)
            if event is None:
                return _failure(EVENT_NOT_FOUND, "Event not found")
            event.is_federated = False
            event.federated_event_id = None
            event.webhook_secret = None
            db.commit()
            data = {"id": event.id, "name": event.name, "isFederated": False}

        logger.info("Event %s federation disabled", event_id)
        return EventFederationResult(success=True, data=data)
