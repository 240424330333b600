"""Federation endpoints: consent landing, inbound webhooks, status and queue admin."""

from __future__ import annotations

import logging
from typing import Any

import httpx
from fastapi import APIRouter, Query, Request, status
from fastapi.responses import RedirectResponse
from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from cfp_federation.api.errors import ApiError
from cfp_federation.api.v1.dependencies import OperatorDep, ServicesDep, SessionDep
from cfp_federation.models import Event
from cfp_federation.schemas.federation import ConsentRefreshRequest, FederationStatusUpdate
from cfp_federation.services.consent_client import (
    CONSENT_API_ERROR,
    CONSENT_EXPIRED,
    CONSENT_INVALID_TOKEN,
    CONSENT_NOT_FOUND,
    CONSENT_REVOKED,
    ConsentValidationResult,
)
from cfp_federation.services.federation_state import NOT_ACTIVE_ERROR
from cfp_federation.services.registry import FederationServices
from cfp_federation.services.speaker_sync import SyncResult
from cfp_federation.services.webhook_dlq import DEFAULT_DEAD_LETTER_PAGE, QueuedWebhook
from cfp_federation.services.webhook_receiver import INVALID_DATA

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/federation", tags=["federation"])

CONSENT_STATUS_CODES = {
    CONSENT_INVALID_TOKEN: status.HTTP_401_UNAUTHORIZED,
    CONSENT_EXPIRED: status.HTTP_401_UNAUTHORIZED,
    CONSENT_REVOKED: status.HTTP_403_FORBIDDEN,
    CONSENT_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    CONSENT_API_ERROR: status.HTTP_502_BAD_GATEWAY,
}


def _find_federated_event(db: Session, event_id: str) -> Event | None:
    return db.scalars(
        select(Event).where(
            or_(Event.federated_event_id == event_id, Event.id == event_id),
            Event.is_federated.is_(True),
        )
    ).first()


def _serialize_queued(entry: QueuedWebhook) -> dict[str, Any]:
    return {
        "id": entry.id,
        "eventId": entry.event_id,
        "webhookType": entry.webhook_type,
        "webhookUrl": entry.webhook_url,
        "attempt": entry.attempt,
        "status": entry.status,
        "lastError": entry.last_error,
        "lastAttemptAt": entry.last_attempt_at.isoformat() if entry.last_attempt_at else None,
        "nextRetryAt": entry.next_retry_at.isoformat() if entry.next_retry_at else None,
        "createdAt": entry.created_at.isoformat(),
    }


async def _validate_and_sync(
    services: FederationServices, token: str, speaker_id: str, event: Event
) -> tuple[ConsentValidationResult, SyncResult]:
    validation = await services.consent_client.validate_consent_token(token, speaker_id)
    if not validation.valid:
        code = validation.error_code or "VALIDATION_FAILED"
        raise ApiError(
            CONSENT_STATUS_CODES.get(code, status.HTTP_400_BAD_REQUEST),
            code,
            validation.error or "Failed to validate consent token",
        )

    result = await services.speaker_sync.sync_federated_speaker(
        token, speaker_id, event.federated_event_id or event.id
    )
    if not result.success:
        raise ApiError(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            result.error_code or "SYNC_FAILED",
            result.error or "Failed to sync speaker profile",
        )
    return validation, result


# -- consent ---------------------------------------------------------------


@router.get("/consent", response_model=None)
async def consent_landing(
    services: ServicesDep,
    db: SessionDep,
    token: str | None = Query(default=None),
    speaker: str | None = Query(default=None),
    event: str | None = Query(default=None),
    return_url: str | None = Query(default=None),
) -> dict[str, Any] | RedirectResponse:
    """Landing page for speakers who granted consent on the directory.

    Validates the token, syncs the speaker and either redirects to
    ``return_url`` with ``status``, ``speaker`` and ``event`` appended or
    returns the sync summary as JSON.
    """
    state = await services.state.get()
    if not state.is_enabled:
        raise ApiError(
            status.HTTP_503_SERVICE_UNAVAILABLE,
            "FEDERATION_DISABLED",
            "Federation is not enabled on this instance",
        )
    if not state.is_valid:
        raise ApiError(
            status.HTTP_503_SERVICE_UNAVAILABLE,
            "FEDERATION_INVALID",
            "Federation license is invalid or expired",
        )

    if not (token and speaker and event):
        raise ApiError(
            status.HTTP_400_BAD_REQUEST, "INVALID_PARAMS", "Missing or invalid query parameters"
        )
    redirect_target: httpx.URL | None = None
    if return_url:
        try:
            redirect_target = httpx.URL(return_url)
        except httpx.InvalidURL as exc:
            raise ApiError(
                status.HTTP_400_BAD_REQUEST, "INVALID_PARAMS", "return_url must be a valid URL"
            ) from exc
        if redirect_target.scheme not in ("http", "https") or not redirect_target.host:
            raise ApiError(
                status.HTTP_400_BAD_REQUEST, "INVALID_PARAMS", "return_url must be a valid URL"
            )

    local_event = _find_federated_event(db, event)
    if local_event is None:
        raise ApiError(
            status.HTTP_404_NOT_FOUND,
            "EVENT_NOT_FOUND",
            "The specified event is not registered for federation on this instance",
        )

    validation, result = await _validate_and_sync(services, token, speaker, local_event)

    if redirect_target is not None:
        target = redirect_target.copy_merge_params(
            {
                "status": "success",
                "speaker": result.federated_speaker_id or "",
                "event": local_event.id,
            }
        )
        return RedirectResponse(str(target), status_code=status.HTTP_307_TEMPORARY_REDIRECT)

    return {
        "success": True,
        "message": "Speaker profile synced successfully",
        "data": {
            "federatedSpeakerId": result.federated_speaker_id,
            "eventId": local_event.id,
            "eventName": local_event.name,
            "eventSlug": local_event.slug,
            "scopes": list(validation.scopes),
            "materialsDownloaded": result.materials_downloaded,
            "materialsReferenced": result.materials_referenced,
            "coSpeakersProcessed": result.co_speakers_processed,
        },
    }


@router.post("/consent")
async def refresh_consent(
    body: ConsentRefreshRequest, services: ServicesDep, db: SessionDep
) -> dict[str, Any]:
    """Re-sync a speaker after they changed their profile on the directory."""
    if not await services.state.is_federation_active():
        raise ApiError(
            status.HTTP_503_SERVICE_UNAVAILABLE,
            "FEDERATION_DISABLED",
            "Federation is not enabled or license is invalid",
        )

    local_event = _find_federated_event(db, body.event_id)
    if local_event is None:
        raise ApiError(
            status.HTTP_404_NOT_FOUND, "EVENT_NOT_FOUND", "Event not found or not federated"
        )

    _, result = await _validate_and_sync(services, body.token, body.speaker_id, local_event)
    return {
        "success": True,
        "message": "Speaker profile refreshed",
        "data": {
            "federatedSpeakerId": result.federated_speaker_id,
            "materialsDownloaded": result.materials_downloaded,
            "materialsReferenced": result.materials_referenced,
            "coSpeakersProcessed": result.co_speakers_processed,
        },
    }


# -- inbound webhooks ------------------------------------------------------


@router.post("/incoming-webhook")
async def incoming_webhook(request: Request, services: ServicesDep) -> dict[str, Any]:
    """Receive a signed webhook (speaker replies, consent revocations) from the directory."""
    if not await services.state.is_federation_active():
        raise ApiError(
            status.HTTP_503_SERVICE_UNAVAILABLE,
            "FEDERATION_DISABLED",
            "Federation is not enabled on this instance",
        )

    body = await request.body()
    verification = services.receiver.verify_incoming_webhook(body, request.headers)
    if not verification.valid or verification.payload is None:
        logger.warning("Rejected incoming webhook: %s", verification.error)
        raise ApiError(
            status.HTTP_401_UNAUTHORIZED,
            "INVALID_SIGNATURE",
            verification.error or "Failed to verify webhook signature",
        )

    result = services.receiver.handle_webhook(verification.payload, verification.webhook_id)
    if not result.success:
        raise ApiError(
            status.HTTP_400_BAD_REQUEST
            if result.error_code == INVALID_DATA
            else status.HTTP_500_INTERNAL_SERVER_ERROR,
            result.error_code or "INTERNAL_ERROR",
            result.error or "Failed to process webhook",
        )
    return result.to_dict()


# -- operator routes -------------------------------------------------------


@router.get("/status", dependencies=[OperatorDep])
async def get_status(services: ServicesDep) -> dict[str, Any]:
    state = await services.state.get()
    return {"success": True, "data": state.to_dict()}


@router.post("/status", dependencies=[OperatorDep])
async def update_status(body: FederationStatusUpdate, services: ServicesDep) -> dict[str, Any]:
    """Force a license revalidation or switch federation on or off."""
    if body.refresh:
        services.state.invalidate()
        state = await services.state.get(force_refresh=True)
        return {"success": True, "data": state.to_dict()}

    if body.enabled is None:
        raise ApiError(
            status.HTTP_400_BAD_REQUEST, "INVALID_REQUEST", "enabled must be a boolean"
        )

    state = await services.state.set_federation_enabled(body.enabled)
    return {"success": True, "data": state.to_dict()}


@router.post("/heartbeat", dependencies=[OperatorDep])
async def trigger_heartbeat(services: ServicesDep) -> dict[str, Any]:
    outcome = await services.state.perform_heartbeat()
    if outcome.error == NOT_ACTIVE_ERROR:
        raise ApiError(status.HTTP_503_SERVICE_UNAVAILABLE, "FEDERATION_DISABLED", NOT_ACTIVE_ERROR)
    return {
        "success": outcome.success,
        "data": {
            "updateAvailable": outcome.update_available,
            "latestVersion": outcome.latest_version,
            "warnings": [warning.model_dump() for warning in outcome.warnings],
        },
    }


@router.get("/webhooks/stats", dependencies=[OperatorDep])
async def webhook_queue_stats(services: ServicesDep) -> dict[str, Any]:
    return {"success": True, "data": services.dead_letter_queue.get_queue_stats().to_dict()}


@router.get("/webhooks/dead-letter", dependencies=[OperatorDep])
async def list_dead_letter_webhooks(
    services: ServicesDep,
    limit: int = Query(default=DEFAULT_DEAD_LETTER_PAGE, ge=1, le=500),
) -> dict[str, Any]:
    entries = services.dead_letter_queue.get_dead_letter_webhooks(limit)
    return {"success": True, "data": [_serialize_queued(entry) for entry in entries]}


@router.post("/webhooks/{entry_id}/retry", dependencies=[OperatorDep])
async def retry_dead_letter_webhook(entry_id: str, services: ServicesDep) -> dict[str, Any]:
    if not services.dead_letter_queue.retry_dead_letter_webhook(entry_id):
        raise ApiError(
            status.HTTP_404_NOT_FOUND, "NOT_FOUND", "Dead-lettered webhook not found"
        )
    return {"success": True, "message": "Webhook scheduled for retry"}


@router.delete("/webhooks/{entry_id}", dependencies=[OperatorDep])
async def delete_queued_webhook(entry_id: str, services: ServicesDep) -> dict[str, Any]:
    if not services.dead_letter_queue.delete_webhook(entry_id):
        raise ApiError(status.HTTP_404_NOT_FOUND, "NOT_FOUND", "Webhook not found")
    return {"success": True}


@router.post("/webhooks/cleanup", dependencies=[OperatorDep])
async def cleanup_webhooks(services: ServicesDep) -> dict[str, Any]:
    removed = services.dead_letter_queue.cleanup_old_webhooks()
    removed += services.receiver.cleanup_processed_webhooks()
    return {"success": True, "data": {"removed": removed}}
