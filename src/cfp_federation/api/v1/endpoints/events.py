"""Per-event federation toggles."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, status

from cfp_federation.api.errors import ApiError
from cfp_federation.api.v1.dependencies import OperatorDep, ServicesDep
from cfp_federation.services.event_federation import (
    API_ERROR,
    EVENT_NOT_FOUND,
    EventFederationResult,
)

router = APIRouter(prefix="/events", tags=["events", "federation"])


def _unwrap(result: EventFederationResult, message: str | None = None) -> dict[str, Any]:
    if not result.success:
        if result.error_code == EVENT_NOT_FOUND:
            status_code = status.HTTP_404_NOT_FOUND
        elif result.error_code == API_ERROR:
            status_code = status.HTTP_502_BAD_GATEWAY
        else:
            status_code = status.HTTP_400_BAD_REQUEST
        raise ApiError(status_code, result.error_code or "BAD_REQUEST", result.error or "")

    body: dict[str, Any] = {"success": True, "data": result.data}
    if message:
        body["message"] = message
    return body


@router.get("/{event_id}/federation", dependencies=[OperatorDep])
async def get_event_federation(event_id: str, services: ServicesDep) -> dict[str, Any]:
    return _unwrap(await services.events.get_event_federation_status(event_id))


@router.post("/{event_id}/federation", dependencies=[OperatorDep])
async def enable_event_federation(event_id: str, services: ServicesDep) -> dict[str, Any]:
    """Register the event with the directory."""
    result = await services.events.federate_event(event_id)
    return _unwrap(result, "Event successfully federated")


@router.delete("/{event_id}/federation", dependencies=[OperatorDep])
async def disable_event_federation(event_id: str, services: ServicesDep) -> dict[str, Any]:
    """Unregister the event; local federation fields are cleared even if the directory is unreachable."""
    result = await services.events.unfederate_event(event_id)
    return _unwrap(result, "Event federation disabled")
