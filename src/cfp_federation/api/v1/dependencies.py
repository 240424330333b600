"""Shared FastAPI dependencies for the v1 API."""

from __future__ import annotations

import hmac
from typing import Annotated

from fastapi import Depends, Header, Request, status
from sqlalchemy.orm import Session

from cfp_federation.api.errors import ApiError
from cfp_federation.core.settings import settings
from cfp_federation.db.session import get_db
from cfp_federation.services.registry import FederationServices


def get_federation_services(request: Request) -> FederationServices:
    """Return the services built at startup."""
    services: FederationServices | None = getattr(request.app.state, "federation", None)
    if services is None:
        raise ApiError(
            status.HTTP_503_SERVICE_UNAVAILABLE,
            "FEDERATION_UNAVAILABLE",
            "Federation services are not initialized",
        )
    return services


def require_cron_secret(
    x_cron_secret: Annotated[str | None, Header()] = None,
) -> None:
    """Guard operator routes with the shared ``X-Cron-Secret`` header."""
    expected = settings.cron_secret
    if not (
        x_cron_secret
        and expected
        and hmac.compare_digest(x_cron_secret.encode("utf-8"), expected.encode("utf-8"))
    ):
        raise ApiError(status.HTTP_401_UNAUTHORIZED, "UNAUTHORIZED", "Invalid or missing cron secret")


SessionDep = Annotated[Session, Depends(get_db)]
ServicesDep = Annotated[FederationServices, Depends(get_federation_services)]
OperatorDep = Depends(require_cron_secret)
