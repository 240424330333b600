# src/cfp_federation/main.py
"""Main entry point for the CFP federation service."""

from __future__ import annotations

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware

from cfp_federation.api.errors import ApiError, api_error_handler
from cfp_federation.api.v1 import events_router, federation_router
from cfp_federation.core.logging import configure_logging
from cfp_federation.core.settings import settings
from cfp_federation.services.registry import FederationServices, build_federation_services

logger = logging.getLogger(__name__)

# Initialize FastAPI app
app = FastAPI(
    title="CFP Federation API",
    description="License, consent-based speaker sync and signed webhooks for a CFP directory",
    version=settings.app_version,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=settings.cors_allow_credentials,
    allow_methods=settings.cors_allow_methods,
    allow_headers=settings.cors_allow_headers,
)

# Add GZip middleware for compression
app.add_middleware(GZipMiddleware)

app.add_exception_handler(ApiError, api_error_handler)  # type: ignore[arg-type]

# Include API routers
app.include_router(federation_router, prefix="/api/v1")
app.include_router(events_router, prefix="/api/v1")


@app.on_event("startup")
async def on_startup() -> None:
    configure_logging()
    if getattr(app.state, "federation", None) is None:
        app.state.federation = build_federation_services()
    services: FederationServices = app.state.federation
    if settings.federation_worker_enabled:
        await services.worker.start()


@app.on_event("shutdown")
async def on_shutdown() -> None:
    services: FederationServices | None = getattr(app.state, "federation", None)
    if services:
        await services.close()


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint to verify the service is running."""
    return {"status": "ok"}


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint with basic information about the API."""
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "docs": "/docs",
        "redoc": "/redoc",
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("cfp_federation.main:app", host="0.0.0.0", port=8000, reload=settings.debug)
