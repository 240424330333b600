# src/cfp_federation/schemas/__init__.py
"""
Pydantic schemas for federation wire formats and API request models.
"""

from .federation import (
    ConsentRefreshRequest,
    FederationStatusUpdate,
    LicenseFeatures,
    LicenseInfo,
    LicenseLimits,
    LicenseWarning,
    WebhookEventType,
    WebhookPayload,
)

__all__ = [
    "ConsentRefreshRequest",
    "FederationStatusUpdate",
    "LicenseFeatures", "LicenseInfo", "LicenseLimits", "LicenseWarning",
    "WebhookEventType", "WebhookPayload",
]
