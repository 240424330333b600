"""Pydantic schemas for the federation directory wire format.

The directory speaks camelCase JSON; every model here accepts both the
camelCase alias and the snake_case field name, and dumps camelCase when
``by_alias=True``.
"""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

LicenseTier = Literal["starter", "professional", "enterprise"]
LicenseStatus = Literal["active", "expired", "suspended", "invalid"]
WarningSeverity = Literal["info", "warning", "error"]


class CamelModel(BaseModel):
    """Base model mapping snake_case fields onto camelCase JSON."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class LicenseFeatures(CamelModel):
    """Feature switches granted by a license."""

    model_config = ConfigDict(frozen=True)

    federated_events: bool = False
    speaker_profiles: bool = False
    bidirectional_messaging: bool = False
    materials_sync: bool = False
    webhooks: bool = False
    priority_support: bool = False
    custom_branding: bool = False
    analytics_export: bool = False


class LicenseLimits(CamelModel):
    """Usage ceilings; ``None`` means unlimited."""

    model_config = ConfigDict(frozen=True)

    max_federated_events: int | None = None
    max_submissions_per_month: int | None = None
    max_active_events: int | None = None


class LicenseInfo(CamelModel):
    """License details as returned by the directory."""

    model_config = ConfigDict(frozen=True)

    id: str
    tier: LicenseTier
    status: LicenseStatus
    organization_name: str
    features: LicenseFeatures = Field(default_factory=LicenseFeatures)
    limits: LicenseLimits = Field(default_factory=LicenseLimits)
    expires_at: datetime | None = None
    issued_at: datetime | None = None


class LicenseWarning(CamelModel):
    """Operator-facing warning attached to license or heartbeat responses."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    severity: WarningSeverity = "warning"


class WebhookEventType(str, Enum):
    """Event types exchanged over signed webhooks."""

    SUBMISSION_CREATED = "submission.created"
    SUBMISSION_UPDATED = "submission.updated"
    SUBMISSION_STATUS_UPDATED = "submission.status_updated"
    MESSAGE_SENT = "message.sent"
    MESSAGE_READ = "message.read"
    SPEAKER_PROFILE_UPDATED = "speaker.profile_updated"
    SPEAKER_CONSENT_REVOKED = "speaker.consent_revoked"


class WebhookPayload(CamelModel):
    """Signed webhook envelope. ``type`` stays a plain string so unknown
    event types from newer directory versions still parse."""

    model_config = ConfigDict(frozen=True)

    id: str
    type: str
    timestamp: str
    federated_event_id: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)


class IncomingMessageData(CamelModel):
    """``message.sent`` data carried by an inbound webhook."""

    submission_id: str
    federated_message_id: str | None = None
    message_id: str | None = None
    subject: str | None = None
    body: str
    sender_type: Literal["organizer", "speaker"] = "speaker"

    @property
    def idempotency_key(self) -> str | None:
        return self.federated_message_id or self.message_id


class ConsentRevokedData(CamelModel):
    """``speaker.consent_revoked`` data carried by an inbound webhook."""

    speaker_id: str
    deletion_deadline: str | None = None


class ConsentRefreshRequest(CamelModel):
    """Body for re-syncing a speaker with an existing consent token."""

    token: str = Field(min_length=1)
    speaker_id: str = Field(min_length=1)
    event_id: str = Field(min_length=1)


class FederationStatusUpdate(CamelModel):
    """Body for toggling federation or forcing a license refresh."""

    enabled: bool | None = None
    refresh: bool = False
