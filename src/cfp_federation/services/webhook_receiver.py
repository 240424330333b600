"""Verification and handling of webhooks pushed by the federation directory."""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Final

from pydantic import ValidationError
from sqlalchemy import delete, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from cfp_federation.db.session import SessionLocal
from cfp_federation.db.time import ensure_utc, epoch_millis, utcnow
from cfp_federation.models import Event, Message, ProcessedWebhook, Submission
from cfp_federation.models.submission import SENDER_TYPE_SPEAKER
from cfp_federation.repositories.federated_speaker_repo import FederatedSpeakerRepository
from cfp_federation.schemas.federation import (
    ConsentRevokedData,
    IncomingMessageData,
    WebhookEventType,
    WebhookPayload,
)
from cfp_federation.services.encryption import PiiCipher

logger = logging.getLogger(__name__)

SIGNATURE_PREFIX: Final[str] = "sha256="
SIGNATURE_TOLERANCE_MS: Final[int] = 5 * 60 * 1000
PROCESSED_WEBHOOK_TTL: Final[timedelta] = timedelta(minutes=5)
DEFAULT_DELETION_GRACE_HOURS: Final[int] = 720

MISSING_HEADERS = "Missing required webhook headers"
EMPTY_BODY = "Empty request body"
INVALID_JSON = "Invalid JSON payload"
INVALID_PAYLOAD = "Invalid webhook payload"
NO_EVENT_ID = "No event ID provided"
EVENT_NOT_FEDERATED = "Event not found or not federated"
INVALID_SIGNATURE = "Invalid webhook signature"
SUBMISSION_NOT_FOUND = "Submission not found"

MESSAGE_FAILED = "MESSAGE_FAILED"
REVOCATION_FAILED = "REVOCATION_FAILED"
INVALID_DATA = "INVALID_DATA"


def verify_webhook_signature(
    payload: str | bytes,
    signature: str,
    timestamp: str,
    secret: str,
    now_ms: int | None = None,
) -> bool:
    """Check a ``sha256=<hex>`` signature over ``"<timestamp>.<payload>"``.

    Timestamps more than five minutes away from ``now_ms`` are rejected so a
    captured request cannot be replayed later.
    """
    if not signature.startswith(SIGNATURE_PREFIX):
        return False

    try:
        timestamp_ms = int(timestamp)
        provided = bytes.fromhex(signature[len(SIGNATURE_PREFIX):])
    except ValueError:
        return False

    current = now_ms if now_ms is not None else epoch_millis()
    if abs(current - timestamp_ms) > SIGNATURE_TOLERANCE_MS:
        logger.warning("Webhook timestamp outside allowed window: %s", timestamp_ms)
        return False

    body = payload.encode("utf-8") if isinstance(payload, str) else payload
    expected = hmac.new(
        secret.encode("utf-8"), timestamp.encode("utf-8") + b"." + body, hashlib.sha256
    ).digest()
    if len(provided) != len(expected):
        return False
    return hmac.compare_digest(provided, expected)


@dataclass(frozen=True)
class WebhookVerificationResult:
    valid: bool
    error: str | None = None
    payload: WebhookPayload | None = None
    webhook_id: str | None = None
    event_id: str | None = None


@dataclass(frozen=True)
class IncomingMessageResult:
    success: bool
    message_id: str | None = None
    error: str | None = None
    duplicate: bool = False


@dataclass(frozen=True)
class WebhookHandlingResult:
    """Outcome of dispatching a verified webhook."""

    success: bool
    message: str | None = None
    message_id: str | None = None
    duplicate: bool = False
    error_code: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"success": self.success}
        if self.message is not None:
            body["message"] = self.message
        if self.message_id is not None:
            body["messageId"] = self.message_id
        if self.duplicate:
            body["duplicate"] = True
        return body


def parse_deletion_deadline(
    raw: str | None, grace_hours: int, now: datetime | None = None
) -> datetime:
    """Use the remote deadline when it parses, else ``now + grace_hours``."""
    if raw:
        try:
            return ensure_utc(datetime.fromisoformat(raw))
        except ValueError:
            logger.warning("Unparsable deletion deadline %r; using grace interval", raw)
    return (now or utcnow()) + timedelta(hours=grace_hours)


class WebhookReceiver:
    """Verify inbound webhooks and apply them to local state."""

    def __init__(
        self,
        session_factory: sessionmaker[Session] = SessionLocal,
        cipher: PiiCipher | None = None,
        *,
        deletion_grace_hours: int = DEFAULT_DELETION_GRACE_HOURS,
    ) -> None:
        self._session_factory = session_factory
        self.cipher = cipher
        self.deletion_grace_hours = deletion_grace_hours

    def _find_event_secret(self, target_event_id: str) -> tuple[str, str] | None:
        with self._session_factory() as db:
            event = db.scalars(
                select(Event).where(
                    or_(Event.id == target_event_id, Event.federated_event_id == target_event_id),
                    Event.is_federated.is_(True),
                )
            ).first()
            if event is None or not event.webhook_secret:
                return None
            return event.id, event.webhook_secret

    def verify_incoming_webhook(
        self,
        body: bytes,
        headers: Mapping[str, str],
        event_id: str | None = None,
    ) -> WebhookVerificationResult:
        """Verify a raw inbound request against the target event's secret."""

        lowered = {key.lower(): value for key, value in headers.items()}
        signature = lowered.get("x-webhook-signature")
        timestamp = lowered.get("x-webhook-timestamp")
        webhook_id = lowered.get("x-webhook-id")
        if not signature or not timestamp:
            return WebhookVerificationResult(valid=False, error=MISSING_HEADERS)
        if not body:
            return WebhookVerificationResult(valid=False, error=EMPTY_BODY)

        try:
            raw = json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError):
            return WebhookVerificationResult(valid=False, error=INVALID_JSON)
        if not isinstance(raw, dict):
            return WebhookVerificationResult(valid=False, error=INVALID_JSON)

        target_event_id = event_id or raw.get("federatedEventId")
        if not target_event_id:
            return WebhookVerificationResult(valid=False, error=NO_EVENT_ID)

        found = self._find_event_secret(str(target_event_id))
        if found is None:
            return WebhookVerificationResult(valid=False, error=EVENT_NOT_FEDERATED)
        local_event_id, secret = found

        if not verify_webhook_signature(body, signature, timestamp, secret):
            return WebhookVerificationResult(valid=False, error=INVALID_SIGNATURE)

        try:
            payload = WebhookPayload.model_validate(raw)
        except ValidationError:
            return WebhookVerificationResult(valid=False, error=INVALID_PAYLOAD)

        logger.info("Verified incoming webhook %s (%s)", webhook_id or payload.id, payload.type)
        return WebhookVerificationResult(
            valid=True,
            payload=payload,
            webhook_id=webhook_id or payload.id,
            event_id=local_event_id,
        )

    def handle_incoming_message(self, data: IncomingMessageData) -> IncomingMessageResult:
        """Store a speaker reply; repeated deliveries return the existing message."""

        key = data.idempotency_key
        try:
            with self._session_factory() as db:
                submission_id = db.scalars(
                    select(Submission.id).where(
                        or_(
                            Submission.id == data.submission_id,
                            Submission.external_submission_id == data.submission_id,
                        ),
                        Submission.is_federated.is_(True),
                    )
                ).first()
                if submission_id is None:
                    return IncomingMessageResult(success=False, error=SUBMISSION_NOT_FOUND)

                if key:
                    existing = db.scalars(
                        select(Message.id).where(Message.federated_message_id == key)
                    ).first()
                    if existing is not None:
                        return IncomingMessageResult(
                            success=True, message_id=existing, duplicate=True
                        )

                message = Message(
                    submission_id=submission_id,
                    sender_id=None,
                    sender_type=SENDER_TYPE_SPEAKER,
                    subject=data.subject,
                    body=data.body,
                    federated_message_id=key,
                )
                db.add(message)
                db.commit()
                message_id = message.id
        except SQLAlchemyError as exc:
            logger.error("Failed to store incoming message: %s", exc)
            return IncomingMessageResult(success=False, error=str(exc))

        logger.info("Stored incoming message %s from federation", message_id)
        return IncomingMessageResult(success=True, message_id=message_id)

    def handle_consent_revocation(
        self, speaker_id: str, deletion_deadline: str | None = None
    ) -> IncomingMessageResult:
        """Clear the speaker's scopes now; the purge sweep deletes data at the deadline."""

        deadline = parse_deletion_deadline(deletion_deadline, self.deletion_grace_hours)
        try:
            with self._session_factory() as db:
                record = FederatedSpeakerRepository(db, self.cipher).revoke_consent(
                    speaker_id, deadline
                )
                db.commit()
        except SQLAlchemyError as exc:
            logger.error("Failed to process consent revocation: %s", exc)
            return IncomingMessageResult(success=False, error=str(exc))

        if record is None:
            logger.info("Consent revocation for unknown speaker %s ignored", speaker_id)
        else:
            logger.info(
                "Consent revoked for speaker %s; deletion deadline %s",
                speaker_id,
                deadline.isoformat(),
            )
        return IncomingMessageResult(success=True)

    # -- replay bookkeeping --------------------------------------------------

    def is_webhook_processed(self, webhook_id: str, now: datetime | None = None) -> bool:
        cutoff = (now or utcnow()) - PROCESSED_WEBHOOK_TTL
        try:
            with self._session_factory() as db:
                row = db.get(ProcessedWebhook, webhook_id)
                return row is not None and ensure_utc(row.processed_at) >= cutoff
        except SQLAlchemyError as exc:
            logger.error("Webhook idempotency check failed: %s", exc)
            return False

    def mark_webhook_processed(self, webhook_id: str, webhook_type: str) -> None:
        try:
            with self._session_factory() as db:
                db.merge(
                    ProcessedWebhook(
                        webhook_id=webhook_id, webhook_type=webhook_type, processed_at=utcnow()
                    )
                )
                db.commit()
        except SQLAlchemyError as exc:
            logger.error("Failed to mark webhook %s as processed: %s", webhook_id, exc)

    def cleanup_processed_webhooks(self, now: datetime | None = None) -> int:
        cutoff = (now or utcnow()) - PROCESSED_WEBHOOK_TTL
        with self._session_factory() as db:
            result = db.execute(
                delete(ProcessedWebhook).where(ProcessedWebhook.processed_at < cutoff)
            )
            db.commit()
        return result.rowcount or 0

    # -- dispatch ------------------------------------------------------------

    def handle_webhook(
        self, payload: WebhookPayload, webhook_id: str | None = None
    ) -> WebhookHandlingResult:
        """Apply a verified webhook, skipping ids already handled recently."""

        webhook_id = webhook_id or payload.id
        if webhook_id and self.is_webhook_processed(webhook_id):
            logger.info("Duplicate webhook %s already processed", webhook_id)
            return WebhookHandlingResult(
                success=True, message="Webhook already processed", duplicate=True
            )

        logger.info("Processing %s (%s)", payload.type, webhook_id)

        if payload.type == WebhookEventType.MESSAGE_SENT.value:
            try:
                data = IncomingMessageData.model_validate(payload.data)
            except ValidationError:
                return WebhookHandlingResult(
                    success=False, error_code=INVALID_DATA, error="Invalid message data"
                )
            if data.sender_type != "speaker":
                return WebhookHandlingResult(success=True, message="Ignored non-speaker message")
            result = self.handle_incoming_message(data)
            if not result.success:
                return WebhookHandlingResult(
                    success=False, error_code=MESSAGE_FAILED, error=result.error
                )
            self.mark_webhook_processed(webhook_id, payload.type)
            return WebhookHandlingResult(success=True, message_id=result.message_id)

        if payload.type == WebhookEventType.SPEAKER_CONSENT_REVOKED.value:
            try:
                revoked = ConsentRevokedData.model_validate(payload.data)
            except ValidationError:
                return WebhookHandlingResult(
                    success=False, error_code=INVALID_DATA, error="Invalid revocation data"
                )
            result = self.handle_consent_revocation(revoked.speaker_id, revoked.deletion_deadline)
            if not result.success:
                return WebhookHandlingResult(
                    success=False, error_code=REVOCATION_FAILED, error=result.error
                )
            self.mark_webhook_processed(webhook_id, payload.type)
            return WebhookHandlingResult(success=True, message="Consent revocation processed")

        if payload.type == WebhookEventType.SPEAKER_PROFILE_UPDATED.value:
            self.mark_webhook_processed(webhook_id, payload.type)
            return WebhookHandlingResult(success=True, message="Profile update acknowledged")

        logger.warning("Unknown webhook type: %s", payload.type)
        return WebhookHandlingResult(success=True, message=f"Unknown webhook type: {payload.type}")
