"""Signed outbound webhooks to the federation directory.

Each webhook body is a JSON envelope signed with the event's webhook secret:
``HMAC-SHA256("<timestamp_ms>.<body>")`` sent as
``X-Webhook-Signature: sha256=<hex>`` next to ``X-Webhook-Id`` and
``X-Webhook-Timestamp``. Delivery is retried inline on 429, 5xx and
transport errors; other 4xx answers fail fast. When inline retries run out,
the webhook is handed to the dead-letter queue if one is attached.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import logging
import uuid
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any

import httpx
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from cfp_federation.db.session import SessionLocal
from cfp_federation.db.time import epoch_millis, utcnow
from cfp_federation.models import Event, Message, Submission
from cfp_federation.models.submission import SENDER_TYPE_ORGANIZER
from cfp_federation.schemas.federation import WebhookEventType, WebhookPayload
from cfp_federation.services.config import FederationConfig, load_federation_config
from cfp_federation.services.webhook_dlq import QueuedWebhook, WebhookDeadLetterQueue

logger = logging.getLogger(__name__)

WEBHOOK_USER_AGENT = "CFP-Directory-Self-Hosted-Webhook/1.0"
SIGNATURE_PREFIX = "sha256="
HTTP_TOO_MANY_REQUESTS = 429
HTTP_CLIENT_ERROR_MIN = 400
HTTP_SERVER_ERROR_MIN = 500

EVENT_NOT_FOUND = "Event not found"
EVENT_NOT_FEDERATED = "Event is not federated or missing webhook configuration"
SUBMISSION_NOT_FOUND = "Submission not found"
SUBMISSION_NOT_FEDERATED = "Submission is not federated"
MESSAGE_NOT_FOUND = "Message or submission not found"
ORGANIZER_MESSAGES_ONLY = "Only organizer messages trigger webhooks"

SleepFunc = Callable[[float], Awaitable[None]]


def sign_webhook_payload(payload: str | bytes, secret: str) -> str:
    """Return the hex HMAC-SHA256 of ``payload`` keyed by ``secret``."""
    data = payload.encode("utf-8") if isinstance(payload, str) else payload
    return hmac.new(secret.encode("utf-8"), data, hashlib.sha256).hexdigest()


def build_webhook_headers(
    body: str,
    secret: str,
    webhook_id: str,
    timestamp_ms: int | None = None,
) -> dict[str, str]:
    """Headers for one delivery attempt; the signature covers ``"<ts>.<body>"``."""
    timestamp = str(timestamp_ms if timestamp_ms is not None else epoch_millis())
    signature = sign_webhook_payload(f"{timestamp}.{body}", secret)
    return {
        "Content-Type": "application/json",
        "X-Webhook-Id": webhook_id,
        "X-Webhook-Timestamp": timestamp,
        "X-Webhook-Signature": f"{SIGNATURE_PREFIX}{signature}",
        "User-Agent": WEBHOOK_USER_AGENT,
    }


def _is_retryable_status(status_code: int) -> bool:
    if status_code == HTTP_TOO_MANY_REQUESTS:
        return True
    return status_code >= HTTP_SERVER_ERROR_MIN or status_code < HTTP_CLIENT_ERROR_MIN


@dataclass(frozen=True)
class WebhookResult:
    """Outcome of sending one webhook."""

    success: bool
    webhook_id: str
    status_code: int | None = None
    error: str | None = None
    retry_count: int = 0
    retryable: bool = False
    queued_webhook_id: str | None = None


@dataclass(frozen=True)
class _EventTarget:
    event_id: str
    federated_event_id: str
    webhook_secret: str


class WebhookSender:
    """Deliver signed webhooks for federated events."""

    def __init__(
        self,
        session_factory: sessionmaker[Session] = SessionLocal,
        config: FederationConfig | None = None,
        dead_letter_queue: WebhookDeadLetterQueue | None = None,
        sleep: SleepFunc = asyncio.sleep,
    ) -> None:
        self.config = config or load_federation_config()
        self.dead_letter_queue = dead_letter_queue
        self._session_factory = session_factory
        self._sleep = sleep
        self._client: httpx.AsyncClient | None = None
        self._client_lock = asyncio.Lock()

    @property
    def max_retries(self) -> int:
        return len(self.config.webhook_retry_delays_seconds)

    async def _ensure_client(self) -> httpx.AsyncClient:
        async with self._client_lock:
            if self._client is None:
                self._client = httpx.AsyncClient(
                    timeout=httpx.Timeout(self.config.webhook_timeout_seconds),
                    follow_redirects=False,
                )
        return self._client

    def _load_target(self, event_id: str) -> _EventTarget | str:
        """Resolve webhook configuration, or an error string."""
        with self._session_factory() as db:
            event = db.get(Event, event_id)
            if event is None:
                return EVENT_NOT_FOUND
            if not (event.is_federated and event.federated_event_id and event.webhook_secret):
                return EVENT_NOT_FEDERATED
            return _EventTarget(event.id, event.federated_event_id, event.webhook_secret)

    async def _post_once(
        self, url: str, body: str, secret: str, webhook_id: str
    ) -> httpx.Response:
        client = await self._ensure_client()
        headers = build_webhook_headers(body, secret, webhook_id)
        return await client.post(url, content=body.encode("utf-8"), headers=headers)

    async def _send_with_retry(
        self, url: str, body: str, secret: str, webhook_id: str
    ) -> WebhookResult:
        delays = self.config.webhook_retry_delays_seconds
        last_error = "Max retries exceeded"
        last_status: int | None = None

        for attempt in range(self.max_retries + 1):
            try:
                response = await self._post_once(url, body, secret, webhook_id)
            except httpx.HTTPError as exc:
                last_error = f"Request failed: {exc}"
                last_status = None
            else:
                if response.is_success:
                    return WebhookResult(
                        success=True,
                        webhook_id=webhook_id,
                        status_code=response.status_code,
                        retry_count=attempt,
                    )
                last_status = response.status_code
                last_error = f"HTTP {response.status_code}: {response.text[:500]}"
                if not _is_retryable_status(response.status_code):
                    return WebhookResult(
                        success=False,
                        webhook_id=webhook_id,
                        status_code=response.status_code,
                        error=last_error,
                        retry_count=attempt,
                    )

            if attempt < self.max_retries:
                await self._sleep(delays[attempt])

        return WebhookResult(
            success=False,
            webhook_id=webhook_id,
            status_code=last_status,
            error=last_error,
            retry_count=self.max_retries,
            retryable=True,
        )

    async def send_webhook(
        self,
        event_id: str,
        webhook_type: WebhookEventType | str,
        data: Mapping[str, Any],
    ) -> WebhookResult:
        """Build, sign and deliver a webhook for a local event."""

        webhook_id = str(uuid.uuid4())
        type_name = webhook_type.value if isinstance(webhook_type, WebhookEventType) else webhook_type

        try:
            target = self._load_target(event_id)
        except SQLAlchemyError as exc:
            logger.error("Webhook %s (%s) could not load event: %s", webhook_id, type_name, exc)
            return WebhookResult(success=False, webhook_id=webhook_id, error=str(exc))
        if isinstance(target, str):
            return WebhookResult(success=False, webhook_id=webhook_id, error=target)

        payload = WebhookPayload(
            id=webhook_id,
            type=type_name,
            timestamp=utcnow().isoformat(),
            federated_event_id=target.federated_event_id,
            data=dict(data),
        )
        body = payload.to_json()
        url = self.config.webhook_url
        result = await self._send_with_retry(url, body, target.webhook_secret, webhook_id)

        logger.info(
            "Webhook %s (%s) for event %s: success=%s status=%s retries=%s",
            webhook_id,
            type_name,
            event_id,
            result.success,
            result.status_code,
            result.retry_count,
        )

        if not result.success and result.retryable and self.dead_letter_queue is not None:
            queued_id = self.dead_letter_queue.queue_failed_webhook(
                event_id, type_name, body, url, result.error
            )
            return WebhookResult(
                success=False,
                webhook_id=webhook_id,
                status_code=result.status_code,
                error=result.error,
                retry_count=result.retry_count,
                retryable=True,
                queued_webhook_id=queued_id,
            )
        return result

    async def deliver_queued(self, entry: QueuedWebhook) -> WebhookResult:
        """One delivery attempt for a queued webhook, freshly signed."""

        try:
            target = self._load_target(entry.event_id)
        except SQLAlchemyError as exc:
            return WebhookResult(success=False, webhook_id=entry.id, error=str(exc), retryable=True)
        if isinstance(target, str):
            return WebhookResult(success=False, webhook_id=entry.id, error=target)

        try:
            webhook_id = WebhookPayload.model_validate_json(entry.payload).id
        except ValueError:
            webhook_id = entry.id

        try:
            response = await self._post_once(
                entry.webhook_url, entry.payload, target.webhook_secret, webhook_id
            )
        except httpx.HTTPError as exc:
            return WebhookResult(
                success=False, webhook_id=webhook_id, error=f"Request failed: {exc}", retryable=True
            )

        if response.is_success:
            return WebhookResult(success=True, webhook_id=webhook_id, status_code=response.status_code)
        return WebhookResult(
            success=False,
            webhook_id=webhook_id,
            status_code=response.status_code,
            error=f"HTTP {response.status_code}: {response.text[:500]}",
            retryable=_is_retryable_status(response.status_code),
        )

    # -- specific senders ----------------------------------------------------

    async def send_submission_created_webhook(self, submission_id: str) -> WebhookResult:
        """Notify the directory of a new submission from a federated speaker."""

        with self._session_factory() as db:
            submission = db.get(Submission, submission_id)
            if submission is None:
                return WebhookResult(success=False, webhook_id="", error=SUBMISSION_NOT_FOUND)
            if not (submission.is_federated and submission.federated_speaker_id):
                return WebhookResult(success=False, webhook_id="", error=SUBMISSION_NOT_FEDERATED)

            data: dict[str, Any] = {
                "submissionId": submission.id,
                "speakerId": submission.federated_speaker_id,
                "title": submission.title,
                "abstract": submission.abstract,
                "trackName": submission.track.name if submission.track else None,
                "formatName": submission.session_format.name if submission.session_format else None,
                "materials": [
                    {
                        "type": material.type,
                        "title": material.title,
                        "url": material.file_url or material.external_url or "",
                    }
                    for material in submission.materials
                ],
                "coSpeakers": [
                    {
                        key: value
                        for key, value in (
                            ("name", co_speaker.name),
                            ("email", co_speaker.email),
                            ("bio", co_speaker.bio),
                        )
                        if value
                    }
                    for co_speaker in submission.co_speakers
                ],
            }
            event_id = submission.event_id

        return await self.send_webhook(event_id, WebhookEventType.SUBMISSION_CREATED, data)

    async def send_status_updated_webhook(
        self, submission_id: str, new_status: str, feedback: str | None = None
    ) -> WebhookResult:
        with self._session_factory() as db:
            submission = db.get(Submission, submission_id)
            if submission is None:
                return WebhookResult(success=False, webhook_id="", error=SUBMISSION_NOT_FOUND)
            if not submission.is_federated:
                return WebhookResult(success=False, webhook_id="", error=SUBMISSION_NOT_FEDERATED)
            event_id = submission.event_id

        data: dict[str, Any] = {"submissionId": submission_id, "status": new_status}
        if feedback:
            data["feedback"] = feedback
        return await self.send_webhook(event_id, WebhookEventType.SUBMISSION_STATUS_UPDATED, data)

    async def send_message_sent_webhook(self, message_id: str) -> WebhookResult:
        """Forward an organizer message to the directory; speaker messages are not sent back."""

        with self._session_factory() as db:
            message = db.get(Message, message_id)
            if message is None or message.submission is None:
                return WebhookResult(success=False, webhook_id="", error=MESSAGE_NOT_FOUND)
            if not message.submission.is_federated:
                return WebhookResult(success=False, webhook_id="", error=SUBMISSION_NOT_FEDERATED)
            if message.sender_type != SENDER_TYPE_ORGANIZER:
                return WebhookResult(success=False, webhook_id="", error=ORGANIZER_MESSAGES_ONLY)

            data: dict[str, Any] = {
                "messageId": message.id,
                "submissionId": message.submission_id,
                "body": message.body,
                "senderType": "organizer",
            }
            if message.subject:
                data["subject"] = message.subject
            event_id = message.submission.event_id

        return await self.send_webhook(event_id, WebhookEventType.MESSAGE_SENT, data)

    async def send_message_read_webhook(self, message_id: str) -> WebhookResult:
        with self._session_factory() as db:
            message = db.get(Message, message_id)
            if message is None or message.submission is None:
                return WebhookResult(success=False, webhook_id="", error=MESSAGE_NOT_FOUND)
            if not message.submission.is_federated:
                return WebhookResult(success=False, webhook_id="", error=SUBMISSION_NOT_FEDERATED)

            data = {
                "messageId": message.id,
                "submissionId": message.submission_id,
                "body": "",
                "senderType": "organizer" if message.sender_type == SENDER_TYPE_ORGANIZER else "speaker",
            }
            event_id = message.submission.event_id

        return await self.send_webhook(event_id, WebhookEventType.MESSAGE_READ, data)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
