import json
from datetime import timedelta

import httpx
import pytest
import respx
from sqlalchemy.orm import Session, sessionmaker

from cfp_federation.db.time import utcnow
from cfp_federation.models import (
    CoSpeaker,
    Event,
    Message,
    SessionFormat,
    Submission,
    SubmissionMaterial,
    Track,
)
from cfp_federation.models.submission import SENDER_TYPE_ORGANIZER, SENDER_TYPE_SPEAKER
from cfp_federation.models.webhook_queue import WEBHOOK_STATUS_PENDING_RETRY
from cfp_federation.schemas.federation import WebhookEventType
from cfp_federation.services.config import FederationConfig
from cfp_federation.services.webhook_dlq import WebhookDeadLetterQueue
from cfp_federation.services.webhook_receiver import verify_webhook_signature
from cfp_federation.services.webhook_sender import (
    EVENT_NOT_FEDERATED,
    EVENT_NOT_FOUND,
    ORGANIZER_MESSAGES_ONLY,
    SUBMISSION_NOT_FEDERATED,
    WEBHOOK_USER_AGENT,
    WebhookSender,
    build_webhook_headers,
    sign_webhook_payload,
)
from tests.conftest import WEBHOOK_SECRET


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture()
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture()
def sender(
    session_factory: sessionmaker[Session],
    config: FederationConfig,
    dead_letter_queue: WebhookDeadLetterQueue,
    sleep: RecordingSleep,
) -> WebhookSender:
    return WebhookSender(session_factory, config, dead_letter_queue, sleep=sleep)


def test_build_webhook_headers_signs_timestamp_and_body():
    body = '{"id":"wh_1"}'
    headers = build_webhook_headers(body, WEBHOOK_SECRET, "wh_1", timestamp_ms=1700000000000)

    assert headers["X-Webhook-Id"] == "wh_1"
    assert headers["X-Webhook-Timestamp"] == "1700000000000"
    assert headers["User-Agent"] == WEBHOOK_USER_AGENT
    expected = sign_webhook_payload(f"1700000000000.{body}", WEBHOOK_SECRET)
    assert headers["X-Webhook-Signature"] == f"sha256={expected}"
    assert verify_webhook_signature(
        body,
        headers["X-Webhook-Signature"],
        headers["X-Webhook-Timestamp"],
        WEBHOOK_SECRET,
        now_ms=1700000000000,
    )


@pytest.mark.asyncio
@respx.mock
async def test_send_webhook_delivers_signed_envelope(
    sender: WebhookSender, config: FederationConfig, federated_event: Event
):
    route = respx.post(config.webhook_url).mock(return_value=httpx.Response(200, json={}))

    result = await sender.send_webhook(
        federated_event.id, WebhookEventType.SUBMISSION_UPDATED, {"submissionId": "sub_1"}
    )
    await sender.close()

    assert result.success
    assert result.retry_count == 0
    request = route.calls.last.request
    body = request.content.decode()
    envelope = json.loads(body)
    assert envelope["id"] == result.webhook_id
    assert envelope["type"] == "submission.updated"
    assert envelope["federatedEventId"] == "fed_evt_1"
    assert envelope["data"] == {"submissionId": "sub_1"}
    assert request.headers["X-Webhook-Id"] == result.webhook_id
    assert verify_webhook_signature(
        body,
        request.headers["X-Webhook-Signature"],
        request.headers["X-Webhook-Timestamp"],
        WEBHOOK_SECRET,
    )


@pytest.mark.asyncio
@respx.mock
async def test_retryable_failures_exhaust_retries_then_queue(
    sender: WebhookSender,
    config: FederationConfig,
    federated_event: Event,
    dead_letter_queue: WebhookDeadLetterQueue,
    sleep: RecordingSleep,
):
    route = respx.post(config.webhook_url).mock(
        return_value=httpx.Response(503, text="unavailable")
    )
    before = utcnow()

    result = await sender.send_webhook(federated_event.id, "submission.created", {"x": 1})
    await sender.close()

    assert not result.success
    assert route.call_count == 4
    assert sleep.delays == [1.0, 5.0, 15.0]
    assert result.retry_count == 3
    assert result.error.startswith("HTTP 503")
    assert result.queued_webhook_id is not None

    entry = dead_letter_queue.get_webhook(result.queued_webhook_id)
    assert entry.attempt == 1
    assert entry.status == WEBHOOK_STATUS_PENDING_RETRY
    assert entry.webhook_type == "submission.created"
    assert json.loads(entry.payload)["id"] == result.webhook_id
    assert before + timedelta(seconds=1) <= entry.next_retry_at
    assert entry.next_retry_at <= utcnow() + timedelta(seconds=1.2)


@pytest.mark.asyncio
@respx.mock
async def test_recovers_after_transient_errors(
    sender: WebhookSender, config: FederationConfig, federated_event: Event, sleep: RecordingSleep
):
    route = respx.post(config.webhook_url)
    route.side_effect = [
        httpx.ConnectError("reset"),
        httpx.Response(429),
        httpx.Response(202),
    ]

    result = await sender.send_webhook(federated_event.id, "submission.created", {})
    await sender.close()

    assert result.success
    assert result.retry_count == 2
    assert sleep.delays == [1.0, 5.0]


@pytest.mark.asyncio
@respx.mock
async def test_client_errors_fail_fast_without_queueing(
    sender: WebhookSender,
    config: FederationConfig,
    federated_event: Event,
    dead_letter_queue: WebhookDeadLetterQueue,
    sleep: RecordingSleep,
):
    route = respx.post(config.webhook_url).mock(return_value=httpx.Response(400, text="bad"))

    result = await sender.send_webhook(federated_event.id, "submission.created", {})
    await sender.close()

    assert not result.success
    assert not result.retryable
    assert route.call_count == 1
    assert sleep.delays == []
    assert result.queued_webhook_id is None
    assert dead_letter_queue.get_queue_stats().pending_retry == 0


@pytest.mark.asyncio
async def test_send_webhook_requires_federated_event(sender: WebhookSender, db_session: Session):
    local = Event(name="Local", slug="local")
    db_session.add(local)
    db_session.commit()

    missing = await sender.send_webhook("nope", "submission.created", {})
    unfederated = await sender.send_webhook(local.id, "submission.created", {})

    assert missing.error == EVENT_NOT_FOUND
    assert unfederated.error == EVENT_NOT_FEDERATED


@pytest.mark.asyncio
@respx.mock
async def test_submission_created_payload(
    sender: WebhookSender,
    config: FederationConfig,
    db_session: Session,
    federated_event: Event,
    federated_submission: Submission,
):
    track = Track(event_id=federated_event.id, name="Core Python")
    session_format = SessionFormat(event_id=federated_event.id, name="Talk", duration_min=30)
    db_session.add_all([track, session_format])
    db_session.flush()
    federated_submission.track_id = track.id
    federated_submission.format_id = session_format.id
    db_session.add_all(
        [
            SubmissionMaterial(
                submission_id=federated_submission.id,
                type="SLIDES",
                title="Deck",
                file_url="https://files.example.com/deck.pdf",
            ),
            CoSpeaker(submission_id=federated_submission.id, name="Grace"),
        ]
    )
    db_session.commit()
    route = respx.post(config.webhook_url).mock(return_value=httpx.Response(200))

    result = await sender.send_submission_created_webhook(federated_submission.id)
    await sender.close()

    assert result.success
    data = json.loads(route.calls.last.request.content)["data"]
    assert data["submissionId"] == federated_submission.id
    assert data["speakerId"] == "spk_remote_1"
    assert data["trackName"] == "Core Python"
    assert data["formatName"] == "Talk"
    assert data["materials"] == [
        {"type": "SLIDES", "title": "Deck", "url": "https://files.example.com/deck.pdf"}
    ]
    assert data["coSpeakers"] == [{"name": "Grace"}]


@pytest.mark.asyncio
async def test_submission_created_requires_federated_submission(
    sender: WebhookSender, db_session: Session, federated_event: Event
):
    local = Submission(event_id=federated_event.id, title="Local only")
    db_session.add(local)
    db_session.commit()

    result = await sender.send_submission_created_webhook(local.id)

    assert result.error == SUBMISSION_NOT_FEDERATED


@pytest.mark.asyncio
@respx.mock
async def test_status_updated_includes_feedback(
    sender: WebhookSender, config: FederationConfig, federated_submission: Submission
):
    route = respx.post(config.webhook_url).mock(return_value=httpx.Response(200))

    await sender.send_status_updated_webhook(federated_submission.id, "ACCEPTED", "Great talk")
    await sender.send_status_updated_webhook(federated_submission.id, "REJECTED")
    await sender.close()

    first, second = (json.loads(call.request.content) for call in route.calls)
    assert first["type"] == "submission.status_updated"
    assert first["data"] == {
        "submissionId": federated_submission.id,
        "status": "ACCEPTED",
        "feedback": "Great talk",
    }
    assert "feedback" not in second["data"]


@pytest.mark.asyncio
@respx.mock
async def test_message_webhooks(
    sender: WebhookSender,
    config: FederationConfig,
    db_session: Session,
    federated_submission: Submission,
):
    organizer = Message(
        submission_id=federated_submission.id,
        sender_type=SENDER_TYPE_ORGANIZER,
        subject="Schedule",
        body="You are on Friday",
    )
    speaker = Message(
        submission_id=federated_submission.id, sender_type=SENDER_TYPE_SPEAKER, body="Thanks"
    )
    db_session.add_all([organizer, speaker])
    db_session.commit()
    route = respx.post(config.webhook_url).mock(return_value=httpx.Response(200))

    sent = await sender.send_message_sent_webhook(organizer.id)
    refused = await sender.send_message_sent_webhook(speaker.id)
    read = await sender.send_message_read_webhook(speaker.id)
    await sender.close()

    assert sent.success
    assert refused.error == ORGANIZER_MESSAGES_ONLY
    assert read.success
    sent_body, read_body = (json.loads(call.request.content) for call in route.calls)
    assert sent_body["type"] == "message.sent"
    assert sent_body["data"] == {
        "messageId": organizer.id,
        "submissionId": federated_submission.id,
        "body": "You are on Friday",
        "senderType": "organizer",
        "subject": "Schedule",
    }
    assert read_body["type"] == "message.read"
    assert read_body["data"]["senderType"] == "speaker"
    assert read_body["data"]["body"] == ""


@pytest.mark.asyncio
@respx.mock
async def test_deliver_queued_resigns_with_original_id(
    sender: WebhookSender,
    config: FederationConfig,
    federated_event: Event,
    dead_letter_queue: WebhookDeadLetterQueue,
):
    route = respx.post(config.webhook_url)
    route.mock(return_value=httpx.Response(500))
    failed = await sender.send_webhook(federated_event.id, "message.sent", {"body": "hi"})
    entry = dead_letter_queue.get_webhook(failed.queued_webhook_id)

    route.mock(return_value=httpx.Response(200))
    result = await sender.deliver_queued(entry)
    await sender.close()

    assert result.success
    assert result.webhook_id == failed.webhook_id
    request = route.calls.last.request
    assert request.headers["X-Webhook-Id"] == failed.webhook_id
    assert request.content.decode() == entry.payload
    assert verify_webhook_signature(
        entry.payload,
        request.headers["X-Webhook-Signature"],
        request.headers["X-Webhook-Timestamp"],
        WEBHOOK_SECRET,
    )
