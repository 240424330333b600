"""Construction of the process-wide federation services.

Everything is built once at startup and attached to ``app.state``; request
handlers receive the objects through FastAPI dependencies instead of reaching
for module-level singletons.
"""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.orm import Session, sessionmaker

from cfp_federation.db.session import SessionLocal
from cfp_federation.services.config import FederationConfig, load_federation_config
from cfp_federation.services.consent_client import ConsentClient
from cfp_federation.services.encryption import PiiCipher, load_pii_cipher
from cfp_federation.services.event_federation import EventFederationService
from cfp_federation.services.federation_state import FederationStateService
from cfp_federation.services.federation_worker import FederationWorker, WorkerSchedule
from cfp_federation.services.license_client import LicenseClient
from cfp_federation.services.speaker_sync import SpeakerSyncService
from cfp_federation.services.webhook_dlq import WebhookDeadLetterQueue, build_dead_letter_queue
from cfp_federation.services.webhook_receiver import WebhookReceiver
from cfp_federation.services.webhook_sender import WebhookSender


@dataclass
class FederationServices:
    """Bundle of wired federation services sharing one config and session factory."""

    config: FederationConfig
    license_client: LicenseClient
    state: FederationStateService
    consent_client: ConsentClient
    speaker_sync: SpeakerSyncService
    dead_letter_queue: WebhookDeadLetterQueue
    sender: WebhookSender
    receiver: WebhookReceiver
    events: EventFederationService
    worker: FederationWorker

    async def close(self) -> None:
        await self.worker.stop()
        await self.sender.close()
        await self.consent_client.close()
        await self.license_client.close()


def build_federation_services(
    config: FederationConfig | None = None,
    session_factory: sessionmaker[Session] = SessionLocal,
    cipher: PiiCipher | None = None,
    *,
    dead_letter_queue: WebhookDeadLetterQueue | None = None,
    schedule: WorkerSchedule | None = None,
) -> FederationServices:
    """Wire the services together; ``cipher`` defaults to the settings-derived one."""

    config = config or load_federation_config()
    cipher = cipher if cipher is not None else load_pii_cipher()
    dlq = dead_letter_queue or build_dead_letter_queue(session_factory)

    license_client = LicenseClient(config)
    state = FederationStateService(license_client, session_factory, config)
    consent_client = ConsentClient(config)
    speaker_sync = SpeakerSyncService(consent_client, session_factory, cipher)
    sender = WebhookSender(session_factory, config, dlq)
    receiver = WebhookReceiver(
        session_factory, cipher, deletion_grace_hours=config.consent_deletion_grace_hours
    )
    worker = FederationWorker(sender, dlq, receiver, speaker_sync, state, schedule)

    return FederationServices(
        config=config,
        license_client=license_client,
        state=state,
        consent_client=consent_client,
        speaker_sync=speaker_sync,
        dead_letter_queue=dlq,
        sender=sender,
        receiver=receiver,
        events=EventFederationService(license_client, state, session_factory),
        worker=worker,
    )
