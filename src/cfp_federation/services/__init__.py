"""Business logic services for the CFP federation subsystem."""

from .consent_client import ConsentClient
from .encryption import PiiCipher
from .event_federation import EventFederationService
from .federation_state import FederationStateService
from .federation_worker import FederationWorker
from .license_client import LicenseClient
from .registry import FederationServices, build_federation_services
from .speaker_sync import SpeakerSyncService
from .webhook_dlq import WebhookDeadLetterQueue
from .webhook_receiver import WebhookReceiver
from .webhook_sender import WebhookSender

__all__ = [
    "ConsentClient",
    "EventFederationService",
    "FederationServices",
    "FederationStateService",
    "FederationWorker",
    "LicenseClient",
    "PiiCipher",
    "SpeakerSyncService",
    "WebhookDeadLetterQueue",
    "WebhookReceiver",
    "WebhookSender",
    "build_federation_services",
]
