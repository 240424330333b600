# src/cfp_federation/models/__init__.py
"""SQLAlchemy models for the CFP federation service."""

from .event import Event, SessionFormat, Track
from .federated_speaker import PII_FIELDS, FederatedMaterial, FederatedSpeaker
from .processed_webhook import ProcessedWebhook
from .site_settings import SITE_SETTINGS_ID, SiteSettings
from .submission import CoSpeaker, Message, Submission, SubmissionMaterial
from .webhook_queue import WebhookQueueEntry

__all__ = [
    "Event", "SessionFormat", "Track",
    "FederatedMaterial", "FederatedSpeaker", "PII_FIELDS",
    "ProcessedWebhook",
    "SiteSettings", "SITE_SETTINGS_ID",
    "CoSpeaker", "Message", "Submission", "SubmissionMaterial",
    "WebhookQueueEntry",
]
