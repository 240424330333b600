"""Background scheduler for federation housekeeping.

The FederationWorker polls the webhook queue for entries whose
``next_retry_at`` has passed and redelivers them. On slower independent
schedules it cleans up old queue and replay records, purges speakers whose
consent deletion deadline has expired, and sends the license heartbeat.
Because retry times live in the queue rather than in sleeping tasks, durable
retries survive a restart.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

from sqlalchemy.exc import SQLAlchemyError

from cfp_federation.core.settings import settings
from cfp_federation.services.errors import FederationError
from cfp_federation.services.federation_state import FederationStateService
from cfp_federation.services.speaker_sync import SpeakerSyncService
from cfp_federation.services.webhook_dlq import WebhookDeadLetterQueue
from cfp_federation.services.webhook_receiver import WebhookReceiver
from cfp_federation.services.webhook_sender import WebhookSender

logger = logging.getLogger(__name__)

ERROR_BACKOFF_CAP_SECONDS = 30.0


@dataclass(frozen=True)
class WorkerSchedule:
    """Intervals, in seconds, for each periodic job."""

    poll_interval: float = 30.0
    cleanup_interval: float = 3600.0
    consent_sweep_interval: float = 3600.0
    heartbeat_interval: float = 3600.0

    @classmethod
    def from_settings(cls) -> WorkerSchedule:
        return cls(
            poll_interval=float(settings.federation_worker_interval_seconds),
            cleanup_interval=float(settings.webhook_cleanup_interval_seconds),
            consent_sweep_interval=float(settings.consent_sweep_interval_seconds),
            heartbeat_interval=float(settings.heartbeat_interval_seconds),
        )


@dataclass
class WorkerRunReport:
    """What a single pass of the worker did."""

    retried: int = 0
    delivered: int = 0
    cleaned: int = 0
    purged_speakers: int = 0
    heartbeat_sent: bool = False


class FederationWorker:
    """Periodically runs webhook retries and federation maintenance jobs."""

    def __init__(
        self,
        sender: WebhookSender,
        dead_letter_queue: WebhookDeadLetterQueue,
        receiver: WebhookReceiver,
        speaker_sync: SpeakerSyncService,
        state_service: FederationStateService,
        schedule: WorkerSchedule | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.sender = sender
        self.dead_letter_queue = dead_letter_queue
        self.receiver = receiver
        self.speaker_sync = speaker_sync
        self.state_service = state_service
        self.schedule = schedule or WorkerSchedule.from_settings()
        self._clock = clock
        self._task: asyncio.Task[None] | None = None
        self._stopping = asyncio.Event()
        self._next_cleanup = 0.0
        self._next_sweep = 0.0
        self._next_heartbeat = 0.0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the background loop when a license key is configured."""

        if not self.state_service.config.is_configured:
            logger.info("Federation worker not started: no license key configured")
            return

        if self._task is None or self._task.done():
            self._stopping.clear()
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """Stop the background loop and wait for the current pass to finish."""

        if self._task is None:
            return

        self._stopping.set()
        await self._task
        self._task = None

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
        except TimeoutError:
            pass

    async def _run(self) -> None:
        interval = max(0.1, self.schedule.poll_interval)

        while not self._stopping.is_set():
            try:
                await self.run_once()
            except FederationError as e:
                logger.warning("FederationWorker encountered FederationError: %s", e)
                await self._sleep(min(interval * 4, ERROR_BACKOFF_CAP_SECONDS))
                continue
            except SQLAlchemyError as e:
                logger.error("FederationWorker encountered database error: %s", e)
                await self._sleep(min(interval * 4, ERROR_BACKOFF_CAP_SECONDS))
                continue
            except (OSError, ValueError, TypeError, KeyError) as e:
                logger.error("FederationWorker encountered unexpected error: %s", e, exc_info=True)
                await self._sleep(min(interval * 4, ERROR_BACKOFF_CAP_SECONDS))
                continue

            await self._sleep(interval)

    async def run_once(self) -> WorkerRunReport:
        """Run every job that is due right now."""

        report = WorkerRunReport()
        report.retried, report.delivered = await self.process_due_webhooks()

        now = self._clock()
        if now >= self._next_cleanup:
            report.cleaned = self.cleanup()
            self._next_cleanup = now + self.schedule.cleanup_interval

        if now >= self._next_sweep:
            report.purged_speakers = await self.sweep_revoked_consents()
            self._next_sweep = now + self.schedule.consent_sweep_interval

        if now >= self._next_heartbeat:
            outcome = await self.state_service.perform_heartbeat()
            report.heartbeat_sent = outcome.success
            self._next_heartbeat = now + self.schedule.heartbeat_interval

        return report

    async def process_due_webhooks(self) -> tuple[int, int]:
        """Redeliver queued webhooks whose retry time has come.

        Returns ``(attempted, delivered)``.
        """

        due = self.dead_letter_queue.get_webhooks_for_retry()
        delivered = 0
        for entry in due:
            result = await self.sender.deliver_queued(entry)
            self.dead_letter_queue.update_webhook_attempt(entry.id, result.success, result.error)
            if result.success:
                delivered += 1
            else:
                logger.debug("Retry of queued webhook %s failed: %s", entry.id, result.error)

        if due:
            logger.info("Retried %d queued webhooks, %d delivered", len(due), delivered)
        return len(due), delivered

    def cleanup(self) -> int:
        """Drop expired queue entries and replay records."""
        return (
            self.dead_letter_queue.cleanup_old_webhooks()
            + self.receiver.cleanup_processed_webhooks()
        )

    async def sweep_revoked_consents(self) -> int:
        return await self.speaker_sync.purge_revoked_speakers()
