"""Dead-letter queue for outbound webhooks that exhausted their inline retries.

Entries move through ``pending_retry`` -> ``success`` | ``dead_letter``.
Each failed attempt pushes ``next_retry_at`` out by an exponential backoff
(1 s, 2 s, 4 s, ... capped at 1 h, plus up to 10 % jitter). After
``MAX_RETRY_ATTEMPTS`` failures the entry is dead-lettered and waits for an
operator.

Storage sits behind ``QueueStore``. ``DurableQueueStore`` persists through
SQLAlchemy; ``EphemeralQueueStore`` keeps entries in process memory and
loses them on restart. ``build_dead_letter_queue`` probes the database once
and picks one. If a durable write later fails, the queue switches to the
ephemeral store for the rest of the process lifetime and logs a warning.
"""

from __future__ import annotations

import logging
import random
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Protocol

from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from cfp_federation.db.ids import new_id
from cfp_federation.db.session import SessionLocal
from cfp_federation.db.time import ensure_utc, utcnow
from cfp_federation.models.webhook_queue import (
    WEBHOOK_STATUS_DEAD_LETTER,
    WEBHOOK_STATUS_PENDING_RETRY,
    WEBHOOK_STATUS_SUCCESS,
    WebhookQueueEntry,
)
from cfp_federation.schemas.federation import WebhookPayload

logger = logging.getLogger(__name__)

MAX_RETRY_ATTEMPTS = 5
BASE_RETRY_DELAY_SECONDS = 1.0
MAX_RETRY_DELAY_SECONDS = 60.0 * 60
JITTER_RATIO = 0.1
MAX_ERROR_LENGTH = 1000
DEFAULT_RETRY_BATCH = 10
DEFAULT_DEAD_LETTER_PAGE = 50
SUCCESS_RETENTION = timedelta(hours=24)
DEAD_LETTER_RETENTION = timedelta(days=7)


def compute_retry_delay(attempt: int) -> float:
    """Backoff in seconds before retry number ``attempt`` (1-based), without jitter."""
    exponent = max(attempt, 1) - 1
    return min(BASE_RETRY_DELAY_SECONDS * (2**exponent), MAX_RETRY_DELAY_SECONDS)


def calculate_next_retry_time(
    attempt: int,
    now: datetime | None = None,
    rng: Callable[[], float] = random.random,
) -> datetime:
    delay = compute_retry_delay(attempt)
    jitter = delay * JITTER_RATIO * rng()
    return (now or utcnow()) + timedelta(seconds=delay + jitter)


def _truncate(error: str | None) -> str | None:
    if error is None:
        return None
    return error[:MAX_ERROR_LENGTH]


@dataclass(frozen=True)
class QueuedWebhook:
    """A queued webhook, independent of the store holding it."""

    id: str
    event_id: str
    webhook_type: str
    payload: str
    webhook_url: str
    attempt: int
    status: str
    created_at: datetime
    last_error: str | None = None
    last_attempt_at: datetime | None = None
    next_retry_at: datetime | None = None


@dataclass(frozen=True)
class QueueStats:
    pending_retry: int
    dead_letter: int
    successful_retries: int
    oldest_pending: datetime | None
    durable: bool

    def to_dict(self) -> dict[str, object]:
        return {
            "pending_retry": self.pending_retry,
            "dead_letter": self.dead_letter,
            "successful_retries": self.successful_retries,
            "oldest_pending": self.oldest_pending.isoformat() if self.oldest_pending else None,
            "durable": self.durable,
        }


class QueueStore(Protocol):
    """Storage contract shared by the durable and ephemeral queues."""

    durable: bool

    def add(self, entry: QueuedWebhook) -> None: ...

    def get(self, entry_id: str) -> QueuedWebhook | None: ...

    def save(self, entry: QueuedWebhook) -> None: ...

    def remove(self, entry_id: str) -> bool: ...

    def due(self, now: datetime, limit: int) -> list[QueuedWebhook]: ...

    def by_status(self, status: str, limit: int) -> list[QueuedWebhook]: ...

    def count_by_status(self) -> dict[str, int]: ...

    def oldest_pending(self) -> datetime | None: ...

    def purge(self, success_before: datetime, dead_letter_before: datetime) -> int: ...


class EphemeralQueueStore:
    """In-process store. Entries do not survive a restart."""

    durable = False

    def __init__(self) -> None:
        self._entries: dict[str, QueuedWebhook] = {}

    def add(self, entry: QueuedWebhook) -> None:
        self._entries[entry.id] = entry

    def get(self, entry_id: str) -> QueuedWebhook | None:
        return self._entries.get(entry_id)

    def save(self, entry: QueuedWebhook) -> None:
        self._entries[entry.id] = entry

    def remove(self, entry_id: str) -> bool:
        return self._entries.pop(entry_id, None) is not None

    def due(self, now: datetime, limit: int) -> list[QueuedWebhook]:
        ready = [
            entry
            for entry in self._entries.values()
            if entry.status == WEBHOOK_STATUS_PENDING_RETRY
            and entry.next_retry_at is not None
            and entry.next_retry_at <= now
        ]
        ready.sort(key=lambda entry: entry.next_retry_at)
        return ready[:limit]

    def by_status(self, status: str, limit: int) -> list[QueuedWebhook]:
        matching = [entry for entry in self._entries.values() if entry.status == status]
        matching.sort(key=lambda entry: entry.created_at, reverse=True)
        return matching[:limit]

    def count_by_status(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for entry in self._entries.values():
            counts[entry.status] = counts.get(entry.status, 0) + 1
        return counts

    def oldest_pending(self) -> datetime | None:
        pending = [
            entry.created_at
            for entry in self._entries.values()
            if entry.status == WEBHOOK_STATUS_PENDING_RETRY
        ]
        return min(pending) if pending else None

    def purge(self, success_before: datetime, dead_letter_before: datetime) -> int:
        expired = [
            entry.id
            for entry in self._entries.values()
            if (
                entry.status == WEBHOOK_STATUS_SUCCESS
                and entry.last_attempt_at is not None
                and entry.last_attempt_at < success_before
            )
            or (entry.status == WEBHOOK_STATUS_DEAD_LETTER and entry.created_at < dead_letter_before)
        ]
        for entry_id in expired:
            del self._entries[entry_id]
        return len(expired)


class DurableQueueStore:
    """SQLAlchemy-backed store using the ``webhook_queue`` table."""

    durable = True

    def __init__(self, session_factory: sessionmaker[Session] = SessionLocal) -> None:
        self._session_factory = session_factory

    @staticmethod
    def _to_entry(row: WebhookQueueEntry) -> QueuedWebhook:
        return QueuedWebhook(
            id=row.id,
            event_id=row.event_id,
            webhook_type=row.webhook_type,
            payload=row.payload,
            webhook_url=row.webhook_url,
            attempt=row.attempt,
            status=row.status,
            created_at=ensure_utc(row.created_at),
            last_error=row.last_error,
            last_attempt_at=ensure_utc(row.last_attempt_at),
            next_retry_at=ensure_utc(row.next_retry_at),
        )

    @staticmethod
    def _apply(row: WebhookQueueEntry, entry: QueuedWebhook) -> None:
        row.event_id = entry.event_id
        row.webhook_type = entry.webhook_type
        row.payload = entry.payload
        row.webhook_url = entry.webhook_url
        row.attempt = entry.attempt
        row.status = entry.status
        row.created_at = entry.created_at
        row.last_error = entry.last_error
        row.last_attempt_at = entry.last_attempt_at
        row.next_retry_at = entry.next_retry_at

    def probe(self) -> None:
        """Raise ``SQLAlchemyError`` unless the queue table is reachable."""
        with self._session_factory() as db:
            db.execute(select(func.count()).select_from(WebhookQueueEntry))

    def add(self, entry: QueuedWebhook) -> None:
        with self._session_factory() as db:
            row = WebhookQueueEntry(id=entry.id)
            self._apply(row, entry)
            db.add(row)
            db.commit()

    def get(self, entry_id: str) -> QueuedWebhook | None:
        with self._session_factory() as db:
            row = db.get(WebhookQueueEntry, entry_id)
            return self._to_entry(row) if row is not None else None

    def save(self, entry: QueuedWebhook) -> None:
        with self._session_factory() as db:
            row = db.get(WebhookQueueEntry, entry.id)
            if row is None:
                row = WebhookQueueEntry(id=entry.id)
                db.add(row)
            self._apply(row, entry)
            db.commit()

    def remove(self, entry_id: str) -> bool:
        with self._session_factory() as db:
            row = db.get(WebhookQueueEntry, entry_id)
            if row is None:
                return False
            db.delete(row)
            db.commit()
            return True

    def due(self, now: datetime, limit: int) -> list[QueuedWebhook]:
        with self._session_factory() as db:
            rows = db.scalars(
                select(WebhookQueueEntry)
                .where(
                    WebhookQueueEntry.status == WEBHOOK_STATUS_PENDING_RETRY,
                    WebhookQueueEntry.next_retry_at <= now,
                )
                .order_by(WebhookQueueEntry.next_retry_at.asc())
                .limit(limit)
            )
            return [self._to_entry(row) for row in rows]

    def by_status(self, status: str, limit: int) -> list[QueuedWebhook]:
        with self._session_factory() as db:
            rows = db.scalars(
                select(WebhookQueueEntry)
                .where(WebhookQueueEntry.status == status)
                .order_by(WebhookQueueEntry.created_at.desc())
                .limit(limit)
            )
            return [self._to_entry(row) for row in rows]

    def count_by_status(self) -> dict[str, int]:
        with self._session_factory() as db:
            rows = db.execute(
                select(WebhookQueueEntry.status, func.count()).group_by(WebhookQueueEntry.status)
            )
            return {status: count for status, count in rows}

    def oldest_pending(self) -> datetime | None:
        with self._session_factory() as db:
            oldest = db.scalar(
                select(func.min(WebhookQueueEntry.created_at)).where(
                    WebhookQueueEntry.status == WEBHOOK_STATUS_PENDING_RETRY
                )
            )
            return ensure_utc(oldest)

    def purge(self, success_before: datetime, dead_letter_before: datetime) -> int:
        with self._session_factory() as db:
            successes = db.execute(
                delete(WebhookQueueEntry).where(
                    WebhookQueueEntry.status == WEBHOOK_STATUS_SUCCESS,
                    WebhookQueueEntry.last_attempt_at < success_before,
                )
            )
            dead = db.execute(
                delete(WebhookQueueEntry).where(
                    WebhookQueueEntry.status == WEBHOOK_STATUS_DEAD_LETTER,
                    WebhookQueueEntry.created_at < dead_letter_before,
                )
            )
            db.commit()
            return (successes.rowcount or 0) + (dead.rowcount or 0)


class WebhookDeadLetterQueue:
    """State machine for failed outbound webhooks."""

    def __init__(
        self,
        store: QueueStore,
        *,
        max_attempts: int = MAX_RETRY_ATTEMPTS,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self.store: QueueStore = store
        self.max_attempts = max_attempts
        self._rng = rng

    @property
    def durable(self) -> bool:
        return self.store.durable

    def _degrade(self, exc: SQLAlchemyError) -> None:
        logger.warning(
            "Webhook queue database unavailable (%s); falling back to in-memory queue. "
            "Queued webhooks will be lost on restart.",
            exc,
        )
        self.store = EphemeralQueueStore()

    def _write(self, entry: QueuedWebhook, *, new: bool = False) -> None:
        try:
            if new:
                self.store.add(entry)
            else:
                self.store.save(entry)
        except SQLAlchemyError as exc:
            if not self.store.durable:
                raise
            self._degrade(exc)
            self.store.add(entry)

    def queue_failed_webhook(
        self,
        event_id: str,
        webhook_type: str,
        payload: WebhookPayload | str,
        webhook_url: str,
        error: str | None,
    ) -> str:
        """Store a webhook whose inline delivery failed; returns the queue entry id."""

        now = utcnow()
        entry = QueuedWebhook(
            id=new_id(),
            event_id=event_id,
            webhook_type=webhook_type,
            payload=payload if isinstance(payload, str) else payload.to_json(),
            webhook_url=webhook_url,
            attempt=1,
            status=WEBHOOK_STATUS_PENDING_RETRY,
            created_at=now,
            last_error=_truncate(error),
            last_attempt_at=now,
            next_retry_at=calculate_next_retry_time(1, now, self._rng),
        )
        self._write(entry, new=True)
        logger.info(
            "Queued failed webhook %s (%s) for retry at %s",
            entry.id,
            webhook_type,
            entry.next_retry_at.isoformat(),
        )
        return entry.id

    def get_webhook(self, entry_id: str) -> QueuedWebhook | None:
        return self.store.get(entry_id)

    def update_webhook_attempt(
        self, entry_id: str, success: bool, error: str | None = None
    ) -> QueuedWebhook | None:
        """Record the outcome of a retry and advance the state machine."""

        entry = self.store.get(entry_id)
        if entry is None:
            return None

        now = utcnow()
        attempt = entry.attempt + 1
        if success:
            status = WEBHOOK_STATUS_SUCCESS
        elif attempt >= self.max_attempts:
            status = WEBHOOK_STATUS_DEAD_LETTER
        else:
            status = WEBHOOK_STATUS_PENDING_RETRY

        updated = replace(
            entry,
            attempt=attempt,
            status=status,
            last_error=None if success else _truncate(error),
            last_attempt_at=now,
            next_retry_at=(
                calculate_next_retry_time(attempt, now, self._rng)
                if status == WEBHOOK_STATUS_PENDING_RETRY
                else None
            ),
        )
        self._write(updated)

        if status == WEBHOOK_STATUS_DEAD_LETTER:
            logger.warning(
                "Webhook %s moved to dead letter queue after %s attempts", entry_id, attempt
            )
        return updated

    def get_webhooks_for_retry(self, limit: int = DEFAULT_RETRY_BATCH) -> list[QueuedWebhook]:
        """Pending entries whose retry time has come, oldest ``next_retry_at`` first."""
        return self.store.due(utcnow(), limit)

    def get_dead_letter_webhooks(self, limit: int = DEFAULT_DEAD_LETTER_PAGE) -> list[QueuedWebhook]:
        """Dead-lettered entries, newest first."""
        return self.store.by_status(WEBHOOK_STATUS_DEAD_LETTER, limit)

    def retry_dead_letter_webhook(self, entry_id: str) -> bool:
        """Put a dead-lettered entry back in line for an immediate retry."""

        entry = self.store.get(entry_id)
        if entry is None or entry.status != WEBHOOK_STATUS_DEAD_LETTER:
            return False
        self._write(
            replace(
                entry,
                status=WEBHOOK_STATUS_PENDING_RETRY,
                attempt=0,
                next_retry_at=utcnow(),
            )
        )
        logger.info("Dead-lettered webhook %s scheduled for manual retry", entry_id)
        return True

    def delete_webhook(self, entry_id: str) -> bool:
        return self.store.remove(entry_id)

    def get_queue_stats(self) -> QueueStats:
        counts = self.store.count_by_status()
        return QueueStats(
            pending_retry=counts.get(WEBHOOK_STATUS_PENDING_RETRY, 0),
            dead_letter=counts.get(WEBHOOK_STATUS_DEAD_LETTER, 0),
            successful_retries=counts.get(WEBHOOK_STATUS_SUCCESS, 0),
            oldest_pending=self.store.oldest_pending(),
            durable=self.store.durable,
        )

    def cleanup_old_webhooks(self, now: datetime | None = None) -> int:
        """Drop successes older than a day and dead letters older than a week."""

        now = now or utcnow()
        removed = self.store.purge(now - SUCCESS_RETENTION, now - DEAD_LETTER_RETENTION)
        if removed:
            logger.info("Cleaned up %s old webhook queue entries", removed)
        return removed


def build_dead_letter_queue(
    session_factory: sessionmaker[Session] = SessionLocal,
) -> WebhookDeadLetterQueue:
    """Choose the durable store when the database answers, else the ephemeral one."""

    store = DurableQueueStore(session_factory)
    try:
        store.probe()
    except SQLAlchemyError as exc:
        logger.warning("Webhook queue table unavailable (%s); using in-memory queue", exc)
        return WebhookDeadLetterQueue(EphemeralQueueStore())
    return WebhookDeadLetterQueue(store)
