"""Data access helpers for federated speakers.

PII columns are sealed before they reach the ORM and opened into detached
``FederatedSpeakerRecord`` values on the way out, so plaintext never sits in
the session identity map where a later flush could persist it.
"""
from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from cfp_federation.db.time import ensure_utc, utcnow
from cfp_federation.models import PII_FIELDS, FederatedSpeaker
from cfp_federation.services.encryption import (
    ENCRYPTED_PREFIX,
    EncryptionError,
    PiiCipher,
    is_encrypted,
)

__all__ = ["FederatedSpeakerRecord", "FederatedSpeakerRepository", "MigrationReport"]

logger = logging.getLogger(__name__)

_READ_ONLY = frozenset({"id", "created_at", "updated_at"})
WRITABLE_FIELDS = frozenset(
    column.key for column in FederatedSpeaker.__table__.columns if column.key not in _READ_ONLY
)


@dataclass(frozen=True)
class FederatedSpeakerRecord:
    """Decrypted, session-independent view of a federated speaker."""

    id: str
    remote_speaker_id: str
    name: str
    local_user_id: str | None = None
    email: str | None = None
    bio: str | None = None
    location: str | None = None
    company: str | None = None
    position: str | None = None
    website_url: str | None = None
    linkedin_url: str | None = None
    twitter_handle: str | None = None
    github_username: str | None = None
    speaking_experience: str | None = None
    avatar_url: str | None = None
    expertise_tags: list[str] = field(default_factory=list)
    experience_level: str | None = None
    languages: list[str] = field(default_factory=list)
    co_speakers: list[dict[str, Any]] = field(default_factory=list)
    consent_scopes: list[str] = field(default_factory=list)
    consent_granted_at: datetime | None = None
    consent_revoked_at: datetime | None = None
    deletion_deadline: datetime | None = None
    last_synced_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def has_consent(self) -> bool:
        return bool(self.consent_scopes)


@dataclass
class MigrationReport:
    """Tally returned by the bulk encrypt/decrypt helpers."""

    processed: int = 0
    succeeded: int = 0
    skipped: int = 0
    errors: int = 0


class FederatedSpeakerRepository:
    """Thin wrapper around database access for federated speakers."""

    def __init__(
        self,
        session: Session,
        cipher: PiiCipher | None = None,
        *,
        encrypt_writes: bool | None = None,
    ) -> None:
        """Initialize the repository.

        Args:
            session: SQLAlchemy session; the caller owns commit/rollback.
            cipher: Used to open sealed values on read and, when writes are
                encrypted, to seal PII before it is stored.
            encrypt_writes: Defaults to True whenever a cipher is given.
        """
        self.session = session
        self.cipher = cipher
        self.encrypt_writes = cipher is not None if encrypt_writes is None else encrypt_writes
        if self.encrypt_writes and cipher is None:
            raise ValueError("encrypt_writes requires a cipher")

    # -- conversion ----------------------------------------------------------

    def _seal(self, values: Mapping[str, Any]) -> dict[str, Any]:
        unknown = set(values) - WRITABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown federated speaker fields: {sorted(unknown)}")
        if not self.encrypt_writes or self.cipher is None:
            return dict(values)
        return self.cipher.encrypt_fields(values, PII_FIELDS)

    def _to_record(self, row: FederatedSpeaker) -> FederatedSpeakerRecord:
        values = {name: getattr(row, name) for name in PII_FIELDS}
        if self.cipher is not None:
            values = self.cipher.decrypt_fields(values, PII_FIELDS)
        return FederatedSpeakerRecord(
            id=row.id,
            remote_speaker_id=row.remote_speaker_id,
            local_user_id=row.local_user_id,
            avatar_url=row.avatar_url,
            expertise_tags=list(row.expertise_tags or []),
            experience_level=row.experience_level,
            languages=list(row.languages or []),
            co_speakers=list(row.co_speakers or []),
            consent_scopes=list(row.consent_scopes or []),
            consent_granted_at=ensure_utc(row.consent_granted_at),
            consent_revoked_at=ensure_utc(row.consent_revoked_at),
            deletion_deadline=ensure_utc(row.deletion_deadline),
            last_synced_at=ensure_utc(row.last_synced_at),
            created_at=ensure_utc(row.created_at),
            updated_at=ensure_utc(row.updated_at),
            **values,
        )

    def _get_row(self, remote_speaker_id: str) -> FederatedSpeaker | None:
        return self.session.scalars(
            select(FederatedSpeaker).where(FederatedSpeaker.remote_speaker_id == remote_speaker_id)
        ).first()

    # -- CRUD ----------------------------------------------------------------

    def create(self, values: Mapping[str, Any]) -> FederatedSpeakerRecord:
        """Insert a speaker; ``values`` must include ``remote_speaker_id`` and ``name``."""
        row = FederatedSpeaker(**self._seal(values))
        self.session.add(row)
        self.session.flush()
        return self._to_record(row)

    def update(
        self, remote_speaker_id: str, values: Mapping[str, Any]
    ) -> FederatedSpeakerRecord | None:
        row = self._get_row(remote_speaker_id)
        if row is None:
            return None
        for key, value in self._seal(values).items():
            setattr(row, key, value)
        self.session.flush()
        return self._to_record(row)

    def upsert(
        self,
        remote_speaker_id: str,
        create_values: Mapping[str, Any],
        update_values: Mapping[str, Any],
    ) -> FederatedSpeakerRecord:
        """Create or update the speaker keyed by its remote id."""
        row = self._get_row(remote_speaker_id)
        if row is None:
            return self.create({**create_values, "remote_speaker_id": remote_speaker_id})
        for key, value in self._seal(update_values).items():
            setattr(row, key, value)
        self.session.flush()
        return self._to_record(row)

    def find_by_remote_id(self, remote_speaker_id: str) -> FederatedSpeakerRecord | None:
        row = self._get_row(remote_speaker_id)
        return self._to_record(row) if row is not None else None

    def find_by_id(self, speaker_id: str) -> FederatedSpeakerRecord | None:
        row = self.session.get(FederatedSpeaker, speaker_id)
        return self._to_record(row) if row is not None else None

    def find_many(
        self,
        remote_speaker_ids: Iterable[str] | None = None,
        *,
        limit: int | None = None,
    ) -> list[FederatedSpeakerRecord]:
        stmt = select(FederatedSpeaker).order_by(FederatedSpeaker.created_at)
        if remote_speaker_ids is not None:
            ids = list(remote_speaker_ids)
            if not ids:
                return []
            stmt = stmt.where(FederatedSpeaker.remote_speaker_id.in_(ids))
        if limit is not None:
            stmt = stmt.limit(limit)
        return [self._to_record(row) for row in self.session.scalars(stmt)]

    def delete(self, remote_speaker_id: str) -> bool:
        row = self._get_row(remote_speaker_id)
        if row is None:
            return False
        self.session.delete(row)
        self.session.flush()
        return True

    # -- consent -------------------------------------------------------------

    def update_consent_scopes(
        self, remote_speaker_id: str, scopes: Sequence[str]
    ) -> FederatedSpeakerRecord | None:
        """Replace consent scopes; granting any scope clears a pending revocation."""
        values: dict[str, Any] = {"consent_scopes": list(scopes)}
        if scopes:
            values.update(
                consent_granted_at=utcnow(), consent_revoked_at=None, deletion_deadline=None
            )
        return self.update(remote_speaker_id, values)

    def revoke_consent(
        self, remote_speaker_id: str, deletion_deadline: datetime | None = None
    ) -> FederatedSpeakerRecord | None:
        """Clear all scopes at once; data is purged later, at ``deletion_deadline``."""
        return self.update(
            remote_speaker_id,
            {
                "consent_scopes": [],
                "consent_revoked_at": utcnow(),
                "deletion_deadline": deletion_deadline,
            },
        )

    def find_expired_revocations(self, now: datetime | None = None) -> list[FederatedSpeakerRecord]:
        """Return revoked speakers whose deletion deadline has passed."""
        stmt = select(FederatedSpeaker).where(
            FederatedSpeaker.deletion_deadline.is_not(None),
            FederatedSpeaker.deletion_deadline <= (now or utcnow()),
        )
        return [
            self._to_record(row) for row in self.session.scalars(stmt) if not row.consent_scopes
        ]

    # -- bulk migration ------------------------------------------------------

    def encrypt_existing(self) -> MigrationReport:
        """Seal PII on every row still stored in plaintext."""
        if self.cipher is None:
            raise ValueError("A cipher is required to encrypt existing speakers")

        report = MigrationReport()
        for row in self.session.scalars(select(FederatedSpeaker)):
            report.processed += 1
            if is_encrypted(row.name):
                report.skipped += 1
                continue
            try:
                sealed = self.cipher.encrypt_fields(
                    {name: getattr(row, name) for name in PII_FIELDS}, PII_FIELDS
                )
            except EncryptionError as exc:
                logger.error("Failed to encrypt federated speaker %s: %s", row.id, exc)
                report.errors += 1
                continue
            for name, value in sealed.items():
                setattr(row, name, value)
            report.succeeded += 1

        self.session.flush()
        logger.info(
            "Encrypted %s of %s federated speakers (%s errors)",
            report.succeeded,
            report.processed,
            report.errors,
        )
        return report

    def decrypt_all(self) -> MigrationReport:
        """Store every sealed row back as plaintext, e.g. before disabling encryption."""
        if self.cipher is None:
            raise ValueError("A cipher is required to decrypt speakers")

        report = MigrationReport()
        stmt = select(FederatedSpeaker).where(FederatedSpeaker.name.startswith(ENCRYPTED_PREFIX))
        for row in self.session.scalars(stmt):
            report.processed += 1
            try:
                opened = {
                    name: self.cipher.decrypt(value) if is_encrypted(value) else value
                    for name in PII_FIELDS
                    for value in (getattr(row, name),)
                }
            except EncryptionError as exc:
                logger.error("Failed to decrypt federated speaker %s: %s", row.id, exc)
                report.errors += 1
                continue
            for name, value in opened.items():
                setattr(row, name, value)
            report.succeeded += 1

        self.session.flush()
        logger.info(
            "Decrypted %s of %s federated speakers (%s errors)",
            report.succeeded,
            report.processed,
            report.errors,
        )
        return report
