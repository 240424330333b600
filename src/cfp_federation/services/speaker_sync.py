"""Synchronize consenting directory speakers into the local store.

A sync fetches the speaker's consent-scoped profile, upserts the local
record, then handles materials and co-speakers one by one. A failure on a
single material or co-speaker is logged and skipped; it never fails the sync.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from cfp_federation.db.session import SessionLocal
from cfp_federation.db.time import utcnow
from cfp_federation.models import FederatedMaterial, Submission
from cfp_federation.repositories.federated_speaker_repo import (
    FederatedSpeakerRecord,
    FederatedSpeakerRepository,
)
from cfp_federation.services.consent_client import (
    ConsentClient,
    is_signed_url,
    sanitize_file_name,
)
from cfp_federation.services.encryption import EncryptionError, PiiCipher
from cfp_federation.services.profile_adapter import (
    CO_SPEAKER_LINKED,
    SCOPE_MATERIALS,
    RemoteCoSpeaker,
    RemoteMaterial,
    SpeakerProfile,
)

logger = logging.getLogger(__name__)

FETCH_FAILED = "FETCH_FAILED"
SYNC_ERROR = "SYNC_ERROR"
UNKNOWN_SPEAKER_NAME = "Unknown Speaker"
FEDERATION_UPLOAD_DIR = "federation"
LOCAL_FILES_URL_PREFIX = "/api/files"

_LIST_FIELDS = frozenset({"expertise_tags", "languages"})


@dataclass(frozen=True)
class SyncResult:
    """Outcome of syncing one speaker."""

    success: bool
    federated_speaker_id: str | None = None
    local_user_id: str | None = None
    materials_downloaded: int = 0
    materials_referenced: int = 0
    co_speakers_processed: int = 0
    error: str | None = None
    error_code: str | None = None


def _incoming_values(profile: SpeakerProfile) -> dict[str, Any]:
    return {
        "email": profile.email,
        "bio": profile.bio,
        "avatar_url": profile.avatar_url,
        "location": profile.location,
        "company": profile.company,
        "position": profile.position,
        "website_url": profile.website_url,
        "speaking_experience": profile.speaking_experience,
        "experience_level": profile.experience_level,
        "linkedin_url": profile.social_links.linkedin,
        "twitter_handle": profile.social_links.twitter,
        "github_username": profile.social_links.github,
        "expertise_tags": list(profile.topics),
        "languages": list(profile.languages),
    }


class SpeakerSyncService:
    """Pull consenting speakers from the directory into local storage."""

    def __init__(
        self,
        consent_client: ConsentClient,
        session_factory: sessionmaker[Session] = SessionLocal,
        cipher: PiiCipher | None = None,
    ) -> None:
        self.consent_client = consent_client
        self.cipher = cipher
        self._session_factory = session_factory

    def _repository(self, db: Session) -> FederatedSpeakerRepository:
        return FederatedSpeakerRepository(db, self.cipher)

    # -- field merging ------------------------------------------------------

    @staticmethod
    def _create_values(profile: SpeakerProfile, local_user_id: str | None) -> dict[str, Any]:
        now = utcnow()
        values = _incoming_values(profile)
        values.update(
            name=profile.full_name or UNKNOWN_SPEAKER_NAME,
            local_user_id=local_user_id,
            consent_scopes=list(profile.consented_scopes),
            consent_granted_at=now if profile.consented_scopes else None,
            last_synced_at=now,
        )
        return values

    @staticmethod
    def _merge_values(
        profile: SpeakerProfile,
        existing: FederatedSpeakerRecord | None,
        local_user_id: str | None,
    ) -> dict[str, Any]:
        """Incoming value where populated, else the stored one.

        Empty incoming data never clobbers a stored field; ``consent_scopes``
        decides what may be shown.
        """
        now = utcnow()
        incoming = _incoming_values(profile)
        values: dict[str, Any] = {}
        for name, value in incoming.items():
            current = getattr(existing, name, None) if existing else None
            values[name] = value or current or ([] if name in _LIST_FIELDS else None)

        existing_name = existing.name if existing else None
        values["name"] = profile.full_name or existing_name or UNKNOWN_SPEAKER_NAME

        if local_user_id or existing is None:
            values["local_user_id"] = local_user_id
        values["consent_scopes"] = list(profile.consented_scopes)
        values["last_synced_at"] = now
        if profile.consented_scopes:
            values.update(consent_granted_at=now, consent_revoked_at=None, deletion_deadline=None)
        return values

    # -- sync ---------------------------------------------------------------

    async def sync_federated_speaker(
        self,
        consent_token: str,
        speaker_id: str,
        federated_event_id: str,
        *,
        download_materials: bool = True,
        local_user_id: str | None = None,
    ) -> SyncResult:
        """Fetch, upsert and enrich one speaker under their consent token."""

        fetched = await self.consent_client.fetch_speaker_profile(consent_token, speaker_id)
        if not fetched.success or fetched.profile is None:
            return SyncResult(
                success=False,
                error=fetched.error or "Failed to fetch speaker profile",
                error_code=fetched.error_code or FETCH_FAILED,
            )
        profile = fetched.profile

        try:
            with self._session_factory() as db:
                repo = self._repository(db)
                existing = repo.find_by_remote_id(speaker_id)
                record = repo.upsert(
                    speaker_id,
                    self._create_values(profile, local_user_id),
                    self._merge_values(profile, existing, local_user_id),
                )
                db.commit()
        except (SQLAlchemyError, EncryptionError) as exc:
            logger.error("Failed to store federated speaker: %s", exc)
            return SyncResult(success=False, error=str(exc), error_code=SYNC_ERROR)

        downloaded = referenced = 0
        if download_materials and profile.has_scope(SCOPE_MATERIALS) and profile.materials:
            downloaded, referenced = await self._sync_materials(
                record, profile.materials, federated_event_id
            )

        co_speakers_processed = 0
        if profile.co_speakers:
            co_speakers_processed = self._process_co_speakers(
                record, profile.co_speakers, federated_event_id
            )

        logger.info(
            "Synced federated speaker %s (%s downloaded, %s referenced, %s co-speakers)",
            record.id,
            downloaded,
            referenced,
            co_speakers_processed,
        )
        return SyncResult(
            success=True,
            federated_speaker_id=record.id,
            local_user_id=record.local_user_id,
            materials_downloaded=downloaded,
            materials_referenced=referenced,
            co_speakers_processed=co_speakers_processed,
        )

    async def _sync_materials(
        self,
        speaker: FederatedSpeakerRecord,
        materials: tuple[RemoteMaterial, ...],
        federated_event_id: str,
    ) -> tuple[int, int]:
        downloaded = referenced = 0
        event_dir = sanitize_file_name(federated_event_id)
        speaker_dir = sanitize_file_name(speaker.id)

        for material in materials:
            local_path: str | None = None
            local_url: str | None = None
            source_url: str | None = None
            is_external = False

            if material.is_external and material.external_url:
                source_url = material.external_url
                is_external = True
            elif material.file_url and is_signed_url(material.file_url):
                file_name = sanitize_file_name(material.file_name or f"material-{material.id}")
                relative = Path(FEDERATION_UPLOAD_DIR, event_dir, speaker_dir, file_name)
                result = await self.consent_client.download_material(material.file_url, relative)
                if not result.success:
                    logger.warning("Skipping material %s: %s", material.id, result.error)
                    continue
                local_path = str(result.local_path)
                local_url = f"{LOCAL_FILES_URL_PREFIX}/{relative.as_posix()}"
            elif material.file_url:
                source_url = material.file_url
            else:
                logger.debug("Material %s has no usable URL", material.id)
                continue

            try:
                self._record_material(
                    speaker.id,
                    material,
                    federated_event_id,
                    source_url=source_url,
                    local_path=local_path,
                    local_url=local_url,
                    is_external=is_external,
                )
            except SQLAlchemyError as exc:
                logger.error("Failed to record material %s: %s", material.id, exc)
                continue

            if local_path:
                downloaded += 1
            else:
                referenced += 1

        return downloaded, referenced

    def _record_material(
        self,
        federated_speaker_id: str,
        material: RemoteMaterial,
        federated_event_id: str,
        *,
        source_url: str | None,
        local_path: str | None,
        local_url: str | None,
        is_external: bool,
    ) -> None:
        with self._session_factory() as db:
            row = db.scalars(
                select(FederatedMaterial).where(
                    FederatedMaterial.federated_speaker_id == federated_speaker_id,
                    FederatedMaterial.remote_material_id == material.id,
                )
            ).first()
            if row is None:
                row = FederatedMaterial(
                    federated_speaker_id=federated_speaker_id,
                    remote_material_id=material.id,
                    title=material.title,
                )
                db.add(row)
            row.federated_event_id = federated_event_id
            row.type = material.type
            row.title = material.title
            row.source_url = source_url
            row.local_path = local_path
            row.local_url = local_url
            row.is_external = is_external
            row.synced_at = utcnow()
            db.commit()

    def _process_co_speakers(
        self,
        speaker: FederatedSpeakerRecord,
        co_speakers: tuple[RemoteCoSpeaker, ...],
        federated_event_id: str,
    ) -> int:
        processed = 0
        metadata: list[dict[str, Any]] = []

        for co_speaker in co_speakers:
            try:
                if co_speaker.type == CO_SPEAKER_LINKED and co_speaker.speaker_profile_id:
                    self._ensure_placeholder(co_speaker)
            except (SQLAlchemyError, EncryptionError) as exc:
                logger.error("Failed to process co-speaker %s: %s", co_speaker.id, exc)
                continue
            metadata.append(
                {
                    "id": co_speaker.id,
                    "type": co_speaker.type,
                    "speakerProfileId": co_speaker.speaker_profile_id,
                    "federatedEventId": federated_event_id,
                }
            )
            processed += 1

        try:
            with self._session_factory() as db:
                self._repository(db).update(speaker.remote_speaker_id, {"co_speakers": metadata})
                db.commit()
        except SQLAlchemyError as exc:
            logger.error("Failed to store co-speaker metadata for %s: %s", speaker.id, exc)

        return processed

    def _ensure_placeholder(self, co_speaker: RemoteCoSpeaker) -> None:
        """Create a non-consenting placeholder for a linked co-speaker if absent."""
        remote_id = co_speaker.speaker_profile_id
        with self._session_factory() as db:
            repo = self._repository(db)
            if repo.find_by_remote_id(remote_id) is not None:
                return
            repo.create(
                {
                    "remote_speaker_id": remote_id,
                    "name": co_speaker.full_name or UNKNOWN_SPEAKER_NAME,
                    "bio": co_speaker.bio,
                    "company": co_speaker.company,
                    "avatar_url": co_speaker.photo_url,
                    "consent_scopes": [],
                }
            )
            db.commit()

    # -- queries and consent ------------------------------------------------

    def get_federated_speaker(self, remote_speaker_id: str) -> FederatedSpeakerRecord | None:
        with self._session_factory() as db:
            return self._repository(db).find_by_remote_id(remote_speaker_id)

    def get_federated_speakers_for_event(self, event_id: str) -> list[FederatedSpeakerRecord]:
        """Speakers behind the federated submissions of a local event."""
        with self._session_factory() as db:
            remote_ids = db.scalars(
                select(Submission.federated_speaker_id)
                .where(
                    Submission.event_id == event_id,
                    Submission.is_federated.is_(True),
                    Submission.federated_speaker_id.is_not(None),
                )
                .distinct()
            ).all()
            return self._repository(db).find_many(remote_ids)

    def update_consent_scopes(
        self, remote_speaker_id: str, scopes: list[str]
    ) -> FederatedSpeakerRecord | None:
        with self._session_factory() as db:
            record = self._repository(db).update_consent_scopes(remote_speaker_id, scopes)
            db.commit()
            return record

    def revoke_consent(
        self, remote_speaker_id: str, deletion_deadline: datetime | None = None
    ) -> FederatedSpeakerRecord | None:
        with self._session_factory() as db:
            record = self._repository(db).revoke_consent(remote_speaker_id, deletion_deadline)
            db.commit()
            return record

    async def purge_revoked_speakers(self, now: datetime | None = None) -> int:
        """Delete speakers (and downloaded files) whose deletion deadline has passed."""

        purged = 0
        with self._session_factory() as db:
            repo = self._repository(db)
            for record in repo.find_expired_revocations(now or utcnow()):
                paths = db.scalars(
                    select(FederatedMaterial.local_path).where(
                        FederatedMaterial.federated_speaker_id == record.id,
                        FederatedMaterial.local_path.is_not(None),
                    )
                ).all()
                for path in paths:
                    await asyncio.to_thread(self._remove_file, path)
                repo.delete(record.remote_speaker_id)
                purged += 1
            db.commit()

        if purged:
            logger.info("Purged %s federated speakers after consent revocation", purged)
        return purged

    def _remove_file(self, path: str) -> None:
        try:
            resolved = self.consent_client.resolve_upload_path(path)
        except ValueError:
            logger.warning("Not removing material outside the upload root")
            return
        try:
            resolved.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("Failed to remove material file: %s", exc)
