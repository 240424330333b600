from datetime import timedelta

import pytest
from sqlalchemy import select
from sqlalchemy.orm import Session

from cfp_federation.db.time import utcnow
from cfp_federation.models import FederatedSpeaker
from cfp_federation.repositories.federated_speaker_repo import FederatedSpeakerRepository
from cfp_federation.services.encryption import PiiCipher, is_encrypted


def _raw_row(db: Session, remote_id: str) -> FederatedSpeaker:
    db.expire_all()
    return db.scalars(
        select(FederatedSpeaker).where(FederatedSpeaker.remote_speaker_id == remote_id)
    ).one()


def test_create_seals_pii_and_reads_back_plaintext(db_session: Session, cipher: PiiCipher):
    repo = FederatedSpeakerRepository(db_session, cipher)

    record = repo.create(
        {
            "remote_speaker_id": "spk_1",
            "name": "Ada Lovelace",
            "email": "ada@example.com",
            "avatar_url": "https://img.example.com/ada.png",
            "consent_scopes": ["profile"],
        }
    )
    db_session.commit()

    assert record.name == "Ada Lovelace"
    assert record.email == "ada@example.com"
    row = _raw_row(db_session, "spk_1")
    assert is_encrypted(row.name)
    assert is_encrypted(row.email)
    assert row.avatar_url == "https://img.example.com/ada.png"


def test_plaintext_writes_without_encryption(db_session: Session, cipher: PiiCipher):
    repo = FederatedSpeakerRepository(db_session, cipher, encrypt_writes=False)
    repo.create({"remote_speaker_id": "spk_plain", "name": "Plain"})
    db_session.commit()

    assert _raw_row(db_session, "spk_plain").name == "Plain"


def test_encrypt_writes_requires_cipher(db_session: Session):
    with pytest.raises(ValueError):
        FederatedSpeakerRepository(db_session, None, encrypt_writes=True)


def test_unknown_fields_are_rejected(db_session: Session, cipher: PiiCipher):
    repo = FederatedSpeakerRepository(db_session, cipher)

    with pytest.raises(ValueError):
        repo.create({"remote_speaker_id": "spk_1", "name": "x", "password": "nope"})


def test_upsert_creates_then_updates(db_session: Session, cipher: PiiCipher):
    repo = FederatedSpeakerRepository(db_session, cipher)

    first = repo.upsert("spk_1", {"name": "First"}, {"name": "ignored"})
    second = repo.upsert("spk_1", {"name": "ignored"}, {"name": "Second", "bio": "Bio"})
    db_session.commit()

    assert first.id == second.id
    assert second.name == "Second"
    assert repo.find_by_id(first.id).bio == "Bio"
    assert len(repo.find_many()) == 1


def test_find_many_filters_by_remote_ids(db_session: Session, cipher: PiiCipher):
    repo = FederatedSpeakerRepository(db_session, cipher)
    for remote_id in ("a", "b", "c"):
        repo.create({"remote_speaker_id": remote_id, "name": remote_id.upper()})
    db_session.commit()

    assert {record.remote_speaker_id for record in repo.find_many(["a", "c"])} == {"a", "c"}
    assert repo.find_many([]) == []
    assert len(repo.find_many(limit=2)) == 2


def test_revoke_then_regrant_consent(db_session: Session, cipher: PiiCipher):
    repo = FederatedSpeakerRepository(db_session, cipher)
    repo.create({"remote_speaker_id": "spk_1", "name": "Ada", "consent_scopes": ["profile"]})
    deadline = utcnow() + timedelta(days=30)

    revoked = repo.revoke_consent("spk_1", deadline)
    assert revoked.consent_scopes == []
    assert not revoked.has_consent
    assert revoked.consent_revoked_at is not None
    assert revoked.deletion_deadline is not None

    regranted = repo.update_consent_scopes("spk_1", ["profile", "materials"])
    assert regranted.consent_scopes == ["profile", "materials"]
    assert regranted.consent_revoked_at is None
    assert regranted.deletion_deadline is None


def test_find_expired_revocations(db_session: Session, cipher: PiiCipher):
    repo = FederatedSpeakerRepository(db_session, cipher)
    now = utcnow()
    repo.create({"remote_speaker_id": "old", "name": "Old"})
    repo.create({"remote_speaker_id": "future", "name": "Future"})
    repo.create({"remote_speaker_id": "kept", "name": "Kept"})
    repo.revoke_consent("old", now - timedelta(hours=1))
    repo.revoke_consent("future", now + timedelta(days=1))
    db_session.commit()

    expired = repo.find_expired_revocations(now)

    assert [record.remote_speaker_id for record in expired] == ["old"]


def test_delete(db_session: Session, cipher: PiiCipher):
    repo = FederatedSpeakerRepository(db_session, cipher)
    repo.create({"remote_speaker_id": "spk_1", "name": "Ada"})

    assert repo.delete("spk_1") is True
    assert repo.delete("spk_1") is False
    assert repo.find_by_remote_id("spk_1") is None


def test_encrypt_existing_and_decrypt_all(db_session: Session, cipher: PiiCipher):
    plain = FederatedSpeakerRepository(db_session, cipher, encrypt_writes=False)
    plain.create({"remote_speaker_id": "p1", "name": "One", "email": "one@example.com"})
    sealed_repo = FederatedSpeakerRepository(db_session, cipher)
    sealed_repo.create({"remote_speaker_id": "s1", "name": "Two"})
    db_session.commit()

    report = sealed_repo.encrypt_existing()
    db_session.commit()

    assert (report.processed, report.succeeded, report.skipped) == (2, 1, 1)
    assert is_encrypted(_raw_row(db_session, "p1").email)

    report = sealed_repo.decrypt_all()
    db_session.commit()

    assert report.succeeded == 2
    assert _raw_row(db_session, "p1").name == "One"
    assert _raw_row(db_session, "s1").name == "Two"


def test_encrypt_existing_requires_cipher(db_session: Session):
    with pytest.raises(ValueError):
        FederatedSpeakerRepository(db_session).encrypt_existing()
