"""Models holding speaker data received from the federation directory.

Columns listed in ``PII_FIELDS`` may contain ``enc:v1:`` ciphertext; always
read them through ``FederatedSpeakerRepository``.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from cfp_federation.db.ids import new_id
from cfp_federation.db.session import Base
from cfp_federation.db.time import utcnow

PII_FIELDS: tuple[str, ...] = (
    "name",
    "email",
    "bio",
    "location",
    "company",
    "position",
    "website_url",
    "linkedin_url",
    "twitter_handle",
    "github_username",
    "speaking_experience",
)


class FederatedSpeaker(Base):
    """Local copy of a directory speaker profile, gated by consent scopes."""

    __tablename__ = "federated_speakers"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    remote_speaker_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    local_user_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    name: Mapped[str] = mapped_column(Text, nullable=False)
    email: Mapped[str | None] = mapped_column(Text, nullable=True)
    bio: Mapped[str | None] = mapped_column(Text, nullable=True)
    location: Mapped[str | None] = mapped_column(Text, nullable=True)
    company: Mapped[str | None] = mapped_column(Text, nullable=True)
    position: Mapped[str | None] = mapped_column(Text, nullable=True)
    website_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    linkedin_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    twitter_handle: Mapped[str | None] = mapped_column(Text, nullable=True)
    github_username: Mapped[str | None] = mapped_column(Text, nullable=True)
    speaking_experience: Mapped[str | None] = mapped_column(Text, nullable=True)

    avatar_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    expertise_tags: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    experience_level: Mapped[str | None] = mapped_column(String(32), nullable=True)
    languages: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    # Non-PII descriptors of co-speakers seen on the consenting submission.
    co_speakers: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)

    consent_scopes: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    consent_granted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    consent_revoked_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    deletion_deadline: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, index=True
    )

    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    materials: Mapped[list["FederatedMaterial"]] = relationship(
        back_populates="speaker", cascade="all, delete-orphan"
    )


class FederatedMaterial(Base):
    """Material shared by a consenting speaker, downloaded or referenced."""

    __tablename__ = "federated_materials"
    __table_args__ = (
        UniqueConstraint("federated_speaker_id", "remote_material_id", name="uq_federated_material"),
    )

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    federated_speaker_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("federated_speakers.id", ondelete="CASCADE"), nullable=False
    )
    remote_material_id: Mapped[str] = mapped_column(String(64), nullable=False)
    federated_event_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    type: Mapped[str] = mapped_column(String(32), nullable=False, default="other")
    title: Mapped[str] = mapped_column(Text, nullable=False)
    source_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    local_path: Mapped[str | None] = mapped_column(Text, nullable=True)
    local_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_external: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    synced_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    speaker: Mapped[FederatedSpeaker] = relationship(back_populates="materials")
