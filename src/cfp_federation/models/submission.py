"""Models describing talk submissions and the messages exchanged about them."""

from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from cfp_federation.db.ids import new_id
from cfp_federation.db.session import Base
from cfp_federation.db.time import utcnow
from cfp_federation.models.event import SessionFormat, Track

SUBMISSION_STATUS_PENDING = "PENDING"
SUBMISSION_STATUS_UNDER_REVIEW = "UNDER_REVIEW"
SUBMISSION_STATUS_ACCEPTED = "ACCEPTED"
SUBMISSION_STATUS_REJECTED = "REJECTED"
SUBMISSION_STATUS_WITHDRAWN = "WITHDRAWN"

SENDER_TYPE_ORGANIZER = "ORGANIZER"
SENDER_TYPE_SPEAKER = "SPEAKER"


class Submission(Base):
    """A talk proposal, either local or arriving through the directory."""

    __tablename__ = "submissions"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    event_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("events.id", ondelete="CASCADE"), nullable=False, index=True
    )
    speaker_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    track_id: Mapped[str | None] = mapped_column(
        String(32), ForeignKey("tracks.id", ondelete="SET NULL"), nullable=True
    )
    format_id: Mapped[str | None] = mapped_column(
        String(32), ForeignKey("session_formats.id", ondelete="SET NULL"), nullable=True
    )
    title: Mapped[str] = mapped_column(Text, nullable=False)
    abstract: Mapped[str] = mapped_column(Text, nullable=False, default="")
    outline: Mapped[str | None] = mapped_column(Text, nullable=True)
    target_audience: Mapped[str | None] = mapped_column(Text, nullable=True)
    prerequisites: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=SUBMISSION_STATUS_PENDING
    )

    is_federated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    # Remote directory speaker id, not the local federated_speakers primary key.
    federated_speaker_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    external_submission_id: Mapped[str | None] = mapped_column(
        String(64), nullable=True, index=True
    )

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    track: Mapped[Track | None] = relationship()
    session_format: Mapped[SessionFormat | None] = relationship()
    materials: Mapped[list["SubmissionMaterial"]] = relationship(
        back_populates="submission", cascade="all, delete-orphan"
    )
    co_speakers: Mapped[list["CoSpeaker"]] = relationship(
        back_populates="submission", cascade="all, delete-orphan"
    )


class SubmissionMaterial(Base):
    """Slides, recordings or links attached to a submission."""

    __tablename__ = "submission_materials"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    submission_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("submissions.id", ondelete="CASCADE"), nullable=False
    )
    type: Mapped[str] = mapped_column(String(32), nullable=False, default="OTHER")
    title: Mapped[str] = mapped_column(Text, nullable=False)
    file_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    external_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    file_name: Mapped[str | None] = mapped_column(Text, nullable=True)

    submission: Mapped[Submission] = relationship(back_populates="materials")


class CoSpeaker(Base):
    """Additional presenter listed on a submission."""

    __tablename__ = "co_speakers"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    submission_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("submissions.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(Text, nullable=False)
    email: Mapped[str | None] = mapped_column(Text, nullable=True)
    bio: Mapped[str | None] = mapped_column(Text, nullable=True)

    submission: Mapped[Submission] = relationship(back_populates="co_speakers")


class Message(Base):
    """Organizer/speaker message thread entry attached to a submission."""

    __tablename__ = "messages"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    submission_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("submissions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    sender_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    sender_type: Mapped[str] = mapped_column(String(16), nullable=False)
    subject: Mapped[str | None] = mapped_column(Text, nullable=True)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    is_read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    read_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    federated_message_id: Mapped[str | None] = mapped_column(
        String(64), nullable=True, unique=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    submission: Mapped[Submission] = relationship()
