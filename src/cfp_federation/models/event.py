"""Models describing events and their call-for-papers structure."""

from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from cfp_federation.db.ids import new_id
from cfp_federation.db.session import Base
from cfp_federation.db.time import utcnow


class Event(Base):
    """A conference or meetup accepting submissions."""

    __tablename__ = "events"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    slug: Mapped[str] = mapped_column(String(200), unique=True, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    website_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    location: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_virtual: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    start_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    end_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cfp_opens_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cfp_closes_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Federation linkage; populated once the event is registered with the directory.
    is_federated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    federated_event_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    webhook_secret: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    tracks: Mapped[list["Track"]] = relationship(
        back_populates="event", cascade="all, delete-orphan", order_by="Track.name"
    )
    formats: Mapped[list["SessionFormat"]] = relationship(
        back_populates="event", cascade="all, delete-orphan", order_by="SessionFormat.name"
    )


class Track(Base):
    """Topical track within an event."""

    __tablename__ = "tracks"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    event_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("events.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    event: Mapped[Event] = relationship(back_populates="tracks")


class SessionFormat(Base):
    """Talk format offered by an event (keynote, lightning talk, ...)."""

    __tablename__ = "session_formats"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    event_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("events.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(Text, nullable=False)
    duration_min: Mapped[int] = mapped_column(Integer, nullable=False, default=30)

    event: Mapped[Event] = relationship(back_populates="formats")
