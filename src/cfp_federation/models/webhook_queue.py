"""SQLAlchemy model for outbound webhooks awaiting retry."""

from datetime import datetime

from sqlalchemy import DateTime, SmallInteger, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from cfp_federation.db.ids import new_id
from cfp_federation.db.session import Base
from cfp_federation.db.time import utcnow

WEBHOOK_STATUS_PENDING_RETRY = "pending_retry"
WEBHOOK_STATUS_DEAD_LETTER = "dead_letter"
WEBHOOK_STATUS_SUCCESS = "success"


class WebhookQueueEntry(Base):
    """Durable record of a webhook that failed delivery."""

    __tablename__ = "webhook_queue"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    event_id: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    webhook_type: Mapped[str] = mapped_column(String(64), nullable=False)
    payload: Mapped[str] = mapped_column(Text, nullable=False)  # serialized envelope JSON
    webhook_url: Mapped[str] = mapped_column(Text, nullable=False)
    attempt: Mapped[int] = mapped_column(SmallInteger, nullable=False, default=1)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_attempt_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    next_retry_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, index=True
    )
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=WEBHOOK_STATUS_PENDING_RETRY, index=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
