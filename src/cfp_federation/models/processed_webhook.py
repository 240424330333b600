"""Models supporting replay protection for inbound webhooks."""

from datetime import datetime

from sqlalchemy import DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from cfp_federation.db.session import Base
from cfp_federation.db.time import utcnow


class ProcessedWebhook(Base):
    """Record indicating that an inbound webhook id has already been handled."""

    __tablename__ = "processed_webhooks"

    webhook_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    webhook_type: Mapped[str] = mapped_column(String(64), nullable=False)
    processed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, index=True
    )
