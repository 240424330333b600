"""Singleton row holding instance-wide federation settings."""

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from cfp_federation.db.session import Base

SITE_SETTINGS_ID = "default"


class SiteSettings(Base):
    """Persisted copy of the last known federation/license state."""

    __tablename__ = "site_settings"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=SITE_SETTINGS_ID)
    federation_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    federation_license_key: Mapped[str | None] = mapped_column(Text, nullable=True)
    federation_activated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    federation_last_heartbeat: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    federation_last_validated: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    federation_public_key: Mapped[str | None] = mapped_column(Text, nullable=True)
    federation_warnings: Mapped[list[dict[str, Any]] | None] = mapped_column(JSON, nullable=True)
    federation_features: Mapped[dict[str, bool] | None] = mapped_column(JSON, nullable=True)
    # Last successfully validated license, served back when validation is unreachable.
    federation_license: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
