"""Process-wide logging setup."""

from __future__ import annotations

import logging

from cfp_federation.core.settings import settings

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str | None = None) -> None:
    """Configure the root logger once for the application process."""
    resolved = (level or settings.log_level).upper()
    logging.basicConfig(level=resolved, format=LOG_FORMAT)
    # httpx logs every request line at INFO, including signed URLs.
    logging.getLogger("httpx").setLevel(logging.WARNING)
