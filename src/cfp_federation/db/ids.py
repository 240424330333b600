"""Primary key helpers."""

import uuid


def new_id() -> str:
    """Return a fresh string primary key."""
    return uuid.uuid4().hex
