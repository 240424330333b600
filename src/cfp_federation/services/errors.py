"""Exception types shared by the federation services."""

from __future__ import annotations

from typing import Any


class FederationError(RuntimeError):
    """Base exception raised for federation failures."""


class FederationDisabledError(FederationError):
    """Raised when federation operations are attempted while inactive or unlicensed."""


class FederationApiError(FederationError):
    """The directory could not be reached or answered with an unexpected status.

    ``status_code`` is ``0`` when no HTTP response was received.
    """

    def __init__(self, message: str, status_code: int = 0, data: Any = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.data = data

    @property
    def is_transport_failure(self) -> bool:
        """True for network failures and server-side errors, as opposed to a rejection."""
        return self.status_code == 0 or self.status_code >= 500
