"""Consent-token validation, profile fetching and material download.

A consent token is an opaque bearer credential issued by the directory to a
speaker. Its validity is always decided remotely; this module never caches
it. Material downloads are guarded against SSRF (scheme, hostname and IP
checks happen before any network call) and against path traversal on the
local side.
"""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from urllib.parse import parse_qs, quote, urlsplit

import httpx

from cfp_federation.services.config import FederationConfig, load_federation_config
from cfp_federation.services.license_client import USER_AGENT_PREFIX
from cfp_federation.services.profile_adapter import SpeakerProfile, normalize_speaker_profile

logger = logging.getLogger(__name__)

# HTTP status codes
HTTP_UNAUTHORIZED = 401
HTTP_FORBIDDEN = 403
HTTP_NOT_FOUND = 404

# Consent validation error codes
CONSENT_INVALID_TOKEN = "INVALID_TOKEN"
CONSENT_EXPIRED = "EXPIRED"
CONSENT_REVOKED = "REVOKED"
CONSENT_NOT_FOUND = "NOT_FOUND"
CONSENT_API_ERROR = "API_ERROR"
FETCH_ERROR = "FETCH_ERROR"

BLOCKED_HOSTNAMES = frozenset(
    {
        "localhost",
        "metadata",
        "metadata.google",
        "metadata.google.internal",
        "instance-data",
        "169.254.169.254",
    }
)
_NUMERIC_HOST = re.compile(r"^[0-9a-fx.:]+$", re.IGNORECASE)
_HEX_OR_DIGITS = re.compile(r"^(0x[0-9a-f]+|[0-9]+)$", re.IGNORECASE)

# Heuristic only: a signed URL from a provider not listed here is treated as a
# direct reference instead of being downloaded.
SIGNED_URL_QUERY_PARAMS = frozenset({"token", "signature", "X-Amz-Signature"})
SIGNED_URL_HOST_MARKERS = ("supabase",)

DEFAULT_FILE_NAME = "unnamed-file"
MAX_FILE_NAME_LENGTH = 200
_UNSAFE_FILE_CHARS = re.compile(r'[<>:"|?*]')
_ENCODED_TRAVERSAL = re.compile(r"%2e%2e|%2f|%5c", re.IGNORECASE)
_REPEATED_UNDERSCORES = re.compile(r"_+")


class UnsafeUrlError(ValueError):
    """Raised when a download URL points somewhere it must not."""


class UnsafePathError(ValueError):
    """Raised when a download target escapes the upload root."""


class MaterialTooLargeError(ValueError):
    """Raised when a download exceeds the configured byte ceiling."""


@dataclass(frozen=True)
class ConsentValidationResult:
    valid: bool
    speaker_id: str | None = None
    event_id: str | None = None
    scopes: tuple[str, ...] = ()
    error: str | None = None
    error_code: str | None = None


@dataclass(frozen=True)
class ProfileFetchResult:
    success: bool
    profile: SpeakerProfile | None = None
    error: str | None = None
    error_code: str | None = None


@dataclass(frozen=True)
class DownloadResult:
    success: bool
    local_path: Path | None = None
    size: int = 0
    error: str | None = None


def _is_blocked_ip(address: ipaddress.IPv4Address | ipaddress.IPv6Address) -> bool:
    return (
        address.is_private
        or address.is_loopback
        or address.is_link_local
        or address.is_multicast
        or address.is_reserved
        or address.is_unspecified
    )


def validate_download_url(url: str) -> str:
    """Return the hostname of ``url`` or raise ``UnsafeUrlError``.

    Only HTTPS URLs naming a public DNS hostname pass. Raw IP literals are
    always rejected, whether or not they fall in a private range.
    """

    try:
        parts = urlsplit(url)
        hostname = (parts.hostname or "").lower().rstrip(".")
    except ValueError as exc:
        raise UnsafeUrlError("Invalid URL format") from exc

    if parts.scheme != "https":
        raise UnsafeUrlError("Only HTTPS URLs are allowed")
    if not hostname:
        raise UnsafeUrlError("URL has no hostname")

    for blocked in BLOCKED_HOSTNAMES:
        if hostname == blocked or hostname.endswith(f".{blocked}"):
            raise UnsafeUrlError("Blocked hostname")

    try:
        address = ipaddress.ip_address(hostname)
    except ValueError:
        address = None
    if address is not None:
        if _is_blocked_ip(address):
            raise UnsafeUrlError("Private or internal IP addresses are not allowed")
        raise UnsafeUrlError("Direct IP addresses are not allowed")

    # Dotted/integer/hex encodings some resolvers still accept as IPv4.
    labels = hostname.split(".")
    if _NUMERIC_HOST.match(hostname) and all(_HEX_OR_DIGITS.match(label) for label in labels):
        raise UnsafeUrlError("Direct IP addresses are not allowed")

    return hostname


def sanitize_file_name(file_name: str | None) -> str:
    """Make a remote file name safe to use as a single local path component."""

    if not file_name:
        return DEFAULT_FILE_NAME

    name = file_name.replace("/", "_").replace("\\", "_")
    name = name.replace("..", "_")
    name = name.replace("\x00", "")
    name = _ENCODED_TRAVERSAL.sub("_", name)
    name = _UNSAFE_FILE_CHARS.sub("_", name)
    name = _REPEATED_UNDERSCORES.sub("_", name)
    name = name.strip().strip("_")

    if not name or name in {".", ".."}:
        return DEFAULT_FILE_NAME

    if len(name) > MAX_FILE_NAME_LENGTH:
        stem, dot, ext = name.rpartition(".")
        if dot and stem and len(ext) < MAX_FILE_NAME_LENGTH - 1:
            name = f"{stem[: MAX_FILE_NAME_LENGTH - len(ext) - 1]}.{ext}"
        else:
            name = name[:MAX_FILE_NAME_LENGTH]

    return name


def is_signed_url(url: str) -> bool:
    """Guess whether ``url`` is a pre-signed storage URL that needs downloading."""

    try:
        parts = urlsplit(url)
    except ValueError:
        return False
    params = parse_qs(parts.query, keep_blank_values=True)
    if any(name in params for name in SIGNED_URL_QUERY_PARAMS):
        return True
    hostname = (parts.hostname or "").lower()
    return any(marker in hostname for marker in SIGNED_URL_HOST_MARKERS)


def _write_file(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)


def _error_details(response: httpx.Response) -> tuple[str | None, str | None]:
    """Extract ``error.code`` and ``error.message`` from a directory error body."""
    try:
        body = response.json()
    except ValueError:
        return None, None
    error = body.get("error") if isinstance(body, Mapping) else None
    if isinstance(error, Mapping):
        return error.get("code"), error.get("message")
    if isinstance(error, str):
        return None, error
    return None, None


class ConsentClient:
    """HTTP client for consent-scoped directory calls and material downloads."""

    def __init__(self, config: FederationConfig | None = None) -> None:
        self.config = config or load_federation_config()
        self._client: httpx.AsyncClient | None = None
        self._download_client: httpx.AsyncClient | None = None
        self._client_lock = asyncio.Lock()

    @property
    def upload_root(self) -> Path:
        return Path(self.config.upload_root).resolve()

    async def _ensure_client(self) -> httpx.AsyncClient:
        async with self._client_lock:
            if self._client is None:
                self._client = httpx.AsyncClient(
                    base_url=self.config.api_url,
                    timeout=httpx.Timeout(self.config.http_timeout_seconds),
                )
        return self._client

    async def _ensure_download_client(self) -> httpx.AsyncClient:
        async with self._client_lock:
            if self._download_client is None:
                # Redirects would bypass the hostname checks.
                self._download_client = httpx.AsyncClient(
                    follow_redirects=False,
                    timeout=httpx.Timeout(self.config.download_timeout_seconds),
                )
        return self._download_client

    def _build_headers(self, consent_token: str) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "User-Agent": f"{USER_AGENT_PREFIX}/{self.config.app_version}",
            "X-License-Key": self.config.license_key or "",
            "Authorization": f"Bearer {consent_token}",
        }

    async def _get_profile(self, consent_token: str, speaker_id: str) -> httpx.Response:
        client = await self._ensure_client()
        path = f"/speakers/{quote(speaker_id, safe='')}/profile"
        return await client.get(path, headers=self._build_headers(consent_token))

    async def validate_consent_token(
        self, consent_token: str, speaker_id: str
    ) -> ConsentValidationResult:
        """Ask the directory whether ``consent_token`` grants access to ``speaker_id``."""

        try:
            response = await self._get_profile(consent_token, speaker_id)
        except httpx.HTTPError as exc:
            logger.error("Consent validation request failed: %s", exc)
            return ConsentValidationResult(
                valid=False, error=f"Failed to validate consent: {exc}", error_code=CONSENT_API_ERROR
            )

        if not response.is_success:
            code, message = _error_details(response)
            status = response.status_code
            if status == HTTP_UNAUTHORIZED:
                return ConsentValidationResult(
                    valid=False,
                    error=message or "Invalid or expired consent token",
                    error_code=CONSENT_EXPIRED if code == CONSENT_EXPIRED else CONSENT_INVALID_TOKEN,
                )
            if status == HTTP_FORBIDDEN:
                return ConsentValidationResult(
                    valid=False,
                    error=message or "Consent has been revoked",
                    error_code=CONSENT_REVOKED if code == CONSENT_REVOKED else CONSENT_NOT_FOUND,
                )
            if status == HTTP_NOT_FOUND:
                return ConsentValidationResult(
                    valid=False, error="Speaker not found", error_code=CONSENT_NOT_FOUND
                )
            return ConsentValidationResult(
                valid=False,
                error=message or f"API request failed with status {status}",
                error_code=CONSENT_API_ERROR,
            )

        try:
            data = response.json()
        except ValueError:
            return ConsentValidationResult(
                valid=False, error="Invalid JSON from directory", error_code=CONSENT_API_ERROR
            )

        profile = normalize_speaker_profile(data if isinstance(data, Mapping) else {}, speaker_id)
        return ConsentValidationResult(
            valid=True,
            speaker_id=profile.speaker_id,
            event_id=profile.event_id,
            scopes=profile.consented_scopes,
        )

    async def fetch_speaker_profile(
        self, consent_token: str, speaker_id: str
    ) -> ProfileFetchResult:
        """Fetch the speaker profile, restricted to the consented scopes."""

        try:
            response = await self._get_profile(consent_token, speaker_id)
        except httpx.HTTPError as exc:
            logger.error("Profile fetch failed: %s", exc)
            return ProfileFetchResult(
                success=False, error=f"Failed to fetch profile: {exc}", error_code=FETCH_ERROR
            )

        if not response.is_success:
            _, message = _error_details(response)
            return ProfileFetchResult(
                success=False,
                error=message or f"Failed to fetch profile: {response.status_code}",
                error_code=f"HTTP_{response.status_code}",
            )

        try:
            data: Any = response.json()
        except ValueError:
            return ProfileFetchResult(
                success=False, error="Invalid JSON from directory", error_code=FETCH_ERROR
            )

        profile = normalize_speaker_profile(data if isinstance(data, Mapping) else {}, speaker_id)
        return ProfileFetchResult(success=True, profile=profile.scoped())

    def resolve_upload_path(self, target_path: str | Path) -> Path:
        """Map ``target_path`` (relative to the upload root) to an absolute path inside it."""

        raw = str(target_path)
        if "\x00" in raw:
            raise UnsafePathError("Invalid file path")
        candidate = Path(raw)
        if ".." in candidate.parts:
            raise UnsafePathError("Path traversal is not allowed")

        root = self.upload_root
        resolved = candidate.resolve() if candidate.is_absolute() else (root / candidate).resolve()
        if not resolved.is_relative_to(root) or resolved == root:
            raise UnsafePathError("Target path must be inside the upload directory")
        return resolved

    async def _fetch_bytes(self, url: str) -> bytes:
        client = await self._ensure_download_client()
        limit = self.config.download_max_bytes
        async with client.stream("GET", url) as response:
            if not response.is_success:
                raise httpx.HTTPStatusError(
                    f"Download failed with status {response.status_code}",
                    request=response.request,
                    response=response,
                )
            declared = response.headers.get("content-length")
            if declared and declared.isdigit() and int(declared) > limit:
                raise MaterialTooLargeError(f"File too large: {declared} bytes (max {limit})")

            buffer = bytearray()
            async for chunk in response.aiter_bytes():
                buffer.extend(chunk)
                if len(buffer) > limit:
                    raise MaterialTooLargeError(f"File too large: exceeded {limit} bytes")
        return bytes(buffer)

    async def download_material(self, url: str, target_path: str | Path) -> DownloadResult:
        """Download ``url`` to ``target_path`` under the upload root."""

        try:
            validate_download_url(url)
            destination = self.resolve_upload_path(target_path)
        except (UnsafeUrlError, UnsafePathError) as exc:
            logger.warning("Refusing material download: %s", exc)
            return DownloadResult(success=False, error=str(exc))

        timeout = self.config.download_timeout_seconds
        try:
            data = await asyncio.wait_for(self._fetch_bytes(url), timeout=timeout)
        except TimeoutError:
            return DownloadResult(success=False, error=f"Download timeout after {timeout:g}s")
        except MaterialTooLargeError as exc:
            return DownloadResult(success=False, error=str(exc))
        except httpx.HTTPError as exc:
            return DownloadResult(success=False, error=f"Download failed: {exc}")

        try:
            await asyncio.to_thread(_write_file, destination, data)
        except OSError as exc:
            logger.error("Failed to write material to %s: %s", destination, exc)
            return DownloadResult(success=False, error=f"Failed to write file: {exc}")

        return DownloadResult(success=True, local_path=destination, size=len(data))

    async def close(self) -> None:
        for client in (self._client, self._download_client):
            if client is not None:
                await client.aclose()
        self._client = None
        self._download_client = None
