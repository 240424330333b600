from pathlib import Path

import httpx
import pytest
import respx

from cfp_federation.services.config import FederationConfig
from cfp_federation.services.consent_client import (
    CONSENT_API_ERROR,
    CONSENT_EXPIRED,
    CONSENT_INVALID_TOKEN,
    CONSENT_NOT_FOUND,
    CONSENT_REVOKED,
    DEFAULT_FILE_NAME,
    ConsentClient,
    UnsafePathError,
    UnsafeUrlError,
    is_signed_url,
    sanitize_file_name,
    validate_download_url,
)
from tests.conftest import API_URL

PROFILE_URL = f"{API_URL}/speakers/spk_1/profile"


@pytest.mark.parametrize(
    "url",
    [
        "http://x",
        "http://files.example.com/f",
        "https://127.0.0.1/f",
        "https://169.254.169.254/f",
        "https://localhost/f",
        "https://api.localhost/f",
        "https://metadata.google.internal/f",
        "https://10.0.0.5/f",
        "https://8.8.8.8/f",
        "https://[::1]/f",
        "https://2130706433/f",
        "https://0x7f.0x0.0x0.0x1/f",
        "ftp://files.example.com/f",
        "https:///nohost",
    ],
)
def test_validate_download_url_rejects_unsafe_targets(url):
    with pytest.raises(UnsafeUrlError):
        validate_download_url(url)


def test_validate_download_url_accepts_public_https_hostname():
    assert validate_download_url("https://files.example.com/f") == "files.example.com"


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("slides.pdf", "slides.pdf"),
        ("../../etc/passwd", "etc_passwd"),
        ("a\\b/c.txt", "a_b_c.txt"),
        ("%2e%2e%2fsecret", "secret"),
        ('bad<>:"|?*name.txt', "bad_name.txt"),
        ("nul\x00byte.txt", "nulbyte.txt"),
        ("", DEFAULT_FILE_NAME),
        (None, DEFAULT_FILE_NAME),
        ("..", DEFAULT_FILE_NAME),
    ],
)
def test_sanitize_file_name(raw, expected):
    assert sanitize_file_name(raw) == expected


def test_sanitize_file_name_truncates_and_keeps_extension():
    name = sanitize_file_name("x" * 300 + ".pdf")

    assert len(name) == 200
    assert name.endswith(".pdf")


def test_is_signed_url_heuristic():
    assert is_signed_url("https://bucket.s3.amazonaws.com/a.pdf?X-Amz-Signature=abc")
    assert is_signed_url("https://project.supabase.co/storage/v1/object/a.pdf")
    assert is_signed_url("https://files.example.com/a.pdf?token=t")
    assert not is_signed_url("https://slides.example.com/talk")


def test_resolve_upload_path_stays_inside_root(config: FederationConfig, upload_root: Path):
    client = ConsentClient(config)

    resolved = client.resolve_upload_path("federation/evt/spk/file.pdf")

    assert resolved == upload_root.resolve() / "federation" / "evt" / "spk" / "file.pdf"
    for bad in ("../outside.txt", "/etc/passwd", "a/\x00b", ""):
        with pytest.raises(UnsafePathError):
            client.resolve_upload_path(bad)


@pytest.mark.asyncio
@respx.mock
async def test_validate_consent_token_success(config: FederationConfig):
    route = respx.get(PROFILE_URL).mock(
        return_value=httpx.Response(
            200,
            json={
                "speakerId": "spk_1",
                "eventId": "fed_evt_1",
                "consentedScopes": ["profile", "materials"],
                "profile": {"fullName": "Ada"},
            },
        )
    )
    client = ConsentClient(config)

    result = await client.validate_consent_token("tok_1", "spk_1")
    await client.close()

    assert result.valid
    assert result.speaker_id == "spk_1"
    assert result.event_id == "fed_evt_1"
    assert result.scopes == ("profile", "materials")
    request = route.calls.last.request
    assert request.headers["Authorization"] == "Bearer tok_1"
    assert request.headers["X-License-Key"] == config.license_key


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("status_code", "body", "expected_code"),
    [
        (401, {"error": {"code": "EXPIRED", "message": "Token expired"}}, CONSENT_EXPIRED),
        (401, {"error": "nope"}, CONSENT_INVALID_TOKEN),
        (403, {"error": {"code": "REVOKED", "message": "Revoked"}}, CONSENT_REVOKED),
        (403, {}, CONSENT_NOT_FOUND),
        (404, {}, CONSENT_NOT_FOUND),
        (500, {}, CONSENT_API_ERROR),
    ],
)
async def test_validate_consent_token_maps_errors(
    config: FederationConfig, status_code, body, expected_code
):
    client = ConsentClient(config)
    with respx.mock:
        respx.get(PROFILE_URL).mock(return_value=httpx.Response(status_code, json=body))
        result = await client.validate_consent_token("tok_1", "spk_1")
    await client.close()

    assert not result.valid
    assert result.error_code == expected_code


@pytest.mark.asyncio
@respx.mock
async def test_validate_consent_token_transport_error(config: FederationConfig):
    respx.get(PROFILE_URL).mock(side_effect=httpx.ConnectError("boom"))
    client = ConsentClient(config)

    result = await client.validate_consent_token("tok_1", "spk_1")
    await client.close()

    assert not result.valid
    assert result.error_code == CONSENT_API_ERROR


@pytest.mark.asyncio
@respx.mock
async def test_fetch_speaker_profile_applies_scopes(config: FederationConfig):
    respx.get(PROFILE_URL).mock(
        return_value=httpx.Response(
            200,
            json={
                "data": {
                    "speakerId": "spk_1",
                    "consentedScopes": ["profile"],
                    "email": "hidden@example.com",
                    "profile": {"fullName": "Ada"},
                    "materials": [{"id": "m1", "title": "Slides"}],
                }
            },
        )
    )
    client = ConsentClient(config)

    result = await client.fetch_speaker_profile("tok_1", "spk_1")
    await client.close()

    assert result.success
    assert result.profile.full_name == "Ada"
    assert result.profile.email is None
    assert result.profile.materials == ()


@pytest.mark.asyncio
@respx.mock
async def test_download_material_writes_file(config: FederationConfig, upload_root: Path):
    respx.get("https://files.example.com/slides.pdf").mock(
        return_value=httpx.Response(200, content=b"%PDF-1.7 data")
    )
    client = ConsentClient(config)

    result = await client.download_material(
        "https://files.example.com/slides.pdf", "federation/evt/spk/slides.pdf"
    )
    await client.close()

    assert result.success
    assert result.size == len(b"%PDF-1.7 data")
    assert (upload_root / "federation" / "evt" / "spk" / "slides.pdf").read_bytes() == b"%PDF-1.7 data"


@pytest.mark.asyncio
@respx.mock
async def test_download_material_rejects_unsafe_url_without_network(config: FederationConfig):
    route = respx.get(url__regex=r".*").mock(return_value=httpx.Response(200))
    client = ConsentClient(config)

    result = await client.download_material("https://127.0.0.1/f", "federation/x/y/f")
    await client.close()

    assert not result.success
    assert not route.called


@pytest.mark.asyncio
@respx.mock
async def test_download_material_enforces_size_limit(upload_root: Path):
    small = FederationConfig(
        license_key="lic",
        api_url=API_URL,
        app_url="https://cfp.example.com",
        app_version="1.0.0",
        upload_root=str(upload_root),
        download_max_bytes=8,
    )
    respx.get("https://files.example.com/big.bin").mock(
        return_value=httpx.Response(200, content=b"0123456789abcdef")
    )
    client = ConsentClient(small)

    result = await client.download_material("https://files.example.com/big.bin", "federation/big.bin")
    await client.close()

    assert not result.success
    assert "too large" in result.error
    assert not (upload_root / "federation" / "big.bin").exists()


@pytest.mark.asyncio
@respx.mock
async def test_download_material_does_not_follow_redirects(config: FederationConfig):
    respx.get("https://files.example.com/moved").mock(
        return_value=httpx.Response(302, headers={"Location": "https://169.254.169.254/"})
    )
    client = ConsentClient(config)

    result = await client.download_material("https://files.example.com/moved", "federation/moved")
    await client.close()

    assert not result.success
    assert "302" in result.error
