import json
from datetime import UTC, datetime

import httpx
import pytest
import respx

from cfp_federation.services.config import FederationConfig
from cfp_federation.services.errors import FederationApiError
from cfp_federation.services.license_client import (
    NO_LICENSE_ERROR,
    WARNING_HEARTBEAT_FAILED,
    EventRegistration,
    InstanceStats,
    LicenseClient,
)
from tests.conftest import API_URL, LICENSE_KEY

LICENSE_PAYLOAD = {
    "id": "lic_1",
    "tier": "professional",
    "status": "active",
    "organizationName": "Example Conf",
    "features": {
        "federatedEvents": True,
        "speakerProfiles": True,
        "materialsSync": True,
        "webhooks": True,
    },
    "limits": {"maxFederatedEvents": 10},
}


@pytest.mark.asyncio
@respx.mock
async def test_validate_license_success(config: FederationConfig):
    route = respx.post(f"{API_URL}/validate-license").mock(
        return_value=httpx.Response(
            200,
            json={
                "valid": True,
                "license": LICENSE_PAYLOAD,
                "warnings": [
                    {"code": "EXPIRING", "message": "Renew soon", "severity": "warning"},
                    {"bogus": True},
                ],
            },
        )
    )
    client = LicenseClient(config)

    result = await client.validate_license()
    await client.close()

    assert result.valid
    assert result.license.tier == "professional"
    assert result.license.features.federated_events
    assert [warning.code for warning in result.warnings] == ["EXPIRING"]
    request = route.calls.last.request
    assert request.headers["X-License-Key"] == LICENSE_KEY
    assert request.headers["User-Agent"] == "CFP-Directory-Self-Hosted/1.0.0"
    assert json.loads(request.content) == {
        "licenseKey": LICENSE_KEY,
        "instanceUrl": config.app_url,
        "version": "1.0.0",
    }


@pytest.mark.asyncio
async def test_validate_license_without_key_makes_no_request(
    unconfigured_config: FederationConfig,
):
    client = LicenseClient(unconfigured_config)
    with respx.mock(assert_all_called=False) as router:
        route = router.route().mock(return_value=httpx.Response(200))
        result = await client.validate_license()

    assert not result.valid
    assert result.error == NO_LICENSE_ERROR
    assert not route.called


@pytest.mark.asyncio
@respx.mock
async def test_validate_license_rejection(config: FederationConfig):
    respx.post(f"{API_URL}/validate-license").mock(
        return_value=httpx.Response(403, json={"error": "License revoked"})
    )
    client = LicenseClient(config)

    result = await client.validate_license()
    await client.close()

    assert not result.valid
    assert result.error == "License revoked"
    assert result.status_code == 403
    assert not result.is_transport_failure


@pytest.mark.asyncio
@respx.mock
async def test_validate_license_transport_failure(config: FederationConfig):
    respx.post(f"{API_URL}/validate-license").mock(side_effect=httpx.ConnectError("down"))
    client = LicenseClient(config)

    result = await client.validate_license()
    await client.close()

    assert not result.valid
    assert result.status_code == 0
    assert result.is_transport_failure


@pytest.mark.asyncio
@respx.mock
async def test_send_heartbeat(config: FederationConfig):
    route = respx.post(f"{API_URL}/heartbeat").mock(
        return_value=httpx.Response(
            200,
            json={"success": True, "latestVersion": "1.2.0", "updateAvailable": True},
        )
    )
    client = LicenseClient(config)

    result = await client.send_heartbeat(InstanceStats(total_events=3, federated_events=1))
    await client.close()

    assert result.success
    assert result.update_available
    assert result.latest_version == "1.2.0"
    sent = json.loads(route.calls.last.request.content)
    assert sent["stats"]["totalEvents"] == 3
    assert sent["stats"]["federatedEvents"] == 1


@pytest.mark.asyncio
@respx.mock
async def test_send_heartbeat_failure_becomes_warning(config: FederationConfig):
    respx.post(f"{API_URL}/heartbeat").mock(return_value=httpx.Response(502))
    client = LicenseClient(config)

    result = await client.send_heartbeat(InstanceStats())
    await client.close()

    assert not result.success
    assert result.warnings[0].code == WARNING_HEARTBEAT_FAILED


@pytest.mark.asyncio
@respx.mock
async def test_register_and_unregister_event(config: FederationConfig):
    register = respx.post(f"{API_URL}/events/register").mock(
        return_value=httpx.Response(
            200,
            json={"success": True, "federatedEventId": "fed_evt_9", "webhookSecret": "whsec_9"},
        )
    )
    unregister = respx.post(f"{API_URL}/events/unregister").mock(
        return_value=httpx.Response(200, json={"success": True})
    )
    client = LicenseClient(config)
    registration = EventRegistration(
        name="PyCon",
        slug="pycon",
        start_date=datetime(2026, 5, 1, tzinfo=UTC),
        formats=[{"name": "Talk", "durationMin": 30}],
    )

    result = await client.register_event(registration, config.incoming_webhook_url)
    removed = await client.unregister_event("fed_evt_9")
    await client.close()

    assert result.success
    assert result.federated_event_id == "fed_evt_9"
    assert result.webhook_secret == "whsec_9"
    assert removed.success
    sent = json.loads(register.calls.last.request.content)
    assert sent["callbackUrl"] == "https://cfp.example.com/api/v1/federation/incoming-webhook"
    assert sent["event"]["startDate"] == "2026-05-01T00:00:00+00:00"
    assert "description" not in sent["event"]
    assert json.loads(unregister.calls.last.request.content)["federatedEventId"] == "fed_evt_9"


@pytest.mark.asyncio
@respx.mock
async def test_register_event_raises_on_api_error(config: FederationConfig):
    respx.post(f"{API_URL}/events/register").mock(
        return_value=httpx.Response(409, json={"error": "Slug taken"})
    )
    client = LicenseClient(config)

    with pytest.raises(FederationApiError) as excinfo:
        await client.register_event(EventRegistration(name="x", slug="x"), "https://cb")
    await client.close()

    assert excinfo.value.status_code == 409
    assert str(excinfo.value) == "Slug taken"


@pytest.mark.asyncio
async def test_register_event_requires_license(unconfigured_config: FederationConfig):
    with pytest.raises(FederationApiError):
        await LicenseClient(unconfigured_config).register_event(
            EventRegistration(name="x", slug="x"), "https://cb"
        )


@pytest.mark.asyncio
@respx.mock
async def test_check_api_health(config: FederationConfig):
    route = respx.get(f"{API_URL}/health").mock(return_value=httpx.Response(200))
    client = LicenseClient(config)

    assert await client.check_api_health() is True
    assert "X-License-Key" not in route.calls.last.request.headers

    route.mock(side_effect=httpx.ConnectError("down"))
    assert await client.check_api_health() is False
    await client.close()
