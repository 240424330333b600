import json

import httpx
import pytest
import respx
from sqlalchemy.orm import Session, sessionmaker

from cfp_federation.models import SITE_SETTINGS_ID, Event, SiteSettings, Submission
from cfp_federation.services.config import FederationConfig
from cfp_federation.services.federation_state import (
    FALLBACK_RECHECK_SECONDS,
    NOT_ACTIVE_ERROR,
    UNCONFIGURED_STATE,
    WARNING_VALIDATION_ERROR,
    FederationStateService,
)
from cfp_federation.services.license_client import LicenseClient
from tests.conftest import API_URL

VALIDATE_URL = f"{API_URL}/validate-license"
HEARTBEAT_URL = f"{API_URL}/heartbeat"
VALID_RESPONSE = {
    "valid": True,
    "license": {
        "id": "lic_1",
        "tier": "professional",
        "status": "active",
        "organizationName": "Example Conf",
        "features": {"federatedEvents": True, "webhooks": True},
    },
}


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def state_service(
    config: FederationConfig, session_factory: sessionmaker[Session], clock: FakeClock
) -> FederationStateService:
    return FederationStateService(LicenseClient(config), session_factory, config, clock)


def _enable(db_session: Session) -> None:
    db_session.add(SiteSettings(id=SITE_SETTINGS_ID, federation_enabled=True))
    db_session.commit()


@pytest.mark.asyncio
async def test_unconfigured_instance_makes_no_network_calls(
    unconfigured_config: FederationConfig, session_factory: sessionmaker[Session]
):
    service = FederationStateService(
        LicenseClient(unconfigured_config), session_factory, unconfigured_config
    )
    with respx.mock(assert_all_called=False) as router:
        route = router.route().mock(return_value=httpx.Response(200, json=VALID_RESPONSE))

        state = await service.get()
        active = await service.is_federation_active()
        heartbeat = await service.perform_heartbeat()

    assert state == UNCONFIGURED_STATE
    assert not active
    assert heartbeat.error == NOT_ACTIVE_ERROR
    assert route.call_count == 0


@pytest.mark.asyncio
@respx.mock
async def test_state_is_cached_until_ttl_expires(
    state_service: FederationStateService, clock: FakeClock, db_session: Session
):
    _enable(db_session)
    route = respx.post(VALIDATE_URL).mock(return_value=httpx.Response(200, json=VALID_RESPONSE))

    first = await state_service.get()
    clock.advance(299)
    second = await state_service.get()

    assert first is second
    assert route.call_count == 1
    assert first.is_active
    assert first.license.tier == "professional"

    clock.advance(2)
    await state_service.get()
    assert route.call_count == 2

    await state_service.get(force_refresh=True)
    assert route.call_count == 3
    await state_service.license_client.close()


@pytest.mark.asyncio
@respx.mock
async def test_validation_is_persisted(
    state_service: FederationStateService, db_session: Session
):
    respx.post(VALIDATE_URL).mock(return_value=httpx.Response(200, json=VALID_RESPONSE))

    state = await state_service.get()
    await state_service.license_client.close()

    row = db_session.get(SiteSettings, SITE_SETTINGS_ID)
    assert not state.is_enabled
    assert state.is_valid
    assert row.federation_license["tier"] == "professional"
    assert row.federation_features["federated_events"] is True
    assert row.federation_last_validated is not None


@pytest.mark.asyncio
@respx.mock
async def test_unreachable_directory_serves_persisted_state(
    state_service: FederationStateService, clock: FakeClock, db_session: Session
):
    _enable(db_session)
    route = respx.post(VALIDATE_URL)
    route.mock(return_value=httpx.Response(200, json=VALID_RESPONSE))
    await state_service.get()

    route.mock(side_effect=httpx.ConnectError("directory down"))
    state = await state_service.get(force_refresh=True)

    assert state.is_enabled
    assert state.is_configured
    assert not state.is_valid
    assert state.license.tier == "professional"
    assert state.warnings[-1].code == WARNING_VALIDATION_ERROR

    calls = route.call_count
    clock.advance(FALLBACK_RECHECK_SECONDS - 1)
    await state_service.get()
    assert route.call_count == calls
    clock.advance(2)
    await state_service.get()
    assert route.call_count == calls + 1
    await state_service.license_client.close()


@pytest.mark.asyncio
@respx.mock
async def test_rejected_license_is_not_a_fallback(
    state_service: FederationStateService, db_session: Session
):
    _enable(db_session)
    respx.post(VALIDATE_URL).mock(
        return_value=httpx.Response(200, json={"valid": False, "error": "License expired"})
    )

    state = await state_service.get()
    await state_service.license_client.close()

    assert not state.is_valid
    assert state.license is None
    assert all(warning.code != WARNING_VALIDATION_ERROR for warning in state.warnings)


@pytest.mark.asyncio
@respx.mock
async def test_set_federation_enabled_and_features(
    state_service: FederationStateService, db_session: Session
):
    respx.post(VALIDATE_URL).mock(return_value=httpx.Response(200, json=VALID_RESPONSE))

    assert not await state_service.has_feature("federatedEvents")

    state = await state_service.set_federation_enabled(True)

    assert state.is_active
    assert await state_service.has_feature("federatedEvents")
    assert await state_service.has_feature("federated_events")
    assert not await state_service.has_feature("materialsSync")
    assert not await state_service.has_feature("noSuchFeature")
    assert set(await state_service.get_enabled_features()) == {"federated_events", "webhooks"}

    row = db_session.get(SiteSettings, SITE_SETTINGS_ID)
    assert row.federation_enabled
    assert row.federation_activated_at is not None
    await state_service.license_client.close()


def test_collect_instance_stats(
    state_service: FederationStateService, db_session: Session, federated_submission: Submission
):
    db_session.add(Event(name="Local only", slug="local-only"))
    db_session.add(
        Submission(event_id=federated_submission.event_id, title="Local", speaker_id="user_1")
    )
    db_session.commit()

    stats = state_service.collect_instance_stats()

    assert stats.total_events == 2
    assert stats.federated_events == 1
    assert stats.total_submissions == 2
    assert stats.federated_submissions == 1
    assert stats.active_users == 1


@pytest.mark.asyncio
@respx.mock
async def test_heartbeat_records_success_only(
    state_service: FederationStateService, db_session: Session
):
    _enable(db_session)
    respx.post(VALIDATE_URL).mock(return_value=httpx.Response(200, json=VALID_RESPONSE))
    heartbeat = respx.post(HEARTBEAT_URL)
    heartbeat.mock(
        return_value=httpx.Response(
            200, json={"success": True, "updateAvailable": True, "latestVersion": "2.0.0"}
        )
    )

    outcome = await state_service.perform_heartbeat()

    assert outcome.success
    assert outcome.update_available
    assert json.loads(heartbeat.calls.last.request.content)["stats"]["totalEvents"] == 0
    state = await state_service.get()
    first_heartbeat = state.last_heartbeat
    assert first_heartbeat is not None

    heartbeat.mock(return_value=httpx.Response(500))
    failed = await state_service.perform_heartbeat()

    assert not failed.success
    assert (await state_service.get()).last_heartbeat == first_heartbeat
    db_session.expire_all()
    row = db_session.get(SiteSettings, SITE_SETTINGS_ID)
    assert row.federation_warnings[0]["code"] == "HEARTBEAT_FAILED"
    await state_service.license_client.close()
