# tests/conftest.py
from __future__ import annotations

import os
from collections.abc import Generator, Iterator
from datetime import UTC, datetime
from pathlib import Path

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("SECRET_KEY", "test-secret-key-with-at-least-32-characters")
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("FEDERATION_WORKER_ENABLED", "false")
os.environ.setdefault("CRON_SECRET", "test-cron-secret")

from cfp_federation.db.session import Base
from cfp_federation.db.session import get_db as app_get_session
from cfp_federation.main import app as fastapi_app
from cfp_federation.models import Event, Submission
from cfp_federation.schemas.federation import LicenseFeatures, LicenseInfo
from cfp_federation.services.config import FederationConfig
from cfp_federation.services.encryption import PiiCipher
from cfp_federation.services.federation_state import FederationState
from cfp_federation.services.registry import FederationServices, build_federation_services
from cfp_federation.services.webhook_dlq import DurableQueueStore, WebhookDeadLetterQueue

TEST_DB_URL = "sqlite://"
API_URL = "https://directory.test/api/federation/v1"
APP_URL = "https://cfp.example.com"
LICENSE_KEY = "lic_test_0123456789"
CRON_HEADERS = {"X-Cron-Secret": "test-cron-secret"}
WEBHOOK_SECRET = "whsec_test_secret"


@pytest.fixture(scope="session")
def engine() -> Generator[Engine, None, None]:
    engine = create_engine(
        TEST_DB_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture()
def session_factory(engine: Engine) -> Iterator[sessionmaker[Session]]:
    factory = sessionmaker(
        bind=engine,
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
    )
    try:
        yield factory
    finally:
        # Services commit through their own sessions; wipe every table afterwards.
        with engine.begin() as cleanup_conn:
            for table in reversed(Base.metadata.sorted_tables):
                cleanup_conn.execute(table.delete())


@pytest.fixture()
def db_session(session_factory: sessionmaker[Session]) -> Iterator[Session]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def upload_root(tmp_path: Path) -> Path:
    root = tmp_path / "uploads"
    root.mkdir()
    return root


@pytest.fixture()
def config(upload_root: Path) -> FederationConfig:
    return FederationConfig(
        license_key=LICENSE_KEY,
        api_url=API_URL,
        app_url=APP_URL,
        app_version="1.0.0",
        license_cache_ttl_seconds=300,
        upload_root=str(upload_root),
        download_timeout_seconds=5.0,
        download_max_bytes=1024 * 1024,
        webhook_timeout_seconds=2.0,
    )


@pytest.fixture()
def unconfigured_config(upload_root: Path) -> FederationConfig:
    return FederationConfig(
        license_key=None,
        api_url=API_URL,
        app_url=APP_URL,
        app_version="1.0.0",
        upload_root=str(upload_root),
    )


@pytest.fixture()
def cipher() -> PiiCipher:
    # Low iteration count keeps key derivation fast in tests.
    return PiiCipher("a" * 40, iterations=1_000)


@pytest.fixture()
def dead_letter_queue(session_factory: sessionmaker[Session]) -> WebhookDeadLetterQueue:
    return WebhookDeadLetterQueue(DurableQueueStore(session_factory))


@pytest.fixture()
def license_info() -> LicenseInfo:
    return LicenseInfo(
        id="lic_1",
        tier="professional",
        status="active",
        organization_name="Example Conf",
        features=LicenseFeatures(
            federated_events=True,
            speaker_profiles=True,
            materials_sync=True,
            webhooks=True,
        ),
    )


@pytest.fixture()
def active_state(license_info: LicenseInfo) -> FederationState:
    return FederationState(
        is_enabled=True,
        is_configured=True,
        is_valid=True,
        license=license_info,
        last_validated=datetime.now(UTC),
    )


@pytest.fixture()
def federated_event(db_session: Session) -> Event:
    event = Event(
        name="PyCon Example",
        slug="pycon-example",
        is_federated=True,
        federated_event_id="fed_evt_1",
        webhook_secret=WEBHOOK_SECRET,
    )
    db_session.add(event)
    db_session.commit()
    return event


@pytest.fixture()
def federated_submission(db_session: Session, federated_event: Event) -> Submission:
    submission = Submission(
        event_id=federated_event.id,
        title="Async all the things",
        abstract="A talk about asyncio.",
        is_federated=True,
        federated_speaker_id="spk_remote_1",
        external_submission_id="ext_sub_1",
    )
    db_session.add(submission)
    db_session.commit()
    return submission


@pytest.fixture()
def services(
    config: FederationConfig,
    session_factory: sessionmaker[Session],
    cipher: PiiCipher,
    dead_letter_queue: WebhookDeadLetterQueue,
) -> FederationServices:
    return build_federation_services(
        config, session_factory, cipher, dead_letter_queue=dead_letter_queue
    )


@pytest.fixture()
def app(
    services: FederationServices, session_factory: sessionmaker[Session]
) -> Iterator[FastAPI]:
    def _get_session_override() -> Generator[Session, None, None]:
        with session_factory() as session:
            yield session

    fastapi_app.state.federation = services
    fastapi_app.dependency_overrides[app_get_session] = _get_session_override
    try:
        yield fastapi_app
    finally:
        fastapi_app.dependency_overrides.pop(app_get_session, None)
        fastapi_app.state.federation = None


@pytest.fixture()
def client(app: FastAPI) -> Iterator[TestClient]:
    with TestClient(app, base_url="http://test") as test_client:
        yield test_client
