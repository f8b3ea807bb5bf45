import asyncio
import os
import sys
import uuid
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

os.environ.setdefault("APP_ENV", "dev")
os.environ.setdefault("TESTING", "true")
os.environ.setdefault("METRICS_ENABLED", "false")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./test.db")

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from pulse.domain.accounts.db_models import Company, Contact
from pulse.domain.orgs.db_models import Organization
from pulse.domain.signals.db_models import SignalSource
from pulse.infra import models  # noqa: F401
from pulse.infra.db import Base, get_db_session
from pulse.main import app
from pulse.settings import settings

DEFAULT_ORG_ID = settings.default_org_id


@pytest.fixture(scope="session")
def anyio_backend():
    return "asyncio"


@pytest.fixture(scope="session")
def test_engine():
    db_path = Path("test.db")
    if db_path.exists():
        db_path.unlink()
    engine = create_async_engine(
        "sqlite+aiosqlite:///./test.db",
        connect_args={"check_same_thread": False, "timeout": 30},
        poolclass=StaticPool,
    )

    async def init_models() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(init_models())
    yield engine
    asyncio.run(engine.dispose())


@pytest.fixture(scope="session")
def async_session_maker(test_engine):
    return async_sessionmaker(test_engine, expire_on_commit=False)


@pytest.fixture(autouse=True)
def restore_settings():
    original = {
        "metrics_enabled": settings.metrics_enabled,
        "metrics_token": settings.metrics_token,
        "app_env": settings.app_env,
        "job_heartbeat_required": settings.job_heartbeat_required,
        "anomaly_cooldown_hours": settings.anomaly_cooldown_hours,
        "alert_cooldown_minutes": settings.alert_cooldown_minutes,
        "webhook_max_attempts": settings.webhook_max_attempts,
    }
    yield
    for key, value in original.items():
        setattr(settings, key, value)


@pytest.fixture(autouse=True)
def clean_database(test_engine):
    async def truncate_tables() -> None:
        async with test_engine.begin() as conn:
            for table in reversed(Base.metadata.sorted_tables):
                await conn.execute(table.delete())

    asyncio.run(truncate_tables())
    yield


@pytest.fixture()
def webhook_requests():
    return []


@pytest.fixture()
def webhook_transport(webhook_requests):
    def handler(request: httpx.Request) -> httpx.Response:
        webhook_requests.append(request)
        return httpx.Response(200, text="ok")

    return httpx.MockTransport(handler)


@pytest.fixture()
def client(async_session_maker, webhook_transport):
    async def override_db_session():
        async with async_session_maker() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_db_session
    original_factory = getattr(app.state, "db_session_factory", None)
    original_transport = getattr(app.state, "webhook_transport", None)
    app.state.db_session_factory = async_session_maker
    app.state.webhook_transport = webhook_transport
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
    app.state.db_session_factory = original_factory
    app.state.webhook_transport = original_transport


async def seed_org(session, org_id: uuid.UUID | None = None, *, name: str = "Acme Org", is_demo: bool = False):
    org = Organization(org_id=org_id or uuid.uuid4(), name=name, is_demo=is_demo)
    session.add(org)
    await session.flush()
    return org


async def seed_account(
    session,
    org_id: uuid.UUID,
    *,
    name: str = "Acme Corp",
    size: str | None = "SMALL",
    titles: tuple[str, ...] = (),
):
    company = Company(company_id=uuid.uuid4(), org_id=org_id, name=name, domain="acme.test", size=size)
    session.add(company)
    await session.flush()
    for title in titles:
        session.add(Contact(contact_id=uuid.uuid4(), org_id=org_id, company_id=company.company_id, title=title))
    await session.flush()
    return company


async def seed_source(session, org_id: uuid.UUID, *, type: str = "product", status: str = "ACTIVE"):
    source = SignalSource(source_id=uuid.uuid4(), org_id=org_id, name=f"{type} events", type=type, status=status)
    session.add(source)
    await session.flush()
    return source
