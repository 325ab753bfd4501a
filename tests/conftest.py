import os

# Settings are read when calceum.database is imported
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("AUTH_JWT_SECRET", "test-jwt-secret")
os.environ.setdefault("HMRC_CLIENT_ID", "test-client-id")
os.environ.setdefault("HMRC_CLIENT_SECRET", "test-client-secret")
os.environ.setdefault("HMRC_ENCRYPTION_KEY", "test-encryption-key")
os.environ.setdefault("ENVIRONMENT", "production")

import httpx
import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from calceum.config import get_settings
from calceum.database import Base, get_db
from calceum.app import models
from calceum.app.hmrc_integration.client import HMRCClient, HMRCConfig
from calceum.app.hmrc_integration.encryption import TokenEncryption
from calceum.main import app

from helpers import FakeHMRC, MEMBER_ID, OUTSIDER_ID, USER_ID, make_token


@pytest.fixture
def settings():
    return get_settings()


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # pysqlite needs its own transaction handling disabled for SAVEPOINT to work
    @event.listens_for(engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db(engine):
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def organization(db):
    org = models.Organization(name="Jones & Co")
    db.add(org)
    db.commit()
    db.add(models.OrganizationMember(organization_id=org.id, user_id=MEMBER_ID, role="admin", is_active=True))
    db.commit()
    return org


@pytest.fixture
def entity(db, organization):
    entity = models.Entity(organization_id=organization.id, name="Jones Plumbing Ltd")
    db.add(entity)
    db.commit()
    db.add(models.EntityPermission(entity_id=entity.id, user_id=USER_ID, permission_level="owner"))
    db.commit()
    return entity


@pytest.fixture
def other_entity(db):
    entity = models.Entity(name="Unrelated Holdings")
    db.add(entity)
    db.commit()
    return entity


@pytest.fixture
def fake_hmrc():
    return FakeHMRC()


@pytest.fixture
def hmrc_client(settings, fake_hmrc):
    return HMRCClient(HMRCConfig.from_settings(settings), transport=httpx.MockTransport(fake_hmrc.handler))


@pytest.fixture
def encryption(settings):
    return TokenEncryption(settings.hmrc_encryption_key)


@pytest.fixture
def auth_headers(settings):
    return {"Authorization": f"Bearer {make_token(USER_ID, settings)}"}


@pytest.fixture
def member_headers(settings):
    return {"Authorization": f"Bearer {make_token(MEMBER_ID, settings)}"}


@pytest.fixture
def outsider_headers(settings):
    return {"Authorization": f"Bearer {make_token(OUTSIDER_ID, settings)}"}


@pytest.fixture
async def api(db, fake_hmrc):
    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.state.hmrc_transport = httpx.MockTransport(fake_hmrc.handler)

    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()
    app.state.hmrc_transport = None