import pytest
from sqlalchemy.exc import OperationalError

from calceum.app.errors import AuthorizationError, ExternalAPIError, PersistenceError, ValidationError
from calceum.app.models import (
    BusinessType, HMRCAuditLog, HMRCConnection, SyncStatus, PENDING_SYNC_BUSINESS_ID
)
from calceum.app.schemas import AuthenticatedUser
from calceum.app.hmrc_integration.service import HMRCIntegrationService
from calceum.app.hmrc_integration.state_store import create_oauth_state

from helpers import OUTSIDER_ID, SELF_EMPLOYMENT, UK_PROPERTY, USER_ID


USER = AuthenticatedUser(id=USER_ID)


@pytest.fixture
def service(db, settings, hmrc_client):
    return HMRCIntegrationService(db, settings, hmrc_client)


async def _connect(db, service, entity):
    state = create_oauth_state(
        db, user_id=USER_ID, entity_id=entity.id, redirect_uri="https://app.example/cb",
        scopes=["read:self-assessment"], ttl_minutes=10,
    )
    result = await service.handle_oauth_callback(USER, "code-1", state)
    return [db.get(HMRCConnection, c.connection_id) for c in result.connections]


def _row(db, business_id):
    return db.query(HMRCConnection).filter(HMRCConnection.hmrc_business_id == business_id).one()


async def test_placeholder_becomes_first_business(db, service, entity, fake_hmrc, encryption):
    fake_hmrc.businesses = []
    [placeholder] = await _connect(db, service, entity)
    assert placeholder.hmrc_business_id == PENDING_SYNC_BUSINESS_ID

    fake_hmrc.businesses = [SELF_EMPLOYMENT, UK_PROPERTY]
    result = await service.sync_business(USER, placeholder.id)

    assert result == {'success': True, 'businesses_synced': 2, 'connection_id': placeholder.id}

    row = db.get(HMRCConnection, placeholder.id)
    assert row.hmrc_business_id == "XAIS12345678901"
    assert row.business_type == BusinessType.SOLE_TRADER
    assert row.business_name == "Jones Plumbing"
    assert encryption.decrypt(row.utr) == "1234567890"
    assert row.sync_status == SyncStatus.COMPLETED
    assert row.last_sync_at is not None
    assert row.last_sync_error is None
    assert row.business_details["accountingPeriods"]
    assert row.obligations == [{"periodKey": "Q1", "status": "open", "due": "2026-08-05"}]

    landlord = _row(db, "XPIS12345678902")
    assert landlord.business_type == BusinessType.LANDLORD
    assert landlord.oauth_state == row.oauth_state
    assert db.query(HMRCConnection).count() == 2


async def test_sync_with_no_businesses(db, service, entity, fake_hmrc):
    [connection] = await _connect(db, service, entity)
    fake_hmrc.businesses = []

    result = await service.sync_business(USER, connection.id)

    assert result['businesses_synced'] == 0
    row = db.get(HMRCConnection, connection.id)
    assert row.sync_status == SyncStatus.COMPLETED
    assert row.last_sync_error == "No businesses found"


async def test_discovery_failure_marks_connection_failed(db, service, entity, fake_hmrc):
    [connection] = await _connect(db, service, entity)
    fake_hmrc.list_error_status = 403

    with pytest.raises(ExternalAPIError, match="Failed to list businesses"):
        await service.sync_business(USER, connection.id)

    row = db.get(HMRCConnection, connection.id)
    assert row.sync_status == SyncStatus.FAILED
    assert row.last_sync_error == "The client and/or agent is not authorised"
    assert row.last_sync_at is not None

    audit = db.query(HMRCAuditLog).filter(HMRCAuditLog.operation == "sync_business").one()
    assert audit.connection_id == connection.id
    assert audit.response_status == 403
    assert audit.error_code == "CLIENT_OR_AGENT_NOT_AUTHORISED"


async def test_expired_token_is_refreshed(db, service, entity, fake_hmrc, encryption):
    [connection] = await _connect(db, service, entity)
    connection.oauth_tokens = encryption.encrypt_tokens({
        "access_token": "stale-access",
        "refresh_token": "refresh-1",
        "expires_at": 0,
        "token_type": "bearer",
    })
    db.commit()

    await service.sync_business(USER, connection.id)

    assert fake_hmrc.token_grants[-1]["grant_type"] == "refresh_token"
    assert fake_hmrc.token_grants[-1]["refresh_token"] == "refresh-1"
    stored = encryption.decrypt_tokens(db.get(HMRCConnection, connection.id).oauth_tokens)
    assert stored["access_token"] == "access-2"
    assert fake_hmrc.requests_to("/list")[-1].headers["Authorization"] == "Bearer access-2"


async def test_failed_refresh_marks_connection_failed(db, service, entity, fake_hmrc, encryption):
    [connection] = await _connect(db, service, entity)
    connection.oauth_tokens = encryption.encrypt_tokens({
        "access_token": "stale-access", "refresh_token": "refresh-1", "expires_at": 0,
    })
    db.commit()
    fake_hmrc.token_error = "invalid_grant"

    with pytest.raises(ExternalAPIError, match="Token refresh failed"):
        await service.sync_business(USER, connection.id)

    assert db.get(HMRCConnection, connection.id).sync_status == SyncStatus.FAILED


async def test_business_no_longer_returned_is_flagged(db, service, entity, fake_hmrc):
    fake_hmrc.businesses = [SELF_EMPLOYMENT, UK_PROPERTY]
    sole_trader, landlord = await _connect(db, service, entity)

    fake_hmrc.businesses = [SELF_EMPLOYMENT]
    await service.sync_business(USER, sole_trader.id)

    assert db.get(HMRCConnection, sole_trader.id).last_sync_error is None
    flagged = db.get(HMRCConnection, landlord.id)
    assert flagged.last_sync_error == "Business no longer returned by HMRC"
    assert flagged.is_active is True


async def test_extended_details_are_best_effort(db, service, entity, fake_hmrc):
    [connection] = await _connect(db, service, entity)
    fake_hmrc.details_error_status = 500

    result = await service.sync_business(USER, connection.id)

    assert result['success'] is True
    row = db.get(HMRCConnection, connection.id)
    assert row.sync_status == SyncStatus.COMPLETED
    assert row.obligations is None


async def test_disconnected_connection_cannot_sync(db, service, entity):
    [connection] = await _connect(db, service, entity)
    await service.disconnect(USER, connection.id)

    with pytest.raises(ValidationError, match="disconnected"):
        await service.sync_business(USER, connection.id)


async def test_sync_requires_access(db, service, entity):
    [connection] = await _connect(db, service, entity)

    with pytest.raises(AuthorizationError):
        await service.sync_business(AuthenticatedUser(id=OUTSIDER_ID), connection.id)

    assert db.get(HMRCConnection, connection.id).sync_status == SyncStatus.PENDING


async def test_sync_unknown_connection(service, entity):
    with pytest.raises(ValidationError, match="Connection not found"):
        await service.sync_business(USER, "00000000-0000-0000-0000-000000000000")

    with pytest.raises(ValidationError, match="connection_id is required"):
        await service.sync_business(USER, None)


async def test_disconnect_clears_tokens(db, service, entity):
    [connection] = await _connect(db, service, entity)

    result = await service.disconnect(USER, connection.id)

    assert result == {'success': True, 'connection_id': connection.id}
    row = db.get(HMRCConnection, connection.id)
    assert row.is_active is False
    assert row.oauth_tokens is None
    assert row.sync_status == SyncStatus.DISCONNECTED
    assert row.disconnected_at is not None
    assert db.query(HMRCAuditLog).filter(HMRCAuditLog.operation == "disconnect").count() == 1


async def test_sync_leaves_disconnected_connections_disconnected(db, service, entity, fake_hmrc):
    fake_hmrc.businesses = [SELF_EMPLOYMENT, UK_PROPERTY]
    sole_trader, landlord = await _connect(db, service, entity)
    await service.disconnect(USER, landlord.id)

    result = await service.sync_business(USER, sole_trader.id)

    assert result['businesses_synced'] == 2
    row = db.get(HMRCConnection, landlord.id)
    assert row.is_active is False
    assert row.oauth_tokens is None
    assert row.sync_status == SyncStatus.DISCONNECTED
    assert row.disconnected_at is not None


async def test_storage_failure_marks_connection_failed(db, service, entity, monkeypatch):
    [connection] = await _connect(db, service, entity)
    real_commit = db.commit
    commits = []

    def flaky_commit():
        commits.append(1)
        # first commit marks the row as syncing, second stores the result
        if len(commits) == 2:
            raise OperationalError("COMMIT", {}, Exception("disk I/O error"))
        real_commit()

    monkeypatch.setattr(db, "commit", flaky_commit)

    with pytest.raises(PersistenceError) as exc_info:
        await service.sync_business(USER, connection.id)

    assert exc_info.value.status_code == 500
    row = db.get(HMRCConnection, connection.id)
    assert row.sync_status == SyncStatus.FAILED
    assert row.last_sync_error == "Failed to update connection"
    assert row.last_sync_at is not None


async def test_connection_keeps_its_business_when_no_longer_listed(db, service, entity, fake_hmrc):
    [connection] = await _connect(db, service, entity)

    fake_hmrc.businesses = [UK_PROPERTY]
    result = await service.sync_business(USER, connection.id)

    assert result['businesses_synced'] == 1
    row = db.get(HMRCConnection, connection.id)
    assert row.hmrc_business_id == "XAIS12345678901"
    assert row.business_type == BusinessType.SOLE_TRADER
    assert row.last_sync_error == "Business no longer returned by HMRC"
    assert row.sync_status == SyncStatus.COMPLETED
    assert _row(db, "XPIS12345678902").is_active is True
    assert db.query(HMRCConnection).count() == 2


async def test_repeated_syncs_keep_one_row_per_business(db, service, entity, fake_hmrc):
    fake_hmrc.businesses = [SELF_EMPLOYMENT, UK_PROPERTY]
    sole_trader, landlord = await _connect(db, service, entity)

    await service.sync_business(USER, sole_trader.id)
    await service.sync_business(USER, landlord.id)
    await service.sync_business(USER, sole_trader.id)

    business_ids = sorted(c.hmrc_business_id for c in db.query(HMRCConnection).all())
    assert business_ids == ["XAIS12345678901", "XPIS12345678902"]
