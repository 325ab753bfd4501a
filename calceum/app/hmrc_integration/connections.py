"""
Connection row helpers shared by the callback and sync flows.

A connection is keyed by (entity_id, hmrc_business_id); upserting the same
business twice always lands on the same row.
"""

import logging
from datetime import datetime, UTC
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from calceum.app.models import (
    HMRCConnection, BusinessType, SyncStatus, PENDING_SYNC_BUSINESS_ID
)
from calceum.app.schemas import ConnectionSummary
from .client import HMRCBusiness
from .encryption import TokenEncryption

logger = logging.getLogger(__name__)


PLACEHOLDER_BUSINESS_NAME = "Awaiting sync"


def placeholder_business() -> HMRCBusiness:
    """Stand-in business used when discovery returns nothing."""
    return HMRCBusiness(business_id=PENDING_SYNC_BUSINESS_ID, trading_name=PLACEHOLDER_BUSINESS_NAME)


def find_connection(db: Session, entity_id: str, business_id: str) -> Optional[HMRCConnection]:
    return db.query(HMRCConnection).filter(
        HMRCConnection.entity_id == entity_id,
        HMRCConnection.hmrc_business_id == business_id
    ).first()


def find_connections_for_state(db: Session, state: str) -> List[HMRCConnection]:
    return db.query(HMRCConnection).filter(
        HMRCConnection.oauth_state == state
    ).order_by(HMRCConnection.created_at, HMRCConnection.id).all()


def upsert_business_connection(
    db: Session,
    encryption: TokenEncryption,
    entity_id: str,
    business: HMRCBusiness,
    encrypted_tokens: Dict[str, Any],
    scopes: Optional[List[str]],
    oauth_state: Optional[str],
    user_id: Optional[str],
    now: Optional[datetime] = None,
    reactivate: bool = True
) -> HMRCConnection:
    """
    Create or re-authorize the connection for one business.

    An existing row gets the new tokens, scopes and state and is reset to
    pending. A new row also stores the business identity, with NINO/UTR
    encrypted. If a concurrent caller inserts the same business first, the
    insert is rolled back to a savepoint and the winner's row is updated
    instead.

    With reactivate=False a disconnected row is left as it is; only a new
    authorization by the user may bring it back.
    """
    now = now or datetime.now(UTC)

    existing = find_connection(db, entity_id, business.business_id)
    if existing:
        if not existing.is_active and not reactivate:
            logger.info(f"Leaving disconnected connection {existing.id} untouched")
            return existing
        logger.info(f"Re-authorizing existing connection {existing.id}")
        _apply_authorization(existing, encrypted_tokens, scopes, oauth_state, now)
        return existing

    sensitive = encryption.encrypt_sensitive_data({'nino': business.nino, 'utr': business.utr})
    connection = HMRCConnection(
        entity_id=entity_id,
        hmrc_business_id=business.business_id,
        business_type=business.business_type,
        business_name=business.display_name,
        nino=sensitive['nino'],
        utr=sensitive['utr'],
        vat_registration_number=business.vat_registration_number,
        company_registration_number=business.company_registration_number,
        created_by=user_id,
    )
    _apply_authorization(connection, encrypted_tokens, scopes, oauth_state, now)

    try:
        with db.begin_nested():
            db.add(connection)
    except IntegrityError:
        logger.info(f"Connection for business {business.business_id} created concurrently, updating it instead")
        existing = find_connection(db, entity_id, business.business_id)
        if existing is None:
            raise
        if not existing.is_active and not reactivate:
            return existing
        _apply_authorization(existing, encrypted_tokens, scopes, oauth_state, now)
        return existing

    logger.info(f"Created connection {connection.id} for business {business.business_id}")
    return connection


def _apply_authorization(connection, encrypted_tokens, scopes, oauth_state, now):
    connection.oauth_tokens = encrypted_tokens
    connection.oauth_scopes = list(scopes) if scopes is not None else connection.oauth_scopes
    if oauth_state is not None:
        connection.oauth_state = oauth_state
    connection.sync_status = SyncStatus.PENDING
    connection.is_active = True
    connection.connected_at = now
    connection.disconnected_at = None


def to_summary(connection: HMRCConnection) -> ConnectionSummary:
    business_type = connection.business_type
    if isinstance(business_type, BusinessType):
        business_type = business_type.value
    return ConnectionSummary(
        connection_id=connection.id,
        business_id=connection.hmrc_business_id,
        business_type=business_type,
        business_name=connection.business_name,
    )


def mask_identifier(value: Optional[str], visible: int = 3) -> Optional[str]:
    """Mask all but the last few characters of a tax identifier."""
    if not value:
        return value
    if len(value) <= visible:
        return "*" * len(value)
    return "*" * (len(value) - visible) + value[-visible:]
