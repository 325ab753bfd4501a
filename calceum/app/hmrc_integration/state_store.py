"""
OAuth state tokens.

A state binds one authorization attempt to a user, entity, redirect URI and
scope set. It can be consumed exactly once, and only before it expires.
"""

import logging
import secrets
from datetime import datetime, timedelta, UTC
from typing import List, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from calceum.app.errors import PersistenceError, ValidationError
from calceum.app.models import HMRCOAuthState

logger = logging.getLogger(__name__)


def create_oauth_state(
    db: Session,
    user_id: str,
    entity_id: str,
    redirect_uri: str,
    scopes: List[str],
    ttl_minutes: int,
    now: Optional[datetime] = None
) -> str:
    """
    Store a fresh state token and return it.

    Raises:
        PersistenceError: If the state row could not be written
    """
    now = now or datetime.now(UTC)
    state = secrets.token_urlsafe(32)

    oauth_state = HMRCOAuthState(
        state=state,
        user_id=user_id,
        entity_id=entity_id,
        redirect_uri=redirect_uri,
        scopes=list(scopes),
        expires_at=now + timedelta(minutes=ttl_minutes),
        used=False,
    )

    try:
        db.add(oauth_state)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"State creation error: {e}")
        raise PersistenceError("Failed to create OAuth state") from e

    return state


def consume_oauth_state(
    db: Session,
    state: str,
    user_id: str,
    now: Optional[datetime] = None
) -> HMRCOAuthState:
    """
    Mark a state as used and return it.

    The check and the update are one conditional UPDATE, so of two
    concurrent callers presenting the same state only one succeeds.

    Raises:
        ValidationError: If no unused, unexpired state matches (state, user_id)
    """
    now = now or datetime.now(UTC)

    try:
        result = db.execute(
            update(HMRCOAuthState)
            .where(
                HMRCOAuthState.state == state,
                HMRCOAuthState.user_id == user_id,
                HMRCOAuthState.used.is_(False),
                HMRCOAuthState.expires_at > now,
            )
            .values(used=True, used_at=now)
            .execution_options(synchronize_session=False)
        )
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise PersistenceError("Failed to validate OAuth state") from e

    if result.rowcount != 1:
        logger.warning(f"Rejected OAuth state {state[:8]}... for user {user_id}")
        raise ValidationError("Invalid or expired OAuth state")

    oauth_state = db.execute(
        select(HMRCOAuthState).where(HMRCOAuthState.state == state)
    ).scalar_one()
    db.refresh(oauth_state)
    return oauth_state


def cleanup_expired_oauth_states(db: Session, now: Optional[datetime] = None) -> int:
    """
    Delete states whose expiry has passed.

    Returns:
        Number of rows removed
    """
    now = now or datetime.now(UTC)

    result = db.execute(
        delete(HMRCOAuthState)
        .where(HMRCOAuthState.expires_at <= now)
        .execution_options(synchronize_session=False)
    )
    db.commit()

    logger.info(f"Removed {result.rowcount} expired OAuth states")
    return result.rowcount
