"""
HMRC OAuth Callback Flow

Runs one authorization callback through its states:

    received -> already processed (replay, returns the existing connections)
    received -> state validated -> tokens exchanged -> businesses discovered
             -> connections upserted

Each transition is one method. A replay of an already-completed callback is
a normal result, not an error: the authorization code has been spent, so a
second exchange would fail at HMRC.
"""

import enum
import logging
from datetime import datetime, UTC
from typing import List, Optional

from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from calceum.app.auth import user_has_entity_access
from calceum.app.errors import ExternalAPIError, PersistenceError, ValidationError
from calceum.app.models import HMRCOAuthState
from calceum.app.schemas import ConnectionSummary
from .audit import Stopwatch, record_audit
from .client import HMRCBusiness, HMRCClient, OAuthTokens
from .connections import (
    find_connections_for_state, placeholder_business, to_summary, upsert_business_connection
)
from .encryption import TokenEncryption
from .state_store import consume_oauth_state

logger = logging.getLogger(__name__)


ALREADY_PROCESSED_MESSAGE = "OAuth already processed"
TOKEN_ENDPOINT = "/oauth/token"


class CallbackOutcome(str, enum.Enum):
    COMPLETED = "completed"
    ALREADY_PROCESSED = "already_processed"


class CallbackResult(BaseModel):
    outcome: CallbackOutcome
    entity_id: str
    connections: List[ConnectionSummary]
    businesses_discovered: int = 0

    @property
    def message(self) -> Optional[str]:
        if self.outcome == CallbackOutcome.ALREADY_PROCESSED:
            return ALREADY_PROCESSED_MESSAGE
        return None


class OAuthCallbackFlow:
    """
    Completes an HMRC authorization for one user.

    Example:
        >>> flow = OAuthCallbackFlow(db, client, encryption, user_id="u-1")
        >>> result = await flow.run(code="abc", state="xyz")
        >>> result.outcome
        <CallbackOutcome.COMPLETED: 'completed'>
    """

    def __init__(
        self,
        db: Session,
        client: HMRCClient,
        encryption: TokenEncryption,
        user_id: str
    ):
        self.db = db
        self.client = client
        self.encryption = encryption
        self.user_id = user_id
        self.stopwatch = Stopwatch()

    async def run(
        self,
        code: Optional[str],
        state: Optional[str],
        error: Optional[str] = None,
        error_description: Optional[str] = None
    ) -> CallbackResult:
        """
        Process a callback request.

        Raises:
            ValidationError: Authorization server reported an error, or the
                code/state is missing, invalid, expired or already used
            ExternalAPIError: Token exchange was rejected
            PersistenceError: Connection rows could not be written
        """
        if error:
            detail = f"{error}: {error_description}" if error_description else error
            raise ValidationError(f"OAuth error: {detail}")

        if not code or not state:
            raise ValidationError("Missing code or state parameter")

        replay = self.check_replay(state)
        if replay is not None:
            return replay

        oauth_state = self.validate_state(state)
        tokens = await self.exchange_tokens(code, oauth_state)
        businesses, discovery_error = await self.discover_businesses(tokens)
        connections = self.upsert_connections(oauth_state, businesses, tokens)

        record_audit(
            self.db,
            user_id=self.user_id,
            operation="oauth_callback",
            endpoint=TOKEN_ENDPOINT,
            method="POST",
            request_params={'entity_id': oauth_state.entity_id},
            response_status=200,
            response_data={
                'businesses_discovered': len(businesses),
                'businesses_connected': len(connections),
                'discovery_error': discovery_error,
            },
            duration_ms=self.stopwatch.elapsed_ms,
        )

        return CallbackResult(
            outcome=CallbackOutcome.COMPLETED,
            entity_id=oauth_state.entity_id,
            connections=connections,
            businesses_discovered=len(businesses),
        )

    def check_replay(self, state: str) -> Optional[CallbackResult]:
        """Return the existing connections if this state was already processed."""
        existing = find_connections_for_state(self.db, state)
        if not existing:
            return None

        # only someone who can see the entity learns its connections
        if not user_has_entity_access(self.db, self.user_id, existing[0].entity_id):
            return None

        logger.info(f"OAuth state {state[:8]}... already processed, returning {len(existing)} existing connections")
        record_audit(
            self.db,
            user_id=self.user_id,
            operation="oauth_callback_replay",
            request_params={'entity_id': existing[0].entity_id},
            response_status=200,
            response_data={'connections': [c.id for c in existing]},
            duration_ms=self.stopwatch.elapsed_ms,
        )
        return CallbackResult(
            outcome=CallbackOutcome.ALREADY_PROCESSED,
            entity_id=existing[0].entity_id,
            connections=[to_summary(c) for c in existing],
        )

    def validate_state(self, state: str) -> HMRCOAuthState:
        return consume_oauth_state(self.db, state, self.user_id)

    async def exchange_tokens(self, code: str, oauth_state: HMRCOAuthState) -> OAuthTokens:
        try:
            return await self.client.exchange_code_for_tokens(code, oauth_state.redirect_uri)
        except ExternalAPIError as e:
            logger.error(f"Token exchange error for entity {oauth_state.entity_id}: {e.message}")
            record_audit(
                self.db,
                user_id=self.user_id,
                operation="oauth_callback",
                endpoint=TOKEN_ENDPOINT,
                method="POST",
                request_params={'entity_id': oauth_state.entity_id},
                response_status=e.upstream_status or 400,
                error_code=e.code,
                error_message=e.message,
                error_details=e.to_audit_details(),
                duration_ms=self.stopwatch.elapsed_ms,
            )
            raise

    async def discover_businesses(self, tokens: OAuthTokens):
        """
        List the businesses the new token can see.

        Failure is absorbed: the connection is still recorded and a later
        sync can fill in the businesses.

        Returns:
            (businesses, error message or None)
        """
        try:
            return await self.client.list_businesses(tokens.access_token), None
        except ExternalAPIError as e:
            logger.warning(f"Failed to list businesses, continuing without them: {e.message}")
            return [], e.message

    def upsert_connections(
        self,
        oauth_state: HMRCOAuthState,
        businesses: List[HMRCBusiness],
        tokens: OAuthTokens
    ) -> List[ConnectionSummary]:
        encrypted_tokens = self.encryption.encrypt_tokens(tokens.model_dump())
        now = datetime.now(UTC)

        targets = businesses or [placeholder_business()]
        if not businesses:
            logger.info(f"No businesses discovered for entity {oauth_state.entity_id}, creating placeholder connection")

        try:
            connections = [
                upsert_business_connection(
                    self.db,
                    self.encryption,
                    entity_id=oauth_state.entity_id,
                    business=business,
                    encrypted_tokens=encrypted_tokens,
                    scopes=oauth_state.scopes,
                    oauth_state=oauth_state.state,
                    user_id=self.user_id,
                    now=now,
                )
                for business in targets
            ]
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Connection upsert failed for entity {oauth_state.entity_id}: {e}")
            record_audit(
                self.db,
                user_id=self.user_id,
                operation="oauth_callback",
                endpoint=TOKEN_ENDPOINT,
                method="POST",
                request_params={'entity_id': oauth_state.entity_id},
                response_status=500,
                error_message="Failed to store HMRC connections",
                duration_ms=self.stopwatch.elapsed_ms,
            )
            raise PersistenceError("Failed to store HMRC connections") from e

        return [to_summary(c) for c in connections]
