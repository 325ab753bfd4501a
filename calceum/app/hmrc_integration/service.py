"""
HMRC Integration Service

Main orchestration service that handles:
- Starting the OAuth flow for an entity
- Completing OAuth callbacks (see callback.OAuthCallbackFlow)
- Syncing business details and obligations for a connection
- Disconnecting and listing connections
"""

import logging
from datetime import date, datetime, UTC
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from calceum.app.auth import require_entity_access
from calceum.app.errors import (
    ConfigurationError, ExternalAPIError, HMRCIntegrationError, PersistenceError, ValidationError
)
from calceum.app.models import (
    HMRCConnection, SyncStatus, PENDING_SYNC_BUSINESS_ID
)
from calceum.app.schemas import AuthenticatedUser, OAuthInitiateResponse
from calceum.app import schemas
from calceum.config import Settings

from .audit import Stopwatch, record_audit
from .callback import CallbackResult, OAuthCallbackFlow
from .client import HMRCBusiness, HMRCClient, OAuthTokens
from .connections import find_connection, mask_identifier, upsert_business_connection
from .encryption import TokenEncryption
from .state_store import create_oauth_state

logger = logging.getLogger(__name__)


NO_BUSINESSES_MESSAGE = "No businesses found"
BUSINESS_NOT_RETURNED_MESSAGE = "Business no longer returned by HMRC"
BUSINESS_LIST_ENDPOINT = "/individuals/business/details/list"


class HMRCIntegrationService:
    """
    Main service for the HMRC Making Tax Digital integration.

    One instance serves one request; it holds no state between requests.
    """

    def __init__(self, db: Session, settings: Settings, client: HMRCClient):
        """
        Args:
            db: SQLAlchemy database session
            settings: Application settings
            client: HMRC API client for this request
        """
        self.db = db
        self.settings = settings
        self.client = client
        self._encryption = None

    @property
    def encryption(self) -> TokenEncryption:
        if self._encryption is None:
            self._encryption = TokenEncryption(self.settings.hmrc_encryption_key)
        return self._encryption

    def _require_client_credentials(self):
        if not self.client.config.client_id or not self.client.config.client_secret:
            raise ConfigurationError("HMRC client credentials not configured")

    async def initiate_oauth(
        self,
        user: AuthenticatedUser,
        entity_id: Optional[str],
        scopes: Optional[List[str]] = None
    ) -> OAuthInitiateResponse:
        """
        Start the HMRC OAuth flow for an entity.

        Creates a single-use state token and builds the authorization URL
        the browser should be sent to.

        Raises:
            ValidationError: entity_id missing
            AuthorizationError: entity unknown or not accessible to the user
            PersistenceError: state could not be stored

        Example:
            >>> result = await service.initiate_oauth(user, entity_id="e-1")
            >>> # Redirect user to result.auth_url
        """
        if not entity_id:
            raise ValidationError("entity_id is required")

        # unknown entities fail the same way as inaccessible ones
        require_entity_access(self.db, user.id, entity_id)
        self._require_client_credentials()

        scopes = scopes or list(self.settings.hmrc_default_scopes)
        redirect_uri = self.settings.hmrc_active_redirect_uri

        state = create_oauth_state(
            self.db,
            user_id=user.id,
            entity_id=entity_id,
            redirect_uri=redirect_uri,
            scopes=scopes,
            ttl_minutes=self.settings.hmrc_oauth_state_ttl_minutes,
        )
        auth_url = self.client.generate_auth_url(state, scopes, redirect_uri)

        logger.info(f"Started HMRC OAuth for entity {entity_id} (state {state[:8]}...)")
        record_audit(
            self.db,
            user_id=user.id,
            operation="oauth_initiate",
            request_params={'entity_id': entity_id, 'scopes': scopes},
            response_status=200,
        )

        return OAuthInitiateResponse(auth_url=auth_url, state=state)

    async def handle_oauth_callback(
        self,
        user: AuthenticatedUser,
        code: Optional[str],
        state: Optional[str],
        error: Optional[str] = None,
        error_description: Optional[str] = None
    ) -> CallbackResult:
        """Complete an authorization. See OAuthCallbackFlow for the states."""
        self._require_client_credentials()
        flow = OAuthCallbackFlow(self.db, self.client, self.encryption, user.id)
        return await flow.run(code, state, error=error, error_description=error_description)

    def _get_accessible_connection(self, user: AuthenticatedUser, connection_id: Optional[str]) -> HMRCConnection:
        if not connection_id:
            raise ValidationError("connection_id is required")

        connection = self.db.get(HMRCConnection, connection_id)
        if connection is None:
            raise ValidationError("Connection not found")

        require_entity_access(
            self.db, user.id, connection.entity_id,
            message="You do not have access to this connection"
        )
        return connection

    async def sync_business(self, user: AuthenticatedUser, connection_id: Optional[str]) -> Dict[str, Any]:
        """
        Refresh cached business data for a connection.

        Main workflow:
        1. Check access and mark the connection as syncing
        2. Decrypt tokens, refreshing them first if they have expired
        3. Discover businesses again
        4. Refresh this connection from its business and materialise any
           other discovered business as its own connection
        5. Best-effort fetch of extended details and obligations
        6. Mark completed and audit

        Returns:
            {'success': True, 'businesses_synced': int, 'connection_id': str}

        Raises:
            ValidationError: connection missing, unknown or disconnected
            AuthorizationError: user has no access
            ExternalAPIError: token refresh or business discovery failed
            PersistenceError: the result could not be stored (connection is marked failed)
        """
        stopwatch = Stopwatch()
        connection = self._get_accessible_connection(user, connection_id)

        if not connection.is_active or not connection.oauth_tokens:
            raise ValidationError("Connection is disconnected. Please reconnect to HMRC.")

        connection.sync_status = SyncStatus.SYNCING
        self._commit("Failed to update connection")

        try:
            tokens = await self._current_tokens(connection)
        except HMRCIntegrationError as e:
            self._fail_sync(user, connection, e, stopwatch)
            raise

        try:
            businesses = await self.client.list_businesses(tokens.access_token)
        except ExternalAPIError as e:
            self._fail_sync(user, connection, e, stopwatch)
            raise ExternalAPIError(
                f"Failed to list businesses: {e.message}",
                upstream_status=e.upstream_status,
                code=e.code,
                errors=e.errors,
            ) from e

        try:
            primary = self._store_sync_result(user, connection, businesses)
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to store sync result for connection {connection.id}: {e}")
            error = PersistenceError("Failed to update connection")
            self._fail_sync(user, connection, error, stopwatch)
            raise error from e
        except PersistenceError as e:
            self._fail_sync(user, connection, e, stopwatch)
            raise

        if primary is not None:
            await self._fetch_extended_details(connection, primary, tokens)

        logger.info(f"Synced connection {connection.id}: {len(businesses)} businesses found")
        record_audit(
            self.db,
            user_id=user.id,
            operation="sync_business",
            endpoint=BUSINESS_LIST_ENDPOINT,
            method="GET",
            connection_id=connection.id,
            request_params={'connection_id': connection.id},
            response_status=200,
            response_data={'businesses_found': len(businesses)},
            duration_ms=stopwatch.elapsed_ms,
        )

        return {
            'success': True,
            'businesses_synced': len(businesses),
            'connection_id': connection.id,
        }

    def _store_sync_result(
        self,
        user: AuthenticatedUser,
        connection: HMRCConnection,
        businesses: List[HMRCBusiness]
    ) -> Optional[HMRCBusiness]:
        """Apply discovery to the rows and commit; returns the business this connection now represents."""
        now = datetime.now(UTC)
        primary = None

        if businesses:
            primary = self._select_primary_business(connection, businesses)
            if primary is not None:
                self._apply_business(connection, primary)
                connection.last_sync_error = None
            else:
                connection.last_sync_error = BUSINESS_NOT_RETURNED_MESSAGE
            self._reconcile_other_businesses(user, connection, businesses, primary, now)
        else:
            connection.last_sync_error = NO_BUSINESSES_MESSAGE

        connection.sync_status = SyncStatus.COMPLETED
        connection.last_sync_at = now
        self._commit("Failed to update connection")
        return primary

    async def _current_tokens(self, connection: HMRCConnection) -> OAuthTokens:
        """Decrypt the stored tokens, refreshing and re-storing them if expired."""
        stored = self.encryption.decrypt_tokens(connection.oauth_tokens)
        if not stored or not stored.get('access_token'):
            raise ValidationError("Connection has no stored access token. Please reconnect to HMRC.")

        tokens = OAuthTokens.model_validate({**stored, 'expires_at': stored.get('expires_at') or 0})

        if tokens.is_expired() and tokens.refresh_token:
            logger.info(f"Access token for connection {connection.id} expired, refreshing")
            tokens = await self.client.refresh_access_token(tokens.refresh_token)
            connection.oauth_tokens = self.encryption.encrypt_tokens(tokens.model_dump())
            self._commit("Failed to store refreshed tokens")

        return tokens

    def _select_primary_business(
        self,
        connection: HMRCConnection,
        businesses: List[HMRCBusiness]
    ) -> Optional[HMRCBusiness]:
        """
        Pick the discovered business this connection represents.

        Its own business if still listed; otherwise (placeholder, or its
        business disappeared) the first business that no other connection
        of the entity already represents.
        """
        for business in businesses:
            if business.business_id == connection.hmrc_business_id:
                return business

        if connection.hmrc_business_id != PENDING_SYNC_BUSINESS_ID:
            return None

        for business in businesses:
            other = find_connection(self.db, connection.entity_id, business.business_id)
            if other is None:
                return business
        return None

    def _apply_business(self, connection: HMRCConnection, business: HMRCBusiness):
        sensitive = self.encryption.encrypt_sensitive_data({'nino': business.nino, 'utr': business.utr})

        connection.hmrc_business_id = business.business_id
        connection.business_type = business.business_type
        connection.business_name = business.display_name
        connection.nino = sensitive['nino']
        connection.utr = sensitive['utr']
        connection.vat_registration_number = business.vat_registration_number
        connection.company_registration_number = business.company_registration_number
        connection.business_details = business.raw

    def _reconcile_other_businesses(
        self,
        user: AuthenticatedUser,
        connection: HMRCConnection,
        businesses: List[HMRCBusiness],
        primary: Optional[HMRCBusiness],
        now: datetime
    ):
        """
        Make every discovered business a connection of the entity, and flag
        sibling connections from the same authorization whose business is
        no longer listed.
        """
        discovered_ids = {b.business_id for b in businesses}

        for business in businesses:
            if primary is not None and business.business_id == primary.business_id:
                continue
            upsert_business_connection(
                self.db,
                self.encryption,
                entity_id=connection.entity_id,
                business=business,
                encrypted_tokens=connection.oauth_tokens,
                scopes=connection.oauth_scopes,
                oauth_state=connection.oauth_state,
                user_id=user.id,
                now=now,
                reactivate=False,
            )

        if not connection.oauth_state:
            return

        siblings = self.db.query(HMRCConnection).filter(
            HMRCConnection.entity_id == connection.entity_id,
            HMRCConnection.oauth_state == connection.oauth_state,
            HMRCConnection.id != connection.id,
            HMRCConnection.is_active == True
        ).all()

        for sibling in siblings:
            if sibling.hmrc_business_id == PENDING_SYNC_BUSINESS_ID:
                continue
            if sibling.hmrc_business_id not in discovered_ids:
                logger.info(f"Connection {sibling.id}: business {sibling.hmrc_business_id} no longer returned")
                sibling.last_sync_error = BUSINESS_NOT_RETURNED_MESSAGE

    async def _fetch_extended_details(self, connection: HMRCConnection, business: HMRCBusiness, tokens: OAuthTokens):
        """Merge business details and obligations into the row; failures are only logged."""
        nino = business.nino or self.settings.hmrc_sandbox_nino
        if not nino:
            logger.warning(f"No NINO for business {business.business_id}, skipping extended details")
            return

        today = date.today()
        from_date = date(today.year - 1, 1, 1)

        try:
            details = await self.client.get_business_details(tokens.access_token, nino, business.business_id)
            obligations = await self.client.get_obligations(
                tokens.access_token,
                nino,
                business.business_id,
                from_date=from_date.isoformat(),
                to_date=today.isoformat(),
            )
        except ExternalAPIError as e:
            logger.warning(f"Failed to fetch additional details for connection {connection.id}: {e.message}")
            return

        connection.business_details = {**business.raw, **details}
        connection.obligations = obligations.get('obligations', [])
        try:
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.warning(f"Failed to store additional details for connection {connection.id}: {e}")

    def _fail_sync(self, user: AuthenticatedUser, connection: HMRCConnection, error: HMRCIntegrationError, stopwatch: Stopwatch):
        logger.error(f"Sync failed for connection {connection.id}: {error.message}")

        connection.sync_status = SyncStatus.FAILED
        connection.last_sync_error = error.message
        connection.last_sync_at = datetime.now(UTC)
        self._commit("Failed to update connection")

        details = error.to_audit_details() if isinstance(error, ExternalAPIError) else None
        record_audit(
            self.db,
            user_id=user.id,
            operation="sync_business",
            endpoint=BUSINESS_LIST_ENDPOINT,
            method="GET",
            connection_id=connection.id,
            request_params={'connection_id': connection.id},
            response_status=getattr(error, 'upstream_status', None) or 400,
            error_code=getattr(error, 'code', None),
            error_message=error.message,
            error_details=details,
            duration_ms=stopwatch.elapsed_ms,
        )

    async def disconnect(self, user: AuthenticatedUser, connection_id: Optional[str]) -> Dict[str, Any]:
        """
        Deactivate a connection.

        The row is kept for history; tokens are removed. HMRC has no token
        revocation endpoint, so tokens simply expire on their side.
        """
        connection = self._get_accessible_connection(user, connection_id)

        connection.is_active = False
        connection.oauth_tokens = None
        connection.sync_status = SyncStatus.DISCONNECTED
        connection.disconnected_at = datetime.now(UTC)
        self._commit("Failed to disconnect connection")

        logger.info(f"Disconnected HMRC connection {connection.id}")
        record_audit(
            self.db,
            user_id=user.id,
            operation="disconnect",
            connection_id=connection.id,
            request_params={'connection_id': connection.id},
            response_status=200,
        )

        return {'success': True, 'connection_id': connection.id}

    def list_connections(self, user: AuthenticatedUser, entity_id: Optional[str]) -> List[schemas.HMRCConnection]:
        """List an entity's connections with tokens omitted and tax identifiers masked."""
        if not entity_id:
            raise ValidationError("entity_id is required")

        require_entity_access(self.db, user.id, entity_id)

        connections = self.db.query(HMRCConnection).filter(
            HMRCConnection.entity_id == entity_id
        ).order_by(HMRCConnection.created_at, HMRCConnection.id).all()

        return [self._to_public(c) for c in connections]

    def _to_public(self, connection: HMRCConnection) -> schemas.HMRCConnection:
        public = schemas.HMRCConnection.model_validate(connection)
        public.nino = mask_identifier(self._safe_decrypt(connection.nino, connection.id))
        public.utr = mask_identifier(self._safe_decrypt(connection.utr, connection.id))
        return public

    def _safe_decrypt(self, value: Optional[str], connection_id: str) -> Optional[str]:
        if not value:
            return value
        try:
            return self.encryption.decrypt(value)
        except ValidationError:
            logger.warning(f"Could not decrypt identifier on connection {connection_id}")
            return None

    def _commit(self, failure_message: str):
        try:
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"{failure_message}: {e}")
            raise PersistenceError(failure_message) from e
