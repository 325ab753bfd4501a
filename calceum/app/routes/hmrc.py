"""
HMRC Connection Routes

User-facing endpoints for:
- Starting the HMRC OAuth flow
- Completing the OAuth callback
- Syncing business details
- Disconnecting and listing connections
"""

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session
from typing import List, Optional

from calceum.config import Settings, get_settings
from calceum.database import get_db
from calceum.app import schemas
from calceum.app.auth import get_current_user
from calceum.app.hmrc_integration.client import HMRCClient, HMRCConfig
from calceum.app.hmrc_integration.fraud_prevention import FraudPreventionContext
from calceum.app.hmrc_integration.service import HMRCIntegrationService


router = APIRouter(prefix="/hmrc", tags=["hmrc"])


def get_hmrc_client(
    request: Request,
    settings: Settings = Depends(get_settings),
    current_user: schemas.AuthenticatedUser = Depends(get_current_user)
) -> HMRCClient:
    """
    HMRC client carrying the caller's fraud prevention details.

    app.state.hmrc_transport, when set, replaces the network transport.
    """
    fraud_context = FraudPreventionContext.from_request_headers(
        request.headers,
        client_host=request.client.host if request.client else None,
        user_id=current_user.id,
    )
    transport = getattr(request.app.state, "hmrc_transport", None)
    return HMRCClient(HMRCConfig.from_settings(settings), transport=transport, fraud_context=fraud_context)


def get_hmrc_service(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    client: HMRCClient = Depends(get_hmrc_client)
) -> HMRCIntegrationService:
    return HMRCIntegrationService(db, settings, client)


@router.post("/auth/initiate", response_model=schemas.OAuthInitiateResponse)
async def initiate_oauth(
    initiate_request: schemas.OAuthInitiateRequest,
    current_user: schemas.AuthenticatedUser = Depends(get_current_user),
    service: HMRCIntegrationService = Depends(get_hmrc_service)
):
    """
    Initiate OAuth flow for connecting an entity to HMRC.

    Example:
        POST /hmrc/auth/initiate
        {"entity_id": "6f1c..."}

        Response:
        {
            "auth_url": "https://test-www.tax.service.gov.uk/oauth/authorize?...",
            "state": "abc123..."
        }
    """
    return await service.initiate_oauth(
        user=current_user,
        entity_id=initiate_request.entity_id,
        scopes=initiate_request.scopes
    )


@router.post("/auth/callback", response_model=schemas.OAuthCallbackResponse)
async def oauth_callback(
    callback_request: schemas.OAuthCallbackRequest,
    current_user: schemas.AuthenticatedUser = Depends(get_current_user),
    service: HMRCIntegrationService = Depends(get_hmrc_service)
):
    """
    Complete the OAuth flow.

    The frontend posts the code and state it received on its callback page.
    Posting the same state again returns the existing connections with
    message "OAuth already processed".
    """
    result = await service.handle_oauth_callback(
        user=current_user,
        code=callback_request.code,
        state=callback_request.state,
        error=callback_request.error,
        error_description=callback_request.error_description
    )

    return schemas.OAuthCallbackResponse(
        entity_id=result.entity_id,
        connections=result.connections,
        message=result.message
    )


@router.post("/sync-business", response_model=schemas.SyncBusinessResponse)
async def sync_business(
    sync_request: schemas.ConnectionActionRequest,
    current_user: schemas.AuthenticatedUser = Depends(get_current_user),
    service: HMRCIntegrationService = Depends(get_hmrc_service)
):
    """Refresh business details and obligations for a connection."""
    return await service.sync_business(current_user, sync_request.connection_id)


@router.post("/disconnect", response_model=schemas.DisconnectResponse)
async def disconnect(
    disconnect_request: schemas.ConnectionActionRequest,
    current_user: schemas.AuthenticatedUser = Depends(get_current_user),
    service: HMRCIntegrationService = Depends(get_hmrc_service)
):
    """Disconnect a connection. Tokens are removed; the row is kept."""
    return await service.disconnect(current_user, disconnect_request.connection_id)


@router.get("/connections", response_model=List[schemas.HMRCConnection])
def list_connections(
    entity_id: Optional[str] = Query(None, description="Entity to list connections for"),
    current_user: schemas.AuthenticatedUser = Depends(get_current_user),
    service: HMRCIntegrationService = Depends(get_hmrc_service)
):
    """List an entity's HMRC connections. Tokens are never returned."""
    return service.list_connections(current_user, entity_id)
