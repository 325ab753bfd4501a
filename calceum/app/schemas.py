from pydantic import BaseModel, ConfigDict
from typing import Any, Dict, List, Optional
from datetime import datetime
from calceum.app.models import BusinessType, SyncStatus


class AuthenticatedUser(BaseModel):
    id: str
    email: Optional[str] = None


# HMRC OAuth

class OAuthInitiateRequest(BaseModel):
    entity_id: Optional[str] = None
    scopes: Optional[List[str]] = None


class OAuthInitiateResponse(BaseModel):
    auth_url: str
    state: str


class OAuthCallbackRequest(BaseModel):
    code: Optional[str] = None
    state: Optional[str] = None
    error: Optional[str] = None
    error_description: Optional[str] = None


class ConnectionSummary(BaseModel):
    connection_id: str
    business_id: Optional[str] = None
    business_type: Optional[str] = None
    business_name: Optional[str] = None


class OAuthCallbackResponse(BaseModel):
    success: bool = True
    entity_id: str
    connections: List[ConnectionSummary]
    message: Optional[str] = None


# HMRC connections

class ConnectionActionRequest(BaseModel):
    connection_id: Optional[str] = None


class SyncBusinessResponse(BaseModel):
    success: bool = True
    businesses_synced: int
    connection_id: str


class DisconnectResponse(BaseModel):
    success: bool = True
    connection_id: str


class HMRCConnection(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    entity_id: str
    hmrc_business_id: str
    business_type: BusinessType
    business_name: Optional[str] = None
    nino: Optional[str] = None  # masked
    utr: Optional[str] = None  # masked
    vat_registration_number: Optional[str] = None
    company_registration_number: Optional[str] = None
    oauth_scopes: Optional[List[str]] = None
    sync_status: SyncStatus
    last_sync_at: Optional[datetime] = None
    last_sync_error: Optional[str] = None
    business_details: Optional[Dict[str, Any]] = None
    obligations: Optional[Any] = None
    is_active: bool
    connected_at: Optional[datetime] = None
    disconnected_at: Optional[datetime] = None
