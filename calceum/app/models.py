from sqlalchemy import Column, Integer, String, Boolean, DateTime, Text, JSON, ForeignKey, UniqueConstraint, Enum as SQLEnum
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import enum
import uuid
from calceum.database import Base


def _uuid() -> str:
    return str(uuid.uuid4())


class BusinessType(str, enum.Enum):
    SOLE_TRADER = "sole_trader"
    LANDLORD = "landlord"
    PARTNERSHIP = "partnership"
    LIMITED_COMPANY = "limited_company"
    TRUST = "trust"
    OTHER = "other"


class SyncStatus(str, enum.Enum):
    PENDING = "pending"
    SYNCING = "syncing"
    COMPLETED = "completed"
    FAILED = "failed"
    DISCONNECTED = "disconnected"


# Sentinel business id for the row created when discovery finds nothing
PENDING_SYNC_BUSINESS_ID = "PENDING_SYNC"


class Organization(Base):
    __tablename__ = "organizations"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(255), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    members = relationship("OrganizationMember", back_populates="organization")
    entities = relationship("Entity", back_populates="organization")


class OrganizationMember(Base):
    __tablename__ = "organization_members"

    id = Column(String(36), primary_key=True, default=_uuid)
    organization_id = Column(String(36), ForeignKey("organizations.id"), nullable=False, index=True)
    user_id = Column(String(36), nullable=False, index=True)
    role = Column(String(50), nullable=False, default="member")
    is_active = Column(Boolean, default=True)
    joined_at = Column(DateTime(timezone=True), server_default=func.now())

    organization = relationship("Organization", back_populates="members")


class Entity(Base):
    __tablename__ = "entities"

    id = Column(String(36), primary_key=True, default=_uuid)
    organization_id = Column(String(36), ForeignKey("organizations.id"), nullable=True, index=True)
    name = Column(String(255), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    organization = relationship("Organization", back_populates="entities")
    permissions = relationship("EntityPermission", back_populates="entity")
    hmrc_connections = relationship("HMRCConnection", back_populates="entity")


class EntityPermission(Base):
    __tablename__ = "entity_permissions"

    id = Column(String(36), primary_key=True, default=_uuid)
    entity_id = Column(String(36), ForeignKey("entities.id"), nullable=False, index=True)
    user_id = Column(String(36), nullable=False, index=True)
    permission_level = Column(String(50), nullable=False)
    granted_by = Column(String(36), nullable=True)
    granted_at = Column(DateTime(timezone=True), server_default=func.now())

    entity = relationship("Entity", back_populates="permissions")


# HMRC Integration Models

class HMRCOAuthState(Base):
    __tablename__ = "hmrc_oauth_states"

    id = Column(String(36), primary_key=True, default=_uuid)
    state = Column(String(128), unique=True, nullable=False, index=True)
    user_id = Column(String(36), nullable=False)
    entity_id = Column(String(36), ForeignKey("entities.id"), nullable=False)
    redirect_uri = Column(String(500), nullable=False)
    scopes = Column(JSON, nullable=False, default=list)
    code_verifier = Column(String(128), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    expires_at = Column(DateTime(timezone=True), nullable=False)
    used = Column(Boolean, nullable=False, default=False)
    used_at = Column(DateTime(timezone=True), nullable=True)

    entity = relationship("Entity")


class HMRCConnection(Base):
    __tablename__ = "hmrc_connections"
    __table_args__ = (
        UniqueConstraint("entity_id", "hmrc_business_id", name="uq_hmrc_connections_entity_business"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    entity_id = Column(String(36), ForeignKey("entities.id"), nullable=False, index=True)

    # HMRC business identity
    hmrc_business_id = Column(String(100), nullable=False)
    business_type = Column(SQLEnum(BusinessType), nullable=False, default=BusinessType.OTHER)
    business_name = Column(String(255), nullable=True)

    # Tax identifiers (nino/utr encrypted)
    nino = Column(Text, nullable=True)
    utr = Column(Text, nullable=True)
    vat_registration_number = Column(String(50), nullable=True)
    company_registration_number = Column(String(50), nullable=True)

    # OAuth (access/refresh tokens inside oauth_tokens are encrypted)
    oauth_scopes = Column(JSON, nullable=True)
    oauth_state = Column(String(128), nullable=True, index=True)
    oauth_tokens = Column(JSON, nullable=True)

    # Sync
    sync_status = Column(SQLEnum(SyncStatus), nullable=False, default=SyncStatus.PENDING)
    last_sync_at = Column(DateTime(timezone=True), nullable=True)
    last_sync_error = Column(Text, nullable=True)
    business_details = Column(JSON, nullable=True)
    obligations = Column(JSON, nullable=True)

    # Lifecycle
    is_active = Column(Boolean, nullable=False, default=True)
    connected_at = Column(DateTime(timezone=True), nullable=True)
    disconnected_at = Column(DateTime(timezone=True), nullable=True)

    created_by = Column(String(36), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    entity = relationship("Entity", back_populates="hmrc_connections")
    audit_logs = relationship("HMRCAuditLog", back_populates="connection")


class HMRCAuditLog(Base):
    __tablename__ = "hmrc_audit_logs"

    id = Column(String(36), primary_key=True, default=_uuid)
    connection_id = Column(String(36), ForeignKey("hmrc_connections.id"), nullable=True, index=True)
    user_id = Column(String(36), nullable=True)

    # Operation
    operation = Column(String(100), nullable=False)
    endpoint = Column(String(500), nullable=True)
    method = Column(String(10), nullable=True)
    request_params = Column(JSON, nullable=True)

    # Outcome
    response_status = Column(Integer, nullable=True)
    response_data = Column(JSON, nullable=True)
    error_code = Column(String(50), nullable=True)
    error_message = Column(Text, nullable=True)
    error_details = Column(JSON, nullable=True)
    duration_ms = Column(Integer, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    connection = relationship("HMRCConnection", back_populates="audit_logs")
