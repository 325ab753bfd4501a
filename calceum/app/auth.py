from typing import Optional
from jose import JWTError, jwt
from fastapi import Depends, Header
from sqlalchemy.orm import Session

from calceum.config import Settings, get_settings
from .errors import AuthenticationError, AuthorizationError
from .models import Entity, EntityPermission, OrganizationMember
from .schemas import AuthenticatedUser


def decode_access_token(token: str, settings: Settings) -> AuthenticatedUser:
    """Verify a bearer token issued by the identity provider and return its subject."""
    try:
        payload = jwt.decode(
            token,
            settings.auth_jwt_secret,
            algorithms=[settings.auth_jwt_algorithm],
            audience=settings.auth_jwt_audience,
        )
    except JWTError:
        raise AuthenticationError("Invalid authentication")

    user_id: Optional[str] = payload.get("sub")
    if not user_id:
        raise AuthenticationError("Invalid authentication")

    return AuthenticatedUser(id=user_id, email=payload.get("email"))


async def get_current_user(
    authorization: Optional[str] = Header(None),
    settings: Settings = Depends(get_settings)
) -> AuthenticatedUser:
    if not authorization:
        raise AuthenticationError("No authorization header")

    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise AuthenticationError("Invalid authentication")

    return decode_access_token(token.strip(), settings)


def user_has_entity_access(db: Session, user_id: str, entity_id: str) -> bool:
    """
    Check whether a user may act on an entity.

    Access is granted by a direct entity permission, or by active membership
    in the organization that owns the entity.
    """
    permission = db.query(EntityPermission).filter(
        EntityPermission.entity_id == entity_id,
        EntityPermission.user_id == user_id
    ).first()

    if permission:
        return True

    membership = db.query(OrganizationMember).join(
        Entity, Entity.organization_id == OrganizationMember.organization_id
    ).filter(
        Entity.id == entity_id,
        OrganizationMember.user_id == user_id,
        OrganizationMember.is_active == True
    ).first()

    return membership is not None


def require_entity_access(db: Session, user_id: str, entity_id: str, message: str = "You do not have access to this entity"):
    """Raise AuthorizationError unless the user has access to the entity."""
    if not user_has_entity_access(db, user_id, entity_id):
        raise AuthorizationError(message)
