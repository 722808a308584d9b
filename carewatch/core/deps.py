"""FastAPI dependencies."""

from typing import Annotated, Any

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from carewatch.core.alert_policies import ACTOR_ROLES, STAFF_ROLES
from carewatch.core.security import decode_access_token
from carewatch.schemas.actor import Actor

security = HTTPBearer(auto_error=False)


def actor_from_payload(payload: dict[str, Any] | None) -> Actor | None:
    """Build an Actor from decoded token claims, or None if the claims are unusable."""
    if not payload or not payload.get("sub"):
        return None
    role = payload.get("role")
    if role not in ACTOR_ROLES:
        return None
    return Actor(id=payload["sub"], name=payload.get("name") or "", role=role)


def get_current_actor(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
) -> Actor:
    """Require authenticated actor. Raises 401 if not authenticated."""
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    actor = actor_from_payload(decode_access_token(credentials.credentials))
    if actor is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return actor


def require_staff(current_actor: Annotated[Actor, Depends(get_current_actor)]) -> Actor:
    """Require an admin or care manager (alert actions and assignment changes)."""
    if current_actor.role not in STAFF_ROLES:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only admins and care managers can perform this action",
        )
    return current_actor
