"""
FastAPI dependencies for the AmazôniaExperience backend

Authentication happens upstream; the gateway forwards the caller's
identity in the X-User-Id / X-User-Role / X-Partner-Id headers.
"""
from dataclasses import dataclass
from typing import Optional
from fastapi import Depends, HTTPException, Header, status

from amazonia.config import settings
from amazonia.db.database import get_db  # noqa: F401
from amazonia.db.models import UserRole


@dataclass
class CurrentUser:
    id: int
    role: UserRole
    partner_id: Optional[int] = None


async def get_current_user(
    x_user_id: Optional[int] = Header(None),
    x_user_role: Optional[str] = Header(None),
    x_partner_id: Optional[int] = Header(None)
) -> CurrentUser:
    """Identity supplied by the authentication gateway"""
    if x_user_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing user identity"
        )
    try:
        role = UserRole(x_user_role or UserRole.user.value)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Unknown role: {x_user_role}"
        )
    return CurrentUser(id=x_user_id, role=role, partner_id=x_partner_id)


async def require_staff(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    """Partners (with a partner id) and admins"""
    if user.role == UserRole.admin:
        return user
    if user.role == UserRole.partner and user.partner_id is not None:
        return user
    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail="Only partners and admins can do this"
    )


async def require_partner(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    if user.role != UserRole.partner or user.partner_id is None:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only partners can verify redemption codes"
        )
    return user


async def verify_api_key(x_api_key: Optional[str] = Header(None)) -> str:
    """Verify API key for internal endpoints"""
    if not x_api_key or x_api_key != settings.API_KEY:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key"
        )
    return x_api_key
