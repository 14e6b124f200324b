from typing import Optional
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from core.security import verify_access_token
from core.exceptions import credentials_exception, forbidden_exception
from database import db
from models.common import UserRole

bearer_scheme = HTTPBearer(auto_error=False)

STAFF_ROLES = (UserRole.ADMIN.value, UserRole.DISPATCH.value)


async def user_from_token(token: Optional[str]) -> dict:
    """Résout un access token en profil actif ; utilisé aussi par le WebSocket."""
    if not token:
        raise credentials_exception()
    payload = verify_access_token(token)
    if not payload:
        raise credentials_exception()

    user_id = payload.get("sub")
    if not user_id:
        raise credentials_exception()

    user = await db.profiles.find_one({"user_id": user_id}, {"_id": 0, "password_hash": 0})
    if not user:
        raise credentials_exception()
    if not user.get("is_active", True):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Account disabled",
        )
    return user


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> dict:
    return await user_from_token(credentials.credentials if credentials else None)


def require_role(*roles: UserRole):
    """
    Dépendance qui vérifie que l'utilisateur connecté possède l'un des rôles donnés.
    Usage : Depends(require_role(UserRole.ADMIN, UserRole.DISPATCH))
    """
    async def _check(current_user: dict = Depends(get_current_user)) -> dict:
        if current_user.get("role") not in [r.value for r in roles]:
            raise forbidden_exception()
        return current_user
    return _check


def is_staff(user: dict) -> bool:
    return user.get("role") in STAFF_ROLES


# Raccourcis pratiques
require_admin = require_role(UserRole.ADMIN)
require_staff = require_role(UserRole.ADMIN, UserRole.DISPATCH)
