"""
Router users : liste des profils, détail, changement de rôle.
"""
from typing import Optional

from fastapi import APIRouter, Depends

from core.dependencies import get_current_user, is_staff, require_admin, require_staff
from core.exceptions import not_found_exception
from core.utils import mask_phone
from database import db
from models.common import UserRole
from models.user import User
from services import admin_service, user_service

router = APIRouter()


@router.get("", summary="Liste utilisateurs (staff)")
async def list_users(
    role: Optional[UserRole] = None,
    skip: int = 0,
    limit: int = 50,
    _staff=Depends(require_staff),
):
    query = {"role": role.value} if role else {}
    cursor = db.profiles.find(query, user_service.PRIVATE_FIELDS).sort("created_at", -1).skip(skip).limit(limit)
    users = await cursor.to_list(length=limit)
    return {"users": users, "total": await db.profiles.count_documents(query)}


@router.get("/{user_id}", response_model=User, summary="Détail utilisateur")
async def get_user(user_id: str, current_user: dict = Depends(get_current_user)):
    user_doc = await user_service.get_profile(user_id)
    if not user_doc:
        raise not_found_exception("User")
    # Staff voit tout ; un fermier ne voit les autres qu'avec un numéro masqué
    if not is_staff(current_user) and current_user["user_id"] != user_id:
        user_doc["phone_number"] = mask_phone(user_doc.get("phone_number"))
    return User(**user_doc)


@router.put("/{user_id}/role", summary="Changer rôle (admin)")
async def change_role(
    user_id: str,
    role: UserRole,
    admin: dict = Depends(require_admin),
):
    await admin_service.change_role(user_id, role, actor_id=admin["user_id"])
    return {"message": f"Role updated → {role.value}"}
