"""
Router notifications : boîte de réception de l'utilisateur connecté.
"""
from fastapi import APIRouter, Depends

from core.dependencies import get_current_user
from core.exceptions import not_found_exception
from services import notification_service

router = APIRouter()


@router.get("", summary="Mes notifications")
async def list_notifications(
    unread_only: bool = False,
    skip: int = 0,
    limit: int = 50,
    current_user: dict = Depends(get_current_user),
):
    return await notification_service.list_notifications(
        current_user["user_id"], unread_only, skip, limit,
    )


@router.put("/read-all", summary="Tout marquer comme lu")
async def mark_all_read(current_user: dict = Depends(get_current_user)):
    updated = await notification_service.mark_all_read(current_user["user_id"])
    return {"updated": updated}


@router.put("/{notification_id}/read", summary="Marquer comme lue")
async def mark_read(notification_id: str, current_user: dict = Depends(get_current_user)):
    if not await notification_service.mark_read(notification_id, current_user["user_id"]):
        raise not_found_exception("Notification")
    return {"message": "Notification marked as read"}


@router.delete("/{notification_id}", summary="Supprimer")
async def delete_notification(notification_id: str, current_user: dict = Depends(get_current_user)):
    if not await notification_service.delete_notification(notification_id, current_user["user_id"]):
        raise not_found_exception("Notification")
    return {"message": "Notification deleted"}
