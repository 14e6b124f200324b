"""
Router riders : flotte de collecte et de livraison (staff).
"""
from typing import Optional

from fastapi import APIRouter, Depends

from core.dependencies import require_admin, require_staff
from core.exceptions import not_found_exception
from models.common import RiderStatus
from models.rider import Rider, RiderCreate, RiderUpdate
from services import rider_service

router = APIRouter()


@router.get("", summary="Liste riders")
async def list_riders(status: Optional[RiderStatus] = None, _staff=Depends(require_staff)):
    return {"riders": await rider_service.list_riders(status)}


@router.post("", response_model=Rider, status_code=201, summary="Ajouter un rider (admin)")
async def create_rider(body: RiderCreate, _admin=Depends(require_admin)):
    return Rider(**await rider_service.create_rider(body))


@router.get("/{rider_id}", response_model=Rider, summary="Détail rider")
async def get_rider(rider_id: str, _staff=Depends(require_staff)):
    rider = await rider_service.get_rider(rider_id)
    if not rider:
        raise not_found_exception("Rider")
    return Rider(**rider)


@router.put("/{rider_id}", response_model=Rider, summary="Modifier un rider")
async def update_rider(rider_id: str, body: RiderUpdate, _staff=Depends(require_staff)):
    rider = await rider_service.update_rider(rider_id, body)
    if not rider:
        raise not_found_exception("Rider")
    return Rider(**rider)
