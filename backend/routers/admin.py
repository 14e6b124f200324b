"""
Router admin : tableau de bord, stock de l'usine, journal d'audit.
"""
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from core.dependencies import require_admin, require_staff
from database import db
from services import admin_service

router = APIRouter()


class InventoryAdjustment(BaseModel):
    raw_waste_kg:        float = 0.0
    processed_manure_kg: float = 0.0
    pellets_ready_kg:    float = 0.0
    notes:               Optional[str] = None


@router.get("/dashboard", summary="KPIs temps réel")
async def dashboard(_staff=Depends(require_staff)):
    return await admin_service.dashboard()


@router.get("/inventory", summary="Stock usine")
async def get_inventory(_staff=Depends(require_staff)):
    return await admin_service.get_inventory()


@router.put("/inventory", summary="Ajuster le stock (deltas)")
async def update_inventory(body: InventoryAdjustment, admin: dict = Depends(require_admin)):
    changes = body.model_dump(exclude={"notes"})
    return await admin_service.update_inventory(changes, admin["user_id"], body.notes)


@router.get("/events", summary="Journal d'audit")
async def list_events(
    entity_type: Optional[str] = None,
    event_type: Optional[str] = None,
    skip: int = 0,
    limit: int = 100,
    _admin=Depends(require_admin),
):
    query = {}
    if entity_type:
        query["entity_type"] = entity_type
    if event_type:
        query["event_type"] = event_type
    cursor = db.status_events.find(query, {"_id": 0}).sort("created_at", -1).skip(skip).limit(limit)
    total = await db.status_events.count_documents(query)
    return {"events": await cursor.to_list(length=limit), "total": total}
