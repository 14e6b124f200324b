"""
Service riders : charge courante, compteurs de livraisons, disponibilité.
"""
import logging
from typing import Optional

from core.exceptions import ValidationError
from core.realtime import hub
from core.utils import new_id, normalize_phone, utcnow
from database import db
from models.common import RiderStatus
from models.rider import RiderCreate, RiderUpdate

logger = logging.getLogger(__name__)


async def create_rider(data: RiderCreate) -> dict:
    now = utcnow()
    rider = {
        "rider_id":          new_id("rdr"),
        "name":              data.name,
        "phone_number":      normalize_phone(data.phone_number),
        "vehicle_type":      data.vehicle_type,
        "status":            RiderStatus.AVAILABLE.value,
        "current_orders":    0,
        "total_deliveries":  0,
        "failed_deliveries": 0,
        "success_rate":      100.0,
        "created_at":        now,
        "updated_at":        now,
    }
    await db.riders.insert_one(rider)
    rider = {k: v for k, v in rider.items() if k != "_id"}
    await hub.publish("riders", "insert", new=rider)
    logger.info(f"Rider créé : {rider['rider_id']} ({rider['name']})")
    return rider


async def get_rider(rider_id: str) -> Optional[dict]:
    return await db.riders.find_one({"rider_id": rider_id}, {"_id": 0})


async def require_rider(rider_id: str) -> dict:
    rider = await get_rider(rider_id)
    if not rider:
        raise ValidationError(f"Rider {rider_id} not found")
    if rider["status"] == RiderStatus.OFFLINE.value:
        raise ValidationError(f"Rider {rider['name']} is offline")
    return rider


async def list_riders(status: Optional[RiderStatus] = None) -> list:
    query = {"status": status.value} if status else {}
    cursor = db.riders.find(query, {"_id": 0}).sort("name", 1)
    return await cursor.to_list(length=200)


async def update_rider(rider_id: str, data: RiderUpdate) -> Optional[dict]:
    updates = data.model_dump(exclude_none=True)
    if "phone_number" in updates:
        updates["phone_number"] = normalize_phone(updates["phone_number"])
    if "status" in updates:
        updates["status"] = updates["status"].value
    old = await get_rider(rider_id)
    if not old:
        return None
    if updates:
        updates["updated_at"] = utcnow()
        await db.riders.update_one({"rider_id": rider_id}, {"$set": updates})
    new = await get_rider(rider_id)
    await hub.publish("riders", "update", old=old, new=new)
    return new


async def _apply(rider_id: str, update: dict) -> None:
    old = await get_rider(rider_id)
    if not old:
        logger.warning(f"Rider {rider_id} introuvable, compteurs ignorés")
        return
    update.setdefault("$set", {})["updated_at"] = utcnow()
    await db.riders.update_one({"rider_id": rider_id}, update)
    new = await get_rider(rider_id)

    # Statut dérivé de la charge courante (sauf rider hors ligne)
    if new["status"] != RiderStatus.OFFLINE.value:
        status = RiderStatus.BUSY if new["current_orders"] > 0 else RiderStatus.AVAILABLE
        if new["status"] != status.value:
            await db.riders.update_one({"rider_id": rider_id}, {"$set": {"status": status.value}})
            new["status"] = status.value
    await hub.publish("riders", "update", old=old, new=new)


async def take_job(rider_id: str) -> None:
    """Une collecte ou une livraison vient d'être confiée au rider."""
    await _apply(rider_id, {"$inc": {"current_orders": 1}})


async def release_job(rider_id: str, delivered: Optional[bool] = None) -> None:
    """
    Fin de mission. delivered=True compte une livraison réussie,
    delivered=False un échec, None une simple libération (annulation, collecte).
    """
    rider = await get_rider(rider_id)
    if not rider:
        logger.warning(f"Rider {rider_id} introuvable, compteurs ignorés")
        return

    inc = {"current_orders": -1 if rider["current_orders"] > 0 else 0}
    fields = {}
    if delivered is not None:
        total = rider["total_deliveries"] + (1 if delivered else 0)
        failed = rider.get("failed_deliveries", 0) + (0 if delivered else 1)
        inc["total_deliveries" if delivered else "failed_deliveries"] = 1
        fields["success_rate"] = round(total / max(total + failed, 1) * 100, 1)
    await _apply(rider_id, {"$inc": inc, "$set": fields})
