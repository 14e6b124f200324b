"""
Service d'administration : KPIs, stock de l'usine, gestion des rôles.
"""
import logging
from typing import Optional

from core.exceptions import ValidationError, not_found_exception
from core.realtime import hub
from core.utils import utcnow
from database import db
from models.common import OrderStatus, PaymentStatus, RiderStatus, UserRole
from services.event_service import record_event
from services.waste_report_service import INVENTORY_ID, report_stats

logger = logging.getLogger(__name__)

INVENTORY_FIELDS = ("raw_waste_kg", "processed_manure_kg", "pellets_ready_kg")


async def _sum(collection, match: dict, field: str) -> float:
    pipeline = [
        {"$match": match},
        {"$group": {"_id": None, "total": {"$sum": f"${field}"}}},
    ]
    result = await collection.aggregate(pipeline).to_list(length=1)
    return float(result[0]["total"]) if result else 0.0


async def dashboard() -> dict:
    now = utcnow()
    today_start = now.replace(hour=0, minute=0, second=0, microsecond=0)

    orders_by_status = {
        s.value: await db.orders.count_documents({"status": s.value}) for s in OrderStatus
    }
    sales = await _sum(
        db.orders,
        {"status": OrderStatus.DELIVERED.value},
        "total_amount",
    )
    collected_today = await _sum(
        db.payments,
        {"status": PaymentStatus.COMPLETED.value, "completed_at": {"$gte": today_start}},
        "amount",
    )

    return {
        "waste":    await report_stats(),
        "orders": {
            "by_status":   orders_by_status,
            "total":       sum(orders_by_status.values()),
            "sales_kes":   sales,
        },
        "payments": {
            "pending":         await db.payments.count_documents({"status": PaymentStatus.PENDING.value}),
            "failed":          await db.payments.count_documents({"status": PaymentStatus.FAILED.value}),
            "completed_today": collected_today,
        },
        "riders": {
            "available": await db.riders.count_documents({"status": RiderStatus.AVAILABLE.value}),
            "busy":      await db.riders.count_documents({"status": RiderStatus.BUSY.value}),
        },
        "farmers":  await db.profiles.count_documents({"role": UserRole.FARMER.value}),
        "inventory": await get_inventory(),
    }


async def get_inventory() -> dict:
    inventory = await db.inventory.find_one({"inventory_id": INVENTORY_ID}, {"_id": 0})
    if not inventory:
        return {"inventory_id": INVENTORY_ID, **{f: 0.0 for f in INVENTORY_FIELDS}, "last_updated": None}
    return inventory


async def update_inventory(changes: dict, actor_id: str, notes: Optional[str] = None) -> dict:
    """
    Ajuste le stock par deltas (ex. compostage : raw_waste_kg -100, processed_manure_kg +60).
    Aucun champ ne peut devenir négatif.
    """
    deltas = {k: float(v) for k, v in changes.items() if k in INVENTORY_FIELDS and v}
    if not deltas:
        raise ValidationError("No inventory change given")

    old = await get_inventory()
    for field, delta in deltas.items():
        if old.get(field, 0.0) + delta < 0:
            raise ValidationError(f"Not enough stock for {field}")

    await db.inventory.update_one(
        {"inventory_id": INVENTORY_ID},
        {"$inc": deltas, "$set": {"last_updated": utcnow()}},
        upsert=True,
    )
    new = await get_inventory()
    await record_event(
        "inventory", INVENTORY_ID, "INVENTORY_ADJUSTED",
        actor_id=actor_id, actor_role="admin", notes=notes, metadata=deltas,
    )
    await hub.publish("inventory", "update", old=old, new=new)
    logger.info(f"Stock ajusté par {actor_id} : {deltas}")
    return new


async def change_role(user_id: str, role: UserRole, actor_id: str) -> dict:
    profile = await db.profiles.find_one({"user_id": user_id}, {"_id": 0, "password_hash": 0})
    if not profile:
        raise not_found_exception("User")
    if user_id == actor_id and role != UserRole.ADMIN:
        raise ValidationError("Admins cannot remove their own admin role")

    await db.profiles.update_one(
        {"user_id": user_id},
        {"$set": {"role": role.value, "updated_at": utcnow()}},
    )
    await record_event(
        "profile", user_id, "ROLE_CHANGED",
        from_status=profile["role"], to_status=role.value,
        actor_id=actor_id, actor_role="admin",
    )
    logger.info(f"Rôle de {user_id} : {profile['role']} → {role.value} (par {actor_id})")
    return {**profile, "role": role.value}
