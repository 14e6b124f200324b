"""
Journal des événements : chaque transition, callback passerelle et forçage admin
laisse une trace dans status_events.
"""
from typing import Optional

from core.utils import new_id, utcnow
from database import db


async def record_event(
    entity_type: str,
    entity_id: str,
    event_type: str,
    from_status: Optional[str] = None,
    to_status: Optional[str] = None,
    actor_id: Optional[str] = None,
    actor_role: Optional[str] = None,
    notes: Optional[str] = None,
    metadata: Optional[dict] = None,
) -> dict:
    """Insère un StatusEvent (entity_type : "waste_report", "order", "payment")."""
    event = {
        "event_id":    new_id("evt"),
        "entity_type": entity_type,
        "entity_id":   entity_id,
        "event_type":  event_type,
        "from_status": from_status,
        "to_status":   to_status,
        "actor_id":    actor_id,
        "actor_role":  actor_role,
        "notes":       notes,
        "metadata":    metadata or {},
        "created_at":  utcnow(),
    }
    await db.status_events.insert_one(event)
    return {k: v for k, v in event.items() if k != "_id"}


async def get_timeline(entity_id: str) -> list:
    """Retourne les événements triés chronologiquement."""
    cursor = db.status_events.find(
        {"entity_id": entity_id},
        {"_id": 0},
    ).sort("created_at", 1)
    return await cursor.to_list(length=200)
