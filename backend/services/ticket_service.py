"""
Service support : tickets ouverts par les utilisateurs et réponses du staff.

open → in_progress → resolved → closed ; le staff peut rouvrir un ticket
résolu, jamais un ticket fermé. Le propriétaire peut seulement fermer le sien.
"""
import logging
from typing import Optional

from core.dependencies import is_staff
from core.exceptions import InvalidTransition, ValidationError, forbidden_exception, not_found_exception
from core.realtime import hub
from core.utils import new_id, utcnow
from database import db
from models.common import NotificationType, TicketStatus, UserRole
from models.ticket import TicketCreate
from services.event_service import get_timeline, record_event
from services.notification_service import notify, notify_many

logger = logging.getLogger(__name__)

# ── Machine d'états ───────────────────────────────────────────────────────────
ALLOWED_TRANSITIONS: dict[TicketStatus, list[TicketStatus]] = {
    TicketStatus.OPEN:        [TicketStatus.IN_PROGRESS, TicketStatus.RESOLVED, TicketStatus.CLOSED],
    TicketStatus.IN_PROGRESS: [TicketStatus.OPEN, TicketStatus.RESOLVED, TicketStatus.CLOSED],
    TicketStatus.RESOLVED:    [TicketStatus.IN_PROGRESS, TicketStatus.CLOSED],
    TicketStatus.CLOSED:      [],
}

STATUS_LABELS = {
    TicketStatus.OPEN:        "reopened",
    TicketStatus.IN_PROGRESS: "being handled",
    TicketStatus.RESOLVED:    "resolved",
    TicketStatus.CLOSED:      "closed",
}


def can_access(ticket: dict, user: dict) -> bool:
    return is_staff(user) or ticket["user_id"] == user["user_id"]


async def get_ticket(ticket_id: str) -> dict:
    ticket = await db.tickets.find_one({"ticket_id": ticket_id}, {"_id": 0})
    if not ticket:
        raise not_found_exception("Ticket")
    return ticket


async def _transition(ticket: dict, new_status: TicketStatus, user: dict, notes: Optional[str] = None) -> dict:
    current = TicketStatus(ticket["status"])
    if new_status not in ALLOWED_TRANSITIONS.get(current, []):
        raise InvalidTransition("ticket", current.value, new_status.value)

    result = await db.tickets.update_one(
        {"ticket_id": ticket["ticket_id"], "status": current.value},
        {"$set": {"status": new_status.value, "updated_at": utcnow()}},
    )
    if result.modified_count == 0:
        fresh = await get_ticket(ticket["ticket_id"])
        raise InvalidTransition("ticket", fresh["status"], new_status.value)

    updated = await get_ticket(ticket["ticket_id"])
    await record_event(
        entity_type="ticket",
        entity_id=ticket["ticket_id"],
        event_type="STATUS_CHANGED",
        from_status=current.value,
        to_status=new_status.value,
        actor_id=user["user_id"],
        actor_role=user.get("role"),
        notes=notes,
    )
    await hub.publish("tickets", "update", old=ticket, new=updated)
    logger.info(f"Ticket {ticket['ticket_id']} : {current.value} → {new_status.value}")
    return updated


# ── Création ──────────────────────────────────────────────────────────────────
async def create_ticket(user: dict, data: TicketCreate) -> dict:
    subject = data.subject.strip()
    message = data.message.strip()
    if not subject or not message:
        raise ValidationError("Subject and message are required")

    now = utcnow()
    ticket = {
        "ticket_id":  new_id("tkt"),
        "user_id":    user["user_id"],
        "subject":    subject,
        "message":    message,
        "type":       data.type.value,
        "status":     TicketStatus.OPEN.value,
        "created_at": now,
        "updated_at": now,
    }
    await db.tickets.insert_one(ticket)
    ticket = {k: v for k, v in ticket.items() if k != "_id"}

    await record_event(
        entity_type="ticket",
        entity_id=ticket["ticket_id"],
        event_type="TICKET_CREATED",
        to_status=TicketStatus.OPEN.value,
        actor_id=user["user_id"],
        actor_role=user.get("role"),
    )
    await hub.publish("tickets", "insert", new=ticket)

    admins = db.profiles.find({"role": UserRole.ADMIN.value}, {"_id": 0, "user_id": 1})
    await notify_many(
        [p["user_id"] async for p in admins],
        NotificationType.TICKET_UPDATE.value,
        "New Support Ticket",
        f"{user.get('full_name') or 'A user'} opened a {data.type.value.replace('_', ' ')} ticket: {subject}",
        related_entity_id=ticket["ticket_id"],
    )
    logger.info(f"Ticket {ticket['ticket_id']} ouvert par {user['user_id']} ({data.type.value})")
    return ticket


# ── Réponses ──────────────────────────────────────────────────────────────────
async def add_response(ticket_id: str, user: dict, message: str) -> dict:
    """
    Réponse sur un ticket non fermé. Une réponse du staff sur un ticket
    `open` le passe `in_progress` et prévient son auteur.
    """
    ticket = await get_ticket(ticket_id)
    if not can_access(ticket, user):
        raise forbidden_exception()
    if ticket["status"] == TicketStatus.CLOSED.value:
        raise ValidationError("This ticket is closed")
    message = (message or "").strip()
    if not message:
        raise ValidationError("Response message is required")

    staff = is_staff(user)
    response = {
        "response_id":       new_id("tkr"),
        "ticket_id":         ticket_id,
        "ticket_owner_id":   ticket["user_id"],
        "user_id":           user["user_id"],
        "message":           message,
        "is_admin_response": staff,
        "created_at":        utcnow(),
    }
    await db.ticket_responses.insert_one(response)
    response = {k: v for k, v in response.items() if k != "_id"}

    await record_event(
        entity_type="ticket",
        entity_id=ticket_id,
        event_type="TICKET_RESPONSE",
        actor_id=user["user_id"],
        actor_role=user.get("role"),
        metadata={"response_id": response["response_id"]},
    )
    await hub.publish("ticket_responses", "insert", new=response)

    if staff:
        if ticket["status"] == TicketStatus.OPEN.value:
            await _transition(ticket, TicketStatus.IN_PROGRESS, user)
        if ticket["user_id"] != user["user_id"]:
            await notify(
                ticket["user_id"],
                NotificationType.TICKET_UPDATE.value,
                "Support Replied",
                f"New reply on your ticket \"{ticket['subject']}\"",
                related_entity_id=ticket_id,
            )
    else:
        await db.tickets.update_one({"ticket_id": ticket_id}, {"$set": {"updated_at": utcnow()}})
    return response


async def list_responses(ticket_id: str) -> list:
    cursor = db.ticket_responses.find({"ticket_id": ticket_id}, {"_id": 0}).sort("created_at", 1)
    return await cursor.to_list(length=500)


# ── Statut ────────────────────────────────────────────────────────────────────
async def update_status(ticket_id: str, new_status: TicketStatus, user: dict) -> dict:
    ticket = await get_ticket(ticket_id)
    if not can_access(ticket, user):
        raise forbidden_exception()
    if not is_staff(user) and new_status != TicketStatus.CLOSED:
        # Le propriétaire ne peut que fermer son ticket
        raise forbidden_exception("Only support staff can change this status")
    if ticket["status"] == new_status.value:
        return ticket

    updated = await _transition(ticket, new_status, user)
    if ticket["user_id"] != user["user_id"]:
        await notify(
            ticket["user_id"],
            NotificationType.TICKET_UPDATE.value,
            "Ticket Status Updated",
            f"Your ticket \"{ticket['subject']}\" is {STATUS_LABELS[new_status]}",
            related_entity_id=ticket_id,
        )
    return updated


# ── Lecture ───────────────────────────────────────────────────────────────────
async def list_tickets(
    user_id: Optional[str] = None,
    status: Optional[TicketStatus] = None,
    skip: int = 0,
    limit: int = 50,
) -> dict:
    query: dict = {}
    if user_id:
        query["user_id"] = user_id
    if status:
        query["status"] = status.value
    cursor = db.tickets.find(query, {"_id": 0}).sort("created_at", -1).skip(skip).limit(limit)
    items = await cursor.to_list(length=limit)
    total = await db.tickets.count_documents(query)
    return {"tickets": items, "total": total}


async def ticket_detail(ticket_id: str, user: dict) -> dict:
    ticket = await get_ticket(ticket_id)
    if not can_access(ticket, user):
        raise forbidden_exception()
    return {
        "ticket":    ticket,
        "responses": await list_responses(ticket_id),
        "timeline":  await get_timeline(ticket_id),
    }
