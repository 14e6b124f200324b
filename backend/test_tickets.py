import pytest
from fastapi import HTTPException

from conftest import auth_headers
from core.exceptions import InvalidTransition, ValidationError
from database import db
from models.common import TicketStatus, TicketType
from models.ticket import TicketCreate
from routers.realtime import resolve_filter
from services import ticket_service
from services.event_service import get_timeline


async def _ticket(user, subject="Payout not received", type=TicketType.PAYMENT_ISSUE):
    return await ticket_service.create_ticket(
        user, TicketCreate(subject=subject, message="Collected on Monday, still waiting.", type=type),
    )


async def _notifications(recipient_id):
    return await db.notifications.find(
        {"recipient_id": recipient_id, "type": "ticket_update"}, {"_id": 0},
    ).to_list(length=20)


async def test_create_ticket_starts_open_and_alerts_admins(farmer, admin):
    ticket = await _ticket(farmer)
    assert ticket["status"] == "open"
    assert ticket["type"] == "payment_issue"
    assert ticket["user_id"] == farmer["user_id"]

    alerts = await _notifications(admin["user_id"])
    assert len(alerts) == 1
    assert alerts[0]["related_entity_id"] == ticket["ticket_id"]
    assert [e["event_type"] for e in await get_timeline(ticket["ticket_id"])] == ["TICKET_CREATED"]


async def test_staff_reply_moves_ticket_in_progress_and_notifies_owner(farmer, admin):
    ticket = await _ticket(farmer)

    reply = await ticket_service.add_response(ticket["ticket_id"], admin, "Checking with M-Pesa now.")
    assert reply["is_admin_response"] is True
    assert reply["ticket_owner_id"] == farmer["user_id"]

    assert (await ticket_service.get_ticket(ticket["ticket_id"]))["status"] == "in_progress"
    owner_alerts = await _notifications(farmer["user_id"])
    assert len(owner_alerts) == 1
    assert "Payout not received" in owner_alerts[0]["message"]

    # Deuxième réponse : pas de nouvelle transition
    await ticket_service.add_response(ticket["ticket_id"], admin, "Found it, resending.")
    events = [e["event_type"] for e in await get_timeline(ticket["ticket_id"])]
    assert events.count("STATUS_CHANGED") == 1
    assert events.count("TICKET_RESPONSE") == 2


async def test_owner_reply_keeps_status(farmer, admin):
    ticket = await _ticket(farmer)
    reply = await ticket_service.add_response(ticket["ticket_id"], farmer, "Any news?")
    assert reply["is_admin_response"] is False
    assert (await ticket_service.get_ticket(ticket["ticket_id"]))["status"] == "open"
    assert len(await _notifications(farmer["user_id"])) == 0


async def test_other_users_cannot_reply(farmer, other_farmer):
    ticket = await _ticket(farmer)
    with pytest.raises(HTTPException) as exc:
        await ticket_service.add_response(ticket["ticket_id"], other_farmer, "Me too")
    assert exc.value.status_code == 403


async def test_closed_ticket_refuses_replies_and_reopening(farmer, admin):
    ticket = await _ticket(farmer)
    closed = await ticket_service.update_status(ticket["ticket_id"], TicketStatus.CLOSED, farmer)
    assert closed["status"] == "closed"

    with pytest.raises(ValidationError):
        await ticket_service.add_response(ticket["ticket_id"], admin, "Late reply")
    with pytest.raises(InvalidTransition):
        await ticket_service.update_status(ticket["ticket_id"], TicketStatus.OPEN, admin)


async def test_owner_can_only_close(farmer):
    ticket = await _ticket(farmer)
    with pytest.raises(HTTPException) as exc:
        await ticket_service.update_status(ticket["ticket_id"], TicketStatus.RESOLVED, farmer)
    assert exc.value.status_code == 403
    assert (await ticket_service.get_ticket(ticket["ticket_id"]))["status"] == "open"


async def test_staff_status_change_notifies_owner(farmer, dispatcher):
    ticket = await _ticket(farmer, type=TicketType.DELAY)
    resolved = await ticket_service.update_status(ticket["ticket_id"], TicketStatus.RESOLVED, dispatcher)
    assert resolved["status"] == "resolved"

    alerts = await _notifications(farmer["user_id"])
    assert len(alerts) == 1
    assert "resolved" in alerts[0]["message"]

    reopened = await ticket_service.update_status(ticket["ticket_id"], TicketStatus.IN_PROGRESS, dispatcher)
    assert reopened["status"] == "in_progress"
    last = (await get_timeline(ticket["ticket_id"]))[-1]
    assert last["from_status"] == "resolved"
    assert last["actor_id"] == dispatcher["user_id"]


async def test_ticket_realtime_rows_are_scoped_to_owner(farmer, admin):
    assert resolve_filter(farmer, "tickets", None, None) == {"user_id": farmer["user_id"]}
    assert resolve_filter(farmer, "ticket_responses", None, None) == {"ticket_owner_id": farmer["user_id"]}
    assert resolve_filter(admin, "tickets", None, None) == {}


# ── HTTP ──────────────────────────────────────────────────────────────────────
async def test_tickets_over_http(client, farmer, other_farmer, admin):
    created = await client.post(
        "/api/tickets",
        json={"subject": "Pickup delayed", "message": "Rider never came", "type": "delivery_issue"},
        headers=auth_headers(farmer),
    )
    assert created.status_code == 201
    ticket_id = created.json()["ticket_id"]
    await _ticket(other_farmer, subject="App crash", type=TicketType.TECHNICAL)

    own = await client.get("/api/tickets", headers=auth_headers(farmer))
    assert own.json()["total"] == 1
    everyone = await client.get("/api/tickets", headers=auth_headers(admin))
    assert everyone.json()["total"] == 2

    hidden = await client.get(f"/api/tickets/{ticket_id}", headers=auth_headers(other_farmer))
    assert hidden.status_code == 403

    reply = await client.post(
        f"/api/tickets/{ticket_id}/responses", json={"message": "Rescheduled for Friday"},
        headers=auth_headers(admin),
    )
    assert reply.status_code == 201
    assert reply.json()["is_admin_response"] is True

    detail = await client.get(f"/api/tickets/{ticket_id}", headers=auth_headers(farmer))
    body = detail.json()
    assert body["ticket"]["status"] == "in_progress"
    assert [r["message"] for r in body["responses"]] == ["Rescheduled for Friday"]

    denied = await client.put(
        f"/api/tickets/{ticket_id}/status", json={"status": "resolved"}, headers=auth_headers(farmer),
    )
    assert denied.status_code == 403
    resolved = await client.put(
        f"/api/tickets/{ticket_id}/status", json={"status": "resolved"}, headers=auth_headers(admin),
    )
    assert resolved.json()["status"] == "resolved"

    missing = await client.get("/api/tickets/tkt_missing", headers=auth_headers(admin))
    assert missing.status_code == 404
