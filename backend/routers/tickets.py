"""
Router tickets : support utilisateurs (création, réponses, statut).
"""
from typing import Optional

from fastapi import APIRouter, Depends

from core.dependencies import get_current_user, is_staff
from models.common import TicketStatus
from models.ticket import Ticket, TicketCreate, TicketResponse, TicketResponseCreate, TicketStatusUpdate
from services import ticket_service

router = APIRouter()


@router.post("", response_model=Ticket, status_code=201, summary="Ouvrir un ticket")
async def create_ticket(body: TicketCreate, current_user: dict = Depends(get_current_user)):
    return Ticket(**await ticket_service.create_ticket(current_user, body))


@router.get("", summary="Tickets (utilisateur : les siens ; staff : tous)")
async def list_tickets(
    status: Optional[TicketStatus] = None,
    user_id: Optional[str] = None,
    skip: int = 0,
    limit: int = 50,
    current_user: dict = Depends(get_current_user),
):
    if not is_staff(current_user):
        user_id = current_user["user_id"]
    return await ticket_service.list_tickets(user_id, status, skip, limit)


@router.get("/{ticket_id}", summary="Détail + réponses + historique")
async def get_ticket(ticket_id: str, current_user: dict = Depends(get_current_user)):
    return await ticket_service.ticket_detail(ticket_id, current_user)


@router.post(
    "/{ticket_id}/responses",
    response_model=TicketResponse,
    status_code=201,
    summary="Répondre à un ticket",
)
async def add_response(
    ticket_id: str,
    body: TicketResponseCreate,
    current_user: dict = Depends(get_current_user),
):
    return TicketResponse(**await ticket_service.add_response(ticket_id, current_user, body.message))


@router.put("/{ticket_id}/status", response_model=Ticket, summary="Changer le statut")
async def update_status(
    ticket_id: str,
    body: TicketStatusUpdate,
    current_user: dict = Depends(get_current_user),
):
    return Ticket(**await ticket_service.update_status(ticket_id, body.status, current_user))
