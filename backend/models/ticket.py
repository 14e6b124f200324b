from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field
from models.common import TicketStatus, TicketType


class Ticket(BaseModel):
    ticket_id:  str
    user_id:    str
    subject:    str
    message:    str
    type:       TicketType = TicketType.GENERAL
    status:     TicketStatus = TicketStatus.OPEN
    created_at: datetime
    updated_at: datetime


class TicketResponse(BaseModel):
    response_id:       str
    ticket_id:         str
    user_id:           str
    message:           str
    is_admin_response: bool = False
    created_at:        datetime


class TicketCreate(BaseModel):
    subject: str = Field(min_length=1, max_length=200)
    message: str = Field(min_length=1)
    type:    TicketType = TicketType.GENERAL


class TicketResponseCreate(BaseModel):
    message: str = Field(min_length=1)


class TicketStatusUpdate(BaseModel):
    status: TicketStatus
