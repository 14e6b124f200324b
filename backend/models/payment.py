from datetime import datetime
from typing import Optional
from pydantic import BaseModel
from models.common import PaymentChannel, PaymentStatus, PaymentType


class Payment(BaseModel):
    payment_id:        str
    farmer_id:         Optional[str] = None
    customer_id:       Optional[str] = None
    order_id:          Optional[str] = None
    waste_report_id:   Optional[str] = None
    amount:            float
    payment_type:      PaymentType
    channel:           PaymentChannel
    phone_number:      Optional[str] = None
    # "CC-<payment_id>" : clé de corrélation envoyée à la passerelle
    account_reference: str
    status:            PaymentStatus = PaymentStatus.PENDING
    gateway_submitted: bool = False
    checkout_request_id:  Optional[str] = None   # STK
    conversation_id:      Optional[str] = None   # B2C
    mpesa_transaction_id: Optional[str] = None
    sandbox_mode:      bool = False
    failure_reason:    Optional[str] = None
    completed_at:      Optional[datetime] = None
    created_at:        datetime
    updated_at:        datetime


class ChargeRequest(BaseModel):
    """STK push initié par le client (achat de compost)."""
    phone_number: str
    order_id:     str


class PayoutRequest(BaseModel):
    """Payout B2C initié par un admin."""
    farmer_id:    str
    amount:       float
    payment_type: PaymentType = PaymentType.BONUS
    phone_number: Optional[str] = None


class PaymentOverride(BaseModel):
    status: PaymentStatus
    reason: str
