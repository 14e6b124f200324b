"""
Router payments : STK push pour les commandes, consultation, actions admin.
"""
from typing import Optional

from fastapi import APIRouter, Depends, Request

from config import settings
from core.dependencies import get_current_user, is_staff, require_admin
from core.exceptions import forbidden_exception, not_found_exception
from core.rate_limit import limiter
from database import db
from models.common import PaymentStatus, UserRole
from models.payment import ChargeRequest, Payment, PaymentOverride, PayoutRequest
from services import payment_service
from services.event_service import get_timeline
from services.order_service import get_order

router = APIRouter()
admin_router = APIRouter()


def _owns(payment: dict, user: dict) -> bool:
    return user["user_id"] in (payment.get("farmer_id"), payment.get("customer_id"))


@router.post("/charge", summary="Payer une commande (STK push)")
@limiter.limit(settings.PAYMENT_RATE_LIMIT)
async def charge(
    request: Request,
    body: ChargeRequest,
    current_user: dict = Depends(get_current_user),
):
    order = await get_order(body.order_id)
    if not is_staff(current_user) and order["customer_id"] != current_user["user_id"]:
        raise forbidden_exception()
    return await payment_service.initiate_charge(body.order_id, body.phone_number, current_user["user_id"])


@router.get("", summary="Paiements (fermier/client : les siens ; staff : tous)")
async def list_payments(
    status: Optional[PaymentStatus] = None,
    skip: int = 0,
    limit: int = 50,
    current_user: dict = Depends(get_current_user),
):
    query: dict = {}
    if status:
        query["status"] = status.value
    if not is_staff(current_user):
        query["$or"] = [
            {"farmer_id": current_user["user_id"]},
            {"customer_id": current_user["user_id"]},
        ]
    return await payment_service.list_payments(query, skip, limit)


@router.get("/{payment_id}", summary="Détail + historique")
async def get_payment(payment_id: str, current_user: dict = Depends(get_current_user)):
    payment = await payment_service.get_payment(payment_id)
    if not payment:
        raise not_found_exception("Payment")
    if not is_staff(current_user) and not _owns(payment, current_user):
        raise forbidden_exception()
    return {"payment": payment, "timeline": await get_timeline(payment_id)}


# ── Admin ─────────────────────────────────────────────────────────────────────
@admin_router.post("/payout", response_model=Payment, summary="Payout B2C manuel (bonus, remboursement)")
@limiter.limit(settings.PAYMENT_RATE_LIMIT)
async def payout(
    request: Request,
    body: PayoutRequest,
    admin: dict = Depends(require_admin),
):
    farmer = await db.profiles.find_one(
        {"user_id": body.farmer_id, "role": UserRole.FARMER.value}, {"_id": 0, "user_id": 1},
    )
    if not farmer:
        raise not_found_exception("Farmer")
    payment = await payment_service.initiate_payout(
        farmer_id=body.farmer_id,
        amount=body.amount,
        payment_type=body.payment_type,
        phone=body.phone_number,
        actor_id=admin["user_id"],
    )
    return Payment(**payment)


@admin_router.put("/{payment_id}/override", response_model=Payment, summary="Forcer un statut (audité)")
async def override(
    payment_id: str,
    body: PaymentOverride,
    admin: dict = Depends(require_admin),
):
    if not await payment_service.get_payment(payment_id):
        raise not_found_exception("Payment")
    payment = await payment_service.override_status(
        payment_id, body.status, admin["user_id"], admin["role"], body.reason,
    )
    return Payment(**payment)
